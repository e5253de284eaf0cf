"""t9s configuration management.

Handles persistent settings stored in ~/.t9s/config.json. Values from the
environment (T9S_TEAMCITY_URL, T9S_TOKEN, T9S_PROJECTS) take precedence
over the file.
"""

import json
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional


# Default configuration values
DEFAULT_THEME = "textual-dark"
DEFAULT_CACHE_TTL = 3600.0  # seconds, projects and build configurations
DEFAULT_BUILD_TTL = 60.0  # seconds, build lists go stale quickly
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # base of the exponential backoff
DEFAULT_RATE_LIMIT_DELAY = 5.0  # base backoff when rate limited
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 1
DEFAULT_FETCH_WORKERS = 2
DEFAULT_FZF_COMMAND = "fzf"

ENV_PREFIX = "T9S_"


def get_home_dir() -> Path:
    """Directory holding config, cache and log files."""
    override = os.environ.get(f"{ENV_PREFIX}HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".t9s"


@dataclass
class T9sConfig:
    """t9s application configuration."""

    # Server
    teamcity_url: str = ""
    token: str = ""

    # Project filter: only these project ids (and their sub-projects' build
    # configurations) are ever queried. Empty means all projects.
    projects: list[str] = field(default_factory=list)

    # Cache
    cache_path: Optional[str] = None
    cache_ttl: float = DEFAULT_CACHE_TTL
    build_ttl: float = DEFAULT_BUILD_TTL

    # Fetching
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES
    fetch_workers: int = DEFAULT_FETCH_WORKERS

    # External programs
    fzf_command: str = DEFAULT_FZF_COMMAND
    pager_command: Optional[str] = None

    # Appearance
    theme: str = DEFAULT_THEME

    @classmethod
    def get_config_path(cls) -> Path:
        """Get the path to the config file."""
        return get_home_dir() / "config.json"

    @classmethod
    def load(cls, path: Optional[Path] = None, use_env: bool = True) -> "T9sConfig":
        """Load configuration from file, or return defaults if not found."""
        config_path = path or cls.get_config_path()
        config = cls()

        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                # Only use known fields to avoid issues with old config versions
                known_fields = {f.name for f in cls.__dataclass_fields__.values()}
                filtered_data = {k: v for k, v in data.items() if k in known_fields}
                config = cls(**filtered_data)
            except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
                # Invalid config, return defaults
                config = cls()

        if use_env:
            config.apply_env()
        return config

    def apply_env(self, environ: Optional[dict] = None) -> None:
        """Override fields from T9S_* environment variables."""
        environ = os.environ if environ is None else environ
        url = environ.get(f"{ENV_PREFIX}TEAMCITY_URL")
        if url:
            self.teamcity_url = url
        token = environ.get(f"{ENV_PREFIX}TOKEN")
        if token:
            self.token = token
        projects = environ.get(f"{ENV_PREFIX}PROJECTS")
        if projects:
            self.projects = [p.strip() for p in projects.split(",") if p.strip()]

    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        config_path = path or self.get_config_path()

        # Ensure directory exists
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(asdict(self), f, indent=2)

    def reset(self) -> None:
        """Reset tunables to defaults, keeping the server credentials."""
        url, token, projects = self.teamcity_url, self.token, self.projects
        for name, value in asdict(T9sConfig()).items():
            setattr(self, name, value)
        self.teamcity_url, self.token, self.projects = url, token, projects

    def validate(self) -> list[str]:
        """Return a list of problems that prevent connecting to the server."""
        problems = []
        if not self.teamcity_url:
            problems.append("teamcity_url is not set")
        elif not self.teamcity_url.startswith(("http://", "https://")):
            problems.append(f"teamcity_url must be an http(s) URL: {self.teamcity_url}")
        if not self.token:
            problems.append("token is not set")
        if self.max_retries < 0:
            problems.append("max_retries must not be negative")
        if self.page_size <= 0:
            problems.append("page_size must be positive")
        return problems

    @property
    def base_url(self) -> str:
        return self.teamcity_url.rstrip("/")

    @property
    def project_filter(self) -> frozenset[str]:
        return frozenset(self.projects)

    def resolve_cache_path(self) -> Path:
        """Location of the cache file."""
        if self.cache_path:
            return Path(self.cache_path).expanduser()
        return get_home_dir() / "cache.db"

    def resolve_log_path(self) -> Path:
        return get_home_dir() / "t9s.log"

    def resolve_pager(self) -> str:
        """Pager command line: explicit setting, then $PAGER, then less."""
        return self.pager_command or os.environ.get("PAGER") or "less -R"


# Keys that `t9s config set` accepts, with their value types
SETTABLE_KEYS: dict[str, type] = {
    "teamcity_url": str,
    "token": str,
    "projects": list,
    "cache_path": str,
    "cache_ttl": float,
    "build_ttl": float,
    "max_retries": int,
    "retry_delay": float,
    "rate_limit_delay": float,
    "request_timeout": float,
    "page_size": int,
    "max_pages": int,
    "fetch_workers": int,
    "fzf_command": str,
    "pager_command": str,
    "theme": str,
}
