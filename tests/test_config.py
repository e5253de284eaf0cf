"""Tests for t9s configuration."""

import json

import pytest

from t9s.config import DEFAULT_CACHE_TTL, T9sConfig, get_home_dir
from t9s.fetch import FetchSettings


class TestT9sConfig:
    """Tests for loading and saving configuration."""

    def test_defaults_when_missing(self, t9s_home) -> None:
        """Test a missing file gives defaults."""
        config = T9sConfig.load()
        assert config.teamcity_url == ""
        assert config.cache_ttl == DEFAULT_CACHE_TTL
        assert T9sConfig.get_config_path() == t9s_home / "config.json"

    def test_save_and_load(self, tmp_path) -> None:
        """Test values survive a save/load cycle."""
        path = tmp_path / "config.json"
        T9sConfig(teamcity_url="https://tc.example.com", token="abc", projects=["P1"], build_ttl=10).save(path)
        loaded = T9sConfig.load(path, use_env=False)
        assert loaded.teamcity_url == "https://tc.example.com"
        assert loaded.projects == ["P1"]
        assert loaded.build_ttl == 10

    def test_unknown_keys_ignored(self, tmp_path) -> None:
        """Test keys from other versions are dropped."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"token": "abc", "obsolete_option": True}))
        assert T9sConfig.load(path, use_env=False).token == "abc"

    def test_invalid_file_gives_defaults(self, tmp_path) -> None:
        """Test a broken file is ignored."""
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert T9sConfig.load(path, use_env=False) == T9sConfig()

    def test_env_overrides(self, tmp_path, monkeypatch) -> None:
        """Test T9S_* variables take precedence over the file."""
        path = tmp_path / "config.json"
        T9sConfig(teamcity_url="https://file.example.com").save(path)
        monkeypatch.setenv("T9S_TEAMCITY_URL", "https://env.example.com")
        monkeypatch.setenv("T9S_PROJECTS", "P1, P2,")
        config = T9sConfig.load(path)
        assert config.teamcity_url == "https://env.example.com"
        assert config.projects == ["P1", "P2"]

    def test_reset_keeps_credentials(self) -> None:
        """Test reset restores tunables only."""
        config = T9sConfig(teamcity_url="https://tc", token="abc", projects=["P1"], max_retries=9)
        config.reset()
        assert config.max_retries == T9sConfig().max_retries
        assert (config.teamcity_url, config.token, config.projects) == ("https://tc", "abc", ["P1"])

    @pytest.mark.parametrize(
        "kwargs, problem",
        [
            ({}, "teamcity_url is not set"),
            ({"teamcity_url": "tc.example.com", "token": "x"}, "must be an http(s) URL"),
            ({"teamcity_url": "https://tc", "token": ""}, "token is not set"),
            ({"teamcity_url": "https://tc", "token": "x", "page_size": 0}, "page_size must be positive"),
        ],
    )
    def test_validate(self, kwargs, problem) -> None:
        """Test validation reports each problem."""
        assert any(problem in p for p in T9sConfig(**kwargs).validate())

    def test_validate_ok(self) -> None:
        """Test a complete config has no problems."""
        assert T9sConfig(teamcity_url="https://tc", token="x").validate() == []

    def test_paths(self, t9s_home) -> None:
        """Test derived paths live under the home directory."""
        config = T9sConfig()
        assert get_home_dir() == t9s_home
        assert config.resolve_cache_path() == t9s_home / "cache.db"
        assert config.resolve_log_path() == t9s_home / "t9s.log"
        assert T9sConfig(teamcity_url="https://tc/").base_url == "https://tc"

    def test_pager_resolution(self, monkeypatch) -> None:
        """Test the pager falls back to $PAGER, then less."""
        assert T9sConfig().resolve_pager() == "less -R"
        monkeypatch.setenv("PAGER", "most")
        assert T9sConfig().resolve_pager() == "most"
        assert T9sConfig(pager_command="bat").resolve_pager() == "bat"

    def test_fetch_settings_from_config(self) -> None:
        """Test the pipeline settings mirror the config."""
        settings = FetchSettings.from_config(
            T9sConfig(projects=["P1"], max_retries=5, retry_delay=0.5, max_pages=0)
        )
        assert settings.project_filter == ("P1",)
        assert settings.max_retries == 5
        assert settings.max_pages == 1
        assert settings.allows("P1")
        assert not settings.allows("P2")
