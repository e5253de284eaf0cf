"""Shared fixtures and fakes for t9s tests."""

from collections import Counter
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from t9s.bridge import ProcessOutcome
from t9s.cache import CacheStore
from t9s.errors import NotFoundError, SubprocessUnavailable
from t9s.fetch import FetchPipeline, FetchSettings
from t9s.models import Build, BuildConfiguration, BuildStatus, Project
from t9s.navigation import Navigator


STARTED = datetime(2024, 1, 5, 14, 3, tzinfo=timezone.utc)


def make_project(project_id: str, name: str, parent_id: Optional[str] = None) -> Project:
    return Project(id=project_id, name=name, parent_id=parent_id)


def make_config(config_id: str, name: str, project_id: str, project_name: str = "") -> BuildConfiguration:
    return BuildConfiguration(
        id=config_id, name=name, project_id=project_id, project_name=project_name or None
    )


def make_build(
    build_id: str,
    config_id: str,
    status: BuildStatus = BuildStatus.SUCCESS,
    log_available: bool = True,
) -> Build:
    return Build(
        id=build_id,
        build_config_id=config_id,
        status=status,
        web_url=f"https://tc.example.com/viewLog.html?buildId={build_id}",
        started_at=STARTED,
        finished_at=STARTED + timedelta(minutes=2, seconds=5),
        log_available=log_available,
        number=build_id,
        branch_name="main",
    )


class FakeAPI:
    """In-memory remote API that counts calls and can fail on demand.

    ``errors[method]`` is a list of exceptions raised, one per call, before
    the method starts answering normally.
    """

    def __init__(self, projects=(), configs=None, builds=None, logs=None) -> None:
        self.projects = list(projects)
        self.configs = dict(configs or {})
        # config id -> {page token: (builds, next token)}
        self.builds = dict(builds or {})
        self.logs = dict(logs or {})
        self.errors: dict[str, list[Exception]] = {}
        self.calls: Counter = Counter()
        self.requested: list[tuple] = []

    def _enter(self, method: str, *args) -> None:
        self.calls[method] += 1
        self.requested.append((method, *args))
        pending = self.errors.get(method)
        if pending:
            raise pending.pop(0)

    def list_projects(self, ids=()):
        ids = tuple(ids)
        self._enter("list_projects", ids)
        if ids:
            return [p for p in self.projects if p.id in ids]
        return list(self.projects)

    def list_build_configs(self, project_id):
        self._enter("list_build_configs", project_id)
        if project_id not in self.configs:
            raise NotFoundError(f"Not found: {project_id}", entity_id=project_id)
        return list(self.configs[project_id])

    def list_builds(self, build_config_id, page_token=None):
        self._enter("list_builds", build_config_id, page_token)
        pages = self.builds.get(build_config_id)
        if pages is None:
            raise NotFoundError(f"Not found: {build_config_id}", entity_id=build_config_id)
        builds, next_token = pages[page_token]
        return list(builds), next_token

    def fetch_log(self, build_id):
        self._enter("fetch_log", build_id)
        if build_id not in self.logs:
            raise NotFoundError(f"Not found: {build_id}", entity_id=build_id)
        return self.logs[build_id]


class ImmediateWorker:
    """Runs submitted work synchronously on the calling thread."""

    def __init__(self) -> None:
        self.submitted = 0
        self.closed = False

    def submit(self, fn, *args, **kwargs) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait: bool = False) -> None:
        self.closed = True


class RecordingBridge:
    """Stands in for fzf and the pager, recording what it was given."""

    def __init__(self, choice: Optional[str] = None, installed: bool = True) -> None:
        self.choice = choice
        self.installed = installed
        self.candidates: list[tuple[str, str]] = []
        self.pages: list[bytes] = []

    @property
    def fuzzy_available(self) -> bool:
        return self.installed

    @property
    def pager_available(self) -> bool:
        return self.installed

    def launch_fuzzy_finder(self, candidates):
        if not self.installed:
            raise SubprocessUnavailable("fzf not installed; fuzzy search disabled")
        self.candidates = list(candidates)
        return self.choice

    def launch_pager(self, text: bytes) -> ProcessOutcome:
        if not self.installed:
            raise SubprocessUnavailable("Pager 'less' not installed")
        self.pages.append(text)
        return ProcessOutcome(True, "", 0)


@pytest.fixture(autouse=True)
def t9s_home(tmp_path, monkeypatch):
    """Keep config, cache and logs inside the test's temp directory."""
    home = tmp_path / "t9s-home"
    monkeypatch.setenv("T9S_HOME", str(home))
    for name in ("T9S_TEAMCITY_URL", "T9S_TOKEN", "T9S_PROJECTS", "PAGER"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def api() -> FakeAPI:
    """Two top-level projects, one with a configuration and two builds."""
    return FakeAPI(
        projects=[make_project("P1", "Alpha"), make_project("P2", "Beta")],
        configs={
            "P1": [make_config("P1_Build", "Build", "P1", "Alpha")],
            "P2": [],
        },
        builds={
            "P1_Build": {
                None: (
                    [
                        make_build("102", "P1_Build", BuildStatus.FAILURE),
                        make_build("101", "P1_Build", log_available=False),
                    ],
                    None,
                ),
            },
        },
        logs={"102": b"step 1\nstep 2 failed\n"},
    )


@pytest.fixture
def cache() -> CacheStore:
    """In-memory cache store."""
    return CacheStore()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the pipeline."""
    return []


@pytest.fixture
def pipeline(api, cache, sleeps) -> FetchPipeline:
    """Pipeline running synchronously without real sleeps."""
    return FetchPipeline(
        api,
        cache,
        FetchSettings(max_retries=3, retry_delay=1.0, rate_limit_delay=5.0),
        worker=ImmediateWorker(),
        sleep=sleeps.append,
    )


@pytest.fixture
def bridge() -> RecordingBridge:
    return RecordingBridge()


@pytest.fixture
def opened() -> list[str]:
    """URLs passed to the browser opener."""
    return []


@pytest.fixture
def navigator(cache, pipeline, bridge, opened) -> Navigator:
    """Navigator with immediate dispatch and a recording browser."""

    def browser(url: str) -> ProcessOutcome:
        opened.append(url)
        return ProcessOutcome(True, f"Opening {url}")

    return Navigator(cache, pipeline, bridge=bridge, browser=browser)
