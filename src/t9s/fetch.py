"""Fetch pipeline for t9s.

Keeps the cache warm without blocking the UI:
- Refreshes run on daemon worker threads and return futures
- Concurrent requests for the same (kind, scope) share one in-flight future
- Transient failures are retried with exponential backoff
- Build listings are written to the cache page by page
- Failures come back as ``FetchOutcome`` values, never as exceptions
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence, TypeVar, Union

from t9s.cache import CacheStore
from t9s.config import T9sConfig
from t9s.errors import CapabilityDenied, ErrorKind, NotFoundError, RateLimitedError, T9sError
from t9s.models import Build, BuildConfiguration, Entity, EntityKind, Project, utcnow


logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[str], None]

LOG_KEY = "log"

# What an outcome is about: an entity kind, or LOG_KEY for a build log
OutcomeKind = Union[EntityKind, str]


class RemoteAPI(Protocol):
    """What the pipeline needs from the CI server client."""

    def list_projects(self, ids: Iterable[str] = ()) -> list[Project]: ...

    def list_build_configs(self, project_id: str) -> list[BuildConfiguration]: ...

    def list_builds(
        self, build_config_id: str, page_token: Optional[str] = None
    ) -> tuple[list[Build], Optional[str]]: ...

    def fetch_log(self, build_id: str) -> bytes: ...


class OutcomeStatus(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass(frozen=True)
class FetchOutcome:
    """Result of one refresh."""

    status: OutcomeStatus
    kind: OutcomeKind
    scope: Optional[str] = None
    entities: tuple[Entity, ...] = ()
    error: Optional[ErrorKind] = None
    message: str = ""
    next_page: Optional[str] = None
    data: Optional[bytes] = None

    @classmethod
    def updated(cls, kind: OutcomeKind, scope: Optional[str], entities: Sequence[Entity] = (), **kwargs) -> "FetchOutcome":
        return cls(OutcomeStatus.UPDATED, kind, scope, tuple(entities), **kwargs)

    @classmethod
    def unchanged(cls, kind: OutcomeKind, scope: Optional[str], **kwargs) -> "FetchOutcome":
        return cls(OutcomeStatus.UNCHANGED, kind, scope, **kwargs)

    @classmethod
    def failed(cls, kind: OutcomeKind, scope: Optional[str], error: ErrorKind, message: str) -> "FetchOutcome":
        return cls(OutcomeStatus.FAILED, kind, scope, error=error, message=message)

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.FAILED


@dataclass(frozen=True)
class FetchSettings:
    """Immutable pipeline configuration."""

    project_filter: tuple[str, ...] = ()
    max_retries: int = 3
    retry_delay: float = 1.0
    rate_limit_delay: float = 5.0
    max_pages: int = 1

    @classmethod
    def from_config(cls, config: T9sConfig) -> "FetchSettings":
        return cls(
            project_filter=tuple(config.projects),
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            rate_limit_delay=config.rate_limit_delay,
            max_pages=max(1, config.max_pages),
        )

    def allows(self, project_id: str) -> bool:
        return not self.project_filter or project_id in self.project_filter


class FetchWorker:
    """A small pool of daemon threads executing submitted callables.

    Daemon threads let the process exit while a request is still in flight.
    """

    def __init__(self, workers: int = 2, name: str = "t9s-fetch") -> None:
        self._queue: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._closed = False
        self._threads = [
            threading.Thread(target=self._run, name=f"{name}-{i}", daemon=True)
            for i in range(max(1, workers))
        ]
        for thread in self._threads:
            thread.start()

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        if self._closed:
            raise RuntimeError("FetchWorker is shut down")
        future: Future = Future()
        self._queue.put((future, fn, args, kwargs))
        return future

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            future, fn, args, kwargs = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting work; in-flight calls finish on their own."""
        if self._closed:
            return
        self._closed = True
        for _ in self._threads:
            self._queue.put(None)
        if wait:
            for thread in self._threads:
                thread.join()


class FetchPipeline:
    """Populates and refreshes the cache from the remote API."""

    def __init__(
        self,
        api: RemoteAPI,
        cache: CacheStore,
        settings: Optional[FetchSettings] = None,
        worker: Optional[FetchWorker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api = api
        self.cache = cache
        self.settings = settings or FetchSettings()
        self._worker = worker
        self._sleep = sleep
        self._lock = threading.Lock()
        self._in_flight: dict[tuple[str, str], Future] = {}

    @property
    def worker(self) -> FetchWorker:
        if self._worker is None:
            self._worker = FetchWorker()
        return self._worker

    def close(self) -> None:
        """Stop the workers without waiting for in-flight calls."""
        if self._worker is not None:
            self._worker.shutdown(wait=False)

    # -- coalescing -----------------------------------------------------

    def in_flight(self, kind: str, scope: Optional[str] = None) -> bool:
        with self._lock:
            return (kind, scope or "") in self._in_flight

    def _submit(self, key: tuple[str, str], fn: Callable[..., FetchOutcome], *args, **kwargs) -> "Future[FetchOutcome]":
        with self._lock:
            future = self._in_flight.get(key)
            if future is not None:
                logger.debug("Coalesced request for %s", key)
                return future
            future = self.worker.submit(fn, *args, **kwargs)
            self._in_flight[key] = future
        future.add_done_callback(partial(self._forget, key))
        return future

    def _forget(self, key: tuple[str, str], future: Future) -> None:
        with self._lock:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    def submit_projects(
        self,
        project_filter: Optional[Iterable[str]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> "Future[FetchOutcome]":
        return self._submit(
            (EntityKind.PROJECT.value, ""), self.refresh_projects, project_filter, progress
        )

    def submit_build_configs(
        self, project_id: str, progress: Optional[ProgressCallback] = None
    ) -> "Future[FetchOutcome]":
        return self._submit(
            (EntityKind.BUILD_CONFIG.value, project_id),
            self.refresh_build_configs,
            project_id,
            progress,
        )

    def submit_builds(
        self,
        build_config_id: str,
        page: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> "Future[FetchOutcome]":
        # pages coalesce separately; a refresh must not join a load-more
        scope = build_config_id if page is None else f"{build_config_id}@{page}"
        return self._submit(
            (EntityKind.BUILD.value, scope),
            self.refresh_builds,
            build_config_id,
            page,
            progress,
        )

    def submit_log(
        self, build_id: str, progress: Optional[ProgressCallback] = None
    ) -> "Future[FetchOutcome]":
        return self._submit((LOG_KEY, build_id), self.fetch_log, build_id, progress)

    # -- retry ----------------------------------------------------------

    def _backoff(self, error: T9sError, attempt: int) -> float:
        if isinstance(error, RateLimitedError):
            return max(error.retry_after, self.settings.rate_limit_delay * (2 ** attempt))
        return self.settings.retry_delay * (2 ** attempt)

    def _call_with_retry(self, fn: Callable[[], T], progress: Optional[ProgressCallback]) -> T:
        """Run ``fn``, retrying transient failures with exponential backoff."""
        attempt = 0
        while True:
            try:
                return fn()
            except T9sError as e:
                if not e.kind.is_transient or attempt >= self.settings.max_retries:
                    raise
                delay = self._backoff(e, attempt)
                attempt += 1
                logger.info(
                    "%s; retry %d/%d in %.1fs", e.message, attempt, self.settings.max_retries, delay
                )
                if progress:
                    progress(f"{e.message}; retrying ({attempt}/{self.settings.max_retries})...")
                self._sleep(delay)

    # -- refreshes ------------------------------------------------------

    def _same_as_cached(self, kind: EntityKind, scope: Optional[str], entities: Sequence[Entity]) -> bool:
        if not self.cache.has_scope(kind, scope):
            return False
        if self.cache.list_ids(kind, scope) != tuple(e.id for e in entities):
            return False
        return all(self.cache.get_entity(kind, e.id) == e for e in entities)

    def refresh_projects(
        self,
        project_filter: Optional[Iterable[str]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> FetchOutcome:
        """Refresh the project list.

        Args:
            project_filter: Allowed project ids; None uses the configured
                filter, empty means all projects.
        """
        kind = EntityKind.PROJECT
        ids = tuple(self.settings.project_filter if project_filter is None else project_filter)
        try:
            projects = self._call_with_retry(lambda: self.api.list_projects(ids), progress)
        except T9sError as e:
            logger.warning("Project refresh failed: %s", e.message)
            return FetchOutcome.failed(kind, None, e.kind, e.message)

        if ids:
            projects = [p for p in projects if p.id in ids]
        unchanged = self._same_as_cached(kind, None, projects)

        fresh_ids = {p.id for p in projects}
        for stale_id in self.cache.list_ids(kind):
            if stale_id not in fresh_ids:
                logger.info("Pruning project %s", stale_id)
                self.cache.remove(kind, stale_id)

        now = utcnow()
        self.cache.put_many(kind, projects, now)
        self.cache.set_scope(kind, None, [p.id for p in projects], now)
        self.cache.flush()
        if unchanged:
            return FetchOutcome.unchanged(kind, None)
        return FetchOutcome.updated(kind, None, projects)

    def refresh_build_configs(
        self, project_id: str, progress: Optional[ProgressCallback] = None
    ) -> FetchOutcome:
        """Refresh the build configurations of one project."""
        kind = EntityKind.BUILD_CONFIG
        try:
            if not self.settings.allows(project_id):
                raise CapabilityDenied(f"Project {project_id} is not in the project filter")
            configs = self._call_with_retry(
                lambda: self.api.list_build_configs(project_id), progress
            )
        except NotFoundError as e:
            logger.info("Project %s removed upstream, pruning", project_id)
            self.cache.remove(EntityKind.PROJECT, project_id)
            self.cache.flush()
            return FetchOutcome.failed(kind, project_id, e.kind, f"Project {project_id} no longer exists")
        except T9sError as e:
            logger.warning("Build configuration refresh for %s failed: %s", project_id, e.message)
            return FetchOutcome.failed(kind, project_id, e.kind, e.message)

        unchanged = self._same_as_cached(kind, project_id, configs)
        now = utcnow()
        self.cache.put_many(kind, configs, now)
        self.cache.set_scope(kind, project_id, [c.id for c in configs], now, prune=True)
        self.cache.flush()
        if unchanged:
            return FetchOutcome.unchanged(kind, project_id)
        return FetchOutcome.updated(kind, project_id, configs)

    def refresh_builds(
        self,
        build_config_id: str,
        page: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> FetchOutcome:
        """Refresh builds of a configuration, page by page.

        Args:
            build_config_id: Configuration whose builds to fetch.
            page: Page token to continue from; None starts over and
                replaces the cached ordering.
            progress: Called with status text between pages and retries.

        Returns:
            The outcome; ``next_page`` is set when more builds remain.
        """
        kind = EntityKind.BUILD
        token = page
        fetched: list[Build] = []
        unchanged = False

        for _ in range(self.settings.max_pages):
            try:
                builds, next_token = self._call_with_retry(
                    lambda: self.api.list_builds(build_config_id, token), progress
                )
            except NotFoundError as e:
                logger.info("Build configuration %s removed upstream, pruning", build_config_id)
                self.cache.remove(EntityKind.BUILD_CONFIG, build_config_id)
                self.cache.flush()
                return FetchOutcome.failed(
                    kind, build_config_id, e.kind,
                    f"Build configuration {build_config_id} no longer exists",
                )
            except T9sError as e:
                logger.warning("Build refresh for %s failed: %s", build_config_id, e.message)
                if fetched:
                    self.cache.flush()
                return FetchOutcome.failed(kind, build_config_id, e.kind, e.message)

            now = utcnow()
            if token is None:
                unchanged = self._same_as_cached(kind, build_config_id, builds)
                self.cache.put_many(kind, builds, now)
                self.cache.set_scope(kind, build_config_id, [b.id for b in builds], now, prune=True)
            else:
                self.cache.put_many(kind, builds, now)
                self.cache.extend_scope(kind, build_config_id, [b.id for b in builds], now)
            fetched.extend(builds)
            token = next_token
            if progress:
                progress(f"Loaded {len(fetched)} builds")
            if not token:
                break

        self.cache.flush()
        if unchanged and page is None and len(fetched) == len(self.cache.list_ids(kind, build_config_id)):
            return FetchOutcome.unchanged(kind, build_config_id, next_page=token)
        return FetchOutcome.updated(kind, build_config_id, fetched, next_page=token)

    def fetch_log(self, build_id: str, progress: Optional[ProgressCallback] = None) -> FetchOutcome:
        """Download the log of a build."""
        entry = self.cache.get(EntityKind.BUILD, build_id)
        try:
            if entry is not None and not entry.entity.log_available:
                raise CapabilityDenied(f"No log available for build {build_id}")
            data = self._call_with_retry(lambda: self.api.fetch_log(build_id), progress)
        except NotFoundError:
            logger.info("Build %s removed upstream, pruning", build_id)
            self.cache.remove(EntityKind.BUILD, build_id)
            self.cache.flush()
            return FetchOutcome.failed(LOG_KEY, build_id, ErrorKind.NOT_FOUND, f"Build {build_id} no longer exists")
        except T9sError as e:
            logger.warning("Log download for %s failed: %s", build_id, e.message)
            return FetchOutcome.failed(LOG_KEY, build_id, e.kind, e.message)
        return FetchOutcome.updated(LOG_KEY, build_id, data=data)
