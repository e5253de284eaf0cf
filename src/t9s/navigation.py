"""Navigation model for the t9s browser.

A small state machine over Project -> Build Configuration -> Build, plus
the selection/scroll/filter state of the current list. The navigator holds
ids and indices only; every list is re-derived from the cache on demand,
so a background refresh shows up on the next render without any
invalidation plumbing.

All methods are meant to be called from the UI thread. Fetch results come
back through ``dispatch``, which the host uses to marshal callbacks onto
that thread.
"""

import logging
from concurrent.futures import Future
from dataclasses import dataclass, replace
from enum import Enum
from functools import partial
from typing import Callable, Optional

from t9s.bridge import InteractionBridge, ProcessOutcome, open_url
from t9s.cache import CacheStore
from t9s.errors import ErrorKind, SubprocessUnavailable
from t9s.fetch import FetchOutcome, FetchPipeline
from t9s.models import Build, BuildConfiguration, EntityKind, Freshness, Project
from t9s.teamcity import build_duration, format_started


logger = logging.getLogger(__name__)

# Selection index of an empty list
NO_SELECTION = -1

DEFAULT_VIEWPORT = 20


class View(str, Enum):
    """Screens of the browser, in drill-down order."""

    PROJECT_LIST = "project_list"
    BUILD_CONFIG_LIST = "build_config_list"
    BUILD_LIST = "build_list"
    BUILD_DETAIL = "build_detail"

    @property
    def next(self) -> Optional["View"]:
        order = list(View)
        index = order.index(self)
        return order[index + 1] if index + 1 < len(order) else None

    @property
    def is_list(self) -> bool:
        return self is not View.BUILD_DETAIL


class Severity(str, Enum):
    INFO = "information"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class StatusMessage:
    """Status line text; sticky messages survive the next key press."""

    text: str
    severity: Severity = Severity.INFO
    sticky: bool = False


@dataclass(frozen=True)
class NavigationState:
    view: View = View.PROJECT_LIST
    breadcrumb: tuple[str, ...] = ()
    selected_index: int = 0
    scroll_offset: int = 0
    filter_text: Optional[str] = None
    status_message: Optional[StatusMessage] = None


@dataclass(frozen=True)
class _Frame:
    """What ``back`` restores."""

    view: View
    selected_index: int
    scroll_offset: int
    filter_text: Optional[str]


@dataclass(frozen=True)
class Row:
    """One display row of the current list."""

    id: str
    cells: tuple[str, ...]
    failed: bool = False


COLUMNS: dict[View, tuple[str, ...]] = {
    View.PROJECT_LIST: ("Project", "ID"),
    View.BUILD_CONFIG_LIST: ("Project", "Name", "ID"),
    View.BUILD_LIST: ("Number", "Branch", "Status", "Start time", "Duration"),
    View.BUILD_DETAIL: ("Field", "Value"),
}

_LIST_KIND: dict[View, EntityKind] = {
    View.PROJECT_LIST: EntityKind.PROJECT,
    View.BUILD_CONFIG_LIST: EntityKind.BUILD_CONFIG,
    View.BUILD_LIST: EntityKind.BUILD,
    View.BUILD_DETAIL: EntityKind.BUILD,
}


def _direct(callback: Callable[[], None]) -> None:
    callback()


class Navigator:
    """Browsing state machine backed by the cache."""

    def __init__(
        self,
        cache: CacheStore,
        pipeline: FetchPipeline,
        bridge: Optional[InteractionBridge] = None,
        browser: Callable[[str], ProcessOutcome] = open_url,
        dispatch: Callable[[Callable[[], None]], None] = _direct,
        on_change: Optional[Callable[[], None]] = None,
        project_filter: tuple[str, ...] = (),
        viewport_height: int = DEFAULT_VIEWPORT,
    ) -> None:
        self.cache = cache
        self.pipeline = pipeline
        self.bridge = bridge
        self.browser = browser
        self.dispatch = dispatch
        self.on_change = on_change
        self.project_filter = tuple(project_filter)
        self.viewport_height = max(1, viewport_height)
        self.state = NavigationState()
        self._frames: list[_Frame] = []
        self._selected_id: Optional[str] = None
        self._next_pages: dict[str, Optional[str]] = {}
        self._normalize()

    # -- derived data ---------------------------------------------------

    @property
    def view(self) -> View:
        return self.state.view

    def scope(self) -> tuple[EntityKind, Optional[str]]:
        """Cache listing behind the current view."""
        crumbs = self.state.breadcrumb
        if self.view is View.PROJECT_LIST:
            return EntityKind.PROJECT, None
        if self.view is View.BUILD_CONFIG_LIST:
            return EntityKind.BUILD_CONFIG, crumbs[0]
        return EntityKind.BUILD, crumbs[1]

    def visible_ids(self) -> tuple[str, ...]:
        """Ids of the current list, in display order."""
        if not self.view.is_list:
            return ()
        kind, scope = self.scope()
        ids = self.cache.list_ids(kind, scope)
        if kind is EntityKind.PROJECT:
            if self.project_filter:
                ids = tuple(i for i in ids if i in self.project_filter)
            if self.state.filter_text:
                needle = self.state.filter_text.lower()
                ids = tuple(
                    i for i in ids
                    if needle in self._project_path(i).lower() or needle in i.lower()
                )
        return ids

    @property
    def selected_id(self) -> Optional[str]:
        ids = self.visible_ids()
        index = self.state.selected_index
        if 0 <= index < len(ids):
            return ids[index]
        return None

    def current_build(self) -> Optional[Build]:
        if self.view is not View.BUILD_DETAIL:
            return None
        return self.cache.get_entity(EntityKind.BUILD, self.state.breadcrumb[2])

    @property
    def is_refreshing(self) -> bool:
        kind, scope = self.scope()
        return self.pipeline.in_flight(kind.value, scope)

    @property
    def next_page(self) -> Optional[str]:
        if self.view is not View.BUILD_LIST:
            return None
        return self._next_pages.get(self.state.breadcrumb[1])

    def _project_path(self, project_id: str) -> str:
        """``Parent / Child`` display path, walking parent ids in the cache."""
        names = []
        seen = set()
        current: Optional[str] = project_id
        while current and current not in seen:
            seen.add(current)
            project = self.cache.get_entity(EntityKind.PROJECT, current)
            if project is None:
                break
            names.append(project.name)
            current = project.parent_id
        return " / ".join(reversed(names)) or project_id

    def _row(self, kind: EntityKind, entity_id: str) -> Optional[Row]:
        entity = self.cache.get_entity(kind, entity_id)
        if entity is None:
            return None
        if isinstance(entity, Project):
            return Row(entity.id, (self._project_path(entity.id), entity.id))
        if isinstance(entity, BuildConfiguration):
            return Row(entity.id, (entity.project_name or "N/A", entity.name, entity.id))
        return Row(
            entity.id,
            (
                entity.number or f"#{entity.id}",
                entity.branch_name or "",
                entity.status_text or entity.status.value.upper(),
                format_started(entity.started_at),
                build_duration(entity),
            ),
            failed=entity.status.is_failed,
        )

    def rows(self) -> list[Row]:
        """Display rows of the current list, read fresh from the cache."""
        if not self.view.is_list:
            return []
        kind, _ = self.scope()
        rows = []
        for entity_id in self.visible_ids():
            row = self._row(kind, entity_id)
            if row is not None:
                rows.append(row)
        return rows

    def labels(self) -> list[str]:
        """First display column of each row."""
        return [row.cells[0] for row in self.rows()]

    def columns(self) -> tuple[str, ...]:
        return COLUMNS[self.view]

    def candidates(self) -> list[tuple[str, str]]:
        """``(id, label)`` pairs for the fuzzy finder."""
        kind, _ = self.scope()
        result = []
        for entity_id in self.visible_ids():
            entity = self.cache.get_entity(kind, entity_id)
            if isinstance(entity, Project):
                label = f"{self._project_path(entity.id)} [{entity.id}]"
            elif isinstance(entity, BuildConfiguration):
                label = f"{entity.project_name or entity.project_id} / {entity.name} [{entity.id}]"
            elif isinstance(entity, Build):
                label = (
                    f"#{entity.number or entity.id} {entity.branch_name or ''} "
                    f"[{entity.status.value}] ({entity.id})"
                )
            else:
                continue
            result.append((entity_id, label))
        return result

    def detail(self) -> list[tuple[str, str]]:
        """Field/value pairs of the build shown in BuildDetail."""
        build = self.current_build()
        if build is None:
            return []
        config = self.cache.get_entity(EntityKind.BUILD_CONFIG, build.build_config_id)
        return [
            ("Build", f"#{build.number or build.id}"),
            ("Configuration", config.name if config else build.build_config_id),
            ("Status", build.status.value.upper()),
            ("Status text", build.status_text or ""),
            ("Branch", build.branch_name or ""),
            ("Started", format_started(build.started_at)),
            ("Duration", build_duration(build)),
            ("Log", "available (v)" if build.log_available else "not available"),
            ("URL", build.web_url),
        ]

    def title(self) -> str:
        crumbs = self.state.breadcrumb
        if self.view is View.PROJECT_LIST:
            return "Projects"
        if self.view is View.BUILD_CONFIG_LIST:
            return f"Build Configurations - {self._project_path(crumbs[0])}"
        config = self.cache.get_entity(EntityKind.BUILD_CONFIG, crumbs[1])
        config_name = config.name if config else crumbs[1]
        if self.view is View.BUILD_LIST:
            return f"Builds - {config_name}"
        build = self.current_build()
        number = build.number if build and build.number else crumbs[2]
        return f"Build #{number} - {config_name}"

    def breadcrumb_labels(self) -> list[str]:
        labels = []
        kinds = (EntityKind.PROJECT, EntityKind.BUILD_CONFIG, EntityKind.BUILD)
        for kind, entity_id in zip(kinds, self.state.breadcrumb):
            entity = self.cache.get_entity(kind, entity_id)
            if isinstance(entity, Build):
                labels.append(f"#{entity.number or entity.id}")
            elif entity is not None:
                labels.append(entity.name)
            else:
                labels.append(entity_id)
        return labels

    def empty_message(self) -> str:
        """Text shown in place of an empty list."""
        if self.state.filter_text:
            return f"No projects match '{self.state.filter_text}'"
        if self.is_refreshing:
            return "Refreshing..."
        return {
            View.PROJECT_LIST: "No projects",
            View.BUILD_CONFIG_LIST: "No build configurations",
            View.BUILD_LIST: "No builds",
            View.BUILD_DETAIL: "Build no longer available",
        }[self.view]

    # -- state bookkeeping ------------------------------------------------

    def _set(self, **changes) -> None:
        self.state = replace(self.state, **changes)

    def _normalize(self) -> None:
        """Clamp selection to the current list, following the selected id."""
        ids = self.visible_ids()
        if not ids:
            self._set(selected_index=NO_SELECTION, scroll_offset=0)
            self._selected_id = None
            return
        index = self.state.selected_index
        if self._selected_id in ids:
            index = ids.index(self._selected_id)
        index = min(max(index, 0), len(ids) - 1)
        self._selected_id = ids[index]
        self._set(selected_index=index)
        self._adjust_scroll(len(ids))

    def _adjust_scroll(self, length: int) -> None:
        index = self.state.selected_index
        height = self.viewport_height
        offset = self.state.scroll_offset
        if index < offset:
            offset = index
        elif index >= offset + height:
            offset = index - height + 1
        offset = max(0, min(offset, max(0, length - height)))
        self._set(scroll_offset=offset)

    def _status(self, text: str, severity: Severity = Severity.INFO, sticky: bool = False) -> None:
        self._set(status_message=StatusMessage(text, severity, sticky))

    def _clear_transient(self) -> None:
        message = self.state.status_message
        if message is not None and not message.sticky:
            self._set(status_message=None)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def set_viewport(self, height: int) -> None:
        self.viewport_height = max(1, height)
        self._normalize()

    def can(self, action: str) -> bool:
        """Whether an action is currently enabled."""
        view = self.view
        if action == "enter":
            return view.is_list and self.selected_id is not None
        if action == "back":
            return bool(self._frames)
        if action in ("set_filter", "filter"):
            return view is View.PROJECT_LIST
        if action == "fuzzy_find":
            return view.is_list and bool(self.visible_ids())
        if action == "load_more":
            # the first page would replace what the next page extends
            return self.next_page is not None and not self.is_refreshing
        if action == "open_in_browser":
            build = self.current_build()
            return build is not None and bool(build.web_url)
        if action == "view_log":
            build = self.current_build()
            return build is not None and build.log_available
        return True

    # -- transitions ------------------------------------------------------

    def start(self) -> None:
        """Kick off the initial hydration of the project list."""
        self.ensure_fresh()

    def enter(self) -> bool:
        """Drill into the selected item."""
        if not self.can("enter"):
            return False
        self._clear_transient()
        selected = self.selected_id
        self._frames.append(
            _Frame(
                view=self.view,
                selected_index=self.state.selected_index,
                scroll_offset=self.state.scroll_offset,
                filter_text=self.state.filter_text,
            )
        )
        self._set(
            view=self.view.next,
            breadcrumb=(*self.state.breadcrumb, selected),
            selected_index=0,
            scroll_offset=0,
            filter_text=None,
        )
        self._selected_id = None
        self._normalize()
        self.ensure_fresh()
        return True

    def back(self) -> bool:
        """Return to the previous view; a no-op on the project list."""
        if not self._frames:
            return False
        self._clear_transient()
        frame = self._frames.pop()
        self._set(
            view=frame.view,
            breadcrumb=self.state.breadcrumb[:-1],
            selected_index=frame.selected_index,
            scroll_offset=frame.scroll_offset,
            filter_text=frame.filter_text,
        )
        self._selected_id = None
        self._normalize()
        return True

    def move_selection(self, delta: int) -> None:
        """Move the selection, clamped to the list."""
        self._clear_transient()
        ids = self.visible_ids()
        if not ids:
            self._normalize()
            return
        index = self.state.selected_index
        index = min(max(index + delta, 0), len(ids) - 1)
        self._selected_id = ids[index]
        self._set(selected_index=index)
        self._adjust_scroll(len(ids))

    def move_to_start(self) -> None:
        self.move_selection(-len(self.visible_ids()))

    def move_to_end(self) -> None:
        self.move_selection(len(self.visible_ids()))

    def set_filter(self, text: Optional[str]) -> bool:
        """Filter the project list by name or id (case-insensitive)."""
        if not self.can("set_filter"):
            return False
        self._clear_transient()
        self._set(filter_text=text or None)
        self._normalize()
        return True

    def select_id(self, entity_id: str) -> bool:
        ids = self.visible_ids()
        if entity_id not in ids:
            return False
        self._selected_id = entity_id
        self._set(selected_index=ids.index(entity_id))
        self._adjust_scroll(len(ids))
        return True

    # -- background work --------------------------------------------------

    def _watch(self, future: "Future[FetchOutcome]", handler: Callable[[FetchOutcome], None]) -> None:
        future.add_done_callback(lambda f: self.dispatch(partial(self._finish, f, handler)))

    def _finish(self, future: "Future[FetchOutcome]", handler: Callable[[FetchOutcome], None]) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Background fetch crashed: %s", error, exc_info=error)
            self._status(f"Unexpected error: {error}", Severity.ERROR)
        else:
            handler(future.result())
        self._normalize()
        self._changed()

    def _progress(self, text: str) -> None:
        def show() -> None:
            message = self.state.status_message
            if message is not None and message.sticky:
                return
            self._status(text)
            self._changed()
        self.dispatch(show)

    def _submit_scope(self, kind: EntityKind, scope: Optional[str], page: Optional[str] = None) -> "Future[FetchOutcome]":
        if kind is EntityKind.PROJECT:
            return self.pipeline.submit_projects(self.project_filter, progress=self._progress)
        if kind is EntityKind.BUILD_CONFIG:
            return self.pipeline.submit_build_configs(scope, progress=self._progress)
        return self.pipeline.submit_builds(scope, page=page, progress=self._progress)

    def ensure_fresh(self) -> bool:
        """Refresh the current scope in the background if stale or missing."""
        kind, scope = self.scope()
        if self.cache.freshness(kind, scope) is Freshness.FRESH:
            return False
        if self.pipeline.in_flight(kind.value, scope):
            return False
        logger.debug("Opportunistic refresh of %s:%s", kind.value, scope)
        self._watch(self._submit_scope(kind, scope), self.apply_outcome)
        return True

    def request_refresh(self) -> None:
        """Refresh the current scope; joins an in-flight refresh if any."""
        self._clear_transient()
        kind, scope = self.scope()
        self._status("Refreshing...")
        self._watch(self._submit_scope(kind, scope), self.apply_outcome)

    def load_more(self) -> bool:
        """Fetch the next page of builds."""
        if not self.can("load_more"):
            return False
        token = self.next_page
        self._clear_transient()
        kind, scope = self.scope()
        self._status("Loading more builds...")
        self._watch(self._submit_scope(kind, scope, page=token), self.apply_outcome)
        return True

    def apply_outcome(self, outcome: FetchOutcome) -> None:
        """Fold a finished refresh into the status line."""
        if outcome.kind is EntityKind.BUILD and outcome.ok:
            self._next_pages[outcome.scope] = outcome.next_page
        if not outcome.ok:
            severity = Severity.WARNING if outcome.error is ErrorKind.CAPABILITY_DENIED else Severity.ERROR
            self._status(outcome.message, severity, sticky=outcome.error is ErrorKind.AUTH)
        else:
            # a success clears auth errors and progress text, nothing else
            message = self.state.status_message
            if message is not None and (message.sticky or message.text.endswith("...")):
                self._set(status_message=None)
        self._normalize()

    # -- external hand-offs -----------------------------------------------

    def open_in_browser(self) -> bool:
        """Open the current build's web page."""
        if not self.can("open_in_browser"):
            return False
        self._clear_transient()
        build = self.current_build()
        outcome = self.browser(build.web_url)
        self._status(
            outcome.message or ("Opened in browser" if outcome.ok else "Failed to open URL"),
            Severity.INFO if outcome.ok else Severity.WARNING,
        )
        return outcome.ok

    def view_log(self) -> bool:
        """Download the current build's log and show it in the pager."""
        if not self.can("view_log"):
            return False
        self._clear_transient()
        if self.bridge is None or not self.bridge.pager_available:
            self._status("Pager not available; cannot show log", Severity.WARNING)
            return False
        build_id = self.state.breadcrumb[2]
        self._status("Fetching log...")
        self._watch(
            self.pipeline.submit_log(build_id, progress=self._progress),
            partial(self._show_log, build_id),
        )
        return True

    def _show_log(self, build_id: str, outcome: FetchOutcome) -> None:
        if not outcome.ok:
            self._status(outcome.message, Severity.ERROR)
            return
        if self.view is not View.BUILD_DETAIL or self.state.breadcrumb[2] != build_id:
            self._set(status_message=None)
            return
        try:
            result = self.bridge.launch_pager(outcome.data or b"")
        except SubprocessUnavailable as e:
            self._status(e.message, Severity.WARNING)
            return
        if result.ok:
            self._set(status_message=None)
        else:
            self._status(result.message, Severity.WARNING)

    def fuzzy_find(self) -> bool:
        """Pick an item of the current list with the fuzzy finder."""
        if not self.can("fuzzy_find"):
            return False
        self._clear_transient()
        if self.bridge is None:
            self._status("Fuzzy search not available", Severity.WARNING)
            return False
        try:
            chosen = self.bridge.launch_fuzzy_finder(self.candidates())
        except SubprocessUnavailable as e:
            self._status(e.message, Severity.WARNING)
            return False
        if chosen is None:
            return False
        return self.select_id(chosen)

    def clear_cache(self) -> None:
        """Drop all cached data and start over from the project list."""
        self.cache.clear()
        self.cache.flush()
        self._frames.clear()
        self._next_pages.clear()
        self._selected_id = None
        self.state = NavigationState(status_message=StatusMessage("Cache cleared"))
        self._normalize()
        self.ensure_fresh()
