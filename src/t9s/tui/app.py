"""Main t9s TUI application."""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from rich.text import Text
from textual import on
from textual.app import App, ComposeResult, SuspendNotSupported
from textual.binding import Binding
from textual.containers import Vertical
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Input, Static

from t9s.bridge import InteractionBridge
from t9s.cache import CacheStore
from t9s.config import T9sConfig
from t9s.errors import SubprocessUnavailable
from t9s.fetch import FetchPipeline, FetchSettings, FetchWorker
from t9s.models import EntityKind
from t9s.navigation import NO_SELECTION, Navigator, Severity, StatusMessage, View
from t9s.teamcity import TeamCityClient


logger = logging.getLogger(__name__)

# Window in which a second "g" counts as "gg"
GG_TIMEOUT = 0.6

HELP_TEXT = """\
[b]Navigation[/b]
  j / k / arrows   Move selection
  g g / G          First / last item
  enter / l        Open selected item
  h / esc / bksp   Back

[b]Lists[/b]
  /                Filter projects
  f                Fuzzy find (fzf)
  r                Refresh current view
  m                Load more builds

[b]Build[/b]
  o                Open in browser
  v                View log in pager

[b]Other[/b]
  ctrl+x           Clear cache
  ?                This help
  q                Quit
"""


class ItemTable(DataTable, can_focus=False):
    """The list of the current view; the app owns its key handling."""


class HelpScreen(ModalScreen):
    """Modal listing the key bindings."""

    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("q", "close", "Close"),
        Binding("?", "close", "Close", show=False),
    ]

    CSS = """
    HelpScreen {
        align: center middle;
    }

    #help-dialog {
        width: 60;
        height: auto;
        padding: 1 2;
        background: $surface;
        border: solid $primary;
    }
    """

    def compose(self) -> ComposeResult:
        with Vertical(id="help-dialog"):
            yield Static(HELP_TEXT, id="help-text", markup=True)

    def action_close(self) -> None:
        self.dismiss()


class T9sApp(App):
    """Terminal browser for TeamCity projects, configurations and builds."""

    TITLE = "t9s"
    SUB_TITLE = "TeamCity browser"
    # keys go to the app bindings until the filter is opened
    AUTO_FOCUS = None

    CSS = """
    Screen {
        layout: vertical;
    }

    #breadcrumb {
        height: 1;
        padding: 0 1;
        background: $primary-darken-2;
    }

    #items {
        height: 1fr;
    }

    #empty {
        height: 1fr;
        padding: 1 2;
        color: $text-muted;
    }

    #filter-input {
        dock: bottom;
        margin-bottom: 2;
    }

    #status {
        height: 1;
        padding: 0 1;
        background: $surface-darken-1;
    }

    #status.warning {
        color: $warning;
    }

    #status.error {
        color: $error;
        text-style: bold;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit", show=True),
        Binding("enter", "enter", "Open", show=True),
        Binding("l", "enter", "Open", show=False),
        Binding("h", "back", "Back", show=False),
        Binding("escape", "back", "Back", show=True),
        Binding("backspace", "back", "Back", show=False),
        Binding("j", "move(1)", "Down", show=False),
        Binding("down", "move(1)", "Down", show=False),
        Binding("k", "move(-1)", "Up", show=False),
        Binding("up", "move(-1)", "Up", show=False),
        Binding("pagedown", "page(1)", "Page down", show=False),
        Binding("pageup", "page(-1)", "Page up", show=False),
        Binding("g", "go_top", "Top", show=False),
        Binding("G", "go_bottom", "Bottom", show=False),
        Binding("/", "filter", "Filter", show=True),
        Binding("f", "fuzzy_find", "Fuzzy", show=True),
        Binding("r", "refresh", "Refresh", show=True),
        Binding("m", "load_more", "More", show=True),
        Binding("o", "open_in_browser", "Browser", show=True),
        Binding("v", "view_log", "Log", show=True),
        Binding("ctrl+x", "clear_cache", "Clear cache", show=False),
        Binding("?", "help", "Help", show=True),
    ]

    # Bindings whose availability the navigator decides
    GATED_ACTIONS = {
        "enter": "enter",
        "back": "back",
        "filter": "set_filter",
        "fuzzy_find": "fuzzy_find",
        "load_more": "load_more",
        "open_in_browser": "open_in_browser",
        "view_log": "view_log",
    }

    def __init__(
        self,
        config: Optional[T9sConfig] = None,
        cache: Optional[CacheStore] = None,
        pipeline: Optional[FetchPipeline] = None,
        bridge: Optional[InteractionBridge] = None,
        browser: Optional[Callable] = None,
    ):
        super().__init__()
        self._config = config or T9sConfig.load()
        self.theme = self._config.theme

        if cache is None:
            cache = CacheStore.load(
                self._config.resolve_cache_path(),
                ttls={
                    EntityKind.PROJECT: self._config.cache_ttl,
                    EntityKind.BUILD_CONFIG: self._config.cache_ttl,
                    EntityKind.BUILD: self._config.build_ttl,
                },
            )
        if pipeline is None:
            api = TeamCityClient(
                self._config.base_url,
                self._config.token,
                timeout=self._config.request_timeout,
                page_size=self._config.page_size,
            )
            pipeline = FetchPipeline(
                api,
                cache,
                FetchSettings.from_config(self._config),
                worker=FetchWorker(self._config.fetch_workers),
            )
        if bridge is None:
            bridge = InteractionBridge(
                fzf_command=self._config.fzf_command,
                pager_command=self._config.resolve_pager(),
                handoff=self._terminal_handoff,
            )

        self.cache = cache
        self.pipeline = pipeline
        nav_kwargs = {"browser": browser} if browser is not None else {}
        self.navigator = Navigator(
            cache,
            pipeline,
            bridge=bridge,
            dispatch=self._dispatch,
            on_change=self._render_view,
            project_filter=tuple(self._config.projects),
            **nav_kwargs,
        )
        self._ui_thread: Optional[int] = None
        self._last_g: Optional[float] = None
        self._notified: Optional[StatusMessage] = None
        self._filtering = False

    def compose(self) -> ComposeResult:
        yield Header()
        yield Static("", id="breadcrumb")
        yield ItemTable(id="items", cursor_type="row", zebra_stripes=True)
        yield Static("", id="empty")
        yield Input(placeholder="Filter projects...", id="filter-input")
        yield Static("", id="status")
        yield Footer()

    def on_mount(self) -> None:
        self._ui_thread = threading.get_ident()
        self.query_one("#filter-input", Input).display = False
        self.set_focus(None)
        self.navigator.start()
        self._render_view()
        self.set_interval(1.0, self._render_status)

    def on_resize(self) -> None:
        table = self.query_one("#items", ItemTable)
        self.navigator.set_viewport(max(1, table.size.height - 1))

    # -- threading ----------------------------------------------------------

    def _dispatch(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on the UI thread."""
        if self._ui_thread is None or threading.get_ident() == self._ui_thread:
            callback()
            return
        try:
            self.call_from_thread(callback)
        except RuntimeError:
            logger.debug("App not running, dropped background callback")

    @contextmanager
    def _terminal_handoff(self) -> Iterator[None]:
        """Give the terminal to a subprocess for the duration of the block."""
        try:
            with self.suspend():
                yield
        except SuspendNotSupported as e:
            raise SubprocessUnavailable("Cannot hand over the terminal in this environment") from e
        self.refresh()

    # -- rendering ----------------------------------------------------------

    def _render_view(self) -> None:
        nav = self.navigator
        table = self.query_one("#items", ItemTable)
        empty = self.query_one("#empty", Static)

        self.sub_title = nav.title()
        crumbs = ["Projects", *nav.breadcrumb_labels()]
        self.query_one("#breadcrumb", Static).update(" > ".join(crumbs))

        table.clear(columns=True)
        table.add_columns(*nav.columns())
        if nav.view is View.BUILD_DETAIL:
            pairs = nav.detail()
            for name, value in pairs:
                table.add_row(Text(name, style="bold"), value)
            has_rows = bool(pairs)
        else:
            rows = nav.rows()
            for row in rows:
                style = "red" if row.failed else ""
                table.add_row(*(Text(cell, style=style) for cell in row.cells), key=row.id)
            has_rows = bool(rows)
            if nav.state.selected_index != NO_SELECTION:
                table.move_cursor(row=nav.state.selected_index)

        table.display = has_rows
        empty.display = not has_rows
        empty.update(nav.empty_message())
        self._render_status()
        self.refresh_bindings()

    def _render_status(self) -> None:
        nav = self.navigator
        status = self.query_one("#status", Static)
        message = nav.state.status_message
        text = message.text if message else ""
        if nav.is_refreshing and "..." not in text:
            text = f"{text}  (refreshing...)" if text else "Refreshing..."
        if nav.state.filter_text:
            text = f"filter: {nav.state.filter_text}  {text}"
        status.update(text)
        status.set_class(message is not None and message.severity is Severity.WARNING, "warning")
        status.set_class(message is not None and message.severity is Severity.ERROR, "error")
        if message is not None and message.severity is Severity.ERROR and message is not self._notified:
            self._notified = message
            self.notify(message.text, severity="error")

    def check_action(self, action: str, parameters: tuple[object, ...]) -> Optional[bool]:
        """Disable bindings the navigator reports as unavailable."""
        if action == "back" and self._filtering:
            return True
        gate = self.GATED_ACTIONS.get(action)
        if gate is not None and not self.navigator.can(gate):
            return None if action in ("load_more", "view_log", "open_in_browser") else False
        return True

    def _after(self) -> None:
        self._last_g = None
        self._render_view()

    # -- actions ------------------------------------------------------------

    def action_move(self, delta: int) -> None:
        self.navigator.move_selection(delta)
        self._after()

    def action_page(self, direction: int) -> None:
        self.navigator.move_selection(direction * self.navigator.viewport_height)
        self._after()

    def action_go_top(self) -> None:
        """First ``g`` arms, the second one jumps to the top."""
        now = time.monotonic()
        if self._last_g is not None and now - self._last_g <= GG_TIMEOUT:
            self.navigator.move_to_start()
            self._after()
            return
        self._last_g = now

    def action_go_bottom(self) -> None:
        self.navigator.move_to_end()
        self._after()

    def action_enter(self) -> None:
        self.navigator.enter()
        self._after()

    def action_back(self) -> None:
        if self._filtering:
            self._close_filter()
            return
        self.navigator.back()
        self._after()

    def action_filter(self) -> None:
        filter_input = self.query_one("#filter-input", Input)
        filter_input.value = self.navigator.state.filter_text or ""
        filter_input.display = True
        filter_input.focus()
        self._filtering = True
        self.refresh_bindings()

    def _close_filter(self) -> None:
        filter_input = self.query_one("#filter-input", Input)
        filter_input.display = False
        self.set_focus(None)
        self._filtering = False
        self._after()

    @on(Input.Changed, "#filter-input")
    def on_filter_changed(self, event: Input.Changed) -> None:
        self.navigator.set_filter(event.value)
        self._render_view()

    @on(Input.Submitted, "#filter-input")
    def on_filter_submitted(self, event: Input.Submitted) -> None:
        self._close_filter()

    def action_fuzzy_find(self) -> None:
        self.navigator.fuzzy_find()
        self._after()

    def action_refresh(self) -> None:
        self.navigator.request_refresh()
        self._after()

    def action_load_more(self) -> None:
        self.navigator.load_more()
        self._after()

    def action_open_in_browser(self) -> None:
        self.navigator.open_in_browser()
        message = self.navigator.state.status_message
        if message is not None:
            self.notify(message.text, severity=message.severity.value)
        self._after()

    def action_view_log(self) -> None:
        self.navigator.view_log()
        self._after()

    def action_clear_cache(self) -> None:
        self.navigator.clear_cache()
        self._after()

    def action_help(self) -> None:
        self.push_screen(HelpScreen())

    def action_quit(self) -> None:
        """Quit immediately; in-flight fetches are abandoned."""
        self.cache.flush(wait=False)
        self.pipeline.close()
        self.exit()


def run_tui(config: Optional[T9sConfig] = None) -> None:
    """Run the t9s TUI application."""
    app = T9sApp(config)
    app.run()


if __name__ == "__main__":
    run_tui()
