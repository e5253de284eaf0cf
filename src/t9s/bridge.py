"""Hand-off to external programs: fuzzy finder, pager and browser.

Each subprocess takes over the terminal, so the UI hands the screen over
(``App.suspend()`` in the TUI) before launching it and reclaims it after,
on every exit path.
"""

import contextlib
import logging
import shlex
import shutil
import subprocess
import webbrowser
from dataclasses import dataclass
from typing import Callable, ContextManager, Optional, Sequence

from t9s.errors import SubprocessUnavailable


logger = logging.getLogger(__name__)

# fzf exit codes
FZF_NO_MATCH = 1
FZF_CANCELLED = 130

TerminalHandoff = Callable[[], ContextManager]


@dataclass(frozen=True)
class ProcessOutcome:
    """Result of a pager or browser hand-off."""

    ok: bool
    message: str = ""
    returncode: Optional[int] = None


def open_url(url: str) -> ProcessOutcome:
    """Open a URL in the system browser."""
    if not url:
        return ProcessOutcome(False, "No URL available")
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        logger.warning("Failed to open %s: %s", url, e)
        return ProcessOutcome(False, f"Failed to open URL: {e}")
    if not opened:
        return ProcessOutcome(False, "No browser available to open URL")
    return ProcessOutcome(True, f"Opening {url[:50]}...")


class InteractionBridge:
    """Runs fzf and the pager on behalf of the navigator."""

    def __init__(
        self,
        fzf_command: str = "fzf",
        pager_command: str = "less -R",
        handoff: Optional[TerminalHandoff] = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self.fzf_command = shlex.split(fzf_command)
        self.pager_command = shlex.split(pager_command)
        self.handoff = handoff or contextlib.nullcontext
        self._run = run
        self._which = which

    @property
    def fuzzy_available(self) -> bool:
        return bool(self.fzf_command) and self._which(self.fzf_command[0]) is not None

    @property
    def pager_available(self) -> bool:
        return bool(self.pager_command) and self._which(self.pager_command[0]) is not None

    def launch_fuzzy_finder(self, candidates: Sequence[tuple[str, str]]) -> Optional[str]:
        """Let the user pick one candidate with fzf.

        Args:
            candidates: ``(id, label)`` pairs in display order.

        Returns:
            The id of the chosen candidate, or None when the user cancelled
            or nothing matched.

        Raises:
            SubprocessUnavailable: fzf is not installed or failed.
        """
        if not self.fuzzy_available:
            raise SubprocessUnavailable(
                f"{self.fzf_command[0] if self.fzf_command else 'fzf'} not installed; fuzzy search disabled"
            )
        by_label: dict[str, str] = {}
        for entity_id, label in candidates:
            by_label.setdefault(_one_line(label), entity_id)
        if not by_label:
            return None

        stdin = "\n".join(by_label) + "\n"
        try:
            with self.handoff():
                result = self._run(
                    self.fzf_command,
                    input=stdin,
                    stdout=subprocess.PIPE,
                    text=True,
                    check=False,
                )
        except OSError as e:
            logger.warning("Failed to run %s: %s", self.fzf_command, e)
            raise SubprocessUnavailable(f"Failed to run fzf: {e}") from e

        if result.returncode in (FZF_NO_MATCH, FZF_CANCELLED):
            return None
        if result.returncode != 0:
            raise SubprocessUnavailable(f"fzf exited with status {result.returncode}")
        chosen = (result.stdout or "").rstrip("\n")
        return by_label.get(chosen)

    def launch_pager(self, text: bytes) -> ProcessOutcome:
        """Show ``text`` in the pager.

        Raises:
            SubprocessUnavailable: The pager is not installed.
        """
        if not self.pager_available:
            raise SubprocessUnavailable(
                f"Pager {self.pager_command[0] if self.pager_command else ''!r} not installed"
            )
        try:
            with self.handoff():
                result = self._run(self.pager_command, input=text, check=False)
        except OSError as e:
            logger.warning("Failed to run pager %s: %s", self.pager_command, e)
            raise SubprocessUnavailable(f"Failed to run pager: {e}") from e
        if result.returncode != 0:
            return ProcessOutcome(False, f"Pager exited with status {result.returncode}", result.returncode)
        return ProcessOutcome(True, "", 0)


def _one_line(label: str) -> str:
    return " ".join(label.split())
