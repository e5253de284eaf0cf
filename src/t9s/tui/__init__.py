"""Textual user interface for t9s."""

from t9s.tui.app import T9sApp, run_tui

__all__ = ["T9sApp", "run_tui"]
