"""t9s - a terminal browser for TeamCity."""

__version__ = "0.1.0"
