"""
BaseCommand — Shared foundation for all CLI commands

Commands receive the CLI instance and reach its resources through
properties; they never open stores themselves.
"""

from typing import Any, Iterable, TYPE_CHECKING

from ..presentation.formatters import safe_print, dumps

if TYPE_CHECKING:
    from ..cli import MehCLI


class BaseCommand:
    """Base class for CLI commands with access to shared resources."""

    def __init__(self, cli: 'MehCLI'):
        self._cli = cli

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    @property
    def kb(self):
        """KnowledgeBase for the project (opened on first use)."""
        return self._cli.kb

    @property
    def config(self):
        return self._cli.config

    @property
    def config_manager(self):
        return self._cli.config_manager

    @property
    def session(self):
        """Session id for notifications and onboarding, if any."""
        return self._cli.session

    @property
    def json_output(self) -> bool:
        return self._cli.json_output

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def emit(self, data: Any, lines: Iterable[str] = ()) -> None:
        """Print `data` as JSON under --json, otherwise the text lines."""
        if self.json_output:
            print(dumps(data))
            return
        for line in lines:
            safe_print(line)
