"""
CLI — Command interface over a KnowledgeBase

Thin by construction: parses arguments, opens the KB lazily, dispatches to
the command registry and turns MehError into `Error [<kind>]: <message>`
with exit status 1. Every command accepts --json for machine output.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from .config import ConfigManager
from .core.kb import KnowledgeBase
from .core.resolver import format_resolve_error
from .errors import MehError, NotFound
from .presentation.formatters import dumps, safe_print
from .commands.write_cmd import WriteCommand
from .commands.search_cmd import SearchCommand
from .commands.show_cmd import ShowCommand
from .commands.browse_cmd import BrowseCommand
from .commands.notifications_cmd import NotificationsCommand
from .commands.pending_cmd import PendingCommand
from .commands.maintenance_cmd import MaintenanceCommand
from .commands.config_cmd import ConfigCommand
from .commands.kbs_cmd import KbsCommand
from . import __version__


logger = logging.getLogger(__name__)

DEFAULT_SESSION = "cli"


class MehCLI:
    """Command-line interface for the meh knowledge store."""

    def __init__(self, project_dir: Path, data_dir: Optional[Path] = None,
                 json_output: bool = False, session: Optional[str] = None):
        self.project_dir = Path(project_dir)
        self.config_manager = ConfigManager(self.project_dir, data_dir=data_dir)
        self.config = self.config_manager.load()
        self.json_output = json_output
        self.session = session or self.config.core.session or DEFAULT_SESSION
        self._kb: Optional[KnowledgeBase] = None

        self._write_cmd = WriteCommand(self)
        self._search_cmd = SearchCommand(self)
        self._show_cmd = ShowCommand(self)
        self._browse_cmd = BrowseCommand(self)
        self._notifications_cmd = NotificationsCommand(self)
        self._pending_cmd = PendingCommand(self)
        self._maintenance_cmd = MaintenanceCommand(self)
        self._config_cmd = ConfigCommand(self)
        self._kbs_cmd = KbsCommand(self)

    @property
    def kb(self) -> KnowledgeBase:
        """Primary KB, opened on first use so `meh config` never creates stores."""
        if self._kb is None:
            self._kb = KnowledgeBase(
                self.config_manager.data_dir,
                config=self.config,
                project_dir=self.config_manager.project_dir,
            )
            logger.debug("opened knowledge base '%s' at %s", self._kb.name, self._kb.data_dir)
        return self._kb


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='meh',
        description="meh -- local-first knowledge store for humans and agents",
    )
    parser.add_argument(
        '--project', '-p',
        default=os.environ.get("MEH_PROJECT_PATH", "."),
        help='Project directory (default: MEH_PROJECT_PATH or current)'
    )
    parser.add_argument('--data-dir', help='Data directory (default: MEH_DATA_DIR or <project>/.meh)')
    parser.add_argument('--session', help='Session id for notifications (default: MEH_SESSION)')
    parser.add_argument('--json', action='store_true', help='Machine-readable output')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--version', '-V', action='version', version=f'meh {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    from .commands import register_all
    register_all(subparsers)
    return parser


def report_error(error: Exception, json_output: bool = False) -> None:
    """Print an error the way every command reports failure."""
    if isinstance(error, MehError):
        data = error.to_dict()
        text = format_resolve_error(error) if isinstance(error, NotFound) else error.message
        kind = error.kind
    else:
        data = {"kind": "invalid", "message": str(error)}
        text, kind = str(error), "invalid"
    if json_output:
        print(dumps({"error": data}))
    safe_print(f"Error [{kind}]: {text}", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the meh CLI.

    Returns the process exit status (0 on success, 1 on any error).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    from .commands import dispatch
    try:
        cli = MehCLI(
            Path(args.project),
            data_dir=Path(args.data_dir) if args.data_dir else None,
            json_output=args.json,
            session=args.session,
        )
        dispatch(args.command, cli, args)
    except (MehError, ValueError) as e:
        report_error(e, args.json)
        return 1
    except KeyError as e:
        print(f"Error: {e}", file=sys.stderr)
        parser.print_help()
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
