"""
BrowseCommand — Walk the path hierarchy

- ls: immediate children of a path, with fact counts
- tree: every current fact beneath a path, in path order
"""

from typing import Optional

from ..commands.base import BaseCommand
from ..presentation.formatters import format_path_entry, format_fact_line
from ..utils.pagination import add_pagination_args, cursor_hint


COMMAND_NAMES = ['ls', 'tree']


class BrowseCommand(BaseCommand):

    def ls(self, path: Optional[str] = None, cursor: Optional[str] = None, limit: int = 50):
        page = self.kb.browse(path, cursor=cursor, limit=limit)
        lines = [format_path_entry(e) for e in page.entries] or [f"Nothing under {path or '@'}"]
        hint = cursor_hint(f"meh ls {path or ''}".rstrip(), page.next_cursor)
        if hint:
            lines.append(hint)
        self.emit({
            "entries": [e.to_dict() for e in page.entries],
            "next_cursor": page.next_cursor,
        }, lines)
        return page

    def tree(self, path: Optional[str] = None, cursor: Optional[str] = None, limit: int = 50):
        page = self.kb.browse(path, cursor=cursor, limit=limit, tree=True)
        lines = [format_fact_line(f) for f in page.facts] or [f"No facts under {path or '@'}"]
        hint = cursor_hint(f"meh tree {path or ''}".rstrip(), page.next_cursor)
        if hint:
            lines.append(hint)
        self.emit({
            "facts": [
                {"id": f.display_id, "path": f.path, "title": f.title, "status": f.status.value}
                for f in page.facts
            ],
            "next_cursor": page.next_cursor,
        }, lines)
        return page


def register_parser(subparsers):
    """Register ls and tree parsers."""
    p = subparsers.add_parser('ls', help='List the children of a path')
    p.add_argument('path', nargs='?', help='Path prefix (default: all roots)')
    add_pagination_args(p, default_limit=50, cursor=True)

    p = subparsers.add_parser('tree', help='List every fact beneath a path')
    p.add_argument('path', nargs='?', help='Path prefix (default: everything)')
    add_pagination_args(p, default_limit=50, cursor=True)
    return p


def handle(cli, args):
    """Handle ls / tree dispatch."""
    if args.command == 'ls':
        cli._browse_cmd.ls(args.path, cursor=args.cursor, limit=args.limit)
    else:
        cli._browse_cmd.tree(args.path, cursor=args.cursor, limit=args.limit)
