"""
Pagination — Shared list paging for CLI commands

Two flavors:
- cursor pages (search, ls, tree): the store returns an opaque next cursor,
  the CLI prints how to continue
- offset pages (pending, notifications): small in-memory lists sliced here

Usage:
    page = kb.browse(args.path, cursor=args.cursor, limit=args.limit)
    print(cursor_hint("meh ls @project", page.next_cursor))

    paginator = paginate_from_args(entries, args)
    print(paginator.header("Pending writes"))
"""

import argparse
from typing import Any, Iterable, List, Optional


DEFAULT_LIMIT = 20


class Paginator:
    """Offset slicing with "Showing X-Y of Z" summaries."""

    def __init__(self, items: Iterable[Any], limit: int = DEFAULT_LIMIT, offset: int = 0):
        self._all_items = list(items)
        self._limit = max(1, limit)
        self._offset = max(0, offset)

    @property
    def total(self) -> int:
        return len(self._all_items)

    @property
    def start_index(self) -> int:
        """1-based start index for display."""
        if self.total == 0:
            return 0
        return min(self._offset + 1, self.total)

    @property
    def end_index(self) -> int:
        return min(self._offset + self._limit, self.total)

    def items(self) -> List[Any]:
        return self._all_items[self._offset:self._offset + self._limit]

    def has_more(self) -> bool:
        return self._offset + self._limit < self.total

    def header(self, title: str) -> str:
        """'Pending writes (3):' or 'Pending writes (1-20 of 45):'."""
        if self.total == 0:
            return f"{title}: none"
        if self.total <= self._limit and self._offset == 0:
            return f"{title} ({self.total}):"
        return f"{title} ({self.start_index}-{self.end_index} of {self.total}):"

    def summary(self, command_hint: Optional[str] = None) -> str:
        if not (command_hint and self.has_more()):
            return ""
        return f"-> Next: {command_hint} --offset {self._offset + self._limit}"


def cursor_hint(command_hint: str, next_cursor: Optional[str]) -> str:
    """How to fetch the next cursor page, or '' on the last page."""
    if not next_cursor:
        return ""
    return f"-> Next: {command_hint} --cursor {next_cursor}"


def add_pagination_args(parser: argparse.ArgumentParser, default_limit: int = DEFAULT_LIMIT,
                        cursor: bool = False):
    """
    Add --limit plus --cursor (cursor pages) or --offset/--all (offset pages).
    """
    group = parser.add_argument_group('pagination')
    group.add_argument(
        '--limit', '-l', type=int, default=default_limit, metavar='N',
        help=f'Maximum items to show (default: {default_limit})'
    )
    if cursor:
        group.add_argument(
            '--cursor', metavar='TOKEN',
            help='Resume after the last item of a previous page'
        )
    else:
        group.add_argument(
            '--offset', '-o', type=int, default=0, metavar='N',
            help='Skip first N items (default: 0)'
        )
        group.add_argument(
            '--all', '-a', action='store_true', dest='show_all',
            help='Show all items (ignores --limit)'
        )


def paginate_from_args(items: Iterable[Any], args) -> Paginator:
    """Paginator honoring --limit, --offset and --all."""
    items_list = list(items)
    if getattr(args, 'show_all', False):
        return Paginator(items_list, limit=len(items_list) or 1, offset=0)
    return Paginator(
        items_list,
        limit=getattr(args, 'limit', DEFAULT_LIMIT),
        offset=getattr(args, 'offset', 0),
    )
