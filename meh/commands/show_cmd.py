"""
ShowCommand — One fact with its version chain, extensions and votes
"""

from typing import Optional

from ..commands.base import BaseCommand
from ..presentation.formatters import format_detail


class ShowCommand(BaseCommand):

    def show(self, ref: str, kb: Optional[str] = None):
        detail = self.kb.get(ref, kb=kb)
        self.emit(detail.to_dict(), format_detail(detail))
        return detail


def register_parser(subparsers):
    """Register show command parser."""
    p = subparsers.add_parser('show', help='Show a fact by id, id prefix, or @path')
    p.add_argument('ref', help='Fact id (meh-...), id prefix (4+ chars), or @path')
    p.add_argument('--kb', help='Knowledge base (default: primary)')
    return p


def handle(cli, args):
    """Handle show command dispatch."""
    cli._show_cmd.show(args.ref, kb=args.kb)
