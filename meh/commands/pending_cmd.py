"""
PendingCommand — Review writes queued by KBs in 'ask' mode

    meh pending                     waiting writes
    meh pending --status rejected   history
    meh pending approve <id>        apply (exactly once)
    meh pending reject <id>         discard, keeping the entry
"""

from typing import Optional

from ..commands.base import BaseCommand
from ..core.pending import PendingStatus
from ..presentation.formatters import format_pending, format_outcome
from ..utils.pagination import add_pagination_args, paginate_from_args


COMMAND_NAME = 'pending'


class PendingCommand(BaseCommand):

    def list(self, status: Optional[str] = "pending", args=None):
        entries = self.kb.pending_list(status)
        paginator = paginate_from_args(entries, args)
        title = f"{status.capitalize()} writes" if status else "Queued writes"
        lines = [paginator.header(title)]
        lines.extend(f"  {format_pending(e)}" for e in paginator.items())
        hint = paginator.summary("meh pending")
        if hint:
            lines.append(hint)
        self.emit({"pending": [e.to_dict() for e in paginator.items()], "total": paginator.total}, lines)
        return paginator.items()

    def approve(self, ref: str):
        outcome = self.kb.pending_approve(ref)
        lines = [f"Approved {outcome.pending.id if outcome.pending else ref}"]
        lines.extend(format_outcome(outcome))
        self.emit(outcome.to_dict(), lines)
        return outcome

    def reject(self, ref: str, reason: Optional[str] = None):
        entry = self.kb.pending_reject(ref, reason)
        self.emit(entry.to_dict(), [f"Rejected {entry.id}: {entry.describe()}"])
        return entry


def register_parser(subparsers):
    """Register pending parser with approve / reject actions."""
    p = subparsers.add_parser('pending', help='Review queued writes')
    p.add_argument('--status', default='pending',
                   choices=[s.value for s in PendingStatus] + ['all'],
                   help='Filter by status (default: pending)')
    add_pagination_args(p)
    actions = p.add_subparsers(dest='action')

    approve = actions.add_parser('approve', help='Apply a queued write')
    approve.add_argument('id', help='Pending id (or 4+ char prefix)')

    reject = actions.add_parser('reject', help='Discard a queued write')
    reject.add_argument('id', help='Pending id (or 4+ char prefix)')
    reject.add_argument('--reason', help='Why')
    return p


def handle(cli, args):
    """Handle pending dispatch."""
    cmd = cli._pending_cmd
    action = getattr(args, 'action', None)
    if action == 'approve':
        cmd.approve(args.id)
    elif action == 'reject':
        cmd.reject(args.id, reason=args.reason)
    else:
        cmd.list(None if args.status == 'all' else args.status, args=args)
