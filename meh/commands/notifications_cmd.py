"""
NotificationsCommand — What changed since this session last looked

    meh notifications                     unread, oldest first
    meh notifications ack 12 13 | all     mark read (idempotent)
    meh notifications subscribe ...       replace the session's filter
    meh notifications emit "CI failed"    publish an alert not tied to a fact

The session comes from --session, MEH_SESSION or core.session.
"""

from typing import List, Optional, Union

from ..commands.base import BaseCommand
from ..core.events import FactEvent, EventKind, Category, Priority
from ..presentation.formatters import format_notification
from ..utils.pagination import Paginator, add_pagination_args


COMMAND_NAME = 'notifications'


class NotificationsCommand(BaseCommand):

    def list(self, limit: int = 20, offset: int = 0, show_all: bool = False):
        unread = self.kb.notifications_get(self.session)
        paginator = Paginator(unread, limit=(len(unread) or 1) if show_all else limit, offset=offset)
        page = paginator.items()
        lines = [paginator.header("Unread notifications")]
        lines.extend(f"  {format_notification(n)}" for n in page)
        hint = paginator.summary("meh notifications")
        if hint:
            lines.append(hint)
        if page:
            lines.append(f"-> Mark read: meh notifications ack {' '.join(str(n.id) for n in page)}")
        self.emit({"notifications": [n.to_dict() for n in page], "unread": paginator.total}, lines)
        return page

    def ack(self, ids: Union[str, List[int]]):
        result = self.kb.notifications_ack(self.session, ids)
        lines = [f"Acknowledged {len(result.acknowledged)} notification(s)"]
        if result.ignored:
            lines.append(f"  already read or unknown: {', '.join(str(i) for i in result.ignored)}")
        self.emit(result.to_dict(), lines)
        return result

    def subscribe(self, categories: Optional[List[str]] = None,
                  paths: Optional[List[str]] = None, min_priority: str = "normal"):
        subscription = self.kb.notifications_subscribe(
            self.session, categories=categories, path_prefixes=paths, min_priority=min_priority,
        )
        lines = [
            f"Subscription for session '{self.session}':",
            f"  categories: {', '.join(c.value for c in subscription.categories) or 'all'}",
            f"  paths: {', '.join(subscription.path_prefixes) or 'all'}",
            f"  min priority: {subscription.min_priority.name.lower()}",
        ]
        self.emit(subscription.to_dict(), lines)
        return subscription

    def emit_alert(self, title: str, category: str = "custom", priority: str = "normal",
                   path: Optional[str] = None, summary: str = ""):
        event = FactEvent(
            kind=EventKind.ALERT,
            title=title,
            path=path,
            summary=summary,
            category=Category(category),
            priority=Priority.parse(priority),
        )
        self.kb.notify(event)
        self.emit(event.to_dict(), [f"Published: {title}"])
        return event


def register_parser(subparsers):
    """Register notifications parser with ack / subscribe / emit actions."""
    p = subparsers.add_parser('notifications', help='Show and acknowledge notifications')
    add_pagination_args(p)
    actions = p.add_subparsers(dest='action')

    ack = actions.add_parser('ack', help='Mark notifications read')
    ack.add_argument('ids', nargs='+', help="Notification ids, or 'all'")

    sub = actions.add_parser('subscribe', help="Replace this session's filter")
    sub.add_argument('--category', dest='categories', action='append',
                     choices=[c.value for c in Category], help='Category (repeatable)')
    sub.add_argument('--path', dest='paths', action='append', help='Path prefix (repeatable)')
    sub.add_argument('--min-priority', default='normal',
                     choices=[p.name.lower() for p in Priority], help='Minimum priority')

    emit = actions.add_parser('emit', help='Publish an alert')
    emit.add_argument('title', help='Alert title')
    emit.add_argument('--category', default='custom', choices=[c.value for c in Category])
    emit.add_argument('--priority', default='normal', choices=[p.name.lower() for p in Priority])
    emit.add_argument('--path', help='Related path')
    emit.add_argument('--summary', default='', help='Details')
    return p


def handle(cli, args):
    """Handle notifications dispatch."""
    cmd = cli._notifications_cmd
    action = getattr(args, 'action', None)
    if action == 'ack':
        if len(args.ids) == 1 and args.ids[0] == 'all':
            cmd.ack('all')
        else:
            cmd.ack([int(i) for i in args.ids])
    elif action == 'subscribe':
        cmd.subscribe(args.categories, args.paths, args.min_priority)
    elif action == 'emit':
        cmd.emit_alert(args.title, category=args.category, priority=args.priority,
                       path=args.path, summary=args.summary)
    else:
        cmd.list(limit=args.limit, offset=args.offset, show_all=args.show_all)
