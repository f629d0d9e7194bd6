"""
WriteCommand — add, correct, extend, deprecate, vote

Every write goes through the KB's write gate, so the same command may
apply immediately, be queued for review, or be refused depending on the
target KB's write mode.
"""

import sys
from typing import List, Optional

from ..commands.base import BaseCommand
from ..core.policy import WriteOutcome
from ..presentation.formatters import format_outcome


COMMAND_NAMES = ['add', 'correct', 'extend', 'deprecate', 'vote']


class WriteCommand(BaseCommand):

    def add(self, path: str, content: str, title: Optional[str] = None,
            tags: Optional[List[str]] = None, author_kind: str = "human",
            author_id: str = "", kb: Optional[str] = None) -> WriteOutcome:
        outcome = self.kb.add(path, content, tags=tags, title=title,
                              author_kind=author_kind, author_id=author_id, kb=kb)
        self._report(outcome)
        return outcome

    def correct(self, ref: str, content: str, title: Optional[str] = None,
                tags: Optional[List[str]] = None, author_kind: str = "human",
                author_id: str = "", kb: Optional[str] = None) -> WriteOutcome:
        outcome = self.kb.correct(ref, content, title=title, tags=tags,
                                  author_kind=author_kind, author_id=author_id, kb=kb)
        self._report(outcome)
        return outcome

    def extend(self, ref: str, content: str, title: Optional[str] = None,
               tags: Optional[List[str]] = None, author_kind: str = "human",
               author_id: str = "", kb: Optional[str] = None) -> WriteOutcome:
        outcome = self.kb.extend(ref, content, title=title, tags=tags,
                                 author_kind=author_kind, author_id=author_id, kb=kb)
        self._report(outcome)
        return outcome

    def deprecate(self, ref: str, reason: str = "", kb: Optional[str] = None) -> WriteOutcome:
        outcome = self.kb.deprecate(ref, reason=reason, kb=kb)
        self._report(outcome)
        return outcome

    def vote(self, refs: List[str], vote: int, reason: str = "",
             author_kind: str = "human", author_id: str = "",
             kb: Optional[str] = None) -> WriteOutcome:
        """Cast the same vote on each fact in `refs`, as one batch."""
        votes = [{"fact_id": ref, "vote": vote, "reason": reason} for ref in refs]
        outcome = self.kb.bulk_vote(votes, author_kind=author_kind, author_id=author_id, kb=kb)
        self._report(outcome)
        return outcome

    def _report(self, outcome: WriteOutcome) -> None:
        self.emit(outcome.to_dict(), format_outcome(outcome))


def _read_content(value: Optional[str]) -> str:
    """Content argument, or stdin when omitted or '-'."""
    if value is None or value == '-':
        return sys.stdin.read().strip()
    return value


def _tags(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [t.strip() for t in value.split(',') if t.strip()]


def _add_author_args(p):
    p.add_argument('--author-kind', choices=['human', 'agent', 'system'], default='human',
                   help='Who is writing (default: human)')
    p.add_argument('--author-id', default='', help='Author identifier (agent name, user)')


def register_parser(subparsers):
    """Register write command parsers."""
    p = subparsers.add_parser('add', help='Add a fact at a path')
    p.add_argument('path', help="Knowledge path (e.g. @project/db/engine)")
    p.add_argument('content', nargs='?', help="Fact content ('-' or omitted: read stdin)")
    p.add_argument('--title', help='Title (default: last path segment)')
    p.add_argument('--tags', help='Comma-separated tags')
    p.add_argument('--kb', help='Target knowledge base (default: primary)')
    _add_author_args(p)

    p = subparsers.add_parser('correct', help='Replace a fact with a corrected version')
    p.add_argument('ref', help='Fact id, id prefix, or @path')
    p.add_argument('content', nargs='?', help="Corrected content ('-' or omitted: read stdin)")
    p.add_argument('--title', help='New title (default: keep)')
    p.add_argument('--tags', help='Comma-separated tags (default: keep)')
    p.add_argument('--kb', help='Target knowledge base (default: primary)')
    _add_author_args(p)

    p = subparsers.add_parser('extend', help='Attach additional content to a fact')
    p.add_argument('ref', help='Fact id, id prefix, or @path')
    p.add_argument('content', nargs='?', help="Extension content ('-' or omitted: read stdin)")
    p.add_argument('--title', help='Extension title (default: "<target title> (extension)")')
    p.add_argument('--tags', help='Comma-separated tags')
    p.add_argument('--kb', help='Target knowledge base (default: primary)')
    _add_author_args(p)

    p = subparsers.add_parser('deprecate', help='Mark a fact as no longer valid')
    p.add_argument('ref', help='Fact id, id prefix, or @path')
    p.add_argument('--reason', default='', help='Why it is deprecated')
    p.add_argument('--kb', help='Target knowledge base (default: primary)')

    p = subparsers.add_parser('vote', help='Confirm (+1) or dispute (-1) facts')
    p.add_argument('refs', nargs='+', help='Fact ids, id prefixes, or @paths')
    direction = p.add_mutually_exclusive_group(required=True)
    direction.add_argument('--up', dest='vote', action='store_const', const=1, help='Vote +1')
    direction.add_argument('--down', dest='vote', action='store_const', const=-1, help='Vote -1')
    p.add_argument('--reason', default='', help='Why')
    p.add_argument('--kb', help='Target knowledge base (default: primary)')
    _add_author_args(p)
    return p


def handle(cli, args):
    """Handle write command dispatch."""
    cmd = cli._write_cmd
    if args.command == 'add':
        cmd.add(args.path, _read_content(args.content), title=args.title, tags=_tags(args.tags),
                author_kind=args.author_kind, author_id=args.author_id, kb=args.kb)
    elif args.command == 'correct':
        cmd.correct(args.ref, _read_content(args.content), title=args.title, tags=_tags(args.tags),
                    author_kind=args.author_kind, author_id=args.author_id, kb=args.kb)
    elif args.command == 'extend':
        cmd.extend(args.ref, _read_content(args.content), title=args.title, tags=_tags(args.tags),
                   author_kind=args.author_kind, author_id=args.author_id, kb=args.kb)
    elif args.command == 'deprecate':
        cmd.deprecate(args.ref, reason=args.reason, kb=args.kb)
    elif args.command == 'vote':
        cmd.vote(args.refs, args.vote, reason=args.reason,
                 author_kind=args.author_kind, author_id=args.author_id, kb=args.kb)
