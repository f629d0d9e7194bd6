"""
SearchCommand — Ranked search of the primary KB, or of every KB (--federated)

Output is shaped by the detail level (L0 ids and paths ... L3 full
content), cut to --limit and to the token budget. Single-KB pages carry a
cursor for the next page. Federated results are a single page and report
sources that failed instead of failing the whole query.
"""

from typing import List, Optional

from ..commands.base import BaseCommand
from ..core.search import DetailLevel
from ..presentation.formatters import format_hit, format_failures, truncate
from ..utils.pagination import cursor_hint


class SearchCommand(BaseCommand):

    def search(self, text: Optional[str] = None, federated: bool = False,
               sources: Optional[List[str]] = None, **options):
        if federated:
            response = self.kb.federated_search(text, sources=sources, **options)
        else:
            response = self.kb.search(text, session_id=self.session, **options)

        if self.json_output:
            self.emit(response.to_dict())
            return response

        detail = response.detail
        lines = []
        onboarding = getattr(response, "onboarding", None)
        if onboarding is not None:
            lines.append(f"Welcome ({onboarding.path}): {onboarding.title}")
            lines.extend(f"  {line}" for line in onboarding.content.splitlines())
            lines.append("")

        if not response.hits:
            lines.append(f"No facts match{' ' + repr(text) if text else ''}.")
        else:
            lines.append(f"Results ({len(response.hits)} of {response.total}):")
            for hit in response.hits:
                lines.extend(format_hit(hit, detail, show_source=federated))

        if response.truncated:
            lines.append("(cut to the token budget; raise --budget or lower --detail for more)")
        if federated:
            lines.extend(format_failures(response.failures))
        else:
            hint = cursor_hint(f"meh search {truncate(text or '', 40)!r}", response.next_cursor)
            if hint:
                lines.append(hint)
            if response.unread_notifications:
                lines.append(f"{response.unread_notifications} unread notification(s): meh notifications")
        self.emit(None, lines)
        return response


def register_parser(subparsers):
    """Register search command parser."""
    p = subparsers.add_parser('search', help='Search facts by text, path, tags and trust')
    p.add_argument('text', nargs='?', help='Search text (omit to list by trust and recency)')
    p.add_argument('--path', dest='path_prefix', help='Only facts under this path')
    p.add_argument('--tag', dest='tags', action='append', default=[],
                   help='Require tag (repeatable)')
    p.add_argument('--min-trust', type=float, help='Minimum trust score (0..1)')
    p.add_argument('--active', dest='active_only', action='store_true',
                   help='Only active facts (hide deprecated)')
    p.add_argument('--history', dest='include_history', action='store_true',
                   help='Include superseded versions')
    p.add_argument('--detail', default='L2', help='Detail level L0-L3 (default: L2)')
    p.add_argument('--limit', '-l', type=int, help='Maximum results')
    p.add_argument('--cursor', help='Continue from a previous page (not with --federated)')
    p.add_argument('--budget', dest='token_budget', type=int,
                   help='Token budget for the response (0: unlimited)')
    p.add_argument('--federated', '-f', action='store_true',
                   help='Search every configured knowledge base')
    p.add_argument('--sources', help='Comma-separated KBs for --federated (default: search order)')
    return p


def handle(cli, args):
    """Handle search command dispatch."""
    sources = [s.strip() for s in args.sources.split(',') if s.strip()] if args.sources else None
    options = dict(
        path_prefix=args.path_prefix,
        tags=args.tags,
        min_trust=args.min_trust,
        active_only=args.active_only,
        include_history=args.include_history,
        detail=DetailLevel.parse(args.detail),
        limit=args.limit,
        token_budget=args.token_budget,
        cursor=args.cursor,
    )
    cli._search_cmd.search(args.text, federated=args.federated, sources=sources, **options)
