"""
Formatters — Data-to-string transformations for CLI output

Fact content is written by agents and remote servers, so everything shown
passes through sanitize_control_chars() before it reaches the terminal.

JSON output (--json) goes through orjson; text output is line oriented:

    meh-01J8...  @project/db/engine  Database engine  [active, trust 0.84]
"""

import sys
from typing import Any, List, Optional

import orjson

from ..core.fact import Fact, Status
from ..core.search import SearchHit, DetailLevel
from ..core.storage import PathEntry
from ..core.notifications import Notification
from ..core.pending import PendingWrite
from ..core.policy import WriteOutcome
from ..errors import PartialFailure


SUMMARY_LENGTH = 120
DATE_DISPLAY_LENGTH = 10


# =============================================================================
# Safe output
# =============================================================================

def sanitize_control_chars(text: str) -> str:
    """Strip control characters except tab, newline and carriage return."""
    if not text:
        return text
    return ''.join(c for c in text if ord(c) >= 32 or c in '\t\n\r')


def safe_print(text: str, end: str = '\n', file=None) -> None:
    """Print untrusted text, degrading unencodable characters to '?'."""
    file = file or sys.stdout
    text = sanitize_control_chars(text)
    try:
        print(text, end=end, file=file)
    except UnicodeEncodeError:
        encoding = getattr(file, 'encoding', 'utf-8') or 'utf-8'
        print(text.encode(encoding, errors='replace').decode(encoding), end=end, file=file)


def dumps(data: Any) -> str:
    """Pretty JSON for --json output."""
    return orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS).decode()


def truncate(text: str, length: int = SUMMARY_LENGTH, full: bool = False) -> str:
    if full or not text or len(text) <= length:
        return text or ""
    return text[:length - 3].rstrip() + "..."


# =============================================================================
# Facts and search hits
# =============================================================================

def _status_label(fact: Fact, trust: Optional[float] = None) -> str:
    parts = [fact.status.value]
    if trust is not None:
        parts.append(f"trust {trust:.2f}")
    return f"[{', '.join(parts)}]"


def format_fact_line(fact: Fact, trust: Optional[float] = None) -> str:
    return f"{fact.display_id}  {fact.path}  {truncate(fact.title, 60)}  {_status_label(fact, trust)}"


def format_hit(hit: SearchHit, detail: DetailLevel = DetailLevel.L2, show_source: bool = False) -> List[str]:
    """Lines for one search hit at the requested detail level."""
    head = format_fact_line(hit.fact, hit.trust)
    if show_source:
        head += f"  ({hit.source})"
    lines = [head]
    if detail >= DetailLevel.L2 and hit.fact.summary:
        lines.append(f"    {truncate(hit.fact.summary)}")
    if detail >= DetailLevel.L3:
        if hit.fact.tags:
            lines.append(f"    tags: {', '.join(hit.fact.tags)}")
        for line in hit.fact.content.splitlines():
            lines.append(f"    | {line}")
    return lines


def format_detail(detail) -> List[str]:
    """Full view of a FactDetail (meh show)."""
    fact = detail.fact
    lines = [
        f"{fact.display_id}  {fact.path}",
        f"  {fact.title}",
        f"  status: {fact.status.value}   trust: {detail.trust:.2f}   "
        f"by: {fact.author_kind.value}{':' + fact.author_id if fact.author_id else ''}",
        f"  created: {fact.created_at}",
    ]
    if fact.tags:
        lines.append(f"  tags: {', '.join(fact.tags)}")
    if fact.status == Status.DEPRECATED and fact.deprecation_reason:
        lines.append(f"  deprecated: {fact.deprecation_reason}")
    lines.append("")
    lines.extend(f"  {line}" for line in fact.content.splitlines())

    if len(detail.history) > 1:
        lines.append("")
        lines.append("History:")
        for version in detail.history:
            marker = "*" if version.id == fact.id else " "
            lines.append(f" {marker} {version.display_id}  {version.status.value}  "
                         f"{version.created_at[:DATE_DISPLAY_LENGTH]}")
    if detail.extensions:
        lines.append("")
        lines.append("Extensions:")
        for ext in detail.extensions:
            lines.append(f"  {ext.display_id}  {truncate(ext.title or ext.summary, 80)}")
    if detail.votes_up or detail.votes_down:
        lines.append("")
        lines.append(f"Votes: +{detail.votes_up} / -{detail.votes_down}")
    return lines


def format_path_entry(entry: PathEntry) -> str:
    marker = "/" if entry.has_children else ""
    kind = "fact" if entry.has_fact else "dir"
    return f"{entry.path}{marker}  ({kind}, {entry.fact_count} fact{'s' if entry.fact_count != 1 else ''})"


# =============================================================================
# Notifications, pending writes, write outcomes
# =============================================================================

def format_notification(n: Notification) -> str:
    where = f"  {n.path}" if n.path else ""
    return (f"#{n.id}  [{n.category.value}/{n.priority.name.lower()}]  "
            f"{truncate(n.title, 80)}{where}  {n.created_at[:DATE_DISPLAY_LENGTH]}")


def format_pending(entry: PendingWrite) -> str:
    line = f"{entry.id}  {entry.kb}  {entry.describe()}  [{entry.status.value}]"
    if entry.reason:
        line += f"  reason: {truncate(entry.reason, 60)}"
    return line


def format_outcome(outcome: WriteOutcome) -> List[str]:
    if outcome.queued:
        return [
            f"Queued for review in '{outcome.kb}': {outcome.pending.describe()}",
            f"  pending id: {outcome.pending.id}",
            f"-> Approve: meh pending approve {outcome.pending.id}",
        ]
    verb = outcome.operation.value.replace("_", " ")
    return [f"{verb}: {format_fact_line(f)}" for f in outcome.facts]


def format_failures(failures: PartialFailure) -> List[str]:
    if not failures:
        return []
    lines = [f"Partial results: {len(failures)} source(s) did not answer"]
    for failure in failures.failures:
        lines.append(f"  {failure.source}: {failure.kind}: {truncate(failure.message, 100)}")
    return lines
