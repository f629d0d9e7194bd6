"""
Tests for formatters — terminal and JSON rendering

These tests validate:
- Control characters from untrusted content never reach the terminal
- Fact, hit, notification and outcome lines
- Partial-failure reporting
"""

from meh.core.events import Category, EventKind, Priority
from meh.core.fact import Fact, Status
from meh.core.notifications import Notification
from meh.core.pending import PendingWrite, WriteOperation
from meh.core.policy import WriteOutcome
from meh.core.search import DetailLevel, SearchHit
from meh.errors import PartialFailure
from meh.presentation.formatters import (
    dumps, format_fact_line, format_failures, format_hit, format_notification,
    format_outcome, safe_print, sanitize_control_chars, truncate,
)


FACT = Fact(id="01JABC", path="@project/db", title="Database", content="Line one\nLine two",
            summary="Line one Line two", tags=["database"])


class TestSafeOutput:

    def test_strips_escape_sequences(self):
        assert sanitize_control_chars("ok\x1b[31mred\x07") == "ok[31mred"

    def test_keeps_whitespace(self):
        assert sanitize_control_chars("a\tb\nc") == "a\tb\nc"

    def test_safe_print(self, capsys):
        safe_print("hello\x00 world")
        assert capsys.readouterr().out == "hello world\n"

    def test_truncate(self):
        assert truncate("x" * 200, 10) == "xxxxxxx..."
        assert truncate("short", 10) == "short"
        assert truncate(None) == ""

    def test_dumps_indented(self):
        assert dumps({"a": 1}) == '{\n  "a": 1\n}'


class TestLines:

    def test_fact_line(self):
        assert format_fact_line(FACT, 0.8412) == "meh-01JABC  @project/db  Database  [active, trust 0.84]"

    def test_hit_levels(self):
        hit = SearchHit(fact=FACT, relevance=1.0, trust=0.5)
        assert len(format_hit(hit, DetailLevel.L1)) == 1
        assert format_hit(hit, DetailLevel.L2)[1] == "    Line one Line two"
        l3 = format_hit(hit, DetailLevel.L3)
        assert "    tags: database" in l3
        assert "    | Line two" in l3

    def test_hit_source(self):
        hit = SearchHit(fact=FACT, relevance=1.0, trust=0.5, source="shared")
        assert format_hit(hit, DetailLevel.L0, show_source=True)[0].endswith("(shared)")

    def test_notification(self):
        n = Notification(id=7, kind=EventKind.CORRECTED, title="Corrected: Database",
                         category=Category.FACTS, priority=Priority.HIGH,
                         created_at="2026-01-15T12:00:00.000000+00:00", path="@project/db")
        assert format_notification(n) == "#7  [facts/high]  Corrected: Database  @project/db  2026-01-15"


class TestOutcome:

    def test_applied(self):
        deprecated = Fact(id="01JABC", path="@p", title="T", content="c", status=Status.DEPRECATED)
        outcome = WriteOutcome(kb="local", operation=WriteOperation.DEPRECATE, applied=True,
                               facts=[deprecated])
        assert format_outcome(outcome) == ["deprecate: meh-01JABC  @p  T  [deprecated]"]

    def test_queued(self):
        entry = PendingWrite(id="01JPENDING", kb="local", operation=WriteOperation.ADD,
                             payload={"path": "@p", "content": "c", "title": "T"},
                             submitted_at="2026-01-15T12:00:00.000000+00:00")
        lines = format_outcome(WriteOutcome(kb="local", operation=WriteOperation.ADD,
                                            applied=False, pending=entry))
        assert lines[0] == "Queued for review in 'local': add @p: T"
        assert lines[-1] == "-> Approve: meh pending approve 01JPENDING"

    def test_failures(self):
        assert format_failures(PartialFailure()) == []
        failures = PartialFailure()
        failures.add("shared", "timeout", "no answer")
        assert format_failures(failures) == [
            "Partial results: 1 source(s) did not answer",
            "  shared: timeout: no answer",
        ]
