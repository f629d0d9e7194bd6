"""
Tests for pagination helpers — offset pages and cursor hints

These tests validate:
- Paginator slicing, indices and edge cases
- header() and summary() text
- cursor_hint() for cursor-paged commands
- add_pagination_args() / paginate_from_args() wiring
- Cursor encoding rejects malformed tokens
"""

import argparse

import pytest

from meh.errors import InvalidPath
from meh.utils.cursor import decode_cursor, encode_cursor
from meh.utils.pagination import (
    Paginator,
    add_pagination_args,
    cursor_hint,
    paginate_from_args,
)


class TestPaginator:
    """Offset slicing."""

    def test_first_page(self):
        paginator = Paginator(range(50))
        assert paginator.total == 50
        assert paginator.items() == list(range(20))
        assert paginator.has_more()

    def test_offset(self):
        paginator = Paginator(range(25), limit=10, offset=20)
        assert paginator.items() == [20, 21, 22, 23, 24]
        assert paginator.start_index == 21
        assert paginator.end_index == 25
        assert not paginator.has_more()

    def test_offset_beyond_total(self):
        paginator = Paginator(range(5), limit=10, offset=50)
        assert paginator.items() == []
        assert paginator.start_index == 5

    def test_empty(self):
        paginator = Paginator([])
        assert paginator.start_index == 0
        assert paginator.header("Pending writes") == "Pending writes: none"

    def test_nonpositive_limit_clamped(self):
        assert Paginator(range(5), limit=0).items() == [0]


class TestText:
    """header() and summary()."""

    def test_header_fits(self):
        assert Paginator(range(3)).header("Pending writes") == "Pending writes (3):"

    def test_header_partial(self):
        assert Paginator(range(45), limit=20, offset=20).header("Unread") == "Unread (21-40 of 45):"

    def test_summary(self):
        assert Paginator(range(45), limit=20).summary("meh pending") == "-> Next: meh pending --offset 20"

    def test_summary_last_page(self):
        assert Paginator(range(45), limit=20, offset=40).summary("meh pending") == ""

    def test_cursor_hint(self):
        assert cursor_hint("meh ls @project", "abc") == "-> Next: meh ls @project --cursor abc"
        assert cursor_hint("meh ls @project", None) == ""


class TestArgs:
    """argparse wiring."""

    def test_offset_flavor(self):
        parser = argparse.ArgumentParser()
        add_pagination_args(parser)
        args = parser.parse_args(["--limit", "5", "-o", "10"])
        paginator = paginate_from_args(range(30), args)
        assert paginator.items() == list(range(10, 15))

    def test_show_all(self):
        parser = argparse.ArgumentParser()
        add_pagination_args(parser)
        args = parser.parse_args(["--all"])
        assert len(paginate_from_args(range(30), args).items()) == 30

    def test_cursor_flavor(self):
        parser = argparse.ArgumentParser()
        add_pagination_args(parser, default_limit=50, cursor=True)
        args = parser.parse_args(["--cursor", "tok"])
        assert args.limit == 50
        assert args.cursor == "tok"
        assert not hasattr(args, "offset")

    def test_without_args(self):
        assert len(paginate_from_args(range(30), None).items()) == 20


class TestCursor:
    """Opaque resume tokens."""

    def test_roundtrip(self):
        key = {"path": "@project/db", "id": "01J"}
        assert decode_cursor(encode_cursor(key), required=("path",)) == key

    def test_empty(self):
        assert decode_cursor("") is None

    @pytest.mark.parametrize("token", ["not-a-cursor!", encode_cursor({"other": 1})])
    def test_malformed(self, token):
        with pytest.raises(InvalidPath):
            decode_cursor(token, required=("path",))
