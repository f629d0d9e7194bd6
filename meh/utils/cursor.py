"""
Resume tokens for keyset pagination

A cursor is the sort key of the last item a page returned, serialized with
orjson and base64url-encoded so callers treat it as opaque.
"""

import base64
import binascii
from typing import Any, Dict, Iterable, Optional

import orjson

from ..errors import InvalidPath


def encode_cursor(key: Dict[str, Any]) -> str:
    return base64.urlsafe_b64encode(orjson.dumps(key)).decode().rstrip("=")


def decode_cursor(token: Optional[str], required: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
    """
    Decode a cursor produced by encode_cursor().

    Returns None for an empty token.

    Raises:
        InvalidPath: token is not a cursor or lacks a required key
    """
    if not token:
        return None
    padded = token + "=" * (-len(token) % 4)
    try:
        data = orjson.loads(base64.urlsafe_b64decode(padded.encode()))
    except (binascii.Error, ValueError, orjson.JSONDecodeError) as e:
        raise InvalidPath(f"Malformed cursor: {e}", operation="decode_cursor", target=token) from e
    if not isinstance(data, dict) or any(k not in data for k in required):
        raise InvalidPath("Malformed cursor", operation="decode_cursor", target=token)
    return data
