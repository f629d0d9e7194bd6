"""
meh utilities — Cross-cutting concerns

Reusable helpers that serve multiple commands and components.
"""

from .cursor import encode_cursor, decode_cursor
from .pagination import Paginator, add_pagination_args, paginate_from_args, cursor_hint

__all__ = [
    'encode_cursor', 'decode_cursor',
    'Paginator', 'add_pagination_args', 'paginate_from_args', 'cursor_hint',
]
