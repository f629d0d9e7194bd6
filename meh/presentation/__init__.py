"""
Presentation — How facts, hits and listings look in a terminal

Dependency direction: commands -> presentation -> core
"""

from .formatters import (
    safe_print, sanitize_control_chars, truncate, dumps,
    format_fact_line, format_hit, format_detail, format_path_entry,
    format_notification, format_pending, format_failures, format_outcome,
)

__all__ = [
    'safe_print', 'sanitize_control_chars', 'truncate', 'dumps',
    'format_fact_line', 'format_hit', 'format_detail', 'format_path_entry',
    'format_notification', 'format_pending', 'format_failures', 'format_outcome',
]
