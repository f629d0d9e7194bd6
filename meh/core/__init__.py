"""
Core — Data layer for meh

Contains the foundational pieces:
- Fact / Path: the immutable unit of knowledge and its address
- Storage: append-only SQLite ledger with version chains and outbox
- Trust: read-time confidence scoring
- Search: FTS ranking, detail levels, cursors and token budgets
- Notifications: per-session event log with cursor and acks
- Pending / Policy: write modes and the review queue
- Resolver: id, prefix and path references with suggestions

The KnowledgeBase facade lives in core.kb and is imported from the package
root, since it depends on configuration and federation.
"""

from .fact import Fact, Status, AuthorKind, FactType, generate_summary, normalize_tags
from .path import KnowledgePath, normalize_path, normalize_prefix
from .events import FactEvent, EventKind, Category, Priority
from .sqlite import SQLiteStore, RetryPolicy
from .storage import FactStore, Vote, PathEntry, PathPage, FactPage, GcReport, StoreStats
from .trust import TrustCalculator, TrustConfig
from .search import SearchEngine, SearchQuery, SearchHit, SearchResponse, DetailLevel
from .notifications import NotificationStore, Notification, Subscription, AckResult
from .pending import PendingQueue, PendingWrite, PendingStatus, WriteOperation
from .policy import WriteGate, WriteMode, WriteOutcome
from .resolver import FactResolver, ResolveStatus, ResolveResult

__all__ = [
    'Fact', 'Status', 'AuthorKind', 'FactType', 'generate_summary', 'normalize_tags',
    'KnowledgePath', 'normalize_path', 'normalize_prefix',
    'FactEvent', 'EventKind', 'Category', 'Priority',
    'SQLiteStore', 'RetryPolicy',
    'FactStore', 'Vote', 'PathEntry', 'PathPage', 'FactPage', 'GcReport', 'StoreStats',
    'TrustCalculator', 'TrustConfig',
    'SearchEngine', 'SearchQuery', 'SearchHit', 'SearchResponse', 'DetailLevel',
    'NotificationStore', 'Notification', 'Subscription', 'AckResult',
    'PendingQueue', 'PendingWrite', 'PendingStatus', 'WriteOperation',
    'WriteGate', 'WriteMode', 'WriteOutcome',
    'FactResolver', 'ResolveStatus', 'ResolveResult',
]
