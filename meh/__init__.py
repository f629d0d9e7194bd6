"""
meh — Local-first, append-only knowledge store for agents and humans

Facts are never edited in place: corrections supersede, extensions annotate,
deprecations retire. Everything stays searchable with its history.

Usage:
    meh add @project/api/timeout "Requests time out after 30s"
    meh search "timeout"
    meh show @project/api/timeout
    meh correct meh-01HQ... "Requests time out after 60s"
    meh notifications
    meh pending approve 01HQ...
    meh gc --dry-run
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    MehError, NotFound, AmbiguousReference, InvalidPath, AlreadySuperseded,
    AlreadyResolved, WriteForbidden, Timeout, RemoteError, PartialFailure,
)

# Core layer (data)
from .core.fact import Fact, Status, AuthorKind, FactType
from .core.path import KnowledgePath
from .core.storage import FactStore, Vote
from .core.search import SearchQuery, SearchResponse, DetailLevel
from .core.trust import TrustCalculator, TrustConfig
from .core.notifications import NotificationStore, Subscription
from .core.pending import PendingQueue, PendingWrite, PendingStatus
from .core.policy import WriteGate, WriteMode, WriteOutcome

# Config (stays at root)
from .config import Config, ConfigManager, get_config

# Facade
from .core.kb import KnowledgeBase, FactDetail, KbStats

# Federation
from .federation import FederatedCoordinator, FederatedResponse, RemoteClient

__all__ = [
    # Errors
    'MehError', 'NotFound', 'AmbiguousReference', 'InvalidPath', 'AlreadySuperseded',
    'AlreadyResolved', 'WriteForbidden', 'Timeout', 'RemoteError', 'PartialFailure',
    # Core
    'Fact', 'Status', 'AuthorKind', 'FactType', 'KnowledgePath',
    'FactStore', 'Vote',
    'SearchQuery', 'SearchResponse', 'DetailLevel',
    'TrustCalculator', 'TrustConfig',
    'NotificationStore', 'Subscription',
    'PendingQueue', 'PendingWrite', 'PendingStatus',
    'WriteGate', 'WriteMode', 'WriteOutcome',
    # Config
    'Config', 'ConfigManager', 'get_config',
    # Facade
    'KnowledgeBase', 'FactDetail', 'KbStats',
    # Federation
    'FederatedCoordinator', 'FederatedResponse', 'RemoteClient',
]
