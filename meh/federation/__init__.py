"""
Federation — Read-side merge across knowledge bases

- coordinator: fan-out with per-source timeouts and an overall deadline
- remote: HTTP client for knowledge bases on a meh server
- task: per-source result-or-error union
"""

from .task import SourceTask, SourceResult, SourceKind
from .remote import ServerClient, RemoteClient, RemoteFact, RemoteKb, RemoteWriteTarget
from .coordinator import (
    FederatedCoordinator, FederatedResponse, Source, LocalSource, RemoteSource, merge,
)

__all__ = [
    'SourceTask', 'SourceResult', 'SourceKind',
    'ServerClient', 'RemoteClient', 'RemoteFact', 'RemoteKb', 'RemoteWriteTarget',
    'FederatedCoordinator', 'FederatedResponse', 'Source', 'LocalSource', 'RemoteSource', 'merge',
]
