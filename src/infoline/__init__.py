"""infoline - resilient data-access layer for the Infoline registry platform."""

from contextlib import suppress

# Adapters
from infoline.adapters import KeyValueStore, MemoryStore, PlatformClient

# Components
from infoline.cache import ResponseCache
from infoline.context import DataLayer, create_data_layer

# Duration parsing
from infoline.duration import parse_duration

# Errors
from infoline.errors import (
    AuthorizationError,
    ConfigurationError,
    DataAccessError,
    ErrorKind,
    NetworkError,
    NoCachedData,
    QueueExhausted,
    ServerError,
    StorageError,
    StorageQuotaExceeded,
    ValidationError,
    classify_error,
)
from infoline.keys import make_cache_key
from infoline.logging_config import setup_logging
from infoline.network import NetworkMonitor
from infoline.operations import OperationRegistry
from infoline.orchestrator import RequestOrchestrator
from infoline.queue import OfflineQueue
from infoline.retry import RetryPolicy
from infoline.roles import Role, normalize_role
from infoline.session import SessionManager, SessionState
from infoline.settings import Settings, get_settings

# Core types
from infoline.types import (
    AuthorizationDecision,
    CacheEntry,
    DrainReport,
    Duration,
    OperationDescriptor,
    OrganizationScope,
    Outcome,
    Principal,
    Queued,
    QueuedOperation,
)

# Optional adapter imports - only available when dependencies are installed
with suppress(ImportError):
    from infoline.adapters import RedisStore

__version__ = "0.1.0"

__all__ = [
    "AuthorizationDecision",
    "AuthorizationError",
    "CacheEntry",
    "ConfigurationError",
    "DataAccessError",
    "DataLayer",
    "DrainReport",
    "Duration",
    "ErrorKind",
    "KeyValueStore",
    "MemoryStore",
    "NetworkError",
    "NetworkMonitor",
    "NoCachedData",
    "OfflineQueue",
    "OperationDescriptor",
    "OperationRegistry",
    "OrganizationScope",
    "Outcome",
    "PlatformClient",
    "Principal",
    "Queued",
    "QueueExhausted",
    "QueuedOperation",
    "RedisStore",
    "RequestOrchestrator",
    "ResponseCache",
    "RetryPolicy",
    "Role",
    "ServerError",
    "SessionManager",
    "SessionState",
    "Settings",
    "StorageError",
    "StorageQuotaExceeded",
    "ValidationError",
    "classify_error",
    "create_data_layer",
    "get_settings",
    "make_cache_key",
    "normalize_role",
    "parse_duration",
    "setup_logging",
]
