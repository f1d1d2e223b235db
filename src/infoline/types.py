"""Core types for the infoline data-access layer."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from infoline.roles import Role

T = TypeVar("T")

# Duration type alias
Duration = str | int  # "15s", "5m", "2h", "1d" or milliseconds


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached read result with its storage time."""

    key: str
    value: T
    stored_at: int  # Unix timestamp ms
    ttl: int  # milliseconds

    def is_fresh(self, now: int) -> bool:
        """Entries are served only while strictly younger than their TTL."""
        return now - self.stored_at < self.ttl


@dataclass(frozen=True, slots=True)
class OperationDescriptor:
    """Serializable form of a mutating call.

    ``kind`` names a handler in the operation registry and ``params`` holds
    plain JSON data, so a queued write can be rebuilt after a restart.
    """

    kind: str
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class QueuedOperation:
    """A deferred write waiting in the offline queue."""

    id: str
    kind: str
    params: Mapping[str, Any]
    enqueued_at: int  # Unix timestamp ms
    attempt_count: int = 0
    max_attempts: int = 3
    principal_id: str | None = None

    @property
    def descriptor(self) -> OperationDescriptor:
        return OperationDescriptor(kind=self.kind, params=self.params)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "params": dict(self.params),
            "enqueuedAt": self.enqueued_at,
            "attemptCount": self.attempt_count,
            "maxAttempts": self.max_attempts,
            "principalId": self.principal_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QueuedOperation":
        return cls(
            id=data["id"],
            kind=data["kind"],
            params=data.get("params") or {},
            enqueued_at=data["enqueuedAt"],
            attempt_count=data.get("attemptCount", 0),
            max_attempts=data.get("maxAttempts", 3),
            principal_id=data.get("principalId"),
        )


@dataclass(frozen=True, slots=True)
class Queued:
    """Pending outcome of a write that was handed to the offline queue."""

    operation: QueuedOperation


@dataclass(slots=True)
class DrainReport:
    """What a single ``OfflineQueue.drain()`` call did."""

    succeeded: list[QueuedOperation] = field(default_factory=list)
    requeued: list[QueuedOperation] = field(default_factory=list)
    failed: list[QueuedOperation] = field(default_factory=list)
    coalesced: bool = False


@dataclass(slots=True)
class NetworkState:
    """Process-wide connectivity flag."""

    is_offline: bool = False


class ScopeLevel(str, Enum):
    NONE = "none"
    REGION = "region"
    SECTOR = "sector"
    SCHOOL = "school"


@dataclass(frozen=True, slots=True)
class OrganizationScope:
    """The part of the registry hierarchy a principal administers."""

    level: ScopeLevel = ScopeLevel.NONE
    id: str | None = None


@dataclass(frozen=True, slots=True)
class Principal:
    """Resolved identity and authorization context of the current session."""

    id: str
    email: str
    display_name: str
    raw_role: str | None
    role: Role
    scope: OrganizationScope = field(default_factory=OrganizationScope)


@dataclass(frozen=True, slots=True)
class SessionTokens:
    """Persisted credentials of an authenticated session."""

    access_token: str
    refresh_token: str | None
    expires_at: int | None  # Unix timestamp seconds
    user_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
            "userId": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionTokens":
        return cls(
            access_token=data["accessToken"],
            refresh_token=data.get("refreshToken"),
            expires_at=data.get("expiresAt"),
            user_id=data.get("userId"),
        )


class Outcome(str, Enum):
    ALLOW = "allow"
    REDIRECT_TO_LOGIN = "redirect_to_login"
    REDIRECT_TO_UNAUTHORIZED = "redirect_to_unauthorized"
    SHOW_LOADING = "show_loading"


@dataclass(frozen=True, slots=True)
class AuthorizationDecision:
    """Per-navigation verdict for a protected view."""

    outcome: Outcome
    destination: str | None = None
    return_to: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOW
