"""Session state machine and per-navigation authorization decisions.

States move ``UNKNOWN -> LOADING -> AUTHENTICATED | UNAUTHENTICATED``.
A session is only concluded unauthenticated on an authorization failure;
a network failure during restore leaves it ``LOADING`` so the restore
can be run again once the platform is reachable.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any

from infoline.errors import AuthorizationError, DataAccessError, StorageError
from infoline.roles import Role, normalize_role, parse_required_roles, parse_role
from infoline.types import (
    AuthorizationDecision,
    OrganizationScope,
    Outcome,
    Principal,
    ScopeLevel,
    SessionTokens,
)

if TYPE_CHECKING:
    from infoline.adapters.base import KeyValueStore
    from infoline.adapters.platform import PlatformClient
    from infoline.orchestrator import RequestOrchestrator

logger = logging.getLogger(__name__)

SessionListener = Callable[["SessionState", Principal | None], Any]

LOGIN_PATH = "/login"
UNAUTHORIZED_PATH = "/unauthorized"


class SessionState(str, Enum):
    UNKNOWN = "unknown"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


_SCOPE_COLUMNS = {
    Role.REGION_ADMIN: (ScopeLevel.REGION, "region_id"),
    Role.SECTOR_ADMIN: (ScopeLevel.SECTOR, "sector_id"),
    Role.SCHOOL_ADMIN: (ScopeLevel.SCHOOL, "school_id"),
}


def resolve_raw_role(
    profile: Mapping[str, Any] | None, user: Mapping[str, Any]
) -> str | None:
    """First role spelling found: profile role object, profile role, user metadata."""
    profile = profile or {}
    metadata = user.get("user_metadata") or {}
    candidates = (profile.get("roles"), profile.get("role"), metadata.get("role"))
    for candidate in candidates:
        if isinstance(candidate, Mapping):
            candidate = candidate.get("name")
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


def resolve_scope(role: Role, profile: Mapping[str, Any] | None) -> OrganizationScope:
    if role not in _SCOPE_COLUMNS:
        return OrganizationScope()
    level, column = _SCOPE_COLUMNS[role]
    scope_id = (profile or {}).get(column)
    if not scope_id:
        return OrganizationScope()
    return OrganizationScope(level=level, id=str(scope_id))


def build_principal(
    user: Mapping[str, Any], profile: Mapping[str, Any] | None
) -> Principal:
    """Build the principal from the auth user and its ``users`` profile row."""
    raw_role = resolve_raw_role(profile, user)
    if raw_role is None:
        logger.warning(
            "No role information for user %s, defaulting to the lowest role",
            user.get("id"),
        )
    role = normalize_role(raw_role)
    profile = profile or {}
    metadata = user.get("user_metadata") or {}
    email = profile.get("email") or user.get("email") or ""
    display_name = profile.get("full_name") or metadata.get("full_name") or email
    return Principal(
        id=str(user["id"]),
        email=email,
        display_name=display_name,
        raw_role=raw_role,
        role=role,
        scope=resolve_scope(role, profile),
    )


class SessionManager:
    """Owns the current session and the principal resolved from it.

    Platform calls go through the orchestrator, so they get its timeout and
    retry handling; they are never queued. Tokens are kept in ``store``
    under :attr:`STORAGE_KEY` so a restart can restore the session.
    """

    STORAGE_KEY = "session"

    def __init__(
        self,
        platform: PlatformClient,
        orchestrator: RequestOrchestrator,
        *,
        store: KeyValueStore | None = None,
    ) -> None:
        self._platform = platform
        self._orchestrator = orchestrator
        self._store = store
        self._state = SessionState.UNKNOWN
        self._principal: Principal | None = None
        self._tokens: SessionTokens | None = None
        self._last_error: DataAccessError | None = None
        self._listeners: list[SessionListener] = []
        self._restore_lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def principal(self) -> Principal | None:
        return self._principal

    @property
    def tokens(self) -> SessionTokens | None:
        return self._tokens

    @property
    def last_error(self) -> DataAccessError | None:
        """The connectivity error that left the session ``LOADING``, if any."""
        return self._last_error

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def has_role(self, minimum: Role | str) -> bool:
        """True when the principal's role is at or above ``minimum``."""
        required = parse_role(minimum)
        if required is None:
            raise ValueError(f"Unknown role: {minimum!r}")
        return self._principal is not None and self._principal.role.at_least(required)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def restore(self) -> Principal | None:
        """Restore the persisted session.

        Raises:
            DataAccessError: The platform could not be reached; the state
                stays ``LOADING`` and :attr:`last_error` is set.
        """
        async with self._restore_lock:
            if self._state is SessionState.AUTHENTICATED:
                return self._principal

            tokens = self._load_tokens()
            if tokens is None:
                logger.info("No stored session")
                self._conclude_unauthenticated()
                return None

            self._set_state(SessionState.LOADING)
            stored = tokens
            try:
                tokens, principal = await self._restore_principal(tokens)
            except AuthorizationError as e:
                logger.warning("Stored session is no longer valid: %s", e)
                self._tokens = None
                self._delete_tokens()
                self._platform.set_access_token(None)
                self._conclude_unauthenticated()
                return None
            except DataAccessError as e:
                self._last_error = e
                logger.warning(
                    "Session restore failed (%s), staying in loading state: %s",
                    e.classification.value,
                    e,
                )
                raise

            self._authenticate(tokens, principal, renewed=tokens is not stored)
            logger.info("Restored session of %s (%s)", principal.email, principal.role.value)
            return principal

    async def sign_in(self, email: str, password: str) -> Principal:
        """Authenticate with credentials.

        Raises:
            AuthorizationError: The credentials were rejected
        """
        previous = self._state
        self._set_state(SessionState.LOADING)
        try:
            tokens = await self._orchestrator.call(
                lambda: self._platform.sign_in_with_password(email, password),
                name="auth.sign_in",
            )
            principal = await self._resolve_principal(tokens)
        except AuthorizationError:
            logger.warning("Sign-in rejected for %s", email)
            self._end_session("ended by a rejected sign-in")
            raise
        except DataAccessError:
            self._set_state(previous)
            raise

        self._authenticate(tokens, principal)
        logger.info("Signed in %s (%s)", principal.email, principal.role.value)
        return principal

    async def refresh(self) -> Principal:
        """Exchange the refresh token for a new session."""
        if self._tokens is None or not self._tokens.refresh_token:
            raise AuthorizationError("No session to refresh")
        try:
            tokens = await self._refresh_tokens(self._tokens.refresh_token)
            principal = await self._resolve_principal(tokens)
        except AuthorizationError:
            self.expire()
            raise
        self._authenticate(tokens, principal, renewed=True)
        return principal

    async def sign_out(self) -> None:
        """End the session locally; the remote logout is best effort."""
        tokens = self._tokens
        if tokens is not None:
            try:
                await self._orchestrator.call(
                    lambda: self._platform.sign_out(tokens.access_token),
                    max_retries=0,
                    name="auth.sign_out",
                )
            except DataAccessError as e:
                logger.warning("Remote sign-out failed, ending session locally: %s", e)
        self._end_session("signed out")

    def expire(self) -> None:
        """End the session after its token was found to be invalid."""
        self._end_session("expired")

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------

    def decide(
        self,
        required_roles: Iterable[Role | str] | None = None,
        location: str | None = None,
    ) -> AuthorizationDecision:
        """Decide whether a view may render for the current session.

        Checks run in order: role match, pending load, known principal,
        then login.
        """
        required = parse_required_roles(required_roles)
        principal = self._principal
        if not required or (principal is not None and principal.role in required):
            return AuthorizationDecision(Outcome.ALLOW)
        if self._state in (SessionState.LOADING, SessionState.UNKNOWN):
            return AuthorizationDecision(Outcome.SHOW_LOADING)
        if principal is not None:
            logger.info(
                "Access denied: role %s not in %s",
                principal.role.value,
                sorted(role.value for role in required),
            )
            return AuthorizationDecision(
                Outcome.REDIRECT_TO_UNAUTHORIZED, destination=UNAUTHORIZED_PATH
            )
        return AuthorizationDecision(
            Outcome.REDIRECT_TO_LOGIN, destination=LOGIN_PATH, return_to=location
        )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _restore_principal(
        self, tokens: SessionTokens
    ) -> tuple[SessionTokens, Principal]:
        """Resolve stored tokens, refreshing them once if they were rejected."""
        try:
            return tokens, await self._resolve_principal(tokens)
        except AuthorizationError:
            if not tokens.refresh_token:
                raise
            logger.info("Stored access token rejected, trying a token refresh")
        tokens = await self._refresh_tokens(tokens.refresh_token)
        return tokens, await self._resolve_principal(tokens)

    async def _refresh_tokens(self, refresh_token: str) -> SessionTokens:
        return await self._orchestrator.call(
            lambda: self._platform.refresh_session(refresh_token),
            name="auth.refresh",
        )

    async def _resolve_principal(self, tokens: SessionTokens) -> Principal:
        user = await self._orchestrator.call(
            lambda: self._platform.get_user(tokens.access_token),
            name="auth.get_user",
        )
        self._platform.set_access_token(tokens.access_token)
        profile = await self._orchestrator.call(
            lambda: self._platform.fetch_profile(str(user["id"])),
            name="users.profile",
        )
        return build_principal(user, profile)

    def _authenticate(
        self, tokens: SessionTokens, principal: Principal, *, renewed: bool = False
    ) -> None:
        # A renewed token rebinds even for the same principal.
        changed = renewed or principal != self._principal
        previous = self._principal
        if previous is not None and previous.id != principal.id:
            dropped = self._orchestrator.queue.discard_for_principal(previous.id)
            logger.info(
                "Principal switched from %s, %d queued operations discarded",
                previous.email,
                dropped,
            )
        self._tokens = tokens
        self._save_tokens(tokens)
        self._platform.set_access_token(tokens.access_token)
        self._last_error = None
        self._principal = principal
        if changed:
            self._orchestrator.bind_principal(principal)
        self._set_state(SessionState.AUTHENTICATED, force=changed)

    def _end_session(self, reason: str) -> None:
        previous = self._principal
        self._tokens = None
        self._delete_tokens()
        self._platform.set_access_token(None)
        if previous is not None:
            dropped = self._orchestrator.queue.discard_for_principal(previous.id)
            logger.info(
                "Session of %s %s, %d queued operations discarded",
                previous.email,
                reason,
                dropped,
            )
        self._orchestrator.bind_principal(None)
        self._conclude_unauthenticated()

    def _conclude_unauthenticated(self) -> None:
        self._principal = None
        self._last_error = None
        self._set_state(SessionState.UNAUTHENTICATED)

    def _set_state(self, state: SessionState, *, force: bool = False) -> None:
        if state is self._state and not force:
            return
        self._state = state
        logger.debug("Session state: %s", state.value)
        for listener in list(self._listeners):
            try:
                result = listener(state, self._principal)
                if inspect.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._background_tasks.add(task)
                    task.add_done_callback(self._background_tasks.discard)
            except Exception:
                logger.exception("Session listener %r failed", listener)

    def _load_tokens(self) -> SessionTokens | None:
        if self._tokens is not None:
            return self._tokens
        if self._store is None:
            return None
        try:
            raw = self._store.get(self.STORAGE_KEY)
        except StorageError as e:
            logger.error("Could not read the stored session: %s", e)
            return None
        if not raw:
            return None
        try:
            return SessionTokens.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Stored session is unreadable, ignoring it")
            return None

    def _save_tokens(self, tokens: SessionTokens) -> None:
        if self._store is None:
            return
        try:
            self._store.set(self.STORAGE_KEY, json.dumps(tokens.to_dict()))
        except StorageError as e:
            logger.error("Could not persist the session: %s", e)

    def _delete_tokens(self) -> None:
        if self._store is None:
            return
        try:
            self._store.delete(self.STORAGE_KEY)
        except StorageError as e:
            logger.error("Could not remove the stored session: %s", e)
