"""HTTP client for the hosted data platform (REST + auth endpoints)."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from typing import Any, cast

import httpx

from infoline.errors import (
    AuthorizationError,
    DataAccessError,
    ErrorKind,
    NetworkError,
    ServerError,
    ValidationError,
    kind_for_status,
)
from infoline.types import SessionTokens

logger = logging.getLogger(__name__)

_STATUS_ERRORS: dict[ErrorKind, type[DataAccessError]] = {
    ErrorKind.AUTHORIZATION: AuthorizationError,
    ErrorKind.SERVER: ServerError,
    ErrorKind.VALIDATION: ValidationError,
}

PROFILE_COLUMNS = "*,roles(id,name,description,permissions)"


def _filter_value(value: Any) -> str:
    """Render a filter as a PostgREST operator expression."""
    if isinstance(value, (list, tuple, set, frozenset)):
        return "in.(" + ",".join(str(v) for v in value) + ")"
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    text = str(value)
    if text.startswith("%") and text.endswith("%") and len(text) > 1:
        return f"ilike.{text.replace('%', '*')}"
    return f"eq.{text}"


class PlatformClient:
    """Async client for the remote platform.

    Every failure is raised as a typed :class:`DataAccessError`: transport
    problems and timeouts as :class:`NetworkError`, HTTP failures according
    to their status.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        application_name: str = "infoline",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._access_token: str | None = None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "apikey": api_key,
                "Content-Type": "application/json",
                "x-application-name": application_name,
            },
            timeout=timeout,
            transport=transport,
        )

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    def _headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._access_token or self._api_key}",
            "x-request-id": str(uuid.uuid4()),
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Send a request and decode the JSON body."""
        try:
            response = await self._client.request(
                method, url, params=params, json=json, headers=self._headers(headers)
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e

        if not response.is_success:
            raise self._status_error(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _status_error(response: httpx.Response) -> DataAccessError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = None
        if isinstance(body, dict):
            message = (
                body.get("message")
                or body.get("error_description")
                or body.get("msg")
                or body.get("error")
            )
        message = message or f"HTTP {response.status_code}"
        error_type = _STATUS_ERRORS.get(
            kind_for_status(response.status_code), DataAccessError
        )
        return error_type(message, status=response.status_code)

    # Data API

    async def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        columns: str = "*",
        order: str | None = None,
        ascending: bool = True,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """Read rows from ``table``. String filters wrapped in ``%`` match with ilike."""
        params: dict[str, Any] = {"select": columns}
        for column, value in (filters or {}).items():
            if value is None or value == "":
                continue
            params[column] = _filter_value(value)
        if order:
            params["order"] = f"{order}.{'asc' if ascending else 'desc'}"
        if limit is not None:
            params["limit"] = limit
        if offset is not None:
            params["offset"] = offset
        rows = await self._request("GET", f"/rest/v1/{table}", params=params)
        return cast(list[dict[str, Any]], rows or [])

    async def insert(
        self, table: str, values: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        rows = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=dict(values),
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if rows else None

    async def update(
        self, table: str, match: Mapping[str, Any], values: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        if not match:
            raise ValidationError(f"Refusing to update every row of {table}")
        rows = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params={column: _filter_value(value) for column, value in match.items()},
            json=dict(values),
            headers={"Prefer": "return=representation"},
        )
        return cast(list[dict[str, Any]], rows or [])

    async def delete(self, table: str, match: Mapping[str, Any]) -> None:
        if not match:
            raise ValidationError(f"Refusing to delete every row of {table}")
        await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params={column: _filter_value(value) for column, value in match.items()},
        )

    async def fetch_profile(self, user_id: str) -> dict[str, Any] | None:
        """The ``users`` row of ``user_id`` with its ``roles`` relation embedded."""
        rows = await self.select(
            "users", filters={"id": user_id}, columns=PROFILE_COLUMNS, limit=1
        )
        return rows[0] if rows else None

    async def check_connection(self) -> bool:
        """Cheap health check; never raises."""
        try:
            await self.select("regions", columns="id", limit=1)
        except DataAccessError as e:
            logger.debug("Platform connection check failed: %s", e)
            return False
        return True

    # Auth API

    @staticmethod
    def _tokens(data: Mapping[str, Any]) -> SessionTokens:
        if "access_token" not in data:
            raise AuthorizationError("Auth response did not contain a session")
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = int(time.time()) + int(data["expires_in"])
        user = data.get("user") or {}
        return SessionTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            user_id=user.get("id"),
        )

    async def _grant(self, grant_type: str, body: Mapping[str, Any]) -> SessionTokens:
        # The token endpoint answers bad credentials with 400 invalid_grant.
        try:
            data = await self._request(
                "POST", "/auth/v1/token", params={"grant_type": grant_type}, json=body
            )
        except ValidationError as e:
            raise AuthorizationError(str(e), status=e.status) from e
        return self._tokens(data or {})

    async def sign_in_with_password(self, email: str, password: str) -> SessionTokens:
        return await self._grant("password", {"email": email, "password": password})

    async def refresh_session(self, refresh_token: str) -> SessionTokens:
        return await self._grant("refresh_token", {"refresh_token": refresh_token})

    async def get_user(self, access_token: str) -> dict[str, Any]:
        data = await self._request(
            "GET",
            "/auth/v1/user",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not data or "id" not in data:
            raise AuthorizationError("Session user could not be resolved")
        return cast(dict[str, Any], data)

    async def sign_out(self, access_token: str) -> None:
        await self._request(
            "POST",
            "/auth/v1/logout",
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
