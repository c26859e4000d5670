# Sync Module — Backend API Client
#
# Thin async wrapper over the iforgotpassword REST API (/api/v1).
#
# Supports:
#   - Bearer-token auth with one refresh-and-retry on 401
#   - Unwrapping of {"success": true, "data": {...}} envelopes
#   - Mapping of HTTP failures onto core.errors
#
# Transport failures (offline, DNS, timeouts) surface as NetworkError so
# callers can tell "server unreachable" from "server said no".

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..core.config import DEFAULT_REQUEST_TIMEOUT
from ..core.errors import (
    AccountLockedError,
    ApiError,
    AuthenticationError,
    NetworkError,
    SessionExpiredError,
    ValidationError,
)

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str, Optional[str]], None]


class ApiClient:
    """Async client for the vault backend.

    Usage::

        async with ApiClient("http://localhost:3000/api/v1") as api:
            tokens = await api.login({...})
            changes = await api.sync_pull(device_id, 0)

    Args:
        base_url: API root including the version prefix.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        on_tokens_changed: Called with (access_token, refresh_token)
            whenever a login or refresh hands out new tokens.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_tokens_changed: Optional[TokenCallback] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": "application/json",
                "User-Agent": "iforgotpassword-python/0.1",
            },
        )
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self._on_tokens_changed = on_tokens_changed

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def set_tokens(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        self.access_token = access_token
        if refresh_token is not None:
            self.refresh_token = refresh_token
        if self._on_tokens_changed and access_token:
            self._on_tokens_changed(access_token, self.refresh_token)

    def clear_tokens(self) -> None:
        self.access_token = None
        self.refresh_token = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    # ------------------------------------------------------------------
    # Auth endpoints
    # ------------------------------------------------------------------

    async def register(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST /auth/register. Returns the unwrapped body."""
        resp = await self._send("POST", "/auth/register", json=payload)
        data = self._unwrap(resp)
        self._store_tokens(data)
        return data

    async def login(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST /auth/login and keep the issued tokens."""
        resp = await self._send("POST", "/auth/login", json=payload)
        data = self._unwrap(resp)
        self._store_tokens(data)
        return data

    async def refresh(self) -> Dict[str, Any]:
        """POST /auth/refresh with the current refresh token."""
        if not self.refresh_token:
            raise AuthenticationError("No refresh token available")
        resp = await self._send("POST", "/auth/refresh", json={"refreshToken": self.refresh_token})
        data = self._unwrap(resp)
        if not self._store_tokens(data):
            raise AuthenticationError("Token refresh failed")
        logger.debug("Access token refreshed")
        return data

    # ------------------------------------------------------------------
    # Sync endpoints
    # ------------------------------------------------------------------

    async def sync_pull(self, device_id: str, last_sync_version: int) -> Dict[str, Any]:
        return await self._authenticated(
            "POST", "/sync/pull",
            json={"deviceId": device_id, "lastSyncVersion": last_sync_version},
        )

    async def sync_push(self, device_id: str, changes: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._authenticated(
            "POST", "/sync/push",
            json={"deviceId": device_id, "changes": changes},
        )

    # ------------------------------------------------------------------
    # Vault CRUD endpoints
    # ------------------------------------------------------------------

    async def create_item(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._authenticated("POST", "/vault/items", json=data)

    async def update_item(self, item_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._authenticated("PUT", f"/vault/items/{item_id}", json=data)

    async def delete_item(self, item_id: str) -> Dict[str, Any]:
        return await self._authenticated("DELETE", f"/vault/items/{item_id}")

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            return await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkError(f"Server unreachable: {exc}") from exc

    async def _authenticated(self, method: str, path: str, **kwargs) -> Any:
        """Send with the access token; on 401 refresh once and retry."""
        if not self.access_token:
            raise AuthenticationError("Not authenticated")

        resp = await self._send(method, path, token=self.access_token, **kwargs)

        if resp.status_code == 401:
            try:
                await self.refresh()
            except (AuthenticationError, ApiError) as exc:
                raise SessionExpiredError() from exc
            resp = await self._send(method, path, token=self.access_token, **kwargs)
            if resp.status_code == 401:
                raise SessionExpiredError()

        return self._unwrap(resp)

    def _store_tokens(self, data: Dict[str, Any]) -> bool:
        if not isinstance(data, dict):
            return False
        access = data.get("token") or data.get("accessToken")
        if not access:
            return False
        self.set_tokens(access, data.get("refreshToken"))
        return True

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.reason_phrase or f"HTTP {resp.status_code}"
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
            if body.get("message"):
                return str(body["message"])
        return resp.reason_phrase or f"HTTP {resp.status_code}"

    def _raise_for_status(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if status < 400:
            return
        message = self._error_message(resp)

        if status in (423, 429) or (status == 401 and "locked" in message.lower()):
            retry_after = resp.headers.get("Retry-After")
            raise AccountLockedError(
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if status in (401, 403):
            # Never echo the server's reason for an auth failure
            raise AuthenticationError()
        if status in (400, 422):
            raise ValidationError(message)
        raise ApiError(message, status_code=status)

    def _unwrap(self, resp: httpx.Response) -> Any:
        self._raise_for_status(resp)
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            raise ApiError("Malformed JSON response", status_code=resp.status_code) from exc

        if isinstance(body, dict) and "success" in body:
            if not body["success"]:
                raise ApiError(self._error_message(resp), status_code=resp.status_code)
            return body.get("data", {})
        return body
