"""HTTP client for the remote sync endpoint.

Handles push/pull/wipe with retry logic and transparent token refresh.
"""

import asyncio
import base64
import binascii
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from ..errors import (
    AuthenticationError,
    ChangeDecodeError,
    RemoteUnavailableError,
    SyncError,
)
from .change import APP_ID
from .queue import QueuedChange

logger = logging.getLogger(__name__)

TokenRefreshCallback = Callable[[str, str, str], None]


@dataclass
class PushAck:
    """Server acknowledgement of a pushed batch."""

    accepted: list[str] = field(default_factory=list)
    remaining: int = 0


@dataclass
class RemoteRecord:
    """A sealed change as returned by the server."""

    seq: str
    change_id: str
    entity: str
    entity_id: str
    device_id: str
    envelope: bytes
    deleted: bool = False

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "RemoteRecord":
        """Parse a pull item.

        Raises:
            ChangeDecodeError: If a field is missing or the envelope is not
                valid base64.
        """
        try:
            return cls(
                seq=str(data["seq"]),
                change_id=data["change_id"],
                entity=data["entity"],
                entity_id=data.get("entity_id", ""),
                device_id=data["device_id"],
                envelope=base64.b64decode(data["envelope"], validate=True),
                deleted=bool(data.get("deleted", False)),
            )
        except (KeyError, TypeError, binascii.Error) as e:
            raise ChangeDecodeError(f"invalid pull item: {e}") from e


@dataclass
class PullPage:
    records: list[RemoteRecord]
    next_cursor: str
    has_more: bool = False


class RemoteEndpoint(Protocol):
    """What the sync orchestrator needs from a remote."""

    async def push(self, changes: list[QueuedChange]) -> PushAck: ...

    async def pull(self, cursor: str, limit: int) -> PullPage: ...

    async def wipe(self) -> int: ...


class SyncClient:
    """Client for the sync server's HTTP API.

    Uses exponential backoff for connection errors, timeouts and server
    errors. Client errors are not retried. A 401 triggers one token refresh
    when a refresh token is available.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        device_id: str,
        token: str,
        refresh_token: str = "",
        max_retries: int = 3,
        timeout: float = 30.0,
        retry_backoff: float = 1.0,
        on_token_refresh: TokenRefreshCallback | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the sync client.

        Args:
            base_url: Base URL of the sync server.
            user_id: Account the data belongs to.
            device_id: Identity of this device.
            token: Bearer token for the account.
            refresh_token: Token used to obtain a new bearer token.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            retry_backoff: Initial backoff between attempts in seconds.
            on_token_refresh: Called with (token, refresh_token, expires)
                after a successful refresh so the caller can persist them.
            transport: Optional httpx transport, used by tests.
        """
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.device_id = device_id
        self.token = token
        self.refresh_token = refresh_token
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self.on_token_refresh = on_token_refresh
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _refresh(self, client: httpx.AsyncClient) -> bool:
        """Exchange the refresh token for a new bearer token."""
        if not self.refresh_token:
            return False

        try:
            response = await client.post(
                "/v1/auth/refresh", json={"refresh_token": self.refresh_token}
            )
        except httpx.HTTPError as e:
            logger.warning(f"Token refresh failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Token refresh rejected: HTTP {response.status_code}")
            return False

        try:
            data = self._decode(response)
            token = data["token"]
        except (SyncError, KeyError) as e:
            logger.error(f"Token refresh returned an unusable response: {e}")
            return False

        self.token = token
        self.refresh_token = data.get("refresh_token", self.refresh_token)
        expires = data.get("expires_at", "")
        logger.info("Sync token refreshed")

        if self.on_token_refresh:
            self.on_token_refresh(self.token, self.refresh_token, expires)
        return True

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        """Parse a 200 response body, which must be a JSON object."""
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from {response.request.url.path}: {e}")
            raise SyncError(f"invalid response from server: {e}") from e

        if not isinstance(data, dict):
            logger.error(f"Unexpected response from {response.request.url.path}: {data!r}")
            raise SyncError("invalid response from server: expected a JSON object")
        return data

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST, DELETE).
            path: URL path relative to base_url.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Decoded JSON response.

        Raises:
            RemoteUnavailableError: Transport failures or server errors
                persisted through every retry.
            AuthenticationError: Credentials rejected.
            SyncError: Any other client error, or a 200 whose body is not a
                JSON object.
        """
        if not self.base_url:
            raise RemoteUnavailableError("No sync server configured")

        backoff = self.retry_backoff
        refreshed = False
        last_error = ""

        async with self._client() as client:
            attempt = 0
            while attempt < self.max_retries:
                try:
                    response = await client.request(
                        method,
                        path,
                        json=json_data,
                        params=params,
                        headers={"Authorization": f"Bearer {self.token}"},
                    )

                    if response.status_code == 200:
                        return self._decode(response)

                    if response.status_code == 401 and not refreshed:
                        refreshed = True
                        if await self._refresh(client):
                            continue  # retry immediately with new token

                    if response.status_code in (401, 403):
                        raise AuthenticationError(
                            f"HTTP {response.status_code}: {response.text}"
                        )

                    if response.status_code >= 500:
                        # Server error, retry
                        last_error = f"HTTP {response.status_code}"
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        raise SyncError(f"HTTP {response.status_code}: {response.text}")

                except httpx.TimeoutException:
                    last_error = "Request timeout"
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TransportError as e:
                    # Refused, reset, broken pipe, protocol violation
                    last_error = f"Connection failed: {e}"
                    logger.warning(
                        f"Connection failed ({type(e).__name__}), "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    raise SyncError(f"request error: {e}") from e

                attempt += 1
                # Exponential backoff
                if attempt < self.max_retries:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        raise RemoteUnavailableError(
            f"Max retries ({self.max_retries}) exceeded: {last_error}"
        )

    async def push(self, changes: list[QueuedChange]) -> PushAck:
        """Send a batch of sealed changes.

        Returns:
            Which change ids the server accepted and how many remain queued
            server-side for processing.
        """
        data = await self._request_with_retry(
            "POST",
            "/v1/sync/push",
            json_data={
                "app_id": APP_ID,
                "user_id": self.user_id,
                "device_id": self.device_id,
                "changes": [c.to_wire() for c in changes],
            },
        )
        try:
            return PushAck(
                accepted=[str(cid) for cid in data.get("accepted", [])],
                remaining=int(data.get("remaining", 0)),
            )
        except (TypeError, ValueError) as e:
            raise SyncError(f"invalid push response: {e}") from e

    async def pull(self, cursor: str, limit: int) -> PullPage:
        """Fetch sealed changes newer than ``cursor``."""
        data = await self._request_with_retry(
            "GET",
            "/v1/sync/pull",
            params={
                "app_id": APP_ID,
                "user_id": self.user_id,
                "since": cursor,
                "limit": limit,
            },
        )
        items = data.get("items") or []
        if not isinstance(items, list):
            raise ChangeDecodeError("invalid pull response: items is not a list")
        records = [RemoteRecord.from_wire(item) for item in items]
        return PullPage(
            records=records,
            next_cursor=str(data.get("next_cursor", cursor)),
            has_more=bool(data.get("has_more", False)),
        )

    async def wipe(self) -> int:
        """Delete all of this user's data on the server.

        Returns:
            Number of server-side records deleted.
        """
        data = await self._request_with_retry(
            "DELETE",
            "/v1/sync/data",
            params={"app_id": APP_ID, "user_id": self.user_id},
        )
        try:
            return int(data.get("deleted", 0))
        except (TypeError, ValueError) as e:
            raise SyncError(f"invalid wipe response: {e}") from e
