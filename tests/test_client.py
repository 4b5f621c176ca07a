"""Tests for the HTTP sync client."""

import base64
import json

import httpx
import pytest

from chronicle.errors import (
    AuthenticationError,
    ChangeDecodeError,
    RemoteUnavailableError,
    SyncError,
)
from chronicle.sync.change import APP_ID
from chronicle.sync.client import SyncClient
from chronicle.sync.queue import QueuedChange

from conftest import make_entry


def make_client(handler, **kwargs) -> SyncClient:
    """Create a client whose requests go to ``handler``."""
    defaults = {
        "base_url": "http://sync.test",
        "user_id": "user-1",
        "device_id": "device-a",
        "token": "token-1",
        "max_retries": 3,
        "retry_backoff": 0,
        "transport": httpx.MockTransport(handler),
    }
    defaults.update(kwargs)
    return SyncClient(**defaults)


def queued(change_id: str = "c1") -> QueuedChange:
    return QueuedChange(
        seq=1,
        change_id=change_id,
        entity="entry",
        entity_id="e1",
        device_id="device-a",
        ts=make_entry("x").timestamp,
        envelope=b"\x00sealed\xff",
    )


class TestSyncClientPush:
    """Tests for push."""

    @pytest.mark.asyncio
    async def test_push_success(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"accepted": ["c1"], "remaining": 0})

        client = make_client(handler)
        ack = await client.push([queued("c1")])

        assert ack.accepted == ["c1"]
        assert ack.remaining == 0

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/v1/sync/push"
        assert request.headers["Authorization"] == "Bearer token-1"

        body = json.loads(request.content)
        assert body["app_id"] == APP_ID
        assert body["user_id"] == "user-1"
        assert body["device_id"] == "device-a"
        assert base64.b64decode(body["changes"][0]["envelope"]) == b"\x00sealed\xff"

    @pytest.mark.asyncio
    async def test_no_server_configured(self):
        client = make_client(lambda r: httpx.Response(200, json={}), base_url="")
        with pytest.raises(RemoteUnavailableError):
            await client.push([queued()])


class TestSyncClientPull:
    """Tests for pull."""

    @pytest.mark.asyncio
    async def test_pull_parses_items(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "seq": 7,
                            "change_id": "c7",
                            "entity": "entry",
                            "entity_id": "e1",
                            "device_id": "device-b",
                            "envelope": base64.b64encode(b"sealed").decode(),
                            "deleted": True,
                        }
                    ],
                    "next_cursor": "7",
                    "has_more": True,
                },
            )

        client = make_client(handler)
        page = await client.pull("3", 50)

        assert page.next_cursor == "7"
        assert page.has_more is True
        (record,) = page.records
        assert record.seq == "7"
        assert record.device_id == "device-b"
        assert record.envelope == b"sealed"
        assert record.deleted is True

        params = seen[0].url.params
        assert params["since"] == "3"
        assert params["limit"] == "50"
        assert params["user_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_pull_empty_keeps_cursor(self):
        client = make_client(lambda r: httpx.Response(200, json={"items": []}))
        page = await client.pull("12", 50)

        assert page.records == []
        assert page.next_cursor == "12"
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_pull_invalid_envelope(self):
        item = {
            "seq": 1,
            "change_id": "c1",
            "entity": "entry",
            "device_id": "device-b",
            "envelope": "%%% not base64 %%%",
        }
        client = make_client(lambda r: httpx.Response(200, json={"items": [item]}))

        with pytest.raises(ChangeDecodeError):
            await client.pull("0", 50)


class TestSyncClientWipe:
    @pytest.mark.asyncio
    async def test_wipe(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"deleted": 5})

        client = make_client(handler)

        assert await client.wipe() == 5
        assert seen[0].method == "DELETE"
        assert seen[0].url.path == "/v1/sync/data"


class TestSyncClientRetry:
    """Tests for retry and error mapping."""

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"deleted": 0})

        client = make_client(handler)

        assert await client.wipe() == 0
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        client = make_client(handler, max_retries=2)

        with pytest.raises(RemoteUnavailableError):
            await client.wipe()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(RemoteUnavailableError) as exc_info:
            await client.pull("0", 10)
        assert "Connection failed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(handler, max_retries=1)

        with pytest.raises(RemoteUnavailableError):
            await client.pull("0", 10)

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, text="bad request")

        client = make_client(handler)

        with pytest.raises(SyncError) as exc_info:
            await client.wipe()
        assert not isinstance(exc_info.value, RemoteUnavailableError)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_read_error_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadError("connection reset", request=request)
            return httpx.Response(200, json={"deleted": 2})

        client = make_client(handler)

        assert await client.wipe() == 2
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_protocol_errors_exhaust_retries(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.RemoteProtocolError("peer closed connection", request=request)

        client = make_client(handler)

        with pytest.raises(RemoteUnavailableError):
            await client.pull("0", 10)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, text="<html>proxy</html>")

        client = make_client(handler)

        with pytest.raises(SyncError) as exc_info:
            await client.pull("0", 10)
        assert not isinstance(exc_info.value, RemoteUnavailableError)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        client = make_client(lambda r: httpx.Response(200, json=["not", "an", "object"]))
        with pytest.raises(SyncError):
            await client.wipe()

    @pytest.mark.asyncio
    async def test_malformed_push_ack(self):
        client = make_client(
            lambda r: httpx.Response(200, json={"accepted": [], "remaining": "lots"})
        )
        with pytest.raises(SyncError):
            await client.push([queued()])

    @pytest.mark.asyncio
    async def test_forbidden(self):
        client = make_client(lambda r: httpx.Response(403))
        with pytest.raises(AuthenticationError):
            await client.wipe()

    @pytest.mark.asyncio
    async def test_unauthorized_without_refresh_token(self):
        client = make_client(lambda r: httpx.Response(401))
        with pytest.raises(AuthenticationError) as exc_info:
            await client.wipe()
        assert "sync login" in exc_info.value.hint


class TestTokenRefresh:
    """Tests for transparent token refresh."""

    @pytest.mark.asyncio
    async def test_refresh_on_401(self):
        refreshed = []
        auth_headers = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/auth/refresh":
                assert json.loads(request.content) == {"refresh_token": "refresh-1"}
                return httpx.Response(
                    200,
                    json={
                        "token": "token-2",
                        "refresh_token": "refresh-2",
                        "expires_at": "2030-01-01T00:00:00Z",
                    },
                )
            auth_headers.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer token-1":
                return httpx.Response(401)
            return httpx.Response(200, json={"deleted": 1})

        client = make_client(
            handler,
            refresh_token="refresh-1",
            on_token_refresh=lambda *args: refreshed.append(args),
        )

        assert await client.wipe() == 1
        assert auth_headers == ["Bearer token-1", "Bearer token-2"]
        assert refreshed == [("token-2", "refresh-2", "2030-01-01T00:00:00Z")]
        assert client.token == "token-2"

    @pytest.mark.asyncio
    async def test_refresh_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/auth/refresh":
                return httpx.Response(401)
            return httpx.Response(401)

        client = make_client(handler, refresh_token="expired")

        with pytest.raises(AuthenticationError):
            await client.wipe()

    @pytest.mark.asyncio
    async def test_refresh_response_without_token(self):
        refreshed = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/auth/refresh":
                return httpx.Response(200, json={"refresh_token": "refresh-2"})
            return httpx.Response(401)

        client = make_client(
            handler,
            refresh_token="refresh-1",
            on_token_refresh=lambda *args: refreshed.append(args),
        )

        with pytest.raises(AuthenticationError):
            await client.wipe()
        assert refreshed == []
        assert client.token == "token-1"
