import asyncio

import httpx
import pytest

from todoflow.client import RefreshCoordinator, TodoClient, TokenStore
from todoflow.exceptions import TokenRefreshError

BASE_URL = "http://testserver"


class FakeApi:
    """Accepts only ``valid_token``; the refresh endpoint is slow so 401s pile up behind it."""

    def __init__(self, refresh_ok: bool = True, accept_refreshed: bool = True, refresh_text: str | None = None):
        self.refresh_ok = refresh_ok
        self.accept_refreshed = accept_refreshed
        self.refresh_text = refresh_text
        self.valid_token = "fresh-token"
        self.refresh_calls = []
        self.calls = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/auth/access-token":
            self.refresh_calls.append(request.headers.get("x-refresh-token"))
            await asyncio.sleep(0.05)
            if self.refresh_text is not None:
                return httpx.Response(200, text=self.refresh_text)
            if not self.refresh_ok:
                return httpx.Response(401, json={"detail": "Token refresh failed"})
            return httpx.Response(200, json={"accessToken": self.valid_token})
        if path == "/api/auth/login":
            return httpx.Response(
                200,
                json={"user": {"id": 1, "name": "Alice", "email": "alice@example.com"}, "accessToken": "stale-token"},
                headers={"set-cookie": "refreshToken=r-123; Path=/; HttpOnly; SameSite=lax"},
            )
        if path == "/api/boom":
            return httpx.Response(500, json={"detail": "boom"})

        # requests are resent as the same object, so keep what was sent now
        self.calls.append(request.headers.get("Authorization"))
        authorized = request.headers.get("Authorization") == f"Bearer {self.valid_token}"
        if not authorized or not self.accept_refreshed:
            return httpx.Response(401, json={"detail": "Access token expired"})
        return httpx.Response(200, json={"path": path})


def _client(api: FakeApi, **kwargs) -> TodoClient:
    client = TodoClient(base_url=BASE_URL, transport=httpx.MockTransport(api), **kwargs)
    client.tokens.access_token = "stale-token"
    return client


@pytest.mark.anyio
async def test_concurrent_401s_share_one_refresh():
    api = FakeApi()
    async with _client(api) as client:
        responses = await asyncio.gather(*(client.get(f"/api/todos/{i}") for i in range(5)))

        assert len(api.refresh_calls) == 1
        assert [r.status_code for r in responses] == [200] * 5
        assert sorted(r.json()["path"] for r in responses) == [f"/api/todos/{i}" for i in range(5)]
        assert client.tokens.access_token == "fresh-token"
        assert client.coordinator.is_refreshing is False


@pytest.mark.anyio
async def test_refresh_failure_rejects_everyone_and_signs_out():
    api = FakeApi(refresh_ok=False)
    logged_out = []
    async with _client(api, on_logout=lambda: logged_out.append(True)) as client:
        client.tokens.refresh_token = "r-123"
        results = await asyncio.gather(
            *(client.get(f"/api/todos/{i}") for i in range(4)), return_exceptions=True
        )

        assert len(api.refresh_calls) == 1
        assert all(isinstance(r, TokenRefreshError) for r in results)
        assert client.tokens.access_token is None
        assert client.tokens.refresh_token is None
        assert logged_out == [True]
        assert client.coordinator.is_refreshing is False


@pytest.mark.anyio
async def test_request_is_retried_only_once():
    api = FakeApi(accept_refreshed=False)
    async with _client(api) as client:
        response = await client.get("/api/todos/1")

        assert response.status_code == 401
        assert len(api.refresh_calls) == 1
        assert len(api.calls) == 2


@pytest.mark.anyio
async def test_other_errors_are_not_retried():
    api = FakeApi()
    async with _client(api) as client:
        response = await client.get("/api/boom")

        assert response.status_code == 500
        assert api.refresh_calls == []


@pytest.mark.anyio
async def test_login_then_refresh_sends_stored_refresh_token():
    api = FakeApi()
    async with TodoClient(base_url=BASE_URL, transport=httpx.MockTransport(api)) as client:
        user = await client.login("alice@example.com", "Secret123!")
        assert user["name"] == "Alice"
        assert client.tokens.refresh_token == "r-123"

        response = await client.get("/api/todos/")
        assert response.status_code == 200
        assert api.refresh_calls == ["r-123"]
        assert api.calls[-1] == "Bearer fresh-token"


@pytest.mark.anyio
async def test_coordinator_without_access_token_sends_no_authorization():
    api = FakeApi()
    async with httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(api)) as http:
        coordinator = RefreshCoordinator(http, TokenStore())
        response = await coordinator.execute(http.build_request("GET", "/api/todos/"))

        assert response.status_code == 200
        assert api.calls[0] is None
        assert api.calls[1] == "Bearer fresh-token"


@pytest.mark.anyio
@pytest.mark.parametrize("body", ["<html>gateway</html>", "[1, 2, 3]", "{}"])
async def test_unreadable_refresh_response_rejects_everyone(body):
    api = FakeApi(refresh_text=body)
    async with _client(api) as client:
        results = await asyncio.wait_for(
            asyncio.gather(*(client.get(f"/api/todos/{i}") for i in range(3)), return_exceptions=True),
            timeout=1,
        )

        assert len(api.refresh_calls) == 1
        assert all(isinstance(r, TokenRefreshError) for r in results)
        assert client.tokens.access_token is None
        assert client.coordinator.is_refreshing is False


@pytest.mark.anyio
async def test_cancelled_caller_does_not_strand_the_queue():
    api = FakeApi()
    async with _client(api) as client:
        first = asyncio.create_task(client.get("/api/todos/1"))
        second = asyncio.create_task(client.get("/api/todos/2"))
        await asyncio.sleep(0.01)
        assert client.coordinator.is_refreshing is True

        first.cancel()
        response = await asyncio.wait_for(second, timeout=1)

        assert response.status_code == 200
        assert first.cancelled()
        assert len(api.refresh_calls) == 1
        assert client.tokens.access_token == "fresh-token"


@pytest.mark.anyio
async def test_late_401_after_renewal_retries_without_refreshing():
    tokens = TokenStore(access_token="stale-token")
    refresh_calls = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/auth/access-token":
            refresh_calls.append(request)
            return httpx.Response(200, json={"accessToken": "other-token"})
        if request.headers.get("Authorization") == "Bearer fresh-token":
            return httpx.Response(200, json={"ok": True})
        # another request finished a refresh while this one was in flight
        tokens.access_token = "fresh-token"
        return httpx.Response(401, json={"detail": "Access token expired"})

    async with httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler)) as http:
        coordinator = RefreshCoordinator(http, tokens)
        response = await coordinator.execute(http.build_request("GET", "/api/todos/"))

        assert response.status_code == 200
        assert refresh_calls == []
