"""Async API client that renews expired access tokens transparently.

Any number of requests may hit 401 at once; exactly one refresh call goes
out and the others wait for it in arrival order. A refresh failure signs the
client out and fails every waiting request.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Callable

import httpx

from todoflow.exceptions import TokenRefreshError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
REFRESH_COOKIE = "refreshToken"


class TokenStore:
    """Credentials held by one client instance."""

    def __init__(self, access_token: str | None = None, refresh_token: str | None = None):
        self.access_token = access_token
        self.refresh_token = refresh_token

    def clear(self):
        self.access_token = None
        self.refresh_token = None


class RefreshCoordinator:
    """Single-flight access token renewal over one ``httpx.AsyncClient``.

    The refresh call runs as its own task, so a caller that gives up while
    waiting does not cancel the refresh for everyone else. Every waiter is
    settled when the refresh ends, whichever way it ends.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        tokens: TokenStore,
        refresh_path: str = "/api/auth/access-token",
        on_logout: Callable[[], None] | None = None,
    ):
        self.client = client
        self.tokens = tokens
        self.refresh_path = refresh_path
        self.on_logout = on_logout
        self.is_refreshing = False
        self._pending: asyncio.Task | None = None
        self._waiting: deque[asyncio.Future] = deque()

    def _authorize(self, request: httpx.Request) -> httpx.Request:
        if self.tokens.access_token:
            request.headers["Authorization"] = f"Bearer {self.tokens.access_token}"
        else:
            request.headers.pop("Authorization", None)
        return request

    async def _send(self, request: httpx.Request) -> httpx.Response:
        return await self.client.send(self._authorize(request))

    async def execute(self, request: httpx.Request) -> httpx.Response:
        """Send ``request``; on 401 wait for a refreshed token and retry it once."""
        sent_with = self.tokens.access_token
        response = await self._send(request)
        if response.status_code != 401:
            return response

        renewed = self.tokens.access_token
        if not self.is_refreshing and renewed and renewed != sent_with:
            # the token was renewed while this request was in flight
            return await self._send(request)

        future = asyncio.get_running_loop().create_future()
        self._waiting.append(future)
        if not self.is_refreshing:
            self.is_refreshing = True
            self._pending = asyncio.create_task(self._refresh())
        else:
            logger.debug(f"Queued {request.method} {request.url.path} behind token refresh")
        await future
        # a second 401 goes back to the caller untouched
        return await self._send(request)

    async def _refresh(self):
        try:
            access_token = await self._request_access_token()
        except asyncio.CancelledError:
            self._sign_out(TokenRefreshError("Token refresh was cancelled"))
            raise
        except Exception as exc:
            if not isinstance(exc, TokenRefreshError):
                exc = TokenRefreshError(f"Token refresh failed: {exc!r}")
            self._sign_out(exc)
        else:
            self.tokens.access_token = access_token
            self._settle(None)
        finally:
            self.is_refreshing = False
            self._pending = None

    def _settle(self, error: TokenRefreshError | None):
        while self._waiting:
            future = self._waiting.popleft()
            if future.done():
                continue
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

    def _sign_out(self, error: TokenRefreshError):
        logger.warning(f"{error}; signing out")
        self.tokens.clear()
        self.client.cookies.clear()
        self._settle(error)
        if self.on_logout is not None:
            self.on_logout()

    async def _request_access_token(self) -> str:
        headers = {}
        if self.tokens.refresh_token:
            headers["x-refresh-token"] = self.tokens.refresh_token
        try:
            response = await self.client.get(self.refresh_path, headers=headers)
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Token refresh failed: {exc}") from exc
        if response.status_code != 200:
            raise TokenRefreshError(f"Token refresh failed with status {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Token refresh response is not JSON") from exc
        access_token = data.get("accessToken") if isinstance(data, dict) else None
        if not access_token:
            raise TokenRefreshError("Token refresh response has no access token")
        return access_token


class TodoClient:
    """High level client for the todoflow API.

    Use as an async context manager, or call :meth:`aclose` when done.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        on_logout: Callable[[], None] | None = None,
    ):
        if base_url is None:
            from todoflow.config import get_settings

            settings = get_settings()
            base_url, timeout = settings.api_base_url, settings.client_timeout_seconds
        self.tokens = TokenStore()
        self.http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.coordinator = RefreshCoordinator(self.http, self.tokens, on_logout=on_logout)

    async def __aenter__(self) -> "TodoClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self.http.aclose()

    def _remember(self, response: httpx.Response) -> dict[str, Any]:
        response.raise_for_status()
        data = response.json()
        self.tokens.access_token = data["accessToken"]
        self.tokens.refresh_token = response.cookies.get(REFRESH_COOKIE) or self.tokens.refresh_token
        return data

    async def register(self, email: str, name: str, password: str) -> dict[str, Any]:
        response = await self.http.post(
            "/api/auth/register", json={"email": email, "name": name, "password": password}
        )
        return self._remember(response)["user"]

    async def login(self, email: str, password: str) -> dict[str, Any]:
        response = await self.http.post(
            "/api/auth/login", json={"email": email, "password": password}
        )
        return self._remember(response)["user"]

    async def logout(self):
        body = {"refreshToken": self.tokens.refresh_token} if self.tokens.refresh_token else None
        try:
            await self.http.post("/api/auth/logout", json=body)
        finally:
            self.tokens.clear()
            self.http.cookies.clear()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self.coordinator.execute(self.http.build_request(method, url, **kwargs))

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def update_subtask_status(self, subtask_id: int, status: str) -> dict[str, Any]:
        """Returns ``{"subtask": ..., "todo_status": ...}``."""
        response = await self.put(f"/api/subtasks/{subtask_id}/status", json={"status": status})
        response.raise_for_status()
        return response.json()

    async def reorder_subtasks(self, todo_id: int, orders: list[dict[str, int]]) -> list[dict[str, Any]]:
        response = await self.put(
            "/api/subtasks/reorder", json={"todo_id": todo_id, "subtasks": orders}
        )
        response.raise_for_status()
        return response.json()["subtasks"]

    async def reorder_todos(self, orders: list[dict[str, int]]) -> int:
        response = await self.put("/api/todos/reorder", json={"todo_orders": orders})
        response.raise_for_status()
        return response.json()["updated_count"]
