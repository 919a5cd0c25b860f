"""
client/middleware.py -- Silent session refresh for httpx.AsyncClient consumers.

Wraps an httpx.AsyncClient whose cookie jar carries the Keyward session
cookies. When a request comes back 401:

  1. A 401 from the refresh endpoint itself is returned untouched (exact
     path match, so /auth/refresh-tokens would not count).
  2. Otherwise the caller joins the single in-flight refresh, starting one
     if none is running. N concurrent 401s cause exactly one refresh POST.
  3. Refresh succeeded: GET, HEAD and OPTIONS are re-sent with the new
     cookies. Any other method gets its original 401 back; the session IS
     refreshed, so a deliberate retry by the caller will succeed.
  4. Refresh failed (non-2xx or transport error): on_auth_failure runs at
     most once per refresh cycle, its exceptions are logged and swallowed,
     and the caller gets the original 401.

Concurrency: the "is a refresh running?" check and the task assignment in
_join_refresh() contain no await, so on a single event loop no other
coroutine can interleave between them. The shared task is awaited through
asyncio.shield() so one caller being cancelled does not cancel the refresh
for everybody else.

Usage:
    async with httpx.AsyncClient(base_url="https://id.example.com") as http:
        api = RefreshMiddleware(http, on_auth_failure=redirect_to_login)
        resp = await api.get("/api/v1/auth/me")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Union

import httpx

from core.cookies import ACCESS_COOKIE, REFRESH_COOKIE

logger = logging.getLogger("keyward.client")

REFRESH_PATH = "/api/v1/auth/refresh"
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

AuthFailureHandler = Callable[[], Union[None, Awaitable[None]]]


class _RefreshState:
    """Mutable refresh bookkeeping, one per middleware instance."""

    def __init__(self) -> None:
        self.task: asyncio.Task | None = None
        # Reset at the start of every refresh cycle.
        self.failure_handled = False


class RefreshMiddleware:
    def __init__(
        self,
        client: httpx.AsyncClient,
        refresh_path: str = REFRESH_PATH,
        on_auth_failure: AuthFailureHandler | None = None,
    ) -> None:
        self._client = client
        self._refresh_path = refresh_path
        self._refresh_url = client.build_request("POST", refresh_path).url
        self._on_auth_failure = on_auth_failure
        self._state = _RefreshState()

    # ------------------------------------------------------------------
    # Public request API
    # ------------------------------------------------------------------

    async def request(self, method: str, url: httpx.URL | str, **kwargs) -> httpx.Response:
        return await self.send(self._client.build_request(method, url, **kwargs))

    async def get(self, url: httpx.URL | str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: httpx.URL | str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: httpx.URL | str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: httpx.URL | str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def send(self, request: httpx.Request) -> httpx.Response:
        response = await self._client.send(request)
        if response.status_code != 401:
            return response
        if request.url.path == self._refresh_url.path:
            return response

        refreshed = await self._await_refresh()
        if not refreshed:
            return response
        if request.method.upper() not in IDEMPOTENT_METHODS:
            return response
        return await self._client.send(self._rebuild(request))

    # ------------------------------------------------------------------
    # Refresh coordination
    # ------------------------------------------------------------------

    def _join_refresh(self) -> asyncio.Task:
        state = self._state
        if state.task is None:
            state.failure_handled = False
            task = asyncio.ensure_future(self._refresh())
            state.task = task
            task.add_done_callback(self._clear_task)
        return state.task

    def _clear_task(self, task: asyncio.Task) -> None:
        if self._state.task is task:
            self._state.task = None

    async def _refresh(self) -> bool:
        try:
            response = await self._client.post(self._refresh_path)
        except httpx.HTTPError as exc:
            logger.warning("Session refresh failed: %s", exc)
            return False
        if not response.is_success:
            logger.info("Session refresh rejected with HTTP %d", response.status_code)
            return False
        return True

    async def _await_refresh(self) -> bool:
        task = self._join_refresh()
        ok = await asyncio.shield(task)
        if not ok:
            await self._handle_failure()
        return ok

    async def _handle_failure(self) -> None:
        state = self._state
        if state.failure_handled:
            return
        state.failure_handled = True
        self._forget_session()
        if self._on_auth_failure is None:
            return
        try:
            result = self._on_auth_failure()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("on_auth_failure callback raised")

    def _forget_session(self) -> None:
        for name in (ACCESS_COOKIE, REFRESH_COOKIE):
            self._client.cookies.delete(name)

    def _rebuild(self, request: httpx.Request) -> httpx.Request:
        """Copy an idempotent request, letting the client attach the refreshed cookies."""
        headers = {k: v for k, v in request.headers.items() if k.lower() not in ("cookie", "content-length")}
        return self._client.build_request(request.method, request.url, headers=headers)
