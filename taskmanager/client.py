from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from taskmanager.config import get_settings
from taskmanager.logging import get_logger
from taskmanager.service.errors import SessionExpiredError

logger = get_logger(__name__)

ACCESS_TOKEN_HEADER = "x-access-token"
REFRESH_TOKEN_HEADER = "x-refresh-token"
USER_ID_HEADER = "_id"

LogoutCallback = Callable[[], Union[None, Awaitable[None]]]


class ApiError(Exception):
    """Non-2xx response from the task manager API."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return cls(
                response.status_code,
                error.get("message") or response.reason_phrase,
                code=error.get("code"),
                details=error.get("details"),
            )
        return cls(response.status_code, response.text or response.reason_phrase)


class TaskManagerClient:
    """Async API client that keeps the caller logged in.

    Every authenticated request carries ``x-access-token``. A 401 triggers one
    refresh through ``GET /users/me/access-token`` followed by one replay of the
    original request. Concurrent 401s share a single refresh: the first caller
    starts it and the rest await the same future. If the refresh fails, local
    credentials are dropped, ``on_logout`` runs, and ``SessionExpiredError`` is
    raised to every waiting caller.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        on_logout: Optional[LogoutCallback] = None,
    ) -> None:
        self.base_url = base_url or get_settings().api_base_url
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout, connect=5.0),
        )
        self.on_logout = on_logout
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.user_id: Optional[str] = None
        self._refresh_future: Optional[asyncio.Future] = None

    async def __aenter__(self) -> "TaskManagerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.refresh_token and self.user_id)

    # plumbing
    @staticmethod
    def _unwrap(response: httpx.Response) -> Any:
        if response.status_code >= 400:
            raise ApiError.from_response(response)
        body = response.json()
        if isinstance(body, dict) and "status" in body:
            return body.get("data")
        return body

    async def _send(
        self, method: str, path: str, *, json: Any = None, token: Optional[str] = None
    ) -> httpx.Response:
        headers = {ACCESS_TOKEN_HEADER: token} if token else None
        return await self._http.request(method, path, json=json, headers=headers)

    async def _request(self, method: str, path: str, *, json: Any = None) -> Any:
        token_used = self.access_token
        response = await self._send(method, path, json=json, token=token_used)
        if response.status_code != 401:
            return self._unwrap(response)

        # Another request may already have refreshed while this one was in flight
        if self.access_token is None or self.access_token == token_used:
            await self._refresh_access_token()
        logger.debug("client_request_replayed", method=method, path=path)
        replay = await self._send(method, path, json=json, token=self.access_token)
        return self._unwrap(replay)

    async def _refresh_access_token(self) -> None:
        pending = self._refresh_future
        if pending is not None:
            if not await asyncio.shield(pending):
                raise SessionExpiredError("session expired; log in again")
            return
        if not self.refresh_token:
            # Already logged out; nothing left to refresh with
            raise SessionExpiredError("session expired; log in again")

        future = asyncio.get_running_loop().create_future()
        self._refresh_future = future
        ok = False
        try:
            ok = await self._fetch_access_token()
        finally:
            self._refresh_future = None
            future.set_result(ok)
        if not ok:
            await self.logout()
            raise SessionExpiredError("session expired; log in again")

    async def _fetch_access_token(self) -> bool:
        if not self.refresh_token or not self.user_id:
            return False
        try:
            response = await self._http.get(
                "/users/me/access-token",
                headers={
                    REFRESH_TOKEN_HEADER: self.refresh_token,
                    USER_ID_HEADER: self.user_id,
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("client_refresh_failed", error=str(exc))
            return False
        token = response.headers.get(ACCESS_TOKEN_HEADER)
        if response.status_code != 200 or not token:
            logger.warning("client_refresh_rejected", status_code=response.status_code)
            return False
        self.access_token = token
        logger.info("client_access_token_refreshed", user_id=self.user_id)
        return True

    def _store_session(self, response: httpx.Response) -> dict:
        data = self._unwrap(response)
        self.access_token = response.headers.get(ACCESS_TOKEN_HEADER)
        self.refresh_token = response.headers.get(REFRESH_TOKEN_HEADER)
        self.user_id = data.get("id") if isinstance(data, dict) else None
        return data

    # auth
    async def signup(self, email: str, password: str) -> dict:
        response = await self._send(
            "POST", "/users", json={"email": email, "password": password}
        )
        return self._store_session(response)

    async def login(self, email: str, password: str) -> dict:
        response = await self._send(
            "POST", "/users/login", json={"email": email, "password": password}
        )
        return self._store_session(response)

    async def logout(self) -> None:
        """Drop local credentials; the server-side session simply ages out."""
        self.access_token = None
        self.refresh_token = None
        self.user_id = None
        logger.info("client_logged_out")
        if self.on_logout is not None:
            result = self.on_logout()
            if inspect.isawaitable(result):
                await result

    async def get_me(self) -> dict:
        return await self._request("GET", "/users/me")

    async def change_password(self, current_password: str, new_password: str) -> dict:
        return await self._request(
            "POST",
            "/users/me/password",
            json={"current_password": current_password, "new_password": new_password},
        )

    # lists
    async def get_lists(self) -> list[dict]:
        data = await self._request("GET", "/lists")
        return data["items"]

    async def create_list(self, title: str) -> dict:
        return await self._request("POST", "/lists", json={"title": title})

    async def update_list(self, list_id: str, **fields: Any) -> dict:
        return await self._request("PATCH", f"/lists/{list_id}", json=fields)

    async def delete_list(self, list_id: str) -> dict:
        return await self._request("DELETE", f"/lists/{list_id}")

    # tasks
    async def get_tasks(self, list_id: str) -> list[dict]:
        data = await self._request("GET", f"/lists/{list_id}/tasks")
        return data["items"]

    async def get_task(self, list_id: str, task_id: str) -> dict:
        return await self._request("GET", f"/lists/{list_id}/tasks/{task_id}")

    async def create_task(self, list_id: str, title: str) -> dict:
        return await self._request(
            "POST", f"/lists/{list_id}/tasks", json={"title": title}
        )

    async def update_task(self, list_id: str, task_id: str, **fields: Any) -> dict:
        return await self._request(
            "PATCH", f"/lists/{list_id}/tasks/{task_id}", json=fields
        )

    async def complete_task(self, list_id: str, task_id: str, completed: bool = True) -> dict:
        return await self.update_task(list_id, task_id, completed=completed)

    async def delete_task(self, list_id: str, task_id: str) -> dict:
        return await self._request("DELETE", f"/lists/{list_id}/tasks/{task_id}")
