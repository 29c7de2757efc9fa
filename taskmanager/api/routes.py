from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Response

from taskmanager.api.schemas import (
    AccessTokenResponse,
    Envelope,
    ListCollectionResponse,
    ListCreateRequest,
    ListDeleteResponse,
    ListPatchRequest,
    ListResponse,
    LoginRequest,
    PasswordChangeRequest,
    SignupRequest,
    TaskCollectionResponse,
    TaskCreateRequest,
    TaskPatchRequest,
    TaskResponse,
    UserResponse,
)
from taskmanager.logging import bind_request_user, get_correlation_id, get_logger
from taskmanager.service.auth import AuthContext
from taskmanager.service.errors import NotFoundError
from taskmanager.service.runtime import get_runtime
from taskmanager.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter()

ACCESS_TOKEN_HEADER = "x-access-token"
REFRESH_TOKEN_HEADER = "x-refresh-token"
USER_ID_HEADER = "_id"


def _ok(data: Any) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


async def get_user(
    x_access_token: Optional[str] = Header(None, alias=ACCESS_TOKEN_HEADER),
) -> AuthContext:
    """Access-token gate: resolve the caller from ``x-access-token`` or fail with 401."""
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate_access(x_access_token)
    bind_request_user(ctx.user_id)
    return ctx


async def get_refresh_session(
    x_refresh_token: Optional[str] = Header(None, alias=REFRESH_TOKEN_HEADER),
    user_id: Optional[str] = Header(
        None, alias=USER_ID_HEADER, convert_underscores=False
    ),
) -> tuple[User, Session]:
    """Refresh-session gate: the session must exist on the user and be unexpired."""
    runtime = get_runtime()
    user, session = await runtime.auth.resolve_refresh_session(user_id, x_refresh_token)
    bind_request_user(user.id)
    return user, session


def _apply_token_headers(response: Response, tokens: dict[str, str]) -> None:
    response.headers[ACCESS_TOKEN_HEADER] = tokens["access_token"]
    response.headers[REFRESH_TOKEN_HEADER] = tokens["refresh_token"]


# users
@router.post("/users", response_model=Envelope, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Create an account and open its first refresh session.

    The tokens travel in the ``x-access-token`` and ``x-refresh-token`` response
    headers; the body carries the public user record.
    """
    runtime = get_runtime()
    user, _, tokens = await runtime.auth.signup(body.email, body.password)
    _apply_token_headers(response, tokens)
    return _ok(UserResponse.from_model(user))


@router.post("/users/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    user, _, tokens = await runtime.auth.login(body.email, body.password)
    _apply_token_headers(response, tokens)
    return _ok(UserResponse.from_model(user))


@router.get("/users/me/access-token", response_model=Envelope, tags=["auth"])
async def refresh_access_token(
    response: Response,
    refresh: tuple[User, Session] = Depends(get_refresh_session),
):
    """Mint a new access token for a valid refresh session.

    The refresh token itself is not rotated here; it stays valid until its own
    expiry.
    """
    runtime = get_runtime()
    user, _ = refresh
    token, expires_at = runtime.tokens.issue_access_token(user)
    logger.info("access_token_refreshed", user_id=user.id)
    response.headers[ACCESS_TOKEN_HEADER] = token
    return _ok(AccessTokenResponse(access_token=token, expires_at=expires_at))


@router.get("/users/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    return _ok(UserResponse.from_model(user))


@router.post("/users/me/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return _ok({"changed": True})


# lists
@router.get("/lists", response_model=Envelope, tags=["lists"])
async def list_lists(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    lists = runtime.tasks.list_lists(principal)
    return _ok(ListCollectionResponse(items=[ListResponse.from_model(tl) for tl in lists]))


@router.post("/lists", response_model=Envelope, tags=["lists"])
async def create_list(body: ListCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task_list = runtime.tasks.create_list(principal, body.title)
    return _ok(ListResponse.from_model(task_list))


@router.patch("/lists/{list_id}", response_model=Envelope, tags=["lists"])
async def update_list(
    list_id: str, body: ListPatchRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    task_list = runtime.tasks.update_list(principal, list_id, fields)
    return _ok(ListResponse.from_model(task_list))


@router.delete("/lists/{list_id}", response_model=Envelope, tags=["lists"])
async def delete_list(list_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task_list, deleted_tasks = runtime.tasks.delete_list(principal, list_id)
    return _ok(
        ListDeleteResponse(
            list=ListResponse.from_model(task_list), deleted_tasks=deleted_tasks
        )
    )


# tasks
@router.get("/lists/{list_id}/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(list_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    tasks = runtime.tasks.list_tasks(principal, list_id)
    return _ok(TaskCollectionResponse(items=[TaskResponse.from_model(t) for t in tasks]))


@router.get("/lists/{list_id}/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def get_task(list_id: str, task_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = runtime.tasks.get_task(principal, list_id, task_id)
    return _ok(TaskResponse.from_model(task))


@router.post("/lists/{list_id}/tasks", response_model=Envelope, tags=["tasks"])
async def create_task(
    list_id: str, body: TaskCreateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    task = runtime.tasks.create_task(principal, list_id, body.title)
    return _ok(TaskResponse.from_model(task))


@router.patch("/lists/{list_id}/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    list_id: str,
    task_id: str,
    body: TaskPatchRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    task = runtime.tasks.update_task(principal, list_id, task_id, fields)
    return _ok(TaskResponse.from_model(task))


@router.delete("/lists/{list_id}/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(list_id: str, task_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = runtime.tasks.delete_task(principal, list_id, task_id)
    return _ok(TaskResponse.from_model(task))
