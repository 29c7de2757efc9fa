from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskmanager.storage.models import Task, TaskList, User

MAX_TITLE_LENGTH = 256
# Upper bound on raw credential fields; the service enforces the real rules
MAX_CREDENTIAL_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _clean_title(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("title must be a string")
    stripped = value.strip()
    if not stripped:
        raise ValueError("title must not be empty")
    if len(stripped) > MAX_TITLE_LENGTH:
        raise ValueError(f"title must be at most {MAX_TITLE_LENGTH} characters")
    return stripped


class SignupRequest(BaseModel):
    email: str = Field(..., max_length=MAX_CREDENTIAL_LENGTH)
    password: str = Field(..., max_length=MAX_CREDENTIAL_LENGTH)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=MAX_CREDENTIAL_LENGTH)
    password: str = Field(..., max_length=MAX_CREDENTIAL_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_CREDENTIAL_LENGTH)
    new_password: str = Field(..., max_length=MAX_CREDENTIAL_LENGTH)


class UserResponse(BaseModel):
    """Public view of a user; never carries the hash, salt or sessions."""

    id: str
    email: str
    created_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(id=user.id, email=user.email, created_at=user.created_at)


class AccessTokenResponse(BaseModel):
    access_token: str
    expires_at: datetime


class ListCreateRequest(BaseModel):
    title: str

    @field_validator("title")
    @classmethod
    def _validate_title(cls, value: str) -> str:
        return _clean_title(value)


class ListPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _validate_title(cls, value: Optional[str]) -> Optional[str]:
        return _clean_title(value) if value is not None else None


class TaskCreateRequest(BaseModel):
    title: str

    @field_validator("title")
    @classmethod
    def _validate_title(cls, value: str) -> str:
        return _clean_title(value)


class TaskPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    completed: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def _validate_title(cls, value: Optional[str]) -> Optional[str]:
        return _clean_title(value) if value is not None else None


class ListResponse(BaseModel):
    id: str
    title: str
    owner_user_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, task_list: TaskList) -> "ListResponse":
        return cls(
            id=task_list.id,
            title=task_list.title,
            owner_user_id=task_list.owner_user_id,
            created_at=task_list.created_at,
            updated_at=task_list.updated_at,
        )


class ListCollectionResponse(BaseModel):
    items: List[ListResponse]


class ListDeleteResponse(BaseModel):
    list: ListResponse
    deleted_tasks: int


class TaskResponse(BaseModel):
    id: str
    title: str
    list_id: str
    completed: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            title=task.title,
            list_id=task.list_id,
            completed=task.completed,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class TaskCollectionResponse(BaseModel):
    items: List[TaskResponse]
