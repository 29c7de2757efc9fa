from __future__ import annotations

from typing import Any, List, Mapping, Optional, Protocol, Tuple

from taskmanager.config import Settings
from taskmanager.logging import get_logger
from taskmanager.service.auth import AuthContext
from taskmanager.service.errors import NotFoundError, ServerError, ValidationError
from taskmanager.storage.models import (
    LIST_MUTABLE_FIELDS,
    TASK_MUTABLE_FIELDS,
    Task,
    TaskList,
)

logger = get_logger(__name__)


class TaskStore(Protocol):
    def list_lists(self, owner_user_id: str) -> List[TaskList]: ...

    def get_list(self, list_id: str, owner_user_id: str) -> Optional[TaskList]: ...

    def create_list(self, title: str, owner_user_id: str) -> TaskList: ...

    def update_list(
        self, list_id: str, owner_user_id: str, fields: Mapping[str, Any]
    ) -> Optional[TaskList]: ...

    def delete_list(self, list_id: str, owner_user_id: str) -> Optional[TaskList]: ...

    def list_tasks(self, list_id: str) -> List[Task]: ...

    def get_task(self, task_id: str, list_id: str) -> Optional[Task]: ...

    def create_task(self, list_id: str, title: str) -> Task: ...

    def update_task(
        self, task_id: str, list_id: str, fields: Mapping[str, Any]
    ) -> Optional[Task]: ...

    def delete_task(self, task_id: str, list_id: str) -> Optional[Task]: ...

    def delete_tasks_for_list(self, list_id: str) -> int: ...


def _check_fields(fields: Mapping[str, Any], allowed: frozenset) -> dict[str, Any]:
    rejected = sorted(set(fields) - allowed)
    if rejected:
        raise ValidationError(
            "fields are not updatable", detail={"fields": rejected}
        )
    return dict(fields)


class TaskListService:
    """List and task operations, every one filtered by the caller's ownership.

    A list owned by someone else looks exactly like a list that does not exist:
    both raise ``NotFoundError``. Task writes resolve the parent list against the
    caller first. Task reads are scoped to ``(task_id, list_id)`` only unless
    ``strict_task_reads`` is enabled.
    """

    def __init__(self, store: TaskStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _owned_list(self, principal: AuthContext, list_id: str) -> TaskList:
        task_list = self.store.get_list(list_id, principal.user_id)
        if not task_list:
            logger.info("list_access_denied", list_id=list_id)
            raise NotFoundError("list not found", detail={"list_id": list_id})
        return task_list

    # lists
    def list_lists(self, principal: AuthContext) -> List[TaskList]:
        return self.store.list_lists(principal.user_id)

    def create_list(self, principal: AuthContext, title: str) -> TaskList:
        task_list = self.store.create_list(title, principal.user_id)
        logger.info("list_created", list_id=task_list.id)
        return task_list

    def update_list(
        self, principal: AuthContext, list_id: str, fields: Mapping[str, Any]
    ) -> TaskList:
        updates = _check_fields(fields, LIST_MUTABLE_FIELDS)
        task_list = self.store.update_list(list_id, principal.user_id, updates)
        if not task_list:
            raise NotFoundError("list not found", detail={"list_id": list_id})
        return task_list

    def delete_list(self, principal: AuthContext, list_id: str) -> Tuple[TaskList, int]:
        task_list = self.store.delete_list(list_id, principal.user_id)
        if not task_list:
            raise NotFoundError("list not found", detail={"list_id": list_id})
        try:
            deleted_tasks = self.store.delete_tasks_for_list(list_id)
        except Exception as exc:
            logger.exception("list_cascade_failed", list_id=list_id)
            raise ServerError(
                "list deleted but its tasks could not be removed",
                detail={"list_id": list_id},
            ) from exc
        logger.info("list_deleted", list_id=list_id, deleted_tasks=deleted_tasks)
        return task_list, deleted_tasks

    # tasks
    def list_tasks(self, principal: AuthContext, list_id: str) -> List[Task]:
        if self.settings.strict_task_reads:
            self._owned_list(principal, list_id)
        return self.store.list_tasks(list_id)

    def get_task(self, principal: AuthContext, list_id: str, task_id: str) -> Task:
        if self.settings.strict_task_reads:
            self._owned_list(principal, list_id)
        task = self.store.get_task(task_id, list_id)
        if not task:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        return task

    def create_task(self, principal: AuthContext, list_id: str, title: str) -> Task:
        self._owned_list(principal, list_id)
        task = self.store.create_task(list_id, title)
        logger.info("task_created", list_id=list_id, task_id=task.id)
        return task

    def update_task(
        self,
        principal: AuthContext,
        list_id: str,
        task_id: str,
        fields: Mapping[str, Any],
    ) -> Task:
        updates = _check_fields(fields, TASK_MUTABLE_FIELDS)
        self._owned_list(principal, list_id)
        task = self.store.update_task(task_id, list_id, updates)
        if not task:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        return task

    def delete_task(self, principal: AuthContext, list_id: str, task_id: str) -> Task:
        self._owned_list(principal, list_id)
        task = self.store.delete_task(task_id, list_id)
        if not task:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        logger.info("task_deleted", list_id=list_id, task_id=task_id)
        return task
