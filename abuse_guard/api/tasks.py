"""Task endpoints: the JSON side of the app.

Reads are free; every mutation spends from the caller's per-user bucket
(60 burst, 1/s sustained).  Denials are a standard 429 with
Retry-After, which is what an API client expects.
"""

from __future__ import annotations

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from abuse_guard.api.dependencies import require_session_user
from abuse_guard.api.ratelimit import BY_USER, require_rate_limit
from abuse_guard.services.rate_limiter import RateLimitPolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

_task_limit = require_rate_limit(
    RateLimitPolicy(capacity=60, refill_rate=1.0, ttl_seconds=60),
    BY_USER,
    scope="tasks",
)


class TaskIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    done: bool | None = None


class Task(BaseModel):
    id: str
    title: str
    done: bool = False


# owner email -> task id -> task
_TASKS: dict[str, dict[str, Task]] = {}


def _owned_task(owner: str, task_id: str) -> Task:
    task = _TASKS.get(owner, {}).get(task_id)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Task not found"
        )
    return task


@router.get("")
async def list_tasks(
    owner: Annotated[str, Depends(require_session_user)],
) -> list[Task]:
    return list(_TASKS.get(owner, {}).values())


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(_task_limit.dependency)],
)
async def add_task(
    body: TaskIn,
    owner: Annotated[str, Depends(require_session_user)],
) -> Task:
    task = Task(id=str(uuid.uuid4()), title=body.title)
    _TASKS.setdefault(owner, {})[task.id] = task
    logger.info("Task created  owner=%s task_id=%s", owner, task.id)
    return task


@router.patch("/{task_id}", dependencies=[Depends(_task_limit.dependency)])
async def edit_task(
    task_id: str,
    body: TaskUpdate,
    owner: Annotated[str, Depends(require_session_user)],
) -> Task:
    task = _owned_task(owner, task_id)
    updated = task.model_copy(update=body.model_dump(exclude_none=True))
    _TASKS[owner][task_id] = updated
    return updated


@router.delete(
    "/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(_task_limit.dependency)],
)
async def delete_task(
    task_id: str,
    owner: Annotated[str, Depends(require_session_user)],
) -> Response:
    _owned_task(owner, task_id)
    del _TASKS[owner][task_id]
    return Response(status_code=status.HTTP_204_NO_CONTENT)
