# Copyright (c) Microsoft. All rights reserved.

"""
In-Memory Storage

Default single-process backends. Contexts live in a dict keyed by user id;
pending tasks live in a min-heap ordered by ``execute_at``.
"""

import asyncio
import dataclasses
import heapq
import itertools
from datetime import datetime
from typing import Optional

from sso_agent.models import ScheduledTask, TokenStatus, UserContext, latest
from sso_agent.storage.base import ContextBackend, TaskBackend


class InMemoryContextBackend(ContextBackend):
    def __init__(self):
        self._contexts: dict[str, UserContext] = {}

    async def load_context(self, user_id: str) -> Optional[UserContext]:
        context = self._contexts.get(user_id)
        return dataclasses.replace(context) if context else None

    async def upsert_routing(self, context: UserContext) -> None:
        existing = self._contexts.get(context.user_id)
        if existing is not None:
            context = dataclasses.replace(
                context,
                created_at=existing.created_at,
                last_updated=latest(existing.last_updated, context.last_updated),
                token_status=existing.token_status,
                last_token_retrieved=existing.last_token_retrieved,
                last_token_attempt=existing.last_token_attempt,
            )
        self._contexts[context.user_id] = dataclasses.replace(context)

    async def update_token_state(
        self,
        user_id: str,
        status: Optional[TokenStatus],
        retrieved_at: Optional[datetime] = None,
        attempted_at: Optional[datetime] = None,
    ) -> bool:
        context = self._contexts.get(user_id)
        if context is None:
            return False
        if status is not None:
            context.token_status = status
        context.last_token_retrieved = latest(context.last_token_retrieved, retrieved_at)
        context.last_token_attempt = latest(context.last_token_attempt, attempted_at)
        context.last_updated = latest(context.last_updated, retrieved_at or attempted_at)
        return True

    async def delete_context(self, user_id: str) -> bool:
        return self._contexts.pop(user_id, None) is not None

    async def list_contexts(self, limit: int = 100) -> list[UserContext]:
        return [dataclasses.replace(c) for c in list(self._contexts.values())[:limit]]

    async def count_contexts(self) -> int:
        return len(self._contexts)


class InMemoryTaskBackend(TaskBackend):
    """
    Heap of pending tasks.

    Cancelled tasks are dropped from ``_live`` and skipped lazily when they
    reach the top of the heap.
    """

    def __init__(self):
        self._heap: list[tuple[datetime, int, str]] = []
        self._live: dict[str, ScheduledTask] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def add_task(self, task: ScheduledTask) -> None:
        async with self._lock:
            self._live[task.task_id] = task
            heapq.heappush(self._heap, (task.execute_at, next(self._seq), task.task_id))

    async def claim_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        due: list[ScheduledTask] = []
        async with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, task_id = heapq.heappop(self._heap)
                task = self._live.pop(task_id, None)
                if task is not None:
                    due.append(task)
        return due

    async def list_pending_tasks(self) -> list[ScheduledTask]:
        async with self._lock:
            return sorted(self._live.values(), key=lambda t: t.execute_at)

    async def remove_task(self, task_id: str) -> bool:
        async with self._lock:
            return self._live.pop(task_id, None) is not None
