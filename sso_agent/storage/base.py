# Copyright (c) Microsoft. All rights reserved.

"""
Storage Interfaces

Persistence capabilities behind the context store and the scheduler. Both
components own their merge/claim semantics; a backend only has to store rows
and claim due tasks atomically.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from sso_agent.models import ScheduledTask, TokenStatus, UserContext


class ContextBackend(ABC):
    """Keyed storage for ``UserContext`` records (one per user id)."""

    @abstractmethod
    async def load_context(self, user_id: str) -> Optional[UserContext]:
        pass

    @abstractmethod
    async def upsert_routing(self, context: UserContext) -> None:
        """
        Insert *context*, or refresh the routing and display fields of an
        existing record.

        On conflict the token fields and ``created_at`` are kept and
        ``last_updated`` never moves backwards.
        """
        pass

    @abstractmethod
    async def update_token_state(
        self,
        user_id: str,
        status: Optional[TokenStatus],
        retrieved_at: Optional[datetime] = None,
        attempted_at: Optional[datetime] = None,
    ) -> bool:
        """Update only the token fields. A ``None`` status keeps the current one."""
        pass

    @abstractmethod
    async def delete_context(self, user_id: str) -> bool:
        pass

    @abstractmethod
    async def list_contexts(self, limit: int = 100) -> list[UserContext]:
        pass

    @abstractmethod
    async def count_contexts(self) -> int:
        pass

    async def health_check(self) -> bool:
        return True


class TaskBackend(ABC):
    """Pending set of scheduled tasks."""

    @abstractmethod
    async def add_task(self, task: ScheduledTask) -> None:
        pass

    @abstractmethod
    async def claim_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        """
        Remove and return every task with ``execute_at <= now``.

        Must be a single atomic step relative to ``add_task`` so a task is
        never claimed twice or lost.
        """
        pass

    @abstractmethod
    async def list_pending_tasks(self) -> list[ScheduledTask]:
        pass

    @abstractmethod
    async def remove_task(self, task_id: str) -> bool:
        pass
