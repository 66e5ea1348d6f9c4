# Copyright (c) Microsoft. All rights reserved.

"""
Background Scheduler

An asyncio-based scheduler for deferred, user-scoped work (for example
"check my calendar in 5 minutes"). On each tick it:
    1. Claims every due task, removing it from the pending set first
    2. For each claimed task: reopens the conversation captured when the
       task was scheduled and acquires the user's token inside that turn
    3. Dispatches to the handler for the task type, or tells the user the
       session expired when no token is available

Tasks run at most once. A task that fails (or whose process dies mid-run) is
logged and lost, never requeued.

The interval is controlled by ``SCHEDULER_INTERVAL_SECONDS`` (default: 60).

Lifecycle:
    scheduler = BackgroundScheduler(session, broker)
    task = asyncio.create_task(scheduler.start())   # non-blocking
    ...
    await scheduler.stop()                           # graceful shutdown
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

import aiohttp
from microsoft_agents.hosting.core import TurnContext

from sso_agent.errors import GraphError
from sso_agent.graph import DirectoryClient
from sso_agent.messaging import (
    SESSION_EXPIRED_MESSAGE,
    format_calendar_check,
    safe_send_activity,
)
from sso_agent.models import (
    ConversationReference,
    ScheduledTask,
    TaskOutcome,
    TaskStatus,
    TaskType,
    TokenSuccess,
    make_task_id,
    utcnow,
)
from sso_agent.observability import ObservabilityContext
from sso_agent.proactive.session import ProactiveSession
from sso_agent.proactive.token_broker import TokenBroker
from sso_agent.storage.base import TaskBackend
from sso_agent.storage.memory import InMemoryTaskBackend

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TurnContext, ScheduledTask, TokenSuccess], Awaitable[str]]


class BackgroundScheduler:
    """
    Pending-task owner and tick loop.

    Task handlers are registered per ``TaskType``; ``calendarCheck`` is
    built in.
    """

    def __init__(
        self,
        session: ProactiveSession,
        broker: TokenBroker,
        backend: Optional[TaskBackend] = None,
        interval_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
        directory_factory: Callable[[str], DirectoryClient] = DirectoryClient,
    ):
        self.interval = interval_seconds
        self._session = session
        self._broker = broker
        self._backend = backend or InMemoryTaskBackend()
        self._clock = clock
        self._directory_factory = directory_factory
        self._handlers: dict[TaskType, TaskHandler] = {
            TaskType.CALENDAR_CHECK: self._calendar_check,
        }
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def register_handler(self, task_type: TaskType, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def schedule(
        self,
        user_id: str,
        conversation_reference: ConversationReference,
        delay: Union[timedelta, float],
        task_type: TaskType = TaskType.CALENDAR_CHECK,
    ) -> str:
        """Queue a task for *user_id* to run after *delay* (seconds or timedelta)."""
        if conversation_reference is None:
            raise ValueError(f"Cannot schedule a task for {user_id} without a conversation reference")
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)

        created_at = self._clock()
        pending_ids = {t.task_id for t in await self._backend.list_pending_tasks()}
        task_id = make_task_id(user_id, created_at)
        while task_id in pending_ids:
            created_at += timedelta(milliseconds=1)
            task_id = make_task_id(user_id, created_at)

        task = ScheduledTask(
            task_id=task_id,
            user_id=user_id,
            conversation_reference=conversation_reference,
            execute_at=created_at + delay,
            task_type=task_type,
            created_at=created_at,
        )
        await self._backend.add_task(task)
        logger.info(
            f"⏰ Scheduled {task_type.value} task {task_id} for {user_id} "
            f"at {task.execute_at.isoformat()}"
        )
        return task_id

    async def tick(self, now: Optional[datetime] = None) -> list[TaskOutcome]:
        """Claim and run every task due at *now*. Returns one outcome per claimed task."""
        now = now or self._clock()
        due = await self._backend.claim_due_tasks(now)
        if not due:
            return []

        logger.info(f"📋 {len(due)} scheduled task(s) due")
        outcomes = []
        for task in due:
            outcomes.append(await self._execute(task))
        return outcomes

    async def pending_tasks(self) -> list[ScheduledTask]:
        return await self._backend.list_pending_tasks()

    async def pending_count(self) -> int:
        return len(await self._backend.list_pending_tasks())

    async def cancel(self, task_id: str) -> bool:
        return await self._backend.remove_task(task_id)

    async def start(self) -> None:
        """Run the scheduler loop. Blocks until ``stop()`` is called."""
        if self._running:
            logger.warning("⏰ Scheduler is already running")
            return

        self._running = True
        self._task = asyncio.current_task()
        logger.info(f"⏰ Background scheduler started, interval {self.interval}s")

        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("❌ Scheduler tick failed (will retry next interval)")

            # Sleep in small increments so we can bail quickly on stop()
            for _ in range(max(1, self.interval)):
                if not self._running:
                    break
                await asyncio.sleep(1)

        logger.info("⏰ Background scheduler stopped")

    async def stop(self) -> None:
        """Signal the scheduler to stop after the current sleep."""
        self._running = False
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    # ------------------------------------------------------------------
    # Single task execution
    # ------------------------------------------------------------------

    async def _execute(self, task: ScheduledTask) -> TaskOutcome:
        """Run one claimed task inside its captured conversation."""
        reference = task.conversation_reference
        logger.info(f"🤖 Executing {task.task_type.value} task {task.task_id} for {task.user_id}")

        async def work(context: TurnContext) -> TaskOutcome:
            token = await self._broker.acquire_in_context(context, task.user_id)
            if not token.success:
                logger.info(f"⚠️ No token for {task.user_id} ({token.error_kind.value}), notifying user")
                await safe_send_activity(context, SESSION_EXPIRED_MESSAGE)
                return TaskOutcome(
                    task.task_id, task.user_id, TaskStatus.FAILED, f"token {token.error_kind.value}"
                )

            handler = self._handlers.get(task.task_type)
            if handler is None:
                return TaskOutcome(
                    task.task_id, task.user_id, TaskStatus.FAILED,
                    f"no handler for {task.task_type.value}",
                )
            detail = await handler(context, task, token)
            return TaskOutcome(task.task_id, task.user_id, TaskStatus.COMPLETED, detail or "")

        started = self._clock()
        try:
            with ObservabilityContext(reference.tenant_id, reference.bot_id, task.task_id):
                outcome = await self._session.open(reference, work)
        except Exception as e:
            logger.error(f"❌ Task {task.task_id} failed: {e}")
            outcome = TaskOutcome(task.task_id, task.user_id, TaskStatus.FAILED, str(e))

        if outcome is None:
            outcome = TaskOutcome(task.task_id, task.user_id, TaskStatus.FAILED, "proactive turn was never started")

        duration_ms = int((self._clock() - started).total_seconds() * 1000)
        logger.info(f"✅ Task {task.task_id} finished: {outcome.status.value} ({duration_ms}ms)")
        return outcome

    # ------------------------------------------------------------------
    # Task handlers
    # ------------------------------------------------------------------

    async def _calendar_check(
        self, context: TurnContext, task: ScheduledTask, token: TokenSuccess
    ) -> str:
        """Summarize the rest of today's events for the user."""
        client = self._directory_factory(token.token)
        try:
            events = await client.get_todays_events(now=self._clock(), remaining_only=True)
        except GraphError as e:
            if e.is_auth_error:
                await safe_send_activity(context, SESSION_EXPIRED_MESSAGE)
            else:
                await safe_send_activity(context, "⚠️ Your scheduled calendar check couldn't fetch your calendar.")
            raise
        except aiohttp.ClientError:
            await safe_send_activity(context, "⚠️ Your scheduled calendar check couldn't fetch your calendar.")
            raise

        await safe_send_activity(context, format_calendar_check(events))
        return f"{len(events)} event(s) summarized"
