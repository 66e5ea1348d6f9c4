# Copyright (c) Microsoft. All rights reserved.

"""
Bot Commands

Exact-match text commands handled before the default dialog:

    token status                    validate the caller's token against Graph
    my profile                      show the caller's Graph profile
    context info                    show what the bot stored about the caller
    schedule task / background task schedule a calendar check
    logout                          sign the caller out of the token service

Anything else is left to the dialog (``handle`` returns False).
"""

import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import aiohttp
from microsoft_agents.hosting.core import TurnContext

from sso_agent.errors import GraphError
from sso_agent.graph import DirectoryClient
from sso_agent.messaging import (
    SIGN_IN_REQUIRED_MESSAGE,
    format_context_info,
    format_expiration,
    format_profile,
    safe_send_activity,
)
from sso_agent.models import ConversationReference, TaskType, TokenAcquisitionResult
from sso_agent.proactive.scheduler import BackgroundScheduler
from sso_agent.proactive.token_broker import TokenBroker
from sso_agent.storage.context_store import ConversationContextStore

logger = logging.getLogger(__name__)

Handler = Callable[[TurnContext], Awaitable[None]]
SignOut = Callable[[TurnContext], Awaitable[bool]]


def normalize_command(text: Optional[str]) -> str:
    return (text or "").strip().lower()


class CommandRouter:
    """Maps command text to handlers; unknown text falls through."""

    def __init__(
        self,
        store: ConversationContextStore,
        broker: TokenBroker,
        scheduler: Optional[BackgroundScheduler] = None,
        task_delay_minutes: int = 5,
        directory_factory: Callable[[str], DirectoryClient] = DirectoryClient,
        sign_out: Optional[SignOut] = None,
    ):
        self._store = store
        self._broker = broker
        self._scheduler = scheduler
        self._task_delay = timedelta(minutes=task_delay_minutes)
        self._directory_factory = directory_factory
        self._sign_out = sign_out or self._broker_sign_out
        self._commands: dict[str, Handler] = {
            "token status": self.token_status,
            "my profile": self.my_profile,
            "context info": self.context_info,
            "schedule task": self.schedule_task,
            "background task": self.schedule_task,
            "logout": self.logout,
        }

    @property
    def commands(self) -> list[str]:
        return list(self._commands)

    async def handle(self, context: TurnContext) -> bool:
        """Run the command named by the turn's text. Returns False if there is none."""
        handler = self._commands.get(normalize_command(context.activity.text))
        if handler is None:
            return False

        logger.info(f"💬 Command: {normalize_command(context.activity.text)}")
        await handler(context)
        return True

    async def _token(self, context: TurnContext) -> TokenAcquisitionResult:
        return await self._broker.acquire_in_context(context, context.activity.from_property.id)

    async def _broker_sign_out(self, context: TurnContext) -> bool:
        return await self._broker.sign_out_in_context(context, context.activity.from_property.id)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def token_status(self, context: TurnContext) -> None:
        sender = context.activity.from_property
        lines = [f"Token Status for {sender.name or sender.id}:", ""]

        result = await self._token(context)
        if not result.success:
            lines.append(f"Status: {result.error_kind.value}")
            lines.append(f"Message: {result.message or SIGN_IN_REQUIRED_MESSAGE}")
            await safe_send_activity(context, "\n".join(lines) + "\n")
            return

        try:
            await self._directory_factory(result.token).get_profile()
        except (GraphError, aiohttp.ClientError) as e:
            lines.append("Status: Token validation failed")
            lines.append(f"Message: {e}")
            await safe_send_activity(context, "\n".join(lines) + "\n")
            return

        lines.append("Status: Valid and working")
        lines.append(f"Token Length: {len(result.token)} characters")
        expires = format_expiration(result.expiration)
        if expires:
            lines.append(f"Expires: {expires}")
        lines.append("Auto-refresh: Enabled via the token service")
        lines.append("SSO: Teams Silent Authentication Active")
        await safe_send_activity(context, "\n".join(lines) + "\n")

    async def my_profile(self, context: TurnContext) -> None:
        result = await self._token(context)
        if not result.success:
            await safe_send_activity(context, f"Could not retrieve your profile: {result.message}")
            return

        try:
            profile = await self._directory_factory(result.token).get_profile()
        except GraphError as e:
            if e.is_auth_error:
                await safe_send_activity(context, SIGN_IN_REQUIRED_MESSAGE)
            else:
                await safe_send_activity(context, f"Could not retrieve your profile: {e}")
            return
        except aiohttp.ClientError as e:
            await safe_send_activity(context, f"Could not retrieve your profile: {e}")
            return

        await safe_send_activity(context, format_profile(profile))

    async def context_info(self, context: TurnContext) -> None:
        user_context = await self._store.get(context.activity.from_property.id)
        if user_context is None:
            await safe_send_activity(context, "No context information found.")
            return
        await safe_send_activity(context, format_context_info(user_context))

    async def schedule_task(self, context: TurnContext) -> None:
        if self._scheduler is None:
            await safe_send_activity(context, "⚠️ Background tasks are disabled on this bot.")
            return

        user_id = context.activity.from_property.id
        user_context = await self._store.get(user_id)
        reference = (
            user_context.conversation_reference
            if user_context and user_context.conversation_reference
            else ConversationReference.from_activity(context.activity)
        )
        if reference is None:
            await safe_send_activity(context, "⚠️ I couldn't capture this conversation, so I can't schedule a task.")
            return

        task_id = await self._scheduler.schedule(
            user_id, reference, self._task_delay, TaskType.CALENDAR_CHECK
        )
        minutes = int(self._task_delay.total_seconds() // 60)
        await safe_send_activity(
            context,
            f"⏰ Got it! I'll check your calendar in {minutes} minute{'s' if minutes != 1 else ''} "
            f"and message you here.\n\nTask ID: {task_id}",
        )

    async def logout(self, context: TurnContext) -> None:
        user_id = context.activity.from_property.id
        try:
            signed_out = await self._sign_out(context)
        except Exception as e:
            logger.warning(f"⚠️ Sign-out failed for {user_id}: {e}")
            signed_out = False

        if signed_out:
            await safe_send_activity(context, "👋 You have been signed out.")
        else:
            await safe_send_activity(context, "⚠️ I couldn't sign you out right now. Please try again.")
