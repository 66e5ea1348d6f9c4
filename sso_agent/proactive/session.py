# Copyright (c) Microsoft. All rights reserved.

"""
Proactive Session

Reopens a stored conversation so background code can run with a real
TurnContext, as if the user had just sent a message. The adapter's
``continue_conversation`` builds the turn (with its user token client and
connector) from a continuation activity made out of the stored reference.

Errors are raised, never swallowed:
    - SessionOpenError     the adapter could not reopen the conversation
    - SessionTimeoutError  the deadline passed
    - anything raised by ``work`` propagates unchanged
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from microsoft_agents.activity import Activity, ActivityTypes
from microsoft_agents.hosting.core import TurnContext

from sso_agent.errors import SessionOpenError, SessionTimeoutError
from sso_agent.models import ConversationReference

logger = logging.getLogger(__name__)

R = TypeVar("R")

Work = Callable[[TurnContext], Awaitable[R]]


def _compact(values: dict) -> dict:
    return {k: v for k, v in values.items() if v}


def build_continuation_activity(reference: ConversationReference) -> Activity:
    """Continuation event addressed from the stored user to the bot."""
    return Activity(
        type=ActivityTypes.event,
        name="ContinueConversation",
        channel_id=reference.channel_id,
        service_url=reference.service_url,
        conversation=_compact(
            {
                "id": reference.conversation_id,
                "tenant_id": reference.tenant_id,
                "conversation_type": reference.conversation_type,
            }
        ),
        from_property=_compact(
            {
                "id": reference.user_id,
                "name": reference.user_name,
                "aad_object_id": reference.user_aad_object_id,
            }
        ),
        recipient=_compact({"id": reference.bot_id, "name": reference.bot_name}),
        **_compact({"locale": reference.locale}),
    )


class ProactiveSession:
    """
    Opens proactive turns on stored conversation references.

    Usage:
        session = ProactiveSession(adapter, app_id)
        name = await session.open(reference, lambda ctx: ctx.send_activity("hi"))
    """

    def __init__(self, adapter, app_id: str = "", timeout_seconds: float = 60):
        self._adapter = adapter
        self._app_id = app_id
        self.timeout_seconds = timeout_seconds

    async def open(
        self,
        reference: ConversationReference,
        work: Work,
        app_id: Optional[str] = None,
    ) -> Any:
        """Run ``work`` inside a fresh turn bound to *reference* and return its result."""
        if reference is None:
            raise SessionOpenError("No conversation reference to reopen")

        activity = build_continuation_activity(reference)
        outcome: dict[str, Any] = {}

        async def callback(context: TurnContext):
            # Never raise into the adapter pipeline: its on_turn_error posts the raw error to the user
            try:
                outcome["value"] = await work(context)
            except Exception as e:
                outcome["error"] = e

        logger.debug(
            f"🔁 Opening proactive session (user={reference.user_id}, "
            f"conversation={reference.conversation_id})"
        )
        deadline = asyncio.timeout(self.timeout_seconds)
        try:
            async with deadline:
                await self._adapter.continue_conversation(
                    app_id or self._app_id, activity, callback
                )
        except Exception as e:
            if deadline.expired():
                raise SessionTimeoutError(
                    f"Proactive session for {reference.user_id} timed out after {self.timeout_seconds}s"
                ) from e
            logger.error(f"❌ Could not reopen conversation for {reference.user_id}: {e}")
            raise SessionOpenError(
                f"Could not reopen conversation {reference.conversation_id}: {e}", cause=e
            ) from e

        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("value")
