# Copyright (c) Microsoft. All rights reserved.

"""
Main Dialog

Default handling for any message that is not a command:

    signed in      -> welcome, today's calendar, upcoming events, photo
    not signed in  -> sign-in prompt; if the user is still not signed in
                      once the prompt has been open for SIGN_IN_TIMEOUT_SECONDS,
                      the attempt is reported as unsuccessful and reset

The sign-in handshake itself belongs to the SDK's ``Authorization`` component;
this dialog only asks for the token and reacts to whether it is there.
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import aiohttp
from microsoft_agents.activity import Activity, ActivityTypes, Attachment
from microsoft_agents.hosting.core import TurnContext

from sso_agent.errors import GraphError
from sso_agent.graph import DirectoryClient
from sso_agent.messaging import (
    SIGN_IN_REQUIRED_MESSAGE,
    format_todays_events,
    format_upcoming_events,
    safe_send_activity,
)
from sso_agent.models import utcnow

logger = logging.getLogger(__name__)

TokenSource = Callable[[TurnContext], Awaitable[Optional[str]]]

SIGN_IN_PROMPT = "Please Sign In"
SIGN_IN_FAILED_MESSAGE = "Login was not successful, please try again."


class MainDialog:
    """Sign-in gate plus the signed-in welcome."""

    def __init__(
        self,
        token_source: TokenSource,
        sign_in_timeout_seconds: int = 300,
        directory_factory: Callable[[str], DirectoryClient] = DirectoryClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._token_source = token_source
        self._sign_in_timeout = timedelta(seconds=sign_in_timeout_seconds)
        self._directory_factory = directory_factory
        self._clock = clock
        # conversation id -> when the sign-in prompt was first shown
        self._pending_sign_ins: dict[str, datetime] = {}

    def sign_in_pending(self, conversation_id: str) -> bool:
        return conversation_id in self._pending_sign_ins

    def _prune_expired(self, now: datetime, keep: str) -> None:
        expired = [
            conversation_id
            for conversation_id, started in self._pending_sign_ins.items()
            if conversation_id != keep and now - started >= self._sign_in_timeout
        ]
        for conversation_id in expired:
            del self._pending_sign_ins[conversation_id]

    async def run(self, context: TurnContext) -> None:
        conversation_id = context.activity.conversation.id
        now = self._clock()
        self._prune_expired(now, keep=conversation_id)

        try:
            token = await self._token_source(context)
        except Exception as e:
            logger.warning(f"⚠️ Token lookup failed, treating user as signed out: {e}")
            token = None

        if token:
            self._pending_sign_ins.pop(conversation_id, None)
            await self.welcome(context, token)
            return

        started = self._pending_sign_ins.get(conversation_id)
        if started is not None and now - started >= self._sign_in_timeout:
            logger.info(f"⏰ Sign-in timed out for conversation {conversation_id}")
            self._pending_sign_ins.pop(conversation_id, None)
            await safe_send_activity(context, SIGN_IN_FAILED_MESSAGE)
            return

        if started is None:
            self._pending_sign_ins[conversation_id] = now
        await safe_send_activity(context, f"🔐 **{SIGN_IN_PROMPT}**\n\n{SIGN_IN_REQUIRED_MESSAGE}")

    async def welcome(self, context: TurnContext, token: str) -> None:
        """Greet a signed-in user with their profile and calendar."""
        client = self._directory_factory(token)

        try:
            me = await client.get_profile()
            await safe_send_activity(
                context, f"Welcome {me.get('displayName')} ({me.get('userPrincipalName')})!"
            )

            events = await client.get_todays_events(now=self._clock())
            await safe_send_activity(context, format_todays_events(events))

            upcoming = format_upcoming_events(await client.get_upcoming_events())
            if upcoming:
                await safe_send_activity(context, upcoming)
        except GraphError as e:
            if e.is_auth_error:
                await safe_send_activity(context, f"⚠️ Your sign-in is no longer valid. {SIGN_IN_REQUIRED_MESSAGE}")
            else:
                await safe_send_activity(
                    context,
                    f"Welcome! Authentication successful, but there was an issue accessing your calendar: {e}",
                )
            return
        except aiohttp.ClientError as e:
            logger.error(f"❌ Graph request failed during welcome: {e}")
            await safe_send_activity(
                context,
                f"Welcome! Authentication successful, but there was an issue accessing your calendar: {e}",
            )
            return

        await self._send_photo(context, client)

    async def _send_photo(self, context: TurnContext, client: DirectoryClient) -> None:
        try:
            data_uri = await client.get_photo_data_uri()
        except (GraphError, aiohttp.ClientError) as e:
            # Most users without a photo get a 404 here
            logger.info(f"Could not fetch user photo: {e}")
            return

        await safe_send_activity(
            context,
            Activity(
                type=ActivityTypes.message,
                attachments=[
                    Attachment(
                        content_type="image/png",
                        content_url=data_uri,
                        name="Your Profile Picture",
                    )
                ],
            ),
        )
