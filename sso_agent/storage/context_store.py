# Copyright (c) Microsoft. All rights reserved.

"""
Conversation Context Store

Keeps, per user, what is needed to reopen the conversation later: the
routing reference plus denormalized display metadata and token status.

``record`` runs on every inbound turn, so it never raises. Merge rules,
applied inside each backend write so concurrent turns and token updates
never overwrite each other:
    - ``created_at`` is written once, on the first record for a user
    - ``last_updated`` and the token timestamps never move backwards
    - token status survives a re-record; only the routing data is refreshed
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Union

from sso_agent.models import (
    ConversationReference,
    ErrorKind,
    TokenAcquisitionResult,
    TokenStatus,
    UserContext,
    utcnow,
)
from sso_agent.storage.base import ContextBackend
from sso_agent.storage.memory import InMemoryContextBackend

logger = logging.getLogger(__name__)


class ConversationContextStore:
    """Owner of the per-user ``UserContext`` map."""

    def __init__(
        self,
        backend: Optional[ContextBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._backend = backend or InMemoryContextBackend()
        self._clock = clock

    async def record(self, turn) -> None:
        """
        Upsert the sender's context from an inbound turn.

        Accepts a TurnContext or a bare Activity. Turns without ``from.id``
        are ignored.
        """
        try:
            activity = getattr(turn, "activity", turn)
            reference = ConversationReference.from_activity(activity)
            if reference is None:
                logger.debug("Skipping context record: activity has no sender or conversation")
                return

            now = self._clock()
            sender = activity.from_property

            context = UserContext(
                user_id=reference.user_id,
                conversation_reference=reference,
                user_name=getattr(sender, "name", None) or "Unknown",
                channel_id=reference.channel_id,
                service_url=reference.service_url,
                tenant_id=reference.tenant_id or None,
                aad_object_id=reference.user_aad_object_id or None,
                conversation_id=reference.conversation_id,
                sso_enabled=True,
                created_at=now,
                last_updated=now,
            )
            await self._backend.upsert_routing(context)
            logger.info(f"✅ Context stored for user: {reference.user_id}")
        except Exception as e:
            logger.error(f"❌ Failed to store user context: {e}")

    async def get(self, user_id: str) -> Optional[UserContext]:
        """Look up a user's context (a copy; mutating it changes nothing)."""
        if not user_id:
            return None
        try:
            return await self._backend.load_context(user_id)
        except Exception as e:
            logger.error(f"❌ Failed to retrieve context for user {user_id}: {e}")
            return None

    async def mark_token_outcome(
        self,
        user_id: str,
        outcome: Union[TokenAcquisitionResult, TokenStatus],
    ) -> None:
        """
        Record the result of a token acquisition for *user_id*.

        Success marks the token active and stamps ``last_token_retrieved``.
        An exhausted strategy chain marks it unavailable; any other failure
        only stamps ``last_token_attempt``. Unknown users are ignored.
        """
        try:
            now = self._clock()
            status = self._status_for(outcome)
            if status is TokenStatus.ACTIVE:
                await self._backend.update_token_state(user_id, status, retrieved_at=now)
            else:
                await self._backend.update_token_state(user_id, status, attempted_at=now)
        except Exception as e:
            logger.error(f"❌ Failed to update token status for user {user_id}: {e}")

    @staticmethod
    def _status_for(outcome) -> Optional[TokenStatus]:
        if isinstance(outcome, TokenStatus):
            return outcome
        if outcome.success:
            return TokenStatus.ACTIVE
        if outcome.error_kind is ErrorKind.UNAVAILABLE:
            return TokenStatus.UNAVAILABLE
        return None

    async def reset_token_status(self, user_id: str) -> None:
        """Forget the token state after a sign-out."""
        try:
            await self._backend.update_token_state(user_id, TokenStatus.UNKNOWN)
        except Exception as e:
            logger.error(f"❌ Failed to reset token status for user {user_id}: {e}")

    async def remove(self, user_id: str) -> bool:
        try:
            return await self._backend.delete_context(user_id)
        except Exception as e:
            logger.error(f"❌ Failed to remove context for user {user_id}: {e}")
            return False

    async def list_contexts(self, limit: int = 100) -> list[dict]:
        """Admin listing: id and timestamps only."""
        try:
            contexts = await self._backend.list_contexts(limit)
        except Exception as e:
            logger.error(f"❌ Failed to retrieve all contexts: {e}")
            return []
        return [
            {
                "userId": c.user_id,
                "lastUpdated": c.last_updated.isoformat(),
                "createdAt": c.created_at.isoformat(),
            }
            for c in contexts
        ]

    async def count(self) -> int:
        try:
            return await self._backend.count_contexts()
        except Exception as e:
            logger.error(f"❌ Failed to count contexts: {e}")
            return 0

    async def health_check(self) -> bool:
        return await self._backend.health_check()
