# Copyright (c) Microsoft. All rights reserved.

"""
Observability Module

Correlation baggage for turns and scheduled tasks, using the Microsoft
Agent 365 Observability SDK. Every inbound turn and every proactive task runs
inside an ``ObservabilityContext`` so spans emitted underneath carry the
tenant, the bot and a correlation id.
"""

import logging
import uuid
from typing import Optional

from microsoft_agents_a365.observability.core.middleware.baggage_builder import (
    BaggageBuilder,
)

from sso_agent.config import get_settings

logger = logging.getLogger(__name__)


class ObservabilityContext:
    """
    Context manager for observability baggage (correlation IDs, etc.).

    Usage:
        with ObservabilityContext(tenant_id, agent_id, correlation_id):
            await broker.acquire(user_id)
    """

    def __init__(
        self,
        tenant_id: Optional[str],
        agent_id: Optional[str],
        correlation_id: Optional[str] = None,
        enabled: Optional[bool] = None,
    ):
        self.tenant_id = tenant_id or "unknown"
        self.agent_id = agent_id or "unknown"
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.enabled = get_settings().observability.enabled if enabled is None else enabled
        self._baggage_context = None

    @classmethod
    def for_turn(cls, context) -> "ObservabilityContext":
        """Baggage for an inbound or proactive turn."""
        activity = context.activity
        recipient = getattr(activity, "recipient", None)
        conversation = getattr(activity, "conversation", None)
        return cls(
            tenant_id=getattr(conversation, "tenant_id", None) or getattr(recipient, "tenant_id", None),
            agent_id=getattr(recipient, "id", None),
            correlation_id=getattr(activity, "id", None),
        )

    def __enter__(self):
        """Enter the observability context."""
        if not self.enabled:
            return self
        try:
            self._baggage_context = (
                BaggageBuilder()
                .tenant_id(self.tenant_id)
                .agent_id(self.agent_id)
                .correlation_id(self.correlation_id)
                .build()
            )
            return self._baggage_context.__enter__()
        except Exception as e:
            logger.debug(f"Failed to create baggage context: {e}")
            self._baggage_context = None
            return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the observability context."""
        if self._baggage_context:
            return self._baggage_context.__exit__(exc_type, exc_val, exc_tb)
        return False
