# Copyright (c) Microsoft. All rights reserved.

"""
Proactive Module

Server-initiated work on behalf of a user:
- Reopening a stored conversation as a live turn
- Token acquisition through an ordered list of strategies
- Deferred, user-scoped tasks run by a background scheduler
"""

from sso_agent.proactive.scheduler import BackgroundScheduler
from sso_agent.proactive.session import ProactiveSession, build_continuation_activity
from sso_agent.proactive.token_broker import (
    AdapterTokenStrategy,
    ConnectorClientStrategy,
    TokenBroker,
    TokenRequest,
    TokenStrategy,
    UserTokenClientStrategy,
    default_strategies,
)

__all__ = [
    "BackgroundScheduler",
    "ProactiveSession",
    "build_continuation_activity",
    "AdapterTokenStrategy",
    "ConnectorClientStrategy",
    "TokenBroker",
    "TokenRequest",
    "TokenStrategy",
    "UserTokenClientStrategy",
    "default_strategies",
]
