# Copyright (c) Microsoft. All rights reserved.

"""
SSO Agent Package

A Teams agent that signs users in through an OAuth SSO connection, reads their
profile and calendar from Microsoft Graph, and acts on their behalf later by
reopening the conversation it last saw them in.

Modules:
    - config: Configuration and environment management
    - models: Conversation references, user contexts, tasks and token results
    - storage: Context store and pluggable persistence (memory, PostgreSQL)
    - proactive: Proactive sessions, token broker and background scheduler
    - graph: Microsoft Graph client
    - commands / dialogs: Bot-facing command surface and default dialog
    - api: HTTP endpoints for tokens, profiles and contexts
    - host: Agent host server

Usage:
    from sso_agent import create_and_run_host
    from sso_agent.config import get_settings
"""

from sso_agent.host import SsoAgentHost, create_and_run_host
from sso_agent.proactive import BackgroundScheduler, ProactiveSession, TokenBroker
from sso_agent.storage import ConversationContextStore

__all__ = [
    "SsoAgentHost",
    "create_and_run_host",
    "BackgroundScheduler",
    "ProactiveSession",
    "TokenBroker",
    "ConversationContextStore",
]

__version__ = "0.1.0"
