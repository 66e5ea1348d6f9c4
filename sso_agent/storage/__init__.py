# Copyright (c) Microsoft. All rights reserved.

"""
Storage Module

Per-user conversation contexts and the pending scheduled-task set, behind
pluggable backends:
- In-memory (default, single process)
- PostgreSQL (shared across processes, selected with STORAGE_BACKEND=postgres)
"""

from sso_agent.storage.base import ContextBackend, TaskBackend
from sso_agent.storage.context_store import ConversationContextStore
from sso_agent.storage.memory import InMemoryContextBackend, InMemoryTaskBackend

__all__ = [
    "ContextBackend",
    "TaskBackend",
    "ConversationContextStore",
    "InMemoryContextBackend",
    "InMemoryTaskBackend",
]
