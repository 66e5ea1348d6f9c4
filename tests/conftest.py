# Copyright (c) Microsoft. All rights reserved.

"""
Shared fixtures: lightweight stand-ins for the SDK adapter, turn context and
user token client, plus a controllable clock.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from sso_agent.models import ConversationReference
from sso_agent.proactive.session import ProactiveSession
from sso_agent.proactive.token_broker import TokenBroker
from sso_agent.storage.context_store import ConversationContextStore

T0 = datetime(2025, 3, 10, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Activities and turn contexts
# ---------------------------------------------------------------------------

class MockAccount:
    def __init__(self, id: Optional[str], name: str = "", aad_object_id: str = "", tenant_id: str = ""):
        self.id = id
        self.name = name
        self.aad_object_id = aad_object_id
        self.tenant_id = tenant_id


class MockConversation:
    def __init__(self, id: Optional[str], tenant_id: str = "tenant-1", conversation_type: str = "personal"):
        self.id = id
        self.tenant_id = tenant_id
        self.conversation_type = conversation_type


class MockActivity:
    """Minimal inbound message activity."""

    def __init__(
        self,
        user_id: Optional[str] = "U1",
        user_name: str = "User One",
        text: str = "hello",
        conversation_id: Optional[str] = "conv-U1",
        channel_id: str = "msteams",
        service_url: str = "https://smba.example.net/amer/",
        tenant_id: str = "tenant-1",
    ):
        self.type = "message"
        self.id = f"act-{user_id}"
        self.text = text
        self.channel_id = channel_id
        self.service_url = service_url
        self.locale = "en-US"
        self.channel_data = None
        self.from_property = MockAccount(user_id, user_name, aad_object_id=f"aad-{user_id}")
        self.recipient = MockAccount("bot-1", "SSO Bot")
        self.conversation = MockConversation(conversation_id, tenant_id=tenant_id)


class MockUserTokenOperations:
    """``user_token`` operations of a user token client."""

    def __init__(self, tokens: Optional[dict] = None, sign_out_error: Optional[Exception] = None):
        self.tokens = dict(tokens or {})
        self.sign_out_error = sign_out_error
        self.get_calls: list[tuple] = []
        self.sign_out_calls: list[tuple] = []

    async def get_token(self, user_id, connection_name, channel_id, code=None):
        self.get_calls.append((user_id, connection_name, channel_id))
        token = self.tokens.get(user_id)
        if token is None:
            return None
        return {"token": token, "expiration": "2025-03-10T10:00:00Z", "connection_name": connection_name}

    async def sign_out(self, user_id, connection_name, channel_id):
        self.sign_out_calls.append((user_id, connection_name, channel_id))
        if self.sign_out_error:
            raise self.sign_out_error
        self.tokens[user_id] = f"{self.tokens.get(user_id, 'token')}-refreshed"


class MockUserTokenClient:
    def __init__(self, operations: MockUserTokenOperations):
        self.user_token = operations


class MockAdapter:
    """Adapter exposing only the proactive entry point and the token client key."""

    USER_TOKEN_CLIENT_KEY = "UserTokenClient"

    def __init__(self, token_operations: Optional[MockUserTokenOperations] = None):
        self.token_operations = token_operations
        self.open_error: Optional[Exception] = None
        self.skip_callback = False
        self.continuations: list = []
        self.contexts: list["MockTurnContext"] = []

    async def continue_conversation(self, app_id, continuation_activity, callback):
        self.continuations.append((app_id, continuation_activity))
        if self.open_error:
            raise self.open_error
        if self.skip_callback:
            return
        context = MockTurnContext(continuation_activity, adapter=self)
        self.contexts.append(context)
        await callback(context)


class MockTurnContext:
    def __init__(self, activity, adapter: Optional[MockAdapter] = None):
        self.activity = activity
        self.adapter = adapter
        self.turn_state = {}
        operations = getattr(adapter, "token_operations", None)
        if operations is not None:
            self.turn_state[adapter.USER_TOKEN_CLIENT_KEY] = MockUserTokenClient(operations)
        self.sent: list = []

    async def send_activity(self, message):
        self.sent.append(message)

    @property
    def sent_text(self) -> list[str]:
        return [m for m in self.sent if isinstance(m, str)]


class MockDirectoryClient:
    """Stand-in for DirectoryClient with canned responses."""

    def __init__(self, token: str, profile=None, events=None, upcoming=None, error: Optional[Exception] = None):
        self.token = token
        self.profile = profile or {"displayName": "User One", "userPrincipalName": "u1@contoso.com"}
        self.events = events or []
        self.upcoming = upcoming or []
        self.error = error
        self.calls: list[str] = []

    async def get_profile(self):
        self.calls.append("profile")
        if self.error:
            raise self.error
        return self.profile

    async def get_todays_events(self, now=None, remaining_only=False):
        self.calls.append(f"today(remaining_only={remaining_only})")
        if self.error:
            raise self.error
        return self.events

    async def get_upcoming_events(self, top=10):
        self.calls.append("upcoming")
        return self.upcoming

    async def get_photo_data_uri(self):
        self.calls.append("photo")
        raise self.error or _photo_missing()


def _photo_missing():
    from sso_agent.errors import GraphError

    return GraphError("Graph /me/photos/240x240/$value failed (404): ImageNotFound", status=404)


def make_reference(user_id: str = "U1", conversation_id: Optional[str] = None) -> ConversationReference:
    return ConversationReference(
        channel_id="msteams",
        service_url="https://smba.example.net/amer/",
        conversation_id=conversation_id or f"conv-{user_id}",
        user_id=user_id,
        bot_id="bot-1",
        bot_name="SSO Bot",
        tenant_id="tenant-1",
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_operations():
    return MockUserTokenOperations({"U1": "token-U1", "U2": "token-U2"})


@pytest.fixture
def adapter(token_operations):
    return MockAdapter(token_operations)


@pytest.fixture
def store(clock):
    return ConversationContextStore(clock=clock)


@pytest.fixture
def session(adapter):
    return ProactiveSession(adapter, app_id="bot-app-id", timeout_seconds=5)


@pytest.fixture
def broker(store, session):
    return TokenBroker(store, session, connection_name="GraphConnection")
