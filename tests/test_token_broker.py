# Copyright (c) Microsoft. All rights reserved.

"""Tests for TokenBroker: strategy chain, forced refresh and failure mapping."""

import asyncio

from sso_agent.models import ErrorKind, TokenStatus, TokenSuccess
from sso_agent.proactive.session import ProactiveSession
from sso_agent.proactive.token_broker import (
    AdapterTokenStrategy,
    ConnectorClientStrategy,
    TokenBroker,
    TokenRequest,
    TokenStrategy,
    UserTokenClientStrategy,
)

from tests.conftest import MockActivity, MockAdapter, MockTurnContext, MockUserTokenOperations


class RecordingStrategy(TokenStrategy):
    def __init__(self, name, token=None, error=None, available=True, log=None):
        self.name = name
        self._token = token
        self._error = error
        self._available = available
        self._log = log if log is not None else []

    def available(self, context):
        return self._available

    async def acquire(self, context, request):
        self._log.append(self.name)
        if self._error:
            raise self._error
        if self._token is None:
            return None
        return TokenSuccess(self._token, connection_name=request.connection_name, channel_id=request.channel_id)


async def test_unknown_user_fails_without_opening_a_session(broker, adapter):
    result = await broker.acquire("nobody")

    assert not result.success
    assert result.error_kind is ErrorKind.NO_CONTEXT
    assert adapter.continuations == []


async def test_acquire_uses_stored_channel_and_connection(broker, store, adapter, token_operations):
    await store.record(MockActivity("U1"))

    result = await broker.acquire("U1")

    assert result.success
    assert result.token == "token-U1"
    assert result.connection_name == "GraphConnection"
    assert token_operations.get_calls == [("U1", "GraphConnection", "msteams")]

    app_id, continuation = adapter.continuations[0]
    assert app_id == "bot-app-id"
    assert continuation.name == "ContinueConversation"
    assert continuation.conversation.id == "conv-U1"
    assert continuation.from_property.id == "U1"

    context = await store.get("U1")
    assert context.token_status is TokenStatus.ACTIVE
    assert context.last_token_retrieved is not None


async def test_no_token_marks_user_unavailable(store, session):
    broker = TokenBroker(store, session, "GraphConnection")
    await store.record(MockActivity("U3"))

    result = await broker.acquire("U3")

    assert result.error_kind is ErrorKind.UNAVAILABLE
    assert result.message == "user needs to authenticate"
    assert result.diagnostics["availableMethods"]["user_token_client"] is True
    assert (await store.get("U3")).token_status is TokenStatus.UNAVAILABLE


async def test_strategies_run_in_order_until_first_success(store, session):
    log = []
    broker = TokenBroker(
        store,
        session,
        "GraphConnection",
        strategies=[
            RecordingStrategy("first", token=None, log=log),
            RecordingStrategy("skipped", token="never", available=False, log=log),
            RecordingStrategy("second", token="tok-2", log=log),
            RecordingStrategy("third", token="tok-3", log=log),
        ],
    )
    await store.record(MockActivity("U1"))

    result = await broker.acquire("U1")

    assert result.token == "tok-2"
    assert log == ["first", "second"]


async def test_strategy_exception_falls_through_to_next(store, session):
    broker = TokenBroker(
        store,
        session,
        "GraphConnection",
        strategies=[
            RecordingStrategy("boom", error=RuntimeError("token service down")),
            RecordingStrategy("fallback", token="tok-fallback"),
        ],
    )
    await store.record(MockActivity("U1"))

    result = await broker.acquire("U1")
    assert result.success
    assert result.token == "tok-fallback"


async def test_exhausted_chain_reports_strategy_errors(store, session):
    broker = TokenBroker(
        store,
        session,
        "GraphConnection",
        strategies=[RecordingStrategy("boom", error=RuntimeError("token service down"))],
    )
    await store.record(MockActivity("U1"))

    result = await broker.acquire("U1")
    assert result.error_kind is ErrorKind.UNAVAILABLE
    assert result.diagnostics["errors"] == {"boom": "token service down"}


async def test_force_refresh_signs_out_first(broker, store, token_operations):
    await store.record(MockActivity("U2"))
    before = await broker.acquire("U2")

    after = await broker.acquire("U2", force_refresh=True)

    assert token_operations.sign_out_calls == [("U2", "GraphConnection", "msteams")]
    assert after.success
    assert after.token != before.token


async def test_sign_out_failure_does_not_block_refresh(store):
    operations = MockUserTokenOperations({"U2": "token-U2"}, sign_out_error=RuntimeError("sign-out rejected"))
    session = ProactiveSession(MockAdapter(operations), timeout_seconds=5)
    broker = TokenBroker(store, session, "GraphConnection")
    await store.record(MockActivity("U2"))

    result = await broker.acquire("U2", force_refresh=True)

    assert len(operations.sign_out_calls) == 1
    assert result.success
    assert result.token == "token-U2"


async def test_session_open_failure(broker, store, adapter):
    await store.record(MockActivity("U1"))
    adapter.open_error = ConnectionError("service url unreachable")

    result = await broker.acquire("U1")

    assert result.error_kind is ErrorKind.SESSION_OPEN_FAILED
    assert result.diagnostics["errorName"] == "ConnectionError"
    context = await store.get("U1")
    assert context.token_status is TokenStatus.UNKNOWN
    assert context.last_token_attempt is not None


async def test_session_never_started(broker, store, adapter):
    await store.record(MockActivity("U1"))
    adapter.skip_callback = True

    result = await broker.acquire("U1")
    assert result.error_kind is ErrorKind.SESSION_OPEN_FAILED


async def test_session_timeout(store):
    class SlowAdapter(MockAdapter):
        async def continue_conversation(self, app_id, continuation_activity, callback):
            await asyncio.sleep(1)

    broker = TokenBroker(store, ProactiveSession(SlowAdapter(), timeout_seconds=0.05), "GraphConnection")
    await store.record(MockActivity("U1"))

    result = await broker.acquire("U1")
    assert result.error_kind is ErrorKind.TIMEOUT


async def test_acquire_many_preserves_order_with_partial_failures(broker, store):
    await store.record(MockActivity("U1"))
    await store.record(MockActivity("U2"))
    await store.record(MockActivity("U3"))

    results = await broker.acquire_many(["U2", "ghost", "U1", "U3"])

    assert [r.success for r in results] == [True, False, True, False]
    assert results[0].token == "token-U2"
    assert results[1].error_kind is ErrorKind.NO_CONTEXT
    assert results[2].token == "token-U1"
    assert results[3].error_kind is ErrorKind.UNAVAILABLE


async def test_acquire_in_context_uses_live_turn(broker, store, adapter, token_operations):
    activity = MockActivity("U1")
    await store.record(activity)
    context = MockTurnContext(activity, adapter=adapter)

    result = await broker.acquire_in_context(context, "U1")

    assert result.success
    assert adapter.continuations == []
    assert token_operations.get_calls == [("U1", "GraphConnection", "msteams")]


class TestAdapterTokenStrategy:
    class TokenAdapter:
        def __init__(self):
            self.calls = []

        async def get_user_token(self, context, connection_name, magic_code=None):
            self.calls.append(connection_name)
            return {"token": "adapter-token"}

    async def test_available_only_with_get_user_token(self):
        strategy = AdapterTokenStrategy()
        assert strategy.available(MockTurnContext(MockActivity(), adapter=self.TokenAdapter()))
        assert not strategy.available(MockTurnContext(MockActivity(), adapter=MockAdapter()))

    async def test_skips_when_turn_user_differs(self):
        adapter = self.TokenAdapter()
        context = MockTurnContext(MockActivity("someone-else"), adapter=adapter)
        request = _request("U1")

        assert await AdapterTokenStrategy().acquire(context, request) is None
        assert adapter.calls == []

    async def test_acquires_for_matching_user(self):
        adapter = self.TokenAdapter()
        context = MockTurnContext(MockActivity("U1"), adapter=adapter)

        token = await AdapterTokenStrategy().acquire(context, _request("U1"))
        assert token.token == "adapter-token"
        assert token.channel_id == "msteams"


class TestConnectorClientStrategy:
    async def test_uses_stored_service_url(self):
        operations = MockUserTokenOperations({"U1": "connector-token"})
        urls = []

        class ConnectorAdapter:
            def create_connector_client(self, service_url):
                urls.append(service_url)
                return type("Client", (), {"user_token": operations})()

        context = MockTurnContext(MockActivity("U1"), adapter=ConnectorAdapter())
        strategy = ConnectorClientStrategy()

        assert strategy.available(context)
        token = await strategy.acquire(context, _request("U1", service_url="https://stored.example/"))
        assert token.token == "connector-token"
        assert urls == ["https://stored.example/"]


def test_user_token_client_unavailable_without_turn_state():
    assert not UserTokenClientStrategy().available(MockTurnContext(MockActivity(), adapter=MockAdapter()))


def _request(user_id, service_url=""):
    return TokenRequest(user_id, "GraphConnection", "msteams", service_url=service_url)

