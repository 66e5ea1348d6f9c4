# Copyright (c) Microsoft. All rights reserved.

"""Tests for ConversationContextStore merge rules and token bookkeeping."""

from datetime import timedelta

from sso_agent.models import ErrorKind, TokenFailure, TokenStatus, TokenSuccess
from sso_agent.storage.context_store import ConversationContextStore
from sso_agent.storage.memory import InMemoryContextBackend

from tests.conftest import T0, MockActivity, MockTurnContext


async def test_record_captures_reference_and_metadata(store):
    await store.record(MockTurnContext(MockActivity("U1", "User One")))

    context = await store.get("U1")
    assert context is not None
    assert context.user_name == "User One"
    assert context.channel_id == "msteams"
    assert context.tenant_id == "tenant-1"
    assert context.aad_object_id == "aad-U1"
    assert context.conversation_reference.conversation_id == "conv-U1"
    assert context.conversation_reference.bot_id == "bot-1"
    assert context.token_status is TokenStatus.UNKNOWN
    assert context.created_at == T0


async def test_record_accepts_bare_activity(store):
    await store.record(MockActivity("U2"))
    assert (await store.get("U2")).user_id == "U2"


async def test_created_at_is_never_overwritten(store, clock):
    await store.record(MockActivity("U1"))
    clock.advance(minutes=10)
    await store.record(MockActivity("U1", user_name="Renamed"))

    context = await store.get("U1")
    assert context.created_at == T0
    assert context.last_updated == T0 + timedelta(minutes=10)
    assert context.user_name == "Renamed"


async def test_last_updated_never_moves_backwards(store, clock):
    clock.advance(minutes=5)
    await store.record(MockActivity("U1"))
    clock.now = T0
    await store.record(MockActivity("U1"))

    assert (await store.get("U1")).last_updated == T0 + timedelta(minutes=5)


async def test_record_without_sender_is_a_noop(store):
    await store.record(MockActivity(user_id=None))
    await store.record(MockActivity(conversation_id=None))
    assert await store.count() == 0


async def test_record_swallows_backend_failures(clock):
    class BrokenBackend(InMemoryContextBackend):
        async def upsert_routing(self, context):
            raise RuntimeError("disk full")

    store = ConversationContextStore(BrokenBackend(), clock=clock)
    await store.record(MockActivity("U1"))
    assert await store.get("U1") is None


async def test_get_returns_a_copy(store):
    await store.record(MockActivity("U1"))
    context = await store.get("U1")
    context.user_name = "mutated"
    assert (await store.get("U1")).user_name == "User One"


async def test_success_marks_active(store, clock):
    await store.record(MockActivity("U1"))
    clock.advance(seconds=30)
    await store.mark_token_outcome("U1", TokenSuccess("abc"))

    context = await store.get("U1")
    assert context.token_status is TokenStatus.ACTIVE
    assert context.last_token_retrieved == T0 + timedelta(seconds=30)
    assert context.last_token_attempt is None


async def test_unavailable_marks_status_and_attempt(store, clock):
    await store.record(MockActivity("U1"))
    await store.mark_token_outcome("U1", TokenSuccess("abc"))
    clock.advance(minutes=1)
    await store.mark_token_outcome("U1", TokenFailure(ErrorKind.UNAVAILABLE, "user needs to authenticate"))

    context = await store.get("U1")
    assert context.token_status is TokenStatus.UNAVAILABLE
    assert context.last_token_attempt == T0 + timedelta(minutes=1)
    assert context.last_token_retrieved == T0


async def test_transient_failure_keeps_status(store):
    await store.record(MockActivity("U1"))
    await store.mark_token_outcome("U1", TokenSuccess("abc"))
    await store.mark_token_outcome("U1", TokenFailure(ErrorKind.TIMEOUT, "deadline passed"))

    context = await store.get("U1")
    assert context.token_status is TokenStatus.ACTIVE
    assert context.last_token_attempt is not None


async def test_token_status_survives_re_record(store):
    await store.record(MockActivity("U1"))
    await store.mark_token_outcome("U1", TokenSuccess("abc"))
    await store.record(MockActivity("U1"))
    assert (await store.get("U1")).token_status is TokenStatus.ACTIVE


async def test_mark_unknown_user_is_a_noop(store):
    await store.mark_token_outcome("ghost", TokenSuccess("abc"))
    assert await store.get("ghost") is None


async def test_list_and_remove(store):
    await store.record(MockActivity("U1"))
    await store.record(MockActivity("U2"))

    listing = await store.list_contexts()
    assert {c["userId"] for c in listing} == {"U1", "U2"}
    assert await store.remove("U1") is True
    assert await store.remove("U1") is False
    assert await store.count() == 1


async def test_public_dict_hides_reference(store):
    await store.record(MockActivity("U1"))
    public = (await store.get("U1")).to_public_dict()
    assert public["hasConversationReference"] is True
    assert "conversationReference" not in public
    assert public["tokenStatus"] == "unknown"


async def test_routing_write_never_restores_a_stale_token_state(clock):
    backend = InMemoryContextBackend()
    store = ConversationContextStore(backend, clock=clock)
    await store.record(MockActivity("U1"))
    stale = await backend.load_context("U1")

    await store.mark_token_outcome("U1", TokenSuccess("abc"))
    await backend.upsert_routing(stale)

    context = await store.get("U1")
    assert context.token_status is TokenStatus.ACTIVE
    assert context.last_token_retrieved == T0


async def test_reset_token_status(store):
    await store.record(MockActivity("U1"))
    await store.mark_token_outcome("U1", TokenSuccess("abc"))

    await store.reset_token_status("U1")

    context = await store.get("U1")
    assert context.token_status is TokenStatus.UNKNOWN
    assert context.last_token_retrieved == T0
