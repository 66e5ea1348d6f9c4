# Copyright (c) Microsoft. All rights reserved.

"""
Token Broker

Obtains a user's SSO bearer token outside of (or inside) a live turn.

Flow for ``acquire(user_id)``:
    1. Look up the stored conversation for the user (no network if absent)
    2. Reopen it with a ProactiveSession
    3. Inside the session, try each acquisition strategy in order:
         a. UserTokenClient from the turn state
         b. adapter-level get_user_token
         c. connector client built for the stored service URL
       A strategy whose capability the runtime does not expose is skipped.
    4. Record the outcome on the user's context

Every strategy is keyed by the user id being resolved and the channel
captured for that user, never by whatever turn happens to be active.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from microsoft_agents.hosting.core import TurnContext

from sso_agent.errors import SessionOpenError, SessionTimeoutError
from sso_agent.models import (
    ErrorKind,
    TokenAcquisitionResult,
    TokenFailure,
    TokenSuccess,
)
from sso_agent.proactive.session import ProactiveSession
from sso_agent.storage.context_store import ConversationContextStore

logger = logging.getLogger(__name__)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _token_from_response(response, request: "TokenRequest") -> Optional[TokenSuccess]:
    """Normalize a TokenResponse (object or dict) into a TokenSuccess."""
    if response is None:
        return None
    if isinstance(response, dict):
        get = response.get
    else:
        def get(name, default=None):
            return getattr(response, name, default)

    token = get("token")
    if not token:
        return None
    return TokenSuccess(
        token=token,
        expiration=get("expiration"),
        connection_name=get("connection_name") or get("connectionName") or request.connection_name,
        channel_id=get("channel_id") or get("channelId") or request.channel_id,
    )


@dataclass(frozen=True)
class TokenRequest:
    user_id: str
    connection_name: str
    channel_id: str
    service_url: str = ""
    force_refresh: bool = False


# =============================================================================
# STRATEGIES
# =============================================================================

class TokenStrategy:
    """One way of turning (user, connection) into a token."""

    name = "base"

    def available(self, context: TurnContext) -> bool:
        raise NotImplementedError

    async def acquire(self, context: TurnContext, request: TokenRequest) -> Optional[TokenSuccess]:
        raise NotImplementedError

    async def sign_out(self, context: TurnContext, request: TokenRequest) -> bool:
        """Revoke the user's cached token. Returns False when this strategy cannot."""
        return False

    async def _invalidate(self, sign_out, *args) -> None:
        """Best-effort sign-out before a forced refresh; failures never block acquisition."""
        try:
            await _maybe_await(sign_out(*args))
            logger.info(f"🔄 [{self.name}] Cached token invalidated")
        except Exception as e:
            logger.warning(f"⚠️ [{self.name}] Could not sign out user (continuing anyway): {e}")


class UserTokenClientStrategy(TokenStrategy):
    """The user token client the adapter placed in the turn state."""

    name = "user_token_client"

    @staticmethod
    def _operations(context: TurnContext):
        adapter = getattr(context, "adapter", None)
        key = getattr(adapter, "USER_TOKEN_CLIENT_KEY", None)
        turn_state = getattr(context, "turn_state", None)
        if not key or turn_state is None:
            return None
        client = turn_state.get(key)
        operations = getattr(client, "user_token", None)
        if operations is None or not hasattr(operations, "get_token"):
            return None
        return operations

    def available(self, context: TurnContext) -> bool:
        return self._operations(context) is not None

    async def acquire(self, context: TurnContext, request: TokenRequest) -> Optional[TokenSuccess]:
        operations = self._operations(context)
        if request.force_refresh and hasattr(operations, "sign_out"):
            await self._invalidate(
                operations.sign_out, request.user_id, request.connection_name, request.channel_id
            )
        response = await operations.get_token(
            request.user_id, request.connection_name, request.channel_id, None
        )
        return _token_from_response(response, request)

    async def sign_out(self, context: TurnContext, request: TokenRequest) -> bool:
        operations = self._operations(context)
        if not hasattr(operations, "sign_out"):
            return False
        await operations.sign_out(request.user_id, request.connection_name, request.channel_id)
        return True


class AdapterTokenStrategy(TokenStrategy):
    """Adapter-level ``get_user_token(context, connection_name)``."""

    name = "adapter_get_user_token"

    def available(self, context: TurnContext) -> bool:
        adapter = getattr(context, "adapter", None)
        return callable(getattr(adapter, "get_user_token", None))

    def _turn_user_matches(self, context: TurnContext, request: TokenRequest) -> bool:
        # This API resolves the user from the turn, so the turn must belong to the requested user
        sender = getattr(context.activity, "from_property", None)
        if getattr(sender, "id", None) != request.user_id:
            logger.warning(
                f"⚠️ [{self.name}] Turn user does not match {request.user_id}, skipping"
            )
            return False
        return True

    async def acquire(self, context: TurnContext, request: TokenRequest) -> Optional[TokenSuccess]:
        if not self._turn_user_matches(context, request):
            return None

        adapter = context.adapter
        if request.force_refresh and callable(getattr(adapter, "sign_out_user", None)):
            await self._invalidate(adapter.sign_out_user, context, request.connection_name)
        response = await adapter.get_user_token(context, request.connection_name, None)
        return _token_from_response(response, request)

    async def sign_out(self, context: TurnContext, request: TokenRequest) -> bool:
        adapter = context.adapter
        if not callable(getattr(adapter, "sign_out_user", None)) or not self._turn_user_matches(context, request):
            return False
        await _maybe_await(adapter.sign_out_user(context, request.connection_name))
        return True


class ConnectorClientStrategy(TokenStrategy):
    """Last resort: build a connector client and use its user-token operations."""

    name = "connector_client"

    def available(self, context: TurnContext) -> bool:
        adapter = getattr(context, "adapter", None)
        return callable(getattr(adapter, "create_connector_client", None))

    async def acquire(self, context: TurnContext, request: TokenRequest) -> Optional[TokenSuccess]:
        service_url = request.service_url or getattr(context.activity, "service_url", "")
        client = await _maybe_await(context.adapter.create_connector_client(service_url))
        operations = getattr(client, "user_token", None)
        if operations is None or not hasattr(operations, "get_token"):
            logger.debug(f"[{self.name}] Connector client has no user token operations")
            return None
        response = await operations.get_token(
            request.user_id, request.connection_name, request.channel_id, None
        )
        return _token_from_response(response, request)


def default_strategies() -> list[TokenStrategy]:
    return [UserTokenClientStrategy(), AdapterTokenStrategy(), ConnectorClientStrategy()]


# =============================================================================
# BROKER
# =============================================================================

class TokenBroker:
    """Resolves a user id to a bearer token via stored conversations."""

    def __init__(
        self,
        store: ConversationContextStore,
        session: ProactiveSession,
        connection_name: str,
        strategies: Optional[Sequence[TokenStrategy]] = None,
    ):
        self._store = store
        self._session = session
        self.connection_name = connection_name
        self._strategies = list(strategies) if strategies is not None else default_strategies()

    async def acquire(self, user_id: str, force_refresh: bool = False) -> TokenAcquisitionResult:
        """Acquire a token for *user_id* by reopening their stored conversation."""
        logger.info(f"🔑 Getting token for user: {user_id} (force_refresh: {force_refresh})")

        user_context = await self._store.get(user_id)
        if user_context is None or user_context.conversation_reference is None:
            logger.info(f"No conversation reference for user: {user_id}")
            return TokenFailure(ErrorKind.NO_CONTEXT, "user has not interacted with the bot yet")

        request = TokenRequest(
            user_id=user_id,
            connection_name=self.connection_name,
            channel_id=user_context.channel_id,
            service_url=user_context.service_url,
            force_refresh=force_refresh,
        )

        try:
            result = await self._session.open(
                user_context.conversation_reference,
                lambda context: self._run_strategies(context, request),
            )
        except SessionTimeoutError as e:
            result = TokenFailure(ErrorKind.TIMEOUT, str(e))
        except SessionOpenError as e:
            result = TokenFailure(
                ErrorKind.SESSION_OPEN_FAILED,
                str(e),
                {"errorName": type(e.cause).__name__ if e.cause else type(e).__name__},
            )
        except Exception as e:
            logger.exception(f"❌ Error getting token for user {user_id}")
            result = TokenFailure(ErrorKind.INTERNAL, str(e), {"errorName": type(e).__name__})

        if result is None:
            result = TokenFailure(ErrorKind.SESSION_OPEN_FAILED, "proactive turn was never started")

        await self._store.mark_token_outcome(user_id, result)
        return result

    async def acquire_in_context(
        self, context: TurnContext, user_id: str, force_refresh: bool = False
    ) -> TokenAcquisitionResult:
        """Acquire within an already-open turn (live or proactive) for *user_id*."""
        request = await self._request_in_context(context, user_id, force_refresh)
        try:
            result = await self._run_strategies(context, request)
        except Exception as e:
            logger.exception(f"❌ Error getting token for user {user_id}")
            result = TokenFailure(ErrorKind.INTERNAL, str(e), {"errorName": type(e).__name__})

        await self._store.mark_token_outcome(user_id, result)
        return result

    async def sign_out_in_context(self, context: TurnContext, user_id: str) -> bool:
        """
        Revoke *user_id*'s cached token from an open turn and reset their
        token status. Returns False when no strategy could sign them out.
        """
        request = await self._request_in_context(context, user_id)
        for strategy in self._strategies:
            if not strategy.available(context):
                continue
            try:
                signed_out = await strategy.sign_out(context, request)
            except Exception as e:
                logger.warning(f"⚠️ [{strategy.name}] sign-out failed for {user_id}: {e}")
                continue
            if signed_out:
                logger.info(f"👋 Signed out user {user_id} via {strategy.name}")
                await self._store.reset_token_status(user_id)
                return True
        return False

    async def acquire_many(
        self, user_ids: Sequence[str], force_refresh: bool = False
    ) -> list[TokenAcquisitionResult]:
        """Independent acquisitions, results in input order."""
        results = await asyncio.gather(
            *(self.acquire(user_id, force_refresh) for user_id in user_ids),
            return_exceptions=True,
        )
        return [
            r if not isinstance(r, BaseException)
            else TokenFailure(ErrorKind.INTERNAL, str(r), {"errorName": type(r).__name__})
            for r in results
        ]

    async def _request_in_context(
        self, context: TurnContext, user_id: str, force_refresh: bool = False
    ) -> TokenRequest:
        user_context = await self._store.get(user_id)
        channel_id = user_context.channel_id if user_context else getattr(context.activity, "channel_id", "")
        service_url = user_context.service_url if user_context else getattr(context.activity, "service_url", "")
        return TokenRequest(
            user_id=user_id,
            connection_name=self.connection_name,
            channel_id=channel_id or "",
            service_url=service_url or "",
            force_refresh=force_refresh,
        )

    def available_strategies(self, context: TurnContext) -> dict[str, bool]:
        return {s.name: s.available(context) for s in self._strategies}

    async def _run_strategies(self, context: TurnContext, request: TokenRequest) -> TokenAcquisitionResult:
        errors: dict[str, str] = {}
        for strategy in self._strategies:
            if not strategy.available(context):
                logger.debug(f"[{strategy.name}] not available in this runtime, skipping")
                continue

            logger.info(f"Using {strategy.name} for user {request.user_id}")
            try:
                token = await strategy.acquire(context, request)
            except Exception as e:
                logger.warning(f"⚠️ [{strategy.name}] failed for {request.user_id}: {e}")
                errors[strategy.name] = str(e)
                continue

            if token is not None:
                logger.info(
                    f"✅ Token retrieved for user {request.user_id} via {strategy.name} "
                    f"(length: {len(token.token)})"
                )
                return token

        logger.info(f"No token available for user {request.user_id}")
        diagnostics = {"availableMethods": self.available_strategies(context)}
        if errors:
            diagnostics["errors"] = errors
        return TokenFailure(ErrorKind.UNAVAILABLE, "user needs to authenticate", diagnostics)
