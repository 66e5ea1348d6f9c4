# Copyright (c) Microsoft. All rights reserved.

"""
HTTP API

Handler bodies for the token/profile/context endpoints, mounted on the host's
aiohttp application next to ``/api/messages``:

    GET  /health
    GET  /api/token/{user_id}
    POST /api/token/{user_id}/refresh
    GET  /api/token/{user_id}/validate
    GET  /api/user/{user_id}/profile
    GET  /api/user/{user_id}/context
    POST /api/tokens/batch            body: {"userIds": [...]}
    GET  /api/tasks

Failures are reported as JSON with the status mapped from the error kind.
"""

import json
import logging
from typing import Callable, Optional

import aiohttp
from aiohttp.web import Application, Request, Response, json_response

from sso_agent.errors import GraphError
from sso_agent.graph import DirectoryClient
from sso_agent.models import ErrorKind, TokenFailure, utcnow
from sso_agent.proactive.scheduler import BackgroundScheduler
from sso_agent.proactive.token_broker import TokenBroker
from sso_agent.storage.context_store import ConversationContextStore

logger = logging.getLogger(__name__)

STATUS_BY_ERROR_KIND = {
    ErrorKind.NO_CONTEXT: 404,
    ErrorKind.UNAVAILABLE: 401,
    ErrorKind.SESSION_OPEN_FAILED: 502,
    ErrorKind.TRANSPORT_ERROR: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INTERNAL: 500,
}


def status_for(failure: TokenFailure) -> int:
    return STATUS_BY_ERROR_KIND.get(failure.error_kind, 500)


def _bad_request(message: str) -> Response:
    return json_response({"success": False, "error": "bad-request", "message": message}, status=400)


def _graph_failure(error: Exception) -> Response:
    """JSON for a Graph call that failed after a token was obtained."""
    if isinstance(error, GraphError) and error.is_auth_error:
        return json_response(
            {"success": False, "error": ErrorKind.UNAVAILABLE.value, "message": str(error)},
            status=401,
        )
    return json_response(
        {"success": False, "error": ErrorKind.TRANSPORT_ERROR.value, "message": str(error)},
        status=502,
    )


ROUTES = (
    ("GET", "/health", "health"),
    ("GET", "/api/token/{user_id}", "get_token"),
    ("POST", "/api/token/{user_id}/refresh", "refresh_token"),
    ("GET", "/api/token/{user_id}/validate", "validate_token"),
    ("GET", "/api/user/{user_id}/profile", "get_profile"),
    ("GET", "/api/user/{user_id}/context", "get_context"),
    ("POST", "/api/tokens/batch", "batch_tokens"),
    ("GET", "/api/tasks", "list_tasks"),
)


def add_api_routes(app: Application, resolve: Callable[[], "TokenApi"]) -> None:
    """Mount the API on *app*. ``resolve`` picks the TokenApi for each request."""

    def dispatch(name: str):
        async def handler(request: Request) -> Response:
            return await getattr(resolve(), name)(request)
        return handler

    for method, path, name in ROUTES:
        app.router.add_route(method, path, dispatch(name))


class TokenApi:
    """Token, profile and context endpoints backed by the broker and the store."""

    def __init__(
        self,
        store: ConversationContextStore,
        broker: TokenBroker,
        scheduler: Optional[BackgroundScheduler] = None,
        batch_limit: int = 50,
        directory_factory: Callable[[str], DirectoryClient] = DirectoryClient,
    ):
        self._store = store
        self._broker = broker
        self._scheduler = scheduler
        self.batch_limit = batch_limit
        self._directory_factory = directory_factory

    def add_routes(self, app: Application) -> None:
        add_api_routes(app, lambda: self)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self, _req: Request) -> Response:
        storage_ok = True
        try:
            storage_ok = await self._store.health_check()
        except Exception as e:
            logger.warning(f"⚠️ Storage health check failed: {e}")
            storage_ok = False

        return json_response(
            {
                "status": "healthy" if storage_ok else "degraded",
                "userContextCount": await self._store.count(),
                "pendingTasks": await self._scheduler.pending_count() if self._scheduler else 0,
                "storage": "ok" if storage_ok else "unavailable",
                "timestamp": utcnow().isoformat(),
            }
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def _token_response(self, user_id: str, force_refresh: bool) -> Response:
        result = await self._broker.acquire(user_id, force_refresh=force_refresh)
        if result.success:
            return json_response(result.to_dict())
        return json_response(result.to_dict(), status=status_for(result))

    async def get_token(self, req: Request) -> Response:
        return await self._token_response(req.match_info["user_id"], force_refresh=False)

    async def refresh_token(self, req: Request) -> Response:
        return await self._token_response(req.match_info["user_id"], force_refresh=True)

    async def validate_token(self, req: Request) -> Response:
        user_id = req.match_info["user_id"]
        result = await self._broker.acquire(user_id)
        if not result.success:
            return json_response(
                {"valid": False, "reason": result.error_kind.value, "message": result.message},
                status=status_for(result),
            )

        try:
            await self._directory_factory(result.token).get_profile()
        except (GraphError, aiohttp.ClientError) as e:
            return json_response(
                {"valid": False, "reason": "Token validation failed", "message": str(e)},
                status=401 if isinstance(e, GraphError) and e.is_auth_error else 502,
            )

        return json_response(
            {
                "valid": True,
                "tokenLength": len(result.token),
                "expiration": result.expiration,
                "message": "Token is valid and working",
            }
        )

    async def batch_tokens(self, req: Request) -> Response:
        try:
            body = await req.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _bad_request("Request body must be JSON")

        user_ids = body.get("userIds") if isinstance(body, dict) else None
        if not isinstance(user_ids, list) or not user_ids:
            return _bad_request("userIds must be a non-empty array")
        if not all(isinstance(u, str) and u for u in user_ids):
            return _bad_request("userIds must contain non-empty strings")
        if len(user_ids) > self.batch_limit:
            return _bad_request(f"At most {self.batch_limit} userIds per request")

        logger.info(f"🔑 Batch token request for {len(user_ids)} user(s)")
        results = await self._broker.acquire_many(user_ids)
        items = [{"userId": user_id, **result.to_dict()} for user_id, result in zip(user_ids, results)]
        success_count = sum(1 for r in results if r.success)
        return json_response(
            {
                "results": items,
                "total": len(items),
                "successCount": success_count,
                "failureCount": len(items) - success_count,
            }
        )

    # ------------------------------------------------------------------
    # User data
    # ------------------------------------------------------------------

    async def get_profile(self, req: Request) -> Response:
        user_id = req.match_info["user_id"]
        result = await self._broker.acquire(user_id)
        if not result.success:
            return json_response(result.to_dict(), status=status_for(result))

        try:
            profile = await self._directory_factory(result.token).get_profile()
        except (GraphError, aiohttp.ClientError) as e:
            logger.error(f"❌ Error getting user profile for {user_id}: {e}")
            return _graph_failure(e)

        logger.info(f"✅ Profile retrieved for user: {user_id}")
        return json_response({"success": True, "profile": profile})

    async def get_context(self, req: Request) -> Response:
        user_id = req.match_info["user_id"]
        context = await self._store.get(user_id)
        if context is None:
            return json_response(
                {"success": False, "error": ErrorKind.NO_CONTEXT.value, "message": "No context found for user"},
                status=404,
            )
        return json_response(context.to_public_dict())

    async def list_tasks(self, _req: Request) -> Response:
        tasks = await self._scheduler.pending_tasks() if self._scheduler else []
        return json_response({"count": len(tasks), "tasks": [t.to_dict() for t in tasks]})
