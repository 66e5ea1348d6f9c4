# Copyright (c) Microsoft. All rights reserved.

"""
Directory Client

Thin Microsoft Graph wrapper built from a user's bearer token. Only the calls
the agent consumes are modelled: profile, calendar events and photo.

Non-2xx responses raise ``GraphError`` (with the HTTP status so callers can
tell an expired sign-in from other failures); transport errors from aiohttp
propagate as-is.
"""

import base64
import logging
import re
from datetime import datetime, time, timedelta, timezone
from typing import Optional

import aiohttp

from sso_agent.errors import GraphError

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
EVENT_FIELDS = "subject,start,end,organizer,location"

_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_graph_datetime(value: str) -> datetime:
    """Parse Graph's ``dateTime`` strings (7-digit fractions, implicit UTC)."""
    value = _FRACTION.sub(r"\1", value.replace("Z", "+00:00"))
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _graph_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


class DirectoryClient:
    """
    Microsoft Graph calls on behalf of one signed-in user.

    Usage:
        client = DirectoryClient(token)
        me = await client.get_profile()
        events = await client.get_todays_events()
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = GRAPH_BASE_URL,
        timeout_seconds: float = 30,
    ):
        if not token or not token.strip():
            raise ValueError("DirectoryClient: Invalid token received.")
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._token}"}

    async def _get_json(self, path: str, params: Optional[dict] = None) -> dict:
        url = f"{self._base_url}{path}"
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(url, headers=self._headers, params=params) as resp:
                if resp.status != 200:
                    raise await self._error(resp, path)
                return await resp.json()

    async def _get_bytes(self, path: str) -> bytes:
        url = f"{self._base_url}{path}"
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(url, headers=self._headers) as resp:
                if resp.status != 200:
                    raise await self._error(resp, path)
                return await resp.read()

    @staticmethod
    async def _error(resp: aiohttp.ClientResponse, path: str) -> GraphError:
        try:
            body = await resp.json(content_type=None)
            detail = body.get("error", {}).get("message") or body.get("error", {}).get("code")
        except Exception:
            detail = None
        message = f"Graph {path} failed ({resp.status}): {detail or resp.reason}"
        logger.error(f"❌ {message}")
        return GraphError(message, status=resp.status)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def get_profile(self) -> dict:
        """displayName, userPrincipalName, jobTitle, department, officeLocation, ..."""
        return await self._get_json("/me")

    async def validate_token(self) -> bool:
        try:
            await self.get_profile()
            return True
        except (GraphError, aiohttp.ClientError) as e:
            logger.warning(f"⚠️ Token validation failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------

    async def get_events(
        self,
        filter: Optional[str] = None,
        top: Optional[int] = None,
    ) -> list[dict]:
        """Events ordered by start time, optionally filtered with an OData expression."""
        params = {"$select": EVENT_FIELDS, "$orderby": "start/dateTime"}
        if filter:
            params["$filter"] = filter
        if top:
            params["$top"] = str(top)
        body = await self._get_json("/me/events", params)
        return body.get("value", [])

    async def get_upcoming_events(self, top: int = 10) -> list[dict]:
        return await self.get_events(top=top)

    async def get_todays_events(
        self, now: Optional[datetime] = None, remaining_only: bool = False
    ) -> list[dict]:
        """
        Events starting today (UTC day of *now*).

        With ``remaining_only`` the window starts at *now* instead of midnight.
        """
        now = now or datetime.now(timezone.utc)
        start_of_day = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo or timezone.utc)
        end_of_day = start_of_day + timedelta(days=1)
        window_start = now if remaining_only else start_of_day
        return await self.get_events(
            filter=(
                f"start/dateTime ge '{_graph_timestamp(window_start)}' "
                f"and start/dateTime lt '{_graph_timestamp(end_of_day)}'"
            )
        )

    # ------------------------------------------------------------------
    # Photo
    # ------------------------------------------------------------------

    async def get_photo(self) -> bytes:
        return await self._get_bytes("/me/photos/240x240/$value")

    async def get_photo_data_uri(self) -> str:
        photo = await self.get_photo()
        return f"data:image/png;base64,{base64.b64encode(photo).decode('ascii')}"
