# Copyright (c) Microsoft. All rights reserved.

"""
Messaging Helpers

Safe sending (a reply window that already closed must not crash a proactive
task) and the plain-text renderings used by commands, the default dialog and
scheduled tasks.
"""

import logging
from datetime import datetime
from typing import Optional

from aiohttp.client_exceptions import ClientResponseError
from microsoft_agents.hosting.core import TurnContext

from sso_agent.graph import parse_graph_datetime
from sso_agent.models import UserContext

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = (
    "⏰ Your session has expired, so I couldn't run your scheduled calendar check. "
    "Please sign in again by sending me any message."
)
SIGN_IN_REQUIRED_MESSAGE = "Please sign in to continue. Send me any message to start signing in."
NOT_AVAILABLE = "Not available"


# =============================================================================
# SAFE RESPONSE HELPERS
# =============================================================================

async def safe_send_activity(context: TurnContext, message) -> bool:
    """
    Send an activity, handling 404 errors gracefully.

    404 means the conversation or reply window is gone; that is logged, not
    raised.

    Returns:
        True if sent successfully, False otherwise
    """
    try:
        await context.send_activity(message)
        logger.info("✅ Activity sent successfully")
        return True
    except ClientResponseError as e:
        if e.status == 404:
            preview = message[:100] if isinstance(message, str) else type(message).__name__
            logger.warning(f"⚠️ Reply window expired (404). Message was: {preview}...")
            return False
        logger.error(f"❌ Failed to send activity: {e}")
        return False
    except Exception as e:
        logger.error(f"❌ Unexpected error sending activity: {e}")
        return False


# =============================================================================
# RENDERING
# =============================================================================

def _format_time(value: datetime) -> str:
    return value.strftime("%I:%M %p")


def _event_times(event: dict) -> tuple[Optional[datetime], Optional[datetime]]:
    start = (event.get("start") or {}).get("dateTime")
    end = (event.get("end") or {}).get("dateTime")
    return (
        parse_graph_datetime(start) if start else None,
        parse_graph_datetime(end) if end else None,
    )


def format_event(event: dict) -> str:
    start, end = _event_times(event)
    lines = [f"• **{event.get('subject') or '(no subject)'}**"]
    if start and end:
        lines.append(f"  ⏰ {_format_time(start)} - {_format_time(end)}")

    location = (event.get("location") or {}).get("displayName")
    if location:
        lines.append(f"  📍 {location}")

    organizer = ((event.get("organizer") or {}).get("emailAddress") or {}).get("name")
    if organizer:
        lines.append(f"  👤 {organizer}")
    return "\n".join(lines)


def format_todays_events(events: list[dict], title: str = "Your calendar for today") -> str:
    if not events:
        return "📅 No events scheduled for today. Enjoy your free time!"
    body = "\n\n".join(format_event(e) for e in events)
    return f"📅 **{title}:**\n\n{body}"


def format_upcoming_events(events: list[dict], limit: int = 5) -> Optional[str]:
    if not events:
        return None
    lines = ["📆 **Your upcoming events:**", ""]
    for event in events[:limit]:
        start, _ = _event_times(event)
        lines.append(f"• **{event.get('subject') or '(no subject)'}**")
        if start:
            lines.append(f"  📅 {start.strftime('%a, %b %d')} at {_format_time(start)}")
        lines.append("")
    return "\n".join(lines).rstrip()


def format_calendar_check(events: list[dict]) -> str:
    """Scheduled calendar-check summary of the rest of the day."""
    if not events:
        return "⏰ Calendar check: nothing else on your calendar today."
    count = len(events)
    noun = "event" if count == 1 else "events"
    return format_todays_events(
        events, title=f"Calendar check: {count} more {noun} today"
    )


def format_profile(profile: dict) -> str:
    def field(name: str) -> str:
        return profile.get(name) or NOT_AVAILABLE

    return (
        "Your Profile:\n\n"
        f"Name: {field('displayName')}\n"
        f"Email: {field('userPrincipalName')}\n"
        f"Job Title: {field('jobTitle')}\n"
        f"Department: {field('department')}\n"
        f"Office Location: {field('officeLocation')}\n"
    )


def format_context_info(context: UserContext) -> str:
    last_updated = context.last_updated.strftime("%Y-%m-%d %H:%M:%S %Z") if context.last_updated else "Never"
    return (
        "Your Context Information:\n\n"
        f"User ID: {context.user_id}\n"
        f"User Name: {context.user_name}\n"
        f"Channel ID: {context.channel_id}\n"
        f"Tenant ID: {context.tenant_id or NOT_AVAILABLE}\n"
        f"SSO Enabled: {'Yes' if context.sso_enabled else 'No'}\n"
        f"Token Status: {context.token_status.value}\n"
        f"Last Updated: {last_updated}\n"
    )


def format_expiration(expiration) -> Optional[str]:
    if not expiration:
        return None
    if isinstance(expiration, datetime):
        return expiration.strftime("%Y-%m-%d %H:%M:%S %Z")
    try:
        return parse_graph_datetime(str(expiration)).strftime("%Y-%m-%d %H:%M:%S %Z")
    except ValueError:
        return str(expiration)
