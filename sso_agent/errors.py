# Copyright (c) Microsoft. All rights reserved.

"""
Error Types

Exceptions raised by the proactive subsystem and the Graph wrapper. The
token broker converts session errors into ``TokenFailure`` values; Graph
errors propagate to the caller unchanged.
"""

from typing import Optional


class SsoAgentError(Exception):
    """Base class for all agent errors."""


class SessionOpenError(SsoAgentError):
    """A stored conversation could not be reopened (or the work inside it failed)."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SessionTimeoutError(SsoAgentError):
    """The proactive session exceeded its deadline."""


class GraphError(SsoAgentError):
    """A Microsoft Graph call failed."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def is_auth_error(self) -> bool:
        if self.status in (401, 403):
            return True
        return "invalidauthenticationtoken" in str(self).lower()


class StorageError(SsoAgentError):
    """A persistence backend failed."""
