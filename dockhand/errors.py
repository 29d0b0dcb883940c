"""
Errors
======

Every failure the agent can hit is raised as one of these. Low-level code
(runtime client, collectors, uploader serialisation) only raises; the
scheduler, the uploader loop, the proxy handler and `main()` decide whether
to log-and-continue or to exit.
"""

from __future__ import annotations
from typing import Optional


class AgentError(Exception):
    """Base class for all agent errors."""


class ConfigError(AgentError):
    """Invalid or missing configuration. Fatal at startup."""


class RuntimeUnreachable(AgentError):
    """The local runtime could not be dialed (socket missing, refused, timeout)."""

    def __init__(self, endpoint: str, reason: object):
        self.endpoint = endpoint
        self.reason   = reason
        super().__init__(f"runtime unreachable at {endpoint}: {reason}")


class RuntimeResponseError(AgentError):
    """The runtime answered with a non-success status."""

    def __init__(self, path: str, status: int, body: str = ""):
        self.path   = path
        self.status = status
        self.body   = body
        super().__init__(f"runtime returned {status} for {path}: {body[:200]}")


class MalformedPayloadError(AgentError):
    """A payload could not be decoded or encoded as JSON."""


class UploadError(AgentError):
    """A work unit could not be delivered to the remote service."""

    def __init__(self, path: str, reason: object, status: Optional[int] = None):
        self.path   = path
        self.reason = reason
        self.status = status
        super().__init__(f"upload to {path} failed: {reason}")


class RegistrationError(AgentError):
    """The registration handshake with the remote service failed."""
