"""Exception hierarchy for agent backends and their transports.

Everything raised by agent-conduit derives from ``AgentBackendError`` so
supervisors can catch one type and turn it into a clean "backend
unavailable" response instead of an opaque internal error.
"""

from __future__ import annotations

from typing import Any


class AgentBackendError(RuntimeError):
    """Base class for all agent backend failures."""


class ConfigError(AgentBackendError):
    """Raised when a backend configuration file or entry is invalid."""


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TransportError(AgentBackendError):
    """A transport-level failure (spawn, write, HTTP connection)."""


class TransportClosedError(TransportError):
    """The transport was closed or the child process went away."""


class JsonRpcError(TransportError):
    """The peer answered a request with a JSON-RPC error frame."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return f"{self.message} (code {self.code})"


class HttpTransportError(TransportError):
    """An HTTP control call returned a non-2xx status."""

    def __init__(self, status_code: int, body: str, *, method: str = "", path: str = "") -> None:
        detail = body.strip()[:200]
        super().__init__(f"{method} {path} failed with HTTP {status_code}: {detail}".strip())
        self.status_code = status_code
        self.body = body


class OperationTimeoutError(AgentBackendError, TimeoutError):
    """A wrapped operation did not finish within its timeout."""


# ---------------------------------------------------------------------------
# Backend lifecycle
# ---------------------------------------------------------------------------


class InitializationError(AgentBackendError):
    """The backend handshake failed (timeout, bad response, all candidates exhausted)."""


class BackendNotInitializedError(AgentBackendError):
    """An operation was attempted before ``initialize()``."""


class SessionCreationError(AgentBackendError):
    """The backend refused or botched session creation."""


class AuthenticationError(SessionCreationError):
    """Session creation failed because the backend is not authenticated."""


class SessionNotFoundError(AgentBackendError, KeyError):
    """No session with the given local id exists on this backend."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Session not found"


class SessionExpiredError(SessionNotFoundError):
    """The session belonged to a backend process that is no longer running."""


class PromptInProgressError(AgentBackendError):
    """A prompt was started while another one is still in flight on the session."""


class BackendError(AgentBackendError):
    """The backend reported a failure for the current turn."""
