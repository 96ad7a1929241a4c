"""
Error taxonomy for the turn engine.

Terminal failures derive from `TurnError` and carry the same (status_code,
code, message, details) shape the HTTP layer turns into an error envelope.
Everything else is absorbed by the phase that raised it and converted into
an observation, a fallback, or a recorded flag.
"""

from __future__ import annotations

from typing import Any, Optional


class TurnError(Exception):
    """Base class for failures that end a turn (or a load) with a structured kind."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        self.message = message
        self.details = details
        if code is not None:
            self.code = code
        super().__init__(message)

    def as_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigError(TurnError):
    """Raised when an agent spec is invalid. Load time only."""

    code = "config_error"


class InputRejected(TurnError):
    """Input processing refused the turn; the session is left unchanged."""

    status_code = 422
    code = "input_rejected"


class LLMUnavailable(TurnError):
    """Every provider alias failed after retries."""

    status_code = 503
    code = "llm_unavailable"


class StorageError(TurnError):
    status_code = 500
    code = "storage_error"


class CriticalToolFailure(TurnError):
    status_code = 502
    code = "critical_tool_failure"


class SessionNotFound(TurnError):
    status_code = 404
    code = "session_not_found"


class SessionBusy(TurnError):
    status_code = 409
    code = "session_busy"


class TurnCancelled(TurnError):
    status_code = 499
    code = "cancelled"


# Absorbed categories


class LLMError(Exception):
    """
    A single failed model call.

    `category` is one of transient, rate_limited, auth, content_filtered.
    Only transient and rate_limited failures are retried on the same alias.
    """

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    CONTENT_FILTERED = "content_filtered"

    def __init__(self, category: str, message: str, *, alias: Optional[str] = None):
        self.category = category
        self.alias = alias
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.category in (self.TRANSIENT, self.RATE_LIMITED)


class ToolError(Exception):
    """A tool call that did not produce a result: policy_violation, timeout or execution_failure."""

    POLICY_VIOLATION = "policy_violation"
    TIMEOUT = "timeout"
    EXECUTION_FAILURE = "execution_failure"

    def __init__(self, kind: str, message: str, *, tool: Optional[str] = None):
        self.kind = kind
        self.tool = tool
        super().__init__(message)


class ActionError(Exception):
    """A state entry/exit action failed."""

    def __init__(self, message: str, *, state: Optional[str] = None, action: Optional[str] = None):
        self.state = state
        self.action = action
        super().__init__(message)


class ContextSourceError(Exception):
    """A dynamic context source could not be refreshed."""
