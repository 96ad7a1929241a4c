from __future__ import annotations

from typing import Optional

from fastapi import Request

from .config import get_settings
from .errors import ConfigError
from .pipeline import TurnPipeline


class AuthError(RuntimeError):
    """Raised when authentication fails."""


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def enforce_auth(request: Request) -> None:
    """
    Auth guard used by mutating endpoints.

    If AUTH_TOKEN is set, only that bearer token is accepted. Otherwise
    authentication is disabled (dev/tests).
    """
    settings = get_settings()
    if not settings.auth_token:
        return
    if request.headers.get("Authorization") is None:
        raise AuthError("Missing or invalid Authorization header")
    supplied = _get_bearer_token(request)
    if supplied is None:
        raise AuthError("Missing or invalid Authorization header")
    if supplied != settings.auth_token:
        raise AuthError("Invalid bearer token")


def get_pipeline(request: Request) -> TurnPipeline:
    """
    Dependency returning the pipeline built at startup.

    Tests override this via FastAPI's dependency_overrides to inject a
    pipeline wired with scripted providers and tools.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        message = getattr(request.app.state, "load_error", None) or "Agent runtime is not initialized"
        raise ConfigError(message)
    return pipeline
