from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dependencies import AuthError
from .errors import ConfigError, TurnError
from .loader import get_active_agent
from .pipeline import TurnPipeline, build_error_envelope, new_request_id
from .routers import sessions as sessions_router
from .sessions import SessionLocks
from .spec import ROOT_STATE
from .storage.session_store import build_storage


logger = logging.getLogger("agent-runtime")


def build_pipeline() -> TurnPipeline:
    """Wire a TurnPipeline for the agent named by AGENT_SPEC."""
    settings = get_settings()
    spec = get_active_agent()
    return TurnPipeline(
        spec,
        storage=build_storage(settings),
        locks=SessionLocks(settings.session_busy_policy, settings.session_wait_timeout),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the agent spec once; a bad spec keeps the app up and reports through /health."""
    app.state.pipeline = None
    app.state.load_error = None
    try:
        app.state.pipeline = build_pipeline()
    except ConfigError as exc:
        logger.error("agent spec failed to load error=%s", exc)
        app.state.load_error = str(exc)
    yield
    if app.state.pipeline is not None:
        await app.state.pipeline.hooks.drain()


app = FastAPI(title="Agent Runtime", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(sessions_router.router)


def _error_response(request: Request, status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    pipeline = getattr(request.app.state, "pipeline", None)
    body = build_error_envelope(
        request_id=new_request_id(),
        spec=pipeline.spec if pipeline is not None else None,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(TurnError)
async def turn_error_handler(request: Request, exc: TurnError) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return _error_response(request, 401, "unauthorized", str(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(e.get("loc", ())), "message": e.get("msg", "")} for e in exc.errors()]
    return _error_response(request, 400, "malformed_request", "Request body failed validation", details)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    pipeline = getattr(app.state, "pipeline", None)
    return {
        "service": get_settings().service_name,
        "agent": pipeline.spec.name if pipeline is not None else None,
        "version": pipeline.spec.version if pipeline is not None else None,
        "docs": "/docs",
        "agent_info": "/agent",
        "health": "/health",
    }


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """
    Simple health check. Returns 200 when the agent spec loaded successfully.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        message = getattr(request.app.state, "load_error", None) or "Agent runtime is not initialized"
        return _error_response(request, 500, "config_error", message)

    payload = {
        "status": "ok",
        "agent": pipeline.spec.name,
        "version": pipeline.spec.version,
    }
    return JSONResponse(status_code=200, content=payload)


@app.get("/agent")
async def agent(request: Request) -> JSONResponse:
    """
    Describe the loaded agent: skills, tools, states and LLM aliases.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        message = getattr(request.app.state, "load_error", None) or "Agent runtime is not initialized"
        return _error_response(request, 500, "config_error", message)

    spec = pipeline.spec
    payload = {
        "agent": spec.name,
        "version": spec.version,
        "description": spec.description,
        "skills": [{"id": s.id, "description": s.description} for s in spec.skills.values()],
        "tools": [{"id": t.id, "description": t.description} for t in spec.tools.values()],
        "states": [n.id for n in spec.states.nodes if n.id != ROOT_STATE] if spec.states is not None else [],
        "initial_state": spec.states.initial if spec.states is not None else None,
        "llms": sorted(spec.llms),
    }
    return JSONResponse(status_code=200, content=payload)


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
