"""
Session API: create, run turns, inspect, close, and answer approvals.

Contract: POST /sessions -> 201 + session_id; POST /sessions/{id}/turns ->
success envelope (200) or error envelope with the status mapped from the
outcome; POST /sessions/{id}/turns/stream -> server-sent `delta` events then
one `done` or `error` event carrying the same envelope; GET/DELETE
/sessions/{id}; GET /sessions/{id}/approvals lists parked approval
requests; POST /sessions/{id}/approvals/{request_id} resolves one.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse

from agent_runtime.approval import PendingApprovalHandler
from agent_runtime.dependencies import enforce_auth, get_pipeline
from agent_runtime.models import ApprovalDecision, TurnOutcome, TurnRequest
from agent_runtime.pipeline import (
    TurnPipeline,
    build_error_envelope,
    build_success_envelope,
    new_request_id,
)

router = APIRouter(prefix="/sessions", tags=["sessions"])

_STATUS_BY_CODE = {
    "input_rejected": 422,
    "session_busy": 409,
    "session_not_found": 404,
    "llm_unavailable": 503,
    "critical_tool_failure": 502,
    "cancelled": 499,
}


def outcome_status_code(outcome: TurnOutcome) -> int:
    if outcome.status in ("ok", "clarification"):
        return 200
    code = (outcome.error or {}).get("code")
    return _STATUS_BY_CODE.get(code, 500)


def _session_error(pipeline: TurnPipeline, status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    body = build_error_envelope(
        request_id=new_request_id(),
        spec=pipeline.spec,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.post("", status_code=201, dependencies=[Depends(enforce_auth)])
async def post_sessions(
    request: Request,
    pipeline: TurnPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """
    Create a new session. Optional body: { "context": {...} } seeds session context.
    Returns 201 with { session_id, state }.
    """
    raw = await request.body()
    try:
        body = json.loads(raw) if raw.strip() else {}
    except ValueError:
        return _session_error(pipeline, 400, "malformed_request", "Request body must be valid JSON")
    if not isinstance(body, dict):
        return _session_error(pipeline, 400, "malformed_request", "Request body must be a JSON object")
    context = body.get("context")
    if context is not None and not isinstance(context, dict):
        return _session_error(pipeline, 400, "malformed_request", "'context' must be an object")
    session = await pipeline.start_session(context)
    return JSONResponse(status_code=201, content={"session_id": session.id, "state": session.current_state})


@router.post("/{session_id}/turns", dependencies=[Depends(enforce_auth)])
async def post_turn(
    session_id: str,
    turn: TurnRequest,
    pipeline: TurnPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """Run one turn. Failures come back as an error envelope, never as a partial answer."""
    outcome = await pipeline.run_turn(session_id, turn.input, overrides=turn.overrides, context=turn.context)
    status_code, body = _outcome_body(pipeline, outcome)
    return JSONResponse(status_code=status_code, content=body)


@router.post("/{session_id}/turns/stream", dependencies=[Depends(enforce_auth)])
async def post_turn_stream(
    session_id: str,
    turn: TurnRequest,
    pipeline: TurnPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    """
    Run one turn as server-sent events.

    Emits `delta` events with {"text": ...} while the reply is produced, then
    a final `done` (success envelope) or `error` (error envelope) event.
    An unknown session fails with a plain 404 before the stream opens.
    """
    await pipeline.get_session(session_id)

    async def event_stream():
        async for kind, value in pipeline.stream_turn(
            session_id, turn.input, overrides=turn.overrides, context=turn.context
        ):
            if kind == "delta":
                yield f"event: delta\ndata: {json.dumps({'text': value})}\n\n"
                continue
            status_code, body = _outcome_body(pipeline, value)
            event = "done" if status_code == 200 else "error"
            yield f"event: {event}\ndata: {json.dumps(jsonable_encoder(body))}\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")


def _outcome_body(pipeline: TurnPipeline, outcome: TurnOutcome) -> Tuple[int, Dict[str, Any]]:
    status_code = outcome_status_code(outcome)
    if status_code == 200:
        return 200, build_success_envelope(outcome)
    error = outcome.error or {"code": "internal_error", "message": "Turn failed", "details": None}
    body = build_error_envelope(
        request_id=outcome.meta.get("request_id", new_request_id()),
        spec=pipeline.spec,
        code=error["code"],
        message=error["message"],
        details=error.get("details"),
        latency_ms=outcome.meta.get("latency_ms"),
    )
    return status_code, body


@router.post("/{session_id}/cancel", dependencies=[Depends(enforce_auth)])
async def post_cancel(session_id: str, pipeline: TurnPipeline = Depends(get_pipeline)) -> JSONResponse:
    """Ask a running turn to stop at its next phase boundary."""
    return JSONResponse(status_code=200, content={"session_id": session_id, "cancelled": pipeline.cancel(session_id)})


@router.get("/{session_id}")
async def get_session(session_id: str, pipeline: TurnPipeline = Depends(get_pipeline)) -> JSONResponse:
    session = await pipeline.get_session(session_id)
    return JSONResponse(status_code=200, content=session.model_dump(mode="json"))


@router.delete("/{session_id}", dependencies=[Depends(enforce_auth)])
async def delete_session(session_id: str, pipeline: TurnPipeline = Depends(get_pipeline)) -> JSONResponse:
    await pipeline.close_session(session_id)
    return JSONResponse(status_code=200, content={"ok": True, "session_id": session_id})


@router.get("/{session_id}/approvals")
async def get_approvals(session_id: str, pipeline: TurnPipeline = Depends(get_pipeline)) -> JSONResponse:
    handler = pipeline.approval_handler
    pending = handler.pending(session_id) if isinstance(handler, PendingApprovalHandler) else []
    return JSONResponse(
        status_code=200,
        content={"session_id": session_id, "approvals": [r.model_dump(mode="json") for r in pending]},
    )


@router.post("/{session_id}/approvals/{request_id}", dependencies=[Depends(enforce_auth)])
async def post_approval(
    session_id: str,
    request_id: str,
    decision: ApprovalDecision,
    pipeline: TurnPipeline = Depends(get_pipeline),
) -> JSONResponse:
    handler = pipeline.approval_handler
    if not isinstance(handler, PendingApprovalHandler):
        return _session_error(pipeline, 409, "approvals_not_supported", "Approvals are not resolved over HTTP")
    if request_id not in {r.id for r in handler.pending(session_id)}:
        return _session_error(
            pipeline,
            404,
            "approval_not_found",
            f"No pending approval {request_id} for session {session_id}",
        )
    handler.resolve(request_id, decision.approved, decision.reason)
    return JSONResponse(
        status_code=200,
        content={"ok": True, "request_id": request_id, "approved": decision.approved},
    )
