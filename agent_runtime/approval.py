"""
Human approval for sensitive tool calls and state transitions.

An ApprovalGate decides whether something needs approval, creates the
ApprovalRequest, hands it to the configured ApprovalHandler and waits with a
deadline. A request leaves `pending` exactly once: approved, rejected, or
timed_out (which then counts as the policy's `on_timeout` outcome). Answers
that arrive after the deadline are ignored.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from .conditions import lookup_path, match_value
from .hooks import HookBus
from .models import ApprovalRequest, Session
from .spec import ApprovalPolicy, ToolSpec

logger = logging.getLogger("agent-runtime")

DEFAULT_TOOL_MESSAGE = "Approve call to {tool} with arguments {args}?"
DEFAULT_TRANSITION_MESSAGE = "Approve moving the conversation to {state}?"


@dataclass
class ApprovalResult:
    approved: bool
    reason: Optional[str] = None


class ApprovalHandler(Protocol):
    """Capability contract: resolve a request, however long it takes."""

    async def submit(self, request: ApprovalRequest) -> ApprovalResult:  # pragma: no cover - interface only
        ...


class RejectAllHandler:
    preferred_language: Optional[str] = None

    async def submit(self, request: ApprovalRequest) -> ApprovalResult:
        return ApprovalResult(approved=False, reason="rejected by policy")


class AutoApproveHandler:
    preferred_language: Optional[str] = None

    async def submit(self, request: ApprovalRequest) -> ApprovalResult:
        return ApprovalResult(approved=True, reason="auto-approved")


class CallbackHandler:
    """Delegates to a sync or async callable returning bool or ApprovalResult."""

    def __init__(
        self,
        callback: Callable[[ApprovalRequest], Union[bool, ApprovalResult, Awaitable[Any]]],
        *,
        preferred_language: Optional[str] = None,
    ) -> None:
        self.callback = callback
        self.preferred_language = preferred_language

    async def submit(self, request: ApprovalRequest) -> ApprovalResult:
        result = self.callback(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ApprovalResult):
            return result
        return ApprovalResult(approved=bool(result))


class PendingApprovalHandler:
    """
    Parks requests until someone calls `resolve` (for example the HTTP route).

    `resolve` returns False for unknown, expired or already-answered ids.
    """

    def __init__(self, *, preferred_language: Optional[str] = None) -> None:
        self.preferred_language = preferred_language
        self._waiting: Dict[str, Tuple[ApprovalRequest, asyncio.Future]] = {}

    async def submit(self, request: ApprovalRequest) -> ApprovalResult:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiting[request.id] = (request, future)
        try:
            return await future
        finally:
            self._waiting.pop(request.id, None)

    def resolve(self, request_id: str, approved: bool, reason: Optional[str] = None) -> bool:
        entry = self._waiting.get(request_id)
        if entry is None:
            return False
        _, future = entry
        if future.done():
            return False
        future.set_result(ApprovalResult(approved=approved, reason=reason))
        return True

    def pending(self, session_id: Optional[str] = None) -> List[ApprovalRequest]:
        out = []
        for request, future in self._waiting.values():
            if future.done():
                continue
            if session_id is not None and request.subject.get("session_id") != session_id:
                continue
            out.append(request)
        return out


class _Placeholders(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def localize(message: Any, language: Optional[str], fallback: str = "en") -> str:
    """Pick the text for `language` from a string or a language -> text mapping."""
    if message is None:
        return ""
    if isinstance(message, str):
        return message
    if isinstance(message, Mapping):
        for lang in (language, fallback):
            if lang and message.get(lang):
                return str(message[lang])
        for value in message.values():
            if value:
                return str(value)
    return ""


def render_message(message: Any, language: Optional[str], **values: Any) -> str:
    text = localize(message, language)
    return text.format_map(_Placeholders(values))


class ApprovalGate:
    def __init__(
        self,
        handler: ApprovalHandler,
        policy: ApprovalPolicy,
        *,
        hooks: Optional[HookBus] = None,
    ) -> None:
        self.handler = handler
        self.policy = policy
        self.hooks = hooks or HookBus()

    @property
    def language(self) -> str:
        return getattr(self.handler, "preferred_language", None) or self.policy.language or "en"

    def tool_requirement(self, tool: ToolSpec, arguments: Mapping[str, Any]) -> Optional[str]:
        """Return the rendered approval message when this call needs approval, else None."""
        message: Any = None
        needed = False
        if tool.policy.require_confirmation:
            needed = True
            message = tool.policy.confirmation_message
        if tool.id in self.policy.tools:
            needed = True
        for rule in self.policy.rules:
            if rule.tool is not None and rule.tool != tool.id:
                continue
            if all(match_value(lookup_path(arguments, path), m) for path, m in rule.matchers.items()):
                needed = True
                message = rule.message or message
                break
        if not needed:
            return None
        if message is None:
            message = self.policy.messages.get("tool") or DEFAULT_TOOL_MESSAGE
        args = json.dumps(dict(arguments), sort_keys=True, default=str)
        return render_message(message, self.language, tool=tool.id, args=args)

    def transition_requirement(self, state_id: str) -> Optional[str]:
        if state_id not in self.policy.states:
            return None
        message = self.policy.messages.get("transition") or DEFAULT_TRANSITION_MESSAGE
        return render_message(message, self.language, state=state_id)

    async def request(
        self,
        session: Session,
        *,
        subject_kind: str,
        subject: Mapping[str, Any],
        message: str,
        timeout_seconds: Optional[float] = None,
    ) -> ApprovalRequest:
        """Create a request, wait for the handler or the deadline, and return it resolved."""
        timeout = self.policy.timeout_seconds if timeout_seconds is None else timeout_seconds
        request = ApprovalRequest(
            subject_kind=subject_kind,  # type: ignore[arg-type]
            subject={"session_id": session.id, **dict(subject)},
            message=message,
            timeout_seconds=timeout,
            default_outcome=self.policy.on_timeout,
        )
        session.pending_approvals.append(request)
        self.hooks.emit("approval_requested", {"request_id": request.id, "kind": subject_kind}, session_id=session.id)

        try:
            result = await asyncio.wait_for(self.handler.submit(request), timeout=timeout)
        except asyncio.TimeoutError:
            if request.resolve("timed_out", reason=f"no decision within {timeout}s"):
                logger.warning(
                    "approval timed out request_id=%s session=%s default=%s",
                    request.id,
                    session.id,
                    request.default_outcome,
                )
        except Exception as exc:
            logger.exception("approval handler failed request_id=%s", request.id)
            request.resolve("rejected", reason=f"approval handler failed: {exc}")
        else:
            request.resolve("approved" if result.approved else "rejected", result.reason)
        finally:
            session.pending_approvals = [r for r in session.pending_approvals if r.id != request.id]
            session.approval_log.append(request)

        self.hooks.emit(
            "approval_resolved",
            {"request_id": request.id, "status": request.status, "approved": request.approved},
            session_id=session.id,
        )
        return request
