"""
Tool availability, policy enforcement and bounded-concurrency dispatch.

`ToolExecutor.execute` takes the calls requested by one reasoning step and
returns one ToolObservation per call, in the order the calls were declared,
whatever order they finish in. Policy checks (enabled flag, argument schema,
domain/path restrictions, rate limit) run before dispatch and a violation
never reaches the tool implementation. Calls that need approval wait for
it without holding a concurrency slot.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import posixpath
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence
from urllib.parse import urlparse

from jsonschema import Draft7Validator

from .approval import ApprovalGate
from .conditions import AllOf, Condition, EvaluationContext, SemanticJudge, evaluate_condition
from .errors import CriticalToolFailure, ToolError
from .hooks import HookBus
from .models import Session
from .rate_limit import RateRule, SlidingWindowRateLimiter
from .spec import AgentSpec, EffectiveConfig, StateNode, ToolSpec

logger = logging.getLogger("agent-runtime")

GLOBAL_CLIENT = "*"


class Tool(Protocol):
    """Capability contract for a tool implementation."""

    async def run(self, arguments: Mapping[str, Any], *, cancel: asyncio.Event) -> Any:  # pragma: no cover - interface only
        ...


class FunctionTool:
    """Adapts a plain sync or async function into a Tool."""

    def __init__(self, fn: Callable[..., Any]) -> None:
        self.fn = fn
        try:
            self._wants_cancel = "cancel" in inspect.signature(fn).parameters
        except (TypeError, ValueError):
            self._wants_cancel = False

    async def run(self, arguments: Mapping[str, Any], *, cancel: asyncio.Event) -> Any:
        kwargs = dict(arguments)
        if self._wants_cancel:
            kwargs["cancel"] = cancel
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(**kwargs)
        result = await asyncio.to_thread(self.fn, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass
class ToolCall:
    tool: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class ToolObservation:
    call_id: str
    tool: str
    ok: bool
    result: Any = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    approval: Optional[str] = None
    duration_ms: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def as_message(self) -> str:
        """Observation text fed back into reasoning."""
        if self.ok:
            body: Dict[str, Any] = {"tool": self.tool, "ok": True, "result": self.result}
        else:
            body = {"tool": self.tool, "ok": False, "error": self.error_kind, "message": self.error}
        return json.dumps(body, default=str)


def _domain_matches(host: str, domain: str) -> bool:
    domain = domain.lower().lstrip(".")
    return host == domain or host.endswith("." + domain)


def check_restrictions(tool: ToolSpec, arguments: Mapping[str, Any]) -> Optional[str]:
    """Return a violation reason for domain/path restrictions, else None."""
    policy = tool.policy
    url = arguments.get("url")
    if isinstance(url, str) and (policy.allowed_domains or policy.blocked_domains):
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return f"url {url!r} has no host"
        if any(_domain_matches(host, d) for d in policy.blocked_domains):
            return f"domain {host} is blocked"
        if policy.allowed_domains and not any(_domain_matches(host, d) for d in policy.allowed_domains):
            return f"domain {host} is not in the allowed list"
    path = arguments.get("path")
    if isinstance(path, str) and policy.allowed_paths:
        normalized = posixpath.normpath(path)
        allowed = False
        for prefix in policy.allowed_paths:
            base = posixpath.normpath(prefix)
            if normalized == base or normalized.startswith(base.rstrip("/") + "/"):
                allowed = True
                break
        if not allowed:
            return f"path {path!r} is outside the allowed paths"
    return None


def validate_arguments(tool: ToolSpec, arguments: Mapping[str, Any]) -> List[str]:
    if not tool.parameters:
        return []
    validator = Draft7Validator(dict(tool.parameters))
    return [
        f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}"
        for err in validator.iter_errors(dict(arguments))
    ]


class ToolExecutor:
    def __init__(
        self,
        spec: AgentSpec,
        implementations: Mapping[str, Tool],
        *,
        approval: ApprovalGate,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        hooks: Optional[HookBus] = None,
        judge: Optional[SemanticJudge] = None,
    ) -> None:
        self.spec = spec
        self.implementations = dict(implementations)
        self.approval = approval
        self.hooks = hooks or HookBus()
        self.judge = judge
        self.limiter = limiter or SlidingWindowRateLimiter({})
        for tool in spec.tools.values():
            if tool.policy.rate_limit_calls is not None and not self.limiter.has_rule(tool.id):
                self.limiter.add_rule(
                    RateRule(
                        key=tool.id,
                        limit=tool.policy.rate_limit_calls,
                        window_seconds=tool.policy.rate_limit_window_seconds,
                    )
                )
        self._locks: Dict[str, asyncio.Lock] = {}

    def register(self, tool_id: str, implementation: Tool) -> None:
        self.implementations[tool_id] = implementation

    def _lock_for(self, tool_id: str) -> asyncio.Lock:
        lock = self._locks.get(tool_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tool_id] = lock
        return lock

    @staticmethod
    def _condition_for(tool: ToolSpec, state: Optional[StateNode]) -> Optional[Condition]:
        extra = state.tool_conditions.get(tool.id) if state is not None else None
        if tool.condition is not None and extra is not None:
            return AllOf((tool.condition, extra))
        return tool.condition or extra

    async def select_available_tools(
        self,
        config: EffectiveConfig,
        ctx: EvaluationContext,
        state: Optional[StateNode] = None,
    ) -> List[ToolSpec]:
        """
        Tools visible this turn, in declaration order.

        Every static condition is decided first; semantic checks run only for
        tools that survived the static pass.
        """
        ids = config.tools if config.tools is not None else list(self.spec.tools)
        candidates = [
            self.spec.tools[i]
            for i in ids
            if i in self.spec.tools and self.spec.tools[i].policy.enabled and i in self.implementations
        ]
        decided: Dict[str, Optional[bool]] = {}
        for tool in candidates:
            cond = self._condition_for(tool, state)
            decided[tool.id] = True if cond is None else cond.static(ctx)
        for tool in candidates:
            if decided[tool.id] is None:
                decided[tool.id] = await evaluate_condition(self._condition_for(tool, state), ctx, self.judge)
        return [tool for tool in candidates if decided[tool.id]]

    async def _precheck(
        self,
        call: ToolCall,
        available: Optional[Sequence[str]],
    ) -> Optional[ToolObservation]:
        def violation(kind: str, message: str) -> ToolObservation:
            logger.warning("tool call refused tool=%s kind=%s reason=%s", call.tool, kind, message)
            return ToolObservation(call_id=call.id, tool=call.tool, ok=False, error_kind=kind, error=message)

        tool = self.spec.tools.get(call.tool)
        if tool is None or call.tool not in self.implementations:
            return violation(ToolError.EXECUTION_FAILURE, f"unknown tool {call.tool!r}")
        if available is not None and call.tool not in available:
            return violation(ToolError.POLICY_VIOLATION, f"tool {call.tool!r} is not available here")
        if not tool.policy.enabled:
            return violation(ToolError.POLICY_VIOLATION, f"tool {call.tool!r} is disabled")
        errors = validate_arguments(tool, call.arguments)
        if errors:
            return violation(ToolError.EXECUTION_FAILURE, "invalid arguments: " + "; ".join(errors))
        reason = check_restrictions(tool, call.arguments)
        if reason:
            return violation(ToolError.POLICY_VIOLATION, reason)
        if self.limiter.has_rule(tool.id) and not await self.limiter.allow(tool.id, GLOBAL_CLIENT):
            wait = await self.limiter.retry_after(tool.id, GLOBAL_CLIENT)
            return violation(ToolError.POLICY_VIOLATION, f"rate limit exceeded for {tool.id}, retry in {wait:.1f}s")
        return None

    async def _invoke(
        self,
        call: ToolCall,
        tool: ToolSpec,
        config: EffectiveConfig,
        session_id: Optional[str],
    ) -> ToolObservation:
        implementation = self.implementations[call.tool]
        timeout = tool.policy.timeout_seconds or config.tool_timeout_seconds
        cancel = asyncio.Event()
        started = time.monotonic()
        self.hooks.emit("tool_start", {"tool": call.tool, "call_id": call.id}, session_id=session_id)
        try:
            result = await asyncio.wait_for(implementation.run(call.arguments, cancel=cancel), timeout=timeout)
        except asyncio.TimeoutError:
            cancel.set()
            obs = ToolObservation(
                call_id=call.id,
                tool=call.tool,
                ok=False,
                error_kind=ToolError.TIMEOUT,
                error=f"tool timed out after {timeout}s",
            )
        except ToolError as exc:
            obs = ToolObservation(call_id=call.id, tool=call.tool, ok=False, error_kind=exc.kind, error=str(exc))
        except Exception as exc:
            logger.warning("tool raised tool=%s error=%r", call.tool, exc)
            obs = ToolObservation(
                call_id=call.id,
                tool=call.tool,
                ok=False,
                error_kind=ToolError.EXECUTION_FAILURE,
                error=str(exc) or exc.__class__.__name__,
            )
        else:
            obs = ToolObservation(call_id=call.id, tool=call.tool, ok=True, result=result)
        obs.duration_ms = (time.monotonic() - started) * 1000.0
        self.hooks.emit(
            "tool_complete",
            {"tool": call.tool, "call_id": call.id, "ok": obs.ok, "error": obs.error_kind},
            session_id=session_id,
        )
        return obs

    async def execute(
        self,
        calls: Sequence[ToolCall],
        *,
        session: Session,
        config: EffectiveConfig,
        available: Optional[Sequence[str]] = None,
    ) -> List[ToolObservation]:
        """
        Run a batch of calls and return observations in declaration order.

        Raises CriticalToolFailure when a tool marked critical fails.
        """
        observations: List[Optional[ToolObservation]] = [None] * len(calls)
        pending: List[Awaitable[None]] = []
        semaphore = asyncio.Semaphore(max(1, config.max_concurrent_tools))

        async def run_one(index: int, call: ToolCall, tool: ToolSpec) -> None:
            message = self.approval.tool_requirement(tool, call.arguments)
            status: Optional[str] = None
            if message is not None:
                request = await self.approval.request(
                    session,
                    subject_kind="tool_call",
                    subject={"tool": call.tool, "arguments": call.arguments, "call_id": call.id},
                    message=message,
                )
                status = request.status
                if not request.approved:
                    observations[index] = ToolObservation(
                        call_id=call.id,
                        tool=call.tool,
                        ok=False,
                        error_kind="approval_denied",
                        error=f"approval {request.status}: {request.reason or 'no reason given'}",
                        approval=status,
                    )
                    return
            async with semaphore:
                guard = self._lock_for(tool.id) if not tool.concurrency_safe else contextlib.nullcontext()
                async with guard:
                    obs = await self._invoke(call, tool, config, session.id)
                    retries = 0
                    while not obs.ok and obs.error_kind != ToolError.POLICY_VIOLATION and retries < tool.policy.max_retries:
                        retries += 1
                        logger.info("retrying tool=%s retry=%s error=%s", call.tool, retries, obs.error_kind)
                        obs = await self._invoke(call, tool, config, session.id)
            obs.approval = status
            observations[index] = obs

        # Prechecks run sequentially so rate-limit slots go to calls in declared order.
        for index, call in enumerate(calls):
            refused = await self._precheck(call, available)
            if refused is not None:
                observations[index] = refused
                continue
            pending.append(run_one(index, call, self.spec.tools[call.tool]))

        if pending:
            await asyncio.gather(*pending)

        results = [obs for obs in observations if obs is not None]
        for obs in results:
            tool = self.spec.tools.get(obs.tool)
            if tool is not None and tool.critical and not obs.ok and obs.error_kind != "approval_denied":
                raise CriticalToolFailure(
                    f"Critical tool {obs.tool!r} failed: {obs.error}",
                    details={"tool": obs.tool, "kind": obs.error_kind},
                )
        return results
