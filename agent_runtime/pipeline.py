"""
Turn pipeline: one user input in, one TurnOutcome out.

Phases run strictly in order for a turn: context refresh, configuration,
input processing, skill routing (or disambiguation), reasoning with tools,
reflection, output processing, state transition, memory update, commit.
The turn works on a private copy of the session; nothing is durable until
the single `commit_turn` at the end, so a turn that fails or is cancelled
leaves the stored session exactly as the previous turn committed it.

Cancellation is cooperative and only observed between phases.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from .approval import ApprovalGate, ApprovalHandler, PendingApprovalHandler
from .conditions import EvaluationContext, SemanticJudge
from .context_sources import CACHE_KEY, ContextSourceManager
from .disambiguation import Disambiguator
from .errors import ConfigError, InputRejected, SessionNotFound, TurnCancelled, TurnError
from .hooks import HookBus, build_hooks
from .memory import MemoryManager, Summarizer
from .models import Session, TurnOutcome
from .processing import Processor
from .providers import Message, ProviderRegistry, build_registry
from .rate_limit import SlidingWindowRateLimiter
from .reasoning import OnDelta, Reasoner, ReasoningResult, observations_by_tool
from .recovery import ErrorRecoveryCoordinator, Sleep
from .reflection import REFLECTION_FAILED_FLAG, Grader, LLMGrader, Reflector
from .resolver import LayerLike, resolve
from .routing import LLMJudge, LLMScorer, SkillRouter, SkillScorer
from .sessions import SessionLocks
from .skills import SkillRunner, missing_parameters, parameter_values
from .spec import AgentSpec, ConfigLayer, EffectiveConfig, SkillSpec, StateNode, check_layer
from .state_machine import StateMachine, TransitionResult
from .storage.session_store import InMemoryStorage, Storage
from .tools import Tool, ToolExecutor

logger = logging.getLogger("agent-runtime")

OUTPUT_REJECTED_FLAG = "output_rejected"
GENERIC_OUTPUT_REJECTION = "Sorry, I can't share that response."


def new_request_id() -> str:
    return str(uuid.uuid4())


@dataclass
class TurnContext:
    """Per-turn scratch state. Discarded when the turn ends."""

    request_id: str
    user_input: str
    config: EffectiveConfig
    values: Dict[str, Any] = field(default_factory=dict)
    skill: Optional[str] = None
    result: Optional[ReasoningResult] = None
    warnings: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)
    transition: Optional[TransitionResult] = None
    flags_before: int = 0
    approvals_before: int = 0

    def event(self, kind: str, /, **payload: Any) -> None:
        self.events.append({"kind": kind, "payload": payload, "ts": time.time()})


def shrink_messages(messages: Sequence[Message]) -> List[Message]:
    """Drop the older half of the non-system history, keeping the system prompt and the last message."""
    messages = list(messages)
    if len(messages) <= 2:
        return messages
    head = [m for m in messages[:1] if m.get("role") == "system"]
    body = messages[len(head):-1]
    return head + body[len(body) // 2 + 1:] + messages[-1:]


class TurnPipeline:
    def __init__(
        self,
        spec: AgentSpec,
        *,
        registry: Optional[ProviderRegistry] = None,
        storage: Optional[Storage] = None,
        tools: Optional[Mapping[str, Tool]] = None,
        approval_handler: Optional[ApprovalHandler] = None,
        judge: Optional[SemanticJudge] = None,
        scorer: Optional[SkillScorer] = None,
        grader: Optional[Grader] = None,
        summarizer: Optional[Summarizer] = None,
        hooks: Optional[HookBus] = None,
        locks: Optional[SessionLocks] = None,
        global_config: LayerLike = None,
        callbacks: Optional[Mapping[str, Callable[..., Any]]] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.spec = spec
        self.storage = storage or InMemoryStorage()
        self.hooks = hooks or build_hooks(list(spec.hooks))
        self.locks = locks or SessionLocks()
        self.global_config = global_config
        self.clock = clock
        self.registry = registry or build_registry(spec.llms)
        self.coordinator = ErrorRecoveryCoordinator(
            self.registry,
            sleep=sleep,
            on_event=lambda kind, payload: self.hooks.emit(kind, payload),
        )
        self.judge = judge or LLMJudge(self.coordinator)
        self.approval_handler = approval_handler or PendingApprovalHandler()
        self.approval = ApprovalGate(self.approval_handler, spec.approval, hooks=self.hooks)
        self.executor = ToolExecutor(
            spec,
            tools or {},
            approval=self.approval,
            limiter=limiter,
            hooks=self.hooks,
            judge=self.judge,
        )
        self.memory = MemoryManager(spec.memory, summarizer)
        self.sources = ContextSourceManager(spec, callbacks=callbacks, clock=clock)
        self.processor = Processor(language=spec.approval.language)
        self.router = SkillRouter(spec, scorer, judge=self.judge, llm_scorer=LLMScorer(self.coordinator))
        self.disambiguator = Disambiguator(spec, hooks=self.hooks)
        self.reasoner = Reasoner(self.coordinator, self.executor, hooks=self.hooks)
        self.skill_runner = SkillRunner(self.coordinator, self.executor, hooks=self.hooks)
        self.reflector = Reflector(grader or LLMGrader(self.coordinator), hooks=self.hooks)
        self.state_machine: Optional[StateMachine] = None
        if spec.states is not None:
            self.state_machine = StateMachine(
                spec,
                coordinator=self.coordinator,
                executor=self.executor,
                approval=self.approval,
                judge=self.judge,
                hooks=self.hooks,
                skill_action=self._skill_action,
            )
        self._cancels: Dict[str, asyncio.Event] = {}

    # Configuration

    def _state_chain(self, session: Session) -> List[StateNode]:
        if self.state_machine is None or session.current_state is None:
            return []
        return self.state_machine.chain(session)

    def resolve_config(
        self,
        session: Session,
        skill: Optional[SkillSpec] = None,
        overrides: LayerLike = None,
    ) -> EffectiveConfig:
        return resolve(
            self.global_config,
            self.spec.config,
            self._state_chain(session),
            skill.config if skill is not None else None,
            overrides,
        )

    def system_prompt(self, session: Session) -> str:
        if self.spec.states is None or session.current_state is None:
            return self.spec.system_prompt
        return self.spec.states.prompt_for(session.current_state, self.spec.system_prompt)

    # Session lifecycle

    async def start_session(self, context: Optional[Mapping[str, Any]] = None) -> Session:
        session = Session(agent=self.spec.name, context=dict(context or {}))
        config = self.resolve_config(session)
        if self.state_machine is not None:
            await self.state_machine.enter_initial(session, config)
        await self.storage.commit_turn(session, [{"kind": "session_started", "payload": {"state": session.current_state}}])
        logger.info("session started session=%s agent=%s state=%s", session.id, self.spec.name, session.current_state)
        return session

    async def get_session(self, session_id: str) -> Session:
        session = await self.storage.load_session(session_id)
        if session is None or session.closed:
            raise SessionNotFound("Session not found", details={"session_id": session_id})
        return session

    async def close_session(self, session_id: str) -> bool:
        async with self.locks.hold(session_id):
            removed = await self.storage.delete_session(session_id)
        self.locks.discard(session_id)
        if not removed:
            raise SessionNotFound("Session not found", details={"session_id": session_id})
        logger.info("session closed session=%s", session_id)
        return True

    def cancel(self, session_id: str) -> bool:
        """Ask the running turn on `session_id` to stop at its next phase boundary."""
        event = self._cancels.get(session_id)
        if event is None:
            return False
        event.set()
        return True

    # Turn

    async def run_turn(
        self,
        session_id: str,
        user_input: str,
        *,
        overrides: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
        cancel: Optional[asyncio.Event] = None,
        request_id: Optional[str] = None,
        on_delta: Optional[OnDelta] = None,
    ) -> TurnOutcome:
        request_id = request_id or new_request_id()
        start = time.monotonic()
        cancel = cancel or asyncio.Event()
        session: Optional[Session] = None
        try:
            async with self.locks.hold(session_id):
                self._cancels[session_id] = cancel
                try:
                    session = await self.get_session(session_id)
                    outcome = await self._run(session, user_input, overrides, context, cancel, request_id, on_delta)
                finally:
                    self._cancels.pop(session_id, None)
        except TurnError as exc:
            outcome = self._failure(exc, session_id, session)
            if exc.status_code >= 500:
                logger.error("turn failed request_id=%s session=%s code=%s error=%s", request_id, session_id, exc.code, exc)
            self.hooks.emit("error", {"code": exc.code, "message": exc.message}, session_id=session_id)
        except Exception as exc:
            logger.exception("turn crashed request_id=%s session=%s", request_id, session_id)
            outcome = self._failure(TurnError("Internal error", details={"error": type(exc).__name__}), session_id, session)
            self.hooks.emit("error", {"code": TurnError.code, "message": str(exc)}, session_id=session_id)

        latency_ms = (time.monotonic() - start) * 1000.0
        outcome.meta.update(
            {"request_id": request_id, "agent": self.spec.name, "version": self.spec.version, "latency_ms": latency_ms}
        )
        _log_turn(request_id=request_id, session_id=session_id, outcome=outcome, latency_ms=latency_ms)
        return outcome

    async def stream_turn(
        self,
        session_id: str,
        user_input: str,
        **kwargs: Any,
    ) -> AsyncIterator[Tuple[str, Any]]:
        """
        Run one turn, yielding ("delta", text) while the reply is produced and
        ("outcome", TurnOutcome) last.

        A plain turn streams straight from the model. Any other reply arrives
        as a single delta once it is final. Deltas already sent are not taken
        back if the turn later fails; the outcome carries the error.
        """
        queue: "asyncio.Queue[str]" = asyncio.Queue()
        sent: List[str] = []

        def push(delta: str) -> None:
            sent.append(delta)
            queue.put_nowait(delta)

        task = asyncio.ensure_future(self.run_turn(session_id, user_input, on_delta=push, **kwargs))
        try:
            while not task.done():
                getter = asyncio.ensure_future(queue.get())
                await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter.done():
                    yield "delta", getter.result()
                else:
                    getter.cancel()
            while not queue.empty():
                yield "delta", queue.get_nowait()
            outcome = task.result()
            if not sent and outcome.status in ("ok", "clarification") and outcome.content:
                yield "delta", outcome.content
            yield "outcome", outcome
        finally:
            if not task.done():
                logger.info("stream consumer left, cancelling turn session=%s", session_id)
                task.cancel()

    def _failure(self, exc: TurnError, session_id: str, session: Optional[Session]) -> TurnOutcome:
        if isinstance(exc, InputRejected):
            status = "input_rejected"
        elif isinstance(exc, TurnCancelled):
            status = "cancelled"
        else:
            status = "error"
        return TurnOutcome(
            status=status,  # type: ignore[arg-type]
            content=exc.message if isinstance(exc, InputRejected) else None,
            error=exc.as_dict(),
            session_id=session_id,
            state=session.current_state if session is not None else None,
        )

    @staticmethod
    def _checkpoint(cancel: asyncio.Event, phase: str) -> None:
        if cancel.is_set():
            raise TurnCancelled(f"Turn cancelled before {phase}", details={"phase": phase})

    def _evaluation_context(self, session: Session, turn: TurnContext) -> EvaluationContext:
        return EvaluationContext(
            context=turn.values,
            state=session.current_state,
            previous_state=session.previous_state,
            state_turns=session.state_turns,
            user_input=turn.user_input,
            clock=self.clock,
        )

    async def _run(
        self,
        session: Session,
        user_input: str,
        overrides: Optional[Mapping[str, Any]],
        runtime: Optional[Mapping[str, Any]],
        cancel: asyncio.Event,
        request_id: str,
        on_delta: Optional[OnDelta] = None,
    ) -> TurnOutcome:
        self.hooks.emit("turn_started", {"request_id": request_id}, session_id=session.id)

        # Dynamic context
        source_values, source_warnings = await self.sources.refresh(session, runtime)
        try:
            override_layer = ConfigLayer.model_validate(dict(overrides)) if overrides else None
        except ValidationError as exc:
            raise InputRejected("Invalid configuration overrides", details=exc.errors(include_url=False)) from exc
        try:
            check_layer(override_layer, self.spec, "overrides")
        except ConfigError as exc:
            raise InputRejected("Invalid configuration overrides", details={"reason": exc.message}) from exc
        config = self.resolve_config(session, overrides=override_layer)
        turn = TurnContext(
            request_id=request_id,
            user_input=user_input,
            config=config,
            flags_before=len(session.flags),
            approvals_before=len(session.approval_log),
        )
        turn.warnings.extend(source_warnings)

        # Input processing
        self._checkpoint(cancel, "input_processing")
        processed = self.processor.run(self.spec.input_steps, user_input, context=session.context)
        if processed.rejected is not None:
            raise InputRejected(processed.rejected)
        turn.warnings.extend(processed.warnings)
        session.context.update(processed.context)
        turn.user_input = processed.text
        turn.values = {
            **{k: v for k, v in session.context.items() if k != CACHE_KEY},
            **source_values,
            **dict(runtime or {}),
        }
        ctx = self._evaluation_context(session, turn)

        # Routing and disambiguation
        self._checkpoint(cancel, "routing")
        skill: Optional[SkillSpec] = None
        text = turn.user_input
        if session.pending_disambiguation is not None:
            resolution = self.disambiguator.resolve(session, text, config)
            if resolution.question is not None:
                return await self._clarify(session, turn, text, resolution.question)
            text = resolution.original_input
            if resolution.skill:
                skill = self.spec.skills[resolution.skill]
            turn.event("disambiguation_resolved", skill=resolution.skill, exhausted=resolution.exhausted)
        elif self.spec.skills:
            decision = await self.router.route(text, config=config, ctx=ctx)
            if decision.ambiguous:
                question = self.disambiguator.start(session, text, decision.candidate_ids())
                return await self._clarify(session, turn, text, question)
            if decision.skill:
                skill = self.spec.skills[decision.skill]

        if skill is not None:
            turn.skill = skill.id
            config = turn.config = self.resolve_config(session, skill, override_layer)
            missing = missing_parameters(skill, turn.values)
            if missing:
                label = skill.id.replace("_", " ")
                question = f"To help with {label}, I still need: {', '.join(missing)}."
                return await self._clarify(session, turn, text, question)
            turn.values.update(parameter_values(skill, turn.values))

        # Reasoning and tools
        self._checkpoint(cancel, "reasoning")
        assembled = await self.memory.assemble_context(
            session.memory,
            system_prompt=self.system_prompt(session),
            dynamic_context=source_values,
            user_input=text,
        )
        turn.warnings.extend(assembled.warnings)
        messages = assembled.messages
        if skill is not None:
            result = await self.skill_runner.run(
                skill, messages, user_input=text, session=session, config=config, context=turn.values
            )
        else:
            node = self.spec.states.node(session.current_state) if self.spec.states and session.current_state else None
            tools = await self.executor.select_available_tools(config, ctx, node)
            # Deltas only go out when nothing after reasoning can change the reply.
            if config.reflection_enabled or self.spec.output_steps:
                on_delta = None
            result = await self.reasoner.run(
                messages, session=session, config=config, tools=tools, shrink=shrink_messages, on_delta=on_delta
            )
        turn.result = result
        turn.flags.extend(result.flags)
        ctx.called_tools = [obs.tool for obs in result.observations]
        ctx.tool_results = observations_by_tool(result.observations)
        content = result.content

        # Reflection
        self._checkpoint(cancel, "reflection")
        if config.reflection_enabled:

            drafts = [content]

            async def regenerate(feedback: str) -> str:
                retry = list(messages) + [
                    {"role": "assistant", "content": drafts[-1]},
                    {"role": "system", "content": f"Revise your reply. Reviewer feedback: {feedback}"},
                ]
                completion = await self.coordinator.complete(retry, config, shrink=shrink_messages)
                drafts.append(completion.content.strip())
                return drafts[-1]

            reflection = await self.reflector.run(
                content, regenerate=regenerate, user_input=text, config=config, session_id=session.id
            )
            content = reflection.content
            if reflection.failed:
                turn.flags.append(REFLECTION_FAILED_FLAG)

        # Output processing
        self._checkpoint(cancel, "output_processing")
        output = self.processor.run(self.spec.output_steps, content, context=turn.values)
        turn.warnings.extend(output.warnings)
        if output.rejected is not None:
            content = output.rejected or GENERIC_OUTPUT_REJECTION
            turn.flags.append(OUTPUT_REJECTED_FLAG)
        else:
            content = output.text

        # State transition
        self._checkpoint(cancel, "transition")
        if self.state_machine is not None:
            turn.transition = await self.state_machine.advance(session, ctx, config)
            if turn.transition is not None:
                turn.event(
                    "state_transition",
                    from_state=turn.transition.from_state,
                    to_state=turn.transition.to_state,
                    applied=turn.transition.applied,
                    reason=turn.transition.reason,
                )

        # Memory
        self._checkpoint(cancel, "memory")
        await self._remember(session, turn, text, content)

        return await self._commit(session, turn, content, "ok")

    async def _remember(self, session: Session, turn: TurnContext, text: str, content: str) -> None:
        self.memory.append(session.memory, "user", text, {"request_id": turn.request_id})
        if turn.result is not None:
            for obs in turn.result.observations:
                self.memory.append(session.memory, "tool", obs.as_message(), {"tool": obs.tool, "ok": obs.ok})
        self.memory.append(session.memory, "assistant", content, {"skill": turn.skill} if turn.skill else None)
        created = await self.memory.compact(session.memory)
        if created:
            turn.event("memory_compacted", summaries=created, watermark=session.memory.watermark)

    async def _clarify(self, session: Session, turn: TurnContext, text: str, question: str) -> TurnOutcome:
        self.memory.append(session.memory, "user", text, {"request_id": turn.request_id})
        self.memory.append(session.memory, "assistant", question, {"clarification": True})
        await self.memory.compact(session.memory)
        return await self._commit(session, turn, question, "clarification")

    async def _commit(
        self,
        session: Session,
        turn: TurnContext,
        content: str,
        status: str,
    ) -> TurnOutcome:
        now = time.time()
        for name in turn.flags:
            session.flags.append({"flag": name, "turn": session.turn_counter + 1, "ts": now})
        turn_flags = session.flags[turn.flags_before:]
        session.turn_counter += 1
        observations = turn.result.observations if turn.result is not None else []
        turn.event("turn", status=status, skill=turn.skill, request_id=turn.request_id)
        for flag in turn_flags:
            turn.event("flag", **flag)
        for request in session.approval_log[turn.approvals_before:]:
            turn.event("approval", request_id=request.id, status=request.status, kind=request.subject_kind)

        await self.storage.commit_turn(session, turn.events)
        self.hooks.emit("turn_completed", {"status": status, "request_id": turn.request_id}, session_id=session.id)

        meta: Dict[str, Any] = {"turn": session.turn_counter}
        if turn.result is not None:
            meta["mode"] = turn.result.mode
            meta["iterations"] = turn.result.iterations
        if turn.transition is not None:
            meta["transition"] = {
                "from": turn.transition.from_state,
                "to": turn.transition.to_state,
                "applied": turn.transition.applied,
                "reason": turn.transition.reason,
            }
        return TurnOutcome(
            status=status,  # type: ignore[arg-type]
            content=content,
            session_id=session.id,
            state=session.current_state,
            skill=turn.skill,
            flags=turn_flags,
            warnings=turn.warnings,
            tool_results=[obs.as_dict() for obs in observations],
            meta=meta,
        )

    async def _skill_action(self, skill_id: str, session: Session, config: EffectiveConfig) -> str:
        skill = self.spec.skills[skill_id]
        messages = [{"role": "system", "content": self.system_prompt(session)}]
        result = await self.skill_runner.run(
            skill, messages, user_input="", session=session, config=self.resolve_config(session, skill)
        )
        return result.content


def build_success_envelope(outcome: TurnOutcome) -> Dict[str, Any]:
    output = outcome.model_dump(exclude={"meta", "error"})
    return {"output": output, "meta": dict(outcome.meta)}


def build_error_envelope(
    *,
    request_id: str,
    spec: Optional[AgentSpec],
    code: str,
    message: str,
    details: Any = None,
    latency_ms: Optional[float] = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "request_id": request_id,
        "agent": spec.name if spec else "unknown",
        "version": spec.version if spec else "unknown",
    }
    if latency_ms is not None:
        meta["latency_ms"] = latency_ms
    return {"error": {"code": code, "message": message, "details": details}, "meta": meta}


def _log_turn(*, request_id: str, session_id: str, outcome: TurnOutcome, latency_ms: float) -> None:
    logger.info(
        "turn request_id=%s session=%s status=%s state=%s skill=%s latency_ms=%.2f",
        request_id,
        session_id,
        outcome.status,
        outcome.state,
        outcome.skill,
        latency_ms,
    )

