"""
Reasoning modes: how a turn drives the model toward a response.

The model asks for tools by answering with JSON, either
`{"tool": "name", "arguments": {...}}` or `{"tool_calls": [...]}`. Anything
else is a final answer. Every loop is bounded by `max_iterations`; when the
budget runs out one last call is made with tools withdrawn and the
`max_iterations_reached` flag is recorded.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .hooks import HookBus
from .models import Session
from .providers import Message
from .recovery import ErrorRecoveryCoordinator, Shrink
from .spec import EffectiveConfig, ToolSpec
from .tools import ToolCall, ToolExecutor, ToolObservation

logger = logging.getLogger("agent-runtime")

MODES = ("none", "cot", "react", "plan_and_execute")
MAX_ITERATIONS_FLAG = "max_iterations_reached"

OnDelta = Callable[[str], None]

TOOL_PROTOCOL = (
    "You can call tools. To call one, respond ONLY with JSON of the form "
    '{"tool": "<name>", "arguments": {...}}, or {"tool_calls": [{"tool": "<name>", "arguments": {...}}]} '
    "to call several at once. When you have the answer, reply in plain text."
)

MODE_INSTRUCTIONS = {
    "cot": "Think through the problem step by step. Finish with a line that starts with 'Answer:' followed by the reply for the user.",
    "react": (
        "Work in Thought / Action / Observation cycles. When you need information, the Action is a tool call. "
        "When you know the reply, write 'Final Answer:' followed by it."
    ),
}

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_ANSWER = re.compile(r"(?:final answer|answer)\s*:\s*", re.IGNORECASE)


@dataclass
class ReasoningResult:
    content: str
    mode: str
    observations: List[ToolObservation] = field(default_factory=list)
    iterations: int = 0
    flags: List[str] = field(default_factory=list)


def _strip_fence(content: str) -> str:
    text = content.strip()
    match = _FENCE.match(text)
    return match.group(1) if match else text


def parse_tool_calls(content: str) -> Optional[List[ToolCall]]:
    """Return the requested calls, or None when `content` is a final answer."""
    text = _strip_fence(content)
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("tool"), str):
        raw_calls: Sequence[Any] = [data]
    elif isinstance(data.get("tool_calls"), list):
        raw_calls = data["tool_calls"]
    else:
        return None
    calls = []
    for raw in raw_calls:
        if not isinstance(raw, Mapping) or not isinstance(raw.get("tool"), str):
            continue
        arguments = raw.get("arguments") or {}
        calls.append(ToolCall(tool=raw["tool"], arguments=dict(arguments) if isinstance(arguments, Mapping) else {}))
    return calls or None


def extract_answer(content: str, mode: str) -> str:
    """Keep only the text after the last Answer:/Final Answer: marker for cot and react."""
    if mode not in ("cot", "react"):
        return content.strip()
    matches = list(_ANSWER.finditer(content))
    if not matches:
        return content.strip()
    return content[matches[-1].end():].strip()


def describe_tools(tools: Sequence[ToolSpec]) -> str:
    lines = ["Available tools:"]
    for tool in tools:
        params = json.dumps(dict(tool.parameters), sort_keys=True) if tool.parameters else "{}"
        lines.append(f"- {tool.id}: {tool.description} parameters={params}")
    return "\n".join(lines)


class Reasoner:
    def __init__(
        self,
        coordinator: ErrorRecoveryCoordinator,
        executor: ToolExecutor,
        *,
        hooks: Optional[HookBus] = None,
    ) -> None:
        self.coordinator = coordinator
        self.executor = executor
        self.hooks = hooks or HookBus()

    async def run(
        self,
        messages: Sequence[Message],
        *,
        session: Session,
        config: EffectiveConfig,
        tools: Sequence[ToolSpec] = (),
        shrink: Optional[Shrink] = None,
        on_delta: Optional[OnDelta] = None,
    ) -> ReasoningResult:
        """
        Drive the model to a reply.

        With `on_delta`, a plain turn (mode none, no tools) streams the reply
        and passes each text delta to the callback as it arrives.
        """
        mode = config.reasoning_mode
        if on_delta is not None and mode == "none" and not tools:
            return await self._stream(messages, config, on_delta)
        if mode == "auto":
            mode = await self.select_mode(messages, config, has_tools=bool(tools))
        if mode == "plan_and_execute":
            return await self._plan_and_execute(messages, session=session, config=config, tools=tools, shrink=shrink)
        return await self._loop(messages, mode, session=session, config=config, tools=tools, shrink=shrink)

    async def select_mode(self, messages: Sequence[Message], config: EffectiveConfig, *, has_tools: bool) -> str:
        fallback = "react" if has_tools else "none"
        question = list(messages) + [
            {
                "role": "system",
                "content": (
                    "Choose the reasoning strategy for the request above. "
                    f'Respond ONLY with JSON {{"mode": one of {list(MODES)}}}.'
                ),
            }
        ]
        completion = await self.coordinator.complete(question, config, alias=config.router_llm, params={"json": True})
        try:
            mode = json.loads(_strip_fence(completion.content)).get("mode")
        except (ValueError, AttributeError):
            mode = None
        if mode not in MODES:
            logger.debug("mode selection fell back mode=%s returned=%r", fallback, completion.content[:80])
            return fallback
        return mode

    async def _stream(self, messages: Sequence[Message], config: EffectiveConfig, on_delta: OnDelta) -> ReasoningResult:
        parts: List[str] = []
        async for delta in self.coordinator.stream(messages, config):
            parts.append(delta)
            on_delta(delta)
        return ReasoningResult(content="".join(parts).strip(), mode="none", iterations=1)

    def _preamble(self, mode: str, tools: Sequence[ToolSpec]) -> List[Message]:
        parts = []
        if tools:
            parts.append(describe_tools(tools))
            parts.append(TOOL_PROTOCOL)
        if mode in MODE_INSTRUCTIONS:
            parts.append(MODE_INSTRUCTIONS[mode])
        return [{"role": "system", "content": "\n\n".join(parts)}] if parts else []

    async def _loop(
        self,
        messages: Sequence[Message],
        mode: str,
        *,
        session: Session,
        config: EffectiveConfig,
        tools: Sequence[ToolSpec],
        shrink: Optional[Shrink],
    ) -> ReasoningResult:
        conversation: List[Message] = list(messages) + self._preamble(mode, tools)
        available = [t.id for t in tools]
        observations: List[ToolObservation] = []
        iterations = 0

        while iterations < max(1, config.max_iterations):
            iterations += 1
            completion = await self.coordinator.complete(conversation, config, shrink=shrink)
            calls = parse_tool_calls(completion.content) if tools else None
            if calls is None:
                return ReasoningResult(
                    content=extract_answer(completion.content, mode),
                    mode=mode,
                    observations=observations,
                    iterations=iterations,
                )
            batch = await self.executor.execute(calls, session=session, config=config, available=available)
            observations.extend(batch)
            conversation.append({"role": "assistant", "content": completion.content})
            conversation.append(
                {"role": "user", "content": "Observation:\n" + "\n".join(obs.as_message() for obs in batch)}
            )

        logger.warning("reasoning hit max_iterations session=%s mode=%s limit=%s", session.id, mode, config.max_iterations)
        conversation.append(
            {
                "role": "system",
                "content": "The tool budget for this turn is used up. Reply to the user now in plain text without calling tools.",
            }
        )
        completion = await self.coordinator.complete(conversation, config, shrink=shrink)
        return ReasoningResult(
            content=extract_answer(completion.content, mode),
            mode=mode,
            observations=observations,
            iterations=iterations + 1,
            flags=[MAX_ITERATIONS_FLAG],
        )

    async def _plan_and_execute(
        self,
        messages: Sequence[Message],
        *,
        session: Session,
        config: EffectiveConfig,
        tools: Sequence[ToolSpec],
        shrink: Optional[Shrink],
    ) -> ReasoningResult:
        planning = list(messages) + self._preamble("none", tools)
        planning.append(
            {
                "role": "system",
                "content": (
                    "Plan how to answer the request. Respond ONLY with JSON "
                    '{"steps": [{"tool": "<name>", "arguments": {...}} or {"step": "<description>"}]}.'
                ),
            }
        )
        plan = await self.coordinator.complete(planning, config, params={"json": True}, shrink=shrink)
        try:
            steps = json.loads(_strip_fence(plan.content)).get("steps")
        except (ValueError, AttributeError):
            steps = None
        if not isinstance(steps, list):
            logger.info("plan unparseable, using tool loop session=%s", session.id)
            return await self._loop(messages, "none", session=session, config=config, tools=tools, shrink=shrink)

        flags: List[str] = []
        limit = max(1, config.max_iterations)
        if len(steps) > limit:
            steps = steps[:limit]
            flags.append(MAX_ITERATIONS_FLAG)

        calls = []
        for s in steps:
            if not isinstance(s, Mapping) or not isinstance(s.get("tool"), str):
                continue
            arguments = s.get("arguments") or {}
            if not isinstance(arguments, Mapping):
                logger.warning("skipping plan step with bad arguments session=%s tool=%s", session.id, s["tool"])
                continue
            calls.append(ToolCall(tool=s["tool"], arguments=dict(arguments)))
        observations: List[ToolObservation] = []
        if calls and tools:
            observations = await self.executor.execute(
                calls, session=session, config=config, available=[t.id for t in tools]
            )

        plan_text = "\n".join(
            f"{i}. {s.get('step') or s.get('tool')}" for i, s in enumerate(steps, start=1) if isinstance(s, Mapping)
        )
        synthesis = list(messages)
        synthesis.append({"role": "system", "content": f"Plan:\n{plan_text}"})
        if observations:
            synthesis.append(
                {"role": "user", "content": "Observation:\n" + "\n".join(obs.as_message() for obs in observations)}
            )
        synthesis.append({"role": "system", "content": "Write the final reply for the user in plain text."})
        completion = await self.coordinator.complete(synthesis, config, shrink=shrink)
        return ReasoningResult(
            content=completion.content.strip(),
            mode="plan_and_execute",
            observations=observations,
            iterations=2,
            flags=flags,
        )


def observations_by_tool(observations: Sequence[ToolObservation]) -> Dict[str, Any]:
    """Last successful result per tool, the shape tool_result conditions read."""
    out: Dict[str, Any] = {}
    for obs in observations:
        if obs.ok:
            out[obs.tool] = obs.result
    return out
