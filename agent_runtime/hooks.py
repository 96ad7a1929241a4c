from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

logger = logging.getLogger("agent-runtime")

EVENTS = (
    "turn_started",
    "llm_start",
    "llm_complete",
    "llm_fallback",
    "tool_start",
    "tool_complete",
    "approval_requested",
    "approval_resolved",
    "state_transition",
    "disambiguation",
    "reflection",
    "error",
    "turn_completed",
)


@dataclass
class HookEvent:
    kind: str
    session_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)


HookCallable = Callable[[HookEvent], Any]


class LoggingHook:
    """Writes every lifecycle event to the runtime logger."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self.level = level

    def fire(self, event: HookEvent) -> None:
        logger.log(self.level, "hook event=%s session=%s payload=%s", event.kind, event.session_id, event.payload)


class HookBus:
    """
    Fans lifecycle events out to registered hooks.

    Delivery is fire-and-forget: each hook runs in its own task, so a slow
    hook never delays the pipeline and a failing one is only logged.
    """

    def __init__(self, hooks: Optional[List[Union[HookCallable, Any]]] = None) -> None:
        self._hooks: List[Union[HookCallable, Any]] = list(hooks or [])
        self._tasks: Set[asyncio.Task] = set()

    def register(self, hook: Union[HookCallable, Any]) -> None:
        self._hooks.append(hook)

    def __len__(self) -> int:
        return len(self._hooks)

    def emit(self, kind: str, payload: Optional[Mapping[str, Any]] = None, *, session_id: Optional[str] = None) -> None:
        if not self._hooks:
            return
        event = HookEvent(kind=kind, session_id=session_id, payload=dict(payload or {}))
        for hook in self._hooks:
            target = getattr(hook, "fire", hook)
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._call_sync(target, event)
                continue
            task = loop.create_task(self._run(target, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _call_sync(target: Callable[[HookEvent], Any], event: HookEvent) -> None:
        try:
            result = target(event)
            if inspect.iscoroutine(result):
                result.close()
                logger.warning("async hook skipped outside an event loop event=%s", event.kind)
        except Exception:
            logger.exception("hook failed event=%s", event.kind)

    @staticmethod
    async def _run(target: Callable[[HookEvent], Any], event: HookEvent) -> None:
        try:
            result = target(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("hook failed event=%s", event.kind)

    async def drain(self) -> None:
        """Wait for in-flight hook tasks. Used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_hooks(names: List[str]) -> HookBus:
    """Hooks named in an agent spec. Only built-in names are known here."""
    bus = HookBus()
    for name in names:
        if name == "logging":
            bus.register(LoggingHook(level=logging.INFO))
        else:
            logger.warning("unknown hook name=%s ignored", name)
    return bus
