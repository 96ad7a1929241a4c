"""
Availability conditions shared by tools, skills and transition guards.

Every condition has a three-valued static evaluation: True or False when it
can be decided from context, state, time and tool history alone, None when a
semantic (LLM-graded) check is still needed. `evaluate_condition` runs the
static pass first and only consults the judge for what remains undecided, so
cheap checks always short-circuit model calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigError

logger = logging.getLogger("agent-runtime")

MISSING = object()

_COMPARE_OPS = ("exists", "eq", "neq", "gt", "gte", "lt", "lte", "in", "contains")

_DAY_NAMES = {
    "mon": 0, "monday": 0,
    "tue": 1, "tuesday": 1,
    "wed": 2, "wednesday": 2,
    "thu": 3, "thursday": 3,
    "fri": 4, "friday": 4,
    "sat": 5, "saturday": 5,
    "sun": 6, "sunday": 6,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EvaluationContext:
    """Everything a condition may look at during one turn."""

    context: Dict[str, Any] = field(default_factory=dict)
    state: Optional[str] = None
    previous_state: Optional[str] = None
    state_turns: int = 0
    user_input: str = ""
    called_tools: List[str] = field(default_factory=list)
    tool_results: Dict[str, Any] = field(default_factory=dict)
    clock: Callable[[], datetime] = _utcnow


class SemanticJudge(Protocol):
    """Scores how well `question` holds for the current turn, in [0, 1]."""

    async def score(self, question: str, ctx: EvaluationContext, *, llm: str) -> float:  # pragma: no cover - interface only
        ...


def lookup_path(data: Any, path: str) -> Any:
    """Resolve a dotted path through nested mappings and lists, or return MISSING."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return MISSING
    return current


def match_value(actual: Any, matcher: Any) -> bool:
    """
    Match a value against a literal or an operator mapping.

    Operator mappings use keys from exists/eq/neq/gt/gte/lt/lte/in/contains and
    every listed operator must hold.
    """
    if isinstance(matcher, Mapping) and matcher and all(k in _COMPARE_OPS for k in matcher):
        for op, expected in matcher.items():
            if not _apply_op(op, actual, expected):
                return False
        return True
    if actual is MISSING:
        return False
    return actual == matcher


def _apply_op(op: str, actual: Any, expected: Any) -> bool:
    if op == "exists":
        return (actual is not MISSING and actual is not None) == bool(expected)
    if actual is MISSING:
        return op == "neq"
    try:
        if op == "eq":
            return actual == expected
        if op == "neq":
            return actual != expected
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
        if op == "in":
            return actual in expected
        if op == "contains":
            return expected in actual
    except TypeError:
        return False
    return False


class Condition:
    """Base class; subclasses override `static` and, when semantic, `evaluate`."""

    def static(self, ctx: EvaluationContext) -> Optional[bool]:  # pragma: no cover - interface only
        raise NotImplementedError

    @property
    def is_semantic(self) -> bool:
        return False

    async def evaluate(self, ctx: EvaluationContext, judge: Optional[SemanticJudge]) -> bool:
        result = self.static(ctx)
        return bool(result)


@dataclass(frozen=True)
class ContextCondition(Condition):
    path: str
    matcher: Any

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        return match_value(lookup_path(ctx.context, self.path), self.matcher)


@dataclass(frozen=True)
class StateCondition(Condition):
    name: Any = None
    turn_count: Any = None
    previous: Any = None

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        if self.name is not None and not match_value(ctx.state, self.name):
            return False
        if self.turn_count is not None and not match_value(ctx.state_turns, self.turn_count):
            return False
        if self.previous is not None and not match_value(ctx.previous_state, self.previous):
            return False
        return True


@dataclass(frozen=True)
class TimeCondition(Condition):
    hours: Any = None
    day_of_week: Tuple[int, ...] = ()
    tz: str = "UTC"

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        now = ctx.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(ZoneInfo(self.tz))
        if self.hours is not None and not match_value(local.hour, self.hours):
            return False
        if self.day_of_week and local.weekday() not in self.day_of_week:
            return False
        return True


@dataclass(frozen=True)
class AfterToolCondition(Condition):
    tool: str

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        return self.tool in ctx.called_tools


@dataclass(frozen=True)
class ToolResultCondition(Condition):
    tool: str
    path: Optional[str] = None
    matcher: Any = None

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        if self.tool not in ctx.tool_results:
            return False
        result = ctx.tool_results[self.tool]
        if self.path:
            result = lookup_path(result, self.path)
        if self.matcher is None:
            return result is not MISSING
        return match_value(result, self.matcher)


@dataclass(frozen=True)
class SemanticCondition(Condition):
    when: str
    llm: str = "router"
    threshold: float = 0.7

    @property
    def is_semantic(self) -> bool:
        return True

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        return None

    async def evaluate(self, ctx: EvaluationContext, judge: Optional[SemanticJudge]) -> bool:
        if judge is None:
            logger.warning("semantic condition skipped: no judge configured when=%r", self.when)
            return False
        score = await judge.score(self.when, ctx, llm=self.llm)
        return score >= self.threshold


@dataclass(frozen=True)
class AllOf(Condition):
    conditions: Tuple[Condition, ...]

    @property
    def is_semantic(self) -> bool:
        return any(c.is_semantic for c in self.conditions)

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        undecided = False
        for cond in self.conditions:
            result = cond.static(ctx)
            if result is False:
                return False
            if result is None:
                undecided = True
        return None if undecided else True

    async def evaluate(self, ctx: EvaluationContext, judge: Optional[SemanticJudge]) -> bool:
        decided = self.static(ctx)
        if decided is not None:
            return decided
        for cond in self.conditions:
            if cond.static(ctx) is None and not await cond.evaluate(ctx, judge):
                return False
        return True


@dataclass(frozen=True)
class AnyOf(Condition):
    conditions: Tuple[Condition, ...]

    @property
    def is_semantic(self) -> bool:
        return any(c.is_semantic for c in self.conditions)

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        undecided = False
        for cond in self.conditions:
            result = cond.static(ctx)
            if result is True:
                return True
            if result is None:
                undecided = True
        return None if undecided else False

    async def evaluate(self, ctx: EvaluationContext, judge: Optional[SemanticJudge]) -> bool:
        decided = self.static(ctx)
        if decided is not None:
            return decided
        for cond in self.conditions:
            if cond.static(ctx) is None and await cond.evaluate(ctx, judge):
                return True
        return False


@dataclass(frozen=True)
class Not(Condition):
    condition: Condition

    @property
    def is_semantic(self) -> bool:
        return self.condition.is_semantic

    def static(self, ctx: EvaluationContext) -> Optional[bool]:
        result = self.condition.static(ctx)
        return None if result is None else not result

    async def evaluate(self, ctx: EvaluationContext, judge: Optional[SemanticJudge]) -> bool:
        return not await self.condition.evaluate(ctx, judge)


async def evaluate_condition(
    condition: Optional[Condition],
    ctx: EvaluationContext,
    judge: Optional[SemanticJudge] = None,
) -> bool:
    """A missing condition always holds."""
    if condition is None:
        return True
    decided = condition.static(ctx)
    if decided is not None:
        return decided
    return await condition.evaluate(ctx, judge)


def parse_condition(raw: Any, *, where: str = "condition") -> Condition:
    """
    Build a Condition from its mapping form.

    Accepted keys: context, state, time, after_tool, tool_result, semantic,
    all, any, not. A mapping with several keys is read as `all` of them.
    """
    if isinstance(raw, str):
        return SemanticCondition(when=raw)
    if not isinstance(raw, Mapping) or not raw:
        raise ConfigError(f"{where}: condition must be a non-empty mapping", details={"value": raw})

    if len(raw) > 1:
        return AllOf(tuple(parse_condition({k: v}, where=where) for k, v in raw.items()))

    kind, body = next(iter(raw.items()))
    if kind == "context":
        if not isinstance(body, Mapping) or not body:
            raise ConfigError(f"{where}: context condition needs path matchers")
        parts = tuple(ContextCondition(path=str(p), matcher=m) for p, m in body.items())
        return parts[0] if len(parts) == 1 else AllOf(parts)
    if kind == "state":
        if isinstance(body, str):
            return StateCondition(name=body)
        if not isinstance(body, Mapping):
            raise ConfigError(f"{where}: state condition must be a name or mapping")
        return StateCondition(
            name=body.get("name"),
            turn_count=body.get("turn_count"),
            previous=body.get("previous"),
        )
    if kind == "time":
        if not isinstance(body, Mapping):
            raise ConfigError(f"{where}: time condition must be a mapping")
        tz = str(body.get("timezone", "UTC"))
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"{where}: unknown timezone {tz!r}") from exc
        days: List[int] = []
        for day in body.get("day_of_week") or []:
            key = str(day).strip().lower()
            if key not in _DAY_NAMES:
                raise ConfigError(f"{where}: unknown day_of_week {day!r}")
            days.append(_DAY_NAMES[key])
        return TimeCondition(hours=body.get("hours"), day_of_week=tuple(days), tz=tz)
    if kind == "after_tool":
        return AfterToolCondition(tool=str(body))
    if kind == "tool_result":
        if not isinstance(body, Mapping) or "tool" not in body:
            raise ConfigError(f"{where}: tool_result condition needs 'tool'")
        return ToolResultCondition(
            tool=str(body["tool"]),
            path=body.get("field") or body.get("path"),
            matcher=body.get("matches"),
        )
    if kind == "semantic":
        if isinstance(body, str):
            return SemanticCondition(when=body)
        if not isinstance(body, Mapping) or "when" not in body:
            raise ConfigError(f"{where}: semantic condition needs 'when'")
        return SemanticCondition(
            when=str(body["when"]),
            llm=str(body.get("llm", "router")),
            threshold=float(body.get("threshold", 0.7)),
        )
    if kind in ("all", "any"):
        if not isinstance(body, list) or not body:
            raise ConfigError(f"{where}: '{kind}' needs a non-empty list")
        parts = tuple(parse_condition(item, where=where) for item in body)
        return AllOf(parts) if kind == "all" else AnyOf(parts)
    if kind == "not":
        return Not(parse_condition(body, where=where))

    raise ConfigError(f"{where}: unknown condition kind {kind!r}")


def iter_conditions(condition: Optional[Condition]):
    """Yield a condition and all of its nested sub-conditions."""
    if condition is None:
        return
    yield condition
    if isinstance(condition, (AllOf, AnyOf)):
        for sub in condition.conditions:
            yield from iter_conditions(sub)
    elif isinstance(condition, Not):
        yield from iter_conditions(condition.condition)
