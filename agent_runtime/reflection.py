"""
Reflection: grade a response against quality criteria and regenerate it a
bounded number of times when it falls short.

After `reflection_max_retries` regenerations the last response is kept and
the non-fatal `reflection_failed` flag is recorded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from .errors import LLMUnavailable
from .hooks import HookBus
from .spec import EffectiveConfig

logger = logging.getLogger("agent-runtime")

REFLECTION_FAILED_FLAG = "reflection_failed"

Regenerate = Callable[[str], Awaitable[str]]


@dataclass
class Grade:
    score: float
    feedback: str = ""


@dataclass
class ReflectionResult:
    content: str
    attempts: int
    scores: List[float] = field(default_factory=list)
    failed: bool = False


class Grader(Protocol):
    async def grade(
        self,
        response: str,
        *,
        user_input: str,
        criteria: Sequence[str],
        config: EffectiveConfig,
    ) -> Grade:  # pragma: no cover - interface only
        ...


class LLMGrader:
    """Grades with the reflection (or primary) model, expecting JSON {score, feedback}."""

    def __init__(self, coordinator) -> None:
        self.coordinator = coordinator

    async def grade(self, response: str, *, user_input: str, criteria: Sequence[str], config: EffectiveConfig) -> Grade:
        listing = "\n".join(f"- {c}" for c in criteria)
        messages = [
            {
                "role": "system",
                "content": (
                    "You review an assistant reply against these criteria:\n"
                    f"{listing}\n"
                    'Respond ONLY with JSON {"score": <0..1>, "feedback": "<what to improve>"}.'
                ),
            },
            {"role": "user", "content": f"Request:\n{user_input}\n\nReply:\n{response}"},
        ]
        completion = await self.coordinator.complete(
            messages, config, alias=config.reflection_llm or config.llm, params={"json": True}
        )
        try:
            data = json.loads(completion.content)
            return Grade(score=max(0.0, min(1.0, float(data["score"]))), feedback=str(data.get("feedback") or ""))
        except (ValueError, KeyError, TypeError):
            logger.warning("reflection grade unparseable content=%r", completion.content[:200])
            return Grade(score=1.0, feedback="")


class Reflector:
    def __init__(self, grader: Grader, *, hooks: Optional[HookBus] = None) -> None:
        self.grader = grader
        self.hooks = hooks or HookBus()

    async def run(
        self,
        content: str,
        *,
        regenerate: Regenerate,
        user_input: str,
        config: EffectiveConfig,
        session_id: Optional[str] = None,
    ) -> ReflectionResult:
        scores: List[float] = []
        retries = 0
        while True:
            try:
                grade = await self.grader.grade(
                    content, user_input=user_input, criteria=config.reflection_criteria, config=config
                )
            except LLMUnavailable as exc:
                logger.warning("reflection skipped, grader unavailable session=%s error=%s", session_id, exc)
                return ReflectionResult(content=content, attempts=retries + 1, scores=scores)
            scores.append(grade.score)
            self.hooks.emit("reflection", {"score": grade.score, "attempt": retries + 1}, session_id=session_id)
            if grade.score >= config.reflection_threshold:
                return ReflectionResult(content=content, attempts=retries + 1, scores=scores)
            if retries >= config.reflection_max_retries:
                logger.warning(
                    "reflection failed session=%s attempts=%s last_score=%.2f",
                    session_id,
                    retries + 1,
                    grade.score,
                )
                return ReflectionResult(content=content, attempts=retries + 1, scores=scores, failed=True)
            retries += 1
            feedback = grade.feedback or "Improve the reply so it meets every criterion."
            content = await regenerate(feedback)
