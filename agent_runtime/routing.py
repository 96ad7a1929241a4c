"""
Skill routing.

A SkillScorer gives every available skill a confidence in [0, 1]. The router
ranks them and decides whether the top candidate is clear enough to run or
whether the turn should ask a clarification question instead. A turn is
ambiguous when the top confidence is below its skill's disambiguation
threshold, or when the runner-up is closer than `disambiguation_min_gap`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .conditions import EvaluationContext, SemanticJudge, evaluate_condition
from .errors import LLMUnavailable
from .spec import AgentSpec, EffectiveConfig, SkillSpec

logger = logging.getLogger("agent-runtime")

_WORD = re.compile(r"[\w']+")


def _words(text: str) -> set:
    return {w for w in _WORD.findall(text.lower()) if len(w) > 2}


@dataclass
class SkillCandidate:
    skill: str
    confidence: float


@dataclass
class RouteDecision:
    skill: Optional[str]
    candidates: List[SkillCandidate] = field(default_factory=list)
    ambiguous: bool = False
    confidence: float = 0.0

    def candidate_ids(self) -> List[str]:
        return [c.skill for c in self.candidates]


class SkillScorer(Protocol):
    async def score(
        self,
        user_input: str,
        skills: Sequence[SkillSpec],
        *,
        config: EffectiveConfig,
    ) -> Dict[str, float]:  # pragma: no cover - interface only
        ...


class KeywordScorer:
    """
    Deterministic scorer from trigger phrases and example overlap.

    A trigger phrase found in the input scores 0.9; otherwise the score is
    the best word overlap against the skill's examples and description.
    """

    async def score(self, user_input: str, skills: Sequence[SkillSpec], *, config: EffectiveConfig) -> Dict[str, float]:
        text = user_input.lower()
        words = _words(user_input)
        scores: Dict[str, float] = {}
        for skill in skills:
            if any(t.lower() in text for t in skill.triggers if t):
                scores[skill.id] = 0.9
                continue
            best = 0.0
            for sample in (*skill.examples, skill.description):
                sample_words = _words(sample)
                if not sample_words or not words:
                    continue
                best = max(best, len(words & sample_words) / len(words | sample_words))
            scores[skill.id] = round(best, 4)
        return scores


class LLMScorer:
    """Asks the router model for per-skill confidences as JSON."""

    def __init__(self, coordinator: Any) -> None:
        self.coordinator = coordinator

    async def score(self, user_input: str, skills: Sequence[SkillSpec], *, config: EffectiveConfig) -> Dict[str, float]:
        listing = "\n".join(f"- {s.id}: {s.description}" for s in skills)
        messages = [
            {
                "role": "system",
                "content": (
                    "Rate how well each skill matches the user's request. "
                    'Respond ONLY with JSON like {"scores": {"skill_id": 0.0}} using values between 0 and 1.\n'
                    f"Skills:\n{listing}"
                ),
            },
            {"role": "user", "content": user_input},
        ]
        completion = await self.coordinator.complete(messages, config, alias=config.router_llm, params={"json": True})
        try:
            raw = json.loads(completion.content)
            scores = raw.get("scores", raw) if isinstance(raw, dict) else {}
            return {s.id: max(0.0, min(1.0, float(scores.get(s.id, 0.0)))) for s in skills}
        except (ValueError, TypeError, AttributeError):
            logger.warning("router returned unparseable scores content=%r", completion.content[:200])
            return {s.id: 0.0 for s in skills}


class LLMJudge:
    """SemanticJudge backed by a model alias; answers JSON {"score": 0..1}."""

    def __init__(self, coordinator: Any, config: Optional[EffectiveConfig] = None) -> None:
        self.coordinator = coordinator
        self.config = config or EffectiveConfig()

    async def score(self, question: str, ctx: EvaluationContext, *, llm: str) -> float:
        facts = {
            "state": ctx.state,
            "previous_state": ctx.previous_state,
            "called_tools": ctx.called_tools,
            "context": {k: v for k, v in ctx.context.items() if not k.startswith("_")},
        }
        messages = [
            {
                "role": "system",
                "content": (
                    "Judge whether the statement holds for the conversation. "
                    'Respond ONLY with JSON {"score": <0..1>}.\n'
                    f"Statement: {question}\nFacts: {json.dumps(facts, default=str)}"
                ),
            },
            {"role": "user", "content": ctx.user_input},
        ]
        try:
            completion = await self.coordinator.complete(messages, self.config, alias=llm, params={"json": True})
        except LLMUnavailable as exc:
            logger.warning("semantic judge unavailable question=%r error=%s", question, exc)
            return 0.0
        try:
            return max(0.0, min(1.0, float(json.loads(completion.content)["score"])))
        except (ValueError, KeyError, TypeError):
            return 0.0


class SkillRouter:
    def __init__(
        self,
        spec: AgentSpec,
        scorer: Optional[SkillScorer] = None,
        *,
        judge: Optional[SemanticJudge] = None,
        llm_scorer: Optional[SkillScorer] = None,
    ) -> None:
        self.spec = spec
        self.scorer = scorer
        self.judge = judge
        self.keyword_scorer = KeywordScorer()
        self.llm_scorer = llm_scorer

    def scorer_for(self, config: EffectiveConfig) -> SkillScorer:
        """An injected scorer always wins; otherwise `skill_scorer` picks one."""
        if self.scorer is not None:
            return self.scorer
        if config.skill_scorer == "llm" and self.llm_scorer is not None:
            return self.llm_scorer
        return self.keyword_scorer

    async def available_skills(self, config: EffectiveConfig, ctx: EvaluationContext) -> List[SkillSpec]:
        ids = config.skills if config.skills is not None else list(self.spec.skills)
        candidates = [self.spec.skills[i] for i in ids if i in self.spec.skills]
        decided: Dict[str, Optional[bool]] = {
            s.id: True if s.condition is None else s.condition.static(ctx) for s in candidates
        }
        for skill in candidates:
            if decided[skill.id] is None:
                decided[skill.id] = await evaluate_condition(skill.condition, ctx, self.judge)
        return [s for s in candidates if decided[s.id]]

    def threshold_for(self, skill_id: str, config: EffectiveConfig) -> float:
        skill = self.spec.skills.get(skill_id)
        if skill is not None and skill.config is not None and skill.config.disambiguation_threshold is not None:
            return skill.config.disambiguation_threshold
        return config.disambiguation_threshold

    async def route(self, user_input: str, *, config: EffectiveConfig, ctx: EvaluationContext) -> RouteDecision:
        skills = await self.available_skills(config, ctx)
        if not skills:
            return RouteDecision(skill=None)
        try:
            scores = await self.scorer_for(config).score(user_input, skills, config=config)
        except LLMUnavailable as exc:
            logger.warning("skill scoring unavailable, routing to default error=%s", exc)
            return RouteDecision(skill=config.default_skill)

        order = {s.id: i for i, s in enumerate(skills)}
        ranked = sorted(
            (SkillCandidate(skill=s.id, confidence=float(scores.get(s.id, 0.0))) for s in skills),
            key=lambda c: (-c.confidence, order[c.skill]),
        )
        viable = [c for c in ranked if c.confidence >= config.min_skill_confidence]
        if not viable:
            return RouteDecision(skill=config.default_skill, candidates=ranked, confidence=ranked[0].confidence)

        top = viable[0]
        ambiguous = False
        if config.disambiguation_enabled:
            low = top.confidence < self.threshold_for(top.skill, config)
            close = len(viable) > 1 and (top.confidence - viable[1].confidence) < config.disambiguation_min_gap
            ambiguous = low or close
        logger.debug("routing top=%s confidence=%.2f ambiguous=%s", top.skill, top.confidence, ambiguous)
        return RouteDecision(
            skill=None if ambiguous else top.skill,
            candidates=viable[:3] if ambiguous else ranked,
            ambiguous=ambiguous,
            confidence=top.confidence,
        )
