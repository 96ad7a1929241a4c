from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .hooks import HookBus
from .models import PendingDisambiguation, Session
from .spec import AgentSpec, EffectiveConfig

logger = logging.getLogger("agent-runtime")

_AFFIRMATIVE = {"yes", "y", "yeah", "yep", "sure", "correct", "right", "ok", "okay"}


@dataclass
class Resolution:
    """What the reply to a clarification question resolved to."""

    skill: Optional[str]
    original_input: str
    matched: bool = False
    exhausted: bool = False
    question: Optional[str] = None


def _label(skill_id: str) -> str:
    return skill_id.replace("_", " ").replace("-", " ")


class Disambiguator:
    """
    Clarification loop for ambiguous routing.

    `start` asks the question and marks the session. `resolve` matches the
    next reply against the candidates without any model call: by number, by
    skill id or name, by a trigger phrase that belongs to one candidate only,
    or by a plain "yes" when there is a single candidate. Each failed reply
    uses up an attempt; once `disambiguation_max_attempts` is reached the
    marker is cleared and the default skill (or plain chat) takes over.
    """

    def __init__(self, spec: AgentSpec, *, hooks: Optional[HookBus] = None) -> None:
        self.spec = spec
        self.hooks = hooks or HookBus()

    def question(self, candidates: Sequence[str]) -> str:
        if len(candidates) == 1:
            return f"Just to check: do you want help with {_label(candidates[0])}?"
        options = []
        for i, skill_id in enumerate(candidates, start=1):
            skill = self.spec.skills.get(skill_id)
            desc = f" ({skill.description})" if skill is not None and skill.description else ""
            options.append(f"{i}. {_label(skill_id)}{desc}")
        return "I can help with a few things. Which one did you mean?\n" + "\n".join(options)

    def start(self, session: Session, user_input: str, candidates: Sequence[str]) -> str:
        text = self.question(candidates)
        session.pending_disambiguation = PendingDisambiguation(
            original_input=user_input,
            candidates=list(candidates),
            question=text,
        )
        self.hooks.emit("disambiguation", {"candidates": list(candidates), "attempt": 1}, session_id=session.id)
        logger.info("disambiguation started session=%s candidates=%s", session.id, list(candidates))
        return text

    def match(self, reply: str, candidates: Sequence[str]) -> Optional[str]:
        text = reply.strip().lower()
        if not text:
            return None
        number = re.fullmatch(r"#?(\d+)\.?", text)
        if number:
            index = int(number.group(1)) - 1
            return candidates[index] if 0 <= index < len(candidates) else None
        for skill_id in candidates:
            if text in (skill_id.lower(), _label(skill_id).lower()):
                return skill_id
        named = [s for s in candidates if _label(s).lower() in text or s.lower() in text]
        if len(named) == 1:
            return named[0]
        by_trigger: List[str] = []
        for skill_id in candidates:
            skill = self.spec.skills.get(skill_id)
            if skill is not None and any(t.lower() in text for t in skill.triggers if t):
                by_trigger.append(skill_id)
        if len(by_trigger) == 1:
            return by_trigger[0]
        if len(candidates) == 1 and text.strip(".!") in _AFFIRMATIVE:
            return candidates[0]
        return None

    def resolve(self, session: Session, reply: str, config: EffectiveConfig) -> Resolution:
        pending = session.pending_disambiguation
        if pending is None:
            return Resolution(skill=None, original_input=reply)

        chosen = self.match(reply, pending.candidates)
        if chosen is not None:
            session.pending_disambiguation = None
            logger.info("disambiguation resolved session=%s skill=%s", session.id, chosen)
            return Resolution(skill=chosen, original_input=pending.original_input, matched=True)

        if pending.attempts >= config.disambiguation_max_attempts:
            session.pending_disambiguation = None
            logger.info(
                "disambiguation exhausted session=%s attempts=%s default=%s",
                session.id,
                pending.attempts,
                config.default_skill,
            )
            return Resolution(skill=config.default_skill, original_input=pending.original_input, exhausted=True)

        pending.attempts += 1
        self.hooks.emit(
            "disambiguation",
            {"candidates": pending.candidates, "attempt": pending.attempts},
            session_id=session.id,
        )
        return Resolution(skill=None, original_input=pending.original_input, question=pending.question)
