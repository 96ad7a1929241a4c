from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from jsonschema import Draft7Validator

from .conditions import MISSING, lookup_path
from .hooks import HookBus
from .models import Session
from .providers import Message
from .reasoning import ReasoningResult
from .recovery import ErrorRecoveryCoordinator
from .spec import EffectiveConfig, SkillSpec
from .tools import ToolCall, ToolExecutor, ToolObservation

logger = logging.getLogger("agent-runtime")

_PLACEHOLDER = re.compile(r"\{(input|context\.[\w.]+|steps\.\d+(?:\.[\w.]+)?)\}")


def _lookup(name: str, *, user_input: str, context: Mapping[str, Any], steps: Sequence[Any]) -> Any:
    if name == "input":
        return user_input
    if name.startswith("context."):
        return lookup_path(context, name[len("context."):])
    return lookup_path({"steps": {str(i): v for i, v in enumerate(steps)}}, name)


def fill_placeholders(value: Any, *, user_input: str, context: Mapping[str, Any], steps: Sequence[Any] = ()) -> Any:
    """
    Substitute {input}, {context.key} and {steps.N} in strings, recursively.

    A string that is exactly one placeholder takes the referenced value with
    its type; unknown references are left as written.
    """
    if isinstance(value, Mapping):
        return {k: fill_placeholders(v, user_input=user_input, context=context, steps=steps) for k, v in value.items()}
    if isinstance(value, list):
        return [fill_placeholders(v, user_input=user_input, context=context, steps=steps) for v in value]
    if not isinstance(value, str):
        return value

    whole = _PLACEHOLDER.fullmatch(value)
    if whole:
        found = _lookup(whole.group(1), user_input=user_input, context=context, steps=steps)
        return value if found is MISSING else found

    def sub(match: "re.Match[str]") -> str:
        found = _lookup(match.group(1), user_input=user_input, context=context, steps=steps)
        if found is MISSING:
            return match.group(0)
        return found if isinstance(found, str) else json.dumps(found, default=str)

    return _PLACEHOLDER.sub(sub, value)


def missing_parameters(skill: SkillSpec, values: Mapping[str, Any]) -> List[str]:
    """Names (or schema messages) that stop the skill from running with `values`."""
    if not skill.parameters:
        return []
    schema = dict(skill.parameters)
    properties = schema.get("properties") or {}
    present = {k: v for k, v in values.items() if k in properties and v not in (None, "")}
    problems: List[str] = []
    for err in Draft7Validator(schema).iter_errors(present):
        if err.validator == "required":
            problems.extend(r for r in err.validator_value if r not in present and r not in problems)
        else:
            problems.append(err.message)
    return problems


def parameter_values(skill: SkillSpec, values: Mapping[str, Any]) -> Dict[str, Any]:
    properties = (skill.parameters or {}).get("properties") or {}
    return {k: values[k] for k in properties if values.get(k) not in (None, "")}


class SkillRunner:
    """Executes a skill as its ordered tool and prompt steps."""

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
        skill: SkillSpec,
        messages: Sequence[Message],
        *,
        user_input: str,
        session: Session,
        config: EffectiveConfig,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ReasoningResult:
        values = {**session.context, **(context or {})}
        results: List[Any] = []
        observations: List[ToolObservation] = []
        content: Optional[str] = None

        for index, step in enumerate(skill.steps):
            if step.kind == "tool":
                arguments = fill_placeholders(dict(step.arguments), user_input=user_input, context=values, steps=results)
                batch = await self.executor.execute(
                    [ToolCall(tool=step.tool or "", arguments=arguments)], session=session, config=config
                )
                obs = batch[0]
                observations.append(obs)
                results.append(obs.result if obs.ok else {"error": obs.error_kind, "message": obs.error})
                continue
            prompt = fill_placeholders(step.prompt or "", user_input=user_input, context=values, steps=results)
            step_messages = list(messages) + [{"role": "system", "content": prompt}]
            if results:
                step_messages.append(
                    {"role": "system", "content": "Results so far:\n" + json.dumps(results, default=str, indent=2)}
                )
            completion = await self.coordinator.complete(step_messages, config)
            results.append(completion.content)
            content = completion.content
            logger.debug("skill step done skill=%s step=%s kind=prompt", skill.id, index)

        if content is None:
            synthesis = list(messages) + [
                {
                    "role": "system",
                    "content": (
                        f"The {skill.id} skill produced these results:\n"
                        + json.dumps(results, default=str, indent=2)
                        + "\nUse them to reply to the user."
                    ),
                }
            ]
            completion = await self.coordinator.complete(synthesis, config)
            content = completion.content

        return ReasoningResult(
            content=content.strip(),
            mode="skill",
            observations=observations,
            iterations=len(skill.steps),
        )
