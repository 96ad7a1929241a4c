from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from .conditions import Condition, parse_condition
from .config import get_settings
from .errors import ConfigError
from .models import MemoryPolicy
from .spec import (
    ROOT_STATE,
    Action,
    AgentSpec,
    ApprovalPolicy,
    ApprovalRule,
    ConfigLayer,
    ContextSourceSpec,
    LLMAlias,
    ProcessStep,
    SkillSpec,
    SkillStep,
    StateNode,
    StateTree,
    ToolPolicy,
    ToolSpec,
    TransitionRule,
)

logger = logging.getLogger("agent-runtime")

# Sample agent specs shipped with the package (agent_runtime/agents/*.yaml).
AGENTS_DIR = Path(__file__).parent / "agents"

_PROCESS_KINDS = ("normalize", "detect", "extract", "sanitize", "validate", "transform", "format")
_CONTEXT_KINDS = ("runtime", "builtin", "file", "http", "env", "callback")


def _read_spec_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Agent spec file not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Agent spec is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError("Agent spec YAML must deserialize to a mapping")

    return data


def load_agent_spec(path: str | Path) -> AgentSpec:
    """Load and validate an agent spec from a YAML file."""
    spec = parse_agent_spec(_read_spec_yaml(Path(path)))
    logger.info("agent spec loaded name=%s version=%s path=%s", spec.name, spec.version, path)
    return spec


def resolve_spec_path(name_or_path: str) -> Path:
    """Accept a file path or the stem of a bundled spec in AGENTS_DIR."""
    candidate = Path(name_or_path)
    if candidate.suffix in (".yaml", ".yml") or candidate.exists():
        return candidate
    return AGENTS_DIR / f"{name_or_path}.yaml"


def get_active_agent() -> AgentSpec:
    """Resolve the agent configured by AGENT_SPEC."""
    settings = get_settings()
    return load_agent_spec(resolve_spec_path(settings.agent_spec))


def _layer(raw: Any, where: str) -> Optional[ConfigLayer]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where}: config must be a mapping")
    try:
        return ConfigLayer.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigError(f"{where}: invalid config", details=exc.errors(include_url=False)) from exc


def _number(value: Any, where: str, cast: Callable[[Any], Any] = float) -> Any:
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where} must be a number, got {value!r}") from exc


def _condition(raw: Any, where: str) -> Optional[Condition]:
    if raw is None:
        return None
    return parse_condition(raw, where=where)


def _parse_llms(raw: Any) -> Dict[str, LLMAlias]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError("llms must be a mapping of alias to provider settings")
    out: Dict[str, LLMAlias] = {}
    for alias, body in raw.items():
        body = body or {}
        if isinstance(body, str):
            body = {"provider": body}
        known = {"provider", "model", "base_url", "api_key_env"}
        out[str(alias)] = LLMAlias(
            alias=str(alias),
            provider=str(body["provider"]).lower() if body.get("provider") else None,
            model=body.get("model"),
            base_url=body.get("base_url"),
            api_key_env=body.get("api_key_env"),
            params={k: v for k, v in body.items() if k not in known},
        )
    return out


def _parse_tool(raw: Mapping[str, Any]) -> ToolSpec:
    if "id" not in raw:
        raise ConfigError("Tool definition missing required field: id", details={"tool": raw})
    tool_id = str(raw["id"])
    policy_raw = raw.get("policy") or {}
    rate = policy_raw.get("rate_limit")
    calls: Optional[int] = None
    window = 60.0
    if isinstance(rate, Mapping):
        calls = _number(rate["calls"], f"tool {tool_id!r} rate_limit.calls", int) if rate.get("calls") is not None else None
        window = _number(rate.get("window_seconds", 60.0), f"tool {tool_id!r} rate_limit.window_seconds")
    elif rate is not None:
        calls = _number(rate, f"tool {tool_id!r} rate_limit", int)
    timeout = policy_raw.get("timeout_seconds")
    if timeout is None and policy_raw.get("timeout_ms") is not None:
        timeout = _number(policy_raw["timeout_ms"], f"tool {tool_id!r} timeout_ms") / 1000.0
    policy = ToolPolicy(
        enabled=bool(policy_raw.get("enabled", True)),
        rate_limit_calls=calls,
        rate_limit_window_seconds=window,
        allowed_domains=tuple(policy_raw.get("allowed_domains") or ()),
        blocked_domains=tuple(policy_raw.get("blocked_domains") or ()),
        allowed_paths=tuple(policy_raw.get("allowed_paths") or ()),
        require_confirmation=bool(policy_raw.get("require_confirmation", False)),
        confirmation_message=policy_raw.get("confirmation_message"),
        timeout_seconds=_number(timeout, f"tool {tool_id!r} timeout_seconds") if timeout is not None else None,
        max_retries=max(0, _number(policy_raw.get("max_retries") or 0, f"tool {tool_id!r} max_retries", int)),
    )
    return ToolSpec(
        id=tool_id,
        description=str(raw.get("description", "")),
        parameters=raw.get("parameters"),
        condition=_condition(raw.get("condition"), f"tool {tool_id!r}"),
        policy=policy,
        concurrency_safe=bool(raw.get("concurrency_safe", True)),
        critical=bool(raw.get("critical", False)),
    )


def _parse_skill(raw: Mapping[str, Any]) -> SkillSpec:
    if "id" not in raw:
        raise ConfigError("Skill definition missing required field: id", details={"skill": raw})
    skill_id = str(raw["id"])
    steps: List[SkillStep] = []
    for step in raw.get("steps") or []:
        if not isinstance(step, Mapping):
            raise ConfigError(f"skill {skill_id!r}: steps must be mappings")
        if "tool" in step:
            steps.append(SkillStep(kind="tool", tool=str(step["tool"]), arguments=dict(step.get("arguments") or step.get("args") or {})))
        elif "prompt" in step:
            steps.append(SkillStep(kind="prompt", prompt=str(step["prompt"])))
        else:
            raise ConfigError(f"skill {skill_id!r}: step needs 'tool' or 'prompt'")
    config = dict(raw.get("config") or {})
    if raw.get("disambiguation_threshold") is not None:
        config.setdefault("disambiguation_threshold", raw["disambiguation_threshold"])
    return SkillSpec(
        id=skill_id,
        description=str(raw.get("description", "")),
        triggers=tuple(str(t) for t in raw.get("triggers") or ()),
        examples=tuple(str(e) for e in raw.get("examples") or ()),
        steps=tuple(steps),
        parameters=raw.get("parameters"),
        condition=_condition(raw.get("condition"), f"skill {skill_id!r}"),
        config=_layer(config or None, f"skill {skill_id!r}"),
    )


def _parse_actions(raw: Any, where: str) -> Tuple[Action, ...]:
    actions: List[Action] = []
    for item in raw or []:
        if not isinstance(item, Mapping):
            raise ConfigError(f"{where}: actions must be mappings")
        if "tool" in item:
            actions.append(
                Action(
                    kind="tool",
                    target=str(item["tool"]),
                    arguments=dict(item.get("args") or item.get("arguments") or {}),
                    store_as=item.get("store_as"),
                )
            )
        elif "skill" in item:
            actions.append(Action(kind="skill", target=str(item["skill"]), store_as=item.get("store_as")))
        elif "prompt" in item:
            actions.append(
                Action(kind="prompt", prompt=str(item["prompt"]), target=item.get("llm"), store_as=item.get("store_as"))
            )
        elif "set_context" in item:
            actions.append(Action(kind="set_context", values=dict(item["set_context"] or {})))
        else:
            raise ConfigError(f"{where}: unknown action {item!r}")
    return tuple(actions)


def _parse_transitions(raw: Any, where: str) -> List[Dict[str, Any]]:
    out = []
    for item in raw or []:
        if not isinstance(item, Mapping) or "to" not in item:
            raise ConfigError(f"{where}: transition needs 'to'")
        out.append(
            {
                "to": str(item["to"]),
                "when": item.get("when") or None,
                "guard": _condition(item.get("guard"), where),
            }
        )
    return out


class _StateBuilder:
    """Collects states into mutable records before freezing them into StateNodes."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []
        self.index: Dict[str, int] = {}

    def add(self, state_id: str, parent: Optional[int], body: Mapping[str, Any]) -> int:
        where = f"state {state_id!r}"
        config = dict(body.get("config") or {})
        for key in ("llm", "tools", "skills", "reasoning_mode", "max_iterations"):
            if body.get(key) is not None and key not in config:
                config[key] = body[key]
        tool_ids = []
        tool_conditions: Dict[str, Condition] = {}
        for ref in config.get("tools") or []:
            if isinstance(ref, Mapping):
                tool_ids.append(str(ref["id"]))
                if ref.get("condition") is not None:
                    tool_conditions[str(ref["id"])] = parse_condition(ref["condition"], where=where)
            else:
                tool_ids.append(str(ref))
        if "tools" in config:
            config["tools"] = tool_ids
        record = {
            "id": state_id,
            "parent": parent,
            "children": [],
            "prompt": str(body.get("prompt") or ""),
            "prompt_mode": body.get("prompt_mode", "append"),
            "transitions": _parse_transitions(body.get("transitions"), where),
            "on_enter": _parse_actions(body.get("on_enter"), where),
            "on_exit": _parse_actions(body.get("on_exit"), where),
            "max_turns": body.get("max_turns"),
            "timeout_to": body.get("timeout_to"),
            "initial": body.get("initial"),
            "config": _layer(config or None, where),
            "tool_conditions": tool_conditions,
        }
        if record["prompt_mode"] not in ("append", "replace", "prepend"):
            raise ConfigError(f"{where}: unknown prompt_mode {record['prompt_mode']!r}")
        if state_id in self.index:
            # Keep both records so validation reports the duplicate.
            self.records.append(record)
            return len(self.records) - 1
        self.index[state_id] = len(self.records)
        self.records.append(record)
        return self.index[state_id]

    def resolve_target(self, target: str, current: str) -> str:
        """Resolve a relative target: ^top-level, sibling, child, then top-level."""
        if target.startswith("^"):
            return target[1:]
        if "." in current:
            sibling = current.rsplit(".", 1)[0] + "." + target
            if sibling in self.index:
                return sibling
        child = f"{current}.{target}" if current != ROOT_STATE else target
        if child in self.index:
            return child
        return target

    def freeze(self, initial: str, fallback: Optional[str]) -> StateTree:
        for i, record in enumerate(self.records):
            if record["parent"] is not None and 0 <= record["parent"] < len(self.records):
                self.records[record["parent"]]["children"].append(i)
        nodes = []
        for i, record in enumerate(self.records):
            current = record["id"]
            rules = tuple(
                TransitionRule(to=self.resolve_target(t["to"], current), when=t["when"], guard=t["guard"])
                for t in record["transitions"]
            )
            timeout_to = record["timeout_to"]
            initial_child = record["initial"]
            if initial_child is not None:
                initial_child = self.resolve_target(str(initial_child), current)
            nodes.append(
                StateNode(
                    id=current,
                    index=i,
                    parent=record["parent"],
                    children=tuple(record["children"]),
                    prompt=record["prompt"],
                    prompt_mode=record["prompt_mode"],
                    transitions=rules,
                    on_enter=record["on_enter"],
                    on_exit=record["on_exit"],
                    max_turns=_number(record["max_turns"], f"state {current!r} max_turns", int) if record["max_turns"] is not None else None,
                    timeout_to=self.resolve_target(str(timeout_to), current) if timeout_to is not None else None,
                    initial=initial_child,
                    config=record["config"],
                    tool_conditions=record["tool_conditions"],
                )
            )
        fallback_id = self.resolve_target(fallback, ROOT_STATE) if fallback else None
        return StateTree(nodes=tuple(nodes), initial=self.resolve_target(initial, ROOT_STATE), fallback=fallback_id)


def _parse_states(raw: Mapping[str, Any]) -> StateTree:
    if "initial" not in raw:
        raise ConfigError("states: missing 'initial'")
    builder = _StateBuilder()
    builder.add(ROOT_STATE, None, {"transitions": raw.get("global_transitions")})

    body = raw.get("states") or {}
    if isinstance(body, Mapping):

        def walk(states: Mapping[str, Any], parent_index: int, prefix: str) -> None:
            for name, definition in states.items():
                definition = definition or {}
                if not isinstance(definition, Mapping):
                    raise ConfigError(f"state {name!r}: definition must be a mapping")
                state_id = f"{prefix}.{name}" if prefix else str(name)
                index = builder.add(state_id, parent_index, definition)
                if definition.get("states"):
                    walk(definition["states"], index, state_id)

        walk(body, 0, "")
    elif isinstance(body, list):
        # Flat form: each entry names its parent explicitly.
        for definition in body:
            if not isinstance(definition, Mapping) or "id" not in definition:
                raise ConfigError("states: flat entries need an 'id'")
            builder.add(str(definition["id"]), None, definition)
        for record in builder.records[1:]:
            parent_id = next(
                (d.get("parent") for d in body if str(d["id"]) == record["id"]),
                None,
            )
            if parent_id is None:
                record["parent"] = 0
            elif parent_id in builder.index:
                record["parent"] = builder.index[parent_id]
            else:
                raise ConfigError(f"state {record['id']!r}: unknown parent {parent_id!r}")
    else:
        raise ConfigError("states.states must be a mapping or a list")

    return builder.freeze(str(raw["initial"]), raw.get("fallback"))


def _parse_approval(raw: Any) -> ApprovalPolicy:
    if not raw:
        return ApprovalPolicy()
    rules = []
    for item in raw.get("conditions") or []:
        if not isinstance(item, Mapping) or "name" not in item:
            raise ConfigError("approval.conditions entries need a 'name'")
        rules.append(
            ApprovalRule(
                name=str(item["name"]),
                matchers=dict(item.get("match") or {}),
                tool=item.get("tool"),
                message=item.get("message"),
            )
        )
    on_timeout = str(raw.get("on_timeout", "reject")).lower()
    if on_timeout not in ("approve", "reject"):
        raise ConfigError(f"approval.on_timeout must be approve or reject, got {on_timeout!r}")
    return ApprovalPolicy(
        tools=tuple(str(t) for t in raw.get("tools") or ()),
        rules=tuple(rules),
        states=tuple(str(s) for s in raw.get("states") or ()),
        timeout_seconds=_number(raw.get("timeout_seconds", 300), "approval.timeout_seconds"),
        on_timeout=on_timeout,  # type: ignore[arg-type]
        language=str(raw.get("language", "en")),
        messages=dict(raw.get("messages") or {}),
    )


def _parse_sources(raw: Any) -> Tuple[ContextSourceSpec, ...]:
    out = []
    for item in raw or []:
        if not isinstance(item, Mapping) or "name" not in item or "kind" not in item:
            raise ConfigError("context sources need 'name' and 'kind'")
        kind = str(item["kind"])
        if kind not in _CONTEXT_KINDS:
            raise ConfigError(f"context source {item['name']!r}: unknown kind {kind!r}")
        refresh = str(item.get("refresh", "per_turn"))
        if refresh not in ("per_turn", "per_session", "once"):
            raise ConfigError(f"context source {item['name']!r}: unknown refresh {refresh!r}")
        params = {k: v for k, v in item.items() if k not in ("name", "kind", "refresh")}
        out.append(ContextSourceSpec(name=str(item["name"]), kind=kind, params=params, refresh=refresh))  # type: ignore[arg-type]
    return tuple(out)


def _parse_steps(raw: Any, where: str) -> Tuple[ProcessStep, ...]:
    steps = []
    for item in raw or []:
        if isinstance(item, str):
            kind, params = item, {}
        elif isinstance(item, Mapping) and "kind" in item:
            kind, params = str(item["kind"]), {k: v for k, v in item.items() if k != "kind"}
        elif isinstance(item, Mapping) and len(item) == 1:
            kind, params = next(iter(item.items()))
            params = dict(params or {})
        else:
            raise ConfigError(f"{where}: cannot read step {item!r}")
        if kind not in _PROCESS_KINDS:
            raise ConfigError(f"{where}: unknown step kind {kind!r}")
        steps.append(ProcessStep(kind=kind, params=params))  # type: ignore[arg-type]
    return tuple(steps)


def parse_agent_spec(raw: Mapping[str, Any]) -> AgentSpec:
    """Build an AgentSpec from its mapping form. Raises ConfigError on any problem."""
    if not isinstance(raw, Mapping):
        raise ConfigError("Agent spec must be a mapping")
    if "name" not in raw:
        raise ConfigError("Agent spec missing required field: name")

    tools: Dict[str, ToolSpec] = {}
    for item in raw.get("tools") or []:
        tool = _parse_tool(item)
        if tool.id in tools:
            raise ConfigError(f"Duplicate tool id {tool.id!r}")
        tools[tool.id] = tool

    skills: Dict[str, SkillSpec] = {}
    for item in raw.get("skills") or []:
        skill = _parse_skill(item)
        if skill.id in skills:
            raise ConfigError(f"Duplicate skill id {skill.id!r}")
        skills[skill.id] = skill

    try:
        memory = MemoryPolicy.model_validate(raw.get("memory") or {})
    except ValidationError as exc:
        raise ConfigError("memory: invalid policy", details=exc.errors(include_url=False)) from exc

    states = _parse_states(raw["states"]) if raw.get("states") else None

    return AgentSpec(
        name=str(raw["name"]),
        version=str(raw.get("version", "0.1.0")),
        description=str(raw.get("description", "")),
        system_prompt=str(raw.get("system_prompt", "")),
        llms=_parse_llms(raw.get("llms")),
        config=_layer(raw.get("config"), "agent"),
        skills=skills,
        tools=tools,
        states=states,
        memory=memory,
        approval=_parse_approval(raw.get("approval")),
        context_sources=_parse_sources(raw.get("context")),
        input_steps=_parse_steps(raw.get("input"), "input"),
        output_steps=_parse_steps(raw.get("output"), "output"),
        hooks=tuple(str(h) for h in raw.get("hooks") or ()),
    )
