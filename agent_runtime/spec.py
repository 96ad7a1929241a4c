"""
Immutable, validated agent definition.

An AgentSpec is built once (usually by `loader.parse_agent_spec`) and never
mutated afterwards. Construction validates every cross reference, so nothing
downstream has to handle a dangling state, skill, tool or LLM alias.

States live in an arena: `StateTree.nodes` is a tuple indexed by position,
parents are stored as indices and children as index tuples. Index 0 is a
synthetic root that carries the agent-wide (global) transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError
from pydantic import BaseModel, ConfigDict

from .conditions import AfterToolCondition, Condition, SemanticCondition, ToolResultCondition, iter_conditions
from .errors import ConfigError
from .models import MemoryPolicy

ROOT_STATE = "__root__"

ReasoningMode = Literal["none", "cot", "react", "plan_and_execute", "auto"]


class ConfigLayer(BaseModel):
    """
    One layer of behavioural configuration.

    Every field is optional; an unset (or None) field inherits from the
    nearest broader layer.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    llm: Optional[str] = None
    fallback_llms: Optional[List[str]] = None
    router_llm: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    reasoning_mode: Optional[ReasoningMode] = None
    max_iterations: Optional[int] = None

    max_retries: Optional[int] = None
    backoff: Optional[Literal["fixed", "linear", "exponential"]] = None
    initial_backoff_ms: Optional[int] = None
    max_backoff_ms: Optional[int] = None
    backoff_multiplier: Optional[float] = None
    llm_timeout_seconds: Optional[float] = None
    action_retries: Optional[int] = None

    tool_timeout_seconds: Optional[float] = None
    max_concurrent_tools: Optional[int] = None
    tools: Optional[List[str]] = None
    skills: Optional[List[str]] = None

    skill_scorer: Optional[Literal["keyword", "llm"]] = None
    disambiguation_enabled: Optional[bool] = None
    disambiguation_threshold: Optional[float] = None
    disambiguation_min_gap: Optional[float] = None
    disambiguation_max_attempts: Optional[int] = None
    min_skill_confidence: Optional[float] = None
    default_skill: Optional[str] = None

    reflection_enabled: Optional[bool] = None
    reflection_criteria: Optional[List[str]] = None
    reflection_threshold: Optional[float] = None
    reflection_max_retries: Optional[int] = None
    reflection_llm: Optional[str] = None


class EffectiveConfig(BaseModel):
    """Fully resolved configuration for one turn. Same fields as ConfigLayer, all set."""

    model_config = ConfigDict(frozen=True)

    llm: str = "default"
    fallback_llms: List[str] = []
    router_llm: str = "router"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    reasoning_mode: ReasoningMode = "none"
    max_iterations: int = 5

    max_retries: int = 2
    backoff: Literal["fixed", "linear", "exponential"] = "exponential"
    initial_backoff_ms: int = 100
    max_backoff_ms: int = 10_000
    backoff_multiplier: float = 2.0
    llm_timeout_seconds: float = 60.0
    action_retries: int = 1

    tool_timeout_seconds: float = 30.0
    max_concurrent_tools: int = 4
    tools: Optional[List[str]] = None
    skills: Optional[List[str]] = None

    skill_scorer: Literal["keyword", "llm"] = "keyword"
    disambiguation_enabled: bool = True
    disambiguation_threshold: float = 0.7
    disambiguation_min_gap: float = 0.1
    disambiguation_max_attempts: int = 2
    min_skill_confidence: float = 0.3
    default_skill: Optional[str] = None

    reflection_enabled: bool = False
    reflection_criteria: List[str] = [
        "Response directly addresses the user's question",
        "Response is clear and well-structured",
        "Response is accurate and complete",
    ]
    reflection_threshold: float = 0.7
    reflection_max_retries: int = 2
    reflection_llm: Optional[str] = None


@dataclass(frozen=True)
class LLMAlias:
    alias: str
    provider: Optional[str] = None
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Action:
    """A state entry/exit action."""

    kind: Literal["tool", "skill", "prompt", "set_context"]
    target: Optional[str] = None
    arguments: Mapping[str, Any] = field(default_factory=dict)
    prompt: Optional[str] = None
    store_as: Optional[str] = None
    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransitionRule:
    """
    One outgoing rule. `guard` is the deterministic (or semantic) condition;
    `when` is a natural-language criterion judged by the router LLM.
    """

    to: str
    when: Optional[str] = None
    guard: Optional[Condition] = None

    @property
    def deterministic(self) -> bool:
        if self.when:
            return False
        return not any(isinstance(c, SemanticCondition) for c in iter_conditions(self.guard))


@dataclass(frozen=True)
class StateNode:
    id: str
    index: int
    parent: Optional[int]
    children: Tuple[int, ...] = ()
    prompt: str = ""
    prompt_mode: Literal["append", "replace", "prepend"] = "append"
    transitions: Tuple[TransitionRule, ...] = ()
    on_enter: Tuple[Action, ...] = ()
    on_exit: Tuple[Action, ...] = ()
    max_turns: Optional[int] = None
    timeout_to: Optional[str] = None
    initial: Optional[str] = None
    config: Optional[ConfigLayer] = None
    # Extra availability conditions for tools this state makes visible.
    tool_conditions: Mapping[str, Condition] = field(default_factory=dict)


@dataclass(frozen=True)
class StateTree:
    nodes: Tuple[StateNode, ...]
    initial: str
    fallback: Optional[str] = None
    by_id: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.by_id:
            object.__setattr__(self, "by_id", {n.id: n.index for n in self.nodes})

    def node(self, state_id: str) -> StateNode:
        return self.nodes[self.by_id[state_id]]

    def __contains__(self, state_id: str) -> bool:
        return state_id in self.by_id

    def chain(self, state_id: str) -> List[StateNode]:
        """Nodes from the synthetic root down to `state_id`, inclusive."""
        out: List[StateNode] = []
        index: Optional[int] = self.by_id[state_id]
        while index is not None:
            node = self.nodes[index]
            out.append(node)
            index = node.parent
        out.reverse()
        return out

    def leaf(self, state_id: str) -> str:
        """Descend through `initial` sub-states until a leaf is reached."""
        node = self.node(state_id)
        while node.children:
            target = node.initial or self.nodes[node.children[0]].id
            node = self.node(target)
        return node.id

    def user_chain(self, state_id: str) -> List[StateNode]:
        return [n for n in self.chain(state_id) if n.id != ROOT_STATE]

    def prompt_for(self, state_id: str, base_prompt: str) -> str:
        """Compose the system prompt root-to-leaf according to each node's prompt_mode."""
        prompt = base_prompt
        for node in self.user_chain(state_id):
            if not node.prompt:
                continue
            if node.prompt_mode == "replace":
                prompt = node.prompt
            elif node.prompt_mode == "prepend":
                prompt = f"{node.prompt}\n\n{prompt}" if prompt else node.prompt
            else:
                prompt = f"{prompt}\n\n{node.prompt}" if prompt else node.prompt
        return prompt


@dataclass(frozen=True)
class SkillStep:
    kind: Literal["tool", "prompt"]
    tool: Optional[str] = None
    arguments: Mapping[str, Any] = field(default_factory=dict)
    prompt: Optional[str] = None


@dataclass(frozen=True)
class SkillSpec:
    id: str
    description: str = ""
    triggers: Tuple[str, ...] = ()
    examples: Tuple[str, ...] = ()
    steps: Tuple[SkillStep, ...] = ()
    parameters: Optional[Mapping[str, Any]] = None
    condition: Optional[Condition] = None
    config: Optional[ConfigLayer] = None


@dataclass(frozen=True)
class ToolPolicy:
    enabled: bool = True
    rate_limit_calls: Optional[int] = None
    rate_limit_window_seconds: float = 60.0
    allowed_domains: Tuple[str, ...] = ()
    blocked_domains: Tuple[str, ...] = ()
    allowed_paths: Tuple[str, ...] = ()
    require_confirmation: bool = False
    confirmation_message: Any = None
    timeout_seconds: Optional[float] = None
    max_retries: int = 0


@dataclass(frozen=True)
class ToolSpec:
    id: str
    description: str = ""
    parameters: Optional[Mapping[str, Any]] = None
    condition: Optional[Condition] = None
    policy: ToolPolicy = field(default_factory=ToolPolicy)
    concurrency_safe: bool = True
    critical: bool = False


@dataclass(frozen=True)
class ApprovalRule:
    """Named argument matcher: calls to `tool` (or any tool) matching `matchers` need approval."""

    name: str
    matchers: Mapping[str, Any]
    tool: Optional[str] = None
    message: Any = None


@dataclass(frozen=True)
class ApprovalPolicy:
    tools: Tuple[str, ...] = ()
    rules: Tuple[ApprovalRule, ...] = ()
    states: Tuple[str, ...] = ()
    timeout_seconds: float = 300.0
    on_timeout: Literal["approve", "reject"] = "reject"
    language: str = "en"
    messages: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContextSourceSpec:
    name: str
    kind: Literal["runtime", "builtin", "file", "http", "env", "callback"]
    params: Mapping[str, Any] = field(default_factory=dict)
    refresh: Literal["per_turn", "per_session", "once"] = "per_turn"


@dataclass(frozen=True)
class ProcessStep:
    kind: Literal["normalize", "detect", "extract", "sanitize", "validate", "transform", "format"]
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentSpec:
    name: str
    version: str = "0.1.0"
    description: str = ""
    system_prompt: str = ""
    llms: Mapping[str, LLMAlias] = field(default_factory=dict)
    config: Optional[ConfigLayer] = None
    skills: Mapping[str, SkillSpec] = field(default_factory=dict)
    tools: Mapping[str, ToolSpec] = field(default_factory=dict)
    states: Optional[StateTree] = None
    memory: MemoryPolicy = field(default_factory=MemoryPolicy)
    approval: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    context_sources: Tuple[ContextSourceSpec, ...] = ()
    input_steps: Tuple[ProcessStep, ...] = ()
    output_steps: Tuple[ProcessStep, ...] = ()
    hooks: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        validate_agent_spec(self)


def _check_schema(schema: Optional[Mapping[str, Any]], where: str) -> None:
    if schema is None:
        return
    try:
        Draft7Validator.check_schema(dict(schema))
    except SchemaError as exc:
        raise ConfigError(f"Invalid JSON schema in {where}: {exc.message}") from exc


def check_layer(layer: Optional[ConfigLayer], spec: AgentSpec, where: str) -> None:
    if layer is None:
        return
    aliases = [layer.llm, layer.router_llm, layer.reflection_llm, *(layer.fallback_llms or [])]
    for alias in aliases:
        if alias is not None and spec.llms and alias not in spec.llms:
            raise ConfigError(f"{where}: unknown LLM alias {alias!r}")
    for tool_id in layer.tools or []:
        if tool_id not in spec.tools:
            raise ConfigError(f"{where}: unknown tool {tool_id!r}")
    for skill_id in layer.skills or []:
        if skill_id not in spec.skills:
            raise ConfigError(f"{where}: unknown skill {skill_id!r}")
    if layer.default_skill is not None and layer.default_skill not in spec.skills:
        raise ConfigError(f"{where}: unknown default_skill {layer.default_skill!r}")


def _check_condition(cond: Optional[Condition], spec: AgentSpec, where: str) -> None:
    for sub in iter_conditions(cond):
        if isinstance(sub, (AfterToolCondition, ToolResultCondition)) and sub.tool not in spec.tools:
            raise ConfigError(f"{where}: condition references unknown tool {sub.tool!r}")
        if isinstance(sub, SemanticCondition) and spec.llms and sub.llm not in spec.llms:
            raise ConfigError(f"{where}: condition references unknown LLM alias {sub.llm!r}")


def _check_actions(actions: Tuple[Action, ...], spec: AgentSpec, where: str) -> None:
    for action in actions:
        if action.kind == "tool" and action.target not in spec.tools:
            raise ConfigError(f"{where}: action references unknown tool {action.target!r}")
        if action.kind == "skill" and action.target not in spec.skills:
            raise ConfigError(f"{where}: action references unknown skill {action.target!r}")
        if action.kind == "prompt" and not action.prompt:
            raise ConfigError(f"{where}: prompt action needs 'prompt'")


def _check_state_tree(tree: StateTree, spec: AgentSpec) -> None:
    ids = [n.id for n in tree.nodes]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigError("Duplicate state ids", details={"states": dupes})
    if not tree.nodes or tree.nodes[0].id != ROOT_STATE or tree.nodes[0].parent is not None:
        raise ConfigError("State tree must start with the synthetic root")

    for node in tree.nodes:
        if node.index != tree.by_id[node.id]:
            raise ConfigError(f"State {node.id!r} has inconsistent index")
        if node.index != 0 and node.parent is None:
            raise ConfigError(f"State {node.id!r} has no parent")
        if node.parent is not None and not (0 <= node.parent < len(tree.nodes)):
            raise ConfigError(f"State {node.id!r} has a dangling parent")

    # Walking parents from every node must reach the root without revisiting.
    for node in tree.nodes:
        seen = set()
        index: Optional[int] = node.index
        while index is not None:
            if index in seen:
                raise ConfigError(f"State hierarchy contains a cycle through {node.id!r}")
            seen.add(index)
            index = tree.nodes[index].parent

    for node in tree.nodes:
        for child in node.children:
            if not (0 <= child < len(tree.nodes)) or tree.nodes[child].parent != node.index:
                raise ConfigError(f"State {node.id!r} has an inconsistent child list")
        where = f"state {node.id!r}"
        if node.initial is not None:
            if node.initial not in tree.by_id or tree.node(node.initial).parent != node.index:
                raise ConfigError(f"{where}: initial sub-state {node.initial!r} is not a child")
        for rule in node.transitions:
            if rule.to not in tree.by_id or rule.to == ROOT_STATE:
                raise ConfigError(f"{where}: transition to unknown state {rule.to!r}")
            _check_condition(rule.guard, spec, where)
        if node.timeout_to is not None and node.timeout_to not in tree.by_id:
            raise ConfigError(f"{where}: timeout_to references unknown state {node.timeout_to!r}")
        if node.max_turns is not None:
            if node.max_turns < 1:
                raise ConfigError(f"{where}: max_turns must be positive")
            if node.timeout_to is None and tree.fallback is None:
                raise ConfigError(f"{where}: max_turns is set but no timeout_to or fallback state exists")
        for tool_id, cond in node.tool_conditions.items():
            if tool_id not in spec.tools:
                raise ConfigError(f"{where}: unknown tool {tool_id!r}")
            _check_condition(cond, spec, where)
        _check_actions(node.on_enter, spec, where)
        _check_actions(node.on_exit, spec, where)
        check_layer(node.config, spec, where)

    if tree.initial not in tree.by_id or tree.initial == ROOT_STATE:
        raise ConfigError(f"Initial state {tree.initial!r} does not exist")
    if tree.fallback is not None and tree.fallback not in tree.by_id:
        raise ConfigError(f"Fallback state {tree.fallback!r} does not exist")


def validate_agent_spec(spec: AgentSpec) -> None:
    """Reject any dangling reference or malformed schema. Raises ConfigError."""
    if not spec.name:
        raise ConfigError("Agent spec needs a name")

    for alias, llm in spec.llms.items():
        if alias != llm.alias:
            raise ConfigError(f"LLM alias key {alias!r} does not match {llm.alias!r}")

    check_layer(spec.config, spec, "agent")

    for tool in spec.tools.values():
        where = f"tool {tool.id!r}"
        _check_schema(tool.parameters, where)
        _check_condition(tool.condition, spec, where)
        if tool.policy.rate_limit_calls is not None and tool.policy.rate_limit_calls < 1:
            raise ConfigError(f"{where}: rate limit must allow at least one call")

    for skill in spec.skills.values():
        where = f"skill {skill.id!r}"
        _check_schema(skill.parameters, where)
        _check_condition(skill.condition, spec, where)
        check_layer(skill.config, spec, where)
        for step in skill.steps:
            if step.kind == "tool" and step.tool not in spec.tools:
                raise ConfigError(f"{where}: step references unknown tool {step.tool!r}")
            if step.kind == "prompt" and not step.prompt:
                raise ConfigError(f"{where}: prompt step needs 'prompt'")

    for tool_id in spec.approval.tools:
        if tool_id not in spec.tools:
            raise ConfigError(f"approval: unknown tool {tool_id!r}")
    for rule in spec.approval.rules:
        if rule.tool is not None and rule.tool not in spec.tools:
            raise ConfigError(f"approval rule {rule.name!r}: unknown tool {rule.tool!r}")

    if spec.states is not None:
        _check_state_tree(spec.states, spec)
        for state_id in spec.approval.states:
            if state_id not in spec.states:
                raise ConfigError(f"approval: unknown state {state_id!r}")
    elif spec.approval.states:
        raise ConfigError("approval: states listed but the agent has no state machine")

    names = [s.name for s in spec.context_sources]
    if len(set(names)) != len(names):
        raise ConfigError("Duplicate context source names")
