"""
Hierarchical state machine over an AgentSpec's state arena.

Transition rules are collected from the current leaf up to the synthetic
root, so child rules come before inherited ones and each node's rules keep
their declared order. Deterministic rules are all tried before any rule
that needs the router model; within a rule the guard is checked before the
`when` criterion. The first rule that holds wins.

Moving between states runs exit actions from the old leaf up to (not
including) the lowest common ancestor, then entry actions from below that
ancestor down to the new leaf. When an action still fails after its
retries the session is put back exactly as it was before the move and a
`state_action_failed` flag is recorded.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .approval import ApprovalGate
from .conditions import EvaluationContext, SemanticCondition, SemanticJudge, evaluate_condition
from .errors import ActionError
from .hooks import HookBus
from .models import Session
from .recovery import ErrorRecoveryCoordinator
from .skills import fill_placeholders
from .spec import Action, AgentSpec, EffectiveConfig, StateNode, StateTree, TransitionRule
from .tools import ToolCall, ToolExecutor

logger = logging.getLogger("agent-runtime")

ACTION_FAILED_FLAG = "state_action_failed"

SkillAction = Callable[[str, Session, EffectiveConfig], Awaitable[Any]]


@dataclass
class TransitionResult:
    from_state: str
    to_state: str
    reason: str  # "rule" | "timeout"
    applied: bool = True
    error: Optional[str] = None


class StateMachine:
    def __init__(
        self,
        spec: AgentSpec,
        *,
        coordinator: ErrorRecoveryCoordinator,
        executor: Optional[ToolExecutor] = None,
        approval: Optional[ApprovalGate] = None,
        judge: Optional[SemanticJudge] = None,
        hooks: Optional[HookBus] = None,
        skill_action: Optional[SkillAction] = None,
    ) -> None:
        if spec.states is None:
            raise ValueError("agent has no state machine")
        self.spec = spec
        self.tree: StateTree = spec.states
        self.coordinator = coordinator
        self.executor = executor
        self.approval = approval
        self.judge = judge
        self.hooks = hooks or HookBus()
        self.skill_action = skill_action

    def initial_state(self) -> str:
        return self.tree.leaf(self.tree.initial)

    def chain(self, session: Session) -> List[StateNode]:
        return self.tree.chain(session.current_state or self.initial_state())

    def _rules(self, state_id: str) -> List[Tuple[StateNode, TransitionRule]]:
        """Leaf first, then each ancestor up to the root; declared order within a node."""
        out = []
        for node in reversed(self.tree.chain(state_id)):
            for rule in node.transitions:
                out.append((node, rule))
        return out

    async def evaluate_auto_transitions(
        self,
        session: Session,
        ctx: EvaluationContext,
        config: EffectiveConfig,
    ) -> Optional[TransitionRule]:
        """Return the first rule that fires for the current state, or None."""
        current = session.current_state or self.initial_state()
        rules = [(node, rule) for node, rule in self._rules(current) if self.tree.leaf(rule.to) != current]

        for node, rule in rules:
            if rule.deterministic and await evaluate_condition(rule.guard, ctx, None):
                logger.debug("transition rule matched state=%s to=%s kind=deterministic", node.id, rule.to)
                return rule

        for node, rule in rules:
            if rule.deterministic:
                continue
            if rule.guard is not None and not await evaluate_condition(rule.guard, ctx, self.judge):
                continue
            if rule.when:
                criterion = SemanticCondition(when=rule.when, llm=config.router_llm)
                if not await criterion.evaluate(ctx, self.judge):
                    continue
            logger.debug("transition rule matched state=%s to=%s kind=semantic", node.id, rule.to)
            return rule
        return None

    async def transition(
        self,
        session: Session,
        target: str,
        *,
        config: EffectiveConfig,
        reason: str = "rule",
    ) -> TransitionResult:
        current = session.current_state or self.initial_state()
        target_leaf = self.tree.leaf(target)

        if self.approval is not None:
            message = self.approval.transition_requirement(target) or self.approval.transition_requirement(target_leaf)
            if message is not None:
                request = await self.approval.request(
                    session,
                    subject_kind="transition",
                    subject={"from": current, "to": target_leaf},
                    message=message,
                )
                if not request.approved:
                    logger.info(
                        "transition denied session=%s from=%s to=%s status=%s",
                        session.id,
                        current,
                        target_leaf,
                        request.status,
                    )
                    return TransitionResult(current, target_leaf, reason, applied=False, error=f"approval {request.status}")

        snapshot = (
            session.current_state,
            session.previous_state,
            session.state_turns,
            dict(session.node_turns),
            list(session.timeout_fired),
            copy.deepcopy(session.context),
        )
        old_chain = self.tree.user_chain(current)
        new_chain = self.tree.user_chain(target_leaf)
        common = 0
        while common < min(len(old_chain), len(new_chain)) and old_chain[common].id == new_chain[common].id:
            common += 1
        exiting = list(reversed(old_chain[common:]))
        entering = new_chain[common:]

        try:
            for node in exiting:
                for action in node.on_exit:
                    await self._run(action, node, session, config)
            session.previous_state = current
            session.current_state = target_leaf
            session.state_turns = 0
            kept = {n.id for n in new_chain[:common]}
            session.node_turns = {n.id: session.node_turns.get(n.id, 0) for n in new_chain[:common]}
            session.timeout_fired = [s for s in session.timeout_fired if s in kept]
            for node in entering:
                for action in node.on_enter:
                    await self._run(action, node, session, config)
        except ActionError as exc:
            (
                session.current_state,
                session.previous_state,
                session.state_turns,
                session.node_turns,
                session.timeout_fired,
                session.context,
            ) = snapshot
            session.flags.append(
                {
                    "flag": ACTION_FAILED_FLAG,
                    "state": exc.state,
                    "action": exc.action,
                    "message": str(exc),
                    "ts": time.time(),
                }
            )
            logger.warning(
                "state transition reverted session=%s from=%s to=%s error=%s",
                session.id,
                current,
                target_leaf,
                exc,
            )
            return TransitionResult(current, target_leaf, reason, applied=False, error=str(exc))

        self.hooks.emit(
            "state_transition",
            {"from": current, "to": target_leaf, "reason": reason},
            session_id=session.id,
        )
        logger.info("state transition session=%s from=%s to=%s reason=%s", session.id, current, target_leaf, reason)
        return TransitionResult(current, target_leaf, reason)

    async def enter_initial(self, session: Session, config: EffectiveConfig) -> None:
        """Place a new session in the initial leaf and run its entry actions root-to-leaf."""
        leaf = self.initial_state()
        session.current_state = leaf
        session.state_turns = 0
        session.node_turns = {}
        try:
            for node in self.tree.user_chain(leaf):
                for action in node.on_enter:
                    await self._run(action, node, session, config)
        except ActionError as exc:
            session.flags.append(
                {"flag": ACTION_FAILED_FLAG, "state": exc.state, "action": exc.action, "message": str(exc), "ts": time.time()}
            )
            logger.warning("initial entry action failed session=%s state=%s error=%s", session.id, leaf, exc)

    async def advance(self, session: Session, ctx: EvaluationContext, config: EffectiveConfig) -> Optional[TransitionResult]:
        """
        End-of-turn step: fire the first matching rule, otherwise count the
        turn and force the state's timeout once when its limit is reached.
        """
        rule = await self.evaluate_auto_transitions(session, ctx, config)
        if rule is not None:
            result = await self.transition(session, rule.to, config=config, reason="rule")
            if result.applied:
                # Enclosing states that were not left still count the turn.
                for node in self.tree.user_chain(session.current_state or self.initial_state()):
                    if node.id in session.node_turns:
                        session.node_turns[node.id] += 1
                return result

        session.state_turns += 1
        current = session.current_state or self.initial_state()
        chain = self.tree.user_chain(current)
        for node in chain:
            session.node_turns[node.id] = session.node_turns.get(node.id, 0) + 1

        # Leaf first; an enclosing state's limit counts every turn spent anywhere inside it.
        for node in reversed(chain):
            if node.max_turns is None or node.id in session.timeout_fired:
                continue
            if session.node_turns[node.id] < node.max_turns:
                continue
            session.timeout_fired.append(node.id)
            target = node.timeout_to or self.tree.fallback
            if target is None or self.tree.leaf(target) == current:
                return None
            logger.info(
                "state timeout session=%s state=%s turns=%s to=%s", session.id, node.id, session.node_turns[node.id], target
            )
            return await self.transition(session, target, config=config, reason="timeout")
        return None

    async def _run(self, action: Action, node: StateNode, session: Session, config: EffectiveConfig) -> None:
        description = f"{action.kind}:{action.target or action.store_as or 'inline'}"
        await self.coordinator.run_action(
            lambda: self._perform(action, node, session, config),
            retries=config.action_retries,
            description=description,
            state=node.id,
        )

    async def _perform(self, action: Action, node: StateNode, session: Session, config: EffectiveConfig) -> None:
        if action.kind == "set_context":
            session.context.update(
                fill_placeholders(dict(action.values), user_input="", context=session.context)
            )
            return

        if action.kind == "tool":
            if self.executor is None:
                raise ActionError("no tool executor configured", state=node.id, action=action.target)
            arguments = fill_placeholders(dict(action.arguments), user_input="", context=session.context)
            obs = (
                await self.executor.execute(
                    [ToolCall(tool=action.target or "", arguments=arguments)], session=session, config=config
                )
            )[0]
            if not obs.ok:
                raise ActionError(f"tool {action.target} failed: {obs.error}", state=node.id, action=action.target)
            result: Any = obs.result
        elif action.kind == "skill":
            if self.skill_action is None:
                raise ActionError("no skill runner configured", state=node.id, action=action.target)
            result = await self.skill_action(action.target or "", session, config)
        else:
            prompt = fill_placeholders(action.prompt or "", user_input="", context=session.context)
            completion = await self.coordinator.complete(
                [{"role": "system", "content": prompt}], config, alias=action.target or config.llm
            )
            result = completion.content

        if action.store_as:
            session.context[action.store_as] = result
