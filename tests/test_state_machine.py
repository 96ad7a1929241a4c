from __future__ import annotations

import asyncio
import copy

from agent_runtime.conditions import EvaluationContext
from agent_runtime.models import Session
from agent_runtime.spec import EffectiveConfig
from agent_runtime.state_machine import ACTION_FAILED_FLAG

from tests.fakes import ControlledTool, CountingJudge, build_pipeline

LOG: list = []

SPEC = {
    "name": "flow",
    "tools": [
        {"id": "enter_a"},
        {"id": "exit_a"},
        {"id": "enter_a1"},
        {"id": "exit_a1"},
        {"id": "enter_b"},
        {"id": "broken"},
    ],
    "states": {
        "initial": "a",
        "fallback": "b",
        "global_transitions": [{"to": "b", "when": "user wants b"}],
        "states": {
            "a": {
                "initial": "a1",
                "on_enter": [{"tool": "enter_a"}],
                "on_exit": [{"tool": "exit_a"}],
                "states": {
                    "a1": {
                        "on_enter": [{"tool": "enter_a1"}],
                        "on_exit": [{"tool": "exit_a1"}],
                        "max_turns": 2,
                        "transitions": [
                            {"to": "a2", "guard": {"context": {"go": "a2"}}},
                        ],
                    },
                    "a2": {},
                },
            },
            "b": {
                "on_enter": [{"tool": "enter_b"}, {"set_context": {"entered_b": True}}],
                "transitions": [{"to": "c", "guard": {"context": {"go": "c"}}}],
            },
            "c": {"on_enter": [{"set_context": {"in_c": True}}, {"tool": "broken"}]},
        },
    },
}


def _pipeline(judge=None):
    LOG.clear()
    tools = {name: ControlledTool(name, log=LOG) for name in ("enter_a", "exit_a", "enter_a1", "exit_a1", "enter_b")}
    tools["broken"] = ControlledTool("broken", fail=RuntimeError("boom"), log=LOG)
    return build_pipeline(copy.deepcopy(SPEC), tools=tools, judge=judge or CountingJudge())


def _ctx(session: Session, **context) -> EvaluationContext:
    return EvaluationContext(
        context=dict(context),
        state=session.current_state,
        previous_state=session.previous_state,
        state_turns=session.state_turns,
    )


def _starts():
    return [entry.split(":", 1)[1] for entry in LOG if entry.startswith("start:")]


def test_initial_entry_runs_root_to_leaf():
    pipeline = _pipeline()
    session = Session(agent="flow")
    asyncio.run(pipeline.state_machine.enter_initial(session, EffectiveConfig()))
    assert session.current_state == "a.a1"
    assert _starts() == ["enter_a", "enter_a1"]


def test_exit_actions_run_leaf_up_then_entry_actions_down():
    pipeline = _pipeline()
    sm = pipeline.state_machine
    session = Session(agent="flow", current_state="a.a1")

    result = asyncio.run(sm.transition(session, "b", config=EffectiveConfig()))

    assert result.applied
    assert _starts() == ["exit_a1", "exit_a", "enter_b"]
    assert session.current_state == "b"
    assert session.previous_state == "a.a1"
    assert session.context["entered_b"] is True


def test_sibling_move_keeps_shared_ancestor():
    pipeline = _pipeline()
    session = Session(agent="flow", current_state="a.a1")
    asyncio.run(pipeline.state_machine.transition(session, "a.a2", config=EffectiveConfig()))
    assert _starts() == ["exit_a1"]
    assert session.current_state == "a.a2"


def test_deterministic_rules_short_circuit_semantic_ones():
    judge = CountingJudge({"user wants b": 1.0})
    pipeline = _pipeline(judge)
    sm = pipeline.state_machine
    session = Session(agent="flow", current_state="a.a1")

    rule = asyncio.run(sm.evaluate_auto_transitions(session, _ctx(session, go="a2"), EffectiveConfig()))
    assert rule.to == "a.a2"
    assert judge.calls == 0

    rule = asyncio.run(sm.evaluate_auto_transitions(session, _ctx(session), EffectiveConfig()))
    assert rule.to == "b"
    assert judge.questions == ["user wants b"]


def test_no_rule_for_the_current_state_itself():
    judge = CountingJudge({"user wants b": 1.0})
    pipeline = _pipeline(judge)
    session = Session(agent="flow", current_state="b")
    rule = asyncio.run(pipeline.state_machine.evaluate_auto_transitions(session, _ctx(session), EffectiveConfig()))
    assert rule is None
    assert judge.calls == 0


def test_turn_timeout_forces_fallback_exactly_once():
    pipeline = _pipeline()
    sm = pipeline.state_machine
    session = Session(agent="flow", current_state="a.a1")
    config = EffectiveConfig()

    assert asyncio.run(sm.advance(session, _ctx(session), config)) is None
    assert session.state_turns == 1
    result = asyncio.run(sm.advance(session, _ctx(session), config))
    assert result is not None and result.reason == "timeout"
    assert session.current_state == "b"

    # Coming back resets the stay; staying in b never times out.
    for _ in range(5):
        asyncio.run(sm.advance(session, _ctx(session), config))
    assert session.current_state == "b"


def test_enclosing_state_timeout_counts_turns_across_its_children():
    raw = copy.deepcopy(SPEC)
    parent = raw["states"]["states"]["a"]
    parent["max_turns"] = 3
    del parent["states"]["a1"]["max_turns"]
    tools = {name: ControlledTool(name) for name in ("enter_a", "exit_a", "enter_a1", "exit_a1", "enter_b")}
    pipeline = build_pipeline(raw, tools=tools, judge=CountingJudge())
    sm = pipeline.state_machine
    session = Session(agent="flow", current_state="a.a1")
    config = EffectiveConfig()

    moved = asyncio.run(sm.advance(session, _ctx(session, go="a2"), config))
    assert moved.to_state == "a.a2" and moved.reason == "rule"
    assert asyncio.run(sm.advance(session, _ctx(session), config)) is None
    assert session.node_turns == {"a": 2, "a.a2": 1}

    result = asyncio.run(sm.advance(session, _ctx(session), config))

    assert result.reason == "timeout"
    assert session.current_state == "b"
    assert session.timeout_fired == []
    assert session.node_turns == {}


def test_failed_entry_action_reverts_to_previous_state():
    pipeline = _pipeline()
    sm = pipeline.state_machine
    session = Session(agent="flow", current_state="b", context={"keep": 1})
    config = EffectiveConfig(action_retries=1)

    result = asyncio.run(sm.transition(session, "c", config=config))

    assert result.applied is False
    assert session.current_state == "b"
    assert session.context == {"keep": 1}
    assert session.flags[-1]["flag"] == ACTION_FAILED_FLAG
    assert _starts().count("broken") == 2


def test_transition_needing_approval_is_denied_on_timeout():
    raw = copy.deepcopy(SPEC)
    raw["approval"] = {"states": ["b"], "timeout_seconds": 0.01, "on_timeout": "reject"}
    tools = {name: ControlledTool(name) for name in ("enter_a", "exit_a", "enter_a1", "exit_a1", "enter_b", "broken")}
    pipeline = build_pipeline(raw, tools=tools)
    session = Session(agent="flow", current_state="a.a1")

    result = asyncio.run(pipeline.state_machine.transition(session, "b", config=EffectiveConfig()))

    assert result.applied is False
    assert session.current_state == "a.a1"
    assert session.approval_log[-1].status == "timed_out"
    assert session.pending_approvals == []
