from __future__ import annotations

import asyncio
import json

from agent_runtime.pipeline import OUTPUT_REJECTED_FLAG, build_error_envelope, build_success_envelope
from agent_runtime.sessions import SessionLocks

from tests.fakes import ControlledTool, ScriptedProvider, build_pipeline, transient

PLAIN = {"name": "plain", "version": "2.0.0", "system_prompt": "You are terse."}

TOOLS = {
    "name": "tooling",
    "tools": [
        {"id": "lookup", "description": "find an order"},
        {"id": "ledger", "critical": True},
    ],
}

FLOW = {
    "name": "flow",
    "input": [{"detect": {"intents": {"order": ["order"]}}}],
    "states": {
        "initial": "greeting",
        "fallback": "greeting",
        "states": {
            "greeting": {
                "prompt": "Greet the user.",
                "transitions": [{"to": "handling", "guard": {"context": {"detected_intent": "order"}}}],
            },
            "handling": {"prompt": "Handle the order.", "on_enter": [{"set_context": {"stage": "handling"}}]},
        },
    },
}


def _call(tool, **arguments):
    return json.dumps({"tool": tool, "arguments": arguments})


def test_plain_turn_commits_memory_and_events():
    provider = ScriptedProvider(["Hi there."])
    pipeline = build_pipeline(PLAIN, provider)

    async def scenario():
        session = await pipeline.start_session()
        outcome = await pipeline.run_turn(session.id, "hello")
        return outcome, await pipeline.get_session(session.id), await pipeline.storage.events(session.id)

    outcome, stored, events = asyncio.run(scenario())

    assert outcome.status == "ok"
    assert outcome.content == "Hi there."
    assert outcome.meta["agent"] == "plain"
    assert outcome.meta["version"] == "2.0.0"
    assert outcome.meta["request_id"]
    assert [(e.role, e.content) for e in stored.memory.entries] == [("user", "hello"), ("assistant", "Hi there.")]
    assert stored.turn_counter == 1
    assert stored.version == 2
    assert provider.calls[0]["messages"][0] == {"role": "system", "content": "You are terse."}
    assert [e["kind"] for e in events] == ["session_started", "turn"]


def test_rejected_input_leaves_the_session_untouched():
    raw = dict(PLAIN, input=[{"validate": {"max_length": 5, "message": "Too long"}}])
    provider = ScriptedProvider()
    pipeline = build_pipeline(raw, provider)

    async def scenario():
        session = await pipeline.start_session()
        before = await pipeline.get_session(session.id)
        outcome = await pipeline.run_turn(session.id, "this is far too long")
        return before, outcome, await pipeline.get_session(session.id)

    before, outcome, after = asyncio.run(scenario())

    assert outcome.status == "input_rejected"
    assert outcome.content == "Too long"
    assert outcome.error["code"] == "input_rejected"
    assert after == before
    assert provider.calls == []


def test_tool_loop_reports_observations():
    lookup = ControlledTool("lookup", result={"status": "shipped"})
    provider = ScriptedProvider([_call("lookup", order="123"), "It shipped."])
    pipeline = build_pipeline(TOOLS, provider, tools={"lookup": lookup, "ledger": ControlledTool("ledger")})

    async def scenario():
        session = await pipeline.start_session()
        outcome = await pipeline.run_turn(session.id, "where is 123?")
        return outcome, await pipeline.get_session(session.id)

    outcome, stored = asyncio.run(scenario())

    assert outcome.content == "It shipped."
    assert lookup.calls == [{"order": "123"}]
    assert outcome.tool_results[0]["tool"] == "lookup"
    assert outcome.tool_results[0]["result"] == {"status": "shipped"}
    assert [e.role for e in stored.memory.entries] == ["user", "tool", "assistant"]


def test_critical_tool_failure_aborts_without_committing():
    provider = ScriptedProvider([_call("ledger"), "never used"])
    pipeline = build_pipeline(
        TOOLS,
        provider,
        tools={"lookup": ControlledTool("lookup"), "ledger": ControlledTool("ledger", fail=RuntimeError("db down"))},
    )

    async def scenario():
        session = await pipeline.start_session()
        before = await pipeline.get_session(session.id)
        outcome = await pipeline.run_turn(session.id, "post it")
        return before, outcome, await pipeline.get_session(session.id)

    before, outcome, after = asyncio.run(scenario())

    assert outcome.status == "error"
    assert outcome.content is None
    assert outcome.error["code"] == "critical_tool_failure"
    assert after == before


def test_llm_outage_is_a_structured_error():
    provider = ScriptedProvider([transient()] * 10)
    pipeline = build_pipeline(PLAIN, provider)

    async def scenario():
        session = await pipeline.start_session()
        return await pipeline.run_turn(session.id, "hello")

    outcome = asyncio.run(scenario())
    assert outcome.status == "error"
    assert outcome.error["code"] == "llm_unavailable"
    assert outcome.content is None


def test_cancelled_turn_commits_nothing():
    provider = ScriptedProvider()
    pipeline = build_pipeline(PLAIN, provider)

    async def scenario():
        session = await pipeline.start_session()
        cancel = asyncio.Event()
        cancel.set()
        outcome = await pipeline.run_turn(session.id, "hello", cancel=cancel)
        return outcome, await pipeline.get_session(session.id)

    outcome, stored = asyncio.run(scenario())

    assert outcome.status == "cancelled"
    assert outcome.error["details"]["phase"] == "input_processing"
    assert stored.memory.entries == []
    assert stored.turn_counter == 0
    assert provider.calls == []


def test_cancel_reaches_a_running_turn():
    pipeline = None

    def slow_reply(messages, params):
        pipeline.cancel(session_id)
        return "too late"

    provider = ScriptedProvider([slow_reply])
    pipeline = build_pipeline(PLAIN, provider)

    async def scenario():
        nonlocal session_id
        session = await pipeline.start_session()
        session_id = session.id
        return await pipeline.run_turn(session.id, "hello")

    session_id = None
    outcome = asyncio.run(scenario())
    assert outcome.status == "cancelled"
    assert pipeline.cancel(session_id) is False


def test_busy_session_is_rejected_under_the_reject_policy():
    pipeline = build_pipeline(PLAIN, locks=SessionLocks("reject"))

    async def scenario():
        session = await pipeline.start_session()
        async with pipeline.locks.hold(session.id):
            return await pipeline.run_turn(session.id, "hello")

    outcome = asyncio.run(scenario())
    assert outcome.error["code"] == "session_busy"


def test_concurrent_turns_on_one_session_run_one_after_the_other():
    log = []

    def reply(messages, params):
        log.append(messages[-1]["content"])
        return "ok"

    provider = ScriptedProvider([reply, reply])
    pipeline = build_pipeline(PLAIN, provider)

    async def scenario():
        session = await pipeline.start_session()
        await asyncio.gather(pipeline.run_turn(session.id, "one"), pipeline.run_turn(session.id, "two"))
        return await pipeline.get_session(session.id)

    stored = asyncio.run(scenario())
    assert stored.turn_counter == 2
    assert stored.version == 3
    assert len(stored.memory.entries) == 4
    assert sorted(log) == ["one", "two"]


def test_unknown_session_is_not_found():
    pipeline = build_pipeline(PLAIN)
    outcome = asyncio.run(pipeline.run_turn("nope", "hello"))
    assert outcome.status == "error"
    assert outcome.error["code"] == "session_not_found"


def test_session_locks_are_released_once_idle():
    pipeline = build_pipeline(PLAIN, ScriptedProvider(default="fine"))

    async def scenario():
        for i in range(5):
            await pipeline.run_turn(f"missing-{i}", "hello")
        session = await pipeline.start_session()
        await asyncio.gather(*(pipeline.run_turn(session.id, str(i)) for i in range(3)))
        return await pipeline.get_session(session.id)

    stored = asyncio.run(scenario())
    assert stored.turn_counter == 3
    assert pipeline.locks.tracked() == 0


def test_state_transition_happens_after_the_response():
    provider = ScriptedProvider(["Hello!", "Looking into it."])
    pipeline = build_pipeline(FLOW, provider)

    async def scenario():
        session = await pipeline.start_session()
        first = await pipeline.run_turn(session.id, "hi")
        second = await pipeline.run_turn(session.id, "about my order")
        third = await pipeline.run_turn(session.id, "thanks")
        return first, second, third, await pipeline.get_session(session.id)

    first, second, third, stored = asyncio.run(scenario())

    assert first.state == "greeting"
    # The turn that triggers the move is answered by the old state's prompt.
    assert second.state == "handling"
    assert second.meta["transition"] == {"from": "greeting", "to": "handling", "applied": True, "reason": "rule"}
    assert provider.calls[1]["messages"][0]["content"] == "Greet the user."
    assert provider.calls[2]["messages"][0]["content"] == "Handle the order."
    assert stored.context["stage"] == "handling"
    assert stored.context["detected_intent"] == "order"


def test_output_rejection_replaces_the_reply_and_flags_it():
    raw = dict(PLAIN, output=[{"validate": {"pattern": "^[^@]*$", "message": "Redacted reply."}}])
    pipeline = build_pipeline(raw, ScriptedProvider(["write to boss@example.com"]))

    async def scenario():
        session = await pipeline.start_session()
        return await pipeline.run_turn(session.id, "who do I email?")

    outcome = asyncio.run(scenario())
    assert outcome.status == "ok"
    assert outcome.content == "Redacted reply."
    assert [f["flag"] for f in outcome.flags] == [OUTPUT_REJECTED_FLAG]


def test_per_turn_overrides_apply_to_that_turn_only():
    provider = ScriptedProvider(["a", "b"])
    pipeline = build_pipeline(PLAIN, provider)

    async def scenario():
        session = await pipeline.start_session()
        await pipeline.run_turn(session.id, "one", overrides={"temperature": 0.1})
        await pipeline.run_turn(session.id, "two")
        bad = await pipeline.run_turn(session.id, "three", overrides={"not_a_setting": 1})
        return bad

    bad = asyncio.run(scenario())
    assert provider.calls[0]["params"]["temperature"] == 0.1
    assert provider.calls[1]["params"]["temperature"] is None
    assert bad.status == "input_rejected"


def test_envelopes():
    pipeline = build_pipeline(PLAIN, ScriptedProvider(["fine"]))

    async def scenario():
        session = await pipeline.start_session()
        return await pipeline.run_turn(session.id, "hello", request_id="req-1")

    outcome = asyncio.run(scenario())
    success = build_success_envelope(outcome)
    assert success["output"]["content"] == "fine"
    assert success["meta"]["request_id"] == "req-1"
    assert {"request_id", "agent", "version", "latency_ms", "turn"} <= set(success["meta"])

    error = build_error_envelope(request_id="req-2", spec=pipeline.spec, code="session_busy", message="busy")
    assert error == {
        "error": {"code": "session_busy", "message": "busy", "details": None},
        "meta": {"request_id": "req-2", "agent": "plain", "version": "2.0.0"},
    }


def test_overrides_naming_unknown_skills_are_rejected():
    spec = {
        "name": "shop",
        "skills": [{"id": "refund", "triggers": ["refund"], "steps": [{"prompt": "Handle the refund."}]}],
    }
    provider = ScriptedProvider(["unused"])
    pipeline = build_pipeline(spec, provider)

    async def scenario():
        session = await pipeline.start_session()
        outcome = await pipeline.run_turn(session.id, "hello there", overrides={"default_skill": "nope"})
        return outcome, await pipeline.get_session(session.id)

    outcome, stored = asyncio.run(scenario())

    assert outcome.status == "input_rejected"
    assert outcome.error["code"] == "input_rejected"
    assert "nope" in outcome.error["details"]["reason"]
    assert provider.calls == []
    assert stored.turn_counter == 0


def test_unexpected_failures_become_internal_errors():
    provider = ScriptedProvider([RuntimeError("response had no choices")])
    pipeline = build_pipeline(PLAIN, provider)
    errors = []
    pipeline.hooks.register(lambda event: errors.append(event.payload) if event.kind == "error" else None)

    async def scenario():
        session = await pipeline.start_session()
        outcome = await pipeline.run_turn(session.id, "hello")
        await pipeline.hooks.drain()
        # The lock was released, so the next turn runs normally.
        follow_up = await pipeline.run_turn(session.id, "again")
        return outcome, follow_up, await pipeline.get_session(session.id)

    outcome, follow_up, stored = asyncio.run(scenario())

    assert outcome.status == "error"
    assert outcome.error == {"code": "internal_error", "message": "Internal error", "details": {"error": "RuntimeError"}}
    assert outcome.meta["request_id"]
    assert errors and errors[0]["code"] == "internal_error"
    assert follow_up.status == "ok"
    assert stored.turn_counter == 1


def _stream(pipeline, text, **kwargs):
    async def scenario():
        session = await pipeline.start_session()
        events = [event async for event in pipeline.stream_turn(session.id, text, **kwargs)]
        return events, await pipeline.get_session(session.id)

    return asyncio.run(scenario())


def test_plain_turn_streams_deltas_before_the_outcome():
    provider = ScriptedProvider(["It shipped on Monday."])
    events, session = _stream(build_pipeline(PLAIN, provider), "where is it?")

    kinds = [kind for kind, _ in events]
    assert kinds == ["delta", "delta", "delta", "delta", "outcome"]
    assert "".join(value for kind, value in events if kind == "delta") == "It shipped on Monday."
    outcome = events[-1][1]
    assert outcome.status == "ok"
    assert outcome.content == "It shipped on Monday."
    assert [e.content for e in session.memory.entries] == ["where is it?", "It shipped on Monday."]


def test_processed_replies_arrive_as_one_final_delta():
    raw = dict(PLAIN, output=[{"validate": {"pattern": "^[^@]*$", "message": "Redacted reply."}}])
    provider = ScriptedProvider(["mail me at a@b.c"])
    events, _ = _stream(build_pipeline(raw, provider), "contact?")

    # The raw reply never leaks ahead of output processing.
    assert events[0] == ("delta", "Redacted reply.")
    assert [kind for kind, _ in events] == ["delta", "outcome"]
    assert OUTPUT_REJECTED_FLAG in [f["flag"] for f in events[-1][1].flags]


def test_failed_streamed_turn_ends_with_only_the_error():
    provider = ScriptedProvider([transient()] * 10)
    events, session = _stream(build_pipeline(PLAIN, provider), "hello")

    assert [kind for kind, _ in events] == ["outcome"]
    assert events[0][1].error["code"] == "llm_unavailable"
    assert session.turn_counter == 0
