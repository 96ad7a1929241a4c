from __future__ import annotations

import asyncio

import pytest

from agent_runtime.approval import AutoApproveHandler, CallbackHandler, PendingApprovalHandler, RejectAllHandler
from agent_runtime.conditions import EvaluationContext
from agent_runtime.errors import CriticalToolFailure, ToolError
from agent_runtime.models import Session
from agent_runtime.rate_limit import SlidingWindowRateLimiter
from agent_runtime.spec import EffectiveConfig
from agent_runtime.tools import FunctionTool, ToolCall

from tests.fakes import ControlledTool, CountingJudge, ScriptedProvider, build_pipeline


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _spec(*tools, approval=None):
    raw = {"name": "tools", "tools": list(tools)}
    if approval is not None:
        raw["approval"] = approval
    return raw


def _execute(pipeline, calls, config=None, session=None):
    session = session or Session(agent="tools")
    return asyncio.run(pipeline.executor.execute(calls, session=session, config=config or EffectiveConfig()))


def test_results_come_back_in_declaration_order():
    log = []
    tools = {
        "slow": ControlledTool("slow", result="s", delay=0.05, log=log),
        "fast": ControlledTool("fast", result="f", delay=0.0, log=log),
    }
    pipeline = build_pipeline(_spec({"id": "slow"}, {"id": "fast"}), tools=tools)

    observations = _execute(pipeline, [ToolCall("slow"), ToolCall("fast"), ToolCall("slow")])

    assert [o.result for o in observations] == ["s", "f", "s"]
    # The fast call finished while the slow ones were still running.
    assert log.index("end:fast") < log.index("end:slow")


def test_concurrency_is_bounded_and_unsafe_tools_never_overlap():
    shared = ControlledTool("shared", delay=0.02)
    solo = ControlledTool("solo", delay=0.02)
    pipeline = build_pipeline(
        _spec({"id": "shared"}, {"id": "solo", "concurrency_safe": False}),
        tools={"shared": shared, "solo": solo},
    )

    _execute(pipeline, [ToolCall("shared") for _ in range(6)], EffectiveConfig(max_concurrent_tools=2))
    _execute(pipeline, [ToolCall("solo") for _ in range(3)], EffectiveConfig(max_concurrent_tools=4))

    assert shared.max_running == 2
    assert solo.max_running == 1


def test_rate_limited_second_call_never_reaches_the_tool():
    clock = FakeClock()
    tool = ControlledTool("search")
    pipeline = build_pipeline(
        _spec({"id": "search", "policy": {"rate_limit": {"calls": 1, "window_seconds": 10}}}),
        tools={"search": tool},
        limiter=SlidingWindowRateLimiter({}, clock=clock),
    )

    first = _execute(pipeline, [ToolCall("search")])[0]
    clock.now = 1.5
    second = _execute(pipeline, [ToolCall("search")])[0]

    assert first.ok
    assert second.ok is False
    assert second.error_kind == ToolError.POLICY_VIOLATION
    assert second.error == "rate limit exceeded for search, retry in 8.5s"
    assert len(tool.calls) == 1

    clock.now = 11.0
    assert _execute(pipeline, [ToolCall("search")])[0].ok
    assert len(tool.calls) == 2


def test_domain_path_and_schema_violations_are_refused_before_dispatch():
    fetch = ControlledTool("fetch")
    read = ControlledTool("read")
    pipeline = build_pipeline(
        _spec(
            {
                "id": "fetch",
                "parameters": {"type": "object", "properties": {"url": {"type": "string"}}, "required": ["url"]},
                "policy": {"allowed_domains": ["example.com"], "blocked_domains": ["bad.example.com"]},
            },
            {"id": "read", "policy": {"allowed_paths": ["/srv/data"]}},
        ),
        tools={"fetch": fetch, "read": read},
    )

    observations = _execute(
        pipeline,
        [
            ToolCall("fetch", {"url": "https://api.example.com/x"}),
            ToolCall("fetch", {"url": "https://bad.example.com/x"}),
            ToolCall("fetch", {"url": "https://evil.org"}),
            ToolCall("fetch", {}),
            ToolCall("read", {"path": "/srv/data/../../etc/passwd"}),
            ToolCall("read", {"path": "/srv/data/report.csv"}),
            ToolCall("unknown"),
        ],
    )

    assert [o.ok for o in observations] == [True, False, False, False, False, True, False]
    assert observations[3].error_kind == ToolError.EXECUTION_FAILURE
    assert observations[4].error_kind == ToolError.POLICY_VIOLATION
    assert len(fetch.calls) == 1
    assert read.calls == [{"path": "/srv/data/report.csv"}]


def test_timeout_is_an_observation_unless_the_tool_is_critical():
    slow = ControlledTool("slow", delay=1.0)
    pipeline = build_pipeline(
        _spec(
            {"id": "slow", "policy": {"timeout_seconds": 0.01}},
            {"id": "vital", "critical": True, "policy": {"timeout_seconds": 0.01}},
        ),
        tools={"slow": slow, "vital": ControlledTool("vital", delay=1.0)},
    )

    obs = _execute(pipeline, [ToolCall("slow")])[0]
    assert obs.ok is False
    assert obs.error_kind == ToolError.TIMEOUT

    with pytest.raises(CriticalToolFailure):
        _execute(pipeline, [ToolCall("vital")])


def test_exceptions_from_tools_become_execution_failures():
    pipeline = build_pipeline(
        _spec({"id": "flaky"}),
        tools={"flaky": ControlledTool("flaky", fail=ValueError("bad input"))},
    )
    obs = _execute(pipeline, [ToolCall("flaky")])[0]
    assert obs.ok is False
    assert obs.error_kind == ToolError.EXECUTION_FAILURE
    assert "bad input" in obs.as_message()


def test_function_tool_wraps_sync_and_async_callables():
    def add(a: int, b: int) -> int:
        return a + b

    async def shout(text: str) -> str:
        return text.upper()

    pipeline = build_pipeline(
        _spec({"id": "add"}, {"id": "shout"}),
        tools={"add": FunctionTool(add), "shout": FunctionTool(shout)},
    )
    observations = _execute(pipeline, [ToolCall("add", {"a": 2, "b": 3}), ToolCall("shout", {"text": "hi"})])
    assert [o.result for o in observations] == [5, "HI"]


def test_approval_rules_gate_calls_and_record_the_decision():
    refund = ControlledTool("refund")
    seen = []

    def decide(request):
        seen.append(request.message)
        return request.subject["arguments"]["amount"] < 5000

    pipeline = build_pipeline(
        _spec(
            {"id": "refund"},
            approval={"conditions": [{"name": "large", "tool": "refund", "match": {"amount": {"gt": 1000}}}]},
        ),
        tools={"refund": refund},
        approval_handler=CallbackHandler(decide),
    )
    session = Session(agent="tools")

    observations = _execute(
        pipeline,
        [ToolCall("refund", {"amount": 10}), ToolCall("refund", {"amount": 2000}), ToolCall("refund", {"amount": 9000})],
        session=session,
    )

    assert [o.ok for o in observations] == [True, True, False]
    assert observations[0].approval is None
    assert observations[1].approval == "approved"
    assert observations[2].error_kind == "approval_denied"
    assert len(refund.calls) == 2
    assert sorted(r.status for r in session.approval_log) == ["approved", "rejected"]
    assert session.pending_approvals == []
    assert len(seen) == 2


def test_approval_timeout_resolves_to_default_outcome_once():
    class SlowHandler:
        preferred_language = None

        async def submit(self, request):
            await asyncio.sleep(1.0)
            raise AssertionError("never reached")

    for default, expected_ok in (("reject", False), ("approve", True)):
        tool = ControlledTool("wire")
        pipeline = build_pipeline(
            _spec({"id": "wire"}, approval={"tools": ["wire"], "timeout_seconds": 0.01, "on_timeout": default}),
            tools={"wire": tool},
            approval_handler=SlowHandler(),
        )
        session = Session(agent="tools")
        obs = _execute(pipeline, [ToolCall("wire")], session=session)[0]
        assert obs.ok is expected_ok
        assert obs.approval == "timed_out"
        assert [r.status for r in session.approval_log] == ["timed_out"]


def test_confirmation_message_is_localized():
    captured = []

    class Recorder:
        preferred_language = "de"

        async def submit(self, request):
            captured.append(request.message)
            return await AutoApproveHandler().submit(request)

    pipeline = build_pipeline(
        _spec(
            {
                "id": "pay",
                "policy": {
                    "require_confirmation": True,
                    "confirmation_message": {"en": "Pay {args}?", "de": "Zahlen {args}?"},
                },
            }
        ),
        tools={"pay": ControlledTool("pay")},
        approval_handler=Recorder(),
    )
    _execute(pipeline, [ToolCall("pay", {"amount": 1})])
    assert captured == ['Zahlen {"amount": 1}?']


def test_reject_all_handler_blocks_every_gated_call():
    tool = ControlledTool("wire")
    pipeline = build_pipeline(
        _spec({"id": "wire"}, approval={"tools": ["wire"]}),
        tools={"wire": tool},
        approval_handler=RejectAllHandler(),
    )
    assert _execute(pipeline, [ToolCall("wire")])[0].ok is False
    assert tool.calls == []


def test_available_tools_check_static_conditions_before_the_judge():
    judge = CountingJudge({"user asked about weather": 0.9})
    pipeline = build_pipeline(
        _spec(
            {"id": "admin", "condition": {"context": {"role": "admin"}}},
            {"id": "weather", "condition": {"semantic": "user asked about weather"}},
            {"id": "both", "condition": {"all": [{"context": {"role": "admin"}}, {"semantic": "user asked about weather"}]}},
            {"id": "off", "policy": {"enabled": False}},
        ),
        tools={name: ControlledTool(name) for name in ("admin", "weather", "both", "off")},
        judge=judge,
    )
    ctx = EvaluationContext(context={"role": "guest"})
    available = asyncio.run(pipeline.executor.select_available_tools(EffectiveConfig(), ctx))
    assert [t.id for t in available] == ["weather"]
    assert judge.questions == ["user asked about weather"]


def test_parked_approval_waits_for_an_outside_decision():
    handler = PendingApprovalHandler()
    wire = ControlledTool("wire")
    provider = ScriptedProvider(['{"tool": "wire", "arguments": {"amount": 10}}', "Sent."])
    pipeline = build_pipeline(
        _spec({"id": "wire"}, approval={"tools": ["wire"], "timeout_seconds": 5}),
        provider,
        tools={"wire": wire},
        approval_handler=handler,
    )

    async def scenario():
        session = await pipeline.start_session()
        turn = asyncio.create_task(pipeline.run_turn(session.id, "send it"))
        while not handler.pending(session.id):
            await asyncio.sleep(0.005)
        parked = handler.pending(session.id)
        assert handler.pending("someone-else") == []
        assert handler.resolve(parked[0].id, True, "looks fine")
        assert handler.resolve(parked[0].id, False) is False
        return parked, await turn, await pipeline.get_session(session.id)

    parked, outcome, stored = asyncio.run(scenario())

    assert parked[0].subject["tool"] == "wire"
    assert outcome.content == "Sent."
    assert wire.calls == [{"amount": 10}]
    assert [(r.status, r.reason) for r in stored.approval_log] == [("approved", "looks fine")]
    assert stored.pending_approvals == []


def test_failed_calls_are_retried_up_to_the_tool_budget():
    class FlakyOnce(ControlledTool):
        async def run(self, arguments, *, cancel):
            if not self.calls:
                self.calls.append(dict(arguments))
                raise RuntimeError("warming up")
            return await super().run(arguments, cancel=cancel)

    flaky = FlakyOnce("flaky", result="done")
    broken = ControlledTool("broken", fail=RuntimeError("down"))
    pipeline = build_pipeline(
        _spec({"id": "flaky", "policy": {"max_retries": 1}}, {"id": "broken", "policy": {"max_retries": 2}}),
        tools={"flaky": flaky, "broken": broken},
    )

    observations = _execute(pipeline, [ToolCall("flaky"), ToolCall("broken")])

    assert observations[0].ok and observations[0].result == "done"
    assert len(flaky.calls) == 2
    assert observations[1].ok is False
    assert len(broken.calls) == 3
