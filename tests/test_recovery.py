from __future__ import annotations

import asyncio

import pytest

from agent_runtime.errors import ActionError, LLMError, LLMUnavailable
from agent_runtime.providers import ProviderRegistry
from agent_runtime.recovery import BackoffPolicy, ErrorRecoveryCoordinator
from agent_runtime.spec import EffectiveConfig

from tests.fakes import ScriptedProvider, fatal, transient

MESSAGES = [{"role": "user", "content": "hello"}]


class SleepRecorder:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _coordinator(**providers):
    sleep = SleepRecorder()
    events = []
    coordinator = ErrorRecoveryCoordinator(
        ProviderRegistry(providers),
        sleep=sleep,
        on_event=lambda kind, payload: events.append((kind, dict(payload))),
    )
    return coordinator, sleep, events


def test_primary_retries_then_falls_back_once():
    primary = ScriptedProvider([transient(), transient()])
    backup = ScriptedProvider(["from backup"])
    coordinator, sleep, events = _coordinator(default=primary, backup=backup)
    config = EffectiveConfig(max_retries=2, fallback_llms=["backup"])

    completion = asyncio.run(coordinator.complete(MESSAGES, config))

    assert completion.content == "from backup"
    assert completion.alias == "backup"
    assert len(primary.calls) == 2
    assert len(backup.calls) == 1
    # One backoff between the two primary attempts, none after switching.
    assert sleep.delays == [0.1]
    assert ("llm_fallback", {"from": "default", "to": "backup"}) in events


def test_non_retryable_errors_skip_to_the_next_alias():
    primary = ScriptedProvider([fatal()])
    backup = ScriptedProvider(["fine"])
    coordinator, sleep, _ = _coordinator(default=primary, backup=backup)

    completion = asyncio.run(coordinator.complete(MESSAGES, EffectiveConfig(max_retries=3, fallback_llms=["backup"])))

    assert completion.content == "fine"
    assert len(primary.calls) == 1
    assert sleep.delays == []


def test_every_alias_failing_raises_llm_unavailable():
    primary = ScriptedProvider([transient()] * 5)
    backup = ScriptedProvider([LLMError(LLMError.CONTENT_FILTERED, "blocked")])
    coordinator, _, _ = _coordinator(default=primary, backup=backup)

    with pytest.raises(LLMUnavailable) as excinfo:
        asyncio.run(coordinator.complete(MESSAGES, EffectiveConfig(max_retries=2, fallback_llms=["backup"])))

    failures = excinfo.value.details["failures"]
    assert [f["alias"] for f in failures] == ["default", "default", "backup"]
    assert failures[-1]["category"] == LLMError.CONTENT_FILTERED
    assert excinfo.value.status_code == 503


def test_zero_retries_still_makes_one_attempt():
    primary = ScriptedProvider([transient(), "second"])
    coordinator, _, _ = _coordinator(default=primary)
    with pytest.raises(LLMUnavailable):
        asyncio.run(coordinator.complete(MESSAGES, EffectiveConfig(max_retries=0)))
    assert len(primary.calls) == 1


def test_context_overflow_gets_one_retry_with_a_smaller_prompt():
    primary = ScriptedProvider([LLMError("context_overflow", "too long"), "short enough"])
    coordinator, _, _ = _coordinator(default=primary)
    long_messages = [{"role": "system", "content": "rules"}] + [{"role": "user", "content": "x"}] * 6

    completion = asyncio.run(
        coordinator.complete(long_messages, EffectiveConfig(max_retries=1), shrink=lambda msgs: msgs[:1] + msgs[-1:])
    )

    assert completion.content == "short enough"
    assert len(primary.calls[1]["messages"]) == 2


def test_backoff_curves():
    assert BackoffPolicy("fixed", 200).delay(3) == 0.2
    assert BackoffPolicy("linear", 100).delay(3) == pytest.approx(0.3)
    assert BackoffPolicy("exponential", 100, multiplier=2.0).delay(4) == pytest.approx(0.8)
    assert BackoffPolicy("exponential", 100, max_ms=500).delay(10) == 0.5


def test_run_action_retries_then_raises_action_error():
    calls = []

    async def flaky():
        calls.append(1)
        raise ValueError("nope")

    coordinator, _, _ = _coordinator(default=ScriptedProvider())
    with pytest.raises(ActionError) as excinfo:
        asyncio.run(coordinator.run_action(flaky, retries=2, description="tool:ping", state="s"))
    assert len(calls) == 3
    assert excinfo.value.state == "s"


def test_stream_falls_back_before_the_first_delta():
    primary = ScriptedProvider([transient()])
    backup = ScriptedProvider(["streamed"])
    coordinator, _, _ = _coordinator(default=primary, backup=backup)

    async def collect():
        return [d async for d in coordinator.stream(MESSAGES, EffectiveConfig(max_retries=1, fallback_llms=["backup"]))]

    assert asyncio.run(collect()) == ["streamed"]
