from __future__ import annotations

import asyncio

from agent_runtime.errors import LLMUnavailable
from agent_runtime.providers import ProviderRegistry
from agent_runtime.recovery import ErrorRecoveryCoordinator
from agent_runtime.reflection import REFLECTION_FAILED_FLAG, LLMGrader, Reflector
from agent_runtime.spec import EffectiveConfig

from tests.fakes import ScriptedGrader, ScriptedProvider, build_pipeline, no_sleep

CONFIG = EffectiveConfig(reflection_enabled=True, reflection_threshold=0.7, reflection_max_retries=2)


def _reflect(grader, config=CONFIG):
    drafts = iter(["second draft", "third draft", "fourth draft"])
    feedback_seen = []

    async def regenerate(feedback):
        feedback_seen.append(feedback)
        return next(drafts)

    result = asyncio.run(Reflector(grader).run("first draft", regenerate=regenerate, user_input="q", config=config))
    return result, feedback_seen


def test_good_first_draft_is_kept():
    grader = ScriptedGrader([0.9])
    result, feedback = _reflect(grader)
    assert result.content == "first draft"
    assert result.attempts == 1
    assert feedback == []


def test_regenerates_until_the_threshold_is_met():
    grader = ScriptedGrader([0.2, 0.8], feedback="cite the order number")
    result, feedback = _reflect(grader)
    assert result.content == "second draft"
    assert result.scores == [0.2, 0.8]
    assert feedback == ["cite the order number"]
    assert result.failed is False


def test_gives_up_after_max_retries_keeping_the_last_draft():
    grader = ScriptedGrader([0.1, 0.2, 0.3, 0.99])
    result, feedback = _reflect(grader)
    assert result.failed is True
    assert result.attempts == 3
    assert result.content == "third draft"
    assert grader.graded == ["first draft", "second draft", "third draft"]


def test_grader_outage_keeps_the_draft():
    class DownGrader:
        async def grade(self, response, **kwargs):
            raise LLMUnavailable("All LLM providers failed")

    result, _ = _reflect(DownGrader())
    assert result.content == "first draft"
    assert result.failed is False


def test_llm_grader_parses_json_and_tolerates_garbage():
    provider = ScriptedProvider(['{"score": 0.4, "feedback": "shorter"}', "not json"])
    grader = LLMGrader(ErrorRecoveryCoordinator(ProviderRegistry({"default": provider}), sleep=no_sleep))

    first = asyncio.run(grader.grade("r", user_input="q", criteria=["clear"], config=EffectiveConfig()))
    second = asyncio.run(grader.grade("r", user_input="q", criteria=["clear"], config=EffectiveConfig()))

    assert (first.score, first.feedback) == (0.4, "shorter")
    assert second.score == 1.0
    assert provider.calls[0]["params"]["json"] is True


def test_failed_reflection_is_flagged_on_the_turn():
    provider = ScriptedProvider(["draft one", "draft two"])
    pipeline = build_pipeline(
        {"name": "plain", "config": {"reflection_enabled": True, "reflection_max_retries": 1}},
        provider,
        grader=ScriptedGrader([0.1, 0.1]),
    )

    async def scenario():
        session = await pipeline.start_session()
        return await pipeline.run_turn(session.id, "hello")

    outcome = asyncio.run(scenario())

    assert outcome.status == "ok"
    assert outcome.content == "draft two"
    assert [f["flag"] for f in outcome.flags] == [REFLECTION_FAILED_FLAG]


def test_each_revision_builds_on_the_latest_draft():
    provider = ScriptedProvider(["draft one", "draft two", "draft three"])
    pipeline = build_pipeline(
        {"name": "plain", "config": {"reflection_enabled": True, "reflection_max_retries": 2}},
        provider,
        grader=ScriptedGrader([0.1, 0.1, 0.9]),
    )

    async def scenario():
        session = await pipeline.start_session()
        return await pipeline.run_turn(session.id, "hello")

    outcome = asyncio.run(scenario())

    assert outcome.content == "draft three"
    revised = [call["messages"][-2]["content"] for call in provider.calls[1:]]
    assert revised == ["draft one", "draft two"]
