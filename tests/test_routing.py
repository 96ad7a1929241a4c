from __future__ import annotations

import asyncio

from agent_runtime.conditions import EvaluationContext
from agent_runtime.routing import KeywordScorer, SkillRouter
from agent_runtime.loader import parse_agent_spec
from agent_runtime.spec import EffectiveConfig

from tests.fakes import FixedScorer, ScriptedProvider, build_pipeline

SHOP = {
    "name": "shop",
    "skills": [
        {
            "id": "order_status",
            "description": "where is my order",
            "triggers": ["track my order"],
            "steps": [{"prompt": "Report the status."}],
        },
        {
            "id": "refund",
            "description": "money back for an order",
            "triggers": ["refund"],
            "steps": [{"prompt": "Handle the refund."}],
        },
        {"id": "small_talk", "description": "chit chat", "steps": [{"prompt": "Chat."}]},
    ],
}


def _route(scores, **config):
    spec = parse_agent_spec(SHOP)
    router = SkillRouter(spec, FixedScorer(scores))
    return asyncio.run(router.route("help", config=EffectiveConfig(**config), ctx=EvaluationContext()))


def test_clear_winner_routes_directly():
    decision = _route({"order_status": 0.9, "refund": 0.2})
    assert decision.skill == "order_status"
    assert decision.ambiguous is False


def test_low_confidence_or_close_scores_are_ambiguous():
    low = _route({"order_status": 0.55, "refund": 0.50}, disambiguation_threshold=0.8)
    assert low.ambiguous and low.skill is None
    assert low.candidate_ids() == ["order_status", "refund"]

    close = _route({"order_status": 0.91, "refund": 0.88}, disambiguation_threshold=0.5)
    assert close.ambiguous

    disabled = _route({"order_status": 0.55, "refund": 0.50}, disambiguation_enabled=False)
    assert disabled.skill == "order_status"


def test_nothing_viable_falls_back_to_default_skill():
    decision = _route({"order_status": 0.1}, min_skill_confidence=0.3, default_skill="small_talk")
    assert decision.skill == "small_talk"
    assert decision.ambiguous is False


def test_keyword_scorer_prefers_trigger_phrases():
    spec = parse_agent_spec(SHOP)
    scores = asyncio.run(
        KeywordScorer().score("I want a refund please", list(spec.skills.values()), config=EffectiveConfig())
    )
    assert scores["refund"] == 0.9
    assert scores["refund"] > scores["order_status"]


def test_ambiguous_turn_asks_then_resolves_with_the_original_input():
    provider = ScriptedProvider(["Your refund is on its way."])
    scorer = FixedScorer({"order_status": 0.55, "refund": 0.50})
    pipeline = build_pipeline(SHOP, provider, scorer=scorer, global_config={"disambiguation_threshold": 0.8})

    async def scenario():
        session = await pipeline.start_session()
        first = await pipeline.run_turn(session.id, "my order 12345")
        stored = await pipeline.get_session(session.id)
        second = await pipeline.run_turn(session.id, "2")
        return first, stored, second, await pipeline.get_session(session.id)

    first, stored, second, final = asyncio.run(scenario())

    assert first.status == "clarification"
    assert "1. order status" in first.content and "2. refund" in first.content
    assert provider.calls == []
    assert stored.pending_disambiguation.candidates == ["order_status", "refund"]

    assert second.status == "ok"
    assert second.skill == "refund"
    assert second.content == "Your refund is on its way."
    # The skill sees the input that started the clarification, not the "2".
    assert provider.calls[0]["messages"][-2]["content"] == "my order 12345"
    assert final.pending_disambiguation is None
    assert scorer.calls == 1


def test_unclear_replies_exhaust_into_the_default_skill():
    provider = ScriptedProvider(["Happy to chat."])
    pipeline = build_pipeline(
        SHOP,
        provider,
        scorer=FixedScorer({"order_status": 0.55, "refund": 0.50}),
        global_config={"disambiguation_threshold": 0.8, "disambiguation_max_attempts": 2, "default_skill": "small_talk"},
    )

    async def scenario():
        session = await pipeline.start_session()
        outcomes = [await pipeline.run_turn(session.id, text) for text in ("hmm", "what?", "no idea")]
        return outcomes, await pipeline.get_session(session.id)

    outcomes, final = asyncio.run(scenario())

    assert [o.status for o in outcomes] == ["clarification", "clarification", "ok"]
    assert outcomes[-1].skill == "small_talk"
    assert final.pending_disambiguation is None


def test_missing_skill_parameters_ask_for_them():
    raw = {
        "name": "shop",
        "skills": [
            {
                "id": "order_status",
                "triggers": ["order"],
                "parameters": {"type": "object", "properties": {"order_id": {"type": "string"}}, "required": ["order_id"]},
                "steps": [{"prompt": "Status for {context.order_id}"}],
            }
        ],
    }
    provider = ScriptedProvider(["Shipped."])
    pipeline = build_pipeline(raw, provider)

    async def scenario():
        session = await pipeline.start_session()
        asking = await pipeline.run_turn(session.id, "where is my order")
        answered = await pipeline.run_turn(session.id, "where is my order", context={"order_id": "A1"})
        return asking, answered

    asking, answered = asyncio.run(scenario())

    assert asking.status == "clarification"
    assert "order_id" in asking.content
    assert answered.status == "ok"
    assert answered.content == "Shipped."
    assert {"role": "system", "content": "Status for A1"} in provider.calls[0]["messages"]


def test_llm_scorer_is_chosen_by_config_and_reads_json_scores():
    provider = ScriptedProvider(['{"scores": {"order_status": 0.2, "refund": 0.95, "small_talk": 0.1}}', "Refund started."])
    pipeline = build_pipeline(SHOP, provider, global_config={"skill_scorer": "llm"})

    async def scenario():
        session = await pipeline.start_session()
        return await pipeline.run_turn(session.id, "my parcel never arrived")

    outcome = asyncio.run(scenario())

    assert outcome.status == "ok"
    assert outcome.skill == "refund"
    assert outcome.content == "Refund started."
    assert provider.calls[0]["params"].get("json") is True
    assert "- refund: money back for an order" in provider.calls[0]["messages"][0]["content"]


def test_unparseable_llm_scores_route_to_the_default_skill():
    provider = ScriptedProvider(["no idea", "Happy to chat."])
    pipeline = build_pipeline(SHOP, provider, global_config={"skill_scorer": "llm", "default_skill": "small_talk"})

    async def scenario():
        session = await pipeline.start_session()
        return await pipeline.run_turn(session.id, "refund please")

    outcome = asyncio.run(scenario())

    # Zero for every skill, so the trigger phrase in the input does not matter.
    assert outcome.skill == "small_talk"
    assert outcome.content == "Happy to chat."
