"""
Tests for decision parsing, validation and the retry policy of DecisionEngine.
"""

import asyncio
import json

import pytest

from booth_agent.concurrency import CancelToken, RequestCancelled
from booth_agent.decision import DecisionEngine, compact_candidates, parse_decision
from booth_agent.models import LoopState, Reply, Search, SearchPage, Select

from conftest import FakeChatModel, assistant, decision, hang_forever, make_candidates, user


def parse(raw, exclude=(), picked=(), max_pick=15, fallback_keyword="fallback"):
    return parse_decision(
        raw,
        exclude_ids=set(exclude),
        picked_ids=set(picked),
        max_pick=max_pick,
        fallback_keyword=fallback_keyword,
    )


class TestParseDecision:

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            '{"action": "search", "keyword": "猫',
            "I think you should search for cats",
            "[1, 2, 3]",
            '{"reply": "no action field"}',
            '{"action": "buy", "id": "1"}',
            "null",
        ],
    )
    def test_unusable_output_becomes_fallback_reply(self, raw):
        result = parse(raw)
        assert isinstance(result, Reply)
        assert result.fallback
        assert result.text

    def test_json_wrapped_in_prose_is_recovered(self):
        raw = 'Sure! Here you go:\n```json\n{"action": "search", "keyword": "ケモミミ", "summary": "s", "page": 2}\n```'
        result = parse(raw)
        assert result == Search(keyword="ケモミミ", summary="s", page=2)

    def test_first_balanced_object_wins(self):
        raw = 'x {"action": "reply", "reply": "hi"} {"action": "search"}'
        assert parse(raw) == Reply(text="hi")

    def test_empty_reply_text_gets_default_help_text(self):
        result = parse(decision("reply", reply="  "))
        assert isinstance(result, Reply)
        assert not result.fallback
        assert "Booth" in result.text

    @pytest.mark.parametrize(
        "page, expected",
        [(3, 3), ("4", 4), (0, 1), (-2, 1), (2.7, 2), ("abc", 1), (None, 1), (True, 1)],
    )
    def test_search_page_is_coerced_to_positive_int(self, page, expected):
        result = parse(decision("search", keyword="k", summary="s", page=page))
        assert isinstance(result, Search)
        assert result.page == expected

    def test_search_without_keyword_uses_fallback(self):
        result = parse(decision("search", summary="s"), fallback_keyword="前回のキーワード")
        assert result.keyword == "前回のキーワード"

    def test_select_drops_empty_excluded_and_picked_ids(self):
        raw = decision(
            "select",
            selected=[
                {"id": ""},
                {"id": "shown"},
                {"id": "already"},
                {"id": "a", "description": " nice ", "tags": ["x", "", 3, "y"], "reason": "fits"},
                {"id": "a"},
                "garbage",
                {"id": 42},
            ],
            done=1,
        )
        result = parse(raw, exclude={"shown"}, picked={"already"})
        assert isinstance(result, Select)
        assert [p.id for p in result.items] == ["a", "42"]
        assert result.items[0].description == "nice"
        assert result.items[0].tags == ["x", "y"]
        assert result.items[0].reason == "fits"
        assert result.items[1].reason is None
        assert result.done is True

    def test_select_is_capped_at_max_pick(self):
        raw = decision("select", selected=[{"id": str(i)} for i in range(20)])
        result = parse(raw, max_pick=4)
        assert [p.id for p in result.items] == ["0", "1", "2", "3"]
        assert result.done is False


class TestPayload:

    def test_payload_carries_context_and_caps_id_lists(self):
        model = FakeChatModel()
        engine = DecisionEngine(model)
        state = LoopState(exclude_ids={f"x{i}" for i in range(300)})
        state.tried_keywords = ["猫耳"]
        messages = [
            user("find ears"),
            assistant("当前关键词：猫耳；当前页码：3", items=[{"id": "x1"}]),
            user("next page"),
        ]
        page = SearchPage(keyword="猫耳", page=4, candidates=make_candidates(100))

        payload = json.loads(engine.build_payload(messages, state, page))

        assert payload["user_instruction"] == "next page"
        assert payload["hint"] == {"keyword": "猫耳", "page": 3}
        assert payload["tried_keywords"] == ["猫耳"]
        assert len(payload["exclude_ids"]) == 200
        assert len(payload["candidates_info"]["candidates"]) == 80
        assert "items=1" in payload["conversation"]

    def test_compact_candidates_keeps_selection_fields_only(self):
        compact = compact_candidates(make_candidates(1))[0]
        assert set(compact) == {"id", "title", "shopName", "price", "url", "description", "tags", "variations"}


class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        model = FakeChatModel([RuntimeError("503"), asyncio.TimeoutError(), decision("reply", reply="ok")])
        engine = DecisionEngine(model, attempts=3, timeout=1.0)

        result = await engine.decide([user("hi")], LoopState(exclude_ids=set()))

        assert result == Reply(text="ok")
        assert len(model.complete_calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_yield_apology_reply(self):
        model = FakeChatModel([RuntimeError("a"), RuntimeError("b"), RuntimeError("c")])
        engine = DecisionEngine(model, attempts=3, timeout=1.0)

        result = await engine.decide([user("hi")], LoopState(exclude_ids=set()), language="en")

        assert isinstance(result, Reply)
        assert result.fallback
        assert result.text.startswith("Sorry")

    @pytest.mark.asyncio
    async def test_each_attempt_is_bounded_by_timeout(self):
        model = FakeChatModel([hang_forever, hang_forever, decision("reply", reply="finally")])
        engine = DecisionEngine(model, attempts=3, timeout=0.05)

        result = await asyncio.wait_for(engine.decide([user("hi")], LoopState(exclude_ids=set())), timeout=2.0)

        assert result == Reply(text="finally")

    @pytest.mark.asyncio
    async def test_cancellation_aborts_without_retrying(self):
        model = FakeChatModel([hang_forever, decision("reply", reply="never")])
        engine = DecisionEngine(model, attempts=3, timeout=5.0)
        token = CancelToken()

        task = asyncio.create_task(engine.decide([user("hi")], LoopState(exclude_ids=set()), token=token))
        await asyncio.sleep(0.05)
        token.cancel()

        with pytest.raises(RequestCancelled):
            await asyncio.wait_for(task, timeout=1.0)
        assert len(model.complete_calls) == 1
