"""
Tests for the decision engine.

Covers:
- First-call success and the PARSED record
- Provider-level retries with exponential backoff
- Fallback HOLD after the retry budget
- Permanent provider errors stop retrying
- The analysis round trip (request_data -> analysis -> final decision)
"""

import json

import pytest
from sqlalchemy import select

from arena.db.models import DecisionRecordDB
from arena.models.decision import ActionType, DecisionRecordStatus, PriorAttempt, TradeDecision
from arena.models.market import Quote
from arena.services.ai.factory import ProviderRegistry
from arena.services.decision_engine import DecisionEngine
from arena.services.events import EventType
from arena.services.market_features import MarketFeatureService
from arena.services.prompt_builder import PromptBuilder

from conftest import HOLD, ScriptedProvider, decision_json, load_ledger, market_state

BUY_TCS = decision_json("BUY", "TCS", 2, reasoning="cheap")
REQUEST = json.dumps(
    {"type": "request_data", "tickers": ["RELIANCE"], "metrics": ["history_30d", "indicators"]}
)


async def records(session_factory) -> list[DecisionRecordDB]:
    async with session_factory() as session:
        result = await session.execute(
            select(DecisionRecordDB).order_by(DecisionRecordDB.call_attempt)
        )
        return list(result.scalars().all())


def make_engine(session_factory, settings, provider, sleep, sink=None, use_tools=True):
    return DecisionEngine(
        session_factory,
        ProviderRegistry.single(provider),
        prompt_builder=PromptBuilder(enriched=True, use_tools=use_tools),
        settings=settings,
        events=sink,
        sleep=sleep,
    )


class TestDecisionEngine:

    @pytest.mark.asyncio
    async def test_first_call_parsed(self, session_factory, settings, alpha, fake_sleep):
        provider = ScriptedProvider(BUY_TCS)
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        proposal = await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert not proposal.is_fallback
        assert proposal.decision.describe() == "BUY 2 TCS"
        assert provider.calls == 1
        assert fake_sleep.delays == []

        [record] = await records(session_factory)
        assert record.id == proposal.record_id
        assert record.status == DecisionRecordStatus.PARSED.value
        assert record.action == "BUY"
        assert record.ticker == "TCS"
        assert record.raw_response == BUY_TCS
        assert "CURRENT PORTFOLIO" in record.prompt

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, session_factory, settings, alpha, fake_sleep):
        """Two malformed responses, then a valid one: delays 1s then 2s."""
        provider = ScriptedProvider("not json", '{"type": "decision", "action": "YOLO"}', BUY_TCS)
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        proposal = await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert proposal.decision.action == ActionType.BUY
        assert provider.calls == 3
        assert fake_sleep.delays == [1.0, 2.0]

        rows = await records(session_factory)
        assert [r.status for r in rows] == ["parse_failed", "parse_failed", "parsed"]
        assert [r.call_attempt for r in rows] == [1, 2, 3]
        assert rows[1].error == "Invalid action: 'YOLO'"

    @pytest.mark.asyncio
    async def test_fallback_after_budget(self, session_factory, settings, alpha, fake_sleep):
        provider = ScriptedProvider("nope", "still nope", "never")
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        proposal = await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert proposal.is_fallback
        assert proposal.decision.is_hold
        assert proposal.decision.reasoning == (
            "Failed to get valid decision after 3 attempts: No JSON object found in response"
        )
        assert fake_sleep.delays == [1.0, 2.0]

        rows = await records(session_factory)
        assert [r.status for r in rows].count("parse_failed") == 3
        [fallback] = [r for r in rows if r.status == "fallback"]
        assert fallback.id == proposal.record_id
        assert fallback.action == "HOLD"

    @pytest.mark.asyncio
    async def test_transient_provider_errors_are_retried(
        self, session_factory, settings, alpha, fake_sleep
    ):
        provider = ScriptedProvider(TimeoutError("request timed out"), HOLD)
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        proposal = await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert not proposal.is_fallback
        assert provider.calls == 2
        assert fake_sleep.delays == [1.0]
        rows = await records(session_factory)
        assert rows[0].status == "provider_error"
        assert rows[0].error == "request timed out"

    @pytest.mark.asyncio
    async def test_permanent_error_stops_immediately(
        self, session_factory, settings, alpha, fake_sleep
    ):
        provider = ScriptedProvider(Exception("401 Unauthorized: invalid api key"), BUY_TCS)
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        proposal = await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert proposal.is_fallback
        assert provider.calls == 1
        assert fake_sleep.delays == []
        assert "Provider error" in proposal.decision.reasoning

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, session_factory, settings, alpha, fake_sleep):
        settings = settings.model_copy(
            update={"decision_max_retries": 5, "decision_backoff_max_seconds": 3.0}
        )
        provider = ScriptedProvider("x", "x", "x", "x", "x")
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert fake_sleep.delays == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_revision_context_includes_rejection(
        self, session_factory, settings, alpha, fake_sleep
    ):
        provider = ScriptedProvider(HOLD)
        engine = make_engine(session_factory, settings, provider, fake_sleep)
        prior = PriorAttempt(
            decision=TradeDecision(action=ActionType.BUY, ticker="RELIANCE", shares=20),
            reason="Trade value too large",
            attempt=1,
        )

        await engine.propose(
            alpha, await load_ledger(session_factory, alpha), market_state(),
            prior_attempt=prior, attempt=2,
        )

        context = provider.contexts[0]
        assert "PREVIOUS DECISION REJECTED" in context
        assert "BUY 20 RELIANCE" in context
        assert "Trade value too large" in context
        [record] = await records(session_factory)
        assert record.attempt == 2


class TestAnalysisRoundTrip:

    @pytest.mark.asyncio
    async def test_request_then_decision(self, session_factory, settings, alpha, fake_sleep, sink):
        features = MarketFeatureService()
        for price in (2400.0, 2420.0, 2450.0):
            features.update([Quote(ticker="RELIANCE", price=price)])
        provider = ScriptedProvider(REQUEST, decision_json("BUY", "RELIANCE", 5))
        engine = make_engine(session_factory, settings, provider, fake_sleep, sink=sink)

        proposal = await engine.propose(
            alpha, await load_ledger(session_factory, alpha), market_state(features=features)
        )

        assert proposal.used_tools
        assert proposal.decision.describe() == "BUY 5 RELIANCE"
        assert provider.calls == 2
        second = provider.contexts[1]
        assert "ADDITIONAL ANALYSIS RESULTS" in second
        assert "- RELIANCE history_30d (close): 2400, 2420, 2450" in second

        [analyze] = sink.of_type(EventType.ANALYZE)
        assert analyze["tickers"] == ["RELIANCE"]
        assert analyze["metrics"] == ["history_30d", "indicators"]

        rows = await records(session_factory)
        assert {r.status for r in rows} == {"tool_request", "parsed"}
        assert all(r.used_tools for r in rows)

    @pytest.mark.asyncio
    async def test_second_request_is_a_failure(self, session_factory, settings, alpha, fake_sleep):
        """Only one round trip per call; a repeated request counts as malformed."""
        provider = ScriptedProvider(REQUEST, REQUEST, HOLD)
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        proposal = await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert not proposal.is_fallback
        assert proposal.decision.is_hold
        assert provider.calls == 3
        rows = await records(session_factory)
        failed = [r for r in rows if r.status == "parse_failed"]
        assert failed[0].error == "Analysis was already provided; a final decision is required"

    @pytest.mark.asyncio
    async def test_off_watchlist_request_rejected(self, session_factory, settings, alpha, fake_sleep):
        request = json.dumps({"type": "request_data", "tickers": ["INFY"], "metrics": ["indicators"]})
        provider = ScriptedProvider(request, HOLD)
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        rows = await records(session_factory)
        assert rows[0].error == "Requested analysis tickers are not on the watchlist"

    @pytest.mark.asyncio
    async def test_without_features_reports_no_history(
        self, session_factory, settings, alpha, fake_sleep
    ):
        provider = ScriptedProvider(REQUEST, HOLD)
        engine = make_engine(session_factory, settings, provider, fake_sleep)

        await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert "- RELIANCE: no history available" in provider.contexts[1]

    @pytest.mark.asyncio
    async def test_tools_disabled_uses_legacy_parse(
        self, session_factory, settings, alpha, fake_sleep
    ):
        provider = ScriptedProvider(REQUEST, json.dumps({"action": "HOLD"}))
        engine = make_engine(session_factory, settings, provider, fake_sleep, use_tools=False)

        proposal = await engine.propose(alpha, await load_ledger(session_factory, alpha), market_state())

        assert proposal.decision.is_hold
        assert not proposal.used_tools
        assert provider.calls == 2
        assert "request_data" not in provider.contexts[0]
