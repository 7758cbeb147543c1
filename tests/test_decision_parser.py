"""
Tests for the decision parser.

Covers:
- JSON extraction from fenced blocks and surrounding prose
- Tool-aware envelopes (decision / request_data)
- Legacy bare objects
- Dirty data (smart quotes, fractional shares, bad actions)
"""

import json

import pytest

from arena.models.decision import (
    ActionType,
    AnalysisMetric,
    AnalysisRequested,
    DecisionParsed,
    ParseFailure,
)
from arena.services.decision_parser import (
    DecisionParser,
    parse_tool_aware_response,
    parse_trade_decision,
)


class TestToolAwareParsing:
    """Tests for DecisionParser.parse."""

    def setup_method(self):
        self.parser = DecisionParser()

    def test_decision_envelope(self):
        raw = json.dumps(
            {
                "type": "decision",
                "action": "BUY",
                "ticker": "reliance",
                "shares": 10,
                "leverage": 5,
                "reasoning": "Breakout above SMA20",
            }
        )

        result = self.parser.parse(raw)

        assert isinstance(result, DecisionParsed)
        decision = result.decision
        assert decision.action == ActionType.BUY
        assert decision.ticker == "RELIANCE"
        assert decision.shares == 10
        assert decision.leverage == 5
        assert decision.describe() == "BUY 10 RELIANCE @ 5x"

    def test_fenced_block_with_prose(self):
        raw = (
            "Let me think about this.\n```json\n"
            '{"type": "decision", "action": "sell", "ticker": "TCS", "shares": 3, "reasoning": "trim"}'
            "\n```\nThat is my answer."
        )

        result = self.parser.parse(raw)

        assert isinstance(result, DecisionParsed)
        assert result.decision.action == ActionType.SELL
        assert result.decision.leverage == 1

    def test_object_embedded_in_text(self):
        raw = 'Decision: {"type": "decision", "action": "HOLD", "ticker": null, "shares": 0} done'
        result = self.parser.parse(raw)
        assert isinstance(result, DecisionParsed)
        assert result.decision.is_hold

    def test_smart_quotes_are_fixed(self):
        raw = "{“type”: “decision”, “action”: “HOLD”, “ticker”: null, “shares”: 0}"
        result = self.parser.parse(raw)
        assert isinstance(result, DecisionParsed)

    def test_hold_is_normalized(self):
        raw = json.dumps(
            {"type": "decision", "action": "HOLD", "ticker": "TCS", "shares": 7, "leverage": 10}
        )
        decision = self.parser.parse(raw).decision
        assert decision.ticker is None
        assert decision.shares == 0
        assert decision.leverage == 1

    def test_missing_reasoning_gets_default(self):
        raw = json.dumps({"type": "decision", "action": "HOLD"})
        assert self.parser.parse(raw).decision.reasoning == "No reasoning provided"

    def test_request_data_envelope(self):
        raw = json.dumps(
            {"type": "request_data", "tickers": ["tcs", "TCS", "infy"], "metrics": ["indicators"]}
        )

        result = self.parser.parse(raw)

        assert isinstance(result, AnalysisRequested)
        assert result.request.tickers == ["TCS", "INFY"]
        assert result.request.metrics == [AnalysisMetric.INDICATORS]

    def test_request_data_with_unknown_metric(self):
        raw = json.dumps({"type": "request_data", "tickers": ["TCS"], "metrics": ["sentiment"]})
        result = self.parser.parse(raw)
        assert isinstance(result, ParseFailure)
        assert result.reason.startswith("Invalid analysis request")

    def test_request_data_without_tickers(self):
        raw = json.dumps({"type": "request_data", "tickers": [], "metrics": ["indicators"]})
        assert isinstance(self.parser.parse(raw), ParseFailure)

    def test_bare_object_is_unknown_type(self):
        raw = json.dumps({"action": "BUY", "ticker": "TCS", "shares": 1})
        result = self.parser.parse(raw)
        assert isinstance(result, ParseFailure)
        assert result.reason == "Unknown response type: None"


class TestFailures:
    """Malformed output never raises."""

    def setup_method(self):
        self.parser = DecisionParser()

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_response(self, raw):
        result = self.parser.parse(raw)
        assert isinstance(result, ParseFailure)
        assert result.reason == "Empty response"

    def test_no_json(self):
        result = self.parser.parse("I would buy some Reliance today.")
        assert result.reason == "No JSON object found in response"
        assert result.raw_response == "I would buy some Reliance today."

    def test_invalid_json(self):
        result = self.parser.parse('{"type": "decision", "action": BUY}')
        assert result.reason.startswith("Invalid JSON")

    def test_invalid_action(self):
        raw = json.dumps({"type": "decision", "action": "SHORT", "ticker": "TCS", "shares": 1})
        assert self.parser.parse(raw).reason == "Invalid action: 'SHORT'"

    def test_fractional_shares(self):
        raw = json.dumps({"type": "decision", "action": "BUY", "ticker": "TCS", "shares": 2.5})
        reason = self.parser.parse(raw).reason
        assert reason.startswith("Shares must be a whole number")

    def test_whole_float_shares_accepted(self):
        raw = json.dumps({"type": "decision", "action": "BUY", "ticker": "TCS", "shares": 4.0})
        assert self.parser.parse(raw).decision.shares == 4

    def test_string_shares_rejected(self):
        raw = json.dumps({"type": "decision", "action": "BUY", "ticker": "TCS", "shares": "10"})
        assert isinstance(self.parser.parse(raw), ParseFailure)

    def test_negative_shares_rejected(self):
        raw = json.dumps({"type": "decision", "action": "BUY", "ticker": "TCS", "shares": -3})
        result = self.parser.parse(raw)
        assert isinstance(result, ParseFailure)
        assert result.reason.startswith("Invalid decision")

    def test_leverage_above_maximum(self):
        raw = json.dumps(
            {"type": "decision", "action": "BUY", "ticker": "TCS", "shares": 1, "leverage": 50}
        )
        assert isinstance(self.parser.parse(raw), ParseFailure)

    def test_json_array_rejected(self):
        result = self.parser.parse("[1, 2, 3]")
        assert isinstance(result, ParseFailure)


class TestLegacyParsing:
    """Tests for the bare-object fallback."""

    def test_legacy_object(self):
        raw = json.dumps({"action": "BUY", "ticker": "TCS", "shares": 2, "reasoning": "cheap"})
        result = parse_trade_decision(raw)
        assert isinstance(result, DecisionParsed)
        assert result.decision.describe() == "BUY 2 TCS"

    def test_legacy_rejects_request(self):
        raw = json.dumps({"type": "request_data", "tickers": ["TCS"], "metrics": ["indicators"]})
        result = parse_trade_decision(raw)
        assert isinstance(result, ParseFailure)
        assert result.reason == "Invalid action: None"

    def test_module_shortcut_matches_parser(self):
        raw = json.dumps({"type": "decision", "action": "HOLD"})
        assert parse_tool_aware_response(raw) == DecisionParser().parse(raw)
