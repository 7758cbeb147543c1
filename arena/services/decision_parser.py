"""
Decision Parser for agent responses.

Turns raw provider text into a typed parse result. Nothing here raises on
bad agent output; the caller branches on the returned variant.
"""

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from ..models.decision import (
    ActionType,
    AnalysisRequest,
    AnalysisRequested,
    DecisionParsed,
    ParseFailure,
    ParseResult,
    TradeDecision,
)

logger = logging.getLogger(__name__)


class DecisionParser:
    """
    Parses agent responses into decisions or analysis requests.

    Handles:
    - JSON extraction from fenced blocks or surrounding prose
    - Smart-quote and full-width punctuation fixes
    - The tool-aware envelope (``type: decision | request_data``)
    - The legacy bare decision object
    """

    JSON_BLOCK_PATTERN = re.compile(
        r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE
    )

    def parse(self, raw_response: str) -> ParseResult:
        """
        Parse a tool-aware response.

        A ``request_data`` envelope is tried first, then a ``decision``
        envelope. Anything else is a ParseFailure.
        """
        data = self._load(raw_response)
        if isinstance(data, ParseFailure):
            return data

        kind = str(data.get("type", "")).lower()
        if kind == "request_data":
            try:
                request = AnalysisRequest(
                    tickers=data.get("tickers") or [],
                    metrics=data.get("metrics") or [],
                )
            except ValidationError as e:
                return ParseFailure(f"Invalid analysis request: {_summarize(e)}", raw_response)
            return AnalysisRequested(request)

        if kind == "decision":
            return self._build_decision(data, raw_response)

        return ParseFailure(
            f"Unknown response type: {data.get('type')!r}", raw_response
        )

    def parse_legacy(self, raw_response: str) -> ParseResult:
        """Parse a bare ``{action, ticker, shares, reasoning, leverage?}`` object."""
        data = self._load(raw_response)
        if isinstance(data, ParseFailure):
            return data
        return self._build_decision(data, raw_response)

    # ------------------------------------------------------------------ #

    def _load(self, raw_response: Optional[str]) -> Any:
        if not raw_response or not raw_response.strip():
            return ParseFailure("Empty response", raw_response or "")

        cleaned = self._fix_encoding(raw_response.strip())
        json_str = self._extract_json(cleaned)
        if json_str is None:
            logger.warning(
                f"[DecisionParser] No JSON object in response. "
                f"length={len(cleaned)}, preview: {cleaned[:200]}"
            )
            return ParseFailure("No JSON object found in response", raw_response)

        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            return ParseFailure(f"Invalid JSON: {e}", raw_response)

        if not isinstance(data, dict):
            return ParseFailure("Response JSON is not an object", raw_response)
        return data

    def _fix_encoding(self, text: str) -> str:
        """Fix common punctuation substitutions in model output"""
        replacements = {
            "“": '"',
            "”": '"',
            "‘": "'",
            "’": "'",
            "：": ":",
            "，": ",",
        }
        for old, new in replacements.items():
            text = text.replace(old, new)
        return text

    def _extract_json(self, text: str) -> Optional[str]:
        """
        Extract the JSON object text.

        Tries, in order: a fenced code block, the whole text, and the span
        from the first ``{`` to the last ``}``.
        """
        match = self.JSON_BLOCK_PATTERN.search(text)
        if match:
            return match.group(1)

        if text.startswith("{") and text.endswith("}"):
            return text

        start = text.find("{")
        end = text.rfind("}")
        if start >= 0 and end > start:
            return text[start : end + 1]
        return None

    def _build_decision(self, data: dict, raw_response: str) -> ParseResult:
        action = data.get("action")
        if not isinstance(action, str) or action.strip().upper() not in ActionType.__members__:
            return ParseFailure(f"Invalid action: {action!r}", raw_response)

        shares = data.get("shares", 0)
        if isinstance(shares, bool) or not _is_whole_number(shares):
            return ParseFailure(f"Shares must be a whole number, got {shares!r}", raw_response)

        leverage = data.get("leverage")
        if leverage is None:
            leverage = 1
        elif isinstance(leverage, bool) or not _is_whole_number(leverage):
            return ParseFailure(f"Leverage must be a whole number, got {leverage!r}", raw_response)

        ticker = data.get("ticker")
        if ticker is not None and not isinstance(ticker, str):
            return ParseFailure(f"Ticker must be a string or null, got {ticker!r}", raw_response)

        try:
            decision = TradeDecision(
                action=ActionType(action.strip().upper()),
                ticker=ticker,
                shares=int(shares),
                leverage=int(leverage),
                reasoning=str(data.get("reasoning") or "No reasoning provided"),
            )
        except ValidationError as e:
            return ParseFailure(f"Invalid decision: {_summarize(e)}", raw_response)

        return DecisionParsed(decision)


def _is_whole_number(value: Any) -> bool:
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return value.is_integer()
    return False


def _summarize(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or 'value'}: {e['msg']}" for e in error.errors()
    )


_default_parser = DecisionParser()


def parse_tool_aware_response(raw_response: str) -> ParseResult:
    """Module-level shortcut for ``DecisionParser().parse``."""
    return _default_parser.parse(raw_response)


def parse_trade_decision(raw_response: str) -> ParseResult:
    """Module-level shortcut for ``DecisionParser().parse_legacy``."""
    return _default_parser.parse_legacy(raw_response)
