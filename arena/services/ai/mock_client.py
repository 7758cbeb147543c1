"""
Offline decision provider.

Reads the context produced by PromptBuilder and answers with a plausible,
seeded decision so the whole pipeline can run without API keys.
"""

import json
import logging
import random
import re

from .base import DecisionProvider

logger = logging.getLogger(__name__)

_CASH_RE = re.compile(r"^Cash: ₹(-?[\d.]+)", re.MULTILINE)
_POSITION_RE = re.compile(r"^- ([A-Z][A-Z0-9&-]*): (\d+) shares", re.MULTILINE)
_QUOTE_RE = re.compile(r"^([A-Z][A-Z0-9&-]*)\s+₹([\d.]+)\s", re.MULTILINE)
_WATCHLIST_RE = re.compile(r"watchlist: ([A-Z0-9&, -]+)$", re.MULTILINE | re.IGNORECASE)
_CAP_RE = re.compile(r"exceed (\d+(?:\.\d+)?)% of your total portfolio value")


class MockDecisionProvider(DecisionProvider):
    """
    Seeded random trader.

    Roughly half the time it holds; otherwise it buys a small slice of a
    watchlist ticker or trims an existing position. After a rejection it
    always holds, so a revision loop converges.

    Usage:
        provider = MockDecisionProvider(seed=42)
        text = await provider.complete(context)
    """

    def __init__(self, seed: int = 42, hold_probability: float = 0.5):
        self._rng = random.Random(seed)
        self.hold_probability = hold_probability

    async def complete(self, context: str) -> str:
        if "PREVIOUS DECISION REJECTED" in context:
            return self._hold("Previous proposal was rejected; standing aside this cycle.")

        cash_match = _CASH_RE.search(context)
        cash = float(cash_match.group(1)) if cash_match else 0.0
        positions = {t: int(s) for t, s in _POSITION_RE.findall(context)}
        prices = {t: float(p) for t, p in _QUOTE_RE.findall(context)}
        watch_match = _WATCHLIST_RE.search(context)
        watchlist = (
            [t.strip() for t in watch_match.group(1).split(",") if t.strip()]
            if watch_match
            else list(prices)
        )
        cap_match = _CAP_RE.search(context)
        cap = float(cap_match.group(1)) / 100 if cap_match else 0.1

        roll = self._rng.random()
        if roll < self.hold_probability:
            return self._hold("No compelling setup in the current data.")

        if positions and roll > 0.85:
            ticker = self._rng.choice(sorted(positions))
            shares = max(1, positions[ticker] // 2)
            return self._decision("SELL", ticker, shares, f"Taking partial profit on {ticker}.")

        tradeable = [t for t in watchlist if t in prices]
        if not tradeable or cash <= 0:
            return self._hold("Nothing affordable to buy.")

        ticker = self._rng.choice(tradeable)
        total_value = cash + sum(prices.get(t, 0) * s for t, s in positions.items())
        budget = min(cash, total_value * cap * 0.5)
        shares = int(budget // prices[ticker])
        if shares <= 0:
            return self._hold(f"{ticker} is too expensive for the remaining budget.")
        return self._decision("BUY", ticker, shares, f"Momentum looks constructive for {ticker}.")

    def _hold(self, reasoning: str) -> str:
        return json.dumps(
            {"type": "decision", "action": "HOLD", "ticker": None, "shares": 0, "reasoning": reasoning}
        )

    def _decision(self, action: str, ticker: str, shares: int, reasoning: str) -> str:
        return json.dumps(
            {
                "type": "decision",
                "action": action,
                "ticker": ticker,
                "shares": shares,
                "leverage": 1,
                "reasoning": reasoning,
            }
        )
