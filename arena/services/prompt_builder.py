"""
Prompt Builder for agent trading decisions.

Renders one context string per agent from its ledger, the shared market
snapshot and, on a revision attempt, the reason the previous decision was
rejected.

Context structure:
1. Role and goal
2. Current portfolio (cash, positions)
3. Market data (plain or enriched with indicators)
4. News headlines
5. Rules (watchlist, position cap, leverage tiers, daily trade limit)
6. Revision feedback (only after a rejection)
7. Response format (tool-aware or plain)
"""

from typing import Optional

from ..models.agent import AgentProfile, LedgerState
from ..models.decision import PriorAttempt
from ..models.market import MarketState

NEWS_IN_PROMPT = 5

DECISION_FORMAT = """{
  "type": "decision",
  "action": "BUY" | "SELL" | "HOLD",
  "ticker": "RELIANCE" | null,
  "shares": 10,
  "leverage": 1,
  "reasoning": "2-3 sentences"
}"""

REQUEST_FORMAT = """{
  "type": "request_data",
  "tickers": ["RELIANCE"],
  "metrics": ["history_30d", "indicators"]
}"""


class PromptBuilder:
    """
    Builds agent contexts.

    Usage:
        builder = PromptBuilder(enriched=True, use_tools=True)
        context = builder.build(agent, ledger, market)
    """

    def __init__(self, enriched: bool = True, use_tools: bool = True):
        self.enriched = enriched
        self.use_tools = use_tools

    def build(
        self,
        agent: AgentProfile,
        ledger: LedgerState,
        market: MarketState,
        prior_attempt: Optional[PriorAttempt] = None,
    ) -> str:
        sections = [
            self._role(agent, market),
            self._portfolio(ledger),
            self._market(agent, market),
            self._news(market),
            self._rules(agent),
        ]
        if prior_attempt is not None:
            sections.append(self._feedback(prior_attempt))
        sections.append(self._response_format())
        return "\n\n".join(s for s in sections if s)

    def build_analysis_appendix(self, blocks: list[str]) -> str:
        """Appendix for the second call of a tool-use round trip."""
        return (
            "\n\nADDITIONAL ANALYSIS RESULTS:\n"
            + "\n".join(blocks)
            + "\n\nBased on all information above, respond with FINAL decision only "
            "in this JSON format:\n"
            + DECISION_FORMAT
        )

    # ==================== Sections ====================

    def _role(self, agent: AgentProfile, market: MarketState) -> str:
        return (
            f"You are {agent.name}, an autonomous AI trader competing in a trading "
            f"competition on the NSE (National Stock Exchange of India).\n"
            f"Time: {market.as_of.strftime('%Y-%m-%d %H:%M')}\n\n"
            f"YOUR GOAL: Maximize your portfolio value to win the competition."
        )

    def _portfolio(self, ledger: LedgerState) -> str:
        lines = ["CURRENT PORTFOLIO:", f"Cash: ₹{ledger.cash_balance:.2f}"]
        if not ledger.positions:
            lines.append("Positions: None")
        else:
            lines.append("Positions:")
            for pos in ledger.positions.values():
                lines.append(f"- {pos.ticker}: {pos.shares} shares @ avg ₹{pos.avg_cost:.2f}")
        return "\n".join(lines)

    def _market(self, agent: AgentProfile, market: MarketState) -> str:
        tickers = [t for t in agent.watchlist if t in market.quotes]
        if self.enriched and market.features is not None:
            return self._market_table(tickers, market)

        lines = ["MARKET DATA (NSE):"]
        for ticker in tickers:
            q = market.quotes[ticker]
            lines.append(f"{ticker}  ₹{q.price:.2f} ({q.change_pct:+.2f}%)")
        return "\n".join(lines)

    def _market_table(self, tickers: list[str], market: MarketState) -> str:
        header = (
            f"{'Ticker':<12}{'Price':>11}   {'Chg%':>6}   {'Vol':>7}   "
            f"{'SMA20':>8}   {'SMA50':>8}   {'RSI14':>7}   {'Vol20':>7}"
        )
        lines = ["MARKET DATA (NSE WATCHLIST):", header, "-" * len(header)]
        snapshots = {s.ticker: s for s in market.features.snapshot(tickers)}

        for ticker in tickers:
            q = market.quotes[ticker]
            s = snapshots[ticker]
            lines.append(
                f"{ticker:<12}"
                f"{'₹' + format(q.price, '.2f'):>11}   "
                f"{format(q.change_pct, '+.1f') + '%':>6}   "
                f"{format(q.volume / 1_000_000, '.1f') + 'M':>7}   "
                f"{_opt(s.sma20, '₹{:.0f}'):>8}   "
                f"{_opt(s.sma50, '₹{:.0f}'):>8}   "
                f"{_opt(s.rsi14, '{:.1f}'):>7}   "
                f"{_opt(s.volatility20, '{:.1f}%'):>7}"
            )
        return "\n".join(lines)

    def _news(self, market: MarketState) -> str:
        if not market.news:
            return ""
        lines = ["LATEST MARKET NEWS:"]
        for i, article in enumerate(market.news[:NEWS_IN_PROMPT], start=1):
            lines.append(f"{i}. {article.title}")
        return "\n".join(lines)

    def _rules(self, agent: AgentProfile) -> str:
        tiers = ", ".join(f"{t}x" for t in agent.allowed_leverage)
        cap = agent.max_position_size * 100
        return "\n".join(
            [
                "RULES:",
                f"1. You can only trade stocks from the watchlist: {', '.join(agent.watchlist)}",
                "2. You cannot short stocks (sell what you don't own)",
                f"3. A single BUY may not exceed {cap:g}% of your total portfolio value",
                f"4. Allowed leverage tiers: {tiers}. Leverage N lets cash go negative "
                f"by at most (N-1) x your initial capital",
                f"5. At most {agent.max_trades_per_day} trades per day",
            ]
        )

    def _feedback(self, prior: PriorAttempt) -> str:
        return (
            "PREVIOUS DECISION REJECTED:\n"
            f"Your previous decision ({prior.decision.describe()}) was rejected: {prior.reason}\n"
            "Revise your decision so that it satisfies every rule above, or HOLD."
        )

    def _response_format(self) -> str:
        if not self.use_tools:
            return (
                "RESPOND WITH EXACTLY THIS JSON FORMAT (no other text):\n"
                + DECISION_FORMAT
                + "\n\nIf action is HOLD, set ticker to null and shares to 0."
            )
        return (
            "RESPOND WITH EXACTLY ONE JSON OBJECT (no other text).\n"
            "Either your final decision:\n"
            + DECISION_FORMAT
            + "\n\nOr, if you need more analysis before deciding, request it once:\n"
            + REQUEST_FORMAT
            + "\n\nIf action is HOLD, set ticker to null and shares to 0."
        )


def _opt(value: Optional[float], fmt: str) -> str:
    return fmt.format(value) if value is not None else "-"
