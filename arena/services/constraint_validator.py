"""
Constraint validation for proposed decisions.

Pure: everything it needs (prices, current valuation, today's trade count)
is passed in. Rules run in a fixed order and the first failure wins.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from ..models.agent import AgentProfile, LedgerState
from ..models.decision import ActionType, TradeDecision

logger = logging.getLogger(__name__)

# Float slack for cash / cap comparisons
_EPSILON = 1e-9


@dataclass(frozen=True)
class ValidationResult:
    """Accepted, or rejected with a human-readable reason and the failing rule"""

    accepted: bool
    reason: Optional[str] = None
    rule: Optional[str] = None

    @classmethod
    def accept(cls) -> "ValidationResult":
        return cls(accepted=True)

    @classmethod
    def reject(cls, rule: str, reason: str) -> "ValidationResult":
        return cls(accepted=False, reason=reason, rule=rule)


@dataclass(frozen=True)
class ValidationContext:
    """Market-dependent inputs resolved by the caller before validation"""

    prices: Mapping[str, float]
    total_value: float
    trades_today: int = 0


class ConstraintValidator:
    """
    Checks a decision against the agent's limits and ledger.

    Rules, in order:
    1. HOLD is always accepted
    2. BUY/SELL needs a ticker
    3. Ticker must be on the watchlist
    4. Shares must be > 0
    5. BUY: allowed leverage tier, cash floor -(leverage-1) x initial
       capital, notional / total value within the position-size cap
    6. SELL: enough shares held
    7. Daily trade limit not yet reached

    Usage:
        result = ConstraintValidator().validate(agent, ledger, decision, context)
        if not result.accepted:
            print(result.reason)
    """

    def validate(
        self,
        agent: AgentProfile,
        ledger: LedgerState,
        decision: TradeDecision,
        context: ValidationContext,
    ) -> ValidationResult:
        result = self._check(agent, ledger, decision, context)
        if not result.accepted:
            logger.info(
                f"[{agent.name}] Rejected {decision.describe()} ({result.rule}): {result.reason}"
            )
        return result

    def _check(
        self,
        agent: AgentProfile,
        ledger: LedgerState,
        decision: TradeDecision,
        context: ValidationContext,
    ) -> ValidationResult:
        if decision.action == ActionType.HOLD:
            return ValidationResult.accept()

        ticker = decision.ticker
        if not ticker:
            return ValidationResult.reject(
                "ticker_required", "Ticker is required for BUY/SELL actions"
            )

        if ticker not in agent.watchlist:
            return ValidationResult.reject(
                "watchlist", f"Ticker {ticker} is not in the watchlist"
            )

        if decision.shares <= 0:
            return ValidationResult.reject(
                "shares_positive", "Shares must be greater than zero"
            )

        if decision.action == ActionType.BUY:
            result = self._check_buy(agent, ledger, decision, context)
        else:
            result = self._check_sell(ledger, decision)
        if not result.accepted:
            return result

        if context.trades_today >= agent.max_trades_per_day:
            return ValidationResult.reject(
                "max_trades_per_day",
                f"Daily trade limit reached ({agent.max_trades_per_day} trades)",
            )

        return ValidationResult.accept()

    def _check_buy(
        self,
        agent: AgentProfile,
        ledger: LedgerState,
        decision: TradeDecision,
        context: ValidationContext,
    ) -> ValidationResult:
        leverage = decision.leverage
        if leverage not in agent.allowed_leverage:
            allowed = ", ".join(f"{t}x" for t in agent.allowed_leverage)
            return ValidationResult.reject(
                "leverage_tier", f"Leverage {leverage}x is not allowed (allowed: {allowed})"
            )

        price = context.prices.get(decision.ticker)
        if price is None or price <= 0:
            return ValidationResult.reject(
                "price_unavailable", f"No current price for {decision.ticker}"
            )

        notional = decision.shares * price
        cash_after = ledger.cash_balance - notional
        cash_floor = -(leverage - 1) * ledger.initial_capital
        if cash_after < cash_floor - _EPSILON:
            available = ledger.cash_balance - cash_floor
            return ValidationResult.reject(
                "cash",
                f"Insufficient cash: trade costs ₹{notional:,.2f} but only "
                f"₹{available:,.2f} is available at {leverage}x leverage",
            )

        if context.total_value <= 0:
            return ValidationResult.reject(
                "position_size", "Portfolio value is not positive; buying is disabled"
            )

        fraction = notional / context.total_value
        if fraction > agent.max_position_size + _EPSILON:
            max_shares = int(agent.max_position_size * context.total_value // price)
            return ValidationResult.reject(
                "position_size",
                f"Trade value ₹{notional:,.2f} is {fraction:.1%} of portfolio value "
                f"₹{context.total_value:,.2f}, above the {agent.max_position_size:.0%} "
                f"position limit (max {max_shares} shares of {decision.ticker})",
            )

        return ValidationResult.accept()

    def _check_sell(self, ledger: LedgerState, decision: TradeDecision) -> ValidationResult:
        held = ledger.shares_of(decision.ticker)
        if held == 0:
            return ValidationResult.reject(
                "holding", f"No position in {decision.ticker} to sell"
            )
        if decision.shares > held:
            return ValidationResult.reject(
                "holding",
                f"Cannot sell {decision.shares} {decision.ticker}: only {held} shares held",
            )
        return ValidationResult.accept()
