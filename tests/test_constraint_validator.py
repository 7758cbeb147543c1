"""
Tests for the constraint validator.

Covers:
- Rule order (first failure wins)
- Watchlist, share count, holding and daily-limit rules
- Leverage tiers and the leveraged cash floor
- Position-size cap against total portfolio value
- Randomized checks that no accepted decision breaks the ledger rules
"""

import random
import uuid

import pytest

from arena.models.agent import AgentProfile, LedgerState, PositionState
from arena.models.decision import ActionType, TradeDecision
from arena.services.constraint_validator import ConstraintValidator, ValidationContext


def make_agent(**overrides) -> AgentProfile:
    fields = dict(
        id=uuid.uuid4(),
        name="Alpha",
        provider="mock",
        model="",
        sort_order=1,
        watchlist=("RELIANCE", "TCS"),
        max_position_size=0.3,
        max_trades_per_day=10,
        allowed_leverage=(1, 5, 10, 20),
    )
    fields.update(overrides)
    return AgentProfile(**fields)


def make_ledger(cash: float = 100000.0, capital: float = 100000.0, **positions) -> LedgerState:
    return LedgerState(
        ledger_id=uuid.uuid4(),
        agent_id=uuid.uuid4(),
        cash_balance=cash,
        initial_capital=capital,
        positions={
            t: PositionState(t, shares, avg) for t, (shares, avg) in positions.items()
        },
    )


def context(total_value: float = 100000.0, trades_today: int = 0, **prices) -> ValidationContext:
    return ValidationContext(
        prices=prices or {"RELIANCE": 2450.0, "TCS": 3650.0},
        total_value=total_value,
        trades_today=trades_today,
    )


class TestConstraintValidator:
    """Rule-by-rule behaviour."""

    def setup_method(self):
        self.validator = ConstraintValidator()

    def test_hold_always_accepted(self):
        """HOLD passes even when the daily limit is exhausted."""
        result = self.validator.validate(
            make_agent(max_trades_per_day=1),
            make_ledger(cash=0),
            TradeDecision.hold("wait"),
            context(trades_today=5),
        )
        assert result.accepted

    def test_ticker_required(self):
        decision = TradeDecision(action=ActionType.BUY, ticker=None, shares=1)
        result = self.validator.validate(make_agent(), make_ledger(), decision, context())
        assert not result.accepted
        assert result.rule == "ticker_required"

    def test_ticker_outside_watchlist(self):
        decision = TradeDecision(action=ActionType.BUY, ticker="INFY", shares=1)
        result = self.validator.validate(make_agent(), make_ledger(), decision, context())
        assert not result.accepted
        assert result.reason == "Ticker INFY is not in the watchlist"

    def test_zero_shares_rejected(self):
        decision = TradeDecision(action=ActionType.BUY, ticker="TCS", shares=0)
        result = self.validator.validate(make_agent(), make_ledger(), decision, context())
        assert result.rule == "shares_positive"

    def test_buy_within_limits_accepted(self):
        """10 RELIANCE at 2450 is 24.5% of 100000."""
        decision = TradeDecision(action=ActionType.BUY, ticker="RELIANCE", shares=10)
        result = self.validator.validate(make_agent(), make_ledger(), decision, context())
        assert result.accepted
        assert result.reason is None

    def test_buy_above_position_cap_rejected(self):
        """13 RELIANCE is 31850, above the 30% cap."""
        decision = TradeDecision(action=ActionType.BUY, ticker="RELIANCE", shares=13)
        result = self.validator.validate(make_agent(), make_ledger(), decision, context())
        assert not result.accepted
        assert result.rule == "position_size"
        assert "max 12 shares of RELIANCE" in result.reason

    def test_buy_at_exact_cap_accepted(self):
        decision = TradeDecision(action=ActionType.BUY, ticker="TCS", shares=3)
        result = self.validator.validate(
            make_agent(), make_ledger(), decision, context(total_value=36500.0, TCS=3650.0)
        )
        # 10950 / 36500 == 0.3 exactly
        assert result.accepted

    def test_cap_uses_total_value_not_cash(self):
        """Cash is low but positions make the portfolio large enough."""
        ledger = make_ledger(cash=30000.0, RELIANCE=(28, 2450.0))
        decision = TradeDecision(action=ActionType.BUY, ticker="TCS", shares=8)
        result = self.validator.validate(make_agent(), ledger, decision, context(total_value=98600.0))
        assert result.accepted

    def test_insufficient_cash_unleveraged(self):
        ledger = make_ledger(cash=1000.0)
        decision = TradeDecision(action=ActionType.BUY, ticker="RELIANCE", shares=1)
        result = self.validator.validate(make_agent(), ledger, decision, context())
        assert not result.accepted
        assert result.rule == "cash"
        assert result.reason.startswith("Insufficient cash")

    def test_leverage_extends_cash_floor(self):
        """At 5x cash may go down to -4 x initial capital."""
        agent = make_agent(max_position_size=1.0)
        ledger = make_ledger(cash=1000.0)
        decision = TradeDecision(action=ActionType.BUY, ticker="RELIANCE", shares=20, leverage=5)
        result = self.validator.validate(agent, ledger, decision, context())
        assert result.accepted

    def test_leverage_floor_still_enforced(self):
        agent = make_agent(max_position_size=1.0)
        ledger = make_ledger(cash=-390000.0)
        decision = TradeDecision(action=ActionType.BUY, ticker="TCS", shares=3, leverage=5)
        result = self.validator.validate(agent, ledger, decision, context(total_value=500000.0))
        # -390000 - 10950 < -400000
        assert result.rule == "cash"

    def test_leverage_tier_not_allowed(self):
        agent = make_agent(allowed_leverage=(1, 5))
        decision = TradeDecision(action=ActionType.BUY, ticker="TCS", shares=1, leverage=3)
        result = self.validator.validate(agent, make_ledger(), decision, context())
        assert result.rule == "leverage_tier"
        assert "allowed: 1x, 5x" in result.reason

    def test_missing_price_rejects_buy(self):
        decision = TradeDecision(action=ActionType.BUY, ticker="TCS", shares=1)
        result = self.validator.validate(
            make_agent(), make_ledger(), decision, context(RELIANCE=2450.0)
        )
        assert result.rule == "price_unavailable"

    def test_non_positive_total_value_blocks_buying(self):
        agent = make_agent(max_position_size=1.0)
        decision = TradeDecision(action=ActionType.BUY, ticker="TCS", shares=1, leverage=20)
        result = self.validator.validate(agent, make_ledger(cash=-5000.0), decision, context(total_value=-5000.0))
        assert result.rule == "position_size"

    def test_sell_without_position(self):
        decision = TradeDecision(action=ActionType.SELL, ticker="TCS", shares=1)
        result = self.validator.validate(make_agent(), make_ledger(), decision, context())
        assert result.rule == "holding"
        assert result.reason == "No position in TCS to sell"

    def test_sell_more_than_held(self):
        ledger = make_ledger(TCS=(5, 3600.0))
        decision = TradeDecision(action=ActionType.SELL, ticker="TCS", shares=6)
        result = self.validator.validate(make_agent(), ledger, decision, context())
        assert not result.accepted
        assert "only 5 shares held" in result.reason

    def test_sell_entire_position_accepted(self):
        ledger = make_ledger(TCS=(5, 3600.0))
        decision = TradeDecision(action=ActionType.SELL, ticker="TCS", shares=5)
        assert self.validator.validate(make_agent(), ledger, decision, context()).accepted

    def test_daily_trade_limit(self):
        decision = TradeDecision(action=ActionType.BUY, ticker="TCS", shares=1)
        result = self.validator.validate(
            make_agent(max_trades_per_day=3), make_ledger(), decision, context(trades_today=3)
        )
        assert result.rule == "max_trades_per_day"
        assert result.reason == "Daily trade limit reached (3 trades)"

    def test_first_failing_rule_wins(self):
        """Off-watchlist is reported before the share count."""
        decision = TradeDecision(action=ActionType.BUY, ticker="INFY", shares=0)
        result = self.validator.validate(make_agent(), make_ledger(), decision, context())
        assert result.rule == "watchlist"


class TestValidatorRandomized:
    """Randomized decisions never slip past the ledger rules."""

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_accepted_decisions_respect_ledger(self, seed):
        rng = random.Random(seed)
        validator = ConstraintValidator()
        prices = {"RELIANCE": 2450.0, "TCS": 3650.0}

        for _ in range(300):
            tiers = (1, 5, 10, 20)
            agent = make_agent(
                max_position_size=rng.choice([0.1, 0.3, 0.5, 1.0]),
                allowed_leverage=tiers,
                max_trades_per_day=rng.randint(1, 5),
            )
            held = rng.randint(0, 20)
            ledger = make_ledger(
                cash=rng.uniform(-50000, 150000),
                **({"TCS": (held, 3600.0)} if held else {}),
            )
            total_value = ledger.cash_balance + held * prices["TCS"]
            ctx = ValidationContext(
                prices=prices, total_value=total_value, trades_today=rng.randint(0, 6)
            )
            action = rng.choice([ActionType.BUY, ActionType.SELL])
            decision = TradeDecision(
                action=action,
                ticker=rng.choice(["RELIANCE", "TCS"]),
                shares=rng.randint(1, 60),
                leverage=rng.choice(tiers) if action == ActionType.BUY else 1,
            )

            result = validator.validate(agent, ledger, decision, ctx)
            if not result.accepted:
                continue

            assert ctx.trades_today < agent.max_trades_per_day
            if action == ActionType.SELL:
                assert decision.shares <= ledger.shares_of(decision.ticker)
            else:
                notional = decision.shares * prices[decision.ticker]
                floor = -(decision.leverage - 1) * ledger.initial_capital
                assert ledger.cash_balance - notional >= floor - 1e-6
                assert notional / total_value <= agent.max_position_size + 1e-6
