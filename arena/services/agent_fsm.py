"""
Per-agent attempt state machine for one cycle.

    AWAIT_DECISION --DECIDED--> VALIDATE
    VALIDATE --ACCEPTED--> EXECUTE --EXECUTED--> SETTLE
    VALIDATE --HELD--> SETTLE                         (accepted HOLD)
    VALIDATE --REJECTED--> AWAIT_DECISION             (attempt < max)
    VALIDATE --REJECTED--> FORCE_HOLD --HELD--> SETTLE (attempt == max)
    SETTLE --SETTLED--> DONE

The attempt budget is per agent per cycle and counts validation
rejections only; provider retries inside the decision engine are separate.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..models.decision import PriorAttempt, TradeDecision


class AgentPhase(str, Enum):
    AWAIT_DECISION = "AWAIT_DECISION"
    VALIDATE = "VALIDATE"
    EXECUTE = "EXECUTE"
    FORCE_HOLD = "FORCE_HOLD"
    SETTLE = "SETTLE"
    DONE = "DONE"


class AgentEvent(str, Enum):
    DECIDED = "DECIDED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    HELD = "HELD"
    SETTLED = "SETTLED"


class InvalidTransition(Exception):
    """Event not defined for the current phase"""

    def __init__(self, phase: AgentPhase, event: AgentEvent):
        self.phase = phase
        self.event = event
        super().__init__(f"No transition from {phase.value} on {event.value}")


_TRANSITIONS: dict[tuple[AgentPhase, AgentEvent], AgentPhase] = {
    (AgentPhase.AWAIT_DECISION, AgentEvent.DECIDED): AgentPhase.VALIDATE,
    (AgentPhase.VALIDATE, AgentEvent.ACCEPTED): AgentPhase.EXECUTE,
    (AgentPhase.VALIDATE, AgentEvent.HELD): AgentPhase.SETTLE,
    (AgentPhase.EXECUTE, AgentEvent.EXECUTED): AgentPhase.SETTLE,
    (AgentPhase.FORCE_HOLD, AgentEvent.HELD): AgentPhase.SETTLE,
    (AgentPhase.SETTLE, AgentEvent.SETTLED): AgentPhase.DONE,
}


def next_phase(
    phase: AgentPhase,
    event: AgentEvent,
    attempt: int,
    max_attempts: int,
) -> AgentPhase:
    """
    Pure transition function.

    Args:
        phase: Current phase
        event: Event that occurred
        attempt: 1-based attempt number the event belongs to
        max_attempts: Attempt budget

    Raises:
        InvalidTransition: event is not defined for the phase
    """
    if phase == AgentPhase.VALIDATE and event == AgentEvent.REJECTED:
        return AgentPhase.AWAIT_DECISION if attempt < max_attempts else AgentPhase.FORCE_HOLD

    target = _TRANSITIONS.get((phase, event))
    if target is None:
        raise InvalidTransition(phase, event)
    return target


@dataclass
class AgentAttempt:
    """
    Mutable context for one agent in one cycle.

    Usage:
        fsm = AgentAttempt(max_attempts=3)
        fsm.decided(decision)
        fsm.reject("over the position cap")   # back to AWAIT_DECISION
        ...
    """

    max_attempts: int = 3
    phase: AgentPhase = AgentPhase.AWAIT_DECISION
    attempt: int = 1
    decision: Optional[TradeDecision] = None
    rejections: list[PriorAttempt] = field(default_factory=list)
    history: list[tuple[AgentPhase, AgentEvent, AgentPhase]] = field(default_factory=list)

    def fire(self, event: AgentEvent) -> AgentPhase:
        target = next_phase(self.phase, event, self.attempt, self.max_attempts)
        self.history.append((self.phase, event, target))
        if self.phase == AgentPhase.VALIDATE and target == AgentPhase.AWAIT_DECISION:
            self.attempt += 1
        self.phase = target
        return target

    def decided(self, decision: TradeDecision) -> AgentPhase:
        self.decision = decision
        return self.fire(AgentEvent.DECIDED)

    def accept(self) -> AgentPhase:
        """Validation passed: HOLD goes straight to SETTLE, trades to EXECUTE."""
        if self.decision is not None and self.decision.is_hold:
            return self.fire(AgentEvent.HELD)
        return self.fire(AgentEvent.ACCEPTED)

    def reject(self, reason: str) -> AgentPhase:
        self.rejections.append(PriorAttempt(self.decision, reason, self.attempt))
        return self.fire(AgentEvent.REJECTED)

    def force_hold(self, reasoning: str) -> AgentPhase:
        self.decision = TradeDecision.hold(reasoning)
        return self.fire(AgentEvent.HELD)

    @property
    def prior_attempt(self) -> Optional[PriorAttempt]:
        return self.rejections[-1] if self.rejections else None

    @property
    def is_done(self) -> bool:
        return self.phase == AgentPhase.DONE
