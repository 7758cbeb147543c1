"""
Decision Engine - turns an agent's view of the market into one decision.

Coordinates:
- Context building (PromptBuilder)
- Provider calls with bounded retry and exponential backoff
- Tool-aware parsing with one optional analysis round trip
- Legacy parsing as a last resort
- One DecisionRecord per provider attempt, including failures

Never raises for bad agent output or provider failures: after the retry
budget is spent it returns a fallback HOLD.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.retry_utils import ErrorType, calculate_backoff_delay, classify_error
from ..db.repositories.decision import DecisionRepository
from ..models.agent import AgentProfile, LedgerState
from ..models.decision import (
    AnalysisRequest,
    AnalysisRequested,
    DecisionParsed,
    DecisionRecordStatus,
    ParseFailure,
    ParseResult,
    PriorAttempt,
    TradeDecision,
)
from ..models.market import MarketState
from ..monitoring.metrics import MetricsCollector, get_metrics_collector
from .ai.base import DecisionProvider
from .ai.factory import ProviderRegistry
from .decision_parser import DecisionParser
from .events import EventSink, EventType, safe_publish
from .prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Proposal:
    """
    Result of DecisionEngine.propose.

    ``failure`` is set when every provider attempt failed and ``decision``
    is the fallback HOLD.
    """

    decision: TradeDecision
    raw_response: str = ""
    record_id: Optional[uuid.UUID] = None
    failure: Optional[ParseFailure] = None
    used_tools: bool = False

    @property
    def is_fallback(self) -> bool:
        return self.failure is not None


@dataclass
class _CallOutcome:
    result: ParseResult
    raw_response: str
    prompt: str
    used_tools: bool = False


class DecisionEngine:
    """
    Produces one decision per agent per attempt.

    Usage:
        engine = DecisionEngine(session_factory, ProviderRegistry.from_settings())
        proposal = await engine.propose(agent, ledger, market)
        if proposal.is_fallback:
            ...
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers: ProviderRegistry,
        parser: Optional[DecisionParser] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        settings: Optional[Settings] = None,
        events: Optional[EventSink] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.providers = providers
        self.settings = settings or get_settings()
        self.parser = parser or DecisionParser()
        self.prompt_builder = prompt_builder or PromptBuilder(
            enriched=self.settings.enriched_market_data,
            use_tools=self.settings.use_analysis_tools,
        )
        self.events = events
        self.metrics = metrics or get_metrics_collector()
        self._sleep = sleep

    async def propose(
        self,
        agent: AgentProfile,
        ledger: LedgerState,
        market: MarketState,
        prior_attempt: Optional[PriorAttempt] = None,
        run_id: Optional[uuid.UUID] = None,
        attempt: int = 1,
    ) -> Proposal:
        """
        Ask the agent's provider for a decision.

        Args:
            agent: Agent profile (watchlist, limits)
            ledger: Current cash and positions
            market: Cycle market snapshot shared by all agents
            prior_attempt: Rejected decision and reason, for a revision attempt
            run_id: Run the decision belongs to (backtests)
            attempt: Agent-level attempt number, stored on the record

        Returns:
            Proposal with a parsed decision, or the fallback HOLD
        """
        context = self.prompt_builder.build(agent, ledger, market, prior_attempt)
        provider = self.providers.resolve(agent)
        max_retries = self.settings.decision_max_retries

        last_failure: Optional[ParseFailure] = None
        last_raw = ""

        for call_attempt in range(1, max_retries + 1):
            started = time.monotonic()
            try:
                outcome = await self._call(
                    provider, agent, market, context, run_id, attempt, call_attempt
                )
            except Exception as e:
                latency_ms = int((time.monotonic() - started) * 1000)
                error_type = classify_error(e)
                logger.warning(
                    f"[{agent.name}] Provider call {call_attempt}/{max_retries} failed: "
                    f"{e} (type: {error_type.value})"
                )
                last_failure = ParseFailure(f"Provider error: {e}")
                await self._record(
                    agent,
                    market,
                    DecisionRecordStatus.PROVIDER_ERROR,
                    prompt=context,
                    error=str(e),
                    attempt=attempt,
                    call_attempt=call_attempt,
                    latency_ms=latency_ms,
                    run_id=run_id,
                )
                if error_type == ErrorType.PERMANENT:
                    logger.error(f"[{agent.name}] Permanent provider error, not retrying")
                    break
                await self._backoff(agent, call_attempt, max_retries)
                continue

            latency_ms = int((time.monotonic() - started) * 1000)
            self.metrics.observe_decision_latency(agent.provider, latency_ms / 1000)
            last_raw = outcome.raw_response

            if isinstance(outcome.result, DecisionParsed):
                decision = outcome.result.decision
                record_id = await self._record(
                    agent,
                    market,
                    DecisionRecordStatus.PARSED,
                    prompt=outcome.prompt,
                    raw_response=outcome.raw_response,
                    decision=decision,
                    attempt=attempt,
                    call_attempt=call_attempt,
                    used_tools=outcome.used_tools,
                    latency_ms=latency_ms,
                    run_id=run_id,
                )
                self.metrics.track_decision(agent.provider, decision.action.value, "parsed")
                logger.info(f"[{agent.name}] Decision: {decision.describe()}")
                return Proposal(
                    decision=decision,
                    raw_response=outcome.raw_response,
                    record_id=record_id,
                    used_tools=outcome.used_tools,
                )

            last_failure = outcome.result
            logger.warning(
                f"[{agent.name}] Unparseable response on call {call_attempt}/{max_retries}: "
                f"{last_failure.reason}"
            )
            await self._record(
                agent,
                market,
                DecisionRecordStatus.PARSE_FAILED,
                prompt=outcome.prompt,
                raw_response=outcome.raw_response,
                error=last_failure.reason,
                attempt=attempt,
                call_attempt=call_attempt,
                used_tools=outcome.used_tools,
                latency_ms=latency_ms,
                run_id=run_id,
            )
            await self._backoff(agent, call_attempt, max_retries)

        fallback = TradeDecision.hold(
            f"Failed to get valid decision after {max_retries} attempts"
            + (f": {last_failure.reason}" if last_failure else "")
        )
        record_id = await self._record(
            agent,
            market,
            DecisionRecordStatus.FALLBACK,
            prompt=context,
            raw_response=last_raw,
            decision=fallback,
            error=last_failure.reason if last_failure else None,
            attempt=attempt,
            call_attempt=max_retries,
            run_id=run_id,
        )
        self.metrics.track_decision(agent.provider, fallback.action.value, "fallback")
        logger.warning(f"[{agent.name}] Falling back to HOLD after {max_retries} attempts")
        return Proposal(
            decision=fallback,
            raw_response=last_raw,
            record_id=record_id,
            failure=last_failure or ParseFailure("No provider attempt succeeded"),
        )

    async def _call(
        self,
        provider: DecisionProvider,
        agent: AgentProfile,
        market: MarketState,
        context: str,
        run_id: Optional[uuid.UUID],
        attempt: int,
        call_attempt: int,
    ) -> _CallOutcome:
        """
        One provider attempt, including the optional analysis round trip.

        Raises:
            Exception: provider failure on either call
        """
        raw = await provider.complete(context)
        result = self.parser.parse(raw)

        if isinstance(result, DecisionParsed):
            return _CallOutcome(result, raw, context)

        if isinstance(result, AnalysisRequested) and self.prompt_builder.use_tools:
            request = self._restrict_to_watchlist(result.request, agent)
            if request is None:
                return _CallOutcome(
                    ParseFailure("Requested analysis tickers are not on the watchlist", raw),
                    raw,
                    context,
                )
            return await self._analysis_round_trip(
                provider, agent, market, context, raw, request, run_id, attempt, call_attempt
            )

        # Bare legacy object, or a request while tools are off
        return _CallOutcome(self.parser.parse_legacy(raw), raw, context)

    async def _analysis_round_trip(
        self,
        provider: DecisionProvider,
        agent: AgentProfile,
        market: MarketState,
        context: str,
        first_raw: str,
        request: AnalysisRequest,
        run_id: Optional[uuid.UUID],
        attempt: int,
        call_attempt: int,
    ) -> _CallOutcome:
        await self._record(
            agent,
            market,
            DecisionRecordStatus.TOOL_REQUEST,
            prompt=context,
            raw_response=first_raw,
            parsed=request.model_dump(mode="json"),
            attempt=attempt,
            call_attempt=call_attempt,
            used_tools=True,
            run_id=run_id,
        )
        safe_publish(
            self.events,
            EventType.ANALYZE,
            {
                "agent_id": str(agent.id),
                "agent_name": agent.name,
                "tickers": request.tickers,
                "metrics": [m.value for m in request.metrics],
                "run_id": str(run_id) if run_id else None,
            },
        )

        if market.features is not None:
            blocks = market.features.analysis_blocks(request)
        else:
            blocks = [f"- {t}: no history available" for t in request.tickers]
        logger.info(
            f"[{agent.name}] Analysis requested for {', '.join(request.tickers)} "
            f"({len(blocks)} blocks)"
        )

        prompt = context + self.prompt_builder.build_analysis_appendix(blocks)
        raw = await provider.complete(prompt)

        result = self.parser.parse(raw)
        if not isinstance(result, DecisionParsed):
            legacy = self.parser.parse_legacy(raw)
            if isinstance(legacy, DecisionParsed):
                result = legacy
            elif isinstance(result, AnalysisRequested):
                result = ParseFailure("Analysis was already provided; a final decision is required", raw)
        return _CallOutcome(result, raw, prompt, used_tools=True)

    def _restrict_to_watchlist(
        self, request: AnalysisRequest, agent: AgentProfile
    ) -> Optional[AnalysisRequest]:
        tickers = [t for t in request.tickers if t in agent.watchlist]
        if not tickers:
            return None
        return AnalysisRequest(tickers=tickers, metrics=request.metrics)

    async def _backoff(self, agent: AgentProfile, call_attempt: int, max_retries: int) -> None:
        if call_attempt >= max_retries:
            return
        delay = calculate_backoff_delay(
            attempt=call_attempt - 1,
            base_delay=self.settings.decision_backoff_base_seconds,
            max_delay=self.settings.decision_backoff_max_seconds,
        )
        logger.info(f"[{agent.name}] Retrying decision in {delay:.1f}s")
        await self._sleep(delay)

    async def _record(
        self,
        agent: AgentProfile,
        market: MarketState,
        status: DecisionRecordStatus,
        prompt: str = "",
        raw_response: str = "",
        decision: Optional[TradeDecision] = None,
        parsed: Optional[dict] = None,
        error: Optional[str] = None,
        attempt: int = 1,
        call_attempt: int = 1,
        used_tools: bool = False,
        latency_ms: int = 0,
        run_id: Optional[uuid.UUID] = None,
    ) -> uuid.UUID:
        """Append a DecisionRecord in its own transaction."""
        if decision is not None and parsed is None:
            parsed = decision.model_dump(mode="json")

        async with self.session_factory() as session, session.begin():
            record = await DecisionRepository(session).create(
                agent_id=agent.id,
                status=status.value,
                created_at=market.as_of,
                prompt=prompt,
                raw_response=raw_response,
                reasoning=decision.reasoning if decision else "",
                attempt=attempt,
                call_attempt=call_attempt,
                action=decision.action.value if decision else None,
                ticker=decision.ticker if decision else None,
                shares=decision.shares if decision else None,
                leverage=decision.leverage if decision else None,
                parsed=parsed,
                error=error,
                used_tools=used_tools,
                latency_ms=latency_ms,
                run_id=run_id,
            )
            return record.id
