"""
Run manager - owns background run tasks for the API.

The API never awaits a run; ``start`` returns as soon as the run row exists
and the orchestrator keeps going in an ``asyncio.Task``. Only one run is
active at a time because every run resets the shared simulated feed,
broker and ledgers.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..backtest.cancellation import CancellationToken
from ..backtest.orchestrator import RunOrchestrator
from ..core.config import Settings, get_settings
from ..core.errors import RunStateError
from ..gateways.simulated import SimulatedBroker, SimulatedMarketFeed
from ..models.run import RunParams
from ..services.ai.factory import ProviderRegistry
from ..services.events import BroadcastEventSink, CompositeEventSink, LoggingEventSink

logger = logging.getLogger(__name__)


class RunManager:
    """
    Starts, tracks and cancels background runs.

    Usage:
        manager = RunManager(orchestrator)
        run_id = await manager.start(params)
        manager.cancel(run_id)
        await manager.shutdown()
    """

    def __init__(self, orchestrator: RunOrchestrator):
        self.orchestrator = orchestrator
        # Only unfinished runs; entries are dropped when the task ends
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}
        self._tokens: dict[uuid.UUID, CancellationToken] = {}
        # Task launched by ``start`` that has not created its run row yet
        self._starting: Optional[asyncio.Task] = None

    @property
    def active_run_ids(self) -> list[uuid.UUID]:
        return [run_id for run_id, task in self._tasks.items() if not task.done()]

    def is_running(self, run_id: uuid.UUID) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def start(self, params: RunParams) -> uuid.UUID:
        """
        Launch a run in the background.

        The slot is claimed before the first await, so concurrent calls
        cannot both pass the single-run check.

        Returns:
            The new run's id, once its row is committed

        Raises:
            RunStateError: another run is still active or starting
            Exception: whatever stopped the run before its row was created
        """
        if self._starting is not None:
            raise RunStateError("A run is already starting")
        if self.active_run_ids:
            raise RunStateError(
                "A run is already in progress",
                details={"run_id": str(self.active_run_ids[0])},
            )

        token = CancellationToken()
        created: asyncio.Future = asyncio.get_running_loop().create_future()
        task: asyncio.Task

        def on_run_created(run_id: uuid.UUID) -> None:
            self._tasks[run_id] = task
            self._tokens[run_id] = token
            if not created.done():
                created.set_result(run_id)

        task = asyncio.create_task(
            self.orchestrator.run(params, cancel_token=token, on_run_created=on_run_created)
        )
        self._starting = task

        def on_done(finished: asyncio.Task) -> None:
            if self._starting is finished:
                self._starting = None
            for run_id in [r for r, t in self._tasks.items() if t is finished]:
                del self._tasks[run_id]
                self._tokens.pop(run_id, None)

            if finished.cancelled():
                error: Optional[BaseException] = asyncio.CancelledError()
            else:
                error = finished.exception()
            if error is not None and not created.done():
                created.set_exception(error)
            elif error is not None:
                logger.warning(f"Background run ended with {type(error).__name__}: {error}")

        task.add_done_callback(on_done)

        try:
            run_id = await created
        finally:
            if self._starting is task:
                self._starting = None
        logger.info(f"Run {run_id} started in background")
        return run_id

    def cancel(self, run_id: uuid.UUID, reason: Optional[str] = None) -> bool:
        """
        Request cooperative cancellation.

        Returns:
            False if the run is unknown or already finished
        """
        if not self.is_running(run_id):
            return False
        token = self._tokens[run_id]
        if reason:
            token.cancel(reason)
        else:
            token.cancel()
        logger.info(f"Run {run_id} cancellation requested")
        return True

    async def wait(self, run_id: uuid.UUID) -> None:
        """Wait for a run task to finish (errors are already recorded on the run)."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel every active run and wait for them to settle."""
        pending = [self._tasks[r] for r in self.active_run_ids]
        if self._starting is not None and self._starting not in pending:
            pending.append(self._starting)
        for run_id in self.active_run_ids:
            self._tokens[run_id].cancel("Server shutting down")
        if not pending:
            return

        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        logger.info(f"Run manager stopped ({len(done)} runs settled, {len(still_running)} cancelled)")


@dataclass
class ArenaRuntime:
    """Collaborators shared by the API process"""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    broadcaster: BroadcastEventSink
    orchestrator: RunOrchestrator
    runs: RunManager


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    providers: Optional[ProviderRegistry] = None,
) -> ArenaRuntime:
    """
    Select the collaborators once and wire them together.

    Args:
        session_factory: Database session factory
        settings: Application settings
        providers: Decision providers (defaults to the configured ones)
    """
    settings = settings or get_settings()
    broadcaster = BroadcastEventSink(queue_size=settings.event_queue_size)
    orchestrator = RunOrchestrator(
        session_factory,
        feed=SimulatedMarketFeed(seed=settings.mock_seed),
        broker=SimulatedBroker(seed=settings.mock_seed, rejection_rate=settings.mock_rejection_rate),
        providers=providers or ProviderRegistry.from_settings(settings),
        settings=settings,
        events=CompositeEventSink(broadcaster, LoggingEventSink()),
    )
    return ArenaRuntime(
        settings=settings,
        session_factory=session_factory,
        broadcaster=broadcaster,
        orchestrator=orchestrator,
        runs=RunManager(orchestrator),
    )
