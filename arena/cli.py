"""
Command line entry point.

    apex-arena seed
    apex-arena backtest --start 2024-01-01 --end 2024-01-31 [--interval 60] [--no-tools] [--no-enrich]
    apex-arena tick
    apex-arena serve
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import date
from typing import Optional

from pydantic import ValidationError

from .backtest.cancellation import CancellationToken
from .backtest.orchestrator import RunOrchestrator
from .core.config import Settings, get_settings
from .db.database import build_engine, build_session_factory, init_db
from .db.seed import seed_agents
from .gateways.simulated import SimulatedBroker, SimulatedMarketFeed
from .models.run import RunParams
from .services.ai.factory import ProviderRegistry
from .services.cycle import TradingCycle
from .services.decision_engine import DecisionEngine
from .services.events import LoggingEventSink
from .services.prompt_builder import PromptBuilder

logger = logging.getLogger("arena.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


async def _prepare(settings: Settings, database_url: Optional[str]):
    """Create tables and default agents, return the engine and session factory."""
    engine = build_engine(database_url)
    await init_db(engine)
    factory = build_session_factory(engine)
    await seed_agents(factory, settings)
    return engine, factory


async def cmd_seed(args: argparse.Namespace, settings: Settings) -> int:
    engine = build_engine(args.database_url)
    try:
        await init_db(engine)
        created = await seed_agents(build_session_factory(engine), settings)
    finally:
        await engine.dispose()

    print(f"Created {len(created)} agents" + (f": {', '.join(created)}" if created else ""))
    return 0


async def cmd_backtest(args: argparse.Namespace, settings: Settings) -> int:
    params: RunParams = args.params
    engine, factory = await _prepare(settings, args.database_url)

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except NotImplementedError:
        logger.debug("Signal handlers unsupported on this platform")

    orchestrator = RunOrchestrator(
        factory,
        feed=SimulatedMarketFeed(seed=settings.mock_seed),
        broker=SimulatedBroker(seed=settings.mock_seed, rejection_rate=settings.mock_rejection_rate),
        providers=ProviderRegistry.from_settings(settings),
        settings=settings,
        events=LoggingEventSink(),
    )
    try:
        report = await orchestrator.run(params, cancel_token=token)
    except Exception as e:
        logger.error(f"Backtest failed: {e}")
        return 1
    finally:
        await engine.dispose()

    print(json.dumps(report.to_payload(), indent=2))
    return 0


async def cmd_tick(args: argparse.Namespace, settings: Settings) -> int:
    db_engine, factory = await _prepare(settings, args.database_url)
    providers = ProviderRegistry.from_settings(settings)
    decision_engine = DecisionEngine(
        factory,
        providers,
        prompt_builder=PromptBuilder(settings.enriched_market_data, settings.use_analysis_tools),
        settings=settings,
        events=LoggingEventSink(),
    )
    cycle = TradingCycle(
        factory,
        SimulatedMarketFeed(seed=settings.mock_seed),
        SimulatedBroker(seed=settings.mock_seed, rejection_rate=settings.mock_rejection_rate),
        decision_engine,
        settings=settings,
        events=LoggingEventSink(),
    )
    try:
        result = await cycle.execute()
    except Exception as e:
        logger.error(f"Cycle failed: {e}")
        return 1
    finally:
        await db_engine.dispose()

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    uvicorn.run(
        "arena.api.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_level="debug" if settings.is_debug else "info",
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apex-arena",
        description="LLM trading agents competing on a shared simulated market",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL (e.g. sqlite+aiosqlite:///arena.db)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed", help="Create the default agents with fresh ledgers")

    backtest = sub.add_parser(
        "backtest",
        help="Run a backtest over a date range",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    backtest.add_argument("--start", type=_parse_date, required=True, help="First day (YYYY-MM-DD)")
    backtest.add_argument("--end", type=_parse_date, required=True, help="Last day (YYYY-MM-DD)")
    backtest.add_argument(
        "--interval", type=int, default=1440, help="Minutes between cycles (1440 = one per day)"
    )
    backtest.add_argument("--no-tools", action="store_true", help="Disable the analysis round trip")
    backtest.add_argument("--no-enrich", action="store_true", help="Plain prices only in prompts")
    backtest.add_argument(
        "--keep-ledgers", action="store_true", help="Do not reset ledgers before the first day"
    )

    sub.add_parser("tick", help="Run one live trading cycle")

    serve = sub.add_parser("serve", help="Start the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    settings = get_settings()

    if args.command == "serve":
        return cmd_serve(args, settings)

    if args.command == "backtest":
        try:
            args.params = RunParams(
                start_date=args.start,
                end_date=args.end,
                interval_minutes=args.interval,
                enriched=not args.no_enrich,
                use_tools=not args.no_tools,
                reset_ledgers=not args.keep_ledgers,
            )
        except ValidationError as e:
            parser.error(str(e))

    commands = {
        "seed": cmd_seed,
        "backtest": cmd_backtest,
        "tick": cmd_tick,
    }
    return asyncio.run(commands[args.command](args, settings))


if __name__ == "__main__":
    sys.exit(main())
