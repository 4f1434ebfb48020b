"""
Stream Meter CLI

Commands:
  serve     - Run the metering API server
  demo      - Fast-forward a metering session in virtual time
  stats     - Show the settlement audit trail from the database
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

import structlog


def configure_logging(level: Optional[str] = None, json_logs: bool = False) -> None:
    """Configure structlog for console output."""
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def cmd_serve(args):
    """Run the metering API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Stream Meter on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


async def run_demo(args) -> int:
    """Run one session against a virtual clock and print its progress."""
    from billing.gateway import SimulatedLedgerGateway
    from metering.amounts import format_amount, parse_amount
    from metering.checkpoint import CheckpointStore
    from metering.clock import Clock, ManualScheduler
    from metering.config import EngineConfig
    from metering.faults import NoFaults, RandomFaultSimulator
    from metering.session import SessionController, SessionStatus
    from persistence.kv import MemoryKVStore

    scheduler = ManualScheduler()
    config = EngineConfig.from_env()
    faults = (
        RandomFaultSimulator(args.fault_probability, seed=args.seed)
        if args.fault_probability > 0
        else NoFaults()
    )

    gateway = None
    if args.variant == "financial":
        gateway = SimulatedLedgerGateway(viewer=args.viewer, balance=parse_amount(args.balance))
        if args.fail_settlements:
            gateway.fail_next(args.fail_settlements)

    controller = SessionController(
        gateway=gateway,
        checkpoint_store=CheckpointStore(MemoryKVStore()),
        config=config,
        clock=Clock(scheduler),
        fault_simulator=faults,
        wall_clock=lambda: scheduler.now_ms,
    )

    result = controller.start(args.content, rate_per_minute=parse_amount(args.rate), viewer=args.viewer)
    if not result.success:
        print(f"Start failed: {result.error.user_message}")
        return 1

    print(f"Session {controller.session_id} ({args.variant}) streaming {args.content}")
    print(f"  Rate: {args.rate}/min, duration {args.duration}s")
    print("-" * 60)

    duration_ms = args.duration * 1000
    step_ms = args.report_every * 1000
    elapsed = 0
    live = (SessionStatus.ACTIVE, SessionStatus.RECONNECTING)
    while elapsed < duration_ms and controller.status in live:
        step = min(step_ms, duration_ms - elapsed)
        await scheduler.advance(step)
        elapsed += step
        stats = controller.get_stats()
        print(
            f"t={elapsed // 1000:>5}s  {stats.status.value:<12} "
            f"live={format_amount(stats.total_accrued, places=6)}  "
            f"confirmed={format_amount(stats.confirmed_value, places=6)}  "
            f"settled={format_amount(stats.total_settled, places=6)}"
        )

    if controller.status in live:
        result = await controller.stop()
        if not result.success:
            print(f"Final settlement failed: {result.error.user_message}")

    stats = controller.get_stats()
    print("-" * 60)
    print(f"Status: {stats.status.value}")
    print(f"Accrued: {format_amount(stats.total_accrued, places=6)}")
    print(f"Settled: {format_amount(stats.total_settled, places=6)} in {stats.settlement_count} settlement(s)")
    print(f"Pending: {format_amount(stats.pending_amount, places=6)}")
    if isinstance(faults, RandomFaultSimulator):
        print(f"Disconnects injected: {faults.injected}")
    if stats.last_error_kind:
        print(f"Last error: {stats.last_error_kind} ({stats.last_error_message})")
    return 0 if stats.status != SessionStatus.FAILED else 1


def cmd_demo(args):
    """Fast-forward a metering session."""
    sys.exit(asyncio.run(run_demo(args)))


def cmd_stats(args):
    """Show settlement summaries."""
    from metering.amounts import format_amount
    from persistence.database import get_database
    from persistence.repository import SettlementRepository

    repository = SettlementRepository(get_database(args.database))
    session_ids = [args.session] if args.session else repository.list_sessions()

    if not session_ids:
        print("No settlements recorded")
        return

    print("Stream Meter Settlements")
    print("=" * 60)
    for session_id in session_ids:
        summary = repository.get_session_summary(session_id)
        print(f"Session: {session_id}")
        print(f"  Attempts: {summary['attempts']} "
              f"({summary['successes']} ok, {summary['failures']} failed)")
        print(f"  Total settled: {format_amount(summary['total_settled'], places=6)}")

    failures = repository.get_failures(limit=args.failures)
    if failures:
        print("Recent failures:")
        for record in failures:
            print(f"  {record.attempt_id} {record.session_id} "
                  f"amount={format_amount(record.amount, places=6)} error={record.error_message}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Stream Meter - Streaming metering and settlement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Render logs as JSON")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # demo
    demo_parser = subparsers.add_parser("demo", help="Run a virtual-time session")
    demo_parser.add_argument("--variant", choices=["score", "financial"], default="financial")
    demo_parser.add_argument("--content", default="demo-content")
    demo_parser.add_argument("--viewer", default="demo-viewer")
    demo_parser.add_argument("--rate", default="1", help="Units per minute, e.g. 0.5")
    demo_parser.add_argument("--balance", default="1000", help="Viewer balance in units")
    demo_parser.add_argument("--duration", type=int, default=120, help="Seconds to stream")
    demo_parser.add_argument("--report-every", type=int, default=5, help="Seconds between reports")
    demo_parser.add_argument("--fault-probability", type=float, default=0.0,
                             help="Disconnect probability per tick")
    demo_parser.add_argument("--seed", type=int, default=None)
    demo_parser.add_argument("--fail-settlements", type=int, default=0,
                             help="Reject the first N settlements")

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show settlement summary")
    stats_parser.add_argument("--session", help="Session id (default: all)")
    stats_parser.add_argument("--database", default=None, help="sqlite:/// URL (default: DATABASE_URL)")
    stats_parser.add_argument("--failures", type=int, default=10, help="Recent failures to list")

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    configure_logging(args.log_level, args.json_logs)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "demo":
        cmd_demo(args)
    elif args.command == "stats":
        cmd_stats(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
