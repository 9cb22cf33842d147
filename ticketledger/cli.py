"""Command line entry points for the ledger background jobs."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Sequence

from ticketledger.core.config import Settings, get_settings
from ticketledger.core.logging import configure_logging, init_tracer, shutdown_tracer
from ticketledger.reconciliation.worker import run_worker_loop
from ticketledger.runtime import Runtime, build_runtime
from ticketledger.tickets.state import VerificationMode

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ticketledger", description="Ticket revocation ledger jobs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Drain the blockchain revocation queue")
    worker.add_argument("--once", action="store_true", help="Process a single batch and exit")
    worker.add_argument("--interval", type=float, default=None, help="Seconds between batches")

    sync = subparsers.add_parser("sync", help="Pull ledger state into the database")
    sync.add_argument("--limit", type=int, default=None)
    sync.add_argument("--force", action="store_true", help="Ignore the last sync timestamp")

    verify = subparsers.add_parser("verify", help="Compare database and ledger state")
    verify.add_argument("--limit", type=int, default=None)
    verify.add_argument("--mode", choices=[mode.value for mode in VerificationMode], default=VerificationMode.ALL.value)
    verify.add_argument("--no-details", action="store_true", help="Omit the per-token report")
    verify.add_argument("--no-contract-info", action="store_true", help="Skip contract metadata")
    return parser


def _print_json(payload: dict) -> None:
    json.dump(payload, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


async def _run_worker(runtime: Runtime, args: argparse.Namespace, settings: Settings) -> int:
    worker = runtime.worker
    if worker is None:
        logger.error("Ledger is not configured; set ETHEREUM_RPC_URL and REVOCATION_CONTRACT_ADDRESS")
        return 2
    if args.once:
        result = await worker.process_batch()
        _print_json(result.to_payload())
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:  # pragma: no cover - platform specific
            pass
    interval = args.interval if args.interval is not None else settings.worker_interval_seconds
    await run_worker_loop(worker, interval=interval, stop_event=stop_event)
    return 0


async def _run_sync(runtime: Runtime, args: argparse.Namespace, settings: Settings) -> int:
    if runtime.reconciler is None:
        logger.error("Ledger is not configured; blockchain sync is unavailable")
        return 2
    report = await runtime.reconciler.sync(limit=args.limit or settings.sync_default_limit, force_resync=args.force)
    _print_json(report.to_payload())
    return 1 if report.failed_syncs else 0


async def _run_verify(runtime: Runtime, args: argparse.Namespace, settings: Settings) -> int:
    if runtime.verifier is None:
        logger.error("Ledger is not configured; token verification is unavailable")
        return 2
    report = await runtime.verifier.verify(
        limit=args.limit or settings.verify_default_limit,
        mode=VerificationMode(args.mode),
        include_detailed_report=not args.no_details,
        check_contract_state=not args.no_contract_info,
    )
    _print_json(report.to_payload())
    return 1 if report.inconsistencies_found or report.verification_errors else 0


_COMMANDS = {
    "worker": _run_worker,
    "sync": _run_sync,
    "verify": _run_verify,
}


async def run(args: argparse.Namespace, settings: Settings) -> int:
    runtime = await build_runtime(settings)
    try:
        return await _COMMANDS[args.command](runtime, args, settings)
    finally:
        await runtime.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    tracer_provider = init_tracer(settings)
    try:
        return asyncio.run(run(args, settings))
    finally:
        shutdown_tracer(tracer_provider)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
