"""Command line entry point: ``python -m supermolt_arena <command>``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from datetime import UTC, datetime, timedelta

from supermolt_arena.arena import AgentIdentity, Arena
from supermolt_arena.config import Settings, get_settings

logger = logging.getLogger("supermolt_arena")


def _parse_start(value: str) -> datetime:
    start = datetime.fromisoformat(value)
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    return start


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="supermolt-arena", description="SuperMolt Arena core")
    parser.add_argument("--dry-run", action="store_true", help="Plan payouts without broadcasting transfers")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Monitor agent wallets and run the epoch scheduler")
    sub.add_parser("tick", help="Run one epoch scheduler pass and exit")
    sub.add_parser("init-db", help="Create database tables (local sqlite setups)")
    sub.add_parser("status", help="Show the active epoch and treasury status")

    distribute = sub.add_parser("distribute", help="Retry reward distribution for an ENDED epoch")
    distribute.add_argument("epoch_id", type=int)

    season = sub.add_parser("schedule-season", help="Create back-to-back UPCOMING epochs")
    season.add_argument("count", type=int)
    season.add_argument("--chain", default="solana")
    season.add_argument("--start", type=_parse_start, help="ISO-8601 start (UTC if no offset)")
    season.add_argument("--duration-hours", type=float)

    register = sub.add_parser("register-agent", help="Register an agent wallet")
    register.add_argument("agent_id")
    register.add_argument("wallet_address")
    register.add_argument("--chain", default="solana")

    remove = sub.add_parser("remove-agent", help="Remove an agent from monitoring")
    remove.add_argument("agent_id")
    return parser


async def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    arena = Arena(settings)

    if args.command == "run":
        await arena.run()
        return 0

    async with arena:
        if args.command == "init-db":
            await arena.db.init_schema_async()
            return 0

        if args.command == "tick":
            report = await arena.lifecycle.tick()
            if report.skipped:
                print("tick skipped: lease held by another process")
            else:
                print(
                    f"activated={report.activated} ended={report.ended} scored={report.scored} "
                    f"paid={report.paid} awaiting_payment={report.awaiting_payment} errors={report.errors}"
                )
            return 1 if report.errors else 0

        if args.command == "distribute":
            result = await arena.lifecycle.retry_distribution(args.epoch_id)
            for t in result.transfers:
                print(f"rank {t.rank:>3} {t.agent_id:<24} {t.amount:>12} {t.status.value:<10} {t.tx_signature or ''}")
            print(f"all confirmed: {result.all_confirmed}")
            return 0 if result.all_confirmed else 1

        if args.command == "schedule-season":
            duration = timedelta(hours=args.duration_hours) if args.duration_hours else None
            epochs = await arena.lifecycle.schedule_season(
                args.count,
                chain=args.chain,
                start_at=args.start,
                duration=duration,
            )
            for e in epochs:
                print(f"{e.id:>5} {e.name:<16} {e.start_at.isoformat()} -> {e.end_at.isoformat()}")
            return 0

        if args.command == "register-agent":
            agent = await arena.register_agent(AgentIdentity(args.agent_id, args.wallet_address, args.chain))
            print(f"registered {agent.agent_id} ({agent.wallet_address} on {agent.chain})")
            return 0

        if args.command == "remove-agent":
            removed = await arena.remove_agent(args.agent_id)
            print("removed" if removed else f"unknown agent {args.agent_id}")
            return 0 if removed else 1

        if args.command == "status":
            active = await arena.lifecycle.get_active_epoch(settings.stream.chain)
            treasury = await arena.distributor.treasury_status()
            if active is None:
                print("active epoch: none")
            else:
                print(f"active epoch: {active.id} {active.name} (ends {active.end_at.isoformat()})")
            print(f"treasury balance: {treasury.balance if treasury.balance is not None else 'unavailable'}")
            print(f"allocated (unconfirmed): {treasury.allocated_pending}")
            print(f"distributed: {treasury.distributed}")
            return 0

    raise ValueError(f"unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings.validate_requirements(command=args.command)
    except ValueError as e:
        logger.error("%s", e)
        return 2

    with contextlib.suppress(KeyboardInterrupt):
        return asyncio.run(_run_command(args, settings))
    return 130


if __name__ == "__main__":
    sys.exit(main())
