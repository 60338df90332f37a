#!/usr/bin/env python3
"""
Rollover Expiry Sweep

Writes expire entries for subscription credit batches whose rollover window has
passed. Safe to run repeatedly: batches already retired are skipped.

Usage:
    # Sweep once as of now (for cron)
    python3 scripts/rollover_sweep.py

    # Sweep as of a specific instant
    python3 scripts/rollover_sweep.py --as-of 2026-11-01T00:00:00+00:00

    # Report what would expire without writing
    python3 scripts/rollover_sweep.py --dry-run

    # Keep running, sweeping every hour
    python3 scripts/rollover_sweep.py --loop --interval 3600
"""

import argparse
import asyncio
import sys
from datetime import UTC, datetime

from sqlalchemy import distinct, select

from inspect_billing.db.models import LedgerEntry
from inspect_billing.db.session import close_engines, get_write_session
from inspect_billing.models.domain import SweepResult
from inspect_billing.observability import get_logger, setup_logging
from inspect_billing.services.balance import lapsed_batches
from inspect_billing.services.ledger import LedgerStore
from inspect_billing.services.subscriptions import SubscriptionService

setup_logging()
logger = get_logger("rollover_sweep")


async def preview(as_of: datetime) -> SweepResult:
    """Count what a sweep would retire, without writing."""
    async with get_write_session() as session:
        result = await session.execute(
            select(distinct(LedgerEntry.organization_id)).where(
                LedgerEntry.expires_at.is_not(None), LedgerEntry.expires_at < as_of
            )
        )
        organization_ids = list(result.scalars().all())

        store = LedgerStore(session)
        batches = 0
        credits = 0
        for organization_id in organization_ids:
            lapsed = lapsed_batches(await store.list_by_organization(organization_id), as_of)
            for batch in lapsed:
                logger.info(
                    "sweep_preview_batch",
                    organization_id=str(organization_id),
                    batch_id=str(batch.entry_id),
                    expires_at=batch.expires_at.isoformat(),
                    remaining=batch.remaining,
                )
            batches += len(lapsed)
            credits += sum(batch.remaining for batch in lapsed)

    return SweepResult(
        organizations_checked=len(organization_ids),
        batches_expired=batches,
        credits_expired=credits,
    )


async def sweep_once(as_of: datetime | None, dry_run: bool) -> SweepResult:
    """Run one sweep pass."""
    moment = as_of or datetime.now(UTC)
    if dry_run:
        result = await preview(moment)
    else:
        async with get_write_session() as session:
            result = await SubscriptionService(session).sweep_expired(moment)

    logger.info(
        "rollover_sweep_pass",
        as_of=moment.isoformat(),
        dry_run=dry_run,
        organizations_checked=result.organizations_checked,
        batches_expired=result.batches_expired,
        credits_expired=result.credits_expired,
    )
    return result


async def run(args: argparse.Namespace) -> None:
    try:
        if not args.loop:
            await sweep_once(args.as_of, args.dry_run)
            return

        logger.info("rollover_sweep_loop_started", interval_seconds=args.interval)
        while True:
            try:
                await sweep_once(None, args.dry_run)
            except Exception as exc:
                logger.error("rollover_sweep_failed", error=str(exc), exc_info=True)
            await asyncio.sleep(args.interval)
    finally:
        await close_engines()


def _parse_instant(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Expire subscription credits past their rollover window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--as-of", type=_parse_instant, help="Sweep instant (default: now)")
    parser.add_argument(
        "--dry-run", action="store_true", help="Report lapsed batches without writing"
    )
    parser.add_argument("--loop", action="store_true", help="Keep sweeping on an interval")
    parser.add_argument(
        "--interval", type=int, default=3600, help="Seconds between sweeps with --loop"
    )

    args = parser.parse_args()
    if args.loop and args.as_of:
        parser.error("--as-of cannot be combined with --loop")

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("rollover_sweep_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
