#!/usr/bin/env python3
"""
Subscription Period Repair Script

Finds non-canceled subscriptions whose period end is not after the start
(legacy rows written before period normalization) and repairs them.

Strategy:
1. Run the reconciliation diagnostic with auto-correct (Stripe wins)
2. Rows Stripe no longer has are canceled by the diagnostic
3. If Stripe cannot be reached, extend the stored period by one interval

Usage:
    python -m scripts.repair_subscription_periods              # Repair up to 100 rows
    python -m scripts.repair_subscription_periods --limit 500  # Repair up to 500 rows
    python -m scripts.repair_subscription_periods --dry-run    # Report only
"""

import asyncio
import argparse
import logging

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from billing_sync.config.plans import build_plan_catalog
from billing_sync.domain.subscription import ReconciliationAction, SubscriptionWrite
from billing_sync.domain.timestamps import normalize_period
from billing_sync.infrastructure.db.database import close_db, get_privileged_client
from billing_sync.infrastructure.db.repositories import SubscriptionRepository
from billing_sync.infrastructure.exceptions import DatabaseError
from billing_sync.infrastructure.payments.stripe_service import get_stripe_service
from billing_sync.infrastructure.services.cancellation_service import CancellationEnforcer
from billing_sync.infrastructure.services.event_handlers import SubscriptionEventHandlers
from billing_sync.infrastructure.services.reconciliation_service import ReconciliationService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def repair_subscription_periods(
    repo: SubscriptionRepository,
    service: ReconciliationService,
    limit: int = 100,
    dry_run: bool = False,
) -> dict:
    """
    Repair subscriptions with an empty or inverted billing period.

    Args:
        repo: Repository on the privileged client
        service: Reconciliation service used for the Stripe comparison
        limit: Maximum number of rows to examine
        dry_run: Only report what would change

    Returns:
        Dict with repair statistics
    """
    stats = {
        "found": 0,
        "corrected": 0,
        "fallback": 0,
        "unchanged": 0,
        "failed": 0,
    }

    rows = await repo.find_with_invalid_periods(limit=limit)
    stats["found"] = len(rows)

    if not rows:
        logger.info("No subscriptions with invalid periods found")
        return stats

    logger.info(f"Found {len(rows)} subscriptions with invalid periods (dry_run={dry_run})")

    for row in rows:
        external_id = row.external_subscription_id
        result = await service.diagnose(
            external_subscription_id=external_id,
            auto_correct=not dry_run,
        )

        if result.action == ReconciliationAction.CORRECTED:
            stats["corrected"] += 1
            logger.info(f"  {external_id}: {result.note}")
            continue

        if result.external_status is not None:
            # Stripe answered; either in sync or flagged in dry-run mode.
            stats["unchanged"] += 1
            logger.info(f"  {external_id}: {result.action.value} ({result.note})")
            continue

        # Stripe unavailable: repair from the stored values alone.
        start, end = normalize_period(
            row.current_period_start,
            row.current_period_end,
            is_annual=False,
        )
        if dry_run:
            logger.info(f"  {external_id}: would set period {start}..{end} ({result.note})")
            stats["fallback"] += 1
            continue

        try:
            await repo.upsert(SubscriptionWrite(
                external_subscription_id=external_id,
                current_period_start=start,
                current_period_end=end,
            ))
            stats["fallback"] += 1
            logger.info(f"  {external_id}: period set to {start}..{end} without Stripe")
        except DatabaseError as e:
            stats["failed"] += 1
            logger.error(f"  {external_id}: repair failed: {e.message}")

    return stats


async def main(limit: int, dry_run: bool) -> dict:
    repo = SubscriptionRepository(get_privileged_client())
    enforcer = CancellationEnforcer(repo)
    provider = get_stripe_service()
    handlers = SubscriptionEventHandlers(repo, provider, enforcer, build_plan_catalog())
    service = ReconciliationService(repo, provider, enforcer, handlers)

    try:
        return await repair_subscription_periods(repo, service, limit=limit, dry_run=dry_run)
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Repair subscriptions with invalid billing periods")
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of subscriptions to examine (default: 100)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing",
    )
    args = parser.parse_args()

    stats = asyncio.run(main(limit=args.limit, dry_run=args.dry_run))

    print("\n" + "=" * 50)
    print("REPAIR COMPLETE")
    print("=" * 50)
    for key, value in stats.items():
        print(f"  {key}: {value}")
