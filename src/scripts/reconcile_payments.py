# src/scripts/reconcile_payments.py
#
# 実行: python -m src.scripts.reconcile_payments

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import asyncpg

from src.core.config import (
    DATABASE_URL,
    PENDING_PAYMENT_GRACE_MINUTES,
    PROCESSED_EVENTS_RETENTION_DAYS,
)
from src.core import db
from src.core.errors import MarketplaceError
from src.services.stripe_service import confirm_session

logger = logging.getLogger("reconcile-payments")


async def reconcile_pending_payments() -> dict:
    """
    Stripe の Checkout Session を直接確認し、
    Webhook が届かなかった pending の支払いを確定させる。
    """
    older_than = datetime.now(timezone.utc) - timedelta(minutes=PENDING_PAYMENT_GRACE_MINUTES)
    async with db.connection() as conn:
        pending = await db.list_pending_payments(conn, "stripe", older_than)

    logger.info(f"Found {len(pending)} pending Stripe payments older than {PENDING_PAYMENT_GRACE_MINUTES} minutes.")

    summary = {"checked": 0, "inserted": 0, "already_recorded": 0, "not_paid": 0, "failed": 0}
    for payment in pending:
        session_id = payment["provider_ref"]
        summary["checked"] += 1
        try:
            status = await confirm_session(session_id)
        except (MarketplaceError, asyncpg.PostgresError) as e:
            logger.error(f"  Session {session_id} (claim {payment['claim_id']}) failed: {e}")
            summary["failed"] += 1
            continue

        summary[status] += 1
        logger.info(f"  Session {session_id} (claim {payment['claim_id']}): {status}")

    return summary


async def main():
    logger.info("Starting payment reconciliation...")
    await db.init_db(DATABASE_URL)

    try:
        summary = await reconcile_pending_payments()

        # 古い Webhook 処理記録の削除
        async with db.transaction() as conn:
            purged = await db.purge_processed_events(conn, PROCESSED_EVENTS_RETENTION_DAYS)
        logger.info(f"Purged {purged} processed Stripe events.")
        logger.info(f"Reconciliation summary: {summary}")
    finally:
        await db.close_db()
        logger.info("Reconciliation finished.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )
    asyncio.run(main())
