#!/usr/bin/env python3
"""Settle stale pending payments whose STK callback never arrived.

Meant to be run on a timer (cron, platform scheduler). Each payment that has
been pending longer than PENDING_PAYMENT_TIMEOUT_MINUTES is checked with the
STK status query and moved to its final state.
"""

from __future__ import annotations

import argparse
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.logging import configure_logging
from app.dependencies import get_mpesa_client
from app.services.mpesa import MpesaClient, MpesaError
from app.services.payments import list_stale_pending_payments
from app.services.reconciliation import reconcile_from_status_query


logger = logging.getLogger(__name__)


def sweep(db, client: MpesaClient, *, older_than: datetime, limit: int = 100) -> Counter:
    outcomes: Counter = Counter()
    for payment in list_stale_pending_payments(db, older_than, limit=limit):
        try:
            result = reconcile_from_status_query(db, client, payment)
        except MpesaError as exc:
            logger.warning("Status query failed payment_id=%s: %s", payment.id, exc.message)
            outcomes["error"] += 1
            continue
        outcomes[result.outcome.value] += 1
    return outcomes


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=settings.pending_payment_timeout_minutes,
        help="Only check payments pending for at least this long.",
    )
    parser.add_argument("--limit", type=int, default=100, help="Maximum payments to check in one run.")
    args = parser.parse_args()

    configure_logging()
    older_than = datetime.now(timezone.utc) - timedelta(minutes=max(0, args.older_than_minutes))
    db = SessionLocal()
    try:
        outcomes = sweep(db, get_mpesa_client(), older_than=older_than, limit=args.limit)
    finally:
        db.close()
    logger.info("Reconciled pending payments: %s", dict(outcomes) or "none")


if __name__ == "__main__":
    main()
