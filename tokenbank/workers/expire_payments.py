"""
Expiry sweep for pending payments.

Lazy expiry already covers every read path; this job keeps the pending
set (and the amount suffixes it holds) small between reads.
Run once, or with --interval to loop.
"""
import argparse
import logging
import os
import time
from typing import Dict, Optional

from tokenbank.core.config import settings
from tokenbank.core.database import create_all_tables
from tokenbank.core.logging import configure_logging
from tokenbank.features.payments.service import expire_overdue_payments

logger = logging.getLogger("tokenbank.workers.expire_payments")


def run_once() -> Dict:
    expired = expire_overdue_payments()
    logger.info("[expire] sweep complete", extra={"expired": expired})
    return {"expired": expired}


def run_forever(interval_seconds: int, max_runs: Optional[int] = None) -> int:
    runs = 0
    while max_runs is None or runs < max_runs:
        run_once()
        runs += 1
        if max_runs is not None and runs >= max_runs:
            break
        time.sleep(interval_seconds)
    return runs


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire overdue WAITING_PAYMENT payments.")
    parser.add_argument(
        "--interval",
        type=int,
        default=int(os.getenv("PAYMENT_EXPIRY_INTERVAL_SECONDS", "0")),
        help="Seconds between sweeps; 0 runs a single sweep.",
    )
    args = parser.parse_args()

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    create_all_tables()
    if args.interval > 0:
        run_forever(args.interval)
    else:
        print(run_once())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
