"""
Bootstrap FREE token balances for users that predate the ledger.

Dry-run by default; pass --live to write.
"""
import argparse
import logging
import os
from typing import Dict, Optional

from tokenbank.core.config import settings
from tokenbank.core.database import create_all_tables
from tokenbank.core.logging import configure_logging
from tokenbank.features.tokens.ledger import initialize_balance
from tokenbank.features.users.service import list_users_without_balance

logger = logging.getLogger("tokenbank.workers.init_token_balances")


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def run_init(*, dry_run: bool = True, batch_size: int = 500) -> Dict:
    user_ids = list_users_without_balance(limit=batch_size)
    initialized = 0
    if not dry_run:
        for user_id in user_ids:
            initialize_balance(user_id)
            initialized += 1

    logger.info(
        "[init] token balances",
        extra={"candidates": len(user_ids), "initialized": initialized, "dry_run": dry_run},
    )
    return {"candidates": len(user_ids), "initialized": initialized, "dry_run": dry_run}


def main() -> int:
    parser = argparse.ArgumentParser(description="Create FREE token balances for users missing one.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Only count candidates.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Create the balances.")
    parser.add_argument("--batch-size", dest="batch_size", type=int, default=500)
    parser.set_defaults(dry_run=_parse_bool(os.getenv("TOKENBANK_INIT_DRY_RUN", "1"), True))
    args = parser.parse_args()

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    create_all_tables()
    print(run_init(dry_run=args.dry_run, batch_size=args.batch_size))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
