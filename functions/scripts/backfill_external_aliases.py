"""
Merge external app user ids into user records and re-sync their
subscriptions.

Reads a CSV (comma, tab or semicolon delimited) with userId and
externalAppUserId columns, optionally email and username.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing.backfill import backfill_external_aliases
from billing.config import resolve_billing_config
from billing.dependencies import get_billing_client, get_store
from billing.errors import BillingError


logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill external aliases")
    parser.add_argument("csv_path", type=Path, help="Path to the alias table")
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Use the Stripe test keys instead of live",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    config = resolve_billing_config("http://localhost" if args.test_mode else None)

    try:
        result = backfill_external_aliases(
            get_store(),
            get_billing_client(config),
            config,
            csv_text=args.csv_path.read_text(encoding="utf-8"),
        )
    except BillingError as e:
        logger.error("Alias backfill failed: %s", e.message)
        return 1

    failures = [row for row in result["results"] if not row["ok"]]
    for row in result["results"]:
        print(json.dumps(row))
    logger.info("Processed %d entries, %d failed", result["processed"], len(failures))
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
