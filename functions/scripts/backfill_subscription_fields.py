"""
Backfill userId / username / userEmail on subscription records.

Walks the subscriptions collection one page at a time. Pass --all to keep
going until every page has been processed.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing.backfill import backfill_subscription_fields
from billing.dependencies import get_store
from billing.errors import BillingError
from shared.json_utils import convert_keys


logger = logging.getLogger(__name__)

TOTALED_FIELDS = ("scanned", "processed", "updated", "skipped", "user_not_found")


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill subscription fields")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Records per page (defaults to BACKFILL_DEFAULT_LIMIT)",
    )
    parser.add_argument(
        "--start-after",
        default=None,
        help="Resume after this subscription document id",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Keep paging until the collection is exhausted",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the updates without writing them",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    store = get_store()

    totals = dict.fromkeys(TOTALED_FIELDS, 0)
    cursor = args.start_after
    while True:
        try:
            report = backfill_subscription_fields(
                store, limit=args.limit, dry_run=args.dry_run, start_after=cursor
            )
        except BillingError as e:
            logger.error("Backfill failed after cursor %s: %s", cursor, e.message)
            return 1

        for name in TOTALED_FIELDS:
            totals[name] += getattr(report, name)
        if args.dry_run:
            for update in report.updates:
                print(json.dumps(update))

        cursor = report.next_cursor
        if not args.all or not cursor:
            break
        logger.info("Continuing after %s", cursor)

    logger.info("Totals: %s", json.dumps(convert_keys(totals, "snake_to_camel")))
    if cursor:
        logger.info("Next page starts after %s", cursor)
    return 0


if __name__ == "__main__":
    sys.exit(main())
