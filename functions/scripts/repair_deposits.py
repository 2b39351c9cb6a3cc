"""
Replay captured prize deposits whose assignments were never marked funded.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing.config import resolve_billing_config
from billing.dependencies import get_billing_client, get_store
from billing.errors import BillingError
from billing.repair import DEFAULT_LOOKBACK_HOURS, repair_deposits


logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Repair missed prize deposits")
    parser.add_argument(
        "--lookback-hours",
        type=float,
        default=DEFAULT_LOOKBACK_HOURS,
        help="How far back to list payment intents",
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Use the Stripe test keys instead of live",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    config = resolve_billing_config("http://localhost" if args.test_mode else None)

    try:
        result = repair_deposits(
            get_store(), get_billing_client(config), lookback_hours=args.lookback_hours
        )
    except BillingError as e:
        logger.error("Deposit repair failed: %s", e.message)
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
