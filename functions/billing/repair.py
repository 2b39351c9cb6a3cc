# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

"""
Replays captured prize deposits whose funding never reached the prize
assignment, e.g. because the webhook was not delivered.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from billing.errors import BillingError, ValidationError
from billing.store import DocumentStore
from billing.stripe_client import BillingClient
from billing.webhook import is_prize_deposit, process_prize_deposit
from shared.firebase_constants import PRIZE_ASSIGNMENTS_COLLECTION

logger = logging.getLogger(__name__)

SUCCEEDED_STATUS = "succeeded"
DEFAULT_LOOKBACK_HOURS = 24


def _needs_repair(assignment: dict | None) -> bool:
    return bool(assignment) and not (
        assignment.get("depositedAt") and assignment.get("depositedBy")
    )


def repair_deposits(
    store: DocumentStore,
    billing: BillingClient,
    lookback_hours: int | float = DEFAULT_LOOKBACK_HOURS,
    now: datetime | None = None,
) -> dict:
    if isinstance(lookback_hours, bool) or not isinstance(lookback_hours, (int, float)):
        raise ValidationError("lookbackHours must be a number")
    if lookback_hours <= 0:
        raise ValidationError("lookbackHours must be positive")

    now = now or datetime.now(timezone.utc)
    since = int((now - timedelta(hours=lookback_hours)).timestamp())
    payments = billing.list_payment_intents(created_gte=since)

    repaired = []
    for payment in payments:
        if payment.get("status") != SUCCEEDED_STATUS or not is_prize_deposit(payment):
            continue
        assignment_id = (payment.get("metadata") or {}).get("prizeAssignmentId")
        if not assignment_id:
            continue
        assignment = store.get(PRIZE_ASSIGNMENTS_COLLECTION, assignment_id)
        if not _needs_repair(assignment):
            continue

        entry = {"assignmentId": assignment_id, "paymentIntentId": payment.get("id")}
        try:
            outcome = process_prize_deposit(store, payment, source="repair")
            entry.update(
                escrowRecordId=outcome.escrow_record_id,
                status="repaired" if outcome.assignment_updated else "unchanged",
            )
        except BillingError as e:
            logger.error("Repair of payment %s failed: %s", payment.get("id"), e.message)
            entry.update(escrowRecordId=None, status="failed", error=e.message)
        repaired.append(entry)

    logger.info(
        "Deposit repair scanned %d payments, touched %d assignments",
        len(payments),
        len(repaired),
    )
    return {"scannedPayments": len(payments), "repaired": repaired}
