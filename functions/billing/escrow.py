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
Escrow ledger: money held on behalf of a future prize payout.

Records live in `prize-escrow`, keyed by the Stripe payment intent that
funded them. Status only ever moves held -> released or held -> refunded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from google.cloud.firestore_v1 import SERVER_TIMESTAMP, ArrayUnion

from billing.errors import InvalidTransitionError, NotFoundError, ValidationError
from billing.store import DocumentStore, Transaction
from shared.firebase_constants import ESCROW_COLLECTION
from shared.types import (
    AdditionalDeposit,
    EscrowFees,
    EscrowMetadata,
    EscrowRecord,
    EscrowStatus,
    from_document,
    to_document,
)

logger = logging.getLogger(__name__)

STRIPE_FEE_PERCENT = 0.029
STRIPE_FEE_FIXED_CENTS = 30


@dataclass
class Depositor:
    user_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


def estimate_stripe_fee(total_charged: int) -> int:
    """Display-only estimate of the card processing fee, in cents."""
    return round(total_charged * STRIPE_FEE_PERCENT + STRIPE_FEE_FIXED_CENTS)


def escrow_id_for_payment(payment_id: str) -> str:
    return payment_id


def _escrow_from_document(record_id: str, data: dict) -> EscrowRecord:
    # Older records have auto ids and only carry paymentIntentId.
    if not data.get("originatingPaymentId"):
        data = {
            **data,
            "originatingPaymentId": data.get("paymentIntentId") or record_id,
        }
    return from_document(EscrowRecord, record_id, data)


def get_escrow(store: DocumentStore, record_id: str) -> EscrowRecord:
    data = store.get(ESCROW_COLLECTION, record_id)
    if data is None:
        raise NotFoundError(f"Escrow record {record_id} not found")
    return _escrow_from_document(record_id, data)


def create_held(
    store: DocumentStore,
    payment_id: str,
    amount: int,
    currency: str,
    challenge_id: str,
    depositor: Depositor,
    *,
    total_charged: int | None = None,
    platform_fee: int = 0,
    challenge_title: str | None = None,
    stripe_charge_id: str | None = None,
    prize_assignment_id: str | None = None,
    payment_method: str | None = None,
    source: str = "webhook",
) -> EscrowRecord:
    """
    Creates the held record for one captured payment.

    Raises AlreadyExistsError if the payment was already recorded, leaving the
    stored record untouched.
    """
    if not payment_id:
        raise ValidationError("payment_id is required to create an escrow record.")
    if not challenge_id:
        raise ValidationError("challenge_id is required to create an escrow record.")
    if amount <= 0:
        raise ValidationError("Escrow amount must be positive.")
    total_charged = amount if total_charged is None else total_charged
    if amount > total_charged:
        raise ValidationError(
            f"Escrow amount {amount} exceeds the {total_charged} captured on {payment_id}."
        )

    record = EscrowRecord(
        id=escrow_id_for_payment(payment_id),
        challenge_id=challenge_id,
        amount=amount,
        currency=currency,
        originating_payment_id=payment_id,
        status=EscrowStatus.HELD,
        total_amount_charged=total_charged,
        challenge_title=challenge_title,
        stripe_charge_id=stripe_charge_id,
        prize_assignment_id=prize_assignment_id,
        deposited_by=depositor.user_id,
        depositor_name=depositor.name,
        depositor_email=depositor.email,
        metadata=EscrowMetadata(
            full_prize_amount=amount,
            platform_fee=platform_fee,
            total_amount_charged=total_charged,
            fees=EscrowFees(
                stripe_fee=estimate_stripe_fee(total_charged),
                platform_fee=platform_fee,
            ),
            payment_method=payment_method,
            source=source,
        ),
    )
    doc = to_document(record)
    doc["createdAt"] = SERVER_TIMESTAMP
    doc["updatedAt"] = SERVER_TIMESTAMP
    store.create(ESCROW_COLLECTION, record.id, doc)
    logger.info(
        "Created held escrow %s for challenge %s (%d %s)",
        record.id,
        challenge_id,
        amount,
        currency,
    )
    return record


def add_deposit(
    store: DocumentStore,
    record_id: str,
    payment_id: str,
    amount: int,
    total_charged: int,
    *,
    platform_fee: int = 0,
    stripe_charge_id: str | None = None,
) -> EscrowRecord:
    """
    Tops up a held record with a partial deposit. Replaying the same payment
    id is a no-op.
    """
    if amount <= 0 or amount > total_charged:
        raise ValidationError(
            f"Deposit amount {amount} must be positive and within the {total_charged} captured."
        )

    def _add(transaction: Transaction) -> EscrowRecord:
        data = transaction.get(ESCROW_COLLECTION, record_id)
        if data is None:
            raise NotFoundError(f"Escrow record {record_id} not found")
        record = _escrow_from_document(record_id, data)
        seen = {record.originating_payment_id} | {
            deposit.payment_intent_id for deposit in record.additional_deposits
        }
        if payment_id in seen:
            logger.info("Deposit %s already applied to escrow %s", payment_id, record_id)
            return record
        if record.status != EscrowStatus.HELD:
            raise InvalidTransitionError(
                f"Escrow {record_id} is {record.status}; deposits require a held record."
            )

        deposit = AdditionalDeposit(
            payment_intent_id=payment_id,
            amount_added=amount,
            total_charged_for_this=total_charged,
            platform_fee_charged=platform_fee,
            stripe_charge_id=stripe_charge_id,
            # Server timestamps are not allowed inside array elements.
            deposited_at=datetime.now(timezone.utc),
        )
        record.amount += amount
        record.total_amount_charged += total_charged
        record.additional_deposits.append(deposit)
        transaction.update(
            ESCROW_COLLECTION,
            record_id,
            {
                "amount": record.amount,
                "totalAmountCharged": record.total_amount_charged,
                "additionalDeposits": ArrayUnion([to_document(deposit)]),
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        return record

    return store.run_transaction(_add)


def _transition(
    store: DocumentStore, record_id: str, target: EscrowStatus, stamp_field: str
) -> EscrowRecord:
    def _apply(transaction: Transaction) -> EscrowRecord:
        data = transaction.get(ESCROW_COLLECTION, record_id)
        if data is None:
            raise NotFoundError(f"Escrow record {record_id} not found")
        record = _escrow_from_document(record_id, data)
        if record.status != EscrowStatus.HELD:
            raise InvalidTransitionError(
                f"Escrow {record_id} is {record.status}; only held records can become {target}."
            )
        transaction.update(
            ESCROW_COLLECTION,
            record_id,
            {
                "status": target.value,
                stamp_field: SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        record.status = target
        return record

    record = store.run_transaction(_apply)
    logger.info("Escrow %s moved to %s", record_id, target)
    return record


def mark_released(store: DocumentStore, record_id: str) -> EscrowRecord:
    return _transition(store, record_id, EscrowStatus.RELEASED, "releasedAt")


def mark_refunded(store: DocumentStore, record_id: str) -> EscrowRecord:
    return _transition(store, record_id, EscrowStatus.REFUNDED, "refundedAt")
