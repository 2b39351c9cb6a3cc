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
Stripe webhook ingestion for captured prize deposits.

The escrow record is the authoritative write and is keyed by the payment
intent id, so redelivered events never create a second record. Challenge and
prize assignment summaries are secondary views: failures there are logged and
left for the repair job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from billing import escrow, prizes
from billing.errors import AlreadyExistsError, ValidationError
from billing.store import DocumentStore
from billing.stripe_client import BillingClient

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"
PRIZE_DEPOSIT_TYPE = "prize_deposit"


@dataclass
class DepositAmounts:
    """All amounts are in cents."""

    captured: int
    prize_amount: int
    amount_to_deposit: int
    platform_fee: int
    total_charged: int
    existing_escrow_amount: int = 0

    @property
    def is_partial(self) -> bool:
        return self.existing_escrow_amount > 0


@dataclass
class DepositOutcome:
    escrow_record_id: str
    created: bool
    challenge_updated: bool = False
    assignment_updated: bool = False


def _parse_cents(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        cents = int(str(value).strip())
    except ValueError:
        try:
            cents = int(float(value))
        except (TypeError, ValueError):
            return None
    return cents if cents > 0 else None


def derive_amounts(payment_intent: dict) -> DepositAmounts:
    """
    Reads prize and fee amounts from the payment metadata, accepting both the
    current and the legacy field names. Missing or malformed values fall back
    to the captured amount; no amount may exceed what was captured.
    """
    metadata = payment_intent.get("metadata") or {}
    captured = int(
        payment_intent.get("amount_received") or payment_intent.get("amount") or 0
    )

    prize_amount = (
        _parse_cents(metadata.get("fullPrizeAmount") or metadata.get("prizeAmount"))
        or captured
    )
    amount_to_deposit = (
        _parse_cents(metadata.get("amountToDeposit") or metadata.get("prizeAmount"))
        or captured
    )
    total_charged = (
        _parse_cents(metadata.get("totalChargeAmount") or metadata.get("totalAmount"))
        or captured
    )
    platform_fee = _parse_cents(metadata.get("platformFee")) or 0
    existing_escrow_amount = _parse_cents(metadata.get("existingEscrowAmount")) or 0

    if total_charged > captured:
        logger.warning(
            "Payment %s metadata claims %d charged but %d was captured",
            payment_intent.get("id"),
            total_charged,
            captured,
        )
        total_charged = captured
    if prize_amount > captured:
        logger.warning(
            "Payment %s prize amount %d exceeds capture; using %d",
            payment_intent.get("id"),
            prize_amount,
            captured,
        )
        prize_amount = captured
    if amount_to_deposit > captured:
        amount_to_deposit = captured
    tops_up = existing_escrow_amount > 0 and metadata.get("existingEscrowRecordId")
    deposited = amount_to_deposit if tops_up else prize_amount
    if total_charged < deposited:
        logger.warning(
            "Payment %s metadata claims %d charged, below the deposit; using %d",
            payment_intent.get("id"),
            total_charged,
            captured,
        )
        total_charged = captured

    return DepositAmounts(
        captured=captured,
        prize_amount=prize_amount,
        amount_to_deposit=amount_to_deposit,
        platform_fee=platform_fee,
        total_charged=total_charged,
        existing_escrow_amount=existing_escrow_amount,
    )


def is_prize_deposit(payment_intent: dict) -> bool:
    return (payment_intent.get("metadata") or {}).get("type") == PRIZE_DEPOSIT_TYPE


def process_prize_deposit(
    store: DocumentStore, payment_intent: dict, source: str = "webhook"
) -> DepositOutcome:
    """
    Records one captured prize deposit. Safe to call any number of times for
    the same payment intent.
    """
    payment_id = payment_intent.get("id")
    metadata = payment_intent.get("metadata") or {}
    challenge_id = metadata.get("challengeId")
    if not payment_id or not challenge_id:
        raise ValidationError(
            "Prize deposit is missing the payment id or metadata.challengeId."
        )

    amounts = derive_amounts(payment_intent)
    depositor = escrow.Depositor(
        user_id=metadata.get("depositedBy"),
        name=metadata.get("depositorName"),
        email=metadata.get("depositorEmail"),
    )
    charge_id = payment_intent.get("latest_charge")
    existing_record_id = metadata.get("existingEscrowRecordId")

    if amounts.is_partial and existing_record_id:
        record = escrow.add_deposit(
            store,
            existing_record_id,
            payment_id,
            amounts.amount_to_deposit,
            amounts.total_charged,
            platform_fee=amounts.platform_fee,
            stripe_charge_id=charge_id,
        )
        created = False
    else:
        try:
            record = escrow.create_held(
                store,
                payment_id,
                amounts.prize_amount,
                payment_intent.get("currency") or "usd",
                challenge_id,
                depositor,
                total_charged=amounts.total_charged,
                platform_fee=amounts.platform_fee,
                challenge_title=metadata.get("challengeTitle"),
                stripe_charge_id=charge_id,
                prize_assignment_id=metadata.get("prizeAssignmentId"),
                payment_method=payment_intent.get("payment_method"),
                source=source,
            )
            created = True
        except AlreadyExistsError:
            logger.info("Escrow for payment %s already recorded", payment_id)
            record = escrow.get_escrow(store, escrow.escrow_id_for_payment(payment_id))
            created = False

    outcome = DepositOutcome(escrow_record_id=record.id, created=created)

    try:
        outcome.challenge_updated = prizes.update_challenge_funding(
            store,
            challenge_id,
            escrow_record_id=record.id,
            prize_amount=record.amount,
            total_charged=record.total_amount_charged,
            platform_fee=amounts.platform_fee,
            funded_by=depositor.user_id,
        )
    except Exception as e:
        logger.error("Failed to update challenge %s funding: %s", challenge_id, e)

    try:
        assignment = prizes.find_assignment_for_deposit(
            store, challenge_id, metadata.get("prizeAssignmentId")
        )
        if assignment:
            outcome.assignment_updated = prizes.mark_assignment_funded(
                store,
                assignment.id,
                escrow_record_id=record.id,
                payment_id=payment_id,
                deposited_amount=record.amount,
                total_charged=record.total_amount_charged,
                platform_fee=amounts.platform_fee,
                deposited_by=depositor.user_id,
            )
        else:
            logger.warning("No prize assignment found for challenge %s", challenge_id)
    except Exception as e:
        logger.error("Failed to update prize assignment for %s: %s", challenge_id, e)

    logger.info(
        "Processed prize deposit %s for challenge %s (escrow %s, created=%s)",
        payment_id,
        challenge_id,
        record.id,
        created,
    )
    return outcome


def handle_webhook(
    store: DocumentStore,
    billing: BillingClient,
    payload: bytes | str,
    signature: str | None,
    secret: str | None,
) -> dict:
    """
    Verifies and dispatches one Stripe event. Nothing is read from the payload
    before the signature checks out.
    """
    event = billing.verify_event(payload, signature, secret)
    event_type = event.get("type")
    logger.info("Received Stripe event %s (%s)", event.get("id"), event_type)

    if event_type != PAYMENT_SUCCEEDED_EVENT:
        return {"received": True}

    payment_intent = (event.get("data") or {}).get("object") or {}
    if is_prize_deposit(payment_intent):
        process_prize_deposit(store, payment_intent)
    return {"received": True}
