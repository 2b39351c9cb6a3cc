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
Prize assignments: the funding target an escrow record satisfies.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from billing.errors import ConflictError, NotFoundError, ValidationError
from billing.store import DocumentStore, Transaction
from shared.firebase_constants import CHALLENGES_COLLECTION, PRIZE_ASSIGNMENTS_COLLECTION
from shared.types import FundingStatus, PrizeAssignment, from_document

logger = logging.getLogger(__name__)

FUNDED_EDIT_MESSAGE = (
    "Cannot edit prize amount after funding. Please contact support for refunds."
)


def find_assignment_for_deposit(
    store: DocumentStore, challenge_id: str, assignment_id: str | None = None
) -> Optional[PrizeAssignment]:
    """
    Prefers the assignment id carried on the payment; otherwise the newest
    assignment for the challenge.
    """
    if assignment_id:
        data = store.get(PRIZE_ASSIGNMENTS_COLLECTION, assignment_id)
        if data is not None:
            return from_document(PrizeAssignment, assignment_id, data)
    if not challenge_id:
        return None
    rows = store.query(
        PRIZE_ASSIGNMENTS_COLLECTION,
        [("challengeId", "==", challenge_id)],
        order_by="createdAt",
        descending=True,
        limit=1,
    )
    if not rows:
        return None
    doc_id, data = rows[0]
    return from_document(PrizeAssignment, doc_id, data)


def mark_assignment_funded(
    store: DocumentStore,
    assignment_id: str,
    *,
    escrow_record_id: str,
    payment_id: str,
    deposited_amount: int,
    total_charged: int,
    platform_fee: int,
    deposited_by: str | None,
) -> bool:
    """
    Flags the assignment as funded. Returns False when this payment was
    already applied, so a redelivered event writes nothing.
    """

    def _fund(transaction: Transaction) -> bool:
        data = transaction.get(PRIZE_ASSIGNMENTS_COLLECTION, assignment_id)
        if data is None:
            raise NotFoundError(f"Prize assignment {assignment_id} not found")
        if (
            data.get("fundingStatus") == FundingStatus.FUNDED
            and data.get("paymentIntentId") == payment_id
        ):
            return False
        transaction.update(
            PRIZE_ASSIGNMENTS_COLLECTION,
            assignment_id,
            {
                "fundingStatus": FundingStatus.FUNDED.value,
                "depositedAmount": deposited_amount,
                "totalAmountCharged": total_charged,
                "platformFeeCollected": platform_fee,
                "escrowRecordId": escrow_record_id,
                "paymentIntentId": payment_id,
                "depositedAt": SERVER_TIMESTAMP,
                "depositedBy": deposited_by,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        return True

    return store.run_transaction(_fund)


def update_challenge_funding(
    store: DocumentStore,
    challenge_id: str,
    *,
    escrow_record_id: str,
    prize_amount: int,
    total_charged: int,
    platform_fee: int,
    funded_by: str | None,
) -> bool:
    """Updates the denormalized funding summary, if the challenge exists."""
    challenge = store.get(CHALLENGES_COLLECTION, challenge_id)
    if challenge is None:
        return False
    details = challenge.get("fundingDetails") or {}
    if (
        challenge.get("fundingStatus") == FundingStatus.FUNDED
        and details.get("escrowRecordId") == escrow_record_id
        and details.get("totalAmountCharged") == total_charged
    ):
        return False
    store.update(
        CHALLENGES_COLLECTION,
        challenge_id,
        {
            "fundingStatus": FundingStatus.FUNDED.value,
            "fundingDetails": {
                "prizeAmount": prize_amount,
                "totalAmountCharged": total_charged,
                "platformFee": platform_fee,
                "escrowRecordId": escrow_record_id,
                "fundedAt": SERVER_TIMESTAMP,
                "fundedBy": funded_by,
            },
            "updatedAt": SERVER_TIMESTAMP,
        },
    )
    return True


def update_prize_assignment(
    store: DocumentStore,
    assignment_id: str | None,
    prize_amount: Any,
    *,
    prize_structure: Any = None,
    description: str | None = None,
    custom_distribution: Any = None,
    updated_by: str | None = None,
) -> dict:
    """
    Edits an unfunded prize assignment. Once funded, the prize amount is
    immutable.
    """
    if not assignment_id:
        raise ValidationError("Missing required field: assignmentId")
    if (
        isinstance(prize_amount, bool)
        or not isinstance(prize_amount, (int, float))
        or prize_amount <= 0
    ):
        raise ValidationError("prizeAmount must be a positive number")

    update_data: dict[str, Any] = {
        "prizeAmount": prize_amount,
        "updatedAt": SERVER_TIMESTAMP,
        "lastModifiedBy": updated_by or "admin",
    }
    if prize_structure:
        update_data["prizeStructure"] = prize_structure
    if description is not None:
        update_data["description"] = description
    if custom_distribution:
        update_data["customDistribution"] = custom_distribution

    def _edit(transaction: Transaction) -> None:
        data = transaction.get(PRIZE_ASSIGNMENTS_COLLECTION, assignment_id)
        if data is None:
            raise NotFoundError("Prize assignment not found")
        if data.get("fundingStatus") == FundingStatus.FUNDED:
            raise ConflictError(FUNDED_EDIT_MESSAGE)
        transaction.update(PRIZE_ASSIGNMENTS_COLLECTION, assignment_id, update_data)

    store.run_transaction(_edit)
    logger.info("Updated prize assignment %s to %s", assignment_id, prize_amount)
    return {
        "success": True,
        "message": "Prize assignment updated successfully",
        "assignmentId": assignment_id,
        "newAmount": prize_amount,
    }
