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
Usage-limited promo codes. Consumption is recorded at most once per
(code, user) pair, and the usage row and counter increment commit together.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from google.cloud.firestore_v1 import SERVER_TIMESTAMP, Increment

from billing.config import get_settings
from billing.errors import PromoCodeRejected, UsageLimitReached, ValidationError
from billing.store import DocumentStore, Transaction
from billing.subscriptions import to_epoch_seconds
from shared.firebase_constants import PROMO_CODE_USAGE_COLLECTION, PROMO_CODES_COLLECTION
from shared.types import PromoCode, PromoRejection, from_document

logger = logging.getLogger(__name__)

DEFAULT_USAGE_ACTION = "partner_signup"

REJECTION_MESSAGES = {
    PromoRejection.NOT_FOUND: "Invalid or inactive promo code.",
    PromoRejection.WRONG_TYPE: "This promo code is not valid for partner invitations.",
    PromoRejection.EXPIRED: "This promo code has expired.",
    PromoRejection.USAGE_LIMIT_REACHED: "This promo code has reached its usage limit.",
    PromoRejection.ALREADY_USED: "You have already used this promo code.",
}


@dataclass
class PromoValidation:
    is_valid: bool
    promo_code: Optional[dict] = None
    error: Optional[str] = None
    reason: Optional[PromoRejection] = None


def usage_doc_id(promo_code_id: str, user_id: str) -> str:
    return f"{promo_code_id}_{user_id}"


def _rejected(reason: PromoRejection) -> PromoValidation:
    return PromoValidation(is_valid=False, error=REJECTION_MESSAGES[reason], reason=reason)


def _rejection_error(reason: PromoRejection) -> PromoCodeRejected:
    if reason == PromoRejection.USAGE_LIMIT_REACHED:
        return UsageLimitReached(REJECTION_MESSAGES[reason])
    return PromoCodeRejected(reason, REJECTION_MESSAGES[reason])


def _limit_reached(promo: PromoCode) -> bool:
    # A null limit is unlimited.
    if promo.usage_limit is None:
        return False
    return int(promo.usage_count or 0) >= int(promo.usage_limit)


def _expired(promo: PromoCode, now: datetime) -> bool:
    expires_at = to_epoch_seconds(promo.expires_at)
    return expires_at is not None and expires_at < now.timestamp()


def public_promo_code(promo: PromoCode) -> dict:
    """The promo fields returned to clients."""
    return {
        "id": promo.id,
        "code": promo.code,
        "type": promo.type,
        "usageCount": int(promo.usage_count or 0),
        "usageLimit": promo.usage_limit,
        "expiresAt": to_epoch_seconds(promo.expires_at),
    }


def _has_used(store: DocumentStore, promo_id: str, user_id: str) -> bool:
    if store.get(PROMO_CODE_USAGE_COLLECTION, usage_doc_id(promo_id, user_id)) is not None:
        return True
    # Rows written before usage ids were deterministic.
    legacy = store.query(
        PROMO_CODE_USAGE_COLLECTION,
        [("promoCodeId", "==", promo_id), ("userId", "==", user_id)],
        limit=1,
    )
    return bool(legacy)


def validate_promo_code(
    store: DocumentStore,
    code: Any,
    user_id: Any,
    expected_type: str | None = None,
    now: datetime | None = None,
) -> PromoValidation:
    """
    Checks a code for one user. The first failing check wins, in order:
    exists and active, type, expiry, usage limit, prior use.
    """
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("code is required")
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("userId is required")
    expected_type = expected_type or get_settings().promo_code_type
    now = now or datetime.now(timezone.utc)

    rows = store.query(
        PROMO_CODES_COLLECTION,
        [("code", "==", code.strip().upper()), ("isActive", "==", True)],
        limit=1,
    )
    if not rows:
        logger.info("No active promo code for %s", code)
        return _rejected(PromoRejection.NOT_FOUND)

    promo = from_document(PromoCode, *rows[0])
    if promo.type != expected_type:
        return _rejected(PromoRejection.WRONG_TYPE)
    if _expired(promo, now):
        return _rejected(PromoRejection.EXPIRED)
    if _limit_reached(promo):
        return _rejected(PromoRejection.USAGE_LIMIT_REACHED)
    if _has_used(store, promo.id, user_id):
        return _rejected(PromoRejection.ALREADY_USED)

    return PromoValidation(is_valid=True, promo_code=public_promo_code(promo))


def use_promo_code(
    store: DocumentStore,
    code: Any,
    user_id: Any,
    metadata: dict | None = None,
    expected_type: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Consumes one use of a code. Raises PromoCodeRejected (or
    UsageLimitReached) when the code cannot be used, including when a
    concurrent call took the last slot first.
    """
    validation = validate_promo_code(store, code, user_id, expected_type, now)
    if not validation.is_valid:
        raise _rejection_error(validation.reason)

    promo_id = validation.promo_code["id"]
    usage_id = usage_doc_id(promo_id, user_id)
    usage_metadata = metadata or {
        "action": DEFAULT_USAGE_ACTION,
        "timestamp": int(time.time() * 1000),
    }

    def _use(transaction: Transaction) -> dict:
        data = transaction.get(PROMO_CODES_COLLECTION, promo_id)
        if data is None or not data.get("isActive"):
            raise _rejection_error(PromoRejection.NOT_FOUND)
        promo = from_document(PromoCode, promo_id, data)
        if _limit_reached(promo):
            raise _rejection_error(PromoRejection.USAGE_LIMIT_REACHED)
        if transaction.get(PROMO_CODE_USAGE_COLLECTION, usage_id) is not None:
            raise _rejection_error(PromoRejection.ALREADY_USED)

        transaction.create(
            PROMO_CODE_USAGE_COLLECTION,
            usage_id,
            {
                "promoCodeId": promo_id,
                "userId": user_id,
                "usedAt": SERVER_TIMESTAMP,
                "metadata": usage_metadata,
            },
        )
        transaction.update(PROMO_CODES_COLLECTION, promo_id, {"usageCount": Increment(1)})
        promo.usage_count = int(promo.usage_count or 0) + 1
        return public_promo_code(promo)

    promo_code = store.run_transaction(_use)
    logger.info("Recorded use of promo code %s by %s", promo_id, user_id)
    return promo_code
