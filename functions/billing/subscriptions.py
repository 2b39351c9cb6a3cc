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
Subscription state synchronizer.

Pulls every Stripe subscription for a customer and folds the result into the
local `subscriptions/{userId}` record. `expirationHistory` only ever grows: it
is written with ArrayUnion and never rewritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from google.cloud.firestore_v1 import SERVER_TIMESTAMP, ArrayUnion

from billing.config import BillingConfig, map_price_to_plan
from billing.errors import NotFoundError, ValidationError
from billing.store import DocumentStore
from billing.stripe_client import BillingClient
from shared.firebase_constants import SUBSCRIPTIONS_COLLECTION, USERS_COLLECTION

logger = logging.getLogger(__name__)

INACTIVE_STATUS = "inactive"
LEGACY_EXPIRATION_FIELDS = ("expirationDate", "trialEndDate")


@dataclass
class SyncResult:
    message: str
    user_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    latest_end: Optional[int] = None
    latest_status: Optional[str] = None
    mapped_type: Optional[str] = None


def to_epoch_seconds(value: Any) -> Optional[int]:
    """
    Normalizes the expiration encodings found in older records: epoch seconds
    or milliseconds, datetimes (including Firestore timestamps), ISO strings
    and `{seconds: ...}` maps.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        # Values past year 2286 in seconds are milliseconds.
        return int(value // 1000) if value > 10_000_000_000 else int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    if isinstance(value, dict):
        return to_epoch_seconds(value.get("seconds", value.get("_seconds")))
    if isinstance(value, str):
        try:
            return to_epoch_seconds(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def effective_expiration(expiration_history: Iterable[Any] | None) -> Optional[int]:
    """The expiration used by access checks: the max of the history."""
    values = [to_epoch_seconds(v) for v in expiration_history or []]
    values = [v for v in values if v is not None]
    return max(values) if values else None


def _period_end(subscription: dict) -> Optional[int]:
    end = subscription.get("current_period_end")
    if not end:
        # Newer API versions carry the period on the subscription items.
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            end = items[0].get("current_period_end")
    return int(end) if end else None


def _price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


def _resolve_customer(
    store: DocumentStore, user_id: str | None, customer_id: str | None
) -> tuple[Optional[str], Optional[str], dict]:
    if user_id:
        user = store.get(USERS_COLLECTION, user_id)
        if user is None:
            if not customer_id:
                raise NotFoundError(f"User {user_id} not found")
            user = {}
        return user_id, customer_id or user.get("stripeCustomerId"), user

    rows = store.query(
        USERS_COLLECTION, [("stripeCustomerId", "==", customer_id)], limit=1
    )
    if rows:
        owner_id, user = rows[0]
        return owner_id, customer_id, user
    return None, customer_id, {}


def sync_subscription(
    store: DocumentStore,
    billing: BillingClient,
    config: BillingConfig,
    user_id: str | None = None,
    customer_id: str | None = None,
) -> SyncResult:
    """
    Recomputes the user's subscription state from Stripe.

    A user without a Stripe customer, or a customer without subscriptions, is
    a no-op rather than an error.
    """
    if not user_id and not customer_id:
        raise ValidationError("Provide userId or stripeCustomerId")

    user_id, customer_id, user = _resolve_customer(store, user_id, customer_id)
    if not customer_id:
        return SyncResult(message="No stripeCustomerId on user", user_id=user_id)

    subscriptions = billing.list_subscriptions(customer_id)
    if not subscriptions:
        return SyncResult(
            message="No Stripe subscriptions found",
            user_id=user_id,
            stripe_customer_id=customer_id,
        )

    latest_end: Optional[int] = None
    latest_status = INACTIVE_STATUS
    mapped_type: Optional[str] = None
    for subscription in subscriptions:
        end = _period_end(subscription)
        if end and (latest_end is None or end > latest_end):
            latest_end = end
            latest_status = subscription.get("status") or latest_status
            mapped_type = map_price_to_plan(_price_id(subscription), config.price_table)

    update: dict[str, Any] = {
        "stripeCustomerId": customer_id,
        "status": latest_status,
        "platform": "web",
        "source": "stripe-sync",
        "updatedAt": SERVER_TIMESTAMP,
    }
    if user_id:
        update["userId"] = user_id
    if user.get("username"):
        update["username"] = user["username"]
    if user.get("email"):
        update["userEmail"] = user["email"]
    if mapped_type:
        update["subscriptionType"] = mapped_type
    if latest_end:
        update["expirationHistory"] = ArrayUnion([latest_end])

    doc_id = user_id or customer_id
    store.set(SUBSCRIPTIONS_COLLECTION, doc_id, update, merge=True)
    logger.info(
        "Synced %d subscriptions for %s: end=%s status=%s type=%s",
        len(subscriptions),
        doc_id,
        latest_end,
        latest_status,
        mapped_type,
    )
    return SyncResult(
        message="Synced",
        user_id=user_id,
        stripe_customer_id=customer_id,
        latest_end=latest_end,
        latest_status=latest_status,
        mapped_type=mapped_type,
    )


def migrate_expiration_history(store: DocumentStore, user_id: str) -> dict:
    """
    Folds legacy expiration fields (`plans[].expiration`, `expirationDate`,
    `trialEndDate`) into `expirationHistory`. Idempotent.
    """
    data = store.get(SUBSCRIPTIONS_COLLECTION, user_id)
    if data is None:
        return {"userId": user_id, "migrated": 0}

    candidates = [plan.get("expiration") for plan in data.get("plans") or [] if isinstance(plan, dict)]
    candidates += [data.get(name) for name in LEGACY_EXPIRATION_FIELDS]

    existing = {to_epoch_seconds(v) for v in data.get("expirationHistory") or []}
    migrated = sorted(
        {seconds for seconds in map(to_epoch_seconds, candidates) if seconds}
        - existing
    )
    if migrated:
        store.update(
            SUBSCRIPTIONS_COLLECTION,
            user_id,
            {"expirationHistory": ArrayUnion(migrated), "updatedAt": SERVER_TIMESTAMP},
        )
        logger.info("Migrated %d expirations for %s", len(migrated), user_id)
    return {"userId": user_id, "migrated": len(migrated)}
