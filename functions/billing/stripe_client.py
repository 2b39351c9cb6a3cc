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
Billing client adapter over the Stripe SDK, plus an in-memory test double.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

import stripe

from billing.errors import AuthenticationError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


class BillingClient(Protocol):
    """Minimal surface the reconciliation jobs need from Stripe."""

    def verify_event(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> dict:
        ...

    def list_subscriptions(self, customer_id: str) -> list[dict]:
        ...

    def list_payment_intents(self, created_gte: int) -> list[dict]:
        ...


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _to_plain(obj: Any) -> dict:
    if type(obj) is dict:
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def walk_pages(list_page: Callable[..., Any], **params) -> list[dict]:
    """
    Follows Stripe's `has_more` / `starting_after` cursor until exhausted.
    """
    items: list[dict] = []
    starting_after: Optional[str] = None
    while True:
        page_params = dict(params)
        if starting_after:
            page_params["starting_after"] = starting_after
        page = list_page(**page_params)
        data = list(_get(page, "data") or [])
        items.extend(_to_plain(item) for item in data)
        if not data or not _get(page, "has_more"):
            return items
        starting_after = _get(data[-1], "id")


def verify_webhook_event(
    payload: bytes | str,
    signature: str | None,
    secret: str | None,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> dict:
    """
    Verifies the Stripe-Signature header against the raw body and only then
    decodes it. Anything that cannot be verified is rejected.
    """
    if not secret:
        raise AuthenticationError("Webhook secret is not configured.")
    if not signature:
        raise AuthenticationError("Missing Stripe-Signature header.")
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationError("Webhook payload is not valid UTF-8.") from e

    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise AuthenticationError(
            f"Webhook signature verification failed: {e}"
        ) from e

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid webhook payload: {e}") from e
    if not isinstance(event, dict) or "type" not in event:
        raise ValidationError("Webhook payload is not a Stripe event.")
    return event


@dataclass
class StripeBillingClient:
    """Stripe-backed client bound to one secret key (test or live)."""

    api_key: str
    page_size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self):
        if not self.api_key:
            raise ValueError("Stripe secret key is required for StripeBillingClient")

    def verify_event(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> dict:
        return verify_webhook_event(payload, signature, secret)

    def list_subscriptions(self, customer_id: str) -> list[dict]:
        try:
            return walk_pages(
                stripe.Subscription.list,
                api_key=self.api_key,
                customer=customer_id,
                status="all",
                limit=self.page_size,
            )
        except stripe.StripeError as e:
            raise UpstreamError(
                f"Failed to list subscriptions for {customer_id}: {e}"
            ) from e

    def list_payment_intents(self, created_gte: int) -> list[dict]:
        try:
            return walk_pages(
                stripe.PaymentIntent.list,
                api_key=self.api_key,
                created={"gte": created_gte},
                limit=self.page_size,
            )
        except stripe.StripeError as e:
            raise UpstreamError(f"Failed to list payment intents: {e}") from e


@dataclass
class InMemoryBillingClient:
    """Test double for Stripe. Pages its data the same way Stripe does."""

    subscriptions: dict[str, list[dict]] = field(default_factory=dict)
    payment_intents: list[dict] = field(default_factory=list)
    page_size: int = DEFAULT_PAGE_SIZE
    page_requests: int = 0

    def verify_event(
        self, payload: bytes | str, signature: str | None, secret: str | None
    ) -> dict:
        return verify_webhook_event(payload, signature, secret)

    def list_subscriptions(self, customer_id: str) -> list[dict]:
        return walk_pages(
            self._pager(self.subscriptions.get(customer_id, [])),
            limit=self.page_size,
        )

    def list_payment_intents(self, created_gte: int) -> list[dict]:
        recent = [pi for pi in self.payment_intents if pi.get("created", 0) >= created_gte]
        return walk_pages(self._pager(recent), limit=self.page_size)

    def _pager(self, items: list[dict]) -> Callable[..., dict]:
        def list_page(limit: int, starting_after: str | None = None) -> dict:
            self.page_requests += 1
            start = 0
            if starting_after:
                ids = [item.get("id") for item in items]
                start = ids.index(starting_after) + 1
            page = items[start : start + limit]
            return {"data": page, "has_more": start + limit < len(items)}

        return list_page
