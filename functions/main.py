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

# Cloud functions for billing and escrow reconciliation.
#
# This file containing Python cloud functions must be named main.py.
# See https://cloud.google.com/run/docs/write-functions#python for more info.

# Standard library imports
import functools
import json
from dataclasses import asdict

# Third-party library imports
from firebase_functions import https_fn, logger, options

# Local application imports
from billing import backfill, prizes, promo, repair, subscriptions, webhook
from billing.config import resolve_billing_config
from billing.dependencies import get_billing_client, get_store
from billing.errors import (
    AuthenticationError,
    BillingError,
    ValidationError,
)
from shared.api import (
    BackfillAliasesRequest,
    BackfillSubscriptionFieldsRequest,
    PromoCodeRequest,
    PromoCodeResult,
    RepairDepositsRequest,
    SyncSubscriptionRequest,
    SyncSubscriptionResult,
    UpdatePrizeAssignmentRequest,
    parse_request,
)
from shared.json_utils import convert_keys

PROMO_ACTIONS = ("validate", "use")


def _referer(req: https_fn.CallableRequest) -> str | None:
    """Referer (or Origin) of the browser request behind a callable."""
    raw_request = getattr(req, "raw_request", None)
    if raw_request is None:
        return None
    return raw_request.headers.get("Referer") or raw_request.headers.get("Origin")


def _handle_billing_errors(func):
    """Maps domain errors raised by a callable onto `https_fn.HttpsError`."""

    @functools.wraps(func)
    def wrapper(req: https_fn.CallableRequest):
        try:
            return func(req)
        except https_fn.HttpsError:
            raise
        except BillingError as e:
            logger.warn(f"{func.__name__} rejected: {e.message}")
            raise https_fn.HttpsError(e.code, e.message, e.details)
        except Exception as e:
            logger.error(f"{func.__name__} failed: {e}")
            raise https_fn.HttpsError(
                https_fn.FunctionsErrorCode.INTERNAL,
                f"Internal error: {e}",
            )

    return wrapper


def _json_response(body: dict, status: int) -> https_fn.Response:
    return https_fn.Response(
        json.dumps(body), status=status, mimetype="application/json"
    )


@https_fn.on_request(memory=options.MemoryOption.MB_512)
def stripe_deposit_webhook(req: https_fn.Request) -> https_fn.Response:
    """
    Receives Stripe events. Captured prize deposits are recorded in escrow
    and reflected on the challenge and its prize assignment.
    """
    if req.method != "POST":
        return _json_response({"error": "Method Not Allowed"}, 405)

    config = resolve_billing_config(req.headers.get("Referer"))
    try:
        result = webhook.handle_webhook(
            get_store(),
            get_billing_client(config),
            req.get_data(),
            req.headers.get("Stripe-Signature"),
            config.webhook_secret,
        )
    except AuthenticationError as e:
        logger.warn(f"Webhook rejected: {e.message}")
        return _json_response({"error": e.message}, e.http_status)
    except Exception as e:
        # Stripe retries any non-2xx response.
        logger.error(f"Webhook processing failed: {e}")
        return _json_response({"error": "Internal Server Error"}, 500)

    return _json_response(result, 200)


@https_fn.on_call(memory=options.MemoryOption.MB_512)
@_handle_billing_errors
def sync_stripe_subscription(req: https_fn.CallableRequest) -> dict:
    request = parse_request(SyncSubscriptionRequest, req.data)
    config = resolve_billing_config(_referer(req))
    result = subscriptions.sync_subscription(
        get_store(),
        get_billing_client(config),
        config,
        user_id=request.user_id,
        customer_id=request.stripe_customer_id or request.external_customer_id,
    )
    response = SyncSubscriptionResult(
        message=result.message,
        user_id=result.user_id,
        latest_end=result.latest_end,
        latest_status=result.latest_status,
        mapped_type=result.mapped_type,
    )
    return convert_keys(asdict(response), "snake_to_camel")


@https_fn.on_call(timeout_sec=540, memory=options.MemoryOption.GB_1)
@_handle_billing_errors
def backfill_subscription_fields(req: https_fn.CallableRequest) -> dict:
    request = parse_request(BackfillSubscriptionFieldsRequest, req.data)
    report = backfill.backfill_subscription_fields(
        get_store(),
        limit=request.limit,
        dry_run=request.dry_run,
        start_after=request.start_after,
    )
    return convert_keys(asdict(report), "snake_to_camel")


@https_fn.on_call(timeout_sec=540, memory=options.MemoryOption.MB_512)
@_handle_billing_errors
def backfill_external_aliases(req: https_fn.CallableRequest) -> dict:
    request = parse_request(BackfillAliasesRequest, req.data)
    config = resolve_billing_config(_referer(req))
    return backfill.backfill_external_aliases(
        get_store(),
        get_billing_client(config),
        config,
        entries=request.entries,
        csv_text=request.csv,
    )


@https_fn.on_call(memory=options.MemoryOption.MB_512)
@_handle_billing_errors
def validate_promo_code(req: https_fn.CallableRequest) -> dict:
    """
    Validates a promo code for a user, or consumes one use of it when
    `action` is "use".
    """
    request = parse_request(PromoCodeRequest, req.data)
    if request.action not in PROMO_ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(PROMO_ACTIONS)}")

    store = get_store()
    if request.action == "validate":
        validation = promo.validate_promo_code(store, request.code, request.user_id)
        result = PromoCodeResult(
            is_valid=validation.is_valid,
            promo_code=validation.promo_code,
            error=validation.error,
            reason=validation.reason,
        )
    else:
        promo_code = promo.use_promo_code(
            store, request.code, request.user_id, metadata=request.metadata
        )
        result = PromoCodeResult(is_valid=True, promo_code=promo_code)

    return convert_keys(asdict(result), "snake_to_camel")


@https_fn.on_call(memory=options.MemoryOption.MB_512)
@_handle_billing_errors
def update_prize_assignment(req: https_fn.CallableRequest) -> dict:
    request = parse_request(UpdatePrizeAssignmentRequest, req.data)
    updated_by = request.updated_by or (req.auth.uid if req.auth else None)
    return prizes.update_prize_assignment(
        get_store(),
        request.assignment_id,
        request.prize_amount,
        prize_structure=request.prize_structure,
        description=request.description,
        custom_distribution=request.custom_distribution,
        updated_by=updated_by,
    )


@https_fn.on_call(timeout_sec=540, memory=options.MemoryOption.MB_512)
@_handle_billing_errors
def auto_repair_deposits(req: https_fn.CallableRequest) -> dict:
    request = parse_request(RepairDepositsRequest, req.data)
    config = resolve_billing_config(_referer(req))
    return repair.repair_deposits(
        get_store(),
        get_billing_client(config),
        lookback_hours=request.lookback_hours,
    )
