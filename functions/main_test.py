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
# Standard library imports
import os
import unittest
from unittest.mock import patch

# Third-party library imports
from functions_framework import create_app

# Local application imports
from billing.config import BillingMode, Settings, resolve_billing_config
from billing.store import InMemoryDocumentStore
from billing.stripe_client import InMemoryBillingClient
from billing.tests.testing_utils import (
    WEBHOOK_SECRET,
    make_event,
    make_payment_intent,
    make_subscription,
    sign_payload,
)
from shared.firebase_constants import (
    ESCROW_COLLECTION,
    PRIZE_ASSIGNMENTS_COLLECTION,
    PROMO_CODE_USAGE_COLLECTION,
    PROMO_CODES_COLLECTION,
    SUBSCRIPTIONS_COLLECTION,
    USERS_COLLECTION,
)

MAIN_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "main.py")

SETTINGS = Settings(
    _env_file=None,
    stripe_webhook_secret=WEBHOOK_SECRET,
    stripe_test_webhook_secret=WEBHOOK_SECRET,
)


def _test_client(function_name):
    return create_app(function_name, MAIN_PATH).test_client()


class BillingFunctionTestCase(unittest.TestCase):
    """Runs each function against in-memory backends."""

    function_name = None

    def setUp(self):
        self.client = _test_client(self.function_name)
        self.store = InMemoryDocumentStore()
        self.billing = InMemoryBillingClient()

        patches = [
            patch("main.get_store", return_value=self.store),
            patch("main.get_billing_client", return_value=self.billing),
            patch(
                "main.resolve_billing_config",
                side_effect=lambda referer: resolve_billing_config(referer, SETTINGS),
            ),
        ]
        self.mock_get_store, self.mock_get_billing_client, self.mock_resolve = [
            p.start() for p in patches
        ]
        for p in patches:
            self.addCleanup(p.stop)

    def call(self, data, headers=None):
        return self.client.post("/", json={"data": data}, headers=headers or {})

    def assertOk(self, response):
        self.assertEqual(
            response.status_code,
            200,
            f"Request failed with status {response.status_code}. Body: {response.get_data(as_text=True)}",
        )
        return response.get_json()["result"]

    def assertError(self, response, status_code, status):
        self.assertEqual(response.status_code, status_code)
        response_data = response.get_json()
        self.assertIn("error", response_data)
        self.assertEqual(response_data["error"]["status"], status)
        return response_data["error"]


class TestStripeDepositWebhook(BillingFunctionTestCase):
    function_name = "stripe_deposit_webhook"

    def _post(self, payload, signature):
        return self.client.post(
            "/",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": signature},
        )

    def test_signed_prize_deposit_is_recorded(self):
        payload = make_event(
            make_payment_intent("pi_123", amount=10000, prizeAmount="9000", platformFee="1000")
        )

        response = self._post(payload, sign_payload(payload))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {"received": True})
        record = self.store.get(ESCROW_COLLECTION, "pi_123")
        self.assertEqual(record["amount"], 9000)
        self.assertEqual(record["totalAmountCharged"], 10000)

    def test_bad_signature_is_rejected(self):
        payload = make_event(make_payment_intent())

        response = self._post(payload, sign_payload(payload, secret="whsec_wrong"))

        self.assertEqual(response.status_code, 400)
        self.assertIn("signature", response.get_json()["error"])
        self.assertEqual(self.store.collections[ESCROW_COLLECTION], {})

    def test_only_post_is_accepted(self):
        response = self.client.get("/")

        self.assertEqual(response.status_code, 405)

    def test_unprocessable_deposit_is_retryable(self):
        payment_intent = make_payment_intent()
        del payment_intent["metadata"]["challengeId"]
        payload = make_event(payment_intent)

        response = self._post(payload, sign_payload(payload))

        self.assertEqual(response.status_code, 500)

    @patch("main.webhook.handle_webhook")
    def test_unexpected_failure_is_a_500(self, mock_handle_webhook):
        mock_handle_webhook.side_effect = RuntimeError("boom")
        payload = make_event(make_payment_intent())

        response = self._post(payload, sign_payload(payload))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "Internal Server Error"})


class TestSyncStripeSubscription(BillingFunctionTestCase):
    function_name = "sync_stripe_subscription"

    def test_sync_returns_camel_case_result(self):
        self.store.set(USERS_COLLECTION, "user-1", {"stripeCustomerId": "cus_123"})
        self.billing.subscriptions["cus_123"] = [
            make_subscription("sub_1", 1772323200, SETTINGS.test_monthly_price_id)
        ]

        response = self.call(
            {"userId": "user-1"}, headers={"Referer": "http://localhost:3000/settings"}
        )

        result = self.assertOk(response)
        self.assertEqual(
            result,
            {
                "message": "Synced",
                "userId": "user-1",
                "latestEnd": 1772323200,
                "latestStatus": "active",
                "mappedType": "pulsecheck-monthly",
            },
        )
        self.mock_resolve.assert_called_once_with("http://localhost:3000/settings")
        config = self.mock_get_billing_client.call_args.args[0]
        self.assertEqual(config.mode, BillingMode.TEST)

    def test_missing_identifiers(self):
        response = self.call({})

        error = self.assertError(response, 400, "INVALID_ARGUMENT")
        self.assertIn("userId", error["message"])

    def test_unknown_user(self):
        self.assertError(self.call({"userId": "ghost"}), 404, "NOT_FOUND")


class TestBackfillSubscriptionFields(BillingFunctionTestCase):
    function_name = "backfill_subscription_fields"

    def test_dry_run_counts(self):
        self.store.set(USERS_COLLECTION, "user-1", {"username": "runner"})
        self.store.set(SUBSCRIPTIONS_COLLECTION, "user-1", {})

        result = self.assertOk(self.call({"dryRun": True, "limit": 10}))

        self.assertEqual(result["scanned"], 1)
        self.assertEqual(result["updated"], 1)
        self.assertEqual(result["uniqueUserIds"], 1)
        self.assertTrue(result["dryRun"])
        self.assertEqual(self.store.get(SUBSCRIPTIONS_COLLECTION, "user-1"), {})

    def test_invalid_limit(self):
        self.assertError(self.call({"limit": -1}), 400, "INVALID_ARGUMENT")

    def test_string_dry_run_is_rejected(self):
        self.store.set(SUBSCRIPTIONS_COLLECTION, "user-1", {})

        self.assertError(self.call({"dryRun": "false"}), 400, "INVALID_ARGUMENT")
        self.assertEqual(self.store.get(SUBSCRIPTIONS_COLLECTION, "user-1"), {})


class TestBackfillExternalAliases(BillingFunctionTestCase):
    function_name = "backfill_external_aliases"

    def test_csv_entries(self):
        self.store.set(USERS_COLLECTION, "user-1", {})

        result = self.assertOk(
            self.call({"csv": "userId,appUserId\nuser-1,rc-1\nghost,rc-2"})
        )

        self.assertEqual(result["processed"], 2)
        self.assertEqual([row["ok"] for row in result["results"]], [True, False])
        self.assertEqual(
            self.store.get(USERS_COLLECTION, "user-1")["externalAliases"], ["rc-1"]
        )

    def test_requires_entries_or_csv(self):
        self.assertError(self.call({}), 400, "INVALID_ARGUMENT")


class TestValidatePromoCode(BillingFunctionTestCase):
    function_name = "validate_promo_code"

    def setUp(self):
        super().setUp()
        self.store.set(
            PROMO_CODES_COLLECTION,
            "promo-1",
            {
                "code": "PULSE50",
                "type": "partner",
                "isActive": True,
                "usageLimit": 1,
                "usageCount": 0,
            },
        )

    def test_validate(self):
        result = self.assertOk(self.call({"code": "pulse50", "userId": "user-1"}))

        self.assertTrue(result["isValid"])
        self.assertEqual(result["promoCode"]["id"], "promo-1")
        self.assertIsNone(result["error"])

    def test_use_then_limit_reached(self):
        first = self.assertOk(
            self.call({"code": "PULSE50", "userId": "user-1", "action": "use"})
        )
        second = self.assertError(
            self.call({"code": "PULSE50", "userId": "user-2", "action": "use"}),
            400,
            "FAILED_PRECONDITION",
        )

        self.assertTrue(first["isValid"])
        self.assertEqual(first["promoCode"]["usageCount"], 1)
        self.assertEqual(second["message"], "This promo code has reached its usage limit.")
        self.assertEqual(second["details"], {"reason": "usage_limit_reached"})
        self.assertEqual(len(self.store.collections[PROMO_CODE_USAGE_COLLECTION]), 1)

    def test_repeat_use_by_same_user_is_rejected(self):
        self.store.update(PROMO_CODES_COLLECTION, "promo-1", {"usageLimit": None})
        self.assertOk(self.call({"code": "PULSE50", "userId": "user-1", "action": "use"}))

        error = self.assertError(
            self.call({"code": "PULSE50", "userId": "user-1", "action": "use"}),
            400,
            "FAILED_PRECONDITION",
        )

        self.assertEqual(error["details"], {"reason": "already_used"})
        self.assertEqual(len(self.store.collections[PROMO_CODE_USAGE_COLLECTION]), 1)

    def test_unknown_action(self):
        response = self.call({"code": "PULSE50", "userId": "user-1", "action": "delete"})

        self.assertError(response, 400, "INVALID_ARGUMENT")


class TestUpdatePrizeAssignment(BillingFunctionTestCase):
    function_name = "update_prize_assignment"

    def test_funded_assignment_edit_is_rejected(self):
        self.store.set(
            PRIZE_ASSIGNMENTS_COLLECTION,
            "assignment-1",
            {"prizeAmount": 5000, "fundingStatus": "funded"},
        )

        response = self.call({"assignmentId": "assignment-1", "prizeAmount": 9000})

        error = self.assertError(response, 400, "FAILED_PRECONDITION")
        self.assertIn("Cannot edit prize amount after funding", error["message"])

    def test_edit_unfunded(self):
        self.store.set(
            PRIZE_ASSIGNMENTS_COLLECTION,
            "assignment-1",
            {"prizeAmount": 5000, "fundingStatus": "unfunded"},
        )

        result = self.assertOk(
            self.call({"assignmentId": "assignment-1", "prizeAmount": 7500})
        )

        self.assertEqual(result["newAmount"], 7500)
        self.assertTrue(result["success"])


class TestAutoRepairDeposits(BillingFunctionTestCase):
    function_name = "auto_repair_deposits"

    def test_repairs_missed_deposit(self):
        self.store.set(
            PRIZE_ASSIGNMENTS_COLLECTION,
            "assignment-1",
            {"challengeId": "challenge-1", "fundingStatus": "unfunded"},
        )
        self.billing.payment_intents = [
            make_payment_intent("pi_1", prizeAssignmentId="assignment-1")
        ]

        result = self.assertOk(self.call({"lookbackHours": 48}))

        self.assertEqual(result["scannedPayments"], 1)
        self.assertEqual(result["repaired"][0]["status"], "repaired")


if __name__ == "__main__":
    unittest.main()
