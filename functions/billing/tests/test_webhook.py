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

import time
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from billing import webhook
from billing.errors import AuthenticationError, ValidationError
from billing.store import InMemoryDocumentStore
from billing.stripe_client import InMemoryBillingClient
from billing.tests.testing_utils import (
    WEBHOOK_SECRET,
    make_event,
    make_payment_intent,
    sign_payload,
)
from shared.firebase_constants import (
    CHALLENGES_COLLECTION,
    ESCROW_COLLECTION,
    PRIZE_ASSIGNMENTS_COLLECTION,
)


class TestHandleWebhook(unittest.TestCase):

    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.billing = InMemoryBillingClient()
        self.store.set(CHALLENGES_COLLECTION, "challenge-1", {"title": "Spring Shred"})
        self.store.set(
            PRIZE_ASSIGNMENTS_COLLECTION,
            "assignment-1",
            {
                "challengeId": "challenge-1",
                "prizeAmount": 9000,
                "fundingStatus": "unfunded",
                "createdAt": datetime(2026, 1, 1, tzinfo=timezone.utc),
            },
        )

    def _deliver(self, payment_intent, secret=WEBHOOK_SECRET):
        payload = make_event(payment_intent)
        return webhook.handle_webhook(
            self.store, self.billing, payload.encode("utf-8"), sign_payload(payload), secret
        )

    def test_prize_deposit_records_escrow_and_funding(self):
        payment_intent = make_payment_intent(
            "pi_123", amount=10000, prizeAmount="9000", platformFee="1000"
        )

        result = self._deliver(payment_intent)

        self.assertEqual(result, {"received": True})
        record = self.store.get(ESCROW_COLLECTION, "pi_123")
        self.assertEqual(record["amount"], 9000)
        self.assertEqual(record["totalAmountCharged"], 10000)
        self.assertEqual(record["status"], "held")
        assignment = self.store.get(PRIZE_ASSIGNMENTS_COLLECTION, "assignment-1")
        self.assertEqual(assignment["fundingStatus"], "funded")
        self.assertEqual(assignment["depositedAmount"], 9000)
        self.assertEqual(assignment["platformFeeCollected"], 1000)
        self.assertEqual(assignment["escrowRecordId"], "pi_123")
        self.assertEqual(assignment["depositedBy"], "host-1")
        challenge = self.store.get(CHALLENGES_COLLECTION, "challenge-1")
        self.assertEqual(challenge["fundingStatus"], "funded")
        self.assertEqual(challenge["fundingDetails"]["escrowRecordId"], "pi_123")

    def test_redelivery_creates_no_second_record(self):
        payment_intent = make_payment_intent("pi_123", prizeAmount="9000")

        self._deliver(payment_intent)
        first = self.store.get(PRIZE_ASSIGNMENTS_COLLECTION, "assignment-1")
        self._deliver(payment_intent)

        self.assertEqual(len(self.store.collections[ESCROW_COLLECTION]), 1)
        self.assertEqual(
            self.store.get(PRIZE_ASSIGNMENTS_COLLECTION, "assignment-1"), first
        )

    def test_bad_signature_writes_nothing(self):
        payload = make_event(make_payment_intent())

        with self.assertRaises(AuthenticationError):
            webhook.handle_webhook(
                self.store,
                self.billing,
                payload,
                sign_payload(payload, secret="whsec_other"),
                WEBHOOK_SECRET,
            )

        self.assertEqual(self.store.collections[ESCROW_COLLECTION], {})

    def test_stale_signature_is_rejected(self):
        payload = make_event(make_payment_intent())
        stale = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with self.assertRaises(AuthenticationError):
            webhook.handle_webhook(self.store, self.billing, payload, stale, WEBHOOK_SECRET)

    def test_missing_signature_is_rejected(self):
        with self.assertRaises(AuthenticationError):
            webhook.handle_webhook(
                self.store, self.billing, make_event(make_payment_intent()), None, WEBHOOK_SECRET
            )

    def test_other_events_are_acknowledged_only(self):
        payload = make_event(make_payment_intent(), event_type="charge.refunded")

        result = webhook.handle_webhook(
            self.store, self.billing, payload, sign_payload(payload), WEBHOOK_SECRET
        )

        self.assertEqual(result, {"received": True})
        self.assertEqual(self.store.collections[ESCROW_COLLECTION], {})

    def test_non_prize_payments_are_ignored(self):
        self._deliver(make_payment_intent(type="subscription"))

        self.assertEqual(self.store.collections[ESCROW_COLLECTION], {})

    @patch("billing.webhook.prizes.update_challenge_funding")
    def test_secondary_failure_does_not_fail_ingest(self, mock_update_challenge):
        mock_update_challenge.side_effect = RuntimeError("firestore unavailable")

        result = self._deliver(make_payment_intent("pi_123"))

        self.assertEqual(result, {"received": True})
        self.assertIsNotNone(self.store.get(ESCROW_COLLECTION, "pi_123"))
        assignment = self.store.get(PRIZE_ASSIGNMENTS_COLLECTION, "assignment-1")
        self.assertEqual(assignment["fundingStatus"], "funded")


class TestProcessPrizeDeposit(unittest.TestCase):

    def setUp(self):
        self.store = InMemoryDocumentStore()

    def test_missing_challenge_is_a_validation_error(self):
        payment_intent = make_payment_intent()
        del payment_intent["metadata"]["challengeId"]

        with self.assertRaises(ValidationError):
            webhook.process_prize_deposit(self.store, payment_intent)

    def test_partial_deposit_tops_up_existing_record(self):
        webhook.process_prize_deposit(self.store, make_payment_intent("pi_1", amount=5000))

        outcome = webhook.process_prize_deposit(
            self.store,
            make_payment_intent(
                "pi_2",
                amount=3000,
                amountToDeposit="3000",
                existingEscrowAmount="5000",
                existingEscrowRecordId="pi_1",
            ),
        )

        self.assertFalse(outcome.created)
        self.assertEqual(outcome.escrow_record_id, "pi_1")
        record = self.store.get(ESCROW_COLLECTION, "pi_1")
        self.assertEqual(record["amount"], 8000)
        self.assertEqual(record["totalAmountCharged"], 8000)
        self.assertEqual(len(self.store.collections[ESCROW_COLLECTION]), 1)

    def test_understated_total_still_records_escrow(self):
        outcome = webhook.process_prize_deposit(
            self.store,
            make_payment_intent(
                "pi_t", amount=10000, prizeAmount="9000", totalAmount="5000"
            ),
        )

        self.assertTrue(outcome.created)
        record = self.store.get(ESCROW_COLLECTION, "pi_t")
        self.assertEqual(record["amount"], 9000)
        self.assertEqual(record["totalAmountCharged"], 10000)

    def test_partial_deposit_tops_up_record_keyed_by_legacy_id(self):
        self.store.set(
            ESCROW_COLLECTION,
            "AutoId123",
            {
                "challengeId": "challenge-1",
                "amount": 5000,
                "currency": "usd",
                "status": "held",
                "paymentIntentId": "pi_old",
                "totalAmountCharged": 5000,
            },
        )

        outcome = webhook.process_prize_deposit(
            self.store,
            make_payment_intent(
                "pi_new",
                amount=3000,
                amountToDeposit="3000",
                existingEscrowAmount="5000",
                existingEscrowRecordId="AutoId123",
            ),
        )

        self.assertFalse(outcome.created)
        self.assertEqual(outcome.escrow_record_id, "AutoId123")
        record = self.store.get(ESCROW_COLLECTION, "AutoId123")
        self.assertEqual(record["amount"], 8000)
        self.assertEqual(record["additionalDeposits"][0]["paymentIntentId"], "pi_new")

    def test_missing_assignment_is_logged_not_raised(self):
        outcome = webhook.process_prize_deposit(self.store, make_payment_intent("pi_1"))

        self.assertTrue(outcome.created)
        self.assertFalse(outcome.assignment_updated)
        self.assertFalse(outcome.challenge_updated)


class TestDeriveAmounts(unittest.TestCase):

    def test_amounts_never_exceed_capture(self):
        amounts = webhook.derive_amounts(
            make_payment_intent(amount=5000, prizeAmount="9000", totalChargeAmount="9999")
        )

        self.assertEqual(amounts.prize_amount, 5000)
        self.assertEqual(amounts.total_charged, 5000)

    def test_total_below_prize_falls_back_to_capture(self):
        amounts = webhook.derive_amounts(
            make_payment_intent(amount=10000, prizeAmount="9000", totalAmount="5000")
        )

        self.assertEqual(amounts.prize_amount, 9000)
        self.assertEqual(amounts.total_charged, 10000)

    def test_legacy_and_malformed_fields(self):
        amounts = webhook.derive_amounts(
            make_payment_intent(
                amount=10000, fullPrizeAmount="9500", totalAmount="10000", platformFee="abc"
            )
        )

        self.assertEqual(amounts.prize_amount, 9500)
        self.assertEqual(amounts.total_charged, 10000)
        self.assertEqual(amounts.platform_fee, 0)
        self.assertFalse(amounts.is_partial)


if __name__ == "__main__":
    unittest.main()
