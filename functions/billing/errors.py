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

from firebase_functions.https_fn import FunctionsErrorCode

from shared.types import PromoRejection


class BillingError(Exception):
    """Base for every error the reconciliation core raises on purpose."""

    code: FunctionsErrorCode = FunctionsErrorCode.INTERNAL
    http_status: int = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(BillingError):
    """A request field is missing or malformed."""

    code = FunctionsErrorCode.INVALID_ARGUMENT
    http_status = 400


class AuthenticationError(BillingError):
    """A webhook signature could not be verified."""

    code = FunctionsErrorCode.UNAUTHENTICATED
    http_status = 400


class NotFoundError(BillingError):
    code = FunctionsErrorCode.NOT_FOUND
    http_status = 404


class ConflictError(BillingError):
    """The write would violate a ledger invariant."""

    code = FunctionsErrorCode.FAILED_PRECONDITION
    http_status = 400


class UpstreamError(BillingError):
    """Stripe or Firestore failed. Safe to retry."""

    code = FunctionsErrorCode.INTERNAL
    http_status = 500


class AlreadyExistsError(ConflictError):
    code = FunctionsErrorCode.ALREADY_EXISTS
    http_status = 409


class InvalidTransitionError(ConflictError):
    pass


class PromoCodeRejected(ConflictError):
    def __init__(self, reason: PromoRejection, message: str):
        super().__init__(message, details={"reason": reason.value})
        self.reason = reason


class UsageLimitReached(PromoCodeRejected):
    def __init__(self, message: str = "This promo code has reached its usage limit."):
        super().__init__(PromoRejection.USAGE_LIMIT_REACHED, message)
