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

from dataclasses import dataclass
from typing import Any, List, Optional, Type, TypeVar

from dacite import Config, from_dict

from shared.json_utils import camel_to_snake

T = TypeVar("T")


@dataclass
class SyncSubscriptionRequest:
    """Request object for re-syncing one user's subscription from Stripe."""

    user_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    external_customer_id: Optional[str] = None


@dataclass
class BackfillSubscriptionFieldsRequest:
    limit: Optional[int] = None
    dry_run: bool = False
    start_after: Optional[str] = None


@dataclass
class BackfillAliasesRequest:
    """Either `entries` (list of maps) or `csv` (delimited text) is required."""

    entries: Optional[List[Any]] = None
    csv: Optional[str] = None


@dataclass
class PromoCodeRequest:
    code: Optional[str] = None
    user_id: Optional[str] = None
    action: str = "validate"
    metadata: Optional[dict] = None


@dataclass
class UpdatePrizeAssignmentRequest:
    assignment_id: Optional[str] = None
    prize_amount: Any = None
    prize_structure: Any = None
    description: Optional[str] = None
    custom_distribution: Any = None
    updated_by: Optional[str] = None


@dataclass
class RepairDepositsRequest:
    lookback_hours: Any = 24


@dataclass
class PromoCodeResult:
    """Response object for promo validation and use."""

    is_valid: bool
    promo_code: Optional[dict] = None
    error: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class SyncSubscriptionResult:
    message: str
    user_id: Optional[str] = None
    latest_end: Optional[int] = None
    latest_status: Optional[str] = None
    mapped_type: Optional[str] = None


def parse_request(data_class: Type[T], data: Any) -> T:
    """
    Builds a request dataclass from a callable payload. Only top-level keys
    are converted to snake_case; nested maps are passed through untouched.
    """
    if not isinstance(data, dict):
        data = {}
    fields = {camel_to_snake(key): value for key, value in data.items()}
    return from_dict(data_class=data_class, data=fields, config=Config(check_types=False))
