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

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, List, Optional, Type, TypeVar

from dacite import Config, from_dict

from shared.json_utils import convert_keys

T = TypeVar("T")


class EscrowStatus(StrEnum):
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class FundingStatus(StrEnum):
    UNFUNDED = "unfunded"
    FUNDED = "funded"


class PromoRejection(StrEnum):
    NOT_FOUND = "not_found"
    WRONG_TYPE = "wrong_type"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    ALREADY_USED = "already_used"


@dataclass
class EscrowFees:
    """Informational fee breakdown. Never used to derive `amount`."""

    stripe_fee: int = 0
    platform_fee: int = 0


@dataclass
class EscrowMetadata:
    full_prize_amount: int = 0
    platform_fee: int = 0
    total_amount_charged: int = 0
    fees: EscrowFees = field(default_factory=EscrowFees)
    payment_method: Optional[str] = None
    fee_structure: str = "host_pays_platform_fee"
    source: str = "webhook"


@dataclass
class AdditionalDeposit:
    payment_intent_id: str
    amount_added: int
    total_charged_for_this: int
    platform_fee_charged: int = 0
    stripe_charge_id: Optional[str] = None
    deposited_at: Any = None


@dataclass
class EscrowRecord:
    """Cash held against a future prize payout, keyed by the payment id."""

    id: str
    challenge_id: str
    amount: int
    currency: str = "usd"
    originating_payment_id: Optional[str] = None
    status: EscrowStatus = EscrowStatus.HELD
    total_amount_charged: int = 0
    challenge_title: Optional[str] = None
    stripe_charge_id: Optional[str] = None
    prize_assignment_id: Optional[str] = None
    deposited_by: Optional[str] = None
    depositor_name: Optional[str] = None
    depositor_email: Optional[str] = None
    metadata: EscrowMetadata = field(default_factory=EscrowMetadata)
    additional_deposits: List[AdditionalDeposit] = field(default_factory=list)
    created_at: Any = None
    updated_at: Any = None


@dataclass
class PrizeAssignment:
    id: str
    challenge_id: str
    prize_amount: float = 0
    funding_status: FundingStatus = FundingStatus.UNFUNDED
    deposited_amount: Optional[int] = None
    total_amount_charged: Optional[int] = None
    platform_fee_collected: Optional[int] = None
    escrow_record_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    deposited_at: Any = None
    deposited_by: Optional[str] = None
    created_at: Any = None
    updated_at: Any = None


@dataclass
class PromoCode:
    id: str
    code: str
    type: Optional[str] = None
    is_active: bool = False
    usage_limit: Optional[int] = None
    usage_count: int = 0
    expires_at: Optional[datetime] = None


_DACITE_CONFIG = Config(
    check_types=False, cast=[EscrowStatus, FundingStatus, PromoRejection]
)


def from_document(data_class: Type[T], doc_id: str | None, data: dict) -> T:
    """Builds a record dataclass from a camelCase Firestore document."""
    snake = convert_keys(data, "camel_to_snake")
    if doc_id is not None:
        snake["id"] = doc_id
    return from_dict(data_class=data_class, data=snake, config=_DACITE_CONFIG)


def to_document(record: Any, exclude: tuple[str, ...] = ("id",)) -> dict:
    """Serializes a record dataclass into a camelCase Firestore document."""
    doc = convert_keys(asdict(record), "snake_to_camel")
    for key in exclude:
        doc.pop(key, None)
    return doc
