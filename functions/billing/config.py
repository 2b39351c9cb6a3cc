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
Configuration and per-request billing mode resolution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from functools import lru_cache
from typing import Mapping, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PULSECHECK_MONTHLY = "pulsecheck-monthly"
PULSECHECK_ANNUAL = "pulsecheck-annual"

LOCAL_REFERER_MARKERS = ("localhost", "127.0.0.1")


class Settings(BaseSettings):
    """Environment-backed settings shared by every function."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    stripe_secret_key: Optional[str] = Field(default=None)
    stripe_test_secret_key: Optional[str] = Field(default=None)
    stripe_webhook_secret: Optional[str] = Field(default=None)
    stripe_test_webhook_secret: Optional[str] = Field(default=None)

    live_monthly_price_id: str = Field(default="price_1PDq26RobSf56MUOucDIKLhd")
    live_annual_price_id: str = Field(default="price_1PDq3LRobSf56MUOng0UxhCC")
    test_monthly_price_id: str = Field(default="price_1RMIUNRobSf56MUOfeB4gIot")
    test_annual_price_id: str = Field(default="price_1RMISFRobSf56MUOpcSoohjP")

    promo_code_type: str = Field(default="partner")

    backfill_default_limit: int = Field(default=1000)
    backfill_max_limit: int = Field(default=2000)

    firebase_project_id: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()


class BillingMode(StrEnum):
    TEST = "test"
    LIVE = "live"


@dataclass(frozen=True)
class BillingConfig:
    mode: BillingMode
    secret_key: Optional[str]
    webhook_secret: Optional[str]
    price_table: Mapping[str, str] = field(default_factory=dict)


def build_price_table(settings: Settings) -> dict[str, str]:
    # Live and test ids map to the same labels in either mode.
    return {
        settings.live_monthly_price_id: PULSECHECK_MONTHLY,
        settings.live_annual_price_id: PULSECHECK_ANNUAL,
        settings.test_monthly_price_id: PULSECHECK_MONTHLY,
        settings.test_annual_price_id: PULSECHECK_ANNUAL,
    }


def is_local_referer(referer: str | None) -> bool:
    referer = referer or ""
    return any(marker in referer for marker in LOCAL_REFERER_MARKERS)


def resolve_billing_config(
    referer: str | None, settings: Settings | None = None
) -> BillingConfig:
    """
    Resolve credentials for one request. Requests from a local development
    origin use test-mode Stripe keys; everything else is live.
    """
    settings = settings or get_settings()
    if is_local_referer(referer):
        return BillingConfig(
            mode=BillingMode.TEST,
            secret_key=settings.stripe_test_secret_key,
            webhook_secret=settings.stripe_test_webhook_secret,
            price_table=build_price_table(settings),
        )
    return BillingConfig(
        mode=BillingMode.LIVE,
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        price_table=build_price_table(settings),
    )


def map_price_to_plan(
    price_id: str | None, price_table: Mapping[str, str]
) -> Optional[str]:
    """Unknown price ids map to None rather than a guessed plan."""
    if not price_id:
        return None
    return price_table.get(price_id)
