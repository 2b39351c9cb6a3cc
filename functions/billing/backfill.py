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
Idempotent backfill and repair jobs over local subscription and user records.

Each invocation handles one bounded page of records. Only fields that were
empty when read are written, so a concurrent writer never loses data to a
backfill.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from google.cloud.firestore_v1 import SERVER_TIMESTAMP, ArrayUnion
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from billing.config import BillingConfig, Settings, get_settings
from billing.errors import BillingError, NotFoundError, ValidationError
from billing.store import BatchedWriter, DocumentStore
from billing.stripe_client import BillingClient
from billing.subscriptions import migrate_expiration_history, sync_subscription
from shared.firebase_constants import SUBSCRIPTIONS_COLLECTION, USERS_COLLECTION

logger = logging.getLogger(__name__)

REPAIRABLE_FIELDS = ("userId", "username", "userEmail")


@dataclass
class BackfillReport:
    scanned: int = 0
    processed: int = 0
    unique_user_ids: int = 0
    updated: int = 0
    updated_user_id: int = 0
    skipped: int = 0
    user_not_found: int = 0
    dry_run: bool = False
    batches_committed: int = 0
    next_cursor: Optional[str] = None
    updates: list[dict] = field(default_factory=list)


def resolve_limit(limit: Any, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    if limit is None:
        return settings.backfill_default_limit
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError("limit must be an integer")
    if limit < 1:
        raise ValidationError("limit must be at least 1")
    return min(limit, settings.backfill_max_limit)


def resolve_dry_run(dry_run: Any) -> bool:
    if dry_run is None:
        return False
    if not isinstance(dry_run, bool):
        raise ValidationError("dryRun must be a boolean")
    return dry_run


def _missing_fields(data: dict) -> list[str]:
    return [name for name in REPAIRABLE_FIELDS if not data.get(name)]


def backfill_subscription_fields(
    store: DocumentStore,
    limit: int | None = None,
    dry_run: bool = False,
    start_after: str | None = None,
    settings: Settings | None = None,
) -> BackfillReport:
    """
    Fills missing userId / username / userEmail on subscription records from
    the owning user document. The owner is the record's userId, or its
    document id when userId itself is missing.
    """
    limit = resolve_limit(limit, settings)
    dry_run = resolve_dry_run(dry_run)
    report = BackfillReport(dry_run=dry_run)

    rows = store.list_page(SUBSCRIPTIONS_COLLECTION, limit, start_after)
    report.scanned = len(rows)
    if len(rows) == limit:
        report.next_cursor = rows[-1][0]

    candidates = [(doc_id, data) for doc_id, data in rows if _missing_fields(data)]
    report.skipped = report.scanned - len(candidates)
    report.processed = len(candidates)

    owners = {doc_id: data.get("userId") or doc_id for doc_id, data in candidates}
    report.unique_user_ids = len(set(owners.values()))
    users = store.get_many(USERS_COLLECTION, owners.values())

    writer = BatchedWriter(store)
    for doc_id, data in candidates:
        owner_id = owners[doc_id]
        user = users.get(owner_id)
        if user is None:
            report.user_not_found += 1
            logger.warning("No user %s for subscription %s", owner_id, doc_id)
            continue

        fields: dict[str, Any] = {}
        if not data.get("userId"):
            fields["userId"] = owner_id
        if not data.get("username") and user.get("username"):
            fields["username"] = user["username"]
        if not data.get("userEmail") and user.get("email"):
            fields["userEmail"] = user["email"]
        if not fields:
            report.skipped += 1
            continue

        report.updated += 1
        if list(fields) == ["userId"]:
            report.updated_user_id += 1
        if dry_run:
            report.updates.append({"id": doc_id, **fields})
            continue
        writer.set(
            SUBSCRIPTIONS_COLLECTION,
            doc_id,
            {**fields, "updatedAt": SERVER_TIMESTAMP},
            merge=True,
        )

    if not dry_run:
        report.batches_committed = writer.flush()
    logger.info(
        "Subscription backfill: scanned=%d updated=%d skipped=%d notFound=%d dryRun=%s",
        report.scanned,
        report.updated,
        report.skipped,
        report.user_not_found,
        dry_run,
    )
    return report


class AliasEntry(BaseModel):
    """One (user, external app user id) pair to merge."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    user_id: str = Field(
        min_length=1, validation_alias=AliasChoices("userId", "user_id")
    )
    external_app_user_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices(
            "externalAppUserId", "appUserId", "app_user_id", "external_app_user_id"
        ),
    )
    email: Optional[str] = None
    username: Optional[str] = None


_CSV_HEADERS = {
    "userid": "userId",
    "appuserid": "externalAppUserId",
    "externalappuserid": "externalAppUserId",
    "email": "email",
    "useremail": "email",
    "username": "username",
}
_CSV_POSITIONAL = ("userId", "externalAppUserId", "email", "username")


def _header_key(name: str) -> str:
    return name.strip().lower().replace("_", "").replace("-", "").replace(" ", "")


def parse_alias_csv(text: str) -> list[dict]:
    """
    Parses a comma, tab or semicolon delimited table into alias dicts. A
    header row is used when present; otherwise columns are positional.
    """
    lines = [line for line in (text or "").splitlines() if line.strip()]
    if not lines:
        return []
    try:
        dialect = csv.Sniffer().sniff(lines[0], delimiters=",\t;")
        delimiter = dialect.delimiter
    except csv.Error:
        delimiter = ","

    rows = list(csv.reader(io.StringIO("\n".join(lines)), delimiter=delimiter))
    header = [_CSV_HEADERS.get(_header_key(cell)) for cell in rows[0]]
    if "userId" in header:
        columns, body = header, rows[1:]
    else:
        columns, body = list(_CSV_POSITIONAL), rows

    entries = []
    for row in body:
        entry = {
            column: cell.strip()
            for column, cell in zip(columns, row)
            if column and cell.strip()
        }
        if entry:
            entries.append(entry)
    return entries


def normalize_alias_entries(
    entries: list | None = None, csv_text: str | None = None
) -> tuple[list[AliasEntry], list[dict]]:
    """
    Produces the canonical entry list from either input shape. Returns the
    valid entries and a result row for every entry that failed validation.
    """
    if entries is None and not csv_text:
        raise ValidationError("Provide either entries or csv")
    raw = entries if entries is not None else parse_alias_csv(csv_text)
    if not isinstance(raw, list):
        raise ValidationError("entries must be a list")

    valid: list[AliasEntry] = []
    rejected: list[dict] = []
    for item in raw:
        try:
            valid.append(AliasEntry.model_validate(item))
        except PydanticValidationError as e:
            user_id = item.get("userId") if isinstance(item, dict) else None
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            rejected.append(
                {"userId": user_id, "ok": False, "error": f"Invalid entry: {fields}"}
            )
    return valid, rejected


def backfill_external_aliases(
    store: DocumentStore,
    billing: BillingClient,
    config: BillingConfig,
    entries: list | None = None,
    csv_text: str | None = None,
) -> dict:
    """
    Merges external app aliases into user records, then re-syncs and
    migrates each user's subscription. Entries fail independently.
    """
    valid, results = normalize_alias_entries(entries, csv_text)

    for entry in valid:
        try:
            user = store.get(USERS_COLLECTION, entry.user_id)
            if user is None:
                raise NotFoundError(f"User {entry.user_id} not found")

            update: dict[str, Any] = {
                "externalAliases": ArrayUnion([entry.external_app_user_id]),
                "updatedAt": SERVER_TIMESTAMP,
            }
            if entry.email and not user.get("email"):
                update["email"] = entry.email
            if entry.username and not user.get("username"):
                update["username"] = entry.username
            store.set(USERS_COLLECTION, entry.user_id, update, merge=True)

            sync = sync_subscription(store, billing, config, user_id=entry.user_id)
            migration = migrate_expiration_history(store, entry.user_id)
            results.append(
                {
                    "userId": entry.user_id,
                    "ok": True,
                    "sync": sync.message,
                    "migrated": migration["migrated"],
                }
            )
        except BillingError as e:
            logger.warning("Alias backfill failed for %s: %s", entry.user_id, e.message)
            results.append({"userId": entry.user_id, "ok": False, "error": e.message})
        except Exception as e:
            logger.error("Alias backfill failed for %s: %s", entry.user_id, e)
            results.append({"userId": entry.user_id, "ok": False, "error": str(e)})

    return {"processed": len(results), "results": results}
