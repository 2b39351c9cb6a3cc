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
Process-wide clients, created on first use and shared by every entry point.
"""

from __future__ import annotations

import threading

import firebase_admin
from firebase_admin import initialize_app

from billing.config import BillingConfig, BillingMode, get_settings
from billing.errors import UpstreamError
from billing.store import DocumentStore, FirestoreDocumentStore, InMemoryDocumentStore
from billing.stripe_client import BillingClient, InMemoryBillingClient, StripeBillingClient

_lock = threading.Lock()
_store: DocumentStore | None = None
_billing_clients: dict[BillingMode, BillingClient] = {}


def _ensure_firebase_app() -> None:
    try:
        firebase_admin.get_app()
    except ValueError:
        settings = get_settings()
        options = (
            {"projectId": settings.firebase_project_id}
            if settings.firebase_project_id
            else None
        )
        initialize_app(options=options)


def get_store() -> DocumentStore:
    """
    Return the singleton document store, initializing Firebase Admin once.
    """
    global _store
    if _store:
        return _store

    with _lock:
        if _store is None:
            settings = get_settings()
            if settings.use_in_memory_backends:
                _store = InMemoryDocumentStore()
            else:
                _ensure_firebase_app()
                _store = FirestoreDocumentStore()
    return _store


def get_billing_client(config: BillingConfig) -> BillingClient:
    """Return one billing client per mode (test or live)."""
    client = _billing_clients.get(config.mode)
    if client:
        return client

    with _lock:
        client = _billing_clients.get(config.mode)
        if client is None:
            settings = get_settings()
            if settings.use_in_memory_backends:
                client = InMemoryBillingClient()
            else:
                if not config.secret_key:
                    raise UpstreamError(f"Missing Stripe secret key for {config.mode} mode")
                client = StripeBillingClient(api_key=config.secret_key)
            _billing_clients[config.mode] = client
    return client


def reset_clients() -> None:
    """Drop cached clients (useful in tests)."""
    global _store
    with _lock:
        _store = None
        _billing_clients.clear()
