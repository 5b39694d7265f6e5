from __future__ import annotations

from datetime import datetime, timezone
from itertools import count

import pytest

from ncu_portal import create_app
from ncu_portal.auth import decorators
from ncu_portal.config import Config
from ncu_portal.offline.queue import OfflineQueue
from ncu_portal.storage import LocalStore


class FakeGateway:
    """In-memory stand-in for the Supabase project."""

    def __init__(self):
        self.batches = []
        self.batch_handler = None
        self.bulk_calls = []
        self.bulk_handler = None
        self.emails = []
        self.email_lookups = 0
        self.users = {}

    def batch_process(self, kind, transactions):
        self.batches.append((kind, list(transactions)))
        if self.batch_handler is not None:
            return self.batch_handler(kind, transactions)
        return {"processed": [{"id": tx["id"]} for tx in transactions], "failed": []}

    def bulk_create_users(self, records, send_welcome_emails, source_label, actor_id):
        self.bulk_calls.append({
            "records": list(records),
            "send_welcome_emails": send_welcome_emails,
            "source_label": source_label,
            "actor_id": actor_id,
        })
        if self.bulk_handler is not None:
            return self.bulk_handler(records)
        return {"success": len(records), "failed": 0, "skipped": 0, "failed_list": []}

    def list_user_emails(self):
        self.email_lookups += 1
        return list(self.emails)

    def get_user(self, access_token):
        return self.users.get(access_token)


FIXED_NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def store(tmp_path) -> LocalStore:
    return LocalStore(str(tmp_path / "local_store.json"))


@pytest.fixture()
def make_queue(store, gateway):
    def factory(**kwargs):
        ids = count(1)
        kwargs.setdefault("clock", lambda: FIXED_NOW)
        kwargs.setdefault("id_factory", lambda: f"tx-{next(ids)}")
        return OfflineQueue(store, gateway, **kwargs)
    return factory


@pytest.fixture()
def app(tmp_path, gateway, store):
    class TestConfig(Config):
        TESTING = True
        SECRET_KEY = "test-secret"
        LOCAL_STORE_PATH = str(tmp_path / "local_store.json")
        OFFLINE_SYNC_ENABLED = False

    decorators.RATE_LIMITS.clear()
    app = create_app(TestConfig, gateway=gateway, store=store)
    yield app
    app.extensions["offline_sync"].stop()


@pytest.fixture()
def client(app):
    return app.test_client()


def sign_in(client, user_id="member-1", role="regular"):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
        sess["email"] = f"{user_id}@example.com"
        sess["role"] = role


@pytest.fixture()
def member_client(client):
    sign_in(client, "member-1", "regular")
    return client


@pytest.fixture()
def admin_client(client):
    sign_in(client, "admin-1", "admin")
    return client
