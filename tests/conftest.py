"""Shared fixtures for the crm_sync test suite."""

import logging

import pytest

from crm_sync.errors import RemoteApiError
from crm_sync.storage.db import SyncDatabase
from crm_sync.sync.contact import LocalContact, RemoteContact
from crm_sync.sync.engine import SyncOrchestrator
from crm_sync.sync.ledger import SyncLedger


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() so caplog sees crm_sync records in every test."""
    yield
    logger = logging.getLogger("crm_sync")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.disabled = False
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def db():
    """Initialized in-memory bridge database."""
    database = SyncDatabase(":memory:")
    database.initialize()
    return database


class FakeClock:
    """Settable clock returning epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeRemoteCRM:
    """In-memory stand-in for RemoteCRMClient."""

    def __init__(self):
        self.contacts: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None
        self._next_id = 100

    def add(self, contact_id, **properties):
        self.contacts[str(contact_id)] = dict(properties)

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def get_contact(self, ctx, contact_id, properties):
        self.calls.append(("get", contact_id))
        self._check()
        if contact_id not in self.contacts:
            raise RemoteApiError("not found", status=404)
        stored = self.contacts[contact_id]
        return RemoteContact(contact_id, {p: stored.get(p) for p in properties})

    def search_by_email(self, ctx, email, properties=("email",)):
        self.calls.append(("search", email))
        self._check()
        for contact_id, stored in self.contacts.items():
            if stored.get("email") == email:
                return RemoteContact(contact_id, {p: stored.get(p) for p in properties})
        return None

    def create_contact(self, ctx, properties):
        self.calls.append(("create", dict(properties)))
        self._check()
        self._next_id += 1
        contact_id = str(self._next_id)
        self.contacts[contact_id] = dict(properties)
        return RemoteContact(contact_id, dict(properties))

    def update_contact(self, ctx, contact_id, properties):
        self.calls.append(("update", contact_id, dict(properties)))
        self._check()
        self.contacts.setdefault(contact_id, {}).update(properties)
        return RemoteContact(contact_id, dict(self.contacts[contact_id]))

    def writes(self):
        return [c for c in self.calls if c[0] in ("create", "update")]


class FakeLocalCRM:
    """In-memory stand-in for LocalCRMClient."""

    def __init__(self):
        self.contacts: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self._next_id = 0

    def add(self, contact_id, **fields):
        self.contacts[contact_id] = dict(fields)

    def _contact(self, contact_id):
        return LocalContact.from_api_response({"id": contact_id, **self.contacts[contact_id]})

    def get_contact(self, ctx, contact_id):
        self.calls.append(("get", contact_id))
        return self._contact(contact_id)

    def search_by_email(self, ctx, email):
        self.calls.append(("search", email))
        for contact_id, stored in self.contacts.items():
            if stored.get("email") == email:
                return self._contact(contact_id)
        return None

    def create_contact(self, ctx, fields):
        self.calls.append(("create", dict(fields)))
        self._next_id += 1
        contact_id = f"c-{self._next_id}"
        self.contacts[contact_id] = dict(fields)
        return self._contact(contact_id)

    def update_contact(self, ctx, contact_id, fields):
        self.calls.append(("update", contact_id, dict(fields)))
        self.contacts.setdefault(contact_id, {}).update(fields)
        return self._contact(contact_id)

    def writes(self):
        return [c for c in self.calls if c[0] in ("create", "update")]


@pytest.fixture
def remote_crm():
    return FakeRemoteCRM()


@pytest.fixture
def local_crm():
    return FakeLocalCRM()


BIDIRECTIONAL_MAPPINGS = [
    {"local_field_key": "email", "remote_property": "email", "direction": "bidirectional"},
    {"local_field_key": "first_name", "remote_property": "firstname", "direction": "bidirectional"},
]


@pytest.fixture
def connected_db(db):
    """Database with tenant t1 connected to remote account 42 and mapped."""
    db.upsert_connection(
        "t1",
        access_token="ACCESS",
        refresh_token="REFRESH",
        token_expires_at_ms=9_999_999_999_999,
        scopes=["crm.objects.contacts.read"],
        remote_account_id="42",
    )
    db.replace_mappings("t1", BIDIRECTIONAL_MAPPINGS)
    return db


@pytest.fixture
def orchestrator(connected_db, remote_crm, local_crm, clock):
    ledger = SyncLedger(connected_db, ttl_seconds=120, clock=clock)
    return SyncOrchestrator(connected_db, ledger, remote_crm, local_crm)
