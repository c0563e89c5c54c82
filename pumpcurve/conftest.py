"""Shared fixtures: a temporary database, accounts and a wired controller."""
import shutil
import tempfile

import pytest

from pumpcurve.access import SignatureAccessControl, initialize_payload
from pumpcurve.accounts import AccountStore, StorePaymentRail, StoreTokenLedger
from pumpcurve.config import CurveConfig
from pumpcurve.controller import CurveController
from pumpcurve.crypto import generate_key_pair, public_key_to_address, serialize_public_key, sign
from pumpcurve.db import DB
from pumpcurve.events import EventLog
from pumpcurve.interfaces import Clock
from pumpcurve.store import CurveStore

START_TIME = 1_700_000_000
TREASURY = b'T' * 20
MINT = b'M' * 32


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: int = START_TIME):
        self.current = start

    def now(self) -> int:
        return self.current

    def advance(self, seconds: int = 1):
        self.current += seconds


@pytest.fixture
def db():
    """Create a temporary database for testing."""
    temp_dir = tempfile.mkdtemp()
    database = DB(temp_dir)
    yield database
    database.close()
    shutil.rmtree(temp_dir)


@pytest.fixture
def store(db):
    return CurveStore(db)


@pytest.fixture
def accounts(db):
    return AccountStore(db)


@pytest.fixture
def ledger(accounts):
    return StoreTokenLedger(accounts)


@pytest.fixture
def rail(accounts):
    return StorePaymentRail(accounts)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def authority():
    """Deployer key pair and address."""
    priv_key, pub_key = generate_key_pair()
    pub_key_pem = serialize_public_key(pub_key)
    return {
        'priv_key': priv_key,
        'pub_key_pem': pub_key_pem,
        'address': public_key_to_address(pub_key_pem),
    }


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def controller(store, ledger, rail, clock, authority, events):
    access = SignatureAccessControl(allowed_addresses=[authority['address']])
    return CurveController(store, ledger, rail, access, clock=clock,
                           config=CurveConfig(), events=events)


@pytest.fixture
def registry(controller, authority):
    """An initialized registry handle."""
    signature = sign(authority['priv_key'], initialize_payload(TREASURY))
    return controller.initialize(authority['pub_key_pem'], signature, TREASURY)


@pytest.fixture
def creator(accounts):
    address = b'C' * 20
    accounts.deposit(address, 10**12)
    return address


@pytest.fixture
def buyer(accounts):
    address = b'B' * 20
    accounts.deposit(address, 10**15)
    return address


@pytest.fixture
def curve(controller, registry, creator):
    """An active curve at its seed reserves."""
    return controller.create_curve(registry, MINT, creator, registry.creation_fee,
                                   name="Test Token", symbol="TEST", uri="https://example.com/t.json")
