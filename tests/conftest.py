"""
Shared fixtures: an in-memory Mongo database, the stores on top of it, and a
recording broadcaster standing in for the websocket fan-out.
"""
import mongomock
import pytest

from database import CatalogStore, OrderStore, RevenueLedger, create_document, ensure_indexes
from orders import OrderService
from schemas import Fooditem


class RecordingFanOut:
    def __init__(self):
        self.broadcasts = []
        self.channel_broadcasts = []

    def broadcast_all(self, event, payload):
        self.broadcasts.append((event, payload))

    def broadcast_to_channel(self, channel_id, event, payload):
        self.channel_broadcasts.append((channel_id, event, payload))

    def events(self):
        return [event for event, _ in self.broadcasts]


class FailingFanOut:
    def broadcast_all(self, event, payload):
        raise ConnectionError("transport down")

    def broadcast_to_channel(self, channel_id, event, payload):
        raise ConnectionError("transport down")


@pytest.fixture
def db():
    database = mongomock.MongoClient()["tableorder_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def order_store(db):
    return OrderStore(db)


@pytest.fixture
def catalog(db):
    return CatalogStore(db)


@pytest.fixture
def ledger(db):
    return RevenueLedger(db)


@pytest.fixture
def fanout():
    return RecordingFanOut()


@pytest.fixture
def service(order_store, catalog, ledger, fanout):
    return OrderService(order_store, catalog, ledger, fanout)


@pytest.fixture
def menu(db):
    """Two catalog items: dosa at 80 and biryani at 120."""
    return {
        "dosa": create_document(db, "fooditem", Fooditem(name="Masala Dosa", price=80.0)),
        "biryani": create_document(db, "fooditem", Fooditem(name="Biryani", price=120.0)),
    }
