"""
Database Helper Functions

MongoDB access for the order pipeline: the connection configured from the
environment, a few generic CRUD helpers, and one store class per collection
the lifecycle engine and the analytics read from.

Dates are stored as naive UTC datetimes, the form pymongo hands back, and are
marked as UTC again before they leave the API.
"""

import functools
import logging
import os
from datetime import datetime, timezone
from typing import Union, Optional, Dict, Any, List

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument, ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import StorageFailure

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def _ensure_db():
    if db is None:
        raise StorageFailure("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")


def get_db() -> Database:
    _ensure_db()
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def with_utc_dates(doc: Optional[dict]) -> Optional[dict]:
    """Mark stored naive dates as UTC so they serialize with an offset."""
    if doc is None:
        return None
    return {
        k: v.replace(tzinfo=timezone.utc) if isinstance(v, datetime) and v.tzinfo is None else v
        for k, v in doc.items()
    }


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True)
    return dict(data)


def _object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def storage_operation(func):
    """Surface driver errors as StorageFailure without leaking their detail."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PyMongoError as exc:
            logger.error("Storage operation %s failed", func.__qualname__, exc_info=True)
            raise StorageFailure("Storage operation failed") from exc
    return wrapper


# CRUD helpers

@storage_operation
def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    payload = _to_dict(data)
    now = utcnow()
    payload.setdefault('createdAt', now)
    payload['updatedAt'] = now
    result = database[collection_name].insert_one(payload)
    return str(result.inserted_id)


@storage_operation
def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort: Optional[list] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(int(limit))
    return [serialize_doc(doc) for doc in cursor]


@storage_operation
def get_document_by_id(database: Database, collection_name: str, _id: str) -> Optional[dict]:
    oid = _object_id(_id)
    if oid is None:
        return None
    doc = database[collection_name].find_one({"_id": oid})
    return serialize_doc(doc) if doc else None


@storage_operation
def ensure_indexes(database: Database) -> None:
    database["revenue"].create_index("settlementId", unique=True, sparse=True)
    database["revenue"].create_index("date")
    database["order"].create_index("guestId")
    database["order"].create_index("tableId")
    database["order"].create_index("status")


# Stores

class OrderStore:
    """Orders with embedded, price-snapshotted line items."""

    INTERNAL_FIELDS = ("settlementId", "soldCounted", "updatedAt")

    def __init__(self, database: Database):
        self.database = database
        self.collection = database["order"]

    def insert(self, order: Union[BaseModel, dict]) -> str:
        return create_document(self.database, "order", order)

    def get(self, order_id: str) -> Optional[dict]:
        return get_document_by_id(self.database, "order", order_id)

    @storage_operation
    def find_by_guest_and_table(self, guest_id: str, table_id: str) -> List[dict]:
        cursor = self.collection.find({"guestId": guest_id, "tableId": table_id}).sort("createdAt", DESCENDING)
        return [serialize_doc(doc) for doc in cursor]

    @storage_operation
    def find_active(self) -> List[dict]:
        cursor = self.collection.find(
            {"status": {"$in": ["Pending", "Preparing", "Ready"]}}
        ).sort("createdAt", ASCENDING)
        return [serialize_doc(doc) for doc in cursor]

    @storage_operation
    def find_by_status(self, status: str) -> List[dict]:
        return [serialize_doc(doc) for doc in self.collection.find({"status": status})]

    @storage_operation
    def find_by_table(self, table_id: str) -> List[dict]:
        return [serialize_doc(doc) for doc in self.collection.find({"tableId": table_id})]

    @storage_operation
    def update_status(self, order_id: str, expected: str, status: str) -> Optional[dict]:
        """Set ``status`` only while the stored status is still ``expected``."""
        oid = _object_id(order_id)
        if oid is None:
            return None
        doc = self.collection.find_one_and_update(
            {"_id": oid, "status": expected},
            {"$set": {"status": status, "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(doc)

    @storage_operation
    def mark_sold_counted(self, order_id: str) -> bool:
        """Claim the right to count this order's items; True for exactly one caller."""
        result = self.collection.update_one(
            {"_id": ObjectId(order_id), "soldCounted": {"$ne": True}},
            {"$set": {"soldCounted": True}},
        )
        return result.modified_count == 1

    @storage_operation
    def claim_for_settlement(self, order_id: str, settlement_id: str) -> Optional[dict]:
        oid = _object_id(order_id)
        if oid is None:
            return None
        doc = self.collection.find_one_and_update(
            {"_id": oid, "$or": [{"settlementId": {"$exists": False}}, {"settlementId": settlement_id}]},
            {"$set": {"settlementId": settlement_id}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(doc)

    @storage_operation
    def claim_guest_orders(self, guest_id: str, settlement_id: str) -> int:
        result = self.collection.update_many(
            {"guestId": guest_id, "settlementId": {"$exists": False}},
            {"$set": {"settlementId": settlement_id}},
        )
        return result.modified_count

    @storage_operation
    def settlements_for_guest(self, guest_id: str) -> List[str]:
        return sorted(self.collection.distinct("settlementId", {"guestId": guest_id, "settlementId": {"$exists": True}}))

    @storage_operation
    def find_by_settlement(self, settlement_id: str) -> List[dict]:
        cursor = self.collection.find({"settlementId": settlement_id}).sort("createdAt", ASCENDING)
        return [serialize_doc(doc) for doc in cursor]

    @storage_operation
    def delete(self, order_id: str) -> bool:
        oid = _object_id(order_id)
        if oid is None:
            return False
        return self.collection.delete_one({"_id": oid}).deleted_count > 0

    @storage_operation
    def delete_many(self, filter_dict: Dict[str, Any]) -> int:
        return self.collection.delete_many(filter_dict).deleted_count


class CatalogStore:
    """Menu items; only ``totalSold`` is ever written from here."""

    def __init__(self, database: Database):
        self.database = database
        self.collection = database["fooditem"]

    def get(self, food_id: str) -> Optional[dict]:
        return get_document_by_id(self.database, "fooditem", food_id)

    def list(self) -> List[dict]:
        return [with_utc_dates(_with_sold(doc)) for doc in get_documents(self.database, "fooditem", sort=[("name", ASCENDING)])]

    @storage_operation
    def increment_sold(self, food_id: str, by: int) -> bool:
        oid = _object_id(food_id)
        if oid is None:
            return False
        result = self.collection.update_one({"_id": oid}, {"$inc": {"totalSold": int(by)}})
        return result.matched_count == 1

    @storage_operation
    def top_by_sold(self, n: int) -> List[dict]:
        cursor = self.collection.aggregate([
            {"$project": {
                "name": 1,
                "price": 1,
                "image": 1,
                "totalSold": {"$ifNull": ["$totalSold", 0]},
            }},
            {"$sort": {"totalSold": -1}},
            {"$limit": int(n)},
        ])
        return [serialize_doc(doc) for doc in cursor]


class RevenueLedger:
    """Append-only settlement records, kept apart from the orders they came from."""

    def __init__(self, database: Database):
        self.database = database
        self.collection = database["revenue"]

    @storage_operation
    def insert(self, record: Union[BaseModel, dict]) -> str:
        payload = _to_dict(record)
        payload.pop("_id", None)
        return str(self.collection.insert_one(payload).inserted_id)

    @storage_operation
    def record_settlement(self, settlement_id: str, record: Union[BaseModel, dict]) -> bool:
        """Insert the record for ``settlement_id`` unless one exists; True if inserted."""
        payload = _to_dict(record)
        payload.pop("_id", None)
        payload.pop("settlementId", None)
        try:
            result = self.collection.update_one(
                {"settlementId": settlement_id},
                {"$setOnInsert": payload},
                upsert=True,
            )
        except DuplicateKeyError:
            return False
        return result.upserted_id is not None

    @storage_operation
    def get_by_settlement(self, settlement_id: str) -> Optional[dict]:
        return serialize_doc(self.collection.find_one({"settlementId": settlement_id}))

    @storage_operation
    def sum_in_range(self, start: datetime, end: Optional[datetime] = None) -> Dict[str, Any]:
        date_match: Dict[str, Any] = {"$gte": start}
        if end is not None:
            date_match["$lt"] = end
        rows = list(self.collection.aggregate([
            {"$match": {"date": date_match}},
            {"$group": {"_id": None, "total": {"$sum": "$totalAmount"}, "count": {"$sum": 1}}},
        ]))
        if not rows:
            return {"total": 0, "count": 0}
        return {"total": rows[0]["total"], "count": rows[0]["count"]}

    @storage_operation
    def monthly_totals(self, start: datetime, end: datetime) -> Dict[int, float]:
        rows = self.collection.aggregate([
            {"$match": {"date": {"$gte": start, "$lt": end}}},
            {"$group": {"_id": {"$month": "$date"}, "revenue": {"$sum": "$totalAmount"}}},
        ])
        return {row["_id"]: row["revenue"] for row in rows}

    @storage_operation
    def count_all(self) -> int:
        return self.collection.count_documents({})

    @storage_operation
    def find_matching(self, guest_id: str, table_id: str, amount: float, day_start: datetime, day_end: datetime) -> Optional[dict]:
        doc = self.collection.find_one({
            "guestId": guest_id,
            "tableId": table_id,
            "totalAmount": {"$gte": amount - 0.005, "$lte": amount + 0.005},
            "date": {"$gte": day_start, "$lt": day_end},
        })
        return serialize_doc(doc)


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["_id"] = str(d["_id"])  # convert ObjectId to string
    return d


def _with_sold(doc: dict) -> dict:
    doc.setdefault("totalSold", 0)
    return doc
