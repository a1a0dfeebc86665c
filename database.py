"""
Data service over MongoDB.

Collections are named after the storefront's entities ("categories",
"products", "orders"). Records leave this module with the Mongo ``_id``
rewritten to a string ``id``; every driver failure is re-raised as
``DataServiceError`` so callers handle one error type.
"""

import re
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

import settings
from errors import DataServiceError

DEFAULT_PAGE_SIZE = 10

db = None
if settings.DATABASE_URL and settings.DATABASE_NAME:
    client = MongoClient(settings.DATABASE_URL)
    db = client[settings.DATABASE_NAME]


# -------------------- Helpers --------------------

def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise DataServiceError("Invalid id format")


def to_record(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, list):
            out[k] = [to_record(x) if isinstance(x, dict) else (str(x) if isinstance(x, ObjectId) else x) for x in v]
        else:
            out[k] = v
    return out


def ilike(term: str) -> dict:
    """Case-insensitive substring predicate; the term is matched literally."""
    return {"$regex": re.escape(term), "$options": "i"}


def any_of(*predicates: dict) -> dict:
    return {"$or": list(predicates)}


def _build_query(filters: Optional[Dict[str, Any]]) -> dict:
    if not filters:
        return {}
    query = {}
    for key, value in filters.items():
        if key == "id":
            query["_id"] = to_object_id(value)
        else:
            query[key] = value
    return query


@contextmanager
def _remote(operation: str, collection: str):
    try:
        yield
    except PyMongoError as e:
        raise DataServiceError(f"{operation} on '{collection}' failed: {e}") from e


# -------------------- Data service --------------------

class DataService:
    """Select/filter/order/limit/offset/count plus insert/update/delete by id."""

    def __init__(self, database):
        self._db = database

    @property
    def available(self) -> bool:
        return self._db is not None

    def collection(self, name: str):
        if self._db is None:
            raise DataServiceError("Database is not configured")
        return self._db[name]

    def collection_names(self) -> List[str]:
        if self._db is None:
            raise DataServiceError("Database is not configured")
        with _remote("list", "*"):
            return self._db.list_collection_names()

    def select(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        fields: Optional[Iterable[str]] = None,
    ) -> List[dict]:
        query = _build_query(filters)
        projection = None
        if fields:
            projection = {f: 1 for f in fields if f != "id"}
        with _remote("select", collection):
            cursor = self.collection(collection).find(query, projection)
            if order_by:
                cursor = cursor.sort(order_by, ASCENDING if ascending else DESCENDING)
            if offset:
                cursor = cursor.skip(offset).limit(limit or DEFAULT_PAGE_SIZE)
            elif limit:
                cursor = cursor.limit(limit)
            return [to_record(d) for d in cursor]

    def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with _remote("count", collection):
            return self.collection(collection).count_documents(_build_query(filters))

    def get_one_by(self, collection: str, key: str, value: Any) -> Optional[dict]:
        query = _build_query({key: value})
        with _remote("get", collection):
            return to_record(self.collection(collection).find_one(query))

    def insert(self, collection: str, data: dict) -> dict:
        doc = dict(data)
        doc.pop("id", None)
        now = datetime.now(timezone.utc)
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        with _remote("insert", collection):
            inserted_id = self.collection(collection).insert_one(doc).inserted_id
        doc["_id"] = inserted_id
        return to_record(doc)

    def update(self, collection: str, record_id: str, data: dict) -> Optional[dict]:
        _id = to_object_id(record_id)
        update = {k: v for k, v in data.items() if k not in ("id", "_id", "created_at")}
        update["updated_at"] = datetime.now(timezone.utc)
        with _remote("update", collection):
            coll = self.collection(collection)
            coll.update_one({"_id": _id}, {"$set": update})
            return to_record(coll.find_one({"_id": _id}))

    def delete(self, collection: str, record_id: str) -> None:
        _id = to_object_id(record_id)
        with _remote("delete", collection):
            self.collection(collection).delete_one({"_id": _id})
