"""
MongoDB access for the time tracker.

A `Database` is created once when the application starts and closed when it
shuts down; request handlers receive it through `app.state`.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson.objectid import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_query_time(value: datetime) -> datetime:
    """Naive UTC, the form stored datetimes compare against."""
    return as_utc(value).replace(tzinfo=None)


def parse_object_id(id_str: str) -> Optional[ObjectId]:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc["_id"] = str(doc["_id"])
    for key, value in doc.items():
        if isinstance(value, datetime):
            doc[key] = as_utc(value)
    return doc


class Database:
    def __init__(self, client: MongoClient, name: str):
        self.client = client
        self.name = name
        self.db = client[name]

    @classmethod
    def connect(cls, url: str, name: str) -> "Database":
        logger.info("Connecting to MongoDB database %s", name)
        return cls(MongoClient(url), name)

    def close(self) -> None:
        logger.info("Closing MongoDB connection")
        self.client.close()

    def __getitem__(self, collection: str):
        return self.db[collection]

    def ensure_indexes(self) -> None:
        self.db["project"].create_index(
            [("user_id", ASCENDING), ("device_project_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"device_project_id": {"$exists": True}},
            name="user_device_project_unique",
        )
        self.db["project"].create_index([("user_id", ASCENDING), ("name", ASCENDING)], name="user_name")
        self.db["timeentry"].create_index(
            [
                ("user_id", ASCENDING),
                ("project_id", ASCENDING),
                ("end_time", ASCENDING),
                ("start_time", DESCENDING),
            ],
            name="user_project_running",
        )
        self.db["apikey"].create_index("key_hash", unique=True, name="key_hash_unique")
        self.db["apikey"].create_index(
            [("user_id", ASCENDING), ("key_name", ASCENDING)], unique=True, name="user_key_name_unique"
        )
        self.db["settings"].create_index("user_id", unique=True, name="settings_user_unique")

    def collection_names(self) -> List[str]:
        return self.db.list_collection_names()

    def create_document(self, collection: str, data: Dict[str, Any]) -> str:
        now = utcnow()
        doc = dict(data)
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self.db[collection].insert_one(doc)
        return str(result.inserted_id)

    def get_documents(
        self,
        collection: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: Optional[List[tuple]] = None,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [serialize(d) for d in cursor]

    def get_document(self, collection: str, doc_id: str, **filters: Any) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(doc_id)
        if oid is None:
            return None
        return serialize(self.db[collection].find_one({"_id": oid, **filters}))

    def update_document(self, collection: str, doc_id: str, update: Dict[str, Any], **filters: Any) -> bool:
        oid = parse_object_id(doc_id)
        if oid is None:
            return False
        result = self.db[collection].update_one(
            {"_id": oid, **filters}, {"$set": {**update, "updated_at": utcnow()}}
        )
        return result.matched_count > 0

    def delete_document(self, collection: str, doc_id: str, **filters: Any) -> bool:
        oid = parse_object_id(doc_id)
        if oid is None:
            return False
        return self.db[collection].delete_one({"_id": oid, **filters}).deleted_count > 0
