"""
Database access

The MongoDB handle is created lazily from Config and reached only through the
get_*_store() dependencies below, so routes receive repository objects and
tests can swap them for in-memory ones.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional, List

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument, DESCENDING

from config import Config
from errors import InvalidId

logger = logging.getLogger(__name__)


def now():
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise InvalidId()
    return ObjectId(id_str)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Render a stored document for a JSON response (ObjectId -> str)."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["_id"] = str(out["_id"])
    return out


def create_document(collection, data) -> str:
    """Insert a pydantic model or dict, stamping createdAt. Returns the new id as str."""
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    doc.setdefault("createdAt", now())
    result = collection.insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection, query: dict, limit: Optional[int] = None, newest_first: bool = False) -> List[dict]:
    cursor = collection.find(query)
    if newest_first:
        cursor = cursor.sort("createdAt", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


# ---------------- Repositories -----------------

class DonationRequestStore:
    def __init__(self, db):
        self.collection = db["donationRequests"]

    def insert(self, doc: dict) -> str:
        return create_document(self.collection, doc)

    def get(self, request_id: ObjectId) -> Optional[dict]:
        return self.collection.find_one({"_id": request_id})

    def find(self, query: dict) -> List[dict]:
        return get_documents(self.collection, query, newest_first=True)

    def update(self, request_id: ObjectId, changes: dict) -> Optional[dict]:
        return self.collection.find_one_and_update(
            {"_id": request_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )

    def update_if_status(self, request_id: ObjectId, status: str, changes: dict) -> Optional[dict]:
        """Apply changes only if the stored status still equals `status`.

        One find_one_and_update, so concurrent callers cannot both win.
        Returns the updated document, or None when nothing matched.
        """
        return self.collection.find_one_and_update(
            {"_id": request_id, "status": status},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )

    def replace(self, request_id: ObjectId, doc: dict) -> Optional[dict]:
        return self.collection.find_one_and_replace(
            {"_id": request_id},
            doc,
            return_document=ReturnDocument.AFTER,
        )

    def delete(self, request_id: ObjectId) -> bool:
        return self.collection.delete_one({"_id": request_id}).deleted_count > 0


class UserStore:
    def __init__(self, db):
        self.collection = db["users"]

    def ensure_indexes(self):
        self.collection.create_index("email", unique=True)

    def insert(self, doc: dict) -> str:
        return create_document(self.collection, doc)

    def find_by_email(self, email: str) -> Optional[dict]:
        return self.collection.find_one({"email": email.lower()})

    def get(self, user_id: ObjectId) -> Optional[dict]:
        return self.collection.find_one({"_id": user_id})

    def find(self, query: dict) -> List[dict]:
        return get_documents(self.collection, query)

    def update_by_email(self, email: str, changes: dict) -> Optional[dict]:
        return self.collection.find_one_and_update(
            {"email": email.lower()},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )

    def update(self, user_id: ObjectId, changes: dict) -> Optional[dict]:
        return self.collection.find_one_and_update(
            {"_id": user_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )


class BlogStore:
    def __init__(self, db):
        self.collection = db["blogs"]

    def insert(self, doc) -> str:
        return create_document(self.collection, doc)

    def find(self) -> List[dict]:
        return get_documents(self.collection, {}, newest_first=True)

    def set_status(self, blog_id: ObjectId, status: str) -> bool:
        result = self.collection.update_one({"_id": blog_id}, {"$set": {"status": status}})
        return result.matched_count > 0

    def delete(self, blog_id: ObjectId) -> bool:
        return self.collection.delete_one({"_id": blog_id}).deleted_count > 0


# ---------------- Dependencies -----------------

@lru_cache(maxsize=None)
def get_database():
    if not Config.DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not set")
    client = MongoClient(Config.DATABASE_URL)
    db = client[Config.DATABASE_NAME]
    UserStore(db).ensure_indexes()
    logger.info("MongoDB connected: %s", Config.DATABASE_NAME)
    return db


def get_request_store() -> DonationRequestStore:
    return DonationRequestStore(get_database())


def get_user_store() -> UserStore:
    return UserStore(get_database())


def get_blog_store() -> BlogStore:
    return BlogStore(get_database())
