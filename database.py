"""
MongoDB access helpers shared by the repositories.

The client is created lazily from Settings so importing this module never
opens a connection; tests hand a mongomock database straight to the
repositories instead.
"""
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional, Type, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel, ValidationError
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings
from errors import DecodeError, InvalidIdError
from schemas import COLLECTIONS, now_utc

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


@lru_cache()
def get_client() -> MongoClient:
    settings = get_settings()
    return MongoClient(
        settings.DATABASE_URL,
        serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS,
        tz_aware=True,
    )


def get_db() -> Database:
    return get_client()[get_settings().DATABASE_NAME]


def ensure_indexes(db: Database) -> None:
    """Create the indexes the repository queries rely on (idempotent)."""
    db[COLLECTIONS["user"]].create_index("email", unique=True)
    db[COLLECTIONS["listing"]].create_index([("is_approved", ASCENDING), ("is_active", ASCENDING), ("rent", ASCENDING)])
    db[COLLECTIONS["listing"]].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
    for key in ("booking", "inquiry"):
        for field in ("listing_id", "tenant_id", "owner_id"):
            db[COLLECTIONS[key]].create_index([(field, ASCENDING), ("created_at", DESCENDING)])
    db[COLLECTIONS["review"]].create_index([("listing_id", ASCENDING), ("created_at", DESCENDING)])
    db[COLLECTIONS["support_ticket"]].create_index([("created_at", DESCENDING)])


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidIdError(f"Invalid ID format: {id_str!r}")


def decode_document(model: Type[M], doc: Optional[Dict[str, Any]]) -> Optional[M]:
    if doc is None:
        return None
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise DecodeError(f"{model.__name__} {data['id']} does not match the expected shape ({e.error_count()} field errors)")


def encode_document(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(exclude={"id"})


class Repository:
    """Base for the per-collection repositories."""

    collection_key: str = ""
    model: Type[BaseModel] = BaseModel
    id_is_object_id = True

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[COLLECTIONS[self.collection_key]]

    def _key(self, id_str: str):
        return to_object_id(id_str) if self.id_is_object_id else id_str

    def _insert(self, data: Dict[str, Any]) -> str:
        data = dict(data)
        data.pop("id", None)
        data.setdefault("created_at", now_utc())
        data.setdefault("updated_at", data["created_at"])
        inserted_id = self.collection.insert_one(data).inserted_id
        return str(inserted_id)

    def _get(self, id_str: str):
        return decode_document(self.model, self.collection.find_one({"_id": self._key(id_str)}))

    def _find(self, filt: Dict[str, Any], sort=None, limit: int = 0) -> List:
        cursor = self.collection.find(filt).sort(sort or NEWEST_FIRST)
        if limit:
            cursor = cursor.limit(limit)
        return [decode_document(self.model, d) for d in cursor]
