import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from config import get_settings

logger = logging.getLogger(__name__)

USERS = "user"
COURSES = "course"
ENROLLMENTS = "enrollment"

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        settings = get_settings()
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db


def close_db() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    # Unique email for users
    await db[USERS].create_index("email", unique=True)
    # Catalog listing and filtering
    await db[COURSES].create_index([("createdAt", DESCENDING)])
    await db[COURSES].create_index([("category", ASCENDING)])
    await db[COURSES].create_index([("instructor", ASCENDING)])
    # One enrollment per (student, course); the store enforces it under concurrency
    await db[ENROLLMENTS].create_index(
        [("student", ASCENDING), ("course", ASCENDING)], unique=True
    )
    await db[ENROLLMENTS].create_index([("course", ASCENDING)])
    logger.info("Database indexes ensured")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return the ObjectId for value, or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def to_public(doc: Any) -> Any:
    """Make a stored document JSON-ready: ObjectIds become strings."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, dict):
        return {key: to_public(value) for key, value in doc.items()}
    if isinstance(doc, list):
        return [to_public(item) for item in doc]
    return doc


async def create_document(
    db: AsyncIOMotorDatabase, collection_name: str, data: Dict[str, Any]
) -> Dict[str, Any]:
    now = utcnow_iso()
    data_to_insert = {"createdAt": now, "updatedAt": now, **data}
    result = await db[collection_name].insert_one(data_to_insert)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return inserted or {}


async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
    projection: Optional[Dict[str, Any]] = None,
    limit: int = 0,
) -> List[Dict[str, Any]]:
    filter_dict = filter_dict or {}
    cursor = db[collection_name].find(filter_dict, projection)
    if sort:
        cursor = cursor.sort(list(sort))
    if limit:
        cursor = cursor.limit(limit)
    docs: List[Dict[str, Any]] = []
    async for doc in cursor:
        docs.append(doc)
    return docs
