"""
MongoDB connection and document helpers.

`db` is None when DATABASE_URL is not configured so the API can still boot
and report its status on /test.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, TEXT, MongoClient

from config import settings
from errors import DatabaseError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db = None

if settings.database_url:
    client = MongoClient(settings.database_url, tz_aware=True)
    db = client[settings.database_name or "clinical_education"]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_ms() -> datetime:
    """Current time at the millisecond precision BSON dates keep."""
    now = now_utc()
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo drivers configured without tz_aware hand back naive UTC datetimes."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _target(database):
    target = database if database is not None else db
    if target is None:
        raise DatabaseError.connection_error("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return target


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None, session=None) -> dict:
    """Insert a document stamped with created_at/updated_at and return it with its _id."""
    data_dict = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = now_utc()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    kwargs = {"session": session} if session is not None else {}
    result = _target(database)[collection_name].insert_one(data_dict, **kwargs)
    data_dict["_id"] = result.inserted_id
    return data_dict


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  database=None, projection=None, sort=None, skip: Optional[int] = None) -> List[dict]:
    cursor = _target(database)[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


@contextmanager
def start_transaction(mongo_client: Optional[MongoClient] = None):
    """Yield a session inside a transaction; commits on exit, aborts on error."""
    target = mongo_client if mongo_client is not None else client
    with target.start_session() as session:
        session.start_transaction()
        try:
            yield session
        except Exception:
            logger.warning("Aborting MongoDB transaction")
            session.abort_transaction()
            raise
        session.commit_transaction()


def serialize(value: Any) -> Any:
    """Convert a stored document into JSON-ready data."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for key, item in value.items():
            out["id" if key == "_id" else key] = serialize(item)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return value


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("role", ASCENDING), ("department", ASCENDING)])
    database["user"].create_index([("status", ASCENDING)])

    database["profile"].create_index([("user", ASCENDING)], unique=True)

    database["case"].create_index([("case_number", ASCENDING)], unique=True)
    for key in ("student", "assigned_to", "status", "department", "is_deleted", "evaluation.evaluated_by"):
        database["case"].create_index([(key, ASCENDING)])
    database["case"].create_index([("report.qr_code", ASCENDING)], sparse=True)
    database["case"].create_index(
        [("title", TEXT), ("assessment", TEXT), ("plan", TEXT), ("patient_info.chief_complaint", TEXT)],
        name="case_text",
    )

    database["document"].create_index([("document_number", ASCENDING)], unique=True)
    database["document"].create_index([("category", ASCENDING), ("subcategory", ASCENDING)])
    for key in ("metadata.author", "metadata.department", "metadata.tags", "qr_code.code", "is_deleted"):
        database["document"].create_index([(key, ASCENDING)])
    database["document"].create_index(
        [("title", TEXT), ("description", TEXT), ("metadata.tags", TEXT)],
        name="document_text",
    )

    database["department"].create_index([("code", ASCENDING)], unique=True)
    database["department"].create_index([("name", ASCENDING)], unique=True)
    database["department"].create_index([("parent_department", ASCENDING)])

    database["notification"].create_index([("recipient", ASCENDING), ("created_at", DESCENDING)])
    database["notification"].create_index([("recipient", ASCENDING), ("is_read", ASCENDING)])

    database["token"].create_index([("token", ASCENDING)], unique=True)
    database["token"].create_index([("user", ASCENDING), ("type", ASCENDING)])
    database["token"].create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)

    database["activitylog"].create_index([("user", ASCENDING)])
    database["activitylog"].create_index([("entity", ASCENDING), ("entity_id", ASCENDING)])
    database["activitylog"].create_index([("timestamp", DESCENDING)])

    database["testattempt"].create_index([("test", ASCENDING), ("student", ASCENDING)])
    logger.info("MongoDB indexes ensured")


def get_db():
    """FastAPI dependency yielding the configured database."""
    return _target(None)
