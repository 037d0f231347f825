"""
Data access layer.

BaseRepository wraps one MongoDB collection and its Pydantic schema with
CRUD, pagination, soft delete and reference population. Driver failures are
translated into the DatabaseError family so callers never see pymongo
exceptions. Entity repositories add the domain queries on top.
"""
import logging
import math
import re
import secrets
import string
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

import database
from config import LOCKOUT_MINUTES, MAX_FAILED_LOGINS, settings
from database import as_utc, create_document, get_documents, now_utc, now_utc_ms
from errors import ApiError, BaseError, DatabaseError, NotFoundError, ValidationError
from schemas import (
    CASE_STATUS,
    AccessLog,
    ActivityLog,
    Attachment,
    Case,
    CaseComment,
    Department,
    Document,
    DocumentVersion,
    Evaluation,
    FileInfo,
    Notification,
    Profile,
    Query,
    QueryAnswer,
    RevisionRequest,
    Test,
    TestAttempt,
    Token,
    User,
    WorkflowEvent,
)

logger = logging.getLogger(__name__)

# Fields never returned unless explicitly requested
HIDDEN_FIELDS = {
    "user": ("password_hash", "verification_token", "password_reset_token"),
}

NUMBER_ALPHABET = string.ascii_uppercase + string.digits

Populate = Union[Dict[str, Any], Sequence[Dict[str, Any]]]


def generate_number(prefix: str, length: int = 10) -> str:
    return f"{prefix}-" + "".join(secrets.choice(NUMBER_ALPHABET) for _ in range(length))


def _session_kwargs(session) -> dict:
    return {"session": session} if session is not None else {}


def _pydantic_fields(error: PydanticValidationError) -> List[dict]:
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"], "type": err["type"]}
        for err in error.errors()
    ]


def _walk(node: Any, parts: List[str], visit) -> None:
    """Apply visit to the value at a dotted path, descending through lists."""
    if isinstance(node, list):
        for item in node:
            _walk(item, parts, visit)
        return
    if not isinstance(node, dict) or parts[0] not in node:
        return
    if len(parts) == 1:
        node[parts[0]] = visit(node[parts[0]])
    else:
        _walk(node[parts[0]], parts[1:], visit)


class BaseRepository:
    collection_name: str = ""
    schema: Type[BaseModel] = BaseModel
    entity_name: str = ""

    def __init__(self, db):
        self.db = db
        self.collection = db[self.collection_name]

    # -----------------------------
    # Internal helpers
    # -----------------------------

    @property
    def supports_soft_delete(self) -> bool:
        return "is_deleted" in self.schema.model_fields

    @property
    def hidden_fields(self) -> Sequence[str]:
        return HIDDEN_FIELDS.get(self.collection_name, ())

    @contextmanager
    def _db_errors(self, action: str, **details):
        try:
            yield
        except BaseError:
            raise
        except DuplicateKeyError as e:
            key_value = (e.details or {}).get("keyValue") or {}
            field_name = next(iter(key_value), None)
            raise ApiError.conflict(
                f"{self.entity_name} with {field_name or 'this key'} already exists",
                details={"field": field_name},
            )
        except ConnectionFailure as e:
            raise DatabaseError.connection_error(f"Database connection error while {action} {self.entity_name}: {e}")
        except (PyMongoError, InvalidId) as e:
            raise DatabaseError.query_error(f"Error {action} {self.entity_name}: {e}", {**details, "error": e})

    def _object_id(self, value: Any) -> ObjectId:
        # A malformed id can never match a document
        if isinstance(value, ObjectId):
            return value
        if value is None or not ObjectId.is_valid(str(value)):
            raise DatabaseError.not_found(self.entity_name, value)
        return ObjectId(str(value))

    def _projection(self, projection, include_hidden: bool = False):
        if projection is not None:
            if isinstance(projection, dict):
                return projection
            return {name: 1 for name in projection}
        if self.hidden_fields and not include_hidden:
            return {name: 0 for name in self.hidden_fields}
        return None

    def _update_doc(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if any(key.startswith("$") for key in data):
            update = {op: dict(value) if isinstance(value, dict) else value for op, value in data.items()}
        else:
            update = {"$set": dict(data)}
        update.setdefault("$set", {})["updated_at"] = now_utc()
        return update

    def _populate(self, docs: List[dict], populate: Optional[Populate]) -> List[dict]:
        if not populate or not docs:
            return docs
        specs = [populate] if isinstance(populate, dict) else list(populate)
        for spec in specs:
            parts = spec["path"].split(".")
            ids = set()

            def collect(value):
                for item in value if isinstance(value, list) else [value]:
                    if isinstance(item, ObjectId):
                        ids.add(item)
                return value

            for doc in docs:
                _walk(doc, parts, collect)
            if not ids:
                continue

            collection = spec["collection"]
            select = spec.get("select")
            if select:
                projection = {name: 1 for name in select}
            else:
                projection = {name: 0 for name in HIDDEN_FIELDS.get(collection, ())} or None
            with self._db_errors("populating", path=spec["path"]):
                lookup = {d["_id"]: d for d in self.db[collection].find({"_id": {"$in": list(ids)}}, projection)}

            def replace(value):
                if isinstance(value, list):
                    return [lookup.get(item, item) for item in value]
                return lookup.get(value, value)

            for doc in docs:
                _walk(doc, parts, replace)
        return docs

    def _populate_one(self, doc: Optional[dict], populate: Optional[Populate]) -> Optional[dict]:
        if doc is None or not populate:
            return doc
        return self._populate([doc], populate)[0]

    def _validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.schema(**data).model_dump()
        except PydanticValidationError as e:
            raise ValidationError.invalid_input(f"Invalid {self.entity_name} data", {"fields": _pydantic_fields(e)})

    def validate_update(self, current: dict, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Check top-level field updates against the schema merged with the stored document.

        Returns the updated fields in their stored form (references as ObjectId,
        embedded documents with defaults filled in).
        """
        merged = {key: value for key, value in current.items() if key in self.schema.model_fields}
        merged.update(updates)
        doc = self._validate(merged)
        return {key: doc[key] for key in updates}

    # -----------------------------
    # CRUD
    # -----------------------------

    def create(self, data: Dict[str, Any], session=None) -> dict:
        doc = self._validate(data)
        with self._db_errors("creating"):
            doc = create_document(self.collection_name, doc, database=self.db, session=session)
        for name in self.hidden_fields:
            doc.pop(name, None)
        return doc

    def find_by_id(self, id_: Any, throw_if_not_found: bool = True, populate: Optional[Populate] = None,
                   projection=None, include_hidden: bool = False, session=None) -> Optional[dict]:
        oid = self._object_id(id_)
        with self._db_errors("finding by id", id=id_):
            doc = self.collection.find_one(
                {"_id": oid}, self._projection(projection, include_hidden), **_session_kwargs(session)
            )
        if doc is None and throw_if_not_found:
            raise DatabaseError.not_found(self.entity_name, id_)
        return self._populate_one(doc, populate)

    def find_all(self, filter_dict: Optional[dict] = None, sort=None, skip: Optional[int] = None,
                 limit: Optional[int] = None, populate: Optional[Populate] = None, projection=None) -> List[dict]:
        with self._db_errors("finding", filter=filter_dict):
            docs = get_documents(
                self.collection_name,
                filter_dict,
                limit,
                database=self.db,
                projection=self._projection(projection),
                sort=list(sort.items()) if isinstance(sort, dict) else sort,
                skip=skip,
            )
        return self._populate(docs, populate)

    def find_one(self, filter_dict: dict, throw_if_not_found: bool = True, populate: Optional[Populate] = None,
                 projection=None, include_hidden: bool = False, session=None) -> Optional[dict]:
        with self._db_errors("finding one", filter=filter_dict):
            doc = self.collection.find_one(
                filter_dict, self._projection(projection, include_hidden), **_session_kwargs(session)
            )
        if doc is None and throw_if_not_found:
            raise DatabaseError.not_found(self.entity_name, filter_dict)
        return self._populate_one(doc, populate)

    def update_by_id(self, id_: Any, data: Dict[str, Any], throw_if_not_found: bool = True,
                     return_original: bool = False, populate: Optional[Populate] = None,
                     upsert: bool = False, session=None) -> Optional[dict]:
        oid = self._object_id(id_)
        with self._db_errors("updating", id=id_):
            doc = self.collection.find_one_and_update(
                {"_id": oid},
                self._update_doc(data),
                projection=self._projection(None),
                return_document=ReturnDocument.BEFORE if return_original else ReturnDocument.AFTER,
                upsert=upsert,
                **_session_kwargs(session),
            )
        if doc is None and throw_if_not_found:
            raise DatabaseError.not_found(self.entity_name, id_)
        return self._populate_one(doc, populate)

    def update_many(self, filter_dict: dict, data: Dict[str, Any]) -> int:
        with self._db_errors("updating many", filter=filter_dict):
            result = self.collection.update_many(filter_dict, self._update_doc(data))
        return result.modified_count

    def delete_by_id(self, id_: Any, throw_if_not_found: bool = True, soft_delete: bool = True,
                     deleted_by: Any = None) -> Optional[dict]:
        if soft_delete and self.supports_soft_delete:
            data = {"is_deleted": True, "deleted_at": now_utc()}
            if deleted_by is not None:
                data["deleted_by"] = ObjectId(str(deleted_by))
            return self.update_by_id(id_, data, throw_if_not_found=throw_if_not_found)

        oid = self._object_id(id_)
        with self._db_errors("deleting", id=id_):
            doc = self.collection.find_one_and_delete({"_id": oid}, projection=self._projection(None))
        if doc is None and throw_if_not_found:
            raise DatabaseError.not_found(self.entity_name, id_)
        return doc

    def delete_many(self, filter_dict: dict, soft_delete: bool = True, deleted_by: Any = None) -> int:
        if soft_delete and self.supports_soft_delete:
            data = {"is_deleted": True, "deleted_at": now_utc()}
            if deleted_by is not None:
                data["deleted_by"] = ObjectId(str(deleted_by))
            return self.update_many(filter_dict, data)
        with self._db_errors("deleting many", filter=filter_dict):
            return self.collection.delete_many(filter_dict).deleted_count

    def count(self, filter_dict: Optional[dict] = None) -> int:
        with self._db_errors("counting", filter=filter_dict):
            return self.collection.count_documents(filter_dict or {})

    def exists(self, filter_dict: dict) -> bool:
        with self._db_errors("checking existence of", filter=filter_dict):
            return self.collection.find_one(filter_dict, {"_id": 1}) is not None

    def distinct(self, key: str, filter_dict: Optional[dict] = None) -> list:
        with self._db_errors("listing distinct values of", key=key):
            return self.collection.distinct(key, filter_dict or {})

    def paginate(self, filter_dict: Optional[dict] = None, page: int = 1, limit: int = 10, sort=None,
                 populate: Optional[Populate] = None, projection=None) -> dict:
        page = max(int(page), 1)
        limit = max(int(limit), 1)
        items = self.find_all(
            filter_dict,
            sort=sort or {"created_at": DESCENDING},
            skip=(page - 1) * limit,
            limit=limit,
            populate=populate,
            projection=projection,
        )
        total_items = self.count(filter_dict)
        return {
            "items": items,
            "meta": {
                "total_items": total_items,
                "item_count": len(items),
                "items_per_page": limit,
                "total_pages": math.ceil(total_items / limit),
                "current_page": page,
            },
        }

    def _text_search_ids(self, query: str, filter_dict: dict, limit: int = 10) -> List[ObjectId]:
        with self._db_errors("text searching", query=query):
            cursor = self.collection.find(
                {"$text": {"$search": query}, "is_deleted": {"$ne": True}, **filter_dict},
                {"score": {"$meta": "textScore"}},
            ).sort([("score", {"$meta": "textScore"})]).limit(limit)
            return [d["_id"] for d in cursor]


# -----------------------------
# Cases
# -----------------------------

CASE_NUMBER_PATTERN = re.compile(r"^CASE-[A-Z0-9]+$", re.IGNORECASE)


class CaseRepository(BaseRepository):
    collection_name = "case"
    schema = Case
    entity_name = "Case"

    def create(self, data, session=None):
        data = dict(data)
        data.setdefault("case_number", generate_number("CASE"))
        return super().create(data, session=session)

    def find_by_case_number(self, case_number: str, **options):
        return self.find_one({"case_number": case_number.upper()}, **options)

    def find_by_student(self, student_id, **options):
        return self.find_all({"student": ObjectId(str(student_id)), "is_deleted": {"$ne": True}}, **options)

    def find_by_assigned_staff(self, staff_id, **options):
        return self.find_all({"assigned_to": ObjectId(str(staff_id)), "is_deleted": {"$ne": True}}, **options)

    def find_by_department(self, department_id, **options):
        return self.find_all({"department": ObjectId(str(department_id)), "is_deleted": {"$ne": True}}, **options)

    def find_by_status(self, status: Union[str, Iterable[str]], **options):
        status_filter = status if isinstance(status, str) else {"$in": list(status)}
        return self.find_all({"status": status_filter, "is_deleted": {"$ne": True}}, **options)

    def assign_to_staff(self, case_id, staff_id, **options):
        return self.update_by_id(case_id, {"assigned_to": ObjectId(str(staff_id))}, **options)

    def update_status(self, case_id, status: str, user_id=None, comments: str = "") -> dict:
        """Set the case status and append exactly one workflow_history entry.

        changed_at is truncated to the millisecond precision MongoDB stores and
        bumped past the previous entry, so history timestamps always increase.
        """
        if status not in CASE_STATUS:
            raise ValidationError.invalid_format("status", f"Invalid case status: {status}")
        case = self.find_by_id(case_id, projection=["workflow_history"])

        changed_at = now_utc_ms()
        history = case.get("workflow_history") or []
        if history:
            last = as_utc(history[-1].get("changed_at"))
            if last is not None and changed_at <= last:
                changed_at = last + timedelta(milliseconds=1)

        event = WorkflowEvent(
            status=status,
            changed_by=ObjectId(str(user_id)) if user_id else None,
            changed_at=changed_at,
            comments=comments or None,
        ).model_dump()
        return self.update_by_id(case["_id"], {"$set": {"status": status}, "$push": {"workflow_history": event}})

    def add_evaluation(self, case_id, evaluation_data: dict):
        try:
            evaluation = Evaluation(**{**evaluation_data, "evaluated_at": now_utc()}).model_dump()
        except PydanticValidationError as e:
            raise ValidationError.invalid_input("Invalid evaluation data", {"fields": _pydantic_fields(e)})
        return self.update_by_id(case_id, {"evaluation": evaluation})

    def add_revision_request(self, case_id, revision_data: dict):
        request = RevisionRequest(**{**revision_data, "requested_at": now_utc()}).model_dump()
        return self.update_by_id(case_id, {"$push": {"revision_requests": request}})

    def resolve_revision_request(self, case_id, revision_index: int):
        case = self.find_by_id(case_id, projection=["revision_requests"])
        requests = case.get("revision_requests") or []
        if revision_index < 0 or revision_index >= len(requests):
            raise DatabaseError.not_found("Revision request", revision_index)
        return self.update_by_id(case_id, {f"revision_requests.{revision_index}.resolved_at": now_utc()})

    def add_attachment(self, case_id, attachment_data: dict):
        try:
            attachment = Attachment(**{**attachment_data, "uploaded_at": now_utc()}).model_dump()
        except PydanticValidationError as e:
            raise ValidationError.invalid_input("Invalid attachment data", {"fields": _pydantic_fields(e)})
        return self.update_by_id(case_id, {"$push": {"attachments": attachment}})

    def add_comment(self, case_id, author_id, text: str):
        comment = CaseComment(author=ObjectId(str(author_id)), text=text, created_at=now_utc()).model_dump()
        return self.update_by_id(case_id, {"$push": {"comments": comment}})

    def update_report(self, case_id, report_data: dict):
        return self.update_by_id(
            case_id, {"report": {**report_data, "generated": True, "generated_at": now_utc()}}
        )

    def search(self, query: str, filter_dict: Optional[dict] = None, **options) -> List[dict]:
        filter_dict = filter_dict or {}
        query = query.strip()
        if CASE_NUMBER_PATTERN.match(query):
            return self.find_all({"case_number": query.upper(), "is_deleted": {"$ne": True}, **filter_dict}, **options)

        pattern = {"$regex": re.escape(query), "$options": "i"}
        clauses: List[dict] = [{"case_number": pattern}, {"title": pattern}]
        if len(query) > 3:
            ids = self._text_search_ids(query, filter_dict)
            if ids:
                clauses.append({"_id": {"$in": ids}})
        return self.find_all({"$or": clauses, "is_deleted": {"$ne": True}, **filter_dict}, **options)


# -----------------------------
# Documents
# -----------------------------

DOCUMENT_NUMBER_PATTERN = re.compile(r"^DOC-[A-Z0-9]+$", re.IGNORECASE)


def qr_url(code: str) -> str:
    return f"{settings.api_url}{settings.api_prefix}/qrcodes/{code}"


class DocumentRepository(BaseRepository):
    collection_name = "document"
    schema = Document
    entity_name = "Document"

    def create(self, data, session=None):
        data = dict(data)
        data.setdefault("document_number", generate_number("DOC"))
        if not data.get("qr_code"):
            code = secrets.token_urlsafe(12)
            data["qr_code"] = {"code": code, "url": qr_url(code), "generated_at": now_utc()}
        file_info = dict(data.get("file") or {})
        file_info.setdefault("uploaded_at", now_utc())
        data["file"] = file_info
        return super().create(data, session=session)

    def find_by_document_number(self, document_number: str, **options):
        return self.find_one({"document_number": document_number.upper()}, **options)

    def find_by_qr_code(self, code: str, **options):
        return self.find_one({"qr_code.code": code, "is_deleted": {"$ne": True}}, **options)

    def find_by_category(self, category: str, **options):
        return self.find_all({"category": category, "is_deleted": {"$ne": True}}, **options)

    def find_by_author(self, author_id, **options):
        return self.find_all({"metadata.author": ObjectId(str(author_id)), "is_deleted": {"$ne": True}}, **options)

    def find_by_department(self, department_id, **options):
        return self.find_all(
            {"metadata.department": ObjectId(str(department_id)), "is_deleted": {"$ne": True}}, **options
        )

    def find_by_tags(self, tags: Union[str, List[str]], **options):
        tags = [tags] if isinstance(tags, str) else list(tags)
        return self.find_all({"metadata.tags": {"$in": tags}, "is_deleted": {"$ne": True}}, **options)

    def log_access(self, document_id, access_data: dict):
        entry = AccessLog(**{**access_data, "accessed_at": now_utc()}).model_dump()
        return self.update_by_id(document_id, {"$push": {"access_logs": entry}})

    def add_version(self, document_id, version_data: dict):
        """Archive the current file into versions[] and make version_data current."""
        document = self.find_by_id(document_id)
        current_version = (document.get("metadata") or {}).get("version") or 1
        current_file = document.get("file") or {}
        try:
            archived = DocumentVersion(
                version=current_version,
                filename=current_file.get("filename"),
                path=current_file.get("path"),
                size=current_file.get("size"),
                uploaded_at=current_file.get("uploaded_at"),
                uploaded_by=version_data.get("uploaded_by"),
                change_notes=version_data.get("change_notes") or "Version update",
            ).model_dump()
            new_file = FileInfo(
                filename=version_data.get("filename"),
                original_filename=version_data.get("original_filename") or version_data.get("filename"),
                path=version_data.get("path"),
                content_type=version_data.get("content_type"),
                size=version_data.get("size"),
                uploaded_at=now_utc(),
            ).model_dump()
        except PydanticValidationError as e:
            raise ValidationError.invalid_input("Invalid document version data", {"fields": _pydantic_fields(e)})

        return self.update_by_id(
            document["_id"],
            {
                "$push": {"versions": archived},
                "$set": {"file": new_file, "metadata.version": current_version + 1},
            },
        )

    def search(self, query: str, filter_dict: Optional[dict] = None, **options) -> List[dict]:
        filter_dict = filter_dict or {}
        query = query.strip()
        if DOCUMENT_NUMBER_PATTERN.match(query):
            return self.find_all(
                {"document_number": query.upper(), "is_deleted": {"$ne": True}, **filter_dict}, **options
            )

        pattern = {"$regex": re.escape(query), "$options": "i"}
        clauses: List[dict] = [
            {"document_number": pattern},
            {"title": pattern},
            {"description": pattern},
            {"metadata.tags": pattern},
        ]
        if len(query) > 3:
            ids = self._text_search_ids(query, filter_dict)
            if ids:
                clauses.append({"_id": {"$in": ids}})
        return self.find_all({"$or": clauses, "is_deleted": {"$ne": True}, **filter_dict}, **options)


# -----------------------------
# Users and profiles
# -----------------------------

class ProfileRepository(BaseRepository):
    collection_name = "profile"
    schema = Profile
    entity_name = "Profile"


class UserRepository(BaseRepository):
    collection_name = "user"
    schema = User
    entity_name = "User"

    def __init__(self, db):
        super().__init__(db)
        self.profiles = ProfileRepository(db)

    def create(self, data, session=None):
        data = dict(data)
        if data.get("email"):
            data["email"] = data["email"].strip().lower()
        return super().create(data, session=session)

    def find_by_email(self, email: str, **options):
        return self.find_one({"email": email.strip().lower()}, **options)

    def find_by_email_with_password(self, email: str) -> Optional[dict]:
        return self.find_one({"email": email.strip().lower()}, throw_if_not_found=False, include_hidden=True)

    def create_user_with_profile(self, user_data: dict, profile_data: dict) -> dict:
        try:
            with database.start_transaction(self.db.client) as session:
                user = self.create(user_data, session=session)
                profile = self.profiles.create({**profile_data, "user": user["_id"]}, session=session)
        except (BaseError, PyMongoError) as e:
            if isinstance(e, BaseError) and e.status_code == 409:
                raise
            raise DatabaseError.transaction_error(
                f"Error creating user with profile: {getattr(e, 'message', e)}",
                {"cause": getattr(e, "code", type(e).__name__)},
            )
        user["profile"] = profile
        return user

    def update_user_with_profile(self, user_id, user_data: Optional[dict], profile_data: Optional[dict]) -> dict:
        oid = self._object_id(user_id)
        try:
            with database.start_transaction(self.db.client) as session:
                if user_data:
                    user = self.update_by_id(oid, user_data, session=session)
                else:
                    user = self.find_by_id(oid, session=session)

                if profile_data:
                    sets = {f"{key}": value for key, value in profile_data.items()}
                    profile = self.profiles.collection.find_one_and_update(
                        {"user": oid},
                        {"$set": {**sets, "updated_at": now_utc()}, "$setOnInsert": {"user": oid, "created_at": now_utc()}},
                        return_document=ReturnDocument.AFTER,
                        upsert=True,
                        **_session_kwargs(session),
                    )
                else:
                    profile = self.profiles.find_one({"user": oid}, throw_if_not_found=False, session=session)
        except NotFoundError:
            raise
        except (BaseError, PyMongoError) as e:
            raise DatabaseError.transaction_error(
                f"Error updating user with profile: {getattr(e, 'message', e)}",
                {"cause": getattr(e, "code", type(e).__name__)},
            )
        if profile:
            user["profile"] = profile
        return user

    def find_user_with_profile(self, filter_dict: dict, **options) -> Optional[dict]:
        user = self.find_one(filter_dict, **options)
        if not user:
            return None
        profile = self.profiles.find_one({"user": user["_id"]}, throw_if_not_found=False)
        if profile:
            user["profile"] = profile
        return user

    def find_by_role(self, role: str, **options):
        return self.find_all({"role": role}, **options)

    def find_by_department(self, department_id, **options):
        return self.find_all({"department": ObjectId(str(department_id))}, **options)

    def find_by_role_and_department(self, role: str, department_id, **options):
        return self.find_all({"role": role, "department": ObjectId(str(department_id))}, **options)

    def update_status(self, user_id, status: str, **options):
        return self.update_by_id(user_id, {"status": status}, **options)

    def update_permissions(self, user_id, permissions: List[str], **options):
        return self.update_by_id(user_id, {"permissions": list(permissions)}, **options)

    def record_failed_login(self, user_id) -> dict:
        """Count a failed login; the account locks once MAX_FAILED_LOGINS is reached."""
        now = now_utc()
        user = self.update_by_id(
            user_id,
            {"$inc": {"failed_login_attempts.count": 1}, "$set": {"failed_login_attempts.last_attempt": now}},
        )
        if user["failed_login_attempts"]["count"] >= MAX_FAILED_LOGINS:
            user = self.update_by_id(
                user_id, {"failed_login_attempts.locked_until": now + timedelta(minutes=LOCKOUT_MINUTES)}
            )
            logger.warning("Account %s locked after %s failed logins", user_id, MAX_FAILED_LOGINS)
        return user

    def reset_failed_logins(self, user_id):
        return self.update_by_id(
            user_id, {"failed_login_attempts": {"count": 0, "last_attempt": None, "locked_until": None}}
        )

    def update_last_login(self, user_id, ip: Optional[str] = None):
        return self.update_by_id(user_id, {"last_login": {"date": now_utc(), "ip": ip}})

    def search(self, query: str, filter_dict: Optional[dict] = None, **options) -> List[dict]:
        pattern = {"$regex": re.escape(query.strip()), "$options": "i"}
        profile_matches = self.profiles.find_all(
            {
                "$or": [
                    {"first_name": pattern},
                    {"last_name": pattern},
                    {"middle_name": pattern},
                    {"student_details.enrollment_id": pattern},
                    {"staff_details.employee_id": pattern},
                ]
            },
            projection=["user"],
        )
        user_ids = [p["user"] for p in profile_matches]
        return self.find_all(
            {"$or": [{"_id": {"$in": user_ids}}, {"email": pattern}], **(filter_dict or {})}, **options
        )


# -----------------------------
# Departments
# -----------------------------

class DepartmentRepository(BaseRepository):
    collection_name = "department"
    schema = Department
    entity_name = "Department"

    def create(self, data, session=None):
        data = dict(data)
        if data.get("code"):
            data["code"] = data["code"].strip().upper()
        return super().create(data, session=session)

    def find_by_code(self, code: str, **options):
        return self.find_one({"code": code.strip().upper()}, **options)

    def find_by_parent(self, parent_id, **options):
        return self.find_all({"parent_department": ObjectId(str(parent_id))}, **options)

    def find_by_head(self, head_id, **options):
        return self.find_all({"head": ObjectId(str(head_id))}, **options)

    def find_active(self, **options):
        return self.find_all({"status": "active"}, **options)

    def get_hierarchy(self, department_id) -> dict:
        department = self.find_by_id(
            department_id,
            populate={"path": "parent_department", "collection": "department", "select": ["name", "code"]},
        )
        sub_departments = self.find_by_parent(department["_id"], projection=["name", "code", "status"])
        return {"department": department, "sub_departments": sub_departments}

    def get_department_with_counts(self, department_id) -> dict:
        department = self.find_by_id(
            department_id,
            populate={"path": "head", "collection": "user", "select": ["email", "role"]},
        )
        users = self.db["user"]
        with self._db_errors("counting members of", id=department_id):
            department["staff_count"] = users.count_documents({"department": department["_id"], "role": "teacher"})
            department["student_count"] = users.count_documents({"department": department["_id"], "role": "student"})
        return department


# -----------------------------
# Notifications
# -----------------------------

class NotificationRepository(BaseRepository):
    collection_name = "notification"
    schema = Notification
    entity_name = "Notification"

    def find_by_recipient(self, recipient_id, **options):
        return self.find_all({"recipient": ObjectId(str(recipient_id))}, **options)

    def find_by_type(self, type_: str, **options):
        return self.find_all({"type": type_}, **options)

    def find_unread_by_recipient(self, recipient_id, **options):
        return self.find_all({"recipient": ObjectId(str(recipient_id)), "is_read": False}, **options)

    def count_unread(self, recipient_id) -> int:
        return self.count({"recipient": ObjectId(str(recipient_id)), "is_read": False})

    def mark_as_read(self, notification_id):
        return self.update_by_id(notification_id, {"is_read": True, "read_at": now_utc()})

    def mark_all_as_read(self, recipient_id) -> int:
        return self.update_many(
            {"recipient": ObjectId(str(recipient_id)), "is_read": False},
            {"is_read": True, "read_at": now_utc()},
        )


# -----------------------------
# Tokens
# -----------------------------

class TokenRepository(BaseRepository):
    collection_name = "token"
    schema = Token
    entity_name = "Token"

    def find_by_token(self, token: str, **options):
        return self.find_one({"token": token}, **options)

    def find_by_user(self, user_id, type_: Optional[str] = None, **options):
        filter_dict: Dict[str, Any] = {"user": ObjectId(str(user_id))}
        if type_:
            filter_dict["type"] = type_
        return self.find_all(filter_dict, **options)

    def blacklist_token(self, token: str) -> Optional[dict]:
        doc = self.find_one({"token": token}, throw_if_not_found=False)
        if not doc:
            return None
        return self.update_by_id(doc["_id"], {"blacklisted": True})

    def blacklist_all_user_tokens(self, user_id, type_: str = "refresh") -> int:
        return self.update_many({"user": ObjectId(str(user_id)), "type": type_}, {"blacklisted": True})

    def cleanup_expired_tokens(self) -> int:
        # The TTL index does this eventually; this is the on-demand sweep
        return self.delete_many({"expires_at": {"$lt": now_utc()}}, soft_delete=False)


# -----------------------------
# Activity logs
# -----------------------------

class LogRepository(BaseRepository):
    collection_name = "activitylog"
    schema = ActivityLog
    entity_name = "ActivityLog"

    def find_by_user(self, user_id, **options):
        return self.find_all({"user": ObjectId(str(user_id))}, **options)

    def find_by_entity(self, entity: str, entity_id, **options):
        return self.find_all({"entity": entity, "entity_id": ObjectId(str(entity_id))}, **options)

    def find_by_action(self, action: str, **options):
        return self.find_all({"action": action}, **options)

    def find_by_time_range(self, start, end, **options):
        return self.find_all({"timestamp": {"$gte": start, "$lte": end}}, **options)

    def create_log(self, log_data: dict) -> dict:
        return self.create({**log_data, "timestamp": now_utc()})


# -----------------------------
# Queries and tests
# -----------------------------

class QueryRepository(BaseRepository):
    collection_name = "query"
    schema = Query
    entity_name = "Query"

    def find_by_author(self, author_id, **options):
        return self.find_all({"author": ObjectId(str(author_id)), "is_deleted": {"$ne": True}}, **options)

    def answer(self, query_id, text: str, user_id) -> dict:
        answer = QueryAnswer(text=text, answered_by=ObjectId(str(user_id)), answered_at=now_utc()).model_dump()
        return self.update_by_id(query_id, {"answer": answer, "status": "answered"})


class TestRepository(BaseRepository):
    __test__ = False

    collection_name = "test"
    schema = Test
    entity_name = "Test"

    def find_published(self, **options):
        return self.find_all({"is_published": True, "is_deleted": {"$ne": True}}, **options)


class TestAttemptRepository(BaseRepository):
    __test__ = False

    collection_name = "testattempt"
    schema = TestAttempt
    entity_name = "TestAttempt"

    def find_by_test(self, test_id, **options):
        return self.find_all({"test": ObjectId(str(test_id))}, **options)

    def find_by_student(self, student_id, **options):
        return self.find_all({"student": ObjectId(str(student_id))}, **options)
