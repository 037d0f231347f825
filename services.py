"""
Business services.

Services enforce ownership, role and workflow rules on top of the
repositories, write the activity log and fan out notifications. They raise
the errors from errors.py and never return HTTP responses.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING

from database import now_utc
from emails import send_notification_email
from errors import ApiError, DatabaseError, ValidationError, validate_object_id
from qrcodes import new_code, render_png
from reports import render_case_report
from repositories import (
    CaseRepository,
    DepartmentRepository,
    DocumentRepository,
    LogRepository,
    NotificationRepository,
    QueryRepository,
    TestAttemptRepository,
    TestRepository,
    TokenRepository,
    UserRepository,
    qr_url,
)
from schemas import DEPARTMENT_STATUS, DOCUMENT_STATUS, USER_STATUS, full_name
from security import hash_password

logger = logging.getLogger(__name__)

NOT_DELETED = {"is_deleted": {"$ne": True}}

CASE_POPULATE = [
    {"path": "student", "collection": "user", "select": ["email", "role"]},
    {"path": "assigned_to", "collection": "user", "select": ["email", "role"]},
    {"path": "department", "collection": "department", "select": ["name", "code"]},
    {"path": "comments.author", "collection": "user", "select": ["email", "role"]},
    {"path": "workflow_history.changed_by", "collection": "user", "select": ["email", "role"]},
]

PROTECTED_CASE_FIELDS = {
    "_id",
    "case_number",
    "student",
    "assigned_to",
    "status",
    "workflow_history",
    "evaluation",
    "revision_requests",
    "report",
    "comments",
    "attachments",
    "is_deleted",
    "deleted_at",
    "deleted_by",
    "created_at",
    "updated_at",
}

PROTECTED_DOCUMENT_FIELDS = {
    "_id",
    "document_number",
    "qr_code",
    "versions",
    "access_logs",
    "file",
    "is_deleted",
    "deleted_at",
    "deleted_by",
    "created_at",
    "updated_at",
}

USER_FIELDS = ("email", "role", "status", "department", "permissions")
ADMIN_ONLY_USER_FIELDS = ("role", "status", "permissions", "department")
PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "middle_name",
    "display_name",
    "date_of_birth",
    "contact_number",
    "address",
    "staff_details",
    "student_details",
    "preferences",
)


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def is_teacher(user: dict) -> bool:
    return user.get("role") in ("teacher", "admin")


def ref_id(value: Any) -> Any:
    """Id of a reference whether or not it has been populated."""
    if isinstance(value, dict):
        return value.get("_id")
    return value


def same_id(a: Any, b: Any) -> bool:
    a, b = ref_id(a), ref_id(b)
    return a is not None and b is not None and str(a) == str(b)


def diff_fields(before: dict, after: Dict[str, Any]) -> List[dict]:
    return [
        {"field": key, "old_value": before.get(key), "new_value": value}
        for key, value in after.items()
        if before.get(key) != value
    ]


# -----------------------------
# Activity log
# -----------------------------

class LogService:

    def __init__(self, db, meta: Optional[dict] = None):
        self.logs = LogRepository(db)
        self.meta = meta

    def create_log(self, user_id=None, action: Optional[str] = None, entity: Optional[str] = None,
                   description: Optional[str] = None, entity_id=None, details: Optional[dict] = None) -> dict:
        for name, value in (("action", action), ("entity", entity), ("description", description)):
            if not value:
                raise ValidationError.required_field(name)
        return self.logs.create_log(
            {
                "user": user_id,
                "action": action,
                "entity": entity,
                "entity_id": entity_id,
                "description": description,
                "details": details,
                "metadata": self.meta,
            }
        )

    def _time_filter(self, start=None, end=None) -> dict:
        window = {}
        if start:
            window["$gte"] = start
        if end:
            window["$lte"] = end
        return {"timestamp": window} if window else {}

    def list_logs(self, filters: Optional[dict] = None, page: int = 1, limit: int = 20) -> dict:
        filters = filters or {}
        filter_dict: Dict[str, Any] = self._time_filter(filters.get("start"), filters.get("end"))
        if filters.get("user"):
            filter_dict["user"] = validate_object_id(filters["user"], "user")
        for key in ("action", "entity"):
            if filters.get(key):
                filter_dict[key] = filters[key]
        return self.logs.paginate(
            filter_dict,
            page=page,
            limit=limit,
            sort={"timestamp": DESCENDING},
            populate={"path": "user", "collection": "user", "select": ["email", "role"]},
        )

    def get_user_logs(self, user_id, page: int = 1, limit: int = 20) -> dict:
        return self.logs.paginate(
            {"user": validate_object_id(user_id, "user_id")}, page=page, limit=limit, sort={"timestamp": DESCENDING}
        )

    def get_entity_logs(self, entity: str, entity_id, page: int = 1, limit: int = 20) -> dict:
        return self.logs.paginate(
            {"entity": entity, "entity_id": validate_object_id(entity_id, "entity_id")},
            page=page,
            limit=limit,
            sort={"timestamp": DESCENDING},
            populate={"path": "user", "collection": "user", "select": ["email", "role"]},
        )


class Service:
    """Shared plumbing: activity logging with the request metadata."""

    def __init__(self, db, meta: Optional[dict] = None):
        self.db = db
        self.activity = LogService(db, meta)

    def log(self, user: Optional[dict], action: str, entity: str, entity_id, description: str,
            changes: Optional[List[dict]] = None):
        details = {"changes": changes} if changes else None
        return self.activity.create_log(
            user_id=user["_id"] if user else None,
            action=action,
            entity=entity,
            description=description,
            entity_id=entity_id,
            details=details,
        )


# -----------------------------
# Notifications
# -----------------------------

class NotificationService:

    def __init__(self, db):
        self.notifications = NotificationRepository(db)
        self.users = UserRepository(db)

    def create_notification(self, recipient_id, type_: str, title: str, message: str, sender_id=None,
                            related_entity: Optional[str] = None, related_entity_id=None) -> dict:
        notification = self.notifications.create(
            {
                "recipient": recipient_id,
                "sender": sender_id,
                "type": type_,
                "title": title,
                "message": message,
                "related_entity": related_entity,
                "related_entity_id": related_entity_id,
            }
        )

        recipient = self.users.find_user_with_profile(
            {"_id": ObjectId(str(recipient_id))}, throw_if_not_found=False
        )
        if recipient:
            profile = recipient.get("profile") or {}
            preferences = (profile.get("preferences") or {}).get("notifications") or {}
            if preferences.get("email", True):
                name = full_name(profile) or recipient["email"]
                if send_notification_email(recipient["email"], name, title, message):
                    notification = self.notifications.update_by_id(
                        notification["_id"], {"email_sent": True, "email_sent_at": now_utc()}
                    )
        return notification

    def notify_admins(self, type_: str, title: str, message: str, **kwargs) -> List[dict]:
        admins = self.users.find_all({"role": "admin", "status": "active"}, projection=["_id"])
        return [self.create_notification(admin["_id"], type_, title, message, **kwargs) for admin in admins]

    def list_for_user(self, user_id, page: int = 1, limit: int = 20, unread_only: bool = False) -> dict:
        filter_dict: Dict[str, Any] = {"recipient": ObjectId(str(user_id))}
        if unread_only:
            filter_dict["is_read"] = False
        return self.notifications.paginate(
            filter_dict,
            page=page,
            limit=limit,
            populate={"path": "sender", "collection": "user", "select": ["email", "role"]},
        )

    def unread_count(self, user_id) -> int:
        return self.notifications.count_unread(user_id)

    def mark_as_read(self, notification_id, user: dict) -> dict:
        notification = self.notifications.find_by_id(notification_id)
        if not same_id(notification["recipient"], user["_id"]):
            raise ApiError.forbidden("You can only mark your own notifications as read")
        return self.notifications.mark_as_read(notification["_id"])

    def mark_all_as_read(self, user_id) -> int:
        return self.notifications.mark_all_as_read(user_id)

    # Case workflow

    def _case_kwargs(self, case: dict, actor: Optional[dict]) -> dict:
        return {
            "sender_id": actor["_id"] if actor else None,
            "related_entity": "case",
            "related_entity_id": case["_id"],
        }

    def case_submitted(self, case: dict, actor: dict):
        title = "Case submitted"
        message = f"Case {case['case_number']} ({case['title']}) was submitted for review."
        if case.get("assigned_to"):
            # Resubmission after a revision goes straight back to the reviewer
            self.create_notification(ref_id(case["assigned_to"]), "case_update", title, message,
                                     **self._case_kwargs(case, actor))
        else:
            self.notify_admins("approval_request", title, message, **self._case_kwargs(case, actor))

    def case_assigned(self, case: dict, actor: dict):
        self.create_notification(
            ref_id(case["assigned_to"]),
            "assignment",
            "New case assigned",
            f"Case {case['case_number']} ({case['title']}) has been assigned to you for review.",
            **self._case_kwargs(case, actor),
        )
        self.create_notification(
            ref_id(case["student"]),
            "case_update",
            "Case assigned",
            f"Your case {case['case_number']} has been assigned to a reviewer.",
            **self._case_kwargs(case, actor),
        )

    def review_started(self, case: dict, actor: dict):
        self.create_notification(
            ref_id(case["student"]),
            "case_update",
            "Review started",
            f"Review of your case {case['case_number']} has started.",
            **self._case_kwargs(case, actor),
        )

    def revision_requested(self, case: dict, actor: dict, description: str):
        self.create_notification(
            ref_id(case["student"]),
            "case_update",
            "Revision requested",
            f"Your case {case['case_number']} needs revision: {description}",
            **self._case_kwargs(case, actor),
        )

    def case_completed(self, case: dict, actor: dict):
        score = (case.get("evaluation") or {}).get("score")
        self.create_notification(
            ref_id(case["student"]),
            "case_update",
            "Case review completed",
            f"Review of your case {case['case_number']} is complete. Score: {score}.",
            **self._case_kwargs(case, actor),
        )


# -----------------------------
# Cases
# -----------------------------

class CaseService(Service):

    def __init__(self, db, meta: Optional[dict] = None):
        super().__init__(db, meta)
        self.cases = CaseRepository(db)
        self.users = UserRepository(db)
        self.notifications = NotificationService(db)

    def _require_status(self, case: dict, allowed, action: str):
        if case["status"] not in allowed:
            raise ApiError.bad_request(
                f"Cannot {action} a case in status '{case['status']}'",
                "CASE_INVALID_STATUS",
                {"status": case["status"], "allowed": list(allowed)},
            )

    def _require_owner(self, case: dict, user: dict):
        if not same_id(case["student"], user["_id"]):
            raise ApiError.forbidden("Only the student who owns this case can do this")

    def _require_reviewer(self, case: dict, user: dict):
        if not (is_admin(user) or same_id(case.get("assigned_to"), user["_id"])):
            raise ApiError.forbidden("Only the assigned reviewer can do this")

    def _ensure_can_view(self, case: dict, user: dict):
        if user.get("role") == "student" and not same_id(case["student"], user["_id"]):
            raise ApiError.forbidden("You do not have access to this case")

    def _scope(self, user: dict) -> dict:
        if user.get("role") == "student":
            return {"student": user["_id"]}
        if user.get("role") == "teacher":
            return {"status": {"$ne": "draft"}}
        return {}

    def _find_live(self, case_id) -> dict:
        case = self.cases.find_by_id(case_id)
        if case.get("is_deleted"):
            raise DatabaseError.not_found("Case", case_id)
        return case

    def create_case(self, data: dict, user: dict) -> dict:
        case = self.cases.create(
            {
                **data,
                "student": user["_id"],
                "department": data.get("department") or user.get("department"),
                "status": "draft",
                "workflow_history": [
                    {"status": "draft", "changed_by": user["_id"], "changed_at": now_utc(), "comments": "Case created"}
                ],
            }
        )
        self.log(user, "create", "case", case["_id"], f"Created case {case['case_number']}")
        return case

    def get_case(self, case_id, user: dict, populate: bool = True) -> dict:
        case = self.cases.find_by_id(case_id, populate=CASE_POPULATE if populate else None)
        if case.get("is_deleted"):
            raise DatabaseError.not_found("Case", case_id)
        self._ensure_can_view(case, user)
        return case

    def get_by_case_number(self, case_number: str, user: dict) -> dict:
        case = self.cases.find_by_case_number(case_number, populate=CASE_POPULATE)
        if case.get("is_deleted"):
            raise DatabaseError.not_found("Case", case_number)
        self._ensure_can_view(case, user)
        return case

    def list_cases(self, user: dict, filters: Optional[dict] = None, page: int = 1, limit: int = 10) -> dict:
        filters = filters or {}
        filter_dict: Dict[str, Any] = dict(NOT_DELETED)
        scope = self._scope(user)
        if scope:
            filter_dict["$and"] = [scope]
        if filters.get("status"):
            filter_dict["status"] = filters["status"]
        for key in ("department", "student", "assigned_to"):
            if filters.get(key):
                filter_dict[key] = validate_object_id(filters[key], key)
        return self.cases.paginate(
            filter_dict,
            page=page,
            limit=limit,
            sort={"updated_at": DESCENDING},
            populate=CASE_POPULATE[:3],
        )

    def search_cases(self, query: str, user: dict, limit: int = 20) -> List[dict]:
        if not query or not query.strip():
            raise ValidationError.required_field("q")
        scope = self._scope(user)
        return self.cases.search(query, {"$and": [scope]} if scope else {}, limit=limit, populate=CASE_POPULATE[:2])

    def update_case(self, case_id, data: dict, user: dict) -> dict:
        case = self._find_live(case_id)
        self._require_owner(case, user)
        self._require_status(case, ("draft", "revision_requested"), "update")

        updates = {key: value for key, value in data.items() if key not in PROTECTED_CASE_FIELDS}
        if updates.get("department") is not None:
            updates["department"] = validate_object_id(updates["department"], "department")
        updates = self.cases.validate_update(case, updates)
        changes = diff_fields(case, updates)
        if not changes:
            return case
        updated = self.cases.update_by_id(case["_id"], updates)
        self.log(user, "update", "case", case["_id"], f"Updated case {case['case_number']}", changes)
        return updated

    def delete_case(self, case_id, user: dict) -> dict:
        case = self._find_live(case_id)
        if not is_admin(user):
            self._require_owner(case, user)
            self._require_status(case, ("draft",), "delete")
        deleted = self.cases.delete_by_id(case["_id"], deleted_by=user["_id"])
        self.log(user, "delete", "case", case["_id"], f"Deleted case {case['case_number']}")
        return deleted

    def submit_case(self, case_id, user: dict) -> dict:
        case = self._find_live(case_id)
        self._require_owner(case, user)
        self._require_status(case, ("draft", "revision_requested"), "submit")
        if case["status"] == "revision_requested":
            for index, request in enumerate(case.get("revision_requests") or []):
                if not request.get("resolved_at"):
                    self.cases.resolve_revision_request(case["_id"], index)
        updated = self.cases.update_status(case["_id"], "submitted", user["_id"], "Case submitted for review")
        self.log(user, "submit", "case", case["_id"], f"Submitted case {case['case_number']}")
        self.notifications.case_submitted(updated, user)
        return updated

    def assign_case(self, case_id, staff_id, user: dict) -> dict:
        case = self._find_live(case_id)
        self._require_status(case, ("submitted",), "assign")
        staff = self.users.find_by_id(staff_id)
        if staff.get("role") != "teacher" or staff.get("status") != "active":
            raise ApiError.bad_request("Cases can only be assigned to active teachers", "CASE_INVALID_ASSIGNEE")

        self.cases.assign_to_staff(case["_id"], staff["_id"])
        updated = self.cases.update_status(case["_id"], "assigned", user["_id"], f"Assigned to {staff['email']}")
        self.log(user, "assign", "case", case["_id"], f"Assigned case {case['case_number']} to {staff['email']}")
        self.notifications.case_assigned(updated, user)
        return updated

    def start_review(self, case_id, user: dict) -> dict:
        case = self._find_live(case_id)
        self._require_reviewer(case, user)
        self._require_status(case, ("assigned",), "start reviewing")
        updated = self.cases.update_status(case["_id"], "in_review", user["_id"], "Review started")
        self.log(user, "review_start", "case", case["_id"], f"Started review of case {case['case_number']}")
        self.notifications.review_started(updated, user)
        return updated

    def request_revision(self, case_id, description: Optional[str], user: dict) -> dict:
        case = self._find_live(case_id)
        self._require_reviewer(case, user)
        self._require_status(case, ("in_review",), "request a revision for")
        if not description or not description.strip():
            raise ValidationError.required_field("description")

        self.cases.add_revision_request(case["_id"], {"requested_by": user["_id"], "description": description})
        updated = self.cases.update_status(case["_id"], "revision_requested", user["_id"], description)
        self.log(user, "revision_request", "case", case["_id"], f"Requested revision of case {case['case_number']}")
        self.notifications.revision_requested(updated, user, description)
        return updated

    def complete_review(self, case_id, evaluation: dict, user: dict) -> dict:
        case = self._find_live(case_id)
        self._require_reviewer(case, user)
        self._require_status(case, ("in_review",), "complete the review of")
        if evaluation.get("score") is None:
            raise ValidationError.required_field("score")

        self.cases.add_evaluation(case["_id"], {**evaluation, "evaluated_by": user["_id"]})
        self.cases.update_report(case["_id"], {"qr_code": new_code()})
        updated = self.cases.update_status(
            case["_id"], "completed", user["_id"], evaluation.get("feedback") or "Review completed"
        )
        self.log(user, "evaluate", "case", case["_id"], f"Completed review of case {case['case_number']}")
        self.notifications.case_completed(updated, user)
        return updated

    def add_comment(self, case_id, text: str, user: dict) -> dict:
        case = self.get_case(case_id, user, populate=False)
        if not text or not text.strip():
            raise ValidationError.required_field("text")
        updated = self.cases.add_comment(case["_id"], user["_id"], text.strip())
        self.log(user, "comment", "case", case["_id"], f"Commented on case {case['case_number']}")
        return updated

    def list_comments(self, case_id, user: dict) -> List[dict]:
        return self.get_case(case_id, user).get("comments") or []

    def add_attachment(self, case_id, attachment: dict, user: dict) -> dict:
        case = self._find_live(case_id)
        if not (same_id(case["student"], user["_id"]) or same_id(case.get("assigned_to"), user["_id"]) or is_admin(user)):
            raise ApiError.forbidden("Only the case owner or reviewer can add attachments")
        updated = self.cases.add_attachment(case["_id"], attachment)
        self.log(user, "attach", "case", case["_id"], f"Attached {attachment.get('filename')} to case {case['case_number']}")
        return updated

    def generate_pdf(self, case_id, user: dict) -> bytes:
        case = self.get_case(case_id, user)
        code = (case.get("report") or {}).get("qr_code")
        return render_case_report(
            case,
            student_email=(case.get("student") or {}).get("email") if isinstance(case.get("student"), dict) else None,
            reviewer_email=(case.get("assigned_to") or {}).get("email") if isinstance(case.get("assigned_to"), dict) else None,
            qr_png=render_png(qr_url(code)) if code else None,
        )


# -----------------------------
# Documents
# -----------------------------

class DocumentService(Service):

    def __init__(self, db, meta: Optional[dict] = None):
        super().__init__(db, meta)
        self.documents = DocumentRepository(db)

    def _can_access(self, document: dict, user: dict) -> bool:
        if is_admin(user):
            return True
        metadata = document.get("metadata") or {}
        if same_id(metadata.get("author"), user["_id"]):
            return True
        access = document.get("access_control") or {}
        visibility = access.get("visibility", "private")
        if visibility == "public":
            return True
        if visibility == "private":
            return False
        return (
            user.get("role") in (access.get("allowed_roles") or [])
            or any(same_id(u, user["_id"]) for u in access.get("allowed_users") or [])
            or any(same_id(d, user.get("department")) for d in access.get("allowed_departments") or [])
        )

    def _access_filter(self, user: dict) -> dict:
        if is_admin(user):
            return {}
        restricted = {"access_control.visibility": "restricted"}
        clauses = [
            {"access_control.visibility": "public"},
            {"metadata.author": user["_id"]},
            {**restricted, "access_control.allowed_roles": user.get("role")},
            {**restricted, "access_control.allowed_users": user["_id"]},
        ]
        if user.get("department"):
            clauses.append({**restricted, "access_control.allowed_departments": user["department"]})
        return {"$or": clauses}

    def _find_live(self, document_id) -> dict:
        document = self.documents.find_by_id(document_id)
        if document.get("is_deleted"):
            raise DatabaseError.not_found("Document", document_id)
        return document

    def _require_editor(self, document: dict, user: dict):
        if not (is_admin(user) or same_id((document.get("metadata") or {}).get("author"), user["_id"])):
            raise ApiError.forbidden("Only the author or an administrator can modify this document")

    def create_document(self, data: dict, user: dict) -> dict:
        metadata = dict(data.get("metadata") or {})
        metadata["author"] = user["_id"]
        metadata.setdefault("department", user.get("department"))
        document = self.documents.create({**data, "metadata": metadata})
        self.log(user, "create", "document", document["_id"], f"Created document {document['document_number']}")
        return document

    def get_document(self, document_id, user: dict, ip: Optional[str] = None, method: str = "direct") -> dict:
        document = self._find_live(document_id)
        if not self._can_access(document, user):
            raise ApiError.forbidden("You do not have access to this document")
        self.documents.log_access(document["_id"], {"user": user["_id"], "ip_address": ip, "access_method": method})
        return self.documents.find_by_id(
            document["_id"], populate={"path": "metadata.author", "collection": "user", "select": ["email", "role"]}
        )

    def log_qr_access(self, document_id, ip: Optional[str] = None) -> dict:
        return self.documents.log_access(document_id, {"ip_address": ip, "access_method": "qrcode"})

    def list_documents(self, user: dict, filters: Optional[dict] = None, page: int = 1, limit: int = 10) -> dict:
        filters = filters or {}
        filter_dict: Dict[str, Any] = dict(NOT_DELETED)
        access = self._access_filter(user)
        if access:
            filter_dict["$and"] = [access]
        for key in ("category", "subcategory", "status"):
            if filters.get(key):
                filter_dict[key] = filters[key]
        if filters.get("department"):
            filter_dict["metadata.department"] = validate_object_id(filters["department"], "department")
        if filters.get("tags"):
            filter_dict["metadata.tags"] = {"$in": list(filters["tags"])}
        return self.documents.paginate(
            filter_dict, page=page, limit=limit, projection={"access_logs": 0, "versions": 0}
        )

    def search_documents(self, query: str, user: dict, limit: int = 20) -> List[dict]:
        if not query or not query.strip():
            raise ValidationError.required_field("q")
        access = self._access_filter(user)
        return self.documents.search(query, {"$and": [access]} if access else {}, limit=limit)

    def update_document(self, document_id, data: dict, user: dict) -> dict:
        document = self._find_live(document_id)
        self._require_editor(document, user)
        updates = {key: value for key, value in data.items() if key not in PROTECTED_DOCUMENT_FIELDS}
        if updates.get("metadata") is not None:
            # Author and version are managed by the platform
            metadata = dict(document.get("metadata") or {})
            metadata.update({k: v for k, v in updates["metadata"].items() if k not in ("author", "version")})
            updates["metadata"] = metadata
        if updates.get("access_control") is not None:
            updates["access_control"] = {**(document.get("access_control") or {}), **updates["access_control"]}
        updates = self.documents.validate_update(document, updates)
        changes = diff_fields(document, updates)
        if not changes:
            return document
        updated = self.documents.update_by_id(document["_id"], updates)
        self.log(user, "update", "document", document["_id"], f"Updated document {document['document_number']}", changes)
        return updated

    def add_version(self, document_id, version_data: dict, user: dict) -> dict:
        document = self._find_live(document_id)
        self._require_editor(document, user)
        updated = self.documents.add_version(document["_id"], {**version_data, "uploaded_by": user["_id"]})
        self.log(
            user, "version", "document", document["_id"],
            f"Uploaded version {updated['metadata']['version']} of document {document['document_number']}",
        )
        return updated

    def set_status(self, document_id, status: str, user: dict) -> dict:
        if status not in DOCUMENT_STATUS:
            raise ValidationError.invalid_format("status", f"Invalid document status: {status}")
        document = self._find_live(document_id)
        self._require_editor(document, user)
        updated = self.documents.update_by_id(document["_id"], {"status": status})
        self.log(
            user, "status", "document", document["_id"], f"Set document {document['document_number']} to {status}",
            [{"field": "status", "old_value": document.get("status"), "new_value": status}],
        )
        return updated

    def delete_document(self, document_id, user: dict) -> dict:
        document = self._find_live(document_id)
        self._require_editor(document, user)
        deleted = self.documents.delete_by_id(document["_id"], deleted_by=user["_id"])
        self.log(user, "delete", "document", document["_id"], f"Deleted document {document['document_number']}")
        return deleted


# -----------------------------
# Departments
# -----------------------------

class DepartmentService(Service):

    def __init__(self, db, meta: Optional[dict] = None):
        super().__init__(db, meta)
        self.departments = DepartmentRepository(db)
        self.users = UserRepository(db)

    def create_department(self, data: dict, user: dict) -> dict:
        code = data["code"].strip().upper()
        if self.departments.exists({"code": code}):
            raise ApiError.conflict(f"Department with code {code} already exists", "CONFLICT_DEPARTMENT_CODE")
        if data.get("parent_department"):
            self.departments.find_by_id(data["parent_department"])
        if data.get("head"):
            self.users.find_by_id(data["head"])
        department = self.departments.create({**data, "code": code})
        self.log(user, "create", "department", department["_id"], f"Created department {code}")
        return department

    def get_department(self, department_id) -> dict:
        return self.departments.get_department_with_counts(department_id)

    def get_hierarchy(self, department_id) -> dict:
        return self.departments.get_hierarchy(department_id)

    def list_departments(self, filters: Optional[dict] = None, page: int = 1, limit: int = 50) -> dict:
        filters = filters or {}
        filter_dict: Dict[str, Any] = {}
        if filters.get("status"):
            filter_dict["status"] = filters["status"]
        if filters.get("parent"):
            filter_dict["parent_department"] = validate_object_id(filters["parent"], "parent")
        return self.departments.paginate(
            filter_dict,
            page=page,
            limit=limit,
            sort={"name": ASCENDING},
            populate={"path": "head", "collection": "user", "select": ["email", "role"]},
        )

    def update_department(self, department_id, data: dict, user: dict) -> dict:
        department = self.departments.find_by_id(department_id)
        updates = dict(data)
        if updates.get("code"):
            updates["code"] = updates["code"].strip().upper()
            if self.departments.exists({"code": updates["code"], "_id": {"$ne": department["_id"]}}):
                raise ApiError.conflict(f"Department with code {updates['code']} already exists", "CONFLICT_DEPARTMENT_CODE")
        if updates.get("parent_department"):
            parent = self.departments.find_by_id(updates["parent_department"])
            if parent["_id"] == department["_id"]:
                raise ApiError.bad_request("A department cannot be its own parent")
            updates["parent_department"] = parent["_id"]
        changes = diff_fields(department, updates)
        if not changes:
            return department
        updated = self.departments.update_by_id(department["_id"], updates)
        self.log(user, "update", "department", department["_id"], f"Updated department {department['code']}", changes)
        return updated

    def set_head(self, department_id, head_id, user: dict) -> dict:
        department = self.departments.find_by_id(department_id)
        head = self.users.find_by_id(head_id)
        if not is_teacher(head):
            raise ApiError.bad_request("Department head must be a teacher or administrator")
        updated = self.departments.update_by_id(department["_id"], {"head": head["_id"]})
        self.log(user, "set_head", "department", department["_id"], f"Set {head['email']} as head of {department['code']}")
        return updated

    def set_status(self, department_id, status: str, user: dict) -> dict:
        if status not in DEPARTMENT_STATUS:
            raise ValidationError.invalid_format("status", f"Invalid department status: {status}")
        department = self.departments.find_by_id(department_id)
        updated = self.departments.update_by_id(department["_id"], {"status": status})
        self.log(user, "status", "department", department["_id"], f"Set department {department['code']} to {status}")
        return updated

    def delete_department(self, department_id, user: dict) -> dict:
        department = self.departments.find_by_id(department_id)
        members = self.users.count({"department": department["_id"]})
        children = self.departments.count({"parent_department": department["_id"]})
        if members or children:
            raise ApiError.conflict(
                "Department still has users or sub-departments",
                "CONFLICT_DEPARTMENT_IN_USE",
                {"users": members, "sub_departments": children},
            )
        deleted = self.departments.delete_by_id(department["_id"])
        self.log(user, "delete", "department", department["_id"], f"Deleted department {department['code']}")
        return deleted


# -----------------------------
# Users
# -----------------------------

class UserService(Service):

    def __init__(self, db, meta: Optional[dict] = None):
        super().__init__(db, meta)
        self.users = UserRepository(db)
        self.tokens = TokenRepository(db)
        self.notifications = NotificationService(db)

    def _attach_profiles(self, users: List[dict]) -> List[dict]:
        if not users:
            return users
        profiles = self.users.profiles.find_all({"user": {"$in": [u["_id"] for u in users]}})
        by_user = {p["user"]: p for p in profiles}
        for user in users:
            user["profile"] = by_user.get(user["_id"])
        return users

    def get_user(self, user_id) -> dict:
        user = self.users.find_by_id(user_id)
        return self._attach_profiles([user])[0]

    def list_users(self, filters: Optional[dict] = None, page: int = 1, limit: int = 10) -> dict:
        filters = filters or {}
        filter_dict: Dict[str, Any] = {}
        for key in ("role", "status"):
            if filters.get(key):
                filter_dict[key] = filters[key]
        if filters.get("department"):
            filter_dict["department"] = validate_object_id(filters["department"], "department")
        result = self.users.paginate(filter_dict, page=page, limit=limit)
        self._attach_profiles(result["items"])
        return result

    def search_users(self, query: str, filters: Optional[dict] = None) -> List[dict]:
        if not query or not query.strip():
            raise ValidationError.required_field("q")
        return self._attach_profiles(self.users.search(query, filters, limit=50))

    def create_user(self, data: dict, actor: dict) -> dict:
        email = data["email"].strip().lower()
        if self.users.exists({"email": email}):
            raise ApiError.conflict("User with this email already exists", "CONFLICT_EMAIL_EXISTS")
        user = self.users.create_user_with_profile(
            {
                "email": email,
                "password_hash": hash_password(data["password"]),
                "role": data.get("role", "student"),
                "status": "active",
                "is_email_verified": True,
                "approved_by": actor["_id"],
                "approved_at": now_utc(),
                "department": data.get("department"),
            },
            {key: data[key] for key in PROFILE_FIELDS if data.get(key) is not None},
        )
        self.log(actor, "create", "user", user["_id"], f"Created user {email}")
        return user

    def update_user(self, user_id, data: dict, actor: dict) -> dict:
        target = self.users.find_by_id(user_id)
        if not is_admin(actor) and not same_id(target["_id"], actor["_id"]):
            raise ApiError.forbidden("You can only update your own account")

        user_updates = {key: data[key] for key in USER_FIELDS if key in data}
        if not is_admin(actor):
            for key in ADMIN_ONLY_USER_FIELDS:
                user_updates.pop(key, None)
        if user_updates.get("email"):
            user_updates["email"] = user_updates["email"].strip().lower()
            if self.users.exists({"email": user_updates["email"], "_id": {"$ne": target["_id"]}}):
                raise ApiError.conflict("User with this email already exists", "CONFLICT_EMAIL_EXISTS")
        if user_updates.get("department"):
            user_updates["department"] = validate_object_id(user_updates["department"], "department")
        profile_updates = {key: data[key] for key in PROFILE_FIELDS if key in data}

        updated = self.users.update_user_with_profile(target["_id"], user_updates or None, profile_updates or None)
        self.log(
            actor, "update", "user", target["_id"], f"Updated user {target['email']}",
            diff_fields(target, user_updates) + [{"field": k, "new_value": v} for k, v in profile_updates.items()],
        )
        return updated

    def set_status(self, user_id, status: str, actor: dict) -> dict:
        if status not in USER_STATUS:
            raise ValidationError.invalid_format("status", f"Invalid user status: {status}")
        target = self.users.find_by_id(user_id)
        if same_id(target["_id"], actor["_id"]):
            raise ApiError.bad_request("You cannot change your own status")
        updated = self.users.update_status(target["_id"], status)
        if status != "active":
            self.tokens.blacklist_all_user_tokens(target["_id"])
        self.log(
            actor, "status", "user", target["_id"], f"Set user {target['email']} to {status}",
            [{"field": "status", "old_value": target.get("status"), "new_value": status}],
        )
        return updated

    def set_permissions(self, user_id, permissions: List[str], actor: dict) -> dict:
        target = self.users.find_by_id(user_id)
        updated = self.users.update_permissions(target["_id"], permissions)
        self.log(
            actor, "permissions", "user", target["_id"], f"Updated permissions of {target['email']}",
            [{"field": "permissions", "old_value": target.get("permissions"), "new_value": permissions}],
        )
        return updated

    def approve_user(self, user_id, actor: dict) -> dict:
        target = self.users.find_by_id(user_id)
        if target.get("status") not in ("pending", "verified"):
            raise ApiError.bad_request(f"User in status '{target.get('status')}' cannot be approved", "USER_INVALID_STATUS")
        updated = self.users.update_by_id(
            target["_id"], {"status": "active", "approved_by": actor["_id"], "approved_at": now_utc()}
        )
        self.log(actor, "approve", "user", target["_id"], f"Approved user {target['email']}")
        self.notifications.create_notification(
            target["_id"], "approval_result", "Account approved",
            "Your account has been approved. You can now sign in.",
            sender_id=actor["_id"], related_entity="user", related_entity_id=target["_id"],
        )
        return updated

    def reject_user(self, user_id, reason: Optional[str], actor: dict) -> dict:
        target = self.users.find_by_id(user_id)
        if target.get("status") not in ("pending", "verified"):
            raise ApiError.bad_request(f"User in status '{target.get('status')}' cannot be rejected", "USER_INVALID_STATUS")
        updated = self.users.update_status(target["_id"], "inactive")
        self.log(actor, "reject", "user", target["_id"], f"Rejected user {target['email']}")
        self.notifications.create_notification(
            target["_id"], "approval_result", "Account not approved",
            f"Your registration was not approved.{' Reason: ' + reason if reason else ''}",
            sender_id=actor["_id"], related_entity="user", related_entity_id=target["_id"],
        )
        return updated

    def delete_user(self, user_id, actor: dict) -> dict:
        target = self.users.find_by_id(user_id)
        if same_id(target["_id"], actor["_id"]):
            raise ApiError.bad_request("You cannot delete your own account")
        deleted = self.users.delete_by_id(target["_id"])
        self.users.profiles.delete_many({"user": target["_id"]}, soft_delete=False)
        self.tokens.delete_many({"user": target["_id"]}, soft_delete=False)
        self.log(actor, "delete", "user", target["_id"], f"Deleted user {target['email']}")
        return deleted


# -----------------------------
# Drug-information queries
# -----------------------------

class QueryService(Service):

    def __init__(self, db, meta: Optional[dict] = None):
        super().__init__(db, meta)
        self.queries = QueryRepository(db)
        self.notifications = NotificationService(db)

    def _find_live(self, query_id) -> dict:
        query = self.queries.find_by_id(
            query_id,
            populate=[
                {"path": "author", "collection": "user", "select": ["email", "role"]},
                {"path": "answer.answered_by", "collection": "user", "select": ["email", "role"]},
            ],
        )
        if query.get("is_deleted"):
            raise DatabaseError.not_found("Query", query_id)
        return query

    def create_query(self, data: dict, user: dict) -> dict:
        query = self.queries.create({**data, "author": user["_id"], "status": "open"})
        self.log(user, "create", "query", query["_id"], f"Asked query '{query['title']}'")
        return query

    def list_queries(self, user: dict, filters: Optional[dict] = None, page: int = 1, limit: int = 10) -> dict:
        filters = filters or {}
        filter_dict: Dict[str, Any] = dict(NOT_DELETED)
        if user.get("role") == "student":
            filter_dict["author"] = user["_id"]
        for key in ("status", "category"):
            if filters.get(key):
                filter_dict[key] = filters[key]
        return self.queries.paginate(
            filter_dict, page=page, limit=limit,
            populate={"path": "author", "collection": "user", "select": ["email", "role"]},
        )

    def get_query(self, query_id, user: dict) -> dict:
        query = self._find_live(query_id)
        if user.get("role") == "student" and not same_id(query["author"], user["_id"]):
            raise ApiError.forbidden("You do not have access to this query")
        return query

    def answer_query(self, query_id, text: str, user: dict) -> dict:
        query = self._find_live(query_id)
        if query["status"] == "closed":
            raise ApiError.bad_request("Closed queries cannot be answered", "QUERY_CLOSED")
        if not text or not text.strip():
            raise ValidationError.required_field("text")
        updated = self.queries.answer(query["_id"], text.strip(), user["_id"])
        self.log(user, "answer", "query", query["_id"], f"Answered query '{query['title']}'")
        self.notifications.create_notification(
            ref_id(query["author"]), "system", "Your query was answered",
            f"Your query '{query['title']}' has an answer.",
            sender_id=user["_id"], related_entity="query", related_entity_id=query["_id"],
        )
        return updated

    def close_query(self, query_id, user: dict) -> dict:
        query = self._find_live(query_id)
        if not (is_teacher(user) or same_id(query["author"], user["_id"])):
            raise ApiError.forbidden("Only the author or a teacher can close this query")
        updated = self.queries.update_by_id(query["_id"], {"status": "closed"})
        self.log(user, "close", "query", query["_id"], f"Closed query '{query['title']}'")
        return updated


# -----------------------------
# Tests
# -----------------------------

def hide_answers(test: dict) -> dict:
    test = dict(test)
    test["questions"] = [
        {key: value for key, value in question.items() if key != "correct_option"}
        for question in test.get("questions") or []
    ]
    return test


class TestService(Service):
    __test__ = False

    def __init__(self, db, meta: Optional[dict] = None):
        super().__init__(db, meta)
        self.tests = TestRepository(db)
        self.attempts = TestAttemptRepository(db)

    def _find_live(self, test_id) -> dict:
        test = self.tests.find_by_id(test_id)
        if test.get("is_deleted"):
            raise DatabaseError.not_found("Test", test_id)
        return test

    def create_test(self, data: dict, user: dict) -> dict:
        test = self.tests.create(
            {**data, "created_by": user["_id"], "department": data.get("department") or user.get("department")}
        )
        self.log(user, "create", "test", test["_id"], f"Created test '{test['title']}'")
        return test

    def list_tests(self, user: dict, page: int = 1, limit: int = 10) -> dict:
        filter_dict: Dict[str, Any] = dict(NOT_DELETED)
        if not is_teacher(user):
            filter_dict["is_published"] = True
        result = self.tests.paginate(filter_dict, page=page, limit=limit)
        if not is_teacher(user):
            result["items"] = [hide_answers(test) for test in result["items"]]
        return result

    def get_test(self, test_id, user: dict) -> dict:
        test = self._find_live(test_id)
        if is_teacher(user):
            return test
        if not test.get("is_published"):
            raise DatabaseError.not_found("Test", test_id)
        return hide_answers(test)

    def publish_test(self, test_id, user: dict) -> dict:
        test = self._find_live(test_id)
        if not (is_admin(user) or same_id(test["created_by"], user["_id"])):
            raise ApiError.forbidden("Only the author of the test can publish it")
        updated = self.tests.update_by_id(test["_id"], {"is_published": True})
        self.log(user, "publish", "test", test["_id"], f"Published test '{test['title']}'")
        return updated

    def submit_attempt(self, test_id, answers: List[Optional[int]], user: dict) -> dict:
        test = self._find_live(test_id)
        if not test.get("is_published"):
            raise ApiError.bad_request("Test is not open for submissions", "TEST_NOT_PUBLISHED")
        questions = test["questions"]
        if len(answers) != len(questions):
            raise ValidationError.invalid_input(
                f"Expected {len(questions)} answers, got {len(answers)}", {"field": "answers"}
            )

        max_score = sum(question.get("points", 1) for question in questions)
        score = sum(
            question.get("points", 1)
            for question, answer in zip(questions, answers)
            if answer is not None and answer == question["correct_option"]
        )
        percentage = round(score / max_score * 100, 1) if max_score else 0.0
        attempt = self.attempts.create(
            {
                "test": test["_id"],
                "student": user["_id"],
                "answers": answers,
                "score": score,
                "max_score": max_score,
                "percentage": percentage,
                "passed": percentage >= test.get("passing_score", 50),
                "submitted_at": now_utc(),
            }
        )
        self.log(user, "submit", "test", test["_id"], f"Submitted test '{test['title']}' ({percentage}%)")
        return attempt

    def get_results(self, test_id, user: dict) -> List[dict]:
        test = self._find_live(test_id)
        filter_dict: Dict[str, Any] = {"test": test["_id"]}
        if not is_teacher(user):
            filter_dict["student"] = user["_id"]
        return self.attempts.find_all(
            filter_dict,
            sort={"submitted_at": DESCENDING},
            populate={"path": "student", "collection": "user", "select": ["email"]},
        )
