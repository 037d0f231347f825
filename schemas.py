"""
Database Schemas for the Clinical Education Platform (MongoDB)

Each Pydantic model corresponds to a MongoDB collection.
Collection name is the lowercase of the class name.
References to other documents are stored as ObjectId.
"""
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, model_validator


def _to_object_id(value: Any) -> Any:
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


ObjectIdField = Annotated[ObjectId, BeforeValidator(_to_object_id)]

# -----------------------------
# Enumerations
# -----------------------------

ROLES = ("student", "teacher", "admin")

# A role satisfies a requirement when it appears in the required role's list
ROLE_HIERARCHY = {
    "admin": ("admin",),
    "teacher": ("admin", "teacher"),
    "student": ("admin", "teacher", "student"),
}

USER_STATUS = ("pending", "verified", "active", "inactive", "suspended", "deleted")

CASE_STATUS = ("draft", "submitted", "assigned", "in_review", "revision_requested", "completed", "archived")
CASE_ACTIVE_STATUS = ("submitted", "assigned", "in_review")

DOCUMENT_STATUS = ("active", "inactive", "archived", "deleted")
DEPARTMENT_STATUS = ("active", "inactive")

NOTIFICATION_TYPES = (
    "system",
    "case_update",
    "document_update",
    "user_update",
    "approval_request",
    "approval_result",
    "assignment",
    "reminder",
)

TOKEN_TYPES = ("refresh", "access", "verification", "password_reset")
ACCESS_METHODS = ("direct", "qrcode", "link", "download")
QUERY_STATUS = ("open", "answered", "closed")


class Collection(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class Embedded(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


# -----------------------------
# Users and profiles
# -----------------------------

class ExpiringToken(Embedded):
    token: str
    expires_at: datetime


class LastLogin(Embedded):
    date: Optional[datetime] = None
    ip: Optional[str] = None


class FailedLoginAttempts(Embedded):
    count: int = 0
    last_attempt: Optional[datetime] = None
    locked_until: Optional[datetime] = None


class User(Collection):
    email: EmailStr = Field(..., description="Login email, stored lowercased")
    password_hash: str = Field(..., description="BCrypt password hash, never serialized")
    role: Literal["student", "teacher", "admin"] = "student"
    status: Literal["pending", "verified", "active", "inactive", "suspended", "deleted"] = "pending"
    is_email_verified: bool = False
    verification_token: Optional[ExpiringToken] = None
    password_reset_token: Optional[ExpiringToken] = None
    last_login: Optional[LastLogin] = None
    failed_login_attempts: FailedLoginAttempts = Field(default_factory=FailedLoginAttempts)
    approved_by: Optional[ObjectIdField] = None
    approved_at: Optional[datetime] = None
    department: Optional[ObjectIdField] = None
    permissions: List[str] = Field(default_factory=list)


class Address(Embedded):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class StaffDetails(Embedded):
    employee_id: Optional[str] = None
    designation: Optional[str] = None
    joining_date: Optional[datetime] = None
    specializations: List[str] = Field(default_factory=list)


class StudentDetails(Embedded):
    enrollment_id: Optional[str] = None
    enrollment_year: Optional[int] = None
    current_semester: Optional[int] = None
    academic_status: Optional[Literal["active", "on_leave", "graduated", "dropped"]] = None


class NotificationPreferences(Embedded):
    email: bool = True
    system: bool = True


class Preferences(Embedded):
    language: str = "en"
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)
    theme: str = "light"


class Profile(Collection):
    user: ObjectIdField
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    middle_name: Optional[str] = None
    display_name: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    contact_number: Optional[str] = None
    address: Optional[Address] = None
    staff_details: Optional[StaffDetails] = None
    student_details: Optional[StudentDetails] = None
    preferences: Preferences = Field(default_factory=Preferences)


def full_name(profile: dict) -> str:
    parts = [profile.get("first_name"), profile.get("middle_name"), profile.get("last_name")]
    return " ".join(p for p in parts if p)


# -----------------------------
# Departments
# -----------------------------

class Contact(Embedded):
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class Department(Collection):
    name: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, description="Unique department code, uppercased")
    description: Optional[str] = None
    status: Literal["active", "inactive"] = "active"
    head: Optional[ObjectIdField] = None
    parent_department: Optional[ObjectIdField] = None
    contact: Optional[Contact] = None


# -----------------------------
# Clinical cases
# -----------------------------

class PatientInfo(Embedded):
    age: Optional[int] = None
    gender: Optional[str] = None
    weight: Optional[float] = None
    height: Optional[float] = None
    anonymized_id: Optional[str] = None
    chief_complaint: Optional[str] = None
    presenting_symptoms: List[str] = Field(default_factory=list)
    diagnosis_code: Optional[str] = Field(None, description="ICD code")


class Medication(Embedded):
    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    purpose: Optional[str] = None


class LabValue(Embedded):
    name: str
    value: Optional[str] = None
    unit: Optional[str] = None
    reference_range: Optional[str] = None
    taken_at: Optional[datetime] = None


class Attachment(Embedded):
    filename: str
    path: str
    content_type: Optional[str] = None
    description: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class CaseComment(Embedded):
    author: ObjectIdField
    text: str
    created_at: Optional[datetime] = None


class RubricItem(Embedded):
    criterion: str
    score: float
    max_score: Optional[float] = None
    comments: Optional[str] = None


class Evaluation(Embedded):
    score: float
    max_score: float = 100
    feedback: Optional[str] = None
    evaluated_by: Optional[ObjectIdField] = None
    evaluated_at: Optional[datetime] = None
    rubric_items: List[RubricItem] = Field(default_factory=list)


class RevisionRequest(Embedded):
    requested_by: ObjectIdField
    description: str
    requested_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class WorkflowEvent(Embedded):
    status: Literal["draft", "submitted", "assigned", "in_review", "revision_requested", "completed", "archived"]
    changed_by: Optional[ObjectIdField] = None
    changed_at: datetime
    comments: Optional[str] = None


class CaseReport(Embedded):
    generated: bool = False
    generated_at: Optional[datetime] = None
    qr_code: Optional[str] = None


class Case(Collection):
    case_number: str
    title: str = Field(..., min_length=1)
    student: ObjectIdField
    assigned_to: Optional[ObjectIdField] = None
    department: Optional[ObjectIdField] = None
    status: Literal["draft", "submitted", "assigned", "in_review", "revision_requested", "completed", "archived"] = "draft"
    patient_info: Optional[PatientInfo] = None
    medication_history: List[Medication] = Field(default_factory=list)
    lab_values: List[LabValue] = Field(default_factory=list)
    assessment: Optional[str] = None
    plan: Optional[str] = None
    attachments: List[Attachment] = Field(default_factory=list)
    comments: List[CaseComment] = Field(default_factory=list)
    evaluation: Optional[Evaluation] = None
    revision_requests: List[RevisionRequest] = Field(default_factory=list)
    workflow_history: List[WorkflowEvent] = Field(default_factory=list)
    report: Optional[CaseReport] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[ObjectIdField] = None


# -----------------------------
# Documents
# -----------------------------

class FileInfo(Embedded):
    filename: str
    original_filename: Optional[str] = None
    path: str
    content_type: Optional[str] = None
    size: Optional[int] = None
    uploaded_at: Optional[datetime] = None


class DocumentMetadata(Embedded):
    author: Optional[ObjectIdField] = None
    department: Optional[ObjectIdField] = None
    tags: List[str] = Field(default_factory=list)
    version: int = 1
    expiry_date: Optional[datetime] = None
    is_template: bool = False


class AccessControl(Embedded):
    visibility: Literal["public", "private", "restricted"] = "private"
    allowed_roles: List[str] = Field(default_factory=list)
    allowed_users: List[ObjectIdField] = Field(default_factory=list)
    allowed_departments: List[ObjectIdField] = Field(default_factory=list)


class QRCodeInfo(Embedded):
    code: str
    url: Optional[str] = None
    generated_at: Optional[datetime] = None


class DocumentVersion(Embedded):
    version: int
    filename: str
    path: str
    size: Optional[int] = None
    uploaded_at: Optional[datetime] = None
    uploaded_by: Optional[ObjectIdField] = None
    change_notes: Optional[str] = None


class AccessLog(Embedded):
    user: Optional[ObjectIdField] = None
    accessed_at: datetime
    ip_address: Optional[str] = None
    access_method: Literal["direct", "qrcode", "link", "download"] = "direct"


class Document(Collection):
    document_number: str
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    status: Literal["active", "inactive", "archived", "deleted"] = "active"
    file: FileInfo
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    access_control: AccessControl = Field(default_factory=AccessControl)
    qr_code: Optional[QRCodeInfo] = None
    versions: List[DocumentVersion] = Field(default_factory=list)
    access_logs: List[AccessLog] = Field(default_factory=list)
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[ObjectIdField] = None


# -----------------------------
# Notifications, tokens, activity logs
# -----------------------------

class Notification(Collection):
    recipient: ObjectIdField
    sender: Optional[ObjectIdField] = None
    type: Literal[
        "system",
        "case_update",
        "document_update",
        "user_update",
        "approval_request",
        "approval_result",
        "assignment",
        "reminder",
    ]
    title: str
    message: str
    is_read: bool = False
    read_at: Optional[datetime] = None
    related_entity: Optional[Literal["user", "case", "document", "department", "query", "test"]] = None
    related_entity_id: Optional[ObjectIdField] = None
    email_sent: bool = False
    email_sent_at: Optional[datetime] = None


class TokenMetadata(Embedded):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_used: Optional[datetime] = None


class Token(Collection):
    token: str
    user: ObjectIdField
    type: Literal["refresh", "access", "verification", "password_reset"]
    expires_at: datetime
    blacklisted: bool = False
    metadata: TokenMetadata = Field(default_factory=TokenMetadata)


class FieldChange(Embedded):
    field: str
    old_value: Any = None
    new_value: Any = None


class LogDetails(Embedded):
    before: Any = None
    after: Any = None
    changes: List[FieldChange] = Field(default_factory=list)


class RequestMetadata(Embedded):
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None


class ActivityLog(Collection):
    user: Optional[ObjectIdField] = None
    action: str = Field(..., min_length=1)
    entity: str = Field(..., min_length=1)
    entity_id: Optional[ObjectIdField] = None
    description: str = Field(..., min_length=1)
    details: Optional[LogDetails] = None
    metadata: Optional[RequestMetadata] = None
    timestamp: datetime


# -----------------------------
# Drug-information queries and tests
# -----------------------------

class QueryAnswer(Embedded):
    text: str
    answered_by: ObjectIdField
    answered_at: datetime


class Query(Collection):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, description="e.g. dosing, interaction, adverse effect")
    status: Literal["open", "answered", "closed"] = "open"
    author: ObjectIdField
    answer: Optional[QueryAnswer] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[ObjectIdField] = None


class Question(Embedded):
    text: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=2)
    correct_option: int = Field(..., ge=0)
    points: float = Field(1, gt=0)

    @model_validator(mode="after")
    def check_correct_option(self):
        if self.correct_option >= len(self.options):
            raise ValueError("correct_option must index one of the options")
        return self


class Test(Collection):
    __test__ = False

    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    created_by: ObjectIdField
    department: Optional[ObjectIdField] = None
    duration_minutes: int = Field(30, gt=0)
    passing_score: float = Field(50, ge=0, le=100, description="Percentage required to pass")
    questions: List[Question] = Field(..., min_length=1)
    is_published: bool = False
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[ObjectIdField] = None


class TestAttempt(Collection):
    __test__ = False

    test: ObjectIdField
    student: ObjectIdField
    answers: List[Optional[int]]
    score: float
    max_score: float
    percentage: float
    passed: bool
    submitted_at: datetime
