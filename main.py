import io
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, Response, StreamingResponse
from pydantic import BaseModel, EmailStr, Field

import database
from auth import AuthService, get_current_user, public_user, request_meta, require_roles
from config import settings
from dashboard import DashboardService
from database import get_db, serialize
from errors import ApiError, register_error_handlers
from qrcodes import QRCodeService
from schemas import (
    Address,
    Contact,
    LabValue,
    Medication,
    PatientInfo,
    Preferences,
    Question,
    RubricItem,
    StaffDetails,
    StudentDetails,
)
from services import (
    CaseService,
    DepartmentService,
    DocumentService,
    LogService,
    NotificationService,
    QueryService,
    TestService,
    UserService,
    same_id,
)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Clinical Education Platform API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

API = settings.api_prefix

any_user = require_roles("student")
teacher_user = require_roles("teacher")
admin_user = require_roles("admin")


# -----------------------------
# Utility functions
# -----------------------------

def ok(data=None, message: str = "Success"):
    return {"success": True, "message": message, "data": serialize(data)}


def ok_page(result: dict, message: str = "Success"):
    return {"success": True, "message": message, "data": serialize(result["items"]), "meta": result["meta"]}


# -----------------------------
# Pydantic Models (requests)
# -----------------------------

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: Literal["student", "teacher"] = "student"
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    middle_name: Optional[str] = None
    contact_number: Optional[str] = None
    department: Optional[str] = None
    student_details: Optional[StudentDetails] = None
    staff_details: Optional[StaffDetails] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class PasswordResetRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = Field(..., min_length=8)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class CaseCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    department: Optional[str] = None
    patient_info: Optional[PatientInfo] = None
    medication_history: List[Medication] = []
    lab_values: List[LabValue] = []
    assessment: Optional[str] = None
    plan: Optional[str] = None


class CaseUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    department: Optional[str] = None
    patient_info: Optional[PatientInfo] = None
    medication_history: Optional[List[Medication]] = None
    lab_values: Optional[List[LabValue]] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None


class EvaluationRequest(BaseModel):
    score: float = Field(..., ge=0)
    max_score: float = Field(100, gt=0)
    feedback: Optional[str] = None
    rubric_items: List[RubricItem] = []


class RevisionRequestBody(BaseModel):
    description: str


class CommentRequest(BaseModel):
    text: str


class AttachmentRequest(BaseModel):
    filename: str
    path: str
    content_type: Optional[str] = None
    description: Optional[str] = None


class FileRequest(BaseModel):
    filename: str
    original_filename: Optional[str] = None
    path: str
    content_type: Optional[str] = None
    size: Optional[int] = None


class DocumentMetadataRequest(BaseModel):
    department: Optional[str] = None
    tags: List[str] = []
    expiry_date: Optional[datetime] = None
    is_template: bool = False


class AccessControlRequest(BaseModel):
    visibility: Literal["public", "private", "restricted"] = "private"
    allowed_roles: List[str] = []
    allowed_users: List[str] = []
    allowed_departments: List[str] = []


class DocumentCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    file: FileRequest
    metadata: DocumentMetadataRequest = DocumentMetadataRequest()
    access_control: AccessControlRequest = AccessControlRequest()


class DocumentUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1)
    subcategory: Optional[str] = None
    metadata: Optional[DocumentMetadataRequest] = None
    access_control: Optional[AccessControlRequest] = None


class DocumentVersionRequest(FileRequest):
    change_notes: Optional[str] = None


class StatusRequest(BaseModel):
    status: str


class DepartmentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)
    description: Optional[str] = None
    head: Optional[str] = None
    parent_department: Optional[str] = None
    contact: Optional[Contact] = None


class DepartmentUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    code: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    parent_department: Optional[str] = None
    contact: Optional[Contact] = None


class UserCreateRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: Literal["student", "teacher", "admin"] = "student"
    department: Optional[str] = None
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    middle_name: Optional[str] = None
    contact_number: Optional[str] = None
    student_details: Optional[StudentDetails] = None
    staff_details: Optional[StaffDetails] = None


class UserUpdateRequest(BaseModel):
    email: Optional[EmailStr] = None
    role: Optional[Literal["student", "teacher", "admin"]] = None
    department: Optional[str] = None
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    middle_name: Optional[str] = None
    display_name: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    contact_number: Optional[str] = None
    address: Optional[Address] = None
    student_details: Optional[StudentDetails] = None
    staff_details: Optional[StaffDetails] = None
    preferences: Optional[Preferences] = None


class PermissionsRequest(BaseModel):
    permissions: List[str]


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class QueryCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)


class AnswerRequest(BaseModel):
    text: str


class TestCreateRequest(BaseModel):
    __test__ = False

    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    department: Optional[str] = None
    duration_minutes: int = Field(30, gt=0)
    passing_score: float = Field(50, ge=0, le=100)
    questions: List[Question] = Field(..., min_length=1)


class TestSubmitRequest(BaseModel):
    __test__ = False

    answers: List[Optional[int]]


class QRGenerateRequest(BaseModel):
    data: str = Field(..., min_length=1)
    label: Optional[str] = None


# -----------------------------
# Routes
# -----------------------------

@app.get("/")
def root():
    return {"message": "Clinical Education Platform API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is not None:
        response["database"] = "✅ Connected"
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth

@app.post(f"{API}/auth/register", status_code=201)
def register(req: RegisterRequest, request: Request, db=Depends(get_db)):
    user = AuthService(db, request_meta(request)).register(req.model_dump())
    return ok(user, "Registration successful. Please verify your email.")


@app.post(f"{API}/auth/login")
def login(req: LoginRequest, request: Request, db=Depends(get_db)):
    result = AuthService(db, request_meta(request)).login(req.email, req.password)
    return ok(result, "Logged in")


@app.post(f"{API}/auth/refresh-token")
def refresh_token(req: RefreshTokenRequest, request: Request, db=Depends(get_db)):
    return ok(AuthService(db, request_meta(request)).refresh(req.refresh_token), "Token refreshed")


@app.post(f"{API}/auth/logout")
def logout(req: LogoutRequest, request: Request, user=Depends(get_current_user), db=Depends(get_db)):
    AuthService(db, request_meta(request)).logout(req.refresh_token, user)
    return ok(None, "Logged out")


@app.get(f"{API}/auth/verify-email/{{token}}")
def verify_email(token: str, request: Request, db=Depends(get_db)):
    user = AuthService(db, request_meta(request)).verify_email(token)
    return ok(user, "Email verified. Your account is awaiting approval.")


@app.post(f"{API}/auth/request-password-reset")
def request_password_reset(req: PasswordResetRequest, request: Request, db=Depends(get_db)):
    AuthService(db, request_meta(request)).request_password_reset(req.email)
    return ok(None, "If the email is registered, a reset link has been sent")


@app.post(f"{API}/auth/reset-password")
def reset_password(req: ResetPasswordRequest, request: Request, db=Depends(get_db)):
    AuthService(db, request_meta(request)).reset_password(req.token, req.password)
    return ok(None, "Password has been reset")


@app.post(f"{API}/auth/change-password")
def change_password(req: ChangePasswordRequest, request: Request, user=Depends(get_current_user), db=Depends(get_db)):
    AuthService(db, request_meta(request)).change_password(user["_id"], req.current_password, req.new_password)
    return ok(None, "Password changed")


@app.get(f"{API}/auth/me")
def me(user=Depends(get_current_user), db=Depends(get_db)):
    return ok(public_user(AuthService(db).me(user["_id"])))


# Dashboard

@app.get(f"{API}/dashboard/system")
def system_stats(user=Depends(admin_user), db=Depends(get_db)):
    return ok(DashboardService(db).get_system_stats())


@app.get(f"{API}/dashboard/department/{{department_id}}")
def department_stats(department_id: str, user=Depends(teacher_user), db=Depends(get_db)):
    if user["role"] != "admin" and not same_id(user.get("department"), department_id):
        raise ApiError.forbidden("You can only view statistics for your own department")
    return ok(DashboardService(db).get_department_stats(department_id))


@app.get(f"{API}/dashboard/staff")
def staff_stats(user=Depends(teacher_user), db=Depends(get_db)):
    return ok(DashboardService(db).get_staff_stats(user["_id"]))


@app.get(f"{API}/dashboard/student")
def student_stats(user=Depends(any_user), db=Depends(get_db)):
    return ok(DashboardService(db).get_student_stats(user["_id"]))


@app.get(f"{API}/dashboard/analytics/case-completion")
def case_completion(departmentId: Optional[str] = None, user=Depends(teacher_user), db=Depends(get_db)):
    return ok(DashboardService(db).get_case_completion_stats(departmentId))


@app.get(f"{API}/dashboard/analytics/document-usage")
def document_usage(departmentId: Optional[str] = None, user=Depends(teacher_user), db=Depends(get_db)):
    return ok(DashboardService(db).get_document_usage_stats(departmentId))


# Cases

@app.get(f"{API}/cases")
def list_cases(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    department: Optional[str] = None,
    student: Optional[str] = None,
    assigned_to: Optional[str] = None,
    user=Depends(any_user),
    db=Depends(get_db),
):
    filters = {"status": status, "department": department, "student": student, "assigned_to": assigned_to}
    return ok_page(CaseService(db, request_meta(request)).list_cases(user, filters, page, limit))


@app.post(f"{API}/cases", status_code=201)
def create_case(req: CaseCreateRequest, request: Request, user=Depends(any_user), db=Depends(get_db)):
    case = CaseService(db, request_meta(request)).create_case(req.model_dump(), user)
    return ok(case, "Case created")


@app.get(f"{API}/cases/search")
def search_cases(q: str, limit: int = Query(20, ge=1, le=100), user=Depends(any_user), db=Depends(get_db)):
    return ok(CaseService(db).search_cases(q, user, limit))


@app.get(f"{API}/cases/number/{{case_number}}")
def get_case_by_number(case_number: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(CaseService(db).get_by_case_number(case_number, user))


@app.get(f"{API}/cases/{{case_id}}")
def get_case(case_id: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(CaseService(db).get_case(case_id, user))


@app.put(f"{API}/cases/{{case_id}}")
def update_case(case_id: str, req: CaseUpdateRequest, request: Request, user=Depends(any_user), db=Depends(get_db)):
    case = CaseService(db, request_meta(request)).update_case(case_id, req.model_dump(exclude_unset=True), user)
    return ok(case, "Case updated")


@app.delete(f"{API}/cases/{{case_id}}")
def delete_case(case_id: str, request: Request, user=Depends(any_user), db=Depends(get_db)):
    CaseService(db, request_meta(request)).delete_case(case_id, user)
    return ok(None, "Case deleted")


@app.post(f"{API}/cases/{{case_id}}/submit")
def submit_case(case_id: str, request: Request, user=Depends(any_user), db=Depends(get_db)):
    return ok(CaseService(db, request_meta(request)).submit_case(case_id, user), "Case submitted")


@app.post(f"{API}/cases/{{case_id}}/assign/{{staff_id}}")
def assign_case(case_id: str, staff_id: str, request: Request, user=Depends(teacher_user), db=Depends(get_db)):
    return ok(CaseService(db, request_meta(request)).assign_case(case_id, staff_id, user), "Case assigned")


@app.post(f"{API}/cases/{{case_id}}/review/start")
def start_review(case_id: str, request: Request, user=Depends(teacher_user), db=Depends(get_db)):
    return ok(CaseService(db, request_meta(request)).start_review(case_id, user), "Review started")


@app.post(f"{API}/cases/{{case_id}}/review/revision")
def request_revision(case_id: str, req: RevisionRequestBody, request: Request, user=Depends(teacher_user),
                     db=Depends(get_db)):
    case = CaseService(db, request_meta(request)).request_revision(case_id, req.description, user)
    return ok(case, "Revision requested")


@app.post(f"{API}/cases/{{case_id}}/evaluate")
def evaluate_case(case_id: str, req: EvaluationRequest, request: Request, user=Depends(teacher_user),
                  db=Depends(get_db)):
    case = CaseService(db, request_meta(request)).complete_review(case_id, req.model_dump(), user)
    return ok(case, "Review completed")


@app.get(f"{API}/cases/{{case_id}}/comments")
def list_comments(case_id: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(CaseService(db).list_comments(case_id, user))


@app.post(f"{API}/cases/{{case_id}}/comments", status_code=201)
def add_comment(case_id: str, req: CommentRequest, request: Request, user=Depends(any_user), db=Depends(get_db)):
    return ok(CaseService(db, request_meta(request)).add_comment(case_id, req.text, user), "Comment added")


@app.post(f"{API}/cases/{{case_id}}/attachments", status_code=201)
def add_attachment(case_id: str, req: AttachmentRequest, request: Request, user=Depends(any_user),
                   db=Depends(get_db)):
    case = CaseService(db, request_meta(request)).add_attachment(case_id, req.model_dump(), user)
    return ok(case, "Attachment added")


@app.get(f"{API}/cases/{{case_id}}/pdf")
def case_pdf(case_id: str, user=Depends(any_user), db=Depends(get_db)):
    pdf = CaseService(db).generate_pdf(case_id, user)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="case-{case_id}.pdf"'},
    )


# Documents

@app.get(f"{API}/documents")
def list_documents(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    status: Optional[str] = None,
    department: Optional[str] = None,
    tags: Optional[List[str]] = Query(None),
    user=Depends(any_user),
    db=Depends(get_db),
):
    filters = {
        "category": category,
        "subcategory": subcategory,
        "status": status,
        "department": department,
        "tags": tags,
    }
    return ok_page(DocumentService(db).list_documents(user, filters, page, limit))


@app.post(f"{API}/documents", status_code=201)
def create_document(req: DocumentCreateRequest, request: Request, user=Depends(teacher_user), db=Depends(get_db)):
    data = req.model_dump()
    if not data["metadata"].get("department"):
        data["metadata"].pop("department")
    document = DocumentService(db, request_meta(request)).create_document(data, user)
    return ok(document, "Document created")


@app.get(f"{API}/documents/search")
def search_documents(q: str, limit: int = Query(20, ge=1, le=100), user=Depends(any_user), db=Depends(get_db)):
    return ok(DocumentService(db).search_documents(q, user, limit))


@app.get(f"{API}/documents/{{document_id}}")
def get_document(document_id: str, request: Request, user=Depends(any_user), db=Depends(get_db)):
    meta = request_meta(request)
    return ok(DocumentService(db, meta).get_document(document_id, user, ip=meta["ip"]))


@app.put(f"{API}/documents/{{document_id}}")
def update_document(document_id: str, req: DocumentUpdateRequest, request: Request, user=Depends(teacher_user),
                    db=Depends(get_db)):
    document = DocumentService(db, request_meta(request)).update_document(
        document_id, req.model_dump(exclude_unset=True), user
    )
    return ok(document, "Document updated")


@app.delete(f"{API}/documents/{{document_id}}")
def delete_document(document_id: str, request: Request, user=Depends(teacher_user), db=Depends(get_db)):
    DocumentService(db, request_meta(request)).delete_document(document_id, user)
    return ok(None, "Document deleted")


@app.post(f"{API}/documents/{{document_id}}/versions", status_code=201)
def add_document_version(document_id: str, req: DocumentVersionRequest, request: Request, user=Depends(teacher_user),
                         db=Depends(get_db)):
    document = DocumentService(db, request_meta(request)).add_version(document_id, req.model_dump(), user)
    return ok(document, "New version uploaded")


@app.patch(f"{API}/documents/{{document_id}}/status")
def set_document_status(document_id: str, req: StatusRequest, request: Request, user=Depends(teacher_user),
                        db=Depends(get_db)):
    document = DocumentService(db, request_meta(request)).set_status(document_id, req.status, user)
    return ok(document, "Document status updated")


# Departments

@app.get(f"{API}/departments")
def list_departments(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    status: Optional[str] = None,
    parent: Optional[str] = None,
    user=Depends(any_user),
    db=Depends(get_db),
):
    return ok_page(DepartmentService(db).list_departments({"status": status, "parent": parent}, page, limit))


@app.post(f"{API}/departments", status_code=201)
def create_department(req: DepartmentCreateRequest, request: Request, user=Depends(admin_user), db=Depends(get_db)):
    department = DepartmentService(db, request_meta(request)).create_department(req.model_dump(), user)
    return ok(department, "Department created")


@app.get(f"{API}/departments/{{department_id}}")
def get_department(department_id: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(DepartmentService(db).get_department(department_id))


@app.get(f"{API}/departments/{{department_id}}/hierarchy")
def department_hierarchy(department_id: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(DepartmentService(db).get_hierarchy(department_id))


@app.put(f"{API}/departments/{{department_id}}")
def update_department(department_id: str, req: DepartmentUpdateRequest, request: Request, user=Depends(admin_user),
                      db=Depends(get_db)):
    department = DepartmentService(db, request_meta(request)).update_department(
        department_id, req.model_dump(exclude_unset=True), user
    )
    return ok(department, "Department updated")


@app.patch(f"{API}/departments/{{department_id}}/status")
def set_department_status(department_id: str, req: StatusRequest, request: Request, user=Depends(admin_user),
                          db=Depends(get_db)):
    department = DepartmentService(db, request_meta(request)).set_status(department_id, req.status, user)
    return ok(department, "Department status updated")


@app.post(f"{API}/departments/{{department_id}}/head/{{user_id}}")
def set_department_head(department_id: str, user_id: str, request: Request, user=Depends(admin_user),
                        db=Depends(get_db)):
    department = DepartmentService(db, request_meta(request)).set_head(department_id, user_id, user)
    return ok(department, "Department head updated")


@app.delete(f"{API}/departments/{{department_id}}")
def delete_department(department_id: str, request: Request, user=Depends(admin_user), db=Depends(get_db)):
    DepartmentService(db, request_meta(request)).delete_department(department_id, user)
    return ok(None, "Department deleted")


# Users

@app.get(f"{API}/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    role: Optional[str] = None,
    status: Optional[str] = None,
    department: Optional[str] = None,
    q: Optional[str] = None,
    user=Depends(teacher_user),
    db=Depends(get_db),
):
    filters = {"role": role, "status": status, "department": department}
    if q:
        return ok(UserService(db).search_users(q, {k: v for k, v in filters.items() if v and k != "department"}))
    return ok_page(UserService(db).list_users(filters, page, limit))


@app.post(f"{API}/users", status_code=201)
def create_user(req: UserCreateRequest, request: Request, user=Depends(admin_user), db=Depends(get_db)):
    return ok(UserService(db, request_meta(request)).create_user(req.model_dump(), user), "User created")


@app.get(f"{API}/users/{{user_id}}")
def get_user(user_id: str, user=Depends(any_user), db=Depends(get_db)):
    if user["role"] == "student" and not same_id(user["_id"], user_id):
        raise ApiError.forbidden("You can only view your own account")
    return ok(UserService(db).get_user(user_id))


@app.put(f"{API}/users/{{user_id}}")
def update_user(user_id: str, req: UserUpdateRequest, request: Request, user=Depends(any_user), db=Depends(get_db)):
    updated = UserService(db, request_meta(request)).update_user(user_id, req.model_dump(exclude_unset=True), user)
    return ok(updated, "User updated")


@app.delete(f"{API}/users/{{user_id}}")
def delete_user(user_id: str, request: Request, user=Depends(admin_user), db=Depends(get_db)):
    UserService(db, request_meta(request)).delete_user(user_id, user)
    return ok(None, "User deleted")


@app.patch(f"{API}/users/{{user_id}}/status")
def set_user_status(user_id: str, req: StatusRequest, request: Request, user=Depends(admin_user), db=Depends(get_db)):
    return ok(UserService(db, request_meta(request)).set_status(user_id, req.status, user), "User status updated")


@app.patch(f"{API}/users/{{user_id}}/permissions")
def set_user_permissions(user_id: str, req: PermissionsRequest, request: Request, user=Depends(admin_user),
                         db=Depends(get_db)):
    updated = UserService(db, request_meta(request)).set_permissions(user_id, req.permissions, user)
    return ok(updated, "User permissions updated")


@app.post(f"{API}/users/{{user_id}}/approve")
def approve_user(user_id: str, request: Request, user=Depends(admin_user), db=Depends(get_db)):
    return ok(UserService(db, request_meta(request)).approve_user(user_id, user), "User approved")


@app.post(f"{API}/users/{{user_id}}/reject")
def reject_user(user_id: str, req: RejectRequest, request: Request, user=Depends(admin_user), db=Depends(get_db)):
    return ok(UserService(db, request_meta(request)).reject_user(user_id, req.reason, user), "User rejected")


# Notifications

@app.get(f"{API}/notifications")
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread: bool = False,
    user=Depends(any_user),
    db=Depends(get_db),
):
    return ok_page(NotificationService(db).list_for_user(user["_id"], page, limit, unread))


@app.get(f"{API}/notifications/unread-count")
def unread_notifications(user=Depends(any_user), db=Depends(get_db)):
    return ok({"count": NotificationService(db).unread_count(user["_id"])})


@app.patch(f"{API}/notifications/read-all")
def read_all_notifications(user=Depends(any_user), db=Depends(get_db)):
    return ok({"updated": NotificationService(db).mark_all_as_read(user["_id"])}, "All notifications marked as read")


@app.patch(f"{API}/notifications/{{notification_id}}/read")
def read_notification(notification_id: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(NotificationService(db).mark_as_read(notification_id, user), "Notification marked as read")


# Activity logs

@app.get(f"{API}/logs")
def list_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[str] = Query(None, alias="user"),
    action: Optional[str] = None,
    entity: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user=Depends(admin_user),
    db=Depends(get_db),
):
    filters = {"user": user_id, "action": action, "entity": entity, "start": start, "end": end}
    return ok_page(LogService(db).list_logs(filters, page, limit))


@app.get(f"{API}/logs/user/{{user_id}}")
def user_logs(user_id: str, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
              user=Depends(admin_user), db=Depends(get_db)):
    return ok_page(LogService(db).get_user_logs(user_id, page, limit))


@app.get(f"{API}/logs/entity/{{entity}}/{{entity_id}}")
def entity_logs(entity: str, entity_id: str, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                user=Depends(admin_user), db=Depends(get_db)):
    return ok_page(LogService(db).get_entity_logs(entity, entity_id, page, limit))


# Drug-information queries

@app.get(f"{API}/queries")
def list_queries(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    category: Optional[str] = None,
    user=Depends(any_user),
    db=Depends(get_db),
):
    return ok_page(QueryService(db).list_queries(user, {"status": status, "category": category}, page, limit))


@app.post(f"{API}/queries", status_code=201)
def create_query(req: QueryCreateRequest, request: Request, user=Depends(any_user), db=Depends(get_db)):
    return ok(QueryService(db, request_meta(request)).create_query(req.model_dump(), user), "Query created")


@app.get(f"{API}/queries/{{query_id}}")
def get_query(query_id: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(QueryService(db).get_query(query_id, user))


@app.post(f"{API}/queries/{{query_id}}/answer")
def answer_query(query_id: str, req: AnswerRequest, request: Request, user=Depends(teacher_user), db=Depends(get_db)):
    return ok(QueryService(db, request_meta(request)).answer_query(query_id, req.text, user), "Query answered")


@app.post(f"{API}/queries/{{query_id}}/close")
def close_query(query_id: str, request: Request, user=Depends(any_user), db=Depends(get_db)):
    return ok(QueryService(db, request_meta(request)).close_query(query_id, user), "Query closed")


# Tests

@app.get(f"{API}/tests")
def list_tests(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), user=Depends(any_user),
               db=Depends(get_db)):
    return ok_page(TestService(db).list_tests(user, page, limit))


@app.post(f"{API}/tests", status_code=201)
def create_test(req: TestCreateRequest, request: Request, user=Depends(teacher_user), db=Depends(get_db)):
    return ok(TestService(db, request_meta(request)).create_test(req.model_dump(), user), "Test created")


@app.get(f"{API}/tests/{{test_id}}")
def get_test(test_id: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(TestService(db).get_test(test_id, user))


@app.post(f"{API}/tests/{{test_id}}/publish")
def publish_test(test_id: str, request: Request, user=Depends(teacher_user), db=Depends(get_db)):
    return ok(TestService(db, request_meta(request)).publish_test(test_id, user), "Test published")


@app.post(f"{API}/tests/{{test_id}}/submit", status_code=201)
def submit_test(test_id: str, req: TestSubmitRequest, request: Request, user=Depends(any_user), db=Depends(get_db)):
    attempt = TestService(db, request_meta(request)).submit_attempt(test_id, req.answers, user)
    return ok(attempt, "Test submitted")


@app.get(f"{API}/tests/{{test_id}}/results")
def test_results(test_id: str, user=Depends(any_user), db=Depends(get_db)):
    return ok(TestService(db).get_results(test_id, user))


# QR codes

@app.post(f"{API}/qrcodes/generate")
def generate_qr(req: QRGenerateRequest, user=Depends(any_user), db=Depends(get_db)):
    return ok(QRCodeService(db).generate(req.data, req.label), "QR code generated")


@app.get(f"{API}/qrcodes/resource/{{resource_type}}/{{resource_id}}")
def resource_qr(resource_type: str, resource_id: str, user=Depends(any_user), db=Depends(get_db)):
    png = QRCodeService(db).resource_png(resource_type, resource_id)
    return StreamingResponse(io.BytesIO(png), media_type="image/png")


@app.get(f"{API}/qrcodes/{{code}}/info")
def qr_info(code: str, db=Depends(get_db)):
    return ok(QRCodeService(db).resolve(code))


@app.get(f"{API}/qrcodes/{{code}}")
def qr_redirect(code: str, request: Request, db=Depends(get_db)):
    info = QRCodeService(db).resolve(code)
    if info["type"] == "document":
        meta = request_meta(request)
        DocumentService(db, meta).log_qr_access(info["id"], ip=meta["ip"])
    return RedirectResponse(info["redirect_url"], status_code=302)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
