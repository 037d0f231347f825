"""
Role-scoped dashboard statistics and time-bucketed analytics.

Independent counts run concurrently on a small thread pool; they are not read
from a single snapshot, which is fine for dashboard figures.
"""
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pymongo import DESCENDING

from database import as_utc, now_utc
from errors import validate_object_id
from repositories import CaseRepository, DepartmentRepository, DocumentRepository, LogRepository, UserRepository
from schemas import CASE_ACTIVE_STATUS, CASE_STATUS

logger = logging.getLogger(__name__)

MAX_WORKERS = 8
RECENT_CASES = 5
TOP_DOCUMENTS = 5
COMPLETION_WINDOW_MONTHS = 6


def gather(*calls: Callable):
    """Run zero-argument callables concurrently and return their results in order."""
    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(calls) or 1)) as pool:
        futures = [pool.submit(call) for call in calls]
        return [future.result() for future in futures]


def months_ago(moment: datetime, months: int) -> datetime:
    month_index = moment.year * 12 + moment.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    # Clamp e.g. 31 August back to 28/29 February
    for day in range(moment.day, 0, -1):
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return moment.replace(year=year, month=month, day=1)


def percent(part: int, whole: int) -> str:
    return "%.1f" % (part / whole * 100 if whole else 0)


def completion_days(history: List[dict]) -> Optional[float]:
    """Days from the last submission before the first completion to that completion.

    Cases that went through revision cycles are measured from their final
    resubmission. Returns None when either event is missing.
    """
    completed_at = None
    for event in history:
        if event.get("status") == "completed":
            completed_at = as_utc(event.get("changed_at"))
            break
    if completed_at is None:
        return None

    submitted_at = None
    for event in history:
        changed_at = as_utc(event.get("changed_at"))
        if event.get("status") == "submitted" and changed_at is not None and changed_at <= completed_at:
            if submitted_at is None or changed_at > submitted_at:
                submitted_at = changed_at
    if submitted_at is None:
        return None
    return (completed_at - submitted_at) / timedelta(days=1)


def _email(value, default: str) -> str:
    if isinstance(value, dict) and value.get("email"):
        return value["email"]
    return default


class DashboardService:

    def __init__(self, db):
        self.users = UserRepository(db)
        self.cases = CaseRepository(db)
        self.documents = DocumentRepository(db)
        self.departments = DepartmentRepository(db)
        self.logs = LogRepository(db)

    def _case_count(self, **filter_dict):
        return lambda: self.cases.count({"is_deleted": {"$ne": True}, **filter_dict})

    def get_system_stats(self) -> dict:
        one_day_ago = now_utc() - timedelta(days=1)
        counts = gather(
            lambda: self.users.count(),
            lambda: self.users.count({"status": "active"}),
            lambda: self.users.count({"role": "teacher"}),
            lambda: self.users.count({"role": "student"}),
            lambda: len(self.logs.distinct("user", {"timestamp": {"$gte": one_day_ago}, "user": {"$ne": None}})),
            self._case_count(),
            self._case_count(status={"$in": list(CASE_ACTIVE_STATUS)}),
            lambda: self.documents.count({"is_deleted": {"$ne": True}}),
            lambda: self.departments.count(),
            *[self._case_count(status=status) for status in CASE_STATUS],
        )
        (total_users, active_users, staff, students, recently_active,
         total_cases, active_cases, total_documents, total_departments) = counts[:9]

        return {
            "users": {
                "total": total_users,
                "active": active_users,
                "staff": staff,
                "students": students,
                "recently_active": recently_active,
            },
            "cases": {
                "total": total_cases,
                "active": active_cases,
                "status_distribution": dict(zip(CASE_STATUS, counts[9:])),
            },
            "documents": {"total": total_documents},
            "departments": {"total": total_departments},
        }

    def get_department_stats(self, department_id) -> dict:
        department = validate_object_id(department_id, "department_id")
        (staff, students, total_cases, pending_cases, completed_cases, total_documents, assigned_cases) = gather(
            lambda: self.users.count({"role": "teacher", "department": department}),
            lambda: self.users.count({"role": "student", "department": department}),
            self._case_count(department=department),
            self._case_count(department=department, status={"$in": list(CASE_ACTIVE_STATUS)}),
            self._case_count(department=department, status="completed"),
            lambda: self.documents.count({"metadata.department": department, "is_deleted": {"$ne": True}}),
            lambda: self.cases.find_all(
                {"department": department, "status": {"$in": ["assigned", "in_review"]}, "is_deleted": {"$ne": True}},
                projection=["assigned_to"],
                populate={"path": "assigned_to", "collection": "user", "select": ["email"]},
            ),
        )

        by_staff: Dict[str, dict] = {}
        for case in assigned_cases:
            assignee = case.get("assigned_to")
            if not isinstance(assignee, dict):
                continue
            staff_id = str(assignee["_id"])
            entry = by_staff.setdefault(staff_id, {"id": staff_id, "email": assignee.get("email"), "count": 0})
            entry["count"] += 1

        return {
            "staff": {"total": staff, "case_distribution": list(by_staff.values())},
            "students": {"total": students},
            "cases": {"total": total_cases, "pending": pending_cases, "completed": completed_cases},
            "documents": {"total": total_documents},
        }

    def get_staff_stats(self, staff_id) -> dict:
        staff = validate_object_id(staff_id, "staff_id")
        assigned, in_review, completed, total, recent = gather(
            self._case_count(assigned_to=staff, status="assigned"),
            self._case_count(assigned_to=staff, status="in_review"),
            self._case_count(assigned_to=staff, status="completed"),
            self._case_count(assigned_to=staff),
            lambda: self.cases.find_all(
                {"assigned_to": staff, "is_deleted": {"$ne": True}},
                sort={"updated_at": DESCENDING},
                limit=RECENT_CASES,
                populate={"path": "student", "collection": "user", "select": ["email"]},
            ),
        )
        return {
            "cases": {"assigned": assigned, "in_review": in_review, "completed": completed, "total": total},
            "recent_cases": [
                {
                    "id": case["_id"],
                    "case_number": case.get("case_number"),
                    "title": case.get("title"),
                    "status": case.get("status"),
                    "student": _email(case.get("student"), "Unknown"),
                    "updated_at": case.get("updated_at"),
                }
                for case in recent
            ],
        }

    def get_student_stats(self, student_id) -> dict:
        student = validate_object_id(student_id, "student_id")
        draft, submitted, revision_requested, completed, total, recent = gather(
            self._case_count(student=student, status="draft"),
            self._case_count(student=student, status={"$in": list(CASE_ACTIVE_STATUS)}),
            self._case_count(student=student, status="revision_requested"),
            self._case_count(student=student, status="completed"),
            self._case_count(student=student),
            lambda: self.cases.find_all(
                {"student": student, "is_deleted": {"$ne": True}},
                sort={"updated_at": DESCENDING},
                limit=RECENT_CASES,
                populate={"path": "assigned_to", "collection": "user", "select": ["email"]},
            ),
        )
        return {
            "cases": {
                "draft": draft,
                "submitted": submitted,
                "revision_requested": revision_requested,
                "completed": completed,
                "total": total,
                "completion_rate": percent(completed, total),
            },
            "recent_cases": [
                {
                    "id": case["_id"],
                    "case_number": case.get("case_number"),
                    "title": case.get("title"),
                    "status": case.get("status"),
                    "assigned_to": _email(case.get("assigned_to"), "Unassigned"),
                    "updated_at": case.get("updated_at"),
                }
                for case in recent
            ],
        }

    def get_case_completion_stats(self, department_id=None) -> List[dict]:
        filter_dict = {
            "created_at": {"$gte": months_ago(now_utc(), COMPLETION_WINDOW_MONTHS)},
            "is_deleted": {"$ne": True},
        }
        if department_id:
            filter_dict["department"] = validate_object_id(department_id, "department_id")
        cases = self.cases.find_all(filter_dict, projection=["status", "created_at", "workflow_history"])

        months: Dict[str, dict] = defaultdict(lambda: {"total": 0, "completed": 0, "days": []})
        for case in cases:
            bucket = months[as_utc(case["created_at"]).strftime("%Y-%m")]
            bucket["total"] += 1
            if case.get("status") != "completed":
                continue
            bucket["completed"] += 1
            days = completion_days(case.get("workflow_history") or [])
            if days is not None:
                bucket["days"].append(days)

        return [
            {
                "month": month,
                "total": bucket["total"],
                "completed": bucket["completed"],
                "completion_rate": percent(bucket["completed"], bucket["total"]),
                "avg_completion_time": round(sum(bucket["days"]) / len(bucket["days"]), 2) if bucket["days"] else 0,
            }
            for month, bucket in sorted(months.items())
        ]

    def get_document_usage_stats(self, department_id=None) -> List[dict]:
        filter_dict = {"is_deleted": {"$ne": True}}
        if department_id:
            filter_dict["metadata.department"] = validate_object_id(department_id, "department_id")
        documents = self.documents.find_all(filter_dict, projection=["category", "title", "access_logs", "created_at"])

        categories: Dict[str, List[dict]] = defaultdict(list)
        for document in documents:
            categories[document.get("category") or "Uncategorized"].append(
                {
                    "id": document["_id"],
                    "title": document.get("title"),
                    "access_count": len(document.get("access_logs") or []),
                    "created_at": document.get("created_at"),
                }
            )

        result = []
        for category, docs in sorted(categories.items()):
            total_accesses = sum(d["access_count"] for d in docs)
            result.append(
                {
                    "category": category,
                    "document_count": len(docs),
                    "total_accesses": total_accesses,
                    "avg_accesses_per_document": "%.1f" % (total_accesses / len(docs)),
                    "top_documents": sorted(docs, key=lambda d: d["access_count"], reverse=True)[:TOP_DOCUMENTS],
                }
            )
        return result
