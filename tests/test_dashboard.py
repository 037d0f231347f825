from datetime import datetime, timedelta, timezone

from bson import ObjectId
import pytest

from dashboard import DashboardService, completion_days, gather, months_ago, percent
from database import now_utc
from errors import ValidationError
from repositories import CaseRepository, DepartmentRepository, DocumentRepository, LogRepository


def event(status, at):
    return {"status": status, "changed_at": at}


def test_percent_formats_one_decimal():
    assert percent(1, 3) == "33.3"
    assert percent(0, 0) == "0.0"
    assert percent(2, 2) == "100.0"


def test_months_ago_clamps_to_month_end():
    assert months_ago(datetime(2024, 8, 31, tzinfo=timezone.utc), 6) == datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert months_ago(datetime(2024, 3, 15, tzinfo=timezone.utc), 6) == datetime(2023, 9, 15, tzinfo=timezone.utc)


def test_gather_keeps_order():
    assert gather(lambda: 1, lambda: 2, lambda: 3) == [1, 2, 3]


def test_completion_days_measures_from_last_submission():
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    history = [
        event("draft", start),
        event("submitted", start + timedelta(days=1)),
        event("revision_requested", start + timedelta(days=2)),
        event("submitted", start + timedelta(days=4)),
        event("completed", start + timedelta(days=5)),
    ]
    assert completion_days(history) == pytest.approx(1.0)


def test_completion_days_needs_both_events():
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert completion_days([event("submitted", start)]) is None
    assert completion_days([event("completed", start)]) is None


def test_case_completion_stats_empty(db):
    assert DashboardService(db).get_case_completion_stats() == []


def test_case_completion_stats_single_completed_case(db, student, teacher):
    cases = CaseRepository(db)
    case = cases.create({"title": "Sepsis", "student": student["_id"]})
    cases.update_status(case["_id"], "submitted", student["_id"])
    cases.update_status(case["_id"], "completed", teacher["_id"])

    stats = DashboardService(db).get_case_completion_stats()
    assert len(stats) == 1
    bucket = stats[0]
    assert bucket["month"] == now_utc().strftime("%Y-%m")
    assert bucket["total"] == 1
    assert bucket["completed"] == 1
    assert bucket["completion_rate"] == "100.0"
    assert bucket["avg_completion_time"] >= 0


def test_case_completion_stats_average(db, student):
    cases = CaseRepository(db)
    start = now_utc() - timedelta(days=10)
    cases.create(
        {
            "title": "Revised",
            "student": student["_id"],
            "status": "completed",
            "workflow_history": [
                event("submitted", start),
                event("revision_requested", start + timedelta(days=1)),
                event("submitted", start + timedelta(days=2)),
                event("completed", start + timedelta(days=4)),
            ],
        }
    )
    cases.create({"title": "Still a draft", "student": student["_id"]})

    [bucket] = DashboardService(db).get_case_completion_stats()
    assert bucket["total"] == 2
    assert bucket["completed"] == 1
    assert bucket["completion_rate"] == "50.0"
    assert bucket["avg_completion_time"] == 2.0


def test_case_completion_stats_rejects_bad_department(db):
    with pytest.raises(ValidationError):
        DashboardService(db).get_case_completion_stats("nope")


def test_system_stats(db, student, teacher, admin):
    cases = CaseRepository(db)
    cases.create({"title": "Draft", "student": student["_id"]})
    cases.create({"title": "Waiting", "student": student["_id"], "status": "submitted"})
    deleted = cases.create({"title": "Gone", "student": student["_id"]})
    cases.delete_by_id(deleted["_id"])

    logs = LogRepository(db)
    for action in ("login", "view", "logout"):
        logs.create_log({"user": student["_id"], "action": action, "entity": "user", "description": action})
    logs.create_log({"user": teacher["_id"], "action": "login", "entity": "user", "description": "login"})

    stats = DashboardService(db).get_system_stats()
    assert stats["users"] == {"total": 3, "active": 3, "staff": 1, "students": 1, "recently_active": 2}
    assert stats["cases"]["total"] == 2
    assert stats["cases"]["active"] == 1
    assert stats["cases"]["status_distribution"]["draft"] == 1
    assert stats["cases"]["status_distribution"]["submitted"] == 1
    assert stats["cases"]["status_distribution"]["completed"] == 0
    assert stats["documents"]["total"] == 0
    assert stats["departments"]["total"] == 0


def test_department_stats_case_distribution(db, make_user):
    department = DepartmentRepository(db).create({"name": "Pharmacy", "code": "PHARM"})
    teacher = make_user("teacher", department=department["_id"])
    student = make_user("student", department=department["_id"])
    cases = CaseRepository(db)
    for title in ("One", "Two"):
        case = cases.create({"title": title, "student": student["_id"], "department": department["_id"]})
        cases.assign_to_staff(case["_id"], teacher["_id"])
        cases.update_status(case["_id"], "assigned", teacher["_id"])
    cases.create({"title": "Done", "student": student["_id"], "department": department["_id"], "status": "completed"})

    stats = DashboardService(db).get_department_stats(str(department["_id"]))
    assert stats["staff"]["total"] == 1
    assert stats["students"]["total"] == 1
    assert stats["cases"] == {"total": 3, "pending": 2, "completed": 1}
    assert stats["staff"]["case_distribution"] == [
        {"id": str(teacher["_id"]), "email": teacher["email"], "count": 2}
    ]


def test_student_stats(db, student, teacher):
    cases = CaseRepository(db)
    cases.create({"title": "Draft", "student": student["_id"]})
    done = cases.create({"title": "Done", "student": student["_id"], "status": "completed"})
    cases.assign_to_staff(done["_id"], teacher["_id"])

    stats = DashboardService(db).get_student_stats(student["_id"])
    assert stats["cases"]["draft"] == 1
    assert stats["cases"]["completed"] == 1
    assert stats["cases"]["total"] == 2
    assert stats["cases"]["completion_rate"] == "50.0"
    by_title = {case["title"]: case for case in stats["recent_cases"]}
    assert by_title["Done"]["assigned_to"] == teacher["email"]
    assert by_title["Draft"]["assigned_to"] == "Unassigned"


def test_staff_stats(db, student, teacher):
    cases = CaseRepository(db)
    case = cases.create({"title": "Review me", "student": student["_id"], "status": "in_review"})
    cases.assign_to_staff(case["_id"], teacher["_id"])

    stats = DashboardService(db).get_staff_stats(teacher["_id"])
    assert stats["cases"] == {"assigned": 0, "in_review": 1, "completed": 0, "total": 1}
    assert stats["recent_cases"][0]["student"] == student["email"]


def test_document_usage_stats(db, teacher):
    documents = DocumentRepository(db)

    def create(title, category, accesses):
        document = documents.create(
            {
                "title": title,
                "category": category,
                "file": {"filename": f"{title}.pdf", "path": f"/files/{title}.pdf"},
                "metadata": {"author": teacher["_id"]},
            }
        )
        for _ in range(accesses):
            documents.log_access(document["_id"], {"user": teacher["_id"], "access_method": "direct"})
        return document

    create("heparin", "protocol", 3)
    create("insulin", "protocol", 0)
    create("formulary", "reference", 1)

    stats = DashboardService(db).get_document_usage_stats()
    assert [entry["category"] for entry in stats] == ["protocol", "reference"]
    protocol = stats[0]
    assert protocol["document_count"] == 2
    assert protocol["total_accesses"] == 3
    assert protocol["avg_accesses_per_document"] == "1.5"
    assert [doc["title"] for doc in protocol["top_documents"]] == ["heparin", "insulin"]


def test_document_usage_stats_unknown_department_is_empty(db):
    assert DashboardService(db).get_document_usage_stats(str(ObjectId())) == []
