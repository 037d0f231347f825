from bson import ObjectId
import pytest

from database import as_utc
from errors import ApiError, DatabaseError, NotFoundError, ValidationError
from repositories import (
    CaseRepository,
    DepartmentRepository,
    DocumentRepository,
    UserRepository,
    generate_number,
)


def make_case(db, student, **extra):
    return CaseRepository(db).create({"title": "Community acquired pneumonia", "student": student["_id"], **extra})


def test_generate_number_has_prefix_and_is_uppercase():
    number = generate_number("CASE")
    assert number.startswith("CASE-")
    assert len(number) == len("CASE-") + 10
    assert number == number.upper()


def test_find_by_id_missing_names_the_entity(db):
    missing = ObjectId()
    with pytest.raises(NotFoundError) as info:
        CaseRepository(db).find_by_id(missing)
    assert info.value.status_code == 404
    assert info.value.code == "NOT_FOUND_CASE"
    assert str(missing) in info.value.message
    assert info.value.entity == "Case"


def test_find_by_id_malformed_id_is_not_found(db):
    with pytest.raises(NotFoundError):
        DepartmentRepository(db).find_by_id("not-an-object-id")


def test_find_by_id_without_throw_returns_none(db):
    assert CaseRepository(db).find_by_id(ObjectId(), throw_if_not_found=False) is None


def test_create_rejects_invalid_data(db):
    with pytest.raises(ValidationError) as info:
        DepartmentRepository(db).create({"code": "CARD"})
    assert info.value.status_code == 422
    assert any(field["field"] == "name" for field in info.value.details["fields"])


def test_create_stamps_timestamps_and_case_number(db, student):
    case = make_case(db, student)
    assert case["case_number"].startswith("CASE-")
    assert case["status"] == "draft"
    assert case["created_at"] == case["updated_at"]


def test_soft_delete_keeps_the_case(db, student, admin):
    repo = CaseRepository(db)
    case = make_case(db, student)
    repo.delete_by_id(case["_id"], deleted_by=admin["_id"])

    stored = repo.find_by_id(case["_id"])
    assert stored["is_deleted"] is True
    assert stored["deleted_at"] is not None
    assert stored["deleted_by"] == admin["_id"]


def test_hard_delete_when_schema_has_no_soft_delete(db):
    repo = DepartmentRepository(db)
    department = repo.create({"name": "Cardiology", "code": "card"})
    assert department["code"] == "CARD"

    repo.delete_by_id(department["_id"])
    assert repo.find_by_id(department["_id"], throw_if_not_found=False) is None


def test_update_by_id_missing_raises_not_found(db):
    with pytest.raises(DatabaseError) as info:
        DepartmentRepository(db).update_by_id(ObjectId(), {"name": "Renamed"})
    assert info.value.status_code == 404


def test_update_status_appends_one_event_per_call(db, student, teacher):
    repo = CaseRepository(db)
    case = make_case(db, student)

    repo.update_status(case["_id"], "submitted", student["_id"])
    repo.update_status(case["_id"], "assigned", teacher["_id"], "Assigned")
    updated = repo.update_status(case["_id"], "in_review", teacher["_id"])

    history = updated["workflow_history"]
    assert [event["status"] for event in history] == ["submitted", "assigned", "in_review"]
    assert updated["status"] == "in_review"
    stamps = [as_utc(event["changed_at"]) for event in history]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)
    assert history[1]["comments"] == "Assigned"


def test_update_status_rejects_unknown_status(db, student):
    case = make_case(db, student)
    with pytest.raises(ValidationError):
        CaseRepository(db).update_status(case["_id"], "approved")


def test_paginate_meta(db):
    repo = DepartmentRepository(db)
    for index in range(12):
        repo.create({"name": f"Department {index}", "code": f"D{index}"})

    page = repo.paginate({}, page=2, limit=5)
    assert len(page["items"]) == 5
    assert page["meta"] == {
        "total_items": 12,
        "item_count": 5,
        "items_per_page": 5,
        "total_pages": 3,
        "current_page": 2,
    }
    assert repo.paginate({}, page=3, limit=5)["meta"]["item_count"] == 2


def test_search_by_case_number(db, student):
    repo = CaseRepository(db)
    case = make_case(db, student)
    make_case(db, student, title="Heart failure")

    found = repo.search(case["case_number"].lower())
    assert [c["_id"] for c in found] == [case["_id"]]


def test_search_short_query_matches_title(db, student):
    repo = CaseRepository(db)
    make_case(db, student, title="DKA in adolescent")
    make_case(db, student, title="Heart failure")

    found = repo.search("a i")
    assert [c["title"] for c in found] == ["DKA in adolescent"]


def test_search_skips_deleted_cases(db, student):
    repo = CaseRepository(db)
    case = make_case(db, student, title="AKI")
    repo.delete_by_id(case["_id"])
    assert repo.search("AKI") == []


def test_populate_replaces_references(db, student, teacher):
    repo = CaseRepository(db)
    case = make_case(db, student)
    repo.assign_to_staff(case["_id"], teacher["_id"])

    populated = repo.find_by_id(
        case["_id"], populate={"path": "assigned_to", "collection": "user", "select": ["email"]}
    )
    assert populated["assigned_to"]["email"] == teacher["email"]
    assert "password_hash" not in populated["assigned_to"]


def test_revision_requests_resolve_by_index(db, student, teacher):
    repo = CaseRepository(db)
    case = make_case(db, student)
    repo.add_revision_request(case["_id"], {"requested_by": teacher["_id"], "description": "Add renal labs"})

    updated = repo.resolve_revision_request(case["_id"], 0)
    assert updated["revision_requests"][0]["resolved_at"] is not None
    with pytest.raises(NotFoundError):
        repo.resolve_revision_request(case["_id"], 3)


def test_document_add_version_archives_current_file(db, teacher):
    repo = DocumentRepository(db)
    document = repo.create(
        {
            "title": "Vancomycin dosing",
            "category": "protocol",
            "file": {"filename": "v1.pdf", "path": "/files/v1.pdf", "size": 10},
            "metadata": {"author": teacher["_id"]},
        }
    )
    assert document["document_number"].startswith("DOC-")
    assert document["qr_code"]["code"]
    assert document["qr_code"]["url"].endswith(f"/qrcodes/{document['qr_code']['code']}")

    updated = repo.add_version(
        document["_id"], {"filename": "v2.pdf", "path": "/files/v2.pdf", "uploaded_by": teacher["_id"]}
    )
    assert updated["metadata"]["version"] == 2
    assert updated["file"]["filename"] == "v2.pdf"
    assert updated["versions"][0]["version"] == 1
    assert updated["versions"][0]["filename"] == "v1.pdf"
    assert updated["versions"][0]["change_notes"] == "Version update"


def test_user_hidden_fields(db, student):
    users = UserRepository(db)
    assert "password_hash" not in users.find_by_id(student["_id"])
    assert "password_hash" not in student
    assert users.find_by_email_with_password(student["email"].upper())["password_hash"]


def test_create_user_with_profile(db, student):
    profile = UserRepository(db).profiles.find_one({"user": student["_id"]})
    assert profile["first_name"] == "Student"
    assert student["profile"]["_id"] == profile["_id"]


def test_create_user_with_invalid_profile_is_a_transaction_error(db, transactions):
    with pytest.raises(DatabaseError) as info:
        UserRepository(db).create_user_with_profile(
            {"email": "nurse@medschool.org", "password_hash": "x", "role": "student"}, {"first_name": "Only"}
        )
    assert info.value.code == "DATABASE_TRANSACTION_ERROR"

    # The profile failure happened inside the transaction, so it was aborted
    [outcome] = transactions
    assert outcome["aborted"] is True
    assert outcome["committed"] is False
    assert isinstance(outcome["error"], ValidationError)


def test_create_user_with_profile_commits(db, transactions):
    UserRepository(db).create_user_with_profile(
        {"email": "pharmacist@medschool.org", "password_hash": "x", "role": "student"},
        {"first_name": "Ada", "last_name": "L"},
    )
    assert [outcome["committed"] for outcome in transactions] == [True]


def test_create_user_with_duplicate_email_stays_a_conflict(db, transactions):
    users = UserRepository(db)
    users.collection.create_index("email", unique=True)
    profile = {"first_name": "Ada", "last_name": "L"}
    users.create_user_with_profile({"email": "ada@medschool.org", "password_hash": "x", "role": "student"}, profile)

    with pytest.raises(ApiError) as info:
        users.create_user_with_profile({"email": "Ada@MedSchool.org", "password_hash": "x", "role": "student"}, profile)
    assert info.value.status_code == 409
    assert info.value.code == "CONFLICT_RESOURCE_EXISTS"
    assert transactions[-1]["aborted"] is True


def test_update_user_with_profile_upserts_profile(db):
    users = UserRepository(db)
    user = users.create({"email": "noprofile@medschool.org", "password_hash": "x", "role": "student"})

    updated = users.update_user_with_profile(user["_id"], {"status": "active"}, {"first_name": "Ada", "last_name": "L"})
    assert updated["status"] == "active"
    assert updated["profile"]["first_name"] == "Ada"
    assert users.profiles.count({"user": user["_id"]}) == 1


def test_record_failed_login_locks_after_five(db, student):
    users = UserRepository(db)
    for _ in range(4):
        user = users.record_failed_login(student["_id"])
        assert user["failed_login_attempts"].get("locked_until") is None
    user = users.record_failed_login(student["_id"])
    assert user["failed_login_attempts"]["count"] == 5
    assert user["failed_login_attempts"]["locked_until"] is not None

    reset = users.reset_failed_logins(student["_id"])
    assert reset["failed_login_attempts"]["count"] == 0


def test_department_counts(db, make_user):
    departments = DepartmentRepository(db)
    department = departments.create({"name": "Pharmacy", "code": "PHARM"})
    make_user("teacher", department=department["_id"])
    make_user("student", department=department["_id"])
    make_user("student", department=department["_id"])

    result = departments.get_department_with_counts(department["_id"])
    assert result["staff_count"] == 1
    assert result["student_count"] == 2


def test_duplicate_key_becomes_conflict(db):
    departments = DepartmentRepository(db)
    departments.collection.create_index("code", unique=True)
    departments.create({"name": "Cardiology", "code": "CARD"})
    with pytest.raises(ApiError) as info:
        departments.create({"name": "Cardiology 2", "code": "card"})
    assert info.value.status_code == 409
