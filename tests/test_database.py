from unittest.mock import MagicMock

import pytest

from database import as_utc, create_document, get_documents, start_transaction
from schemas import Department


def mock_client():
    mongo = MagicMock()
    session = mongo.start_session.return_value.__enter__.return_value
    return mongo, session


def test_start_transaction_commits_on_clean_exit():
    mongo, session = mock_client()
    with start_transaction(mongo) as yielded:
        assert yielded is session
    session.start_transaction.assert_called_once()
    session.commit_transaction.assert_called_once()
    session.abort_transaction.assert_not_called()


def test_start_transaction_aborts_and_reraises():
    mongo, session = mock_client()
    with pytest.raises(RuntimeError):
        with start_transaction(mongo):
            raise RuntimeError("profile insert failed")
    session.abort_transaction.assert_called_once()
    session.commit_transaction.assert_not_called()
    # The session itself is always released
    mongo.start_session.return_value.__exit__.assert_called_once()


def test_create_document_stamps_timestamps(db):
    stored = create_document("department", {"name": "Pharmacy", "code": "PHAR"}, database=db)
    assert stored["_id"]
    assert stored["created_at"] == stored["updated_at"]
    saved = db["department"].find_one({"_id": stored["_id"]})
    assert as_utc(saved["created_at"]) == as_utc(stored["created_at"])


def test_create_document_accepts_models(db):
    stored = create_document("department", Department(name="Oncology", code="ONC"), database=db)
    assert db["department"].find_one({"_id": stored["_id"]})["code"] == "ONC"


def test_get_documents_filters_and_limits(db):
    for code in ("A", "B", "C"):
        create_document("department", {"name": code, "code": code, "status": "active"}, database=db)
    create_document("department", {"name": "Old", "code": "OLD", "status": "inactive"}, database=db)

    active = get_documents("department", {"status": "active"}, database=db)
    assert sorted(d["code"] for d in active) == ["A", "B", "C"]
    assert len(get_documents("department", {"status": "active"}, 2, database=db)) == 2
    assert [d["code"] for d in get_documents("department", sort=[("code", -1)], limit=1, database=db)] == ["OLD"]
