import base64

from bson import ObjectId

from repositories import DocumentRepository

API = "/api/v1"


def create_document(client, headers, visibility="public", **extra):
    payload = {
        "title": "Heparin nomogram",
        "category": "protocol",
        "file": {"filename": "heparin.pdf", "path": "/files/heparin.pdf", "content_type": "application/pdf"},
        "metadata": {"tags": ["anticoagulation"]},
        "access_control": {"visibility": visibility},
        **extra,
    }
    response = client.post(f"{API}/documents", json=payload, headers=headers)
    assert response.status_code == 201
    return response.json()["data"]


def test_students_cannot_create_documents(client, student, auth):
    response = client.post(
        f"{API}/documents",
        json={"title": "x", "category": "c", "file": {"filename": "a", "path": "/a"}},
        headers=auth(student),
    )
    assert response.status_code == 403


def test_create_and_read_document_logs_access(client, db, teacher, student, auth):
    document = create_document(client, auth(teacher))
    assert document["document_number"].startswith("DOC-")
    assert document["metadata"]["author"] == str(teacher["_id"])

    response = client.get(f"{API}/documents/{document['id']}", headers=auth(student))
    assert response.status_code == 200
    assert response.json()["data"]["metadata"]["author"]["email"] == teacher["email"]

    logs = DocumentRepository(db).find_by_id(document["id"])["access_logs"]
    assert len(logs) == 1
    assert logs[0]["access_method"] == "direct"
    assert logs[0]["user"] == student["_id"]


def test_private_document_access(client, teacher, student, admin, auth):
    document = create_document(client, auth(teacher), visibility="private")
    assert client.get(f"{API}/documents/{document['id']}", headers=auth(student)).status_code == 403
    assert client.get(f"{API}/documents/{document['id']}", headers=auth(teacher)).status_code == 200
    assert client.get(f"{API}/documents/{document['id']}", headers=auth(admin)).status_code == 200

    listed = client.get(f"{API}/documents", headers=auth(student)).json()
    assert listed["data"] == []
    assert listed["meta"]["total_items"] == 0


def test_restricted_document_by_role(client, teacher, student, auth):
    document = create_document(
        client, auth(teacher), access_control={"visibility": "restricted", "allowed_roles": ["student"]}
    )
    assert client.get(f"{API}/documents/{document['id']}", headers=auth(student)).status_code == 200


def test_list_documents_filters(client, teacher, student, auth):
    create_document(client, auth(teacher))
    create_document(client, auth(teacher), title="Formulary", category="reference", metadata={"tags": ["drugs"]})

    listed = client.get(f"{API}/documents", params={"category": "reference"}, headers=auth(student)).json()
    assert [d["title"] for d in listed["data"]] == ["Formulary"]
    assert "access_logs" not in listed["data"][0]

    tagged = client.get(f"{API}/documents", params={"tags": "anticoagulation"}, headers=auth(student)).json()
    assert [d["title"] for d in tagged["data"]] == ["Heparin nomogram"]


def test_search_documents_by_number(client, teacher, student, auth):
    document = create_document(client, auth(teacher))
    response = client.get(f"{API}/documents/search", params={"q": document["document_number"]}, headers=auth(student))
    assert [d["id"] for d in response.json()["data"]] == [document["id"]]


def test_update_requires_author(client, teacher, make_user, auth):
    document = create_document(client, auth(teacher))
    other = make_user("teacher")
    response = client.put(f"{API}/documents/{document['id']}", json={"title": "Mine now"}, headers=auth(other))
    assert response.status_code == 403

    response = client.put(
        f"{API}/documents/{document['id']}",
        json={"title": "Heparin nomogram v2", "metadata": {"tags": ["heparin"]}},
        headers=auth(teacher),
    )
    data = response.json()["data"]
    assert data["title"] == "Heparin nomogram v2"
    assert data["metadata"]["tags"] == ["heparin"]
    assert data["metadata"]["author"] == str(teacher["_id"])


def test_upload_new_version(client, teacher, auth):
    document = create_document(client, auth(teacher))
    response = client.post(
        f"{API}/documents/{document['id']}/versions",
        json={"filename": "heparin-v2.pdf", "path": "/files/heparin-v2.pdf", "change_notes": "New targets"},
        headers=auth(teacher),
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["metadata"]["version"] == 2
    assert data["versions"][0]["change_notes"] == "New targets"


def test_status_and_delete(client, teacher, auth):
    document = create_document(client, auth(teacher))
    response = client.patch(f"{API}/documents/{document['id']}/status", json={"status": "archived"}, headers=auth(teacher))
    assert response.json()["data"]["status"] == "archived"
    response = client.patch(f"{API}/documents/{document['id']}/status", json={"status": "lost"}, headers=auth(teacher))
    assert response.status_code == 422

    assert client.delete(f"{API}/documents/{document['id']}", headers=auth(teacher)).status_code == 200
    assert client.get(f"{API}/documents/{document['id']}", headers=auth(teacher)).status_code == 404


def test_qr_redirect_logs_access(client, db, teacher, auth):
    document = create_document(client, auth(teacher))
    code = document["qr_code"]["code"]

    info = client.get(f"{API}/qrcodes/{code}/info").json()["data"]
    assert info["type"] == "document"
    assert info["id"] == document["id"]

    response = client.get(f"{API}/qrcodes/{code}", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"].endswith(f"/documents/view/{document['id']}")

    logs = DocumentRepository(db).find_by_id(document["id"])["access_logs"]
    assert [log["access_method"] for log in logs] == ["qrcode"]


def test_unknown_qr_code(client):
    response = client.get(f"{API}/qrcodes/does-not-exist", follow_redirects=False)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND_QRCODE"


def test_resource_png(client, teacher, auth):
    document = create_document(client, auth(teacher))
    response = client.get(f"{API}/qrcodes/resource/document/{document['id']}", headers=auth(teacher))
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")


def test_resource_png_backfills_missing_code(client, db, teacher, auth):
    document = create_document(client, auth(teacher))
    DocumentRepository(db).update_by_id(document["id"], {"qr_code": None})
    response = client.get(f"{API}/qrcodes/resource/document/{document['id']}", headers=auth(teacher))
    assert response.status_code == 200
    assert DocumentRepository(db).find_by_id(document["id"])["qr_code"]["code"]


def test_resource_qr_for_unreviewed_case(client, db, student, auth):
    case = client.post(f"{API}/cases", json={"title": "Pending"}, headers=auth(student)).json()["data"]
    response = client.get(f"{API}/qrcodes/resource/case/{case['id']}", headers=auth(student))
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "CASE_REPORT_NOT_GENERATED"

    response = client.get(f"{API}/qrcodes/resource/patient/{ObjectId()}", headers=auth(student))
    assert response.status_code == 422


def test_generate_qr(client, student, auth):
    response = client.post(f"{API}/qrcodes/generate", json={"data": "https://example.org"}, headers=auth(student))
    image = response.json()["data"]["image"]
    assert image.startswith("data:image/png;base64,")
    assert base64.b64decode(image.split(",", 1)[1]).startswith(b"\x89PNG")


def test_update_stores_references_as_object_ids(client, db, teacher, student, admin, make_user, auth):
    department = client.post(f"{API}/departments", json={"name": "Pharmacy", "code": "phar"}, headers=auth(admin))
    department_id = department.json()["data"]["id"]
    document = create_document(client, auth(teacher), visibility="private")

    response = client.put(
        f"{API}/documents/{document['id']}",
        json={
            "metadata": {"department": department_id},
            "access_control": {"visibility": "restricted", "allowed_users": [str(student["_id"])]},
        },
        headers=auth(teacher),
    )
    assert response.status_code == 200

    stored = DocumentRepository(db).find_by_id(document["id"])
    assert stored["metadata"]["department"] == ObjectId(department_id)
    assert stored["metadata"]["author"] == teacher["_id"]
    assert stored["metadata"]["tags"] == ["anticoagulation"]
    assert stored["access_control"]["allowed_users"] == [student["_id"]]

    stats = client.get(f"{API}/dashboard/department/{department_id}", headers=auth(admin)).json()["data"]
    assert stats["documents"]["total"] == 1

    listed = client.get(f"{API}/documents", params={"department": department_id}, headers=auth(student)).json()
    assert [d["id"] for d in listed["data"]] == [document["id"]]
    outsider = make_user("student")
    assert client.get(f"{API}/documents", headers=auth(outsider)).json()["data"] == []


def test_update_rejects_malformed_reference(client, teacher, auth):
    document = create_document(client, auth(teacher))
    response = client.put(
        f"{API}/documents/{document['id']}", json={"metadata": {"department": "pharmacy"}}, headers=auth(teacher)
    )
    assert response.status_code == 422


def test_update_rejects_null_required_fields(client, db, teacher, auth):
    document = create_document(client, auth(teacher))
    for body in ({"metadata": None}, {"access_control": None}, {"title": None}, {"category": None}):
        response = client.put(f"{API}/documents/{document['id']}", json=body, headers=auth(teacher))
        assert response.status_code == 422, body
        assert response.json()["error"]["code"] == "VALIDATION_INVALID_INPUT"

    stored = DocumentRepository(db).find_by_id(document["id"])
    assert stored["title"] == "Heparin nomogram"
    assert stored["metadata"]["tags"] == ["anticoagulation"]
