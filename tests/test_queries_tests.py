API = "/api/v1"

QUESTIONS = [
    {"text": "First-line agent for uncomplicated hypertension?", "options": ["Thiazide", "Digoxin"], "correct_option": 0},
    {"text": "Antidote for heparin?", "options": ["Vitamin K", "Protamine", "Naloxone"], "correct_option": 1, "points": 2},
]


def create_query(client, headers, **extra):
    payload = {"title": "Warfarin and cranberry", "content": "Is there an interaction?", "category": "interaction"}
    response = client.post(f"{API}/queries", json={**payload, **extra}, headers=headers)
    assert response.status_code == 201
    return response.json()["data"]


def test_query_lifecycle(client, student, teacher, auth):
    query = create_query(client, auth(student))
    assert query["status"] == "open"
    assert query["author"] == str(student["_id"])

    response = client.post(f"{API}/queries/{query['id']}/answer", json={"text": "Monitor INR closely."}, headers=auth(teacher))
    assert response.status_code == 200
    answered = response.json()["data"]
    assert answered["status"] == "answered"
    assert answered["answer"]["text"] == "Monitor INR closely."
    assert answered["answer"]["answered_by"] == str(teacher["_id"])

    notifications = client.get(f"{API}/notifications", headers=auth(student)).json()["data"]
    assert [n["title"] for n in notifications] == ["Your query was answered"]

    fetched = client.get(f"{API}/queries/{query['id']}", headers=auth(student)).json()["data"]
    assert fetched["answer"]["answered_by"]["email"] == teacher["email"]

    assert client.post(f"{API}/queries/{query['id']}/close", headers=auth(student)).json()["data"]["status"] == "closed"
    response = client.post(f"{API}/queries/{query['id']}/answer", json={"text": "Late"}, headers=auth(teacher))
    assert response.status_code == 400


def test_students_answering_is_forbidden(client, student, auth):
    query = create_query(client, auth(student))
    response = client.post(f"{API}/queries/{query['id']}/answer", json={"text": "Self"}, headers=auth(student))
    assert response.status_code == 403


def test_students_only_see_their_queries(client, student, teacher, make_user, auth):
    mine = create_query(client, auth(student))
    other = make_user("student")
    theirs = create_query(client, auth(other), category="dosing")

    listed = client.get(f"{API}/queries", headers=auth(student)).json()["data"]
    assert [q["id"] for q in listed] == [mine["id"]]
    assert client.get(f"{API}/queries/{theirs['id']}", headers=auth(student)).status_code == 403

    by_category = client.get(f"{API}/queries", params={"category": "dosing"}, headers=auth(teacher)).json()["data"]
    assert [q["id"] for q in by_category] == [theirs["id"]]


def create_test(client, headers, **extra):
    payload = {"title": "Cardiology quiz", "passing_score": 60, "questions": QUESTIONS, **extra}
    response = client.post(f"{API}/tests", json=payload, headers=headers)
    assert response.status_code == 201
    return response.json()["data"]


def test_unpublished_test_is_hidden_from_students(client, teacher, student, auth):
    quiz = create_test(client, auth(teacher))
    assert quiz["is_published"] is False
    assert client.get(f"{API}/tests/{quiz['id']}", headers=auth(student)).status_code == 404
    assert client.get(f"{API}/tests", headers=auth(student)).json()["data"] == []

    response = client.post(f"{API}/tests/{quiz['id']}/submit", json={"answers": [0, 1]}, headers=auth(student))
    assert response.status_code == 400


def test_take_a_published_test(client, teacher, student, auth):
    quiz = create_test(client, auth(teacher))
    assert client.post(f"{API}/tests/{quiz['id']}/publish", headers=auth(teacher)).json()["data"]["is_published"]

    seen = client.get(f"{API}/tests/{quiz['id']}", headers=auth(student)).json()["data"]
    assert all("correct_option" not in question for question in seen["questions"])
    assert "correct_option" in client.get(f"{API}/tests/{quiz['id']}", headers=auth(teacher)).json()["data"]["questions"][0]

    response = client.post(f"{API}/tests/{quiz['id']}/submit", json={"answers": [0, 2]}, headers=auth(student))
    assert response.status_code == 201
    attempt = response.json()["data"]
    assert attempt["score"] == 1
    assert attempt["max_score"] == 3
    assert attempt["percentage"] == 33.3
    assert attempt["passed"] is False

    response = client.post(f"{API}/tests/{quiz['id']}/submit", json={"answers": [0, 1]}, headers=auth(student))
    assert response.json()["data"]["passed"] is True

    results = client.get(f"{API}/tests/{quiz['id']}/results", headers=auth(student)).json()["data"]
    assert len(results) == 2
    assert results[0]["student"]["email"] == student["email"]


def test_wrong_answer_count(client, teacher, student, auth):
    quiz = create_test(client, auth(teacher))
    client.post(f"{API}/tests/{quiz['id']}/publish", headers=auth(teacher))
    response = client.post(f"{API}/tests/{quiz['id']}/submit", json={"answers": [0]}, headers=auth(student))
    assert response.status_code == 422


def test_results_scope(client, teacher, student, make_user, auth):
    quiz = create_test(client, auth(teacher))
    client.post(f"{API}/tests/{quiz['id']}/publish", headers=auth(teacher))
    other = make_user("student")
    client.post(f"{API}/tests/{quiz['id']}/submit", json={"answers": [0, 1]}, headers=auth(student))
    client.post(f"{API}/tests/{quiz['id']}/submit", json={"answers": [None, None]}, headers=auth(other))

    mine = client.get(f"{API}/tests/{quiz['id']}/results", headers=auth(student)).json()["data"]
    assert [r["percentage"] for r in mine] == [100.0]
    everyone = client.get(f"{API}/tests/{quiz['id']}/results", headers=auth(teacher)).json()["data"]
    assert len(everyone) == 2


def test_question_must_point_at_an_option(client, teacher, auth):
    bad = [{"text": "Q", "options": ["A", "B"], "correct_option": 2}]
    response = client.post(f"{API}/tests", json={"title": "Bad", "questions": bad}, headers=auth(teacher))
    assert response.status_code == 422
