import random

import pytest
from fastapi.testclient import TestClient

from assessment_engine.api.deps import build_services
from assessment_engine.main import create_app
from assessment_engine.models.domain import Reward

from fakes import BASE_TIME

SESSIONS = "/v1/exams/sessions"


@pytest.fixture
def client(repo, store):
    services = build_services(repo, store, tick_interval=None, rng=random.Random(11))
    with TestClient(create_app(services=services, instrument=False)) as test_client:
        yield test_client


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_exam_flow_over_http(client):
    r = client.post(SESSIONS, json={"student_id": "s1", "subject": "Mathematics", "mode": "Easy"})
    assert r.status_code == 201
    session = r.json()
    assert session["state"] == "in_progress"
    assert len(session["questions"]) == 10
    assert "correct_answer" not in session["questions"][0]

    for i in range(10):
        r = client.post(f"{SESSIONS}/s1/answers", json={"index": i, "answer": "A" if i < 7 else "B"})
        assert r.status_code == 200

    r = client.post(f"{SESSIONS}/s1/navigate", json={"index": 4})
    assert r.json()["current_index"] == 4

    r = client.get(f"{SESSIONS}/s1")
    assert r.status_code == 200
    assert r.json()["answers"][0] == "A"

    r = client.post(f"{SESSIONS}/s1/finalize", json={})
    assert r.status_code == 200
    result = r.json()
    assert result["state"] == "completed"
    assert result["score"] == 70
    assert result["tokens_awarded"] == 15
    assert result["questions"][0]["correct_answer"] == "A"

    assert client.get(f"{SESSIONS}/s1").status_code == 404


def test_submit_warning_and_review(client):
    client.post(SESSIONS, json={"student_id": "s1", "subject": "Mathematics", "mode": "Easy"})
    client.post(f"{SESSIONS}/s1/answers", json={"index": 0, "answer": "A"})

    warned = client.post(f"{SESSIONS}/s1/finalize", json={"force": False}).json()
    assert warned["state"] == "submit_warning"
    assert warned["unanswered"][0] == 1

    reviewing = client.post(f"{SESSIONS}/s1/review").json()
    assert reviewing["state"] == "in_progress"
    assert reviewing["current_index"] == 1


def test_domain_errors_use_error_envelope(client):
    r = client.post(SESSIONS, json={"student_id": "s1", "subject": "History", "mode": "Easy"})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "insufficient_questions"

    client.post(SESSIONS, json={"student_id": "s1", "subject": "Mathematics", "mode": "Easy"})
    r = client.post(SESSIONS, json={"student_id": "s1", "subject": "Mathematics", "mode": "Easy"})
    assert r.status_code == 409
    assert r.json()["error"]["type"] == "session_conflict"

    r = client.post(f"{SESSIONS}/s1/answers", json={"index": 99, "answer": "A"})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "validation_error"

    r = client.post(f"{SESSIONS}/nobody/answers", json={"index": 0, "answer": "A"})
    assert r.status_code == 404
    assert r.json()["error"]["type"] == "session_not_found"


def test_request_validation_error_envelope(client):
    r = client.post(SESSIONS, json={"student_id": "s1", "subject": "Mathematics", "mode": "Impossible"})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "validation_error"


def test_abandon(client):
    client.post(SESSIONS, json={"student_id": "s1", "subject": "Mathematics", "mode": "Easy"})
    r = client.delete(f"{SESSIONS}/s1")
    assert r.status_code == 200
    assert r.json()["state"] == "abandoned"
    assert client.get(f"{SESSIONS}/s1").status_code == 404


def test_achievements_and_tokens(client, repo):
    repo.add_exam("s1", "Mathematics", 100, BASE_TIME)

    r = client.post("/v1/students/s1/achievements/evaluate")
    assert r.status_code == 200
    body = r.json()
    assert {b["name"] for b in body["new_badges"]} == {"First Steps", "Perfectionist", "High Scorer"}
    assert body["stats"]["perfect_scores"] == 1

    again = client.post("/v1/students/s1/achievements/evaluate").json()
    assert again["new_badges"] == []

    r = client.get("/v1/students/s1/tokens")
    assert r.json() == {"student_id": "s1", "balance": 0, "xp": 0, "level": 1}


def test_daily_bonus_and_reward_claim(client, repo):
    repo.rewards["pen"] = Reward(id="pen", name="Pen", cost=8, stock=3)

    first = client.post("/v1/students/s1/daily-bonus").json()
    second = client.post("/v1/students/s1/daily-bonus").json()
    assert first == {"awarded": 5, "balance": 5}
    assert second == {"awarded": 0, "balance": 5}

    r = client.post("/v1/students/s1/rewards/pen/claim")
    assert r.status_code == 409
    assert r.json()["error"]["type"] == "insufficient_tokens"

    repo.transactions[("s1", "exam_score", "e1")] = 10
    r = client.post("/v1/students/s1/rewards/pen/claim")
    assert r.status_code == 201
    assert r.json()["tokens_spent"] == 8
    assert client.get("/v1/students/s1/tokens").json()["balance"] == 7


def test_unknown_student(client):
    assert client.get("/v1/students/ghost/tokens").status_code == 404


def test_oversized_answer_is_rejected(client):
    client.post(SESSIONS, json={"student_id": "s1", "subject": "Mathematics", "mode": "Easy"})

    r = client.post(f"{SESSIONS}/s1/answers", json={"index": 0, "answer": "x" * 5000})

    assert r.status_code == 422
    assert r.json()["error"]["type"] == "validation_error"
    assert client.get(f"{SESSIONS}/s1").json()["answers"][0] is None
