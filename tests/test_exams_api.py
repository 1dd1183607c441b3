"""Integration tests for the timed exam endpoints.

Covers:
  POST /api/exams/sessions
  PUT  /api/exams/sessions/{id}/answers/{question_id}
  POST /api/exams/sessions/{id}/submit
  GET  /api/exams/sessions/{id}
  GET  /api/exams/sessions/{id}/attempts
  GET  /api/exams/sessions

External grading is off, so short answers are graded by keyword match.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from pastprep.db.models import ExamSession
from pastprep.services.errors import PersistenceError


# ── Helpers ────────────────────────────────────────────────────────────────────


def _register_and_login(client: TestClient) -> str:
    email = f"student_{uuid.uuid4().hex[:8]}@ex.com"
    client.post(
        "/api/users/register",
        json={"email": email, "password": "testpwd1", "full_name": "Test Student"},
    )
    resp = client.post("/api/users/login", json={"email": email, "password": "testpwd1"})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _start(client: TestClient, token: str, paper_id) -> dict:
    resp = client.post("/api/exams/sessions", json={"paper_id": str(paper_id)}, headers=_auth(token))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _answer(client: TestClient, token: str, session_id: str, question_id: str, answer: str):
    return client.put(
        f"/api/exams/sessions/{session_id}/answers/{question_id}",
        json={"answer": answer},
        headers=_auth(token),
    )


def _sit_full_exam(client: TestClient, token: str, paper_id) -> tuple[str, dict]:
    started = _start(client, token, paper_id)
    sid = started["session_id"]
    q1, q2, q3 = (q["id"] for q in started["questions"])
    _answer(client, token, sid, q1, "B")
    _answer(client, token, sid, q2, "A")
    _answer(client, token, sid, q3, "Plants use photosynthesis")
    resp = client.post(f"/api/exams/sessions/{sid}/submit", headers=_auth(token))
    assert resp.status_code == 200, resp.text
    return sid, resp.json()


# ── Start ─────────────────────────────────────────────────────────────────────


class TestStartExam:
    def test_start_returns_questions_without_keys(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper(duration_minutes=30)
        token = _register_and_login(client)

        data = _start(client, token, paper.id)

        assert data["remaining_seconds"] == 30 * 60
        assert data["paper"]["name"] == "Biology Paper 1"
        assert len(data["questions"]) == 3
        assert [q["question_number"] for q in data["questions"]] == [1, 2, 3]
        for q in data["questions"]:
            assert "correct_answer" not in q
            assert "sample_answer" not in q

    def test_requires_auth(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper()
        resp = client.post("/api/exams/sessions", json={"paper_id": str(paper.id)})
        assert resp.status_code == 401

    def test_unknown_paper(self, client: TestClient):
        token = _register_and_login(client)
        resp = client.post(
            "/api/exams/sessions", json={"paper_id": str(uuid.uuid4())}, headers=_auth(token)
        )
        assert resp.status_code == 404

    def test_paper_not_writable(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper(is_writable=False)
        token = _register_and_login(client)
        resp = client.post(
            "/api/exams/sessions", json={"paper_id": str(paper.id)}, headers=_auth(token)
        )
        assert resp.status_code == 409


# ── Answers ───────────────────────────────────────────────────────────────────


class TestAnswers:
    def test_save_and_overwrite(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper()
        token = _register_and_login(client)
        started = _start(client, token, paper.id)
        sid, qid = started["session_id"], started["questions"][0]["id"]

        first = _answer(client, token, sid, qid, "A")
        second = _answer(client, token, sid, qid, "B")

        assert first.status_code == 200
        assert second.json()["answered_count"] == 1

    def test_question_not_in_paper(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper()
        token = _register_and_login(client)
        sid = _start(client, token, paper.id)["session_id"]

        resp = _answer(client, token, sid, str(uuid.uuid4()), "A")
        assert resp.status_code == 404

    def test_other_students_session_is_hidden(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper()
        owner = _register_and_login(client)
        intruder = _register_and_login(client)
        started = _start(client, owner, paper.id)
        sid, qid = started["session_id"], started["questions"][0]["id"]

        assert _answer(client, intruder, sid, qid, "A").status_code == 404
        assert client.get(f"/api/exams/sessions/{sid}", headers=_auth(intruder)).status_code == 404
        resp = client.post(f"/api/exams/sessions/{sid}/submit", headers=_auth(intruder))
        assert resp.status_code == 404


# ── Submit & results ──────────────────────────────────────────────────────────


class TestSubmit:
    def test_submit_grades_and_finalizes(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper()
        token = _register_and_login(client)

        sid, summary = _sit_full_exam(client, token, paper.id)

        assert summary["earned_marks"] == 3.5
        assert summary["total_marks"] == 4.5
        assert summary["trigger"] == "manual"
        assert [r["is_correct"] for r in summary["results"]] == [True, False, True]

        resp = client.get(f"/api/exams/sessions/{sid}", headers=_auth(token))
        data = resp.json()
        assert data["status"] == "completed"
        assert data["total_score"] == 3.5
        assert data["completed_at"] is not None

    def test_second_submit_conflicts(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper()
        token = _register_and_login(client)
        sid, _ = _sit_full_exam(client, token, paper.id)

        resp = client.post(f"/api/exams/sessions/{sid}/submit", headers=_auth(token))
        assert resp.status_code == 409

    def test_live_session_state(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper()
        token = _register_and_login(client)
        started = _start(client, token, paper.id)
        sid = started["session_id"]
        _answer(client, token, sid, started["questions"][0]["id"], "B")

        data = client.get(f"/api/exams/sessions/{sid}", headers=_auth(token)).json()
        assert data["status"] == "open"
        assert data["answered_count"] == 1
        assert 0 < data["remaining_seconds"] <= 60 * 60

    def test_review_only_after_submit(self, client: TestClient, seed_paper):
        paper, _, _ = seed_paper()
        token = _register_and_login(client)
        sid = _start(client, token, paper.id)["session_id"]

        early = client.get(f"/api/exams/sessions/{sid}/attempts", headers=_auth(token))
        assert early.status_code == 409

        client.post(f"/api/exams/sessions/{sid}/submit", headers=_auth(token))
        review = client.get(f"/api/exams/sessions/{sid}/attempts", headers=_auth(token)).json()
        assert [r["question_number"] for r in review] == [1, 2, 3]
        assert review[0]["correct_answer"] == ["B"]
        assert all(r["user_answer"] == "" for r in review)

    def test_storage_failure_returns_503_and_can_retry(
        self, client: TestClient, manager, seed_paper
    ):
        paper, _, _ = seed_paper()
        token = _register_and_login(client)
        started = _start(client, token, paper.id)
        sid = started["session_id"]
        _answer(client, token, sid, started["questions"][0]["id"], "B")

        with patch.object(
            manager.store, "insert_attempts", side_effect=PersistenceError("db down")
        ):
            failed = client.post(f"/api/exams/sessions/{sid}/submit", headers=_auth(token))
        assert failed.status_code == 503
        body = failed.json()
        assert body["success"] is False
        assert body["error_code"] == "persistence_failed"

        retry = client.post(f"/api/exams/sessions/{sid}/submit", headers=_auth(token))
        assert retry.status_code == 200
        assert retry.json()["earned_marks"] == 1


# ── History ───────────────────────────────────────────────────────────────────


class TestHistory:
    def test_history_statuses(self, client: TestClient, db: Session, seed_paper):
        paper, _, _ = seed_paper(duration_minutes=60)
        token = _register_and_login(client)
        user_id = client.get("/api/users/me", headers=_auth(token)).json()["id"]

        done_sid, _ = _sit_full_exam(client, token, paper.id)
        open_sid = _start(client, token, paper.id)["session_id"]
        stale = ExamSession(
            user_id=uuid.UUID(user_id),
            past_paper_id=paper.id,
            started_at=datetime.now(timezone.utc) - timedelta(hours=3),
            total_possible_score=4.5,
        )
        db.add(stale)
        db.commit()
        db.refresh(stale)

        resp = client.get("/api/exams/sessions", headers=_auth(token))
        assert resp.status_code == 200
        statuses = {row["id"]: row["status"] for row in resp.json()}
        assert statuses == {
            done_sid: "completed",
            open_sid: "open",
            str(stale.id): "abandoned",
        }

    def test_stale_session_cannot_be_submitted(self, client: TestClient, db: Session, seed_paper):
        paper, _, _ = seed_paper()
        token = _register_and_login(client)
        user_id = client.get("/api/users/me", headers=_auth(token)).json()["id"]
        stale = ExamSession(
            user_id=uuid.UUID(user_id),
            past_paper_id=paper.id,
            started_at=datetime.now(timezone.utc) - timedelta(hours=3),
            total_possible_score=4.5,
        )
        db.add(stale)
        db.commit()
        db.refresh(stale)

        resp = client.post(f"/api/exams/sessions/{stale.id}/submit", headers=_auth(token))
        assert resp.status_code == 409
