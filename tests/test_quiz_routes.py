import sys
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import quiz  # noqa: E402
from quiz import create_quiz_blueprint  # noqa: E402


def _seed(store):
    student = store.add_profile("kid@example.com", xp=10, total_xp=60)
    chapter = store.add_chapter("arithmia", "Additions", id=5)
    store.add_question(chapter, "2 + 2 ?", difficulty="facile", options=["3", "4"], correct="4",
                       hints=["Compte sur tes doigts"], id=51)
    store.add_question(chapter, "Capitale ?", qtype="free_text", difficulty="moyen", correct="Paris",
                       id=52, explanation="C'est **Paris**")
    return student, chapter


@pytest.fixture
def rendered():
    return []


@pytest.fixture
def make_client(monkeypatch, store, clock, rendered):
    def fake_render(template_name, **context):
        rendered.append((template_name, context))
        return template_name

    monkeypatch.setattr(quiz, "render_template", fake_render)

    def _make(user_id=None):
        app = Flask(__name__)
        app.testing = True
        app.secret_key = "test"
        deps = {"store": store, "clock": clock, "render_rich": lambda text: f"<p>{text}</p>"}
        app.register_blueprint(create_quiz_blueprint("", deps))

        @app.before_request
        def _set_user():
            if user_id:
                g.user_id = user_id
                g.user_role = "student"

        return app.test_client()

    return _make


def test_full_quiz_flow_records_once(make_client, store, clock, rendered):
    student, _ = _seed(store)
    client = make_client(student)

    resp = client.get("/quiz/arithmia/5")
    assert resp.status_code == 200
    name, ctx = rendered[-1]
    assert name == "quiz.html"
    assert ctx["state"]["question"]["options"] == ["3", "4"]
    assert ctx["state"]["question"]["text_html"] == "<p>2 + 2 ?</p>"
    assert ctx["api_base"] == "/quiz/arithmia/5"

    data = client.post("/quiz/arithmia/5/hint", json={"index": 0}).get_json()
    assert data["hint"] == "Compte sur tes doigts"
    assert data["state"]["hints"] == ["Compte sur tes doigts"]

    data = client.post("/quiz/arithmia/5/answer", json={"index": 0, "answer": "4"}).get_json()
    assert data["accepted"] is True
    assert data["state"]["selected_answer"] == "4"

    data = client.post("/quiz/arithmia/5/next", json={"index": 0}).get_json()
    assert data["accepted"] is True
    assert data["state"]["phase"] == "showing_result"
    assert data["state"]["last_result"]["is_correct"] is True
    assert data["state"]["last_result"]["points"] == 1

    # timer and click landing together
    data = client.post("/quiz/arithmia/5/next", json={"index": 0}).get_json()
    assert data["accepted"] is False
    assert data["state"]["score"] == 1

    clock.advance(2)
    data = client.get("/quiz/arithmia/5/state").get_json()
    assert data["state"]["index"] == 1
    assert data["state"]["phase"] == "answering"

    client.post("/quiz/arithmia/5/answer", json={"index": 1, "answer": "  paris "})
    data = client.post("/quiz/arithmia/5/next", json={"index": 1}).get_json()
    assert data["state"]["last_result"]["explanation_html"] == "<p>C'est **Paris**</p>"
    assert store.sessions == []

    clock.advance(2)
    data = client.get("/quiz/arithmia/5/state").get_json()
    assert data["state"]["phase"] == "completed"
    assert data["state"]["summary"]["score"] == 3
    assert data["state"]["summary"]["accuracy"] == 100
    assert data["record_ok"] is True

    client.get("/quiz/arithmia/5/state")
    assert len(store.sessions) == 1
    assert len(store.answers) == 2
    assert store.profiles[student]["xp"] == 13
    assert store.profiles[student]["total_xp"] == 63

    resp = client.get("/quiz/arithmia/5/summary")
    assert resp.status_code == 200
    name, ctx = rendered[-1]
    assert name == "quiz_summary.html"
    assert ctx["summary"]["correct_count"] == 2
    assert ctx["record_ok"] is True
    assert len(store.sessions) == 1


def test_reopening_page_resumes_current_attempt(make_client, store, rendered):
    student, _ = _seed(store)
    client = make_client(student)
    client.get("/quiz/arithmia/5")
    client.post("/quiz/arithmia/5/answer", json={"index": 0, "answer": "3"})

    client.get("/quiz/arithmia/5")
    assert rendered[-1][1]["state"]["selected_answer"] == "3"

    client.get("/quiz/arithmia/5?restart=1")
    assert rendered[-1][1]["state"]["selected_answer"] == ""


def test_summary_before_completion_redirects_to_quiz(make_client, store):
    student, _ = _seed(store)
    client = make_client(student)
    client.get("/quiz/arithmia/5")
    resp = client.get("/quiz/arithmia/5/summary")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/quiz/arithmia/5")


def test_anonymous_page_redirects_and_api_returns_401(make_client, store):
    _seed(store)
    client = make_client(None)

    resp = client.get("/quiz/arithmia/5")
    assert resp.status_code == 302
    assert "/login?next=/quiz/arithmia/5" in resp.headers["Location"]

    resp = client.get("/quiz/arithmia/5/state")
    assert resp.status_code == 401
    assert resp.get_json() == {"ok": False, "error": "unauthorized"}


def test_unknown_chapter_or_continent_is_404(make_client, store):
    student, _ = _seed(store)
    client = make_client(student)
    assert client.get("/quiz/arithmia/999").status_code == 404
    assert client.get("/quiz/geometria/5").status_code == 404
    assert client.get("/quiz/atlantis/5").status_code == 404
    assert client.get("/quiz/geometria/5/state").status_code == 404


def test_chapter_without_questions_redirects_to_continent(make_client, store):
    student = store.add_profile("kid@example.com")
    store.add_chapter("geometria", "Vide", id=8)
    client = make_client(student)
    resp = client.get("/quiz/geometria/8")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/quiz/geometria")


def test_state_without_started_quiz_is_409(make_client, store):
    student, _ = _seed(store)
    client = make_client(student)
    resp = client.get("/quiz/arithmia/5/state")
    assert resp.status_code == 409


def test_changed_questions_invalidate_the_attempt(make_client, store):
    student, chapter = _seed(store)
    client = make_client(student)
    client.get("/quiz/arithmia/5")

    store.questions[52]["is_active"] = False
    resp = client.post("/quiz/arithmia/5/answer", json={"index": 0, "answer": "4"})
    assert resp.status_code == 409
    assert client.get("/quiz/arithmia/5/state").status_code == 409


def test_unexpected_error_is_a_generic_500(make_client, store, monkeypatch):
    student, _ = _seed(store)
    client = make_client(student)
    client.get("/quiz/arithmia/5")

    def boom(chapter_id):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(store, "fetch_questions", boom)
    resp = client.get("/quiz/arithmia/5/state")
    assert resp.status_code == 500
    assert resp.get_json() == {"ok": False, "error": "internal error"}


def test_failed_recording_is_reported_and_not_retried(make_client, store, clock):
    student, _ = _seed(store)
    store.fail_on["insert_session"] = 5
    client = make_client(student)
    client.get("/quiz/arithmia/5")
    for i in range(2):
        client.post("/quiz/arithmia/5/next", json={"index": i})
        clock.advance(2)
        data = client.get("/quiz/arithmia/5/state").get_json()

    assert data["state"]["phase"] == "completed"
    assert data["record_ok"] is False
    client.get("/quiz/arithmia/5/state")
    assert store.calls.count("insert_session") == 1
    assert store.profiles[student]["xp"] == 10


def _attempt_uid(store):
    assert len(store.attempts) == 1
    return next(iter(store.attempts))


def test_attempt_lives_server_side_and_cookie_only_points_at_it(make_client, store):
    student, _ = _seed(store)
    client = make_client(student)
    client.get("/quiz/arithmia/5")

    uid = _attempt_uid(store)
    with client.session_transaction() as sess:
        assert sess["quiz"] == {"chapter_id": 5, "attempt_uid": uid}
    assert store.attempts[uid]["student_id"] == student

    client.get("/quiz/arithmia/5/state")
    assert "update_attempt" not in store.calls


def test_replayed_cookie_does_not_lose_an_answer(make_client, store):
    student, _ = _seed(store)
    client = make_client(student)
    client.get("/quiz/arithmia/5")
    with client.session_transaction() as sess:
        before_answer = dict(sess["quiz"])

    client.post("/quiz/arithmia/5/answer", json={"index": 0, "answer": "4"})
    # a poll sent before the answer lands afterwards
    with client.session_transaction() as sess:
        sess["quiz"] = before_answer
    client.get("/quiz/arithmia/5/state")

    data = client.post("/quiz/arithmia/5/next", json={"index": 0}).get_json()
    assert data["state"]["last_result"]["answer"] == "4"
    assert data["state"]["last_result"]["is_correct"] is True
    assert data["state"]["last_result"]["points"] == 1


def test_overlapping_save_replays_on_the_fresh_row(make_client, store, monkeypatch):
    student, _ = _seed(store)
    client = make_client(student)
    client.get("/quiz/arithmia/5")
    uid = _attempt_uid(store)
    stale = store.fetch_attempt(uid)

    client.post("/quiz/arithmia/5/answer", json={"index": 0, "answer": "4"})

    real_fetch = store.fetch_attempt
    served_stale = []

    def fetch_stale_once(attempt_uid):
        if not served_stale:
            served_stale.append(attempt_uid)
            return stale
        return real_fetch(attempt_uid)

    monkeypatch.setattr(store, "fetch_attempt", fetch_stale_once)
    data = client.post("/quiz/arithmia/5/hint", json={"index": 0}).get_json()

    assert data["hint"] == "Compte sur tes doigts"
    assert data["state"]["selected_answer"] == "4"
    assert store.calls.count("update_attempt_conflict") == 1
    saved = store.attempts[uid]["state"]
    assert saved["answers"][0] == "4"
    assert saved["hints_used"][0] == 1


def _play_to_last_result(client, clock):
    client.get("/quiz/arithmia/5")
    client.post("/quiz/arithmia/5/answer", json={"index": 0, "answer": "4"})
    client.post("/quiz/arithmia/5/next", json={"index": 0})
    clock.advance(2)
    client.get("/quiz/arithmia/5/state")
    client.post("/quiz/arithmia/5/answer", json={"index": 1, "answer": "Paris"})
    client.post("/quiz/arithmia/5/next", json={"index": 1})


def test_replayed_cookie_after_completion_records_once(make_client, store, clock):
    student, _ = _seed(store)
    client = make_client(student)
    _play_to_last_result(client, clock)
    with client.session_transaction() as sess:
        before_completion = dict(sess["quiz"])

    clock.advance(2)
    assert client.get("/quiz/arithmia/5/state").get_json()["state"]["phase"] == "completed"
    with client.session_transaction() as sess:
        sess["quiz"] = before_completion
    client.get("/quiz/arithmia/5/state")

    assert len(store.sessions) == 1
    assert store.profiles[student]["xp"] == 13


def test_only_the_request_that_claims_the_attempt_records_it(make_client, store, clock):
    student, _ = _seed(store)
    client = make_client(student)
    _play_to_last_result(client, clock)
    clock.advance(2)
    client.get("/quiz/arithmia/5/state")
    assert len(store.sessions) == 1

    # a second request that saw the completed state before it was marked recorded
    uid = _attempt_uid(store)
    store.attempts[uid]["state"]["recorded"] = False
    data = client.get("/quiz/arithmia/5/state").get_json()

    assert data["state"]["phase"] == "completed"
    assert store.calls.count("claim_attempt_recording") == 2
    assert store.calls.count("insert_session") == 1
    assert len(store.sessions) == 1
    assert store.profiles[student]["xp"] == 13
    assert store.profiles[student]["total_xp"] == 63


def test_attempt_of_another_student_is_not_resumed(make_client, store):
    student, _ = _seed(store)
    other = store.add_profile("other@example.com")
    make_client(student).get("/quiz/arithmia/5")
    uid = _attempt_uid(store)

    client = make_client(other)
    with client.session_transaction() as sess:
        sess["quiz"] = {"chapter_id": 5, "attempt_uid": uid}
    resp = client.get("/quiz/arithmia/5/state")
    assert resp.status_code == 409
