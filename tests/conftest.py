import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


class FakeClock:
    def __init__(self, start=1_000.0):
        self.now = float(start)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class MemoryStore:
    """In-memory stand-in for store.QuizStore; records every write in ``calls``."""

    def __init__(self):
        self.profiles = {}
        self.chapters = {}
        self.questions = {}
        self.options = []
        self.sessions = []
        self.answers = []
        self.attempts = {}
        self.calls = []
        self.fail_on = {}
        self._next_id = 100

    def _new_id(self):
        self._next_id += 1
        return self._next_id

    def _maybe_fail(self, method):
        self.calls.append(method)
        remaining = self.fail_on.get(method)
        if remaining:
            self.fail_on[method] = remaining - 1
            raise RuntimeError(f"{method} unavailable")

    # ---- seeding helpers ----
    def add_profile(self, email, role="student", **fields):
        pid = fields.pop("id", None) or self._new_id()
        row = {
            "id": pid, "email": email, "name": fields.pop("name", email.split("@")[0]),
            "role": role, "password_hash": None, "level": 1, "xp": 0, "total_xp": 0,
            "current_streak": 0, "best_streak": 0, "last_activity": None,
        }
        row.update(fields)
        self.profiles[pid] = row
        return pid

    def add_chapter(self, continent="arithmia", title="Chapter", **fields):
        cid = fields.pop("id", None) or self._new_id()
        row = {"id": cid, "code": None, "title": title, "description": None,
               "continent": continent, "level": 1, "order_index": 0, "is_active": True}
        row.update(fields)
        self.chapters[cid] = row
        return cid

    def add_question(self, chapter_id, text, qtype="multiple_choice", difficulty="facile",
                     options=None, correct=None, **fields):
        qid = fields.pop("id", None) or self._new_id()
        row = {"id": qid, "chapter_id": chapter_id, "question_text": text,
               "question_type": qtype, "difficulty": difficulty, "points_base": None,
               "explanation": None, "accepted_answer": None, "hints": [],
               "time_limit": None, "is_active": True}
        if qtype == "free_text":
            row["accepted_answer"] = correct
        row.update(fields)
        self.questions[qid] = row
        for i, opt in enumerate(options or []):
            self.options.append({"id": self._new_id(), "question_id": qid, "option_text": opt,
                                 "is_correct": opt == correct, "order_index": i})
        return qid

    # ---- QuizStore surface ----
    def ensure_schema(self):
        self.calls.append("ensure_schema")

    def get_profile(self, user_id):
        return self.profiles.get(user_id)

    def get_profile_by_email(self, email):
        for p in self.profiles.values():
            if p["email"].lower() == (email or "").lower():
                return p
        return None

    def create_profile(self, email, name, role, password_hash=None):
        self._maybe_fail("create_profile")
        return self.add_profile(email, role=role, name=name, password_hash=password_hash)

    def list_students(self):
        return [p for p in self.profiles.values() if p["role"] == "student"]

    def fetch_profile_xp(self, user_id):
        self._maybe_fail("fetch_profile_xp")
        p = self.profiles.get(user_id)
        return {"xp": p["xp"], "total_xp": p["total_xp"]} if p else None

    def update_profile_xp(self, user_id, xp, total_xp, last_activity):
        self._maybe_fail("update_profile_xp")
        self.profiles[user_id].update(xp=xp, total_xp=total_xp, last_activity=last_activity)

    def fetch_chapter(self, chapter_id):
        return self.chapters.get(chapter_id)

    def list_chapters(self, continent):
        rows = [dict(c) for c in self.chapters.values() if c["continent"] == continent and c["is_active"]]
        for r in rows:
            r["question_count"] = sum(
                1 for q in self.questions.values() if q["chapter_id"] == r["id"] and q["is_active"]
            )
        return sorted(rows, key=lambda r: (r["order_index"], r["id"]))

    def find_chapter_by_code(self, code):
        for c in self.chapters.values():
            if c.get("code") == code:
                return {"id": c["id"]}
        return None

    def upsert_chapter_by_code(self, code, defaults):
        self._maybe_fail("upsert_chapter_by_code")
        found = self.find_chapter_by_code(code)
        if found:
            return found["id"]
        return self.add_chapter(code=code, **defaults)

    def fetch_questions(self, chapter_id):
        out = []
        for q in sorted(self.questions.values(), key=lambda r: r["id"]):
            if q["chapter_id"] != chapter_id or not q["is_active"]:
                continue
            row = dict(q)
            row["options"] = sorted(
                [o for o in self.options if o["question_id"] == q["id"]],
                key=lambda o: o["order_index"],
            )
            out.append(row)
        return out

    def insert_question(self, record):
        self._maybe_fail("insert_question")
        record = dict(record)
        qid = self._new_id()
        record.update(id=qid, is_active=True, time_limit=None)
        self.questions[qid] = record
        return qid

    def insert_option(self, record):
        self._maybe_fail("insert_option")
        self.options.append(dict(record, id=self._new_id()))

    def insert_session(self, record):
        self._maybe_fail("insert_session")
        sid = self._new_id()
        self.sessions.append(dict(record, id=sid))
        return sid

    def insert_answer(self, record):
        self._maybe_fail("insert_answer")
        self.answers.append(dict(record))

    def create_attempt(self, uid, student_id, chapter_id, state):
        self._maybe_fail("create_attempt")
        self.attempts[uid] = {"uid": uid, "student_id": student_id, "chapter_id": chapter_id,
                              "state": json.loads(json.dumps(state)), "version": 0, "recorded": False}

    def fetch_attempt(self, uid):
        row = self.attempts.get(uid)
        return json.loads(json.dumps(row)) if row else None

    def update_attempt(self, uid, state, version):
        self._maybe_fail("update_attempt")
        row = self.attempts.get(uid)
        if not row or row["version"] != version:
            self.calls.append("update_attempt_conflict")
            return False
        row.update(state=json.loads(json.dumps(state)), version=version + 1)
        return True

    def claim_attempt_recording(self, uid):
        self.calls.append("claim_attempt_recording")
        row = self.attempts.get(uid)
        if not row or row["recorded"]:
            return False
        row["recorded"] = True
        return True


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()
