# store.py
# -----------------------------------------------------------------------------
# Data-access object handed to every blueprint through deps["store"].
# Built on the fetch_one / fetch_all / execute / execute_returning helpers from
# main.py so the SQL stays in one place and tests can swap in a fake.
# -----------------------------------------------------------------------------

import json
from typing import Any, Callable, Dict, List, Optional

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS public.profiles (
      id              BIGSERIAL PRIMARY KEY,
      email           TEXT NOT NULL UNIQUE,
      name            TEXT NOT NULL DEFAULT '',
      role            TEXT NOT NULL DEFAULT 'student',
      password_hash   TEXT,
      class_id        TEXT,
      level           INTEGER NOT NULL DEFAULT 1,
      xp              INTEGER NOT NULL DEFAULT 0,
      total_xp        INTEGER NOT NULL DEFAULT 0,
      current_streak  INTEGER NOT NULL DEFAULT 0,
      best_streak     INTEGER NOT NULL DEFAULT 0,
      last_activity   TIMESTAMPTZ,
      settings        JSONB NOT NULL DEFAULT '{}'::jsonb,
      created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.chapters (
      id             BIGSERIAL PRIMARY KEY,
      code           TEXT UNIQUE,
      title          TEXT NOT NULL,
      description    TEXT,
      continent      TEXT NOT NULL,
      school_level   TEXT,
      level          INTEGER NOT NULL DEFAULT 1,
      order_index    INTEGER NOT NULL DEFAULT 0,
      prerequisites  JSONB NOT NULL DEFAULT '[]'::jsonb,
      is_active      BOOLEAN NOT NULL DEFAULT TRUE,
      created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at     TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.questions (
      id               BIGSERIAL PRIMARY KEY,
      chapter_id       BIGINT NOT NULL REFERENCES public.chapters(id),
      question_text    TEXT NOT NULL,
      question_type    TEXT NOT NULL,
      difficulty       TEXT NOT NULL,
      points_base      INTEGER,
      explanation      TEXT,
      accepted_answer  TEXT,
      hints            JSONB NOT NULL DEFAULT '[]'::jsonb,
      time_limit       INTEGER,
      tags             JSONB NOT NULL DEFAULT '[]'::jsonb,
      metadata         JSONB NOT NULL DEFAULT '{}'::jsonb,
      is_active        BOOLEAN NOT NULL DEFAULT TRUE,
      created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.question_options (
      id           BIGSERIAL PRIMARY KEY,
      question_id  BIGINT NOT NULL REFERENCES public.questions(id) ON DELETE CASCADE,
      option_text  TEXT NOT NULL,
      is_correct   BOOLEAN NOT NULL DEFAULT FALSE,
      order_index  INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.quiz_sessions (
      id            BIGSERIAL PRIMARY KEY,
      student_id    BIGINT NOT NULL REFERENCES public.profiles(id),
      chapter_id    BIGINT NOT NULL REFERENCES public.chapters(id),
      status        TEXT NOT NULL DEFAULT 'completed',
      score         INTEGER NOT NULL DEFAULT 0,
      xp_gained     INTEGER NOT NULL DEFAULT 0,
      time_spent    BIGINT,          -- milliseconds
      completed_at  TIMESTAMPTZ,
      created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.student_answers (
      id              BIGSERIAL PRIMARY KEY,
      session_id      BIGINT NOT NULL REFERENCES public.quiz_sessions(id) ON DELETE CASCADE,
      question_id     BIGINT NOT NULL REFERENCES public.questions(id),
      student_answer  TEXT NOT NULL DEFAULT '',
      is_correct      BOOLEAN NOT NULL DEFAULT FALSE,
      time_taken      INTEGER,         -- seconds
      hints_used      INTEGER NOT NULL DEFAULT 0,
      xp_earned       INTEGER NOT NULL DEFAULT 0,
      created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.quiz_attempts (
      uid         TEXT PRIMARY KEY,
      student_id  BIGINT NOT NULL REFERENCES public.profiles(id),
      chapter_id  BIGINT NOT NULL REFERENCES public.chapters(id),
      state       JSONB NOT NULL,
      version     INTEGER NOT NULL DEFAULT 0,
      recorded    BOOLEAN NOT NULL DEFAULT FALSE,
      created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
]


def _json_list(raw: Any) -> List[Any]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            val = json.loads(raw)
            return val if isinstance(val, list) else []
        except Exception:
            return []
    return []


class QuizStore:
    """Row-oriented access to profiles, chapters, questions and quiz results."""

    def __init__(self, fetch_one: Callable, fetch_all: Callable,
                 execute: Callable, execute_returning: Callable):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all
        self.execute = execute
        self.execute_returning = execute_returning

    def ensure_schema(self) -> None:
        for stmt in SCHEMA_STATEMENTS:
            self.execute(stmt, ())

    def _insert_returning_id(self, sql: str, params: tuple) -> Any:
        rows = self.execute_returning(sql, params)
        if not rows:
            raise RuntimeError("insert returned no id")
        return rows[0]["id"]

    # ---- profiles ---------------------------------------------------------------
    def get_profile(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return self.fetch_one("""
            SELECT id, email, name, role, class_id, level, xp, total_xp,
                   current_streak, best_streak, last_activity, created_at
              FROM public.profiles
             WHERE id = %s;
        """, (user_id,))

    def get_profile_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one("""
            SELECT id, email, name, role, password_hash, level, xp, total_xp
              FROM public.profiles
             WHERE lower(email) = lower(%s)
             LIMIT 1;
        """, (email,))

    def create_profile(self, email: str, name: str, role: str,
                       password_hash: Optional[str] = None) -> Any:
        return self._insert_returning_id("""
            INSERT INTO public.profiles (email, name, role, password_hash)
            VALUES (%s, %s, %s, %s)
            RETURNING id;
        """, (email, name, role, password_hash))

    def list_students(self) -> List[Dict[str, Any]]:
        return self.fetch_all("""
            SELECT id, email, name, level, xp, total_xp,
                   current_streak, best_streak, last_activity, created_at
              FROM public.profiles
             WHERE role = 'student'
             ORDER BY created_at DESC;
        """, ()) or []

    def fetch_profile_xp(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return self.fetch_one(
            "SELECT xp, total_xp FROM public.profiles WHERE id = %s;", (user_id,)
        )

    def update_profile_xp(self, user_id: Any, xp: int, total_xp: int, last_activity: Any) -> None:
        self.execute("""
            UPDATE public.profiles
               SET xp = %s, total_xp = %s, last_activity = %s, updated_at = now()
             WHERE id = %s;
        """, (xp, total_xp, last_activity, user_id))

    # ---- chapters ---------------------------------------------------------------
    def fetch_chapter(self, chapter_id: Any) -> Optional[Dict[str, Any]]:
        return self.fetch_one("""
            SELECT id, code, title, description, continent, school_level, level,
                   order_index, is_active
              FROM public.chapters
             WHERE id = %s;
        """, (chapter_id,))

    def list_chapters(self, continent: str) -> List[Dict[str, Any]]:
        return self.fetch_all("""
            SELECT c.id, c.code, c.title, c.description, c.continent, c.level, c.order_index,
                   (SELECT COUNT(*) FROM public.questions q
                     WHERE q.chapter_id = c.id AND q.is_active) AS question_count
              FROM public.chapters c
             WHERE c.continent = %s AND c.is_active
             ORDER BY c.order_index, c.id;
        """, (continent,)) or []

    def find_chapter_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one("SELECT id FROM public.chapters WHERE code = %s;", (code,))

    def upsert_chapter_by_code(self, code: str, defaults: Dict[str, Any]) -> Any:
        row = self.find_chapter_by_code(code)
        if row:
            return row["id"]
        return self._insert_returning_id("""
            INSERT INTO public.chapters (code, title, continent, description, level)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (code) DO UPDATE SET updated_at = now()
            RETURNING id;
        """, (code, defaults.get("title"), defaults.get("continent"),
              defaults.get("description"), defaults.get("level") or 1))

    # ---- questions --------------------------------------------------------------
    def fetch_questions(self, chapter_id: Any) -> List[Dict[str, Any]]:
        """Active questions of a chapter in creation order, each with its sorted options."""
        rows = self.fetch_all("""
            SELECT id, chapter_id, question_text, question_type, difficulty, points_base,
                   explanation, accepted_answer, hints, time_limit
              FROM public.questions
             WHERE chapter_id = %s AND is_active
             ORDER BY created_at, id;
        """, (chapter_id,)) or []
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        opts = self.fetch_all("""
            SELECT id, question_id, option_text, is_correct, order_index
              FROM public.question_options
             WHERE question_id = ANY(%s)
             ORDER BY question_id, order_index, id;
        """, (ids,)) or []
        by_q: Dict[Any, List[Dict[str, Any]]] = {}
        for o in opts:
            by_q.setdefault(o["question_id"], []).append(o)
        out = []
        for r in rows:
            q = dict(r)
            q["hints"] = [str(h) for h in _json_list(r.get("hints")) if h]
            q["options"] = by_q.get(r["id"], [])
            out.append(q)
        return out

    def insert_question(self, record: Dict[str, Any]) -> Any:
        return self._insert_returning_id("""
            INSERT INTO public.questions
                (chapter_id, question_text, question_type, difficulty, points_base,
                 explanation, accepted_answer, hints, metadata)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb)
            RETURNING id;
        """, (
            record["chapter_id"], record["question_text"], record["question_type"],
            record["difficulty"], record.get("points_base"), record.get("explanation"),
            record.get("accepted_answer"), json.dumps(record.get("hints") or []),
            json.dumps(record.get("metadata") or {}),
        ))

    def insert_option(self, record: Dict[str, Any]) -> None:
        self.execute("""
            INSERT INTO public.question_options (question_id, option_text, is_correct, order_index)
            VALUES (%s, %s, %s, %s);
        """, (record["question_id"], record["option_text"], bool(record.get("is_correct")),
              int(record.get("order_index") or 0)))

    # ---- quiz results -----------------------------------------------------------
    def insert_session(self, record: Dict[str, Any]) -> Any:
        return self._insert_returning_id("""
            INSERT INTO public.quiz_sessions
                (student_id, chapter_id, status, score, xp_gained, time_spent, completed_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id;
        """, (record["student_id"], record["chapter_id"], record.get("status") or "completed",
              record["score"], record["xp_gained"], record.get("time_spent"), record.get("completed_at")))

    def insert_answer(self, record: Dict[str, Any]) -> None:
        self.execute("""
            INSERT INTO public.student_answers
                (session_id, question_id, student_answer, is_correct, time_taken, hints_used, xp_earned)
            VALUES (%s, %s, %s, %s, %s, %s, %s);
        """, (record["session_id"], record["question_id"], record.get("student_answer") or "",
              bool(record.get("is_correct")), record.get("time_taken"),
              int(record.get("hints_used") or 0), int(record.get("xp_earned") or 0)))

    # ---- quiz attempts ----------------------------------------------------------
    # One row per started attempt; the session cookie only carries the uid.
    # ``version`` is bumped on every save so overlapping requests cannot
    # overwrite each other, and ``recorded`` is claimed once on completion.
    def create_attempt(self, uid: str, student_id: Any, chapter_id: Any,
                       state: Dict[str, Any]) -> None:
        self.execute("""
            INSERT INTO public.quiz_attempts (uid, student_id, chapter_id, state)
            VALUES (%s, %s, %s, %s::jsonb);
        """, (uid, student_id, chapter_id, json.dumps(state)))

    def fetch_attempt(self, uid: str) -> Optional[Dict[str, Any]]:
        row = self.fetch_one("""
            SELECT uid, student_id, chapter_id, state, version, recorded
              FROM public.quiz_attempts
             WHERE uid = %s;
        """, (uid,))
        if row and isinstance(row.get("state"), str):
            row = dict(row)
            row["state"] = json.loads(row["state"])
        return row

    def update_attempt(self, uid: str, state: Dict[str, Any], version: int) -> bool:
        """Save ``state`` only if the row is still at ``version``."""
        rows = self.execute_returning("""
            UPDATE public.quiz_attempts
               SET state = %s::jsonb, version = version + 1, updated_at = now()
             WHERE uid = %s AND version = %s
            RETURNING version;
        """, (json.dumps(state), uid, version))
        return bool(rows)

    def claim_attempt_recording(self, uid: str) -> bool:
        """True for exactly one caller per attempt."""
        rows = self.execute_returning("""
            UPDATE public.quiz_attempts
               SET recorded = TRUE, updated_at = now()
             WHERE uid = %s AND NOT recorded
            RETURNING uid;
        """, (uid,))
        return bool(rows)
