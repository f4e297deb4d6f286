"""Persist a completed quiz attempt: session row, answer rows, then the student's XP."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from scoring import is_correct, score_question

STEP_READ_PROFILE = "read_profile"
STEP_INSERT_SESSION = "insert_session"
STEP_INSERT_ANSWER = "insert_answer"
STEP_UPDATE_PROFILE = "update_profile"


@dataclass
class RecordResult:
    ok: bool
    session_id: Any = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    answers_written: int = 0


def _as_int(x: Any) -> int:
    try:
        return int(x or 0)
    except Exception:
        return 0


def record_completed_session(
    store,
    student_id: Any,
    chapter_id: Any,
    score: int,
    xp_gained: int,
    time_spent_ms: int,
    entries: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> RecordResult:
    """
    Steps run in order; the first failure is logged and the remaining steps are skipped.
    Nothing already written is rolled back, so a session row may exist with missing
    answers, or without the matching XP update.
    """
    completed_at = now or datetime.now(timezone.utc)

    # 1. current XP (read-modify-write; the new totals are computed here, not in SQL)
    try:
        current = store.fetch_profile_xp(student_id)
        if current is None:
            raise LookupError(f"profile {student_id} not found")
    except Exception as e:
        print(f"[quiz] read profile failed for {student_id}: {e}")
        return RecordResult(ok=False, failed_step=STEP_READ_PROFILE, error=str(e))

    # 2. session row
    try:
        session_id = store.insert_session({
            "student_id": student_id,
            "chapter_id": chapter_id,
            "status": "completed",
            "score": int(score),
            "xp_gained": int(xp_gained),
            "time_spent": int(time_spent_ms),
            "completed_at": completed_at,
        })
    except Exception as e:
        print(f"[quiz] insert session failed for {student_id}/{chapter_id}: {e}")
        return RecordResult(ok=False, failed_step=STEP_INSERT_SESSION, error=str(e))

    # 3. one answer row per question
    written = 0
    for entry in entries:
        question = entry.get("question") or {}
        answer = entry.get("answer") or ""
        hints = _as_int(entry.get("hints_used"))
        try:
            store.insert_answer({
                "session_id": session_id,
                "question_id": question.get("id"),
                "student_answer": answer,
                "is_correct": is_correct(question, answer),
                "time_taken": int(round(entry.get("time_taken") or 0)),
                "hints_used": hints,
                "xp_earned": score_question(question, answer, hints),
            })
        except Exception as e:
            print(f"[quiz] insert answer failed (session {session_id}, question {question.get('id')}): {e}")
            return RecordResult(ok=False, session_id=session_id, failed_step=STEP_INSERT_ANSWER,
                                error=str(e), answers_written=written)
        written += 1

    # 4. overwrite XP totals
    new_xp = _as_int(current.get("xp")) + int(xp_gained)
    new_total = _as_int(current.get("total_xp")) + int(xp_gained)
    try:
        store.update_profile_xp(student_id, new_xp, new_total, completed_at)
    except Exception as e:
        print(f"[quiz] XP update failed for {student_id} (session {session_id} already written): {e}")
        return RecordResult(ok=False, session_id=session_id, failed_step=STEP_UPDATE_PROFILE,
                            error=str(e), answers_written=written)

    print(f"[quiz] session {session_id} recorded: score={score} xp {current.get('xp')} -> {new_xp}")
    return RecordResult(ok=True, session_id=session_id, answers_written=written)
