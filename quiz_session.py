"""Quiz attempt state and the controller that drives it, one question at a time."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional

from scoring import DIFFICULTY_LABELS, accuracy_percent, correct_answer, is_correct, score_question

PHASE_ANSWERING = "answering"
PHASE_RESULT = "showing_result"
PHASE_COMPLETED = "completed"

RESULT_PAUSE_SECONDS = 2.0


@dataclass
class QuizState:
    """Everything one attempt needs between requests; serializable to a plain dict."""

    chapter_id: int
    question_ids: list[Any]
    started_at: float
    question_started_at: float
    phase: str = PHASE_ANSWERING
    index: int = 0
    answers: list[str] = field(default_factory=list)
    hints_used: list[int] = field(default_factory=list)
    points: list[Optional[int]] = field(default_factory=list)
    correct: list[Optional[bool]] = field(default_factory=list)
    time_taken: list[Optional[float]] = field(default_factory=list)
    score: int = 0
    xp_gained: int = 0
    correct_count: int = 0
    deadline: Optional[float] = None
    result_shown_at: Optional[float] = None
    finished_at: Optional[float] = None
    last_result: Optional[dict] = None
    recorded: bool = False
    record_ok: Optional[bool] = None
    session_id: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuizState":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


class QuizSessionController:
    """
    Drives one attempt: AnsweringQuestion -> ShowingResult -> (AnsweringQuestion | Completed).

    All transitions happen synchronously on the caller's event; the countdown is a
    deadline stored in the state and checked by ``tick``. Leaving the answering phase
    clears the deadline, so a late timer cannot advance the same question twice.
    """

    def __init__(
        self,
        questions: List[Dict[str, Any]],
        state: QuizState,
        clock: Callable[[], float] = time.time,
        result_pause: float = RESULT_PAUSE_SECONDS,
    ) -> None:
        if not questions:
            raise ValueError("a quiz needs at least one question")
        if len(questions) != len(state.question_ids):
            raise ValueError("question list does not match the quiz state")
        self.questions = questions
        self.state = state
        self._clock = clock
        self._result_pause = result_pause

    # ---- construction ---------------------------------------------------------
    @classmethod
    def start(
        cls,
        chapter_id: int,
        questions: List[Dict[str, Any]],
        clock: Callable[[], float] = time.time,
        result_pause: float = RESULT_PAUSE_SECONDS,
    ) -> "QuizSessionController":
        if not questions:
            raise ValueError("a quiz needs at least one question")
        now = clock()
        n = len(questions)
        state = QuizState(
            chapter_id=chapter_id,
            question_ids=[q.get("id") for q in questions],
            started_at=now,
            question_started_at=now,
            answers=[""] * n,
            hints_used=[0] * n,
            points=[None] * n,
            correct=[None] * n,
            time_taken=[None] * n,
        )
        ctrl = cls(questions, state, clock=clock, result_pause=result_pause)
        ctrl._arm_timer(now)
        return ctrl

    @classmethod
    def resume(
        cls,
        questions: List[Dict[str, Any]],
        state_data: Dict[str, Any],
        clock: Callable[[], float] = time.time,
        result_pause: float = RESULT_PAUSE_SECONDS,
    ) -> Optional["QuizSessionController"]:
        """Rebuild from a stored state; None when the questions no longer match it."""
        try:
            state = QuizState.from_dict(state_data)
        except TypeError:
            return None
        by_id = {q.get("id"): q for q in questions}
        ordered = [by_id.get(qid) for qid in state.question_ids]
        if not ordered or any(q is None for q in ordered):
            return None
        return cls(ordered, state, clock=clock, result_pause=result_pause)

    # ---- accessors ------------------------------------------------------------
    @property
    def phase(self) -> str:
        return self.state.phase

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> Dict[str, Any]:
        return self.questions[self.state.index]

    @property
    def is_last_question(self) -> bool:
        return self.state.index == self.total - 1

    @property
    def is_completed(self) -> bool:
        return self.state.phase == PHASE_COMPLETED

    @property
    def needs_recording(self) -> bool:
        return self.is_completed and not self.state.recorded

    def time_left(self) -> Optional[int]:
        if self.state.phase != PHASE_ANSWERING or self.state.deadline is None:
            return None
        return max(0, int(round(self.state.deadline - self._clock())))

    def revealed_hints(self) -> List[str]:
        hints = self.current_question.get("hints") or []
        return list(hints[: self.state.hints_used[self.state.index]])

    # ---- events ---------------------------------------------------------------
    def _accepts(self, index: Optional[int]) -> bool:
        if self.state.phase != PHASE_ANSWERING:
            return False
        return index is None or int(index) == self.state.index

    def select_answer(self, answer: Optional[str], index: Optional[int] = None) -> bool:
        if not self._accepts(index):
            return False
        self.state.answers[self.state.index] = answer if isinstance(answer, str) else ""
        return True

    def reveal_hint(self, index: Optional[int] = None) -> Optional[str]:
        if not self._accepts(index):
            return None
        i = self.state.index
        hints = self.current_question.get("hints") or []
        used = self.state.hints_used[i]
        if used >= len(hints):
            return None
        self.state.hints_used[i] = used + 1
        return hints[used]

    def advance(self, index: Optional[int] = None, reason: str = "manual") -> Optional[Dict[str, Any]]:
        """Score the current question and show its result. No-op unless answering ``index``."""
        if not self._accepts(index):
            return None
        now = self._clock()
        st = self.state
        i = st.index
        question = self.current_question
        answer = st.answers[i]
        hints = st.hints_used[i]

        points = score_question(question, answer, hints)
        ok = is_correct(question, answer)

        st.points[i] = points
        st.correct[i] = ok
        st.time_taken[i] = round(max(0.0, now - st.question_started_at), 3)
        st.score += points
        st.xp_gained += points
        if ok:
            st.correct_count += 1

        st.deadline = None
        st.phase = PHASE_RESULT
        st.result_shown_at = now
        st.last_result = {
            "index": i,
            "question_id": question.get("id"),
            "answer": answer,
            "is_correct": ok,
            "points": points,
            "correct_answer": correct_answer(question),
            "explanation": question.get("explanation"),
            "reason": reason,
        }
        return st.last_result

    def tick(self) -> None:
        """Apply time-driven transitions: countdown expiry, then the result pause."""
        now = self._clock()
        st = self.state
        if st.phase == PHASE_ANSWERING and st.deadline is not None and now >= st.deadline:
            self.advance(st.index, reason="timeout")
        if st.phase == PHASE_RESULT and st.result_shown_at is not None:
            if now - st.result_shown_at >= self._result_pause:
                self._proceed(now)

    def _proceed(self, now: float) -> None:
        st = self.state
        st.result_shown_at = None
        if self.is_last_question:
            st.phase = PHASE_COMPLETED
            st.finished_at = now
            return
        st.index += 1
        st.phase = PHASE_ANSWERING
        st.question_started_at = now
        self._arm_timer(now)

    def _arm_timer(self, now: float) -> None:
        limit = self.current_question.get("time_limit")
        try:
            seconds = int(limit) if limit is not None else 0
        except (TypeError, ValueError):
            seconds = 0
        self.state.deadline = (now + seconds) if seconds > 0 else None

    # ---- results --------------------------------------------------------------
    def elapsed_ms(self) -> int:
        end = self.state.finished_at if self.state.finished_at is not None else self._clock()
        return int(round((end - self.state.started_at) * 1000))

    def summary(self) -> Dict[str, Any]:
        st = self.state
        return {
            "score": st.score,
            "xp_gained": st.xp_gained,
            "correct_count": st.correct_count,
            "total": self.total,
            "accuracy": accuracy_percent(st.correct_count, self.total),
            "elapsed_ms": self.elapsed_ms(),
        }

    def answer_entries(self) -> List[Dict[str, Any]]:
        out = []
        for i, q in enumerate(self.questions):
            out.append({
                "question": q,
                "answer": self.state.answers[i],
                "hints_used": self.state.hints_used[i],
                "time_taken": self.state.time_taken[i],
            })
        return out

    def mark_recorded(self, ok: bool, session_id: Any = None) -> None:
        self.state.recorded = True
        self.state.record_ok = bool(ok)
        self.state.session_id = session_id

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view for the play page; never exposes the correct option."""
        st = self.state
        q = self.current_question
        data: Dict[str, Any] = {
            "phase": st.phase,
            "index": st.index,
            "total": self.total,
            "score": st.score,
            "xp_gained": st.xp_gained,
            "result_pause_seconds": self._result_pause,
            "question": {
                "id": q.get("id"),
                "text": q.get("question_text"),
                "type": q.get("question_type"),
                "difficulty": q.get("difficulty"),
                "difficulty_label": DIFFICULTY_LABELS.get(q.get("difficulty") or "", q.get("difficulty")),
                "options": [o.get("option_text") for o in (q.get("options") or [])],
                "time_limit": q.get("time_limit"),
                "hints_available": len(q.get("hints") or []),
            },
            "selected_answer": st.answers[st.index],
            "hints": self.revealed_hints(),
            "time_left": self.time_left(),
            "last_result": st.last_result if st.phase != PHASE_ANSWERING else None,
        }
        if self.is_completed:
            data["summary"] = self.summary()
        return data
