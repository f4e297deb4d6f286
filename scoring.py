# scoring.py
# -----------------------------------------------------------------------------
# Question scoring. Pure functions over question rows (dicts as returned by the
# store: question_type, difficulty, points_base, explanation, accepted_answer,
# options=[{option_text, is_correct, order_index}]).
# -----------------------------------------------------------------------------

import math
from functools import lru_cache
from typing import Any, Dict, Optional

QUESTION_TYPES = ("multiple_choice", "free_text")

# Canonical difficulty enumeration -> default points
DIFFICULTY_POINTS: Dict[str, int] = {
    "facile": 1,
    "moyen": 2,
    "difficile": 3,
    "expert": 5,
    "piege": 8,
}
DIFFICULTY_LEVELS = tuple(DIFFICULTY_POINTS)
DIFFICULTY_LABELS: Dict[str, str] = {
    "facile": "Facile",
    "moyen": "Moyen",
    "difficile": "Difficile",
    "expert": "Expert",
    "piege": "Piège",
}
# Legacy importer labels
DIFFICULTY_ALIASES: Dict[str, str] = {"tres_difficile": "expert"}

FALLBACK_WARNING_CACHE = 1024


@lru_cache(maxsize=FALLBACK_WARNING_CACHE)
def _warn_explanation_fallback(question_id: Any) -> None:
    print(f"[quiz] question {question_id} has no accepted_answer; comparing against explanation")


def normalize_difficulty(label: Any) -> Optional[str]:
    """Canonical difficulty for ``label`` or None when it is not recognised."""
    s = (label or "").strip().lower() if isinstance(label, str) else ""
    if s in DIFFICULTY_POINTS:
        return s
    return DIFFICULTY_ALIASES.get(s)


def _as_int(x: Any) -> int:
    if x is None or isinstance(x, bool):
        return 0
    try:
        return int(x)
    except Exception:
        return 0


def correct_answer(question: Dict[str, Any]) -> str:
    """
    Canonical answer text.
      - multiple_choice: text of the option flagged correct ('' if none)
      - free_text: accepted_answer; legacy rows without one fall back to the
        explanation field (logged once per question)
    """
    if question.get("question_type") == "multiple_choice":
        for opt in question.get("options") or []:
            if opt.get("is_correct"):
                return str(opt.get("option_text") or "")
        return ""

    accepted = question.get("accepted_answer")
    if isinstance(accepted, str) and accepted.strip():
        return accepted
    _warn_explanation_fallback(question.get("id"))
    return str(question.get("explanation") or "")


def is_correct(question: Dict[str, Any], answer: Optional[str]) -> bool:
    expected = correct_answer(question)
    if not expected:
        return False
    given = answer if isinstance(answer, str) else ""
    if question.get("question_type") == "multiple_choice":
        return given == expected
    return given.strip().lower() == expected.strip().lower()


def base_points(question: Dict[str, Any]) -> int:
    pts = _as_int(question.get("points_base"))
    if pts > 0:
        return pts
    return DIFFICULTY_POINTS.get(normalize_difficulty(question.get("difficulty")) or "", 1)


def score_question(question: Dict[str, Any], answer: Optional[str], hints_used: Any) -> int:
    """Points for one answer: 0 when wrong, else max(1, base - hints)."""
    if not is_correct(question, answer):
        return 0
    hints = max(0, _as_int(hints_used))
    return max(1, base_points(question) - hints)


def accuracy_percent(correct_count: int, total: int) -> int:
    """Rounded (half up) percentage of correct answers; 0 for an empty quiz."""
    if not total:
        return 0
    return int(math.floor(100.0 * correct_count / total + 0.5))


__all__ = [
    "QUESTION_TYPES",
    "DIFFICULTY_POINTS",
    "DIFFICULTY_LEVELS",
    "DIFFICULTY_LABELS",
    "DIFFICULTY_ALIASES",
    "normalize_difficulty",
    "correct_answer",
    "is_correct",
    "base_points",
    "score_question",
    "accuracy_percent",
]
