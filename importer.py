"""Bulk question import from pasted CSV text.

Expected header (17 columns, comma separated, no quoted commas):

    continent,chapter_code,difficulty,question_text,question_type,explanation,
    hint_1,hint_2,hint_3,option_a,option_b,option_c,option_d,correct_answer,
    points_base,competence_code,metadata

The whole batch is validated first; a single invalid row blocks the import and
every collected error is reported. Valid batches are written row by row, and a
failing row is counted without stopping the others.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional

from catalog_loader import continent_ids
from scoring import DIFFICULTY_ALIASES, DIFFICULTY_LEVELS, QUESTION_TYPES, normalize_difficulty

CSV_COLUMNS = [
    "continent", "chapter_code", "difficulty", "question_text", "question_type",
    "explanation", "hint_1", "hint_2", "hint_3", "option_a", "option_b", "option_c",
    "option_d", "correct_answer", "points_base", "competence_code", "metadata",
]
CSV_HEADER = ",".join(CSV_COLUMNS)

REQUIRED_FIELDS = [
    "continent", "chapter_code", "difficulty", "question_text", "question_type", "correct_answer",
]
OPTION_FIELDS = ["option_a", "option_b", "option_c", "option_d"]
HINT_FIELDS = ["hint_1", "hint_2", "hint_3"]

POINTS_MIN = 1
POINTS_MAX = 10

_INT_RE = re.compile(r"^[+-]?\d+$")
_LEVEL_RE = re.compile(r"(\d+)")


class CsvFormatError(ValueError):
    """Raised when the pasted text cannot be read as a header plus rows."""


def parse_csv(text: str) -> List[Dict[str, str]]:
    """Split on newlines and commas; values are trimmed and stripped of double quotes."""
    lines = [ln.rstrip("\r") for ln in (text or "").strip().split("\n")]
    lines = [ln for ln in lines if ln.strip()]
    if len(lines) < 2:
        raise CsvFormatError("CSV is empty or has no data rows.")

    headers = [h.strip() for h in lines[0].split(",")]
    rows: List[Dict[str, str]] = []
    for line in lines[1:]:
        values = line.split(",")
        row: Dict[str, str] = {}
        for i, header in enumerate(headers):
            raw = values[i] if i < len(values) else ""
            row[header] = raw.strip().replace('"', "")
        rows.append(row)
    return rows


def _blank(value: Optional[str]) -> bool:
    return value is None or str(value).strip() == ""


def _options(row: Dict[str, str]) -> List[str]:
    return [row.get(f) or "" for f in OPTION_FIELDS if not _blank(row.get(f))]


def parse_points(raw: Optional[str]) -> Optional[int]:
    s = (raw or "").strip()
    if not _INT_RE.match(s):
        return None
    return int(s)


def chapter_level(competence_code: Optional[str]) -> int:
    """School level from a competence code such as 'CE2-NUM-03' (defaults to 1)."""
    head = (competence_code or "").split("-")[0].replace("CE", "")
    m = _LEVEL_RE.match(head.strip())
    if not m:
        return 1
    return int(m.group(1)) or 1


def validate_row(row: Dict[str, str], row_number: int,
                 continents: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    errors: List[Dict[str, Any]] = []

    def err(field: str, message: str):
        errors.append({
            "row": row_number,
            "field": field,
            "message": message,
            "question_text": (row.get("question_text") or "")[:50],
        })

    for field in REQUIRED_FIELDS:
        if _blank(row.get(field)):
            err(field, "Required field is missing")

    valid_continents = list(continents) if continents is not None else continent_ids()
    continent = row.get("continent")
    if not _blank(continent) and continent not in valid_continents:
        err("continent", f"Invalid continent. Allowed values: {', '.join(valid_continents)}")

    difficulty = row.get("difficulty")
    if not _blank(difficulty) and normalize_difficulty(difficulty) is None:
        allowed = list(DIFFICULTY_LEVELS) + list(DIFFICULTY_ALIASES)
        err("difficulty", f"Invalid difficulty. Allowed values: {', '.join(allowed)}")

    qtype = row.get("question_type")
    if not _blank(qtype) and qtype not in QUESTION_TYPES:
        err("question_type", f"Invalid question type. Allowed values: {', '.join(QUESTION_TYPES)}")

    if qtype == "multiple_choice":
        options = _options(row)
        if len(options) < 2:
            err("options", "Multiple-choice questions need at least 2 options")
        if row.get("correct_answer") not in options:
            err("correct_answer", "The correct answer must match one of the options")

    points = parse_points(row.get("points_base"))
    if points is None or points < POINTS_MIN or points > POINTS_MAX:
        err("points_base", f"Points must be a whole number between {POINTS_MIN} and {POINTS_MAX}")

    meta_raw = row.get("metadata")
    if not _blank(meta_raw):
        try:
            meta = json.loads(meta_raw)
        except ValueError:
            meta = None
        if not isinstance(meta, dict):
            err("metadata", "Metadata must be a JSON object")

    return errors


def validate_rows(rows: List[Dict[str, str]],
                  continents: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    valid_continents = list(continents) if continents is not None else continent_ids()
    errors: List[Dict[str, Any]] = []
    for i, row in enumerate(rows, start=1):
        errors.extend(validate_row(row, i, valid_continents))
    return errors


def _import_row(store, row: Dict[str, str]) -> Any:
    code = row["chapter_code"].strip()
    competence = (row.get("competence_code") or "").strip()
    chapter_id = store.upsert_chapter_by_code(code, {
        "title": f"Chapter {code}",
        "continent": row["continent"],
        "description": f"Questions generated for {competence}" if competence else None,
        "level": chapter_level(competence),
    })

    qtype = row["question_type"]
    correct = row.get("correct_answer") or ""
    meta_raw = row.get("metadata")
    question_id = store.insert_question({
        "chapter_id": chapter_id,
        "question_text": row["question_text"],
        "question_type": qtype,
        "difficulty": normalize_difficulty(row["difficulty"]),
        "points_base": parse_points(row.get("points_base")) or 1,
        "explanation": row.get("explanation") or None,
        "accepted_answer": correct if qtype == "free_text" else None,
        "hints": [row[h] for h in HINT_FIELDS if not _blank(row.get(h))],
        "metadata": json.loads(meta_raw) if not _blank(meta_raw) else {},
    })

    if qtype == "multiple_choice":
        for order_index, text in enumerate(_options(row)):
            store.insert_option({
                "question_id": question_id,
                "option_text": text,
                "is_correct": text == correct,
                "order_index": order_index,
            })
    return question_id


def import_rows(store, rows: List[Dict[str, str]]) -> Dict[str, Any]:
    """Write already-validated rows one at a time; row failures are counted, not raised."""
    imported = 0
    failures: List[Dict[str, Any]] = []
    for i, row in enumerate(rows, start=1):
        try:
            _import_row(store, row)
            imported += 1
        except Exception as e:
            print(f"[import] row {i} failed: {e}")
            failures.append({"row": i, "message": str(e)})
    return {"imported": imported, "failed": len(failures), "row_failures": failures}


def import_csv(store, text: str, continents: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    report: Dict[str, Any] = {
        "ok": False,
        "total": 0,
        "imported": 0,
        "failed": 0,
        "validation_errors": [],
        "row_failures": [],
        "message": "",
    }
    try:
        rows = parse_csv(text)
    except CsvFormatError as e:
        report["message"] = str(e)
        return report

    report["total"] = len(rows)
    errors = validate_rows(rows, continents)
    if errors:
        report["validation_errors"] = errors
        report["message"] = f"{len(errors)} errors found. Fix them before importing."
        print(f"[import] rejected batch of {len(rows)} rows: {len(errors)} validation errors")
        return report

    result = import_rows(store, rows)
    report.update(result)
    report["ok"] = True
    report["message"] = f"Import finished: {result['imported']} questions imported, {result['failed']} errors."
    print(f"[import] {result['imported']}/{len(rows)} rows imported, {result['failed']} failed")
    return report
