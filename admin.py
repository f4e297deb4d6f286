from typing import Any, Dict, List, Optional

from flask import (
    Blueprint, render_template, abort, request, redirect, g, Response
)

from catalog_loader import continent_ids, level_info
from importer import CSV_HEADER, import_csv

COACH_ROLE = "coach"
MAX_CSV_CHARS = 2_000_000

CSV_EXAMPLE_ROWS = [
    "arithmia,CE2-NUM-01,facile,Combien font 7 + 5 ?,multiple_choice,7 + 5 = 12,"
    "Compte à partir de 7,,,10,11,12,13,12,1,CE2-NUM-01,{}",
    "algebria,CM1-ALG-02,moyen,Quelle est la valeur de x si x + 3 = 10 ?,free_text,x = 10 - 3,"
    "Isole x,,,,,,,7,2,CM1-ALG-02,",
]


def _as_int(x) -> int:
    try:
        return int(x or 0)
    except Exception:
        return 0


def coach_overview(students: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Aggregates for the coach dashboard:
      - total_students
      - active_students (any recorded activity)
      - average_level (rounded; 0 when there are no students)
      - total_xp (sum of lifetime XP)
    """
    total = len(students)
    active = sum(1 for s in students if s.get("last_activity") is not None)
    avg_level = round(sum(_as_int(s.get("level")) for s in students) / total) if total else 0
    total_xp = sum(_as_int(s.get("total_xp")) for s in students)
    return {
        "total_students": total,
        "active_students": active,
        "average_level": avg_level,
        "total_xp": total_xp,
    }


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Coach-only pages:
      • /dashboard/coach   student overview (others are sent to /dashboard)
      • /admin/import      CSV question import (others get 403)
    deps:
      - store (QuizStore or a fake with the same methods)
      - bp(path) -> path prefixed with BASE_PATH (optional)
    """
    store = deps["store"]
    base_prefix = url_prefix.rstrip("/") if url_prefix else ""
    prefix = deps.get("bp") or (lambda p: base_prefix + p)
    bp = Blueprint(name, __name__, url_prefix=base_prefix or None)

    def _is_coach() -> bool:
        return bool(getattr(g, "user_id", None)) and getattr(g, "user_role", None) == COACH_ROLE

    def require_coach():
        if not getattr(g, "user_id", None):
            abort(401)
        if not _is_coach():
            abort(403)

    # ---------- Coach dashboard ----------
    @bp.get("/dashboard/coach")
    def coach_dashboard():
        if not _is_coach():
            return redirect(prefix("/dashboard"))
        error: Optional[str] = None
        try:
            students = store.list_students()
        except Exception as e:
            print(f"[admin] list_students failed: {e}")
            students, error = [], "Student data could not be loaded right now."

        rows = []
        for s in students:
            row = dict(s)
            row["level_name"] = level_info(s.get("level")).get("name") or ""
            rows.append(row)

        return render_template(
            "coach_dashboard.html",
            stats=coach_overview(students),
            students=rows,
            error=error,
            import_url=prefix("/admin/import"),
        )

    # ---------- CSV import ----------
    def _submitted_csv() -> str:
        upload = request.files.get("csv_file")
        if upload and upload.filename:
            return upload.read(MAX_CSV_CHARS).decode("utf-8-sig", errors="replace")
        return (request.form.get("csv_text") or "")[:MAX_CSV_CHARS]

    @bp.route("/admin/import", methods=["GET", "POST"])
    def import_questions():
        require_coach()
        report = None
        csv_text = ""
        if request.method == "POST":
            csv_text = _submitted_csv()
            try:
                report = import_csv(store, csv_text, continent_ids())
            except Exception as e:
                print(f"[import] unexpected failure: {e}")
                report = {
                    "ok": False, "total": 0, "imported": 0, "failed": 0,
                    "validation_errors": [], "row_failures": [],
                    "message": "The import could not be completed. Please try again.",
                }
        return render_template(
            "admin_import.html",
            report=report,
            csv_text=csv_text,
            csv_header=CSV_HEADER,
            template_url=prefix("/admin/import/template.csv"),
        )

    @bp.get("/admin/import/template.csv")
    def import_template():
        require_coach()
        body = "\n".join([CSV_HEADER] + CSV_EXAMPLE_ROWS) + "\n"
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=exador_questions_template.csv"},
        )

    return bp
