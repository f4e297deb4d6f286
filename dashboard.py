# dashboard.py: student dashboard (level, XP, streaks, continents)
from typing import Any, Dict, Optional
from urllib.parse import quote

from flask import Blueprint, render_template, g, redirect, request

from catalog_loader import continents, level_info

XP_PER_LEVEL = 100


def _as_int(x) -> int:
    if x is None:
        return 0
    try:
        return int(x)
    except Exception:
        return 0


def student_progress(profile: Dict[str, Any]) -> Dict[str, Any]:
    """XP needed for the next level is level * 100; percent is capped at 100."""
    level = max(1, _as_int(profile.get("level")) or 1)
    xp = max(0, _as_int(profile.get("xp")))
    next_level_xp = level * XP_PER_LEVEL
    percent = min(xp / next_level_xp * 100, 100) if next_level_xp else 100
    info = level_info(level)
    return {
        "level": level,
        "level_name": info.get("name") or "",
        "xp": xp,
        "total_xp": max(0, _as_int(profile.get("total_xp"))),
        "next_level_xp": next_level_xp,
        "progress_percent": int(percent),
        "current_streak": _as_int(profile.get("current_streak")),
        "best_streak": _as_int(profile.get("best_streak")),
    }


def create_dashboard_blueprint(base_path: str, deps: Dict[str, Any], name: str = "dashboard") -> Blueprint:
    url_prefix = (base_path or "") + "/dashboard"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    store = deps["store"]
    prefix = deps.get("bp") or (lambda p: (base_path or "") + p)

    def _login_redirect():
        full = request.full_path if request.query_string else request.path
        return redirect(f"{prefix('/login')}?next={quote(full, safe='/:?&=')}")

    @bp.get("")
    def student_dashboard():
        user_id: Optional[Any] = getattr(g, "user_id", None)
        if not user_id:
            return _login_redirect()
        if getattr(g, "user_role", None) == "coach":
            return redirect(prefix("/dashboard/coach"))

        try:
            profile = store.get_profile(user_id)
        except Exception as e:
            print(f"[dashboard] profile load failed for {user_id}: {e}")
            return render_template("dashboard.html", profile=None, progress=None,
                                   continents=continents(),
                                   error="Your profile could not be loaded right now.")
        if not profile:
            return _login_redirect()

        return render_template(
            "dashboard.html",
            profile=profile,
            progress=student_progress(profile),
            continents=continents(),
            error=None,
        )

    return bp
