# home.py
from typing import Any, Dict
from flask import render_template, abort, g

from catalog_loader import continents, find_continent


def register_home_routes(app, base_path: str, deps: Dict[str, Any]):
    """
    Registers:
      - GET "/" -> endpoint 'index' (continents from the catalog)
      - GET "/quiz/<continent_id>" -> endpoint 'continent_detail' (active chapters)
    Also creates BASE_PATH aliases without changing endpoint names used by templates.
    """
    store = deps["store"]

    def _alias(rule: str, view_func, methods=None, endpoint_suffix="alias"):
        if not base_path:
            return
        alias_rule = f"{base_path}{rule if rule.startswith('/') else '/' + rule}"
        endpoint = f"{view_func.__name__}_{endpoint_suffix}_{abs(hash(alias_rule))}"
        app.add_url_rule(alias_rule, endpoint=endpoint, view_func=view_func, methods=methods or ["GET"])

    # ----- Routes -----
    def index():
        return render_template(
            "home.html",
            continents=continents(),
            signed_in=bool(getattr(g, "user_id", None)),
        )

    def continent_detail(continent_id: str):
        continent = find_continent(continent_id)
        if not continent:
            abort(404)
        err = None
        try:
            chapters = store.list_chapters(continent_id)
        except Exception as e:
            print(f"[index] list_chapters failed for {continent_id}: {e}")
            chapters, err = [], "Chapters could not be loaded right now."
        for ch in chapters:
            ch["question_count"] = int(ch.get("question_count") or 0)
        return render_template(
            "continent.html",
            continent=continent,
            chapters=chapters,
            err=err,
        )

    app.add_url_rule("/", view_func=index, methods=["GET"], endpoint="index")
    _alias("/", index, ["GET"])

    app.add_url_rule("/quiz/<continent_id>", view_func=continent_detail, methods=["GET"],
                     endpoint="continent_detail")
    _alias("/quiz/<continent_id>", continent_detail, ["GET"])
