# quiz.py
# -----------------------------------------------------------------------------
# Chapter quiz player.
# - One question at a time; answer / hint / next are small JSON calls
# - Attempts live server-side in quiz_attempts, keyed by attempt_uid; the
#   session cookie only remembers which attempt belongs to which chapter
# - Questions are re-read from the store on every request and matched by id
# - The per-question countdown and the result pause are deadlines checked on
#   every call, so the page only has to poll /state
# - Saves are compare-and-set on the row version; a request that lost the race
#   replays its event on the fresh row
# - A completed attempt is written exactly once (session, answers, XP): only
#   the request that claims the attempt row records it
# -----------------------------------------------------------------------------

import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from flask import (
    Blueprint, request, jsonify, render_template, redirect, abort, flash, g, session,
)

from catalog_loader import find_continent
from quiz_session import QuizSessionController, RESULT_PAUSE_SECONDS
from session_recorder import record_completed_session

SESSION_KEY = "quiz"
SAVE_ATTEMPTS = 3


class AttemptUnavailable(Exception):
    """The stored attempt is gone or no longer matches the chapter's questions."""


def create_quiz_blueprint(base_path: str, deps: Dict[str, Any], name: str = "quiz") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at <base_path>/quiz.
    Required deps: store
    Optional deps: bp (path prefixer), clock, result_pause_seconds, render_rich
    """
    url_prefix = (base_path or "") + "/quiz"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    store = deps["store"]
    prefix: Callable[[str], str] = deps.get("bp") or (lambda p: (base_path or "") + p)
    clock: Callable[[], float] = deps.get("clock") or time.time
    result_pause = float(deps.get("result_pause_seconds") or RESULT_PAUSE_SECONDS)
    render_rich: Optional[Callable[[Optional[str]], Any]] = deps.get("render_rich")

    # ---- helpers -------------------------------------------------------------
    def _continent_url(continent: str) -> str:
        return prefix(f"/quiz/{continent}")

    def _quiz_url(continent: str, chapter_id: int) -> str:
        return prefix(f"/quiz/{continent}/{chapter_id}")

    def _login_redirect():
        full = request.full_path if request.query_string else request.path
        return redirect(f"{prefix('/login')}?next={quote(full, safe='/:?&=')}")

    def _chapter_or_404(continent: str, chapter_id: int) -> Dict[str, Any]:
        if not find_continent(continent):
            abort(404)
        chapter = store.fetch_chapter(chapter_id)
        if not chapter or chapter.get("continent") != continent:
            abort(404)
        return chapter

    def _attempt_uid(chapter_id: int) -> Optional[str]:
        ref = session.get(SESSION_KEY)
        if not isinstance(ref, dict) or ref.get("chapter_id") != chapter_id:
            return None
        return ref.get("attempt_uid") or None

    def _apply(uid: str, chapter_id: int, questions: List[Dict[str, Any]],
               event: Optional[Callable[[QuizSessionController], Any]] = None):
        """
        Load the attempt row, apply the clock and then ``event``, and save the row
        when anything changed. Returns (controller, event result).
        """
        for _ in range(SAVE_ATTEMPTS):
            row = store.fetch_attempt(uid)
            if not row or row.get("chapter_id") != chapter_id or row.get("student_id") != g.user_id:
                raise AttemptUnavailable("no active quiz for this chapter")
            ctrl = QuizSessionController.resume(questions, row["state"], clock=clock, result_pause=result_pause)
            if ctrl is None:
                raise AttemptUnavailable("quiz questions changed, please restart")
            ctrl.tick()
            result = event(ctrl) if event is not None else None
            state = ctrl.state.to_dict()
            if state == row["state"] or store.update_attempt(uid, state, row["version"]):
                return ctrl, result
            print(f"[quiz] attempt {uid} was saved concurrently; replaying")
        raise RuntimeError(f"attempt {uid} kept changing while saving")

    def _record_if_done(uid: str, questions: List[Dict[str, Any]], ctrl: QuizSessionController):
        if not ctrl.needs_recording:
            return
        if not store.claim_attempt_recording(uid):
            return  # another request owns the recording
        summary = ctrl.summary()
        result = record_completed_session(
            store,
            g.user_id,
            ctrl.state.chapter_id,
            summary["score"],
            summary["xp_gained"],
            summary["elapsed_ms"],
            ctrl.answer_entries(),
        )
        ctrl.mark_recorded(result.ok, result.session_id)
        _apply(uid, ctrl.state.chapter_id, questions,
               lambda c: c.mark_recorded(result.ok, result.session_id))

    def _load(continent: str, chapter_id: int,
              event: Optional[Callable[[QuizSessionController], Any]] = None) -> Tuple[Any, Any, Any]:
        """Resume this chapter's attempt and apply ``event``; (ctrl, result, error response)."""
        if not getattr(g, "user_id", None):
            return None, None, (jsonify({"ok": False, "error": "unauthorized"}), 401)
        chapter = store.fetch_chapter(chapter_id) if find_continent(continent) else None
        if not chapter or chapter.get("continent") != continent:
            return None, None, (jsonify({"ok": False, "error": "quiz not found"}), 404)
        uid = _attempt_uid(chapter_id)
        if uid is None:
            return None, None, (jsonify({"ok": False, "error": "no active quiz for this chapter"}), 409)
        questions = store.fetch_questions(chapter_id)
        try:
            ctrl, result = _apply(uid, chapter_id, questions, event)
        except AttemptUnavailable as e:
            session.pop(SESSION_KEY, None)
            return None, None, (jsonify({"ok": False, "error": str(e)}), 409)
        _record_if_done(uid, questions, ctrl)
        return ctrl, result, None

    def _start(chapter_id: int, questions: List[Dict[str, Any]]) -> QuizSessionController:
        ctrl = QuizSessionController.start(chapter_id, questions, clock=clock, result_pause=result_pause)
        uid = uuid.uuid4().hex
        store.create_attempt(uid, g.user_id, chapter_id, ctrl.state.to_dict())
        session[SESSION_KEY] = {"chapter_id": chapter_id, "attempt_uid": uid}
        print(f"[quiz] user {g.user_id} started chapter {chapter_id} ({ctrl.total} questions), attempt {uid}")
        return ctrl

    def _snapshot(ctrl: QuizSessionController) -> Dict[str, Any]:
        snap = ctrl.snapshot()
        if render_rich is not None:
            snap["question"]["text_html"] = str(render_rich(snap["question"].get("text")))
            if snap.get("last_result"):
                snap["last_result"] = dict(snap["last_result"])
                snap["last_result"]["explanation_html"] = str(render_rich(snap["last_result"].get("explanation")))
        return snap

    def _state_payload(ctrl: QuizSessionController, **extra) -> Dict[str, Any]:
        data = {"ok": True, "state": _snapshot(ctrl), "record_ok": ctrl.state.record_ok}
        data.update(extra)
        return data

    def _payload_index() -> Optional[int]:
        body = request.get_json(silent=True) or {}
        raw = body.get("index")
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    # --------------------------------- pages ----------------------------------
    @bp.get("/<continent>/<int:chapter_id>")
    def play(continent: str, chapter_id: int):
        if not getattr(g, "user_id", None):
            return _login_redirect()
        chapter = _chapter_or_404(continent, chapter_id)

        try:
            questions = store.fetch_questions(chapter_id)
        except Exception as e:
            print(f"[quiz] loading questions failed for chapter {chapter_id}: {e}")
            flash("Could not load this chapter's questions. Please try again.", "error")
            return redirect(_continent_url(continent))
        if not questions:
            flash("This chapter has no questions yet.", "info")
            return redirect(_continent_url(continent))

        try:
            ctrl = None
            uid = _attempt_uid(chapter_id)
            if uid is not None and request.args.get("restart") != "1":
                try:
                    ctrl, _ = _apply(uid, chapter_id, questions)
                except AttemptUnavailable as e:
                    print(f"[quiz] not resuming attempt {uid}: {e}")
                if ctrl is not None:
                    _record_if_done(uid, questions, ctrl)
                    if ctrl.is_completed:
                        ctrl = None  # finished attempt; replay
            if ctrl is None:
                ctrl = _start(chapter_id, questions)
        except Exception as e:
            print(f"[quiz] starting attempt failed for chapter {chapter_id}: {e}")
            flash("Could not start this quiz. Please try again.", "error")
            return redirect(_continent_url(continent))

        return render_template(
            "quiz.html",
            chapter=chapter,
            continent=find_continent(continent),
            state=_snapshot(ctrl),
            api_base=_quiz_url(continent, chapter_id),
            summary_url=_quiz_url(continent, chapter_id) + "/summary",
            back_url=_continent_url(continent),
        )

    @bp.get("/<continent>/<int:chapter_id>/summary")
    def summary(continent: str, chapter_id: int):
        if not getattr(g, "user_id", None):
            return _login_redirect()
        chapter = _chapter_or_404(continent, chapter_id)
        ctrl, _, err = _load(continent, chapter_id)
        if err is not None or not ctrl.is_completed:
            return redirect(_quiz_url(continent, chapter_id))
        return render_template(
            "quiz_summary.html",
            chapter=chapter,
            continent=find_continent(continent),
            summary=ctrl.summary(),
            record_ok=ctrl.state.record_ok,
            replay_url=_quiz_url(continent, chapter_id) + "?restart=1",
            back_url=_continent_url(continent),
            dashboard_url=prefix("/dashboard"),
        )

    # ---------------------------------- API -----------------------------------
    @bp.get("/<continent>/<int:chapter_id>/state")
    def state(continent: str, chapter_id: int):
        try:
            ctrl, _, err = _load(continent, chapter_id)
            if err is not None:
                return err
            return jsonify(_state_payload(ctrl))
        except Exception as e:
            print(f"[quiz] state failed for chapter {chapter_id}: {e}")
            return jsonify({"ok": False, "error": "internal error"}), 500

    @bp.post("/<continent>/<int:chapter_id>/answer")
    def answer(continent: str, chapter_id: int):
        try:
            body = request.get_json(silent=True) or {}
            index = _payload_index()
            ctrl, accepted, err = _load(continent, chapter_id,
                                        lambda c: c.select_answer(body.get("answer"), index))
            if err is not None:
                return err
            return jsonify(_state_payload(ctrl, accepted=accepted))
        except Exception as e:
            print(f"[quiz] answer failed for chapter {chapter_id}: {e}")
            return jsonify({"ok": False, "error": "internal error"}), 500

    @bp.post("/<continent>/<int:chapter_id>/hint")
    def hint(continent: str, chapter_id: int):
        try:
            index = _payload_index()
            ctrl, revealed, err = _load(continent, chapter_id, lambda c: c.reveal_hint(index))
            if err is not None:
                return err
            return jsonify(_state_payload(ctrl, hint=revealed, accepted=revealed is not None))
        except Exception as e:
            print(f"[quiz] hint failed for chapter {chapter_id}: {e}")
            return jsonify({"ok": False, "error": "internal error"}), 500

    @bp.post("/<continent>/<int:chapter_id>/next")
    def next_question(continent: str, chapter_id: int):
        try:
            index = _payload_index()
            ctrl, result, err = _load(continent, chapter_id, lambda c: c.advance(index))
            if err is not None:
                return err
            return jsonify(_state_payload(ctrl, accepted=result is not None))
        except Exception as e:
            print(f"[quiz] next failed for chapter {chapter_id}: {e}")
            return jsonify({"ok": False, "error": "internal error"}), 500

    return bp
