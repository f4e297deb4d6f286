# main.py: Exador Math, BASE_PATH-aware (psycopg3 + pooling)
# Students play chapter quizzes; coaches follow progress and import questions.

import os
import re
from contextlib import contextmanager
from functools import lru_cache
from urllib.parse import urlparse, parse_qs, unquote, quote, urlsplit, urlunsplit
from typing import Any, Dict, Optional

from flask import (
    Flask, render_template, abort, request, redirect, g, session, flash,
)
from markupsafe import Markup
from werkzeug.security import generate_password_hash, check_password_hash

import bleach
import markdown

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from admin import create_admin_blueprint
from dashboard import create_dashboard_blueprint
from home import register_home_routes
from quiz import create_quiz_blueprint
from catalog_loader import load_catalog
from store import QuizStore

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
ALLOW_SIGNUP = os.getenv("ALLOW_SIGNUP", "1").lower() in {"1", "true", "yes"}
ROLES = ("student", "coach")
MIN_PASSWORD_LENGTH = 6
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# =============================================================================
# OAuth (Google): supports base or full callback in OAUTH_REDIRECT_BASE
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

# =============================================================================
# DB configuration
# =============================================================================
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

SANITIZE_HTML = os.getenv("SANITIZE_HTML", "1").lower() in {"1", "true", "yes"}
QUIZ_RESULT_PAUSE_SECONDS = float(os.getenv("QUIZ_RESULT_PAUSE_SECONDS") or 2)

BLEACH_ALLOWED_TAGS = {
    "a", "b", "blockquote", "code", "em", "i", "li", "ol", "strong", "ul", "p",
    "pre", "br", "span", "sub", "sup", "table", "thead", "tbody", "tr", "th", "td",
}
BLEACH_ALLOWED_ATTRS = {"*": ["class"], "a": ["href", "title"]}

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # Normalize SA-style scheme to plain postgres for psycopg usage
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    host = (qs.get("host") or [p.hostname])[0]
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set when DATABASE_URL is absent.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    """DATABASE_URL when set, otherwise the discrete DB_* settings."""
    if DATABASE_URL:
        kwargs = _parse_database_url(DATABASE_URL)
        origin = "DATABASE_URL"
    else:
        kwargs = _tcp_kwargs()
        origin = "DB_* settings"
    print(f"[db] {origin}: {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}/{kwargs['dbname']}")
    return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=DB_POOL_MAX)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

store = QuizStore(fetch_one, fetch_all, execute, execute_returning)

_schema_ready = False

def ensure_schema_once():
    global _schema_ready
    if _schema_ready:
        return
    try:
        store.ensure_schema()
        _schema_ready = True
    except Exception as e:
        print(f"[db] schema bootstrap failed: {e}")

# =============================================================================
# Rendering helpers (Markdown for question text / explanations)
# =============================================================================
@lru_cache(maxsize=512)
def _render_rich_cached(text: str, sanitize_flag: bool) -> str:
    if not text:
        return ""
    html = markdown.markdown(text, extensions=["sane_lists", "tables"], output_format="html5")
    if sanitize_flag:
        html = bleach.clean(html, tags=BLEACH_ALLOWED_TAGS, attributes=BLEACH_ALLOWED_ATTRS, strip=True)
    return html

def render_rich(text: Optional[str]) -> Markup:
    if text is None:
        return Markup("")
    text_str = text if isinstance(text, str) else str(text)
    return Markup(_render_rich_cached(text_str, SANITIZE_HTML))

app.jinja_env.filters["rich"] = render_rich

# =============================================================================
# Identity helpers
# =============================================================================
def _session_user() -> Dict[str, Any]:
    u = session.get("user") or {}
    return u if isinstance(u, dict) else {}

def _start_session(profile: Dict[str, Any]):
    session["user"] = {
        "id": profile["id"],
        "email": (profile.get("email") or "").strip().lower(),
        "name": profile.get("name") or "",
        "role": profile.get("role") or "student",
    }

def _home_for_role(role: Optional[str]) -> str:
    return _bp("/dashboard/coach") if role == "coach" else _bp("/dashboard")

def _sanitize_next(next_url: Optional[str]) -> Optional[str]:
    if not next_url:
        return None
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return None
    path = parts.path or "/"
    blocked_prefixes = {_bp("/login"), _bp("/signup"), _bp("/auth"), "/login", "/signup", "/auth"}
    if any(path == p or path.startswith(p + "/") for p in blocked_prefixes):
        return None
    return urlunsplit(("", "", path, parts.query, "")) or None

def _validate_signup(email: str, password: str, confirm: str, role: str) -> Optional[str]:
    if not EMAIL_RE.match(email):
        return "Please enter a valid email address."
    if password != confirm:
        return "Passwords do not match."
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    if role not in ROLES:
        return "Unknown role."
    return None

# =============================================================================
# Jinja helpers
# =============================================================================
@app.context_processor
def inject_user_and_base():
    u = _session_user()
    return {
        "current_user_email": u.get("email"),
        "current_user_role": u.get("role"),
        "base_path": BASE_PATH,
        "bp": _bp,
        "app_title": load_catalog().get("app_title") or "Exador Math",
        "oauth_enabled": oauth is not None,
    }

# =============================================================================
# Routes (auth, health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

@app.route("/login", methods=["GET", "POST"])
def login():
    next_url = _sanitize_next(request.values.get("next"))
    error = None
    if request.method == "POST":
        email = (request.form.get("email") or "").strip().lower()
        password = request.form.get("password") or ""
        try:
            profile = store.get_profile_by_email(email) if email else None
        except Exception as e:
            print(f"[auth] profile lookup failed for {email}: {e}")
            profile = None
            error = "Sign-in is temporarily unavailable. Please try again."
        if profile and profile.get("password_hash") and check_password_hash(profile["password_hash"], password):
            _start_session(profile)
            return redirect(next_url or _home_for_role(profile.get("role")))
        error = error or "Incorrect email or password."
    return render_template("login.html", next_url=next_url or "", error=error)

@app.route("/signup", methods=["GET", "POST"])
def signup():
    if not ALLOW_SIGNUP:
        abort(404)
    role = (request.values.get("role") or "student").strip().lower()
    error = None
    if request.method == "POST":
        email = (request.form.get("email") or "").strip().lower()
        name = (request.form.get("name") or "").strip() or email.split("@", 1)[0]
        password = request.form.get("password") or ""
        error = _validate_signup(email, password, request.form.get("confirm_password") or "", role)
        if not error:
            try:
                if store.get_profile_by_email(email):
                    error = "An account already exists for this email."
                else:
                    uid = store.create_profile(email, name, role, generate_password_hash(password))
                    _start_session({"id": uid, "email": email, "name": name, "role": role})
                    flash("Account created.", "success")
                    return redirect(_home_for_role(role))
            except Exception as e:
                print(f"[auth] signup failed for {email}: {e}")
                error = "Something went wrong while creating your account."
    return render_template("signup.html", role=role, roles=ROLES, error=error)

@app.get("/logout")
def logout():
    session.clear()
    flash("Signed out.", "success")
    return redirect(_bp("/"))

@app.get("/auth/google")
def auth_google():
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

@app.get("/auth/google/callback")
def auth_google_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()
    claims = token.get("userinfo") or {}
    if not claims:
        try:
            claims = provider.google.userinfo() or {}
        except Exception as e:
            print(f"[auth] userinfo fetch failed: {e}")
            claims = {}

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    try:
        profile = store.get_profile_by_email(email)
        if not profile:
            name = claims.get("name") or email.split("@", 1)[0].replace(".", " ").title()
            uid = store.create_profile(email, name, "student")
            profile = {"id": uid, "email": email, "name": name, "role": "student"}
    except Exception as e:
        print(f"[auth] ensure profile failed for {email}: {e}")
        abort(503, description="Profile storage is unavailable.")

    _start_session(profile)
    next_url = _sanitize_next(session.pop("login_next", None))
    return redirect(next_url or _home_for_role(profile.get("role")))

# --- Register the SAME routes under BASE_PATH aliases (e.g., /math/login) ---
if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET", "POST"])
    app.add_url_rule(f"{BASE_PATH}/signup", endpoint="signup_bp", view_func=signup, methods=["GET", "POST"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/google", endpoint="auth_google_bp", view_func=auth_google, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/google/callback", endpoint="auth_google_callback_bp",
                     view_func=auth_google_callback, methods=["GET"])

def _is_public_path(path: str) -> bool:
    if path.startswith(STATIC_URL_PATH):
        return True
    public_exact = set()
    for p in ("/", "/favicon.ico", "/healthz", "/login", "/signup", "/logout"):
        public_exact.update({p, _bp(p)})
    if path in public_exact:
        return True
    return path.startswith("/auth/") or path.startswith(_bp("/auth/"))

def _is_api_path(path: str) -> bool:
    return request.method != "GET" or path.endswith("/state")

@app.before_request
def enforce_or_attach_identity():
    ensure_schema_once()
    u = _session_user()
    if u.get("id"):
        g.user_id = u["id"]
        g.user_email = u.get("email")
        g.user_role = u.get("role") or "student"
        g.user_name = u.get("name")
    path = request.path
    if _is_public_path(path) or getattr(g, "user_id", None) or not AUTH_REQUIRED:
        return
    if _is_api_path(path):
        return ({"ok": False, "error": "unauthorized"}, 401)
    full = request.full_path if request.query_string else request.path
    next_url = _sanitize_next(full) or _bp("/")
    return redirect(f"{_bp('/login')}?next={quote(next_url, safe='/:?&=')}")

# =============================================================================
# Page blueprints
# =============================================================================
_deps = {
    "store": store,
    "bp": _bp,
    "result_pause_seconds": QUIZ_RESULT_PAUSE_SECONDS,
    "render_rich": render_rich,
}
register_home_routes(app, BASE_PATH, _deps)
app.register_blueprint(create_quiz_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_dashboard_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_admin_blueprint(BASE_PATH, _deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
