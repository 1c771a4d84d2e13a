#!/usr/bin/env python3
"""
A single-file members' board: timeline, anonymous posts & novels,
diaries and a reading shelf.
"""

import calendar
import os
import re
import secrets
import sqlite3
import uuid
from collections import defaultdict, deque
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import boto3
import click
import markdown
import requests
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markdown.extensions import Extension
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "fukubun.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

POST_KINDS = ("timeline", "anonymous", "novel")
ANON_KINDS = ("anonymous", "novel")
RATINGS = ("bad", "good", "great")
USERNAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,32}$")
RESERVED_USERNAMES = {"edit"}
ISBN_RE = re.compile(r"^(?:\d{1,12}[\dX]|\d)$")

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_MAX_BYTES = 5 * 1024 * 1024
IMAGE_MIMES = {"image/png", "image/jpeg", "image/webp", "image/gif"}

TZ_DFLT = "Asia/Tokyo"
BOOKS_API_URL = "https://www.googleapis.com/books/v1/volumes"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_value(key: str, default: str | None = None) -> str | None:
    """Process environment first, then the .env file beside the package."""
    return os.environ.get(key) or _read_env_file().get(key) or default


try:
    __version__ = version("fukubun")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


class Conflict(Exception):
    """A uniqueness rule rejected the write; nothing was stored."""


class BookLookupError(Exception):
    """The book-metadata service could not be reached or answered garbage."""


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=env_value("FUKUBUN_DATABASE", str(DB_FILE)),
    SITE_NAME=env_value("SITE_NAME", "fukubun"),
    SITE_PASS=env_value("SITE_PASS"),
    TIMEZONE=env_value("TIMEZONE", TZ_DFLT),
    BOOKS_API_URL=env_value("BOOKS_API_URL", BOOKS_API_URL),
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=env_value("SESSION_COOKIE_SECURE", "1") != "0",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


class NoRawHtmlExtension(Extension):
    """Members write the text: raw HTML is escaped, never passed through."""

    def extendMarkdown(self, md):
        md.preprocessors.deregister("html_block")
        md.inlinePatterns.deregister("html")


MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.saneheaders",
    "nl2br",
]


def render_markdown(text: str | None) -> str:
    if not text:
        return ""
    # NoRawHtmlExtension last so it strips what the others registered
    return markdown.markdown(text, extensions=[*MD_EXTENSIONS, NoRawHtmlExtension()])


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown(text))


@app.template_filter("ts")
def ts_filter(value) -> str:
    dt = parse_ts(value)
    if dt is None:
        return ""
    return dt.astimezone(local_tz()).strftime("%Y.%m.%d %H:%M")


@app.template_filter("ago")
def ago_filter(value) -> str:
    return relative(utc_now(), value)


@app.template_filter("duration")
def duration_filter(seconds: int | None) -> str:
    """12345 → '3h 25m'"""
    seconds = int(seconds or 0)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts + follows
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            username      TEXT UNIQUE NOT NULL,
            name          TEXT NOT NULL DEFAULT '',
            password_hash TEXT NOT NULL,
            bio           TEXT NOT NULL DEFAULT '',
            icon          TEXT,
            created_at    TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS follow (
            user_id    INTEGER NOT NULL,
            username   TEXT NOT NULL,               -- the followed account
            created_at TEXT NOT NULL,
            PRIMARY KEY (user_id, username),
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_follow_username ON follow(username);

        ------------------------------------------------------------
        -- 2.  Posts (timeline | anonymous | novel)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            kind       TEXT NOT NULL
                       CHECK (kind IN ('timeline', 'anonymous', 'novel')),
            owner_id   INTEGER NOT NULL,
            username   TEXT,                        -- NULL unless timeline
            title      TEXT,
            message    TEXT NOT NULL DEFAULT '',
            image      TEXT,
            created_at TEXT NOT NULL,
            CHECK ((kind = 'timeline') = (username IS NOT NULL)),
            FOREIGN KEY (owner_id) REFERENCES user(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_post_kind ON post(kind, created_at);

        -- the like set; counts are always derived from it
        CREATE TABLE IF NOT EXISTS post_like (
            post_id  INTEGER NOT NULL,
            username TEXT NOT NULL,
            PRIMARY KEY (post_id, username),
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS comment (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            post_id    INTEGER NOT NULL,
            user_id    INTEGER NOT NULL,
            username   TEXT NOT NULL,
            message    TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (post_id, username),
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 3.  Per-member post collections
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS saved_post (
            user_id    INTEGER NOT NULL,
            post_id    INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (user_id, post_id),
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE,
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS viewed_post (
            id        INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id   INTEGER NOT NULL,
            post_id   INTEGER NOT NULL,
            viewed_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE,
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_viewed_user ON viewed_post(user_id, viewed_at);

        CREATE TABLE IF NOT EXISTS review (
            user_id     INTEGER NOT NULL,
            post_id     INTEGER NOT NULL,
            rating      TEXT NOT NULL CHECK (rating IN ('bad', 'good', 'great')),
            reviewed_at TEXT NOT NULL,
            PRIMARY KEY (user_id, post_id),
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE,
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 4.  Diaries (one per member per calendar day)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS diary (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id    INTEGER NOT NULL,
            title      TEXT NOT NULL DEFAULT '',
            content    TEXT NOT NULL CHECK (length(trim(content)) > 0),
            date       TEXT NOT NULL,               -- YYYY-MM-DD
            is_public  INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, date),
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_diary_public ON diary(is_public, date);

        ------------------------------------------------------------
        -- 5.  Reading shelf
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS shelf (
            id                    INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id               INTEGER NOT NULL,
            isbn                  TEXT NOT NULL,
            title                 TEXT NOT NULL DEFAULT '',
            authors               TEXT NOT NULL DEFAULT '',
            thumbnail             TEXT NOT NULL DEFAULT '',
            reading_note          TEXT NOT NULL DEFAULT '',
            review                TEXT NOT NULL DEFAULT '',
            created_at            TEXT NOT NULL,
            last_read_at          TEXT,
            total_reading_seconds INTEGER NOT NULL DEFAULT 0
                                  CHECK (total_reading_seconds >= 0),
            today_reading_seconds INTEGER NOT NULL DEFAULT 0
                                  CHECK (today_reading_seconds >= 0),
            is_reading            INTEGER NOT NULL DEFAULT 0,
            is_finished           INTEGER NOT NULL DEFAULT 0,
            finished_at           TEXT,
            UNIQUE (user_id, isbn),
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Storage format: UTC, second precision, so strings sort like instants."""
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_ts(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def tz_name() -> str:
    tz = app.config.get("TIMEZONE") or TZ_DFLT
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return TZ_DFLT
    return tz


def local_tz() -> ZoneInfo:
    return ZoneInfo(tz_name())


def local_today(now: datetime | None = None) -> date:
    return (now or utc_now()).astimezone(local_tz()).date()


def day_bounds(now: datetime, tz: ZoneInfo | None = None) -> tuple[str, str]:
    """
    Storage-format strings for the local calendar day holding *now*:
    ``start <= stamp < end`` ⇔ the stamp falls on that day.
    """
    tz = tz or local_tz()
    day = now.astimezone(tz).date()
    start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return iso(start), iso(end)


def relative(now: datetime, value, tz: ZoneInfo | None = None) -> str:
    """
    Listing timestamps: 'just now', 'N minutes ago', 'N hours ago',
    'N days ago' for the last week, then the local date (YYYY.MM.DD).
    """
    dt = parse_ts(value)
    if dt is None:
        return ""
    secs = (now - dt).total_seconds()
    if secs < 60:
        return "just now"
    for limit, unit_secs, unit in (
        (3600, 60, "minute"),
        (86400, 3600, "hour"),
        (86400 * 7, 86400, "day"),
    ):
        if secs < limit:
            n = int(secs // unit_secs)
            return f"{n} {unit}{'' if n == 1 else 's'} ago"
    return dt.astimezone(tz or local_tz()).strftime("%Y.%m.%d")


_DIARY_DATE_RE = re.compile(
    r"^\s*(\d{4})\s*(?:-|/|年)\s*(\d{1,2})\s*(?:-|/|月)\s*(\d{1,2})\s*日?\s*$"
)


def parse_diary_date(raw: str | None) -> date:
    """
    Accepts 2025-01-20, 2025/1/20 and 2025年1月20日.
    Anything else (including impossible days) raises ValueError.
    """
    m = _DIARY_DATE_RE.match(raw or "")
    if not m:
        raise ValueError(f"Unrecognised date {raw!r}")
    year, month, day = (int(x) for x in m.groups())
    return date(year, month, day)


###############################################################################
# CLI – schema + accounts
###############################################################################
def create_user(db, *, username: str, name: str, password: str) -> int:
    username = (username or "").strip()
    if not USERNAME_RE.match(username) or username.lower() in RESERVED_USERNAMES:
        raise ValueError("Usernames are 1–32 letters, digits, '_' or '-'.")
    if not password:
        raise ValueError("A password is required.")
    try:
        cur = db.execute(
            "INSERT INTO user (username, name, password_hash, created_at) "
            "VALUES (?,?,?,?)",
            (
                username,
                (name or "").strip() or username,
                generate_password_hash(password),
                iso(utc_now()),
            ),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise Conflict("That username is already taken.") from None
    db.commit()
    app.logger.info("Account @%s created", username)
    return cur.lastrowid


@app.cli.command("init")
def cli_init():
    """Create the database schema (no-op if it is already there)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\n{app.config['DATABASE']}\n")


@app.cli.command("create-user")
@click.option("--username", prompt=True, help="Login handle (letters, digits, _ or -)")
@click.option("--name", prompt=True, default="", help="Display name")
@click.password_option()
def cli_create_user(username: str, name: str, password: str):
    """Create a member account."""
    init_db()
    try:
        create_user(get_db(), username=username, name=name, password=password)
    except (ValueError, Conflict) as exc:
        raise click.ClickException(str(exc)) from None
    click.secho(f"\n✅  @{username.strip()} can now sign in at /login.", fg="green")


###############################################################################
# Config helpers – image storage
###############################################################################
def r2_config() -> dict[str, str]:
    cfg = {k: (env_value(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def store_upload(file, *, prefix: str) -> str | None:
    """
    Push an uploaded image to R2 and return its public URL.
    None when the form carried no file; ValueError when it cannot be stored.
    """
    if file is None or not file.filename:
        return None
    cfg = r2_config()
    if not r2_is_configured(cfg):
        raise ValueError("Image uploads are not configured.")
    mime = (file.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        raise ValueError("Only PNG, JPEG, WebP or GIF images are allowed.")

    ext = Path(secure_filename(file.filename)).suffix.lower()
    key = f"{prefix}/{utc_now().strftime('%Y/%m/%d')}/{uuid.uuid4().hex}{ext}"
    try:
        client = _r2_client(cfg)
        file.stream.seek(0)
        client.upload_fileobj(
            file.stream, cfg["R2_BUCKET"], key, ExtraArgs={"ContentType": mime}
        )
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed")
        raise ValueError("Upload failed – please try again later.") from None
    return r2_object_url(cfg, key)


###############################################################################
# Identity
###############################################################################
@app.before_request
def load_user():
    uid = session.get("user_id")
    g.user = (
        get_db().execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone()
        if uid
        else None
    )


def current_user():
    """The signed-in member's row (loaded once per request), or None."""
    return g.get("user")


def login_required():
    """Page routes: bounce anonymous visitors to the login form."""
    user = current_user()
    if user is None:
        abort(redirect(url_for("login")))
    return user


def api_user():
    """JSON routes: anonymous callers get a 401 instead of a redirect."""
    user = current_user()
    if user is None:
        resp = jsonify(error="not logged in")
        resp.status_code = 401
        abort(resp)
    return user


def _start_session(user_id: int) -> None:
    allowed = session.get("allowed")
    session.clear()
    session.permanent = True
    session["user_id"] = user_id
    session["csrf"] = secrets.token_hex(16)
    if allowed:
        session["allowed"] = True


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method in SAFE_METHODS:
                return view(*args, **kwargs)
            now = time()
            dq = hits[client_ip()]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many attempts – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def wants_json() -> bool:
    return "application/json" in (request.headers.get("Accept") or "")


def _payload() -> dict:
    """JSON body for fetch() callers, form fields otherwise."""
    return request.get_json(silent=True) or request.form.to_dict()


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "on", "yes"}


def _int_or_none(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _local_path(target: str | None, default: str) -> str:
    """Only follow redirects that stay on this site."""
    if not target:
        return default
    parsed = urlparse(target)
    if parsed.scheme or parsed.netloc:
        if parsed.netloc != request.host:
            return default
    path = parsed.path or "/"
    if not path.startswith("/"):
        path = "/" + path
    if path.startswith("//"):
        return default
    return path + (f"?{parsed.query}" if parsed.query else "")


def site_name() -> str:
    return app.config.get("SITE_NAME") or "fukubun"


# Expose helpers to templates
app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    current_user=current_user,
    site_name=site_name,
    ratings=RATINGS,
    version=__version__,
)


@app.before_request
def site_gate():
    """Optional shared pass phrase in front of the whole site."""
    if not app.config.get("SITE_PASS") or session.get("allowed"):
        return None
    if request.endpoint in ("gate", "static"):
        return None
    return redirect(url_for("gate"))


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ nobody signed in yet ⇒ allow (covers /login, /signup, /gate)
    if not session.get("user_id"):
        return

    # ➌ members must echo the session token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Rules – ownership, comments, likes, reviews
###############################################################################
def can_delete(actor, entity) -> bool:
    """
    Posts: the owner reference must match; timeline posts additionally
    need the author username to match.  Diaries / shelf entries: owner.
    """
    if actor is None or entity is None:
        return False
    keys = entity.keys()
    if "kind" in keys:
        if entity["owner_id"] != actor["id"]:
            return False
        if entity["kind"] == "timeline":
            return entity["username"] == actor["username"]
        return True
    return entity["user_id"] == actor["id"]


def can_comment(actor, commenters, message: str | None) -> tuple[bool, str | None]:
    """*commenters*: usernames that already commented on the post."""
    if actor is None:
        return False, "Sign in to comment."
    if not (message or "").lstrip():
        return False, "Comments cannot be empty."
    if actor["username"] in set(commenters):
        return False, "You already commented on this post."
    return True, None


def add_comment(db, actor, post_id: int, message: str | None, *, now=None) -> bool:
    commenters = [
        r["username"]
        for r in db.execute("SELECT username FROM comment WHERE post_id=?", (post_id,))
    ]
    allowed, _reason = can_comment(actor, commenters, message)
    if not allowed:
        return False
    # UNIQUE(post_id, username) settles concurrent double-posts
    cur = db.execute(
        "INSERT OR IGNORE INTO comment (post_id, user_id, username, message, created_at) "
        "VALUES (?,?,?,?,?)",
        (post_id, actor["id"], actor["username"], message.lstrip(), iso(now or utc_now())),
    )
    db.commit()
    return cur.rowcount == 1


def remove_comment(db, actor, post_id: int, comment_id: int) -> bool:
    cur = db.execute(
        "DELETE FROM comment WHERE id=? AND post_id=? AND username=?",
        (comment_id, post_id, actor["username"]),
    )
    db.commit()
    return cur.rowcount == 1


def like_count(db, post_id: int) -> int:
    return db.execute(
        "SELECT COUNT(*) FROM post_like WHERE post_id=?", (post_id,)
    ).fetchone()[0]


def toggle_like(db, post_id: int, actor) -> tuple[int, bool]:
    """Flip the actor's like; returns (likes, is_liked) after the flip."""
    username = actor["username"]
    # both statements share one write transaction
    cur = db.execute(
        "DELETE FROM post_like WHERE post_id=? AND username=?", (post_id, username)
    )
    if cur.rowcount == 0:
        db.execute(
            "INSERT OR IGNORE INTO post_like (post_id, username) VALUES (?,?)",
            (post_id, username),
        )
    db.commit()
    is_liked = (
        db.execute(
            "SELECT 1 FROM post_like WHERE post_id=? AND username=?", (post_id, username)
        ).fetchone()
        is not None
    )
    return like_count(db, post_id), is_liked


def set_rating(db, actor, post_id: int, rating: str, *, now=None) -> None:
    if rating not in RATINGS:
        raise ValueError(f"rating must be one of {', '.join(RATINGS)}")
    db.execute(
        """
        INSERT INTO review (user_id, post_id, rating, reviewed_at) VALUES (?,?,?,?)
        ON CONFLICT(user_id, post_id)
        DO UPDATE SET rating=excluded.rating, reviewed_at=excluded.reviewed_at
        """,
        (actor["id"], post_id, rating, iso(now or utc_now())),
    )
    db.commit()


def toggle_follow(db, actor, username: str, *, follow: bool) -> bool:
    if follow:
        if username == actor["username"]:
            return False
        if not db.execute("SELECT 1 FROM user WHERE username=?", (username,)).fetchone():
            return False
        cur = db.execute(
            "INSERT OR IGNORE INTO follow (user_id, username, created_at) VALUES (?,?,?)",
            (actor["id"], username, iso(utc_now())),
        )
    else:
        cur = db.execute(
            "DELETE FROM follow WHERE user_id=? AND username=?", (actor["id"], username)
        )
    db.commit()
    return cur.rowcount == 1


###############################################################################
# Posts + visibility
###############################################################################
_POST_SELECT = """
    SELECT p.id, p.kind, p.owner_id, p.username, p.title, p.message,
           p.image, p.created_at,
           u.name AS author_name, u.icon AS author_icon,
           (SELECT COUNT(*) FROM post_like l WHERE l.post_id = p.id) AS likes,
           EXISTS (SELECT 1 FROM post_like l
                    WHERE l.post_id = p.id AND l.username = :me) AS is_liked,
           (SELECT COUNT(*) FROM comment c WHERE c.post_id = p.id) AS comment_count,
           EXISTS (SELECT 1 FROM comment c
                    WHERE c.post_id = p.id AND c.username = :me) AS already_commented,
           EXISTS (SELECT 1 FROM saved_post s
                    WHERE s.post_id = p.id AND s.user_id = :me_id) AS is_saved,
           (SELECT r.rating FROM review r
             WHERE r.post_id = p.id AND r.user_id = :me_id) AS my_rating
      FROM post p
      JOIN user u ON u.id = p.owner_id
"""
_AUTHOR_FIELDS = ("owner_id", "username", "author_name", "author_icon")


def _viewer_params(viewer, **extra) -> dict:
    return {"me": viewer["username"], "me_id": viewer["id"], **extra}


def present_post(row, viewer) -> dict:
    """Row → template dict; anonymous kinds lose every author field."""
    post = dict(row)
    for flag in ("is_liked", "already_commented", "is_saved"):
        post[flag] = bool(post.get(flag))
    post["deletable"] = can_delete(viewer, row)
    if post["kind"] in ANON_KINDS:
        for key in _AUTHOR_FIELDS:
            post.pop(key, None)
    return post


def list_visible(db, viewer, kind: str) -> list[dict]:
    """
    Every post of *kind*: timeline newest first; anonymous / novel in a
    fresh random order each call.
    """
    if kind not in POST_KINDS:
        raise ValueError(f"unknown post kind {kind!r}")
    order = "p.created_at DESC, p.id DESC" if kind == "timeline" else "RANDOM()"
    rows = db.execute(
        _POST_SELECT + f" WHERE p.kind = :kind ORDER BY {order}",
        _viewer_params(viewer, kind=kind),
    ).fetchall()
    return [present_post(r, viewer) for r in rows]


def get_post(db, viewer, post_id: int, *, kind: str | None = None) -> dict | None:
    sql = _POST_SELECT + " WHERE p.id = :post_id"
    if kind:
        sql += " AND p.kind = :kind"
    row = db.execute(sql, _viewer_params(viewer, post_id=post_id, kind=kind)).fetchone()
    return present_post(row, viewer) if row else None


def post_exists(db, post_id: int, *, kind: str | None = None) -> bool:
    sql, params = "SELECT 1 FROM post WHERE id=?", [post_id]
    if kind:
        sql += " AND kind=?"
        params.append(kind)
    return db.execute(sql, params).fetchone() is not None


def create_post(
    db, actor, *, kind: str, message: str | None, title: str | None = None,
    image: str | None = None, now=None,
) -> int:
    if kind not in POST_KINDS:
        raise ValueError(f"unknown post kind {kind!r}")
    message = (message or "").strip()
    if not message and not image:
        raise ValueError("Write something first.")
    cur = db.execute(
        "INSERT INTO post (kind, owner_id, username, title, message, image, created_at) "
        "VALUES (?,?,?,?,?,?,?)",
        (
            kind,
            actor["id"],
            actor["username"] if kind == "timeline" else None,
            (title or "").strip() or None,
            message,
            image,
            iso(now or utc_now()),
        ),
    )
    db.commit()
    return cur.lastrowid


def delete_post(db, actor, post_id: int, *, kinds: tuple[str, ...]) -> int:
    """Remove a post the actor owns. Returns 200, 403 or 404."""
    q_marks = ",".join("?" * len(kinds))
    row = db.execute(
        f"SELECT id, kind, owner_id, username FROM post WHERE id=? AND kind IN ({q_marks})",
        (post_id, *kinds),
    ).fetchone()
    if row is None:
        return 404
    if not can_delete(actor, row):
        return 403
    cur = db.execute(
        "DELETE FROM post WHERE id=? AND owner_id=?", (post_id, actor["id"])
    )
    db.commit()
    if cur.rowcount == 0:
        return 404
    app.logger.info("Post %s (%s) deleted by @%s", post_id, row["kind"], actor["username"])
    return 200


def post_comments(db, post_id: int):
    return db.execute(
        """
        SELECT c.id, c.username, c.message, c.created_at,
               u.name AS author_name, u.icon AS author_icon
          FROM comment c JOIN user u ON u.id = c.user_id
         WHERE c.post_id = ?
         ORDER BY c.created_at, c.id
        """,
        (post_id,),
    ).fetchall()


def record_view(db, actor, post_id: int, *, now=None) -> None:
    db.execute(
        "INSERT INTO viewed_post (user_id, post_id, viewed_at) VALUES (?,?,?)",
        (actor["id"], post_id, iso(now or utc_now())),
    )
    db.commit()


def forget_view(db, actor, post_id: int) -> bool:
    """Drop the most recent view of *post_id* from the actor's log."""
    cur = db.execute(
        """
        DELETE FROM viewed_post WHERE id = (
            SELECT id FROM viewed_post
             WHERE user_id=? AND post_id=?
             ORDER BY viewed_at DESC, id DESC LIMIT 1)
        """,
        (actor["id"], post_id),
    )
    db.commit()
    return cur.rowcount == 1


###############################################################################
# Diaries
###############################################################################
def visible_diaries(db, viewer, *, day: str | None = None):
    """Public entries plus the viewer's own private ones."""
    sql = """
        SELECT d.*, u.username AS author_username, u.name AS author_name
          FROM diary d JOIN user u ON u.id = d.user_id
         WHERE (d.is_public = 1 OR d.user_id = ?)
    """
    params: list = [viewer["id"]]
    if day:
        sql += " AND d.date = ?"
        params.append(day)
    sql += " ORDER BY d.date DESC, d.created_at DESC, d.id DESC"
    return db.execute(sql, params).fetchall()


def get_visible_diary(db, viewer, diary_id: int):
    """None for missing *and* for someone else's private entry."""
    row = db.execute(
        """
        SELECT d.*, u.username AS author_username, u.name AS author_name
          FROM diary d JOIN user u ON u.id = d.user_id
         WHERE d.id = ?
        """,
        (diary_id,),
    ).fetchone()
    if row is None or not (row["is_public"] or row["user_id"] == viewer["id"]):
        return None
    return row


def _diary_fields(title, content, raw_date) -> tuple[str, str, str]:
    if not (content or "").strip():
        raise ValueError("Please write something in the diary.")
    try:
        day = parse_diary_date(raw_date).isoformat()
    except ValueError:
        raise ValueError("Please pick a valid date.") from None
    return (title or "").strip(), content, day


def create_diary(db, actor, *, title, content, raw_date, is_public: bool, now=None) -> int:
    title, content, day = _diary_fields(title, content, raw_date)
    stamp = iso(now or utc_now())
    try:
        cur = db.execute(
            "INSERT INTO diary (user_id, title, content, date, is_public, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (actor["id"], title, content, day, int(is_public), stamp, stamp),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise Conflict("There is already a diary for that date.") from None
    db.commit()
    return cur.lastrowid


def update_diary(db, actor, diary_id: int, *, title, content, raw_date, is_public: bool) -> bool:
    """False when the entry is not the actor's (or gone)."""
    title, content, day = _diary_fields(title, content, raw_date)
    try:
        cur = db.execute(
            "UPDATE diary SET title=?, content=?, date=?, is_public=?, updated_at=? "
            "WHERE id=? AND user_id=?",
            (title, content, day, int(is_public), iso(utc_now()), diary_id, actor["id"]),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise Conflict("There is already a diary for that date.") from None
    db.commit()
    return cur.rowcount == 1


def delete_diary(db, actor, diary_id: int) -> bool:
    cur = db.execute("DELETE FROM diary WHERE id=? AND user_id=?", (diary_id, actor["id"]))
    db.commit()
    return cur.rowcount == 1


def month_grid(month: date) -> list[list[date]]:
    """Sunday-first weeks covering *month*."""
    return calendar.Calendar(firstweekday=6).monthdatescalendar(month.year, month.month)


def _month_arg(raw: str | None, today: date) -> date:
    """First day of ``YYYY-MM``; the current month when unusable."""
    try:
        year, mon = (int(x) for x in (raw or "").split("-"))
        month = date(year, mon, 1)
    except ValueError:
        return today.replace(day=1)
    # prev / next month links must stay representable
    if not date.min.year < month.year < date.max.year:
        return today.replace(day=1)
    return month


###############################################################################
# Reading shelf
###############################################################################
# keep today's counter only while last_read_at is inside [?, ?)
_TODAY_KEEP_SQL = """
    CASE WHEN last_read_at >= ? AND last_read_at < ?
         THEN today_reading_seconds ELSE 0 END
"""


def normalize_isbn(raw: str | None) -> str:
    isbn = re.sub(r"[\s-]", "", raw or "").upper()
    if not ISBN_RE.match(isbn):
        raise ValueError("ISBNs are digits (the last one may be X).")
    return isbn


def lookup_isbn(isbn: str) -> dict | None:
    """
    Title / authors / thumbnail from Google Books, or None if unknown.
    Network, HTTP and JSON failures raise BookLookupError.
    """
    try:
        resp = requests.get(
            app.config["BOOKS_API_URL"],
            params={"q": f"isbn:{isbn}", "country": "JP"},
            timeout=5,
            headers={"Accept": "application/json"},
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise BookLookupError(f"Cannot look up ISBN {isbn} – {exc}") from None
    if not isinstance(data, dict):
        raise BookLookupError(f"Cannot look up ISBN {isbn} – unexpected payload")

    items = data.get("items") or []
    if not items:
        return None
    info = items[0].get("volumeInfo") or {}
    return {
        "title": info.get("title") or isbn,
        "authors": ", ".join(info.get("authors") or []),
        "thumbnail": (info.get("imageLinks") or {}).get("thumbnail", ""),
    }


def shelf_has_isbn(db, actor, isbn: str) -> bool:
    return (
        db.execute(
            "SELECT 1 FROM shelf WHERE user_id=? AND isbn=?", (actor["id"], isbn)
        ).fetchone()
        is not None
    )


def create_shelf_entry(db, actor, isbn: str, book: dict, *, now=None) -> int:
    try:
        cur = db.execute(
            "INSERT INTO shelf (user_id, isbn, title, authors, thumbnail, created_at) "
            "VALUES (?,?,?,?,?,?)",
            (
                actor["id"],
                isbn,
                book.get("title") or "",
                book.get("authors") or "",
                book.get("thumbnail") or "",
                iso(now or utc_now()),
            ),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise Conflict("That book is already on your shelf.") from None
    db.commit()
    return cur.lastrowid


def get_shelf_entry(db, actor, shelf_id: int):
    return db.execute(
        "SELECT * FROM shelf WHERE id=? AND user_id=?", (shelf_id, actor["id"])
    ).fetchone()


def add_reading_time(db, actor, shelf_id: int, seconds: int, *, now=None):
    """
    Credit *seconds* of reading to a shelf entry in one UPDATE.

    The daily counter restarts when the previous read happened on another
    local calendar day (or never).  Returns the updated row, None if the
    entry is not the actor's.
    """
    if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
        raise ValueError("seconds must be a positive integer")
    now = now or utc_now()
    start, end = day_bounds(now)
    cur = db.execute(
        f"""
        UPDATE shelf
           SET today_reading_seconds = {_TODAY_KEEP_SQL} + ?,
               total_reading_seconds = total_reading_seconds + ?,
               last_read_at = ?
         WHERE id = ? AND user_id = ?
        """,
        (start, end, seconds, seconds, iso(now), shelf_id, actor["id"]),
    )
    db.commit()
    if cur.rowcount == 0:
        return None
    return get_shelf_entry(db, actor, shelf_id)


def touch_last_read(db, actor, shelf_id: int, *, now=None) -> bool:
    now = now or utc_now()
    start, end = day_bounds(now)
    cur = db.execute(
        f"UPDATE shelf SET today_reading_seconds = {_TODAY_KEEP_SQL}, last_read_at = ? "
        "WHERE id = ? AND user_id = ?",
        (start, end, iso(now), shelf_id, actor["id"]),
    )
    db.commit()
    return cur.rowcount == 1


def set_reading_state(db, actor, shelf_id: int, reading: bool) -> bool:
    """Finished books stay finished: returns False for those (and strangers)."""
    cur = db.execute(
        "UPDATE shelf SET is_reading=? WHERE id=? AND user_id=? AND is_finished=0",
        (int(reading), shelf_id, actor["id"]),
    )
    db.commit()
    return cur.rowcount == 1


def finish_reading(db, actor, shelf_id: int, *, now=None) -> bool:
    now = now or utc_now()
    start, end = day_bounds(now)
    cur = db.execute(
        f"""
        UPDATE shelf
           SET today_reading_seconds = {_TODAY_KEEP_SQL},
               is_reading = 0,
               is_finished = 1,
               finished_at = COALESCE(finished_at, ?),
               last_read_at = ?
         WHERE id = ? AND user_id = ?
        """,
        (start, end, iso(now), iso(now), shelf_id, actor["id"]),
    )
    db.commit()
    return cur.rowcount == 1


def reading_summary(db, actor, *, now=None) -> dict[str, int]:
    start, end = day_bounds(now or utc_now())
    row = db.execute(
        """
        SELECT COALESCE(SUM(total_reading_seconds), 0) AS total,
               COALESCE(SUM(CASE WHEN last_read_at >= ? AND last_read_at < ?
                                 THEN today_reading_seconds ELSE 0 END), 0) AS today
          FROM shelf WHERE user_id = ?
        """,
        (start, end, actor["id"]),
    ).fetchone()
    return {"total": row["total"], "today": row["today"]}


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="ja">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
{% if csrf_token() %}<meta name="csrf-token" content="{{ csrf_token() }}">{% endif %}
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI","Hiragino Sans","Noto Sans JP",sans-serif;max-width:40em;margin:auto;padding:13px;line-height:1.6;color:#2b2b2b;background:#faf8f5}
a{color:#6b4f3a}
nav{display:flex;gap:1rem;flex-wrap:wrap;margin-bottom:1rem;font-size:.9em}
article{border-bottom:1px solid #e5ded6;padding:.8rem 0}
.meta{color:#8a8077;font-size:.8em}
.flash{background:#fff3cd;padding:.4rem .8rem;border-radius:4px}
.error{background:#fde2e1;padding:.4rem .8rem;border-radius:4px}
textarea,input[type=text],input[type=password],input[type=date]{width:100%;box-sizing:border-box;padding:6px 10px;margin-bottom:10px}
textarea{min-height:8rem}
button{cursor:pointer}
.like-btn{background:none;border:none;font-size:1em;padding:0}
.avatar{width:24px;height:24px;border-radius:50%;vertical-align:middle}
.cover{max-width:96px;height:auto;float:right;margin-left:1rem}
.post-image{max-width:100%;height:auto}
.calendar{width:100%;border-collapse:collapse}
.calendar td{text-align:center;vertical-align:top;height:3rem;border:1px solid #eee}
.calendar td.out{color:#ccc}
.inline{display:inline}
</style>
<body>
{% macro csrf_field() -%}
  {% if csrf_token() %}<input type="hidden" name="csrf" value="{{ csrf_token() }}">{% endif %}
{%- endmacro %}
{% macro like_button(p) -%}
  <button type="button" class="like-btn" data-id="{{ p['id'] }}">{% if p['is_liked'] %}♥{% else %}♡{% endif %} <span>{{ p['likes'] }}</span></button>
{%- endmacro %}
{% set me = current_user() %}
{% if me %}
<nav>
  <a href="{{ url_for('timeline') }}">Timeline</a>
  <a href="{{ url_for('tokumei') }}">Tokumei</a>
  <a href="{{ url_for('tokumei_novel') }}">Novels</a>
  <a href="{{ url_for('diary') }}">Diary</a>
  <a href="{{ url_for('reads') }}">Reads</a>
  <a href="{{ url_for('profile') }}">@{{ me['username'] }}</a>
  <a href="{{ url_for('logout') }}">Log out</a>
</nav>
{% endif %}
{% with msgs = get_flashed_messages() %}
  {% if msgs %}<div class="flash">{% for m in msgs %}<p>{{ m }}</p>{% endfor %}</div>{% endif %}
{% endwith %}
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<script>
(() => {
  const meta = document.querySelector('meta[name="csrf-token"]');
  window.fukubunPost = (url, body) => {
    const headers = {"Content-Type": "application/json", "Accept": "application/json"};
    if (meta) headers["X-CSRFToken"] = meta.content;
    return fetch(url, {method: "POST", headers, body: JSON.stringify(body || {})});
  };
  document.addEventListener("click", async (e) => {
    const btn = e.target.closest(".like-btn");
    if (!btn) return;
    const res = await window.fukubunPost(`/like/${btn.dataset.id}`);
    if (res.ok) btn.innerHTML = (await res.json()).html;
  });
})();
</script>
<footer class="meta" style="margin-top:2rem;">{{ site_name() }} {{ version }}</footer>
</body>
</html>
"""

LIKE_BUTTON_INNER = "{% if is_liked %}♥{% else %}♡{% endif %} <span>{{ likes }}</span>"


###############################################################################
# Gate + Authentication
###############################################################################
@app.route("/")
def home():
    if current_user():
        return redirect(url_for("timeline"))
    return redirect(url_for("login"))


@app.route("/gate", methods=["GET", "POST"])
@rate_limit(max_requests=10, window=60)
def gate():
    error = None
    if request.method == "POST":
        expected = (app.config.get("SITE_PASS") or "").encode()
        sent = request.form.get("pass", "").encode()
        if expected and secrets.compare_digest(expected, sent):
            session["allowed"] = True
            return redirect(url_for("home"))
        error = "Wrong pass phrase."
    return render_template_string(TEMPL_GATE, title=site_name(), error=error), (
        401 if error else 200
    )


TEMPL_GATE = wrap("""
<h2>{{ site_name() }}</h2>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post">
  {{ csrf_field() }}
  <input type="password" name="pass" placeholder="pass phrase" autocomplete="off">
  <button>Enter</button>
</form>
""")


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=10, window=60)
def login():
    error = None
    username = request.form.get("username", "").strip()
    if request.method == "POST":
        row = get_db().execute(
            "SELECT * FROM user WHERE username=?", (username,)
        ).fetchone()
        if row is None:
            error = "No such user."
        elif not check_password_hash(row["password_hash"], request.form.get("password", "")):
            error = "Wrong password."
        else:
            _start_session(row["id"])
            return redirect(url_for("timeline"))
    return render_template_string(
        TEMPL_LOGIN, title="Log in", error=error, username=username
    ), (401 if error else 200)


TEMPL_LOGIN = wrap("""
<h2>Log in</h2>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post">
  {{ csrf_field() }}
  <input type="text" name="username" value="{{ username }}" placeholder="username" autocomplete="username">
  <input type="password" name="password" placeholder="password" autocomplete="current-password">
  <button>Log in</button>
</form>
<p class="meta">No account yet? <a href="{{ url_for('signup') }}">Sign up</a></p>
""")


@app.route("/signup", methods=["GET", "POST"])
@rate_limit(max_requests=10, window=60)
def signup():
    error, status = None, 200
    form = {k: request.form.get(k, "") for k in ("name", "username")}
    if request.method == "POST":
        try:
            uid = create_user(
                get_db(),
                username=form["username"],
                name=form["name"],
                password=request.form.get("password", ""),
            )
        except ValueError as exc:
            error, status = str(exc), 400
        except Conflict as exc:
            error, status = str(exc), 409
        else:
            _start_session(uid)
            return redirect(url_for("profile"))
    return render_template_string(
        TEMPL_SIGNUP, title="Sign up", error=error, form=form
    ), status


TEMPL_SIGNUP = wrap("""
<h2>Sign up</h2>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post">
  {{ csrf_field() }}
  <input type="text" name="name" value="{{ form.name }}" placeholder="display name">
  <input type="text" name="username" value="{{ form.username }}" placeholder="username">
  <input type="password" name="password" placeholder="password" autocomplete="new-password">
  <button>Create account</button>
</form>
<p class="meta">Already a member? <a href="{{ url_for('login') }}">Log in</a></p>
""")


@app.route("/logout")
def logout():
    allowed = session.get("allowed")
    session.clear()
    if allowed:
        session["allowed"] = True
    return redirect(url_for("login"))


###############################################################################
# Timeline
###############################################################################
@app.route("/timeline")
def timeline():
    user = login_required()
    posts = list_visible(get_db(), user, "timeline")
    return render_template_string(TEMPL_TIMELINE, title="Timeline", posts=posts)


TEMPL_TIMELINE = wrap("""
<h2>Timeline</h2>
<p><a href="{{ url_for('new_post') }}">＋ New post</a></p>
{% for p in posts %}
  <article>
    <div class="meta">
      {% if p.author_icon %}<img class="avatar" src="{{ p.author_icon }}" alt="">{% endif %}
      <a href="{{ url_for('profile_other', username=p.username) }}">{{ p.author_name }}</a>
      @{{ p.username }} · <a href="{{ url_for('timeline_detail', post_id=p.id) }}">{{ p.created_at|ago }}</a>
    </div>
    <div>{{ p.message }}</div>
    {% if p.image %}<img class="post-image" src="{{ p.image }}" alt="">{% endif %}
    <div class="meta">
      {{ like_button(p) }} · 💬 {{ p.comment_count }}{% if p.already_commented %} (commented){% endif %}
      {% if p.deletable %}
      · <form method="post" action="{{ url_for('delete_timeline_post', post_id=p.id) }}" class="inline">
          {{ csrf_field() }}<button>Delete</button>
        </form>
      {% endif %}
    </div>
  </article>
{% else %}
  <p>No posts yet.</p>
{% endfor %}
""")


@app.route("/timeline/post/<int:post_id>")
def timeline_detail(post_id):
    user = login_required()
    db = get_db()
    post = get_post(db, user, post_id, kind="timeline")
    if post is None:
        abort(404)
    return render_template_string(
        TEMPL_POST_DETAIL,
        title="Post",
        p=post,
        comments=post_comments(db, post_id),
        back=_local_path(request.args.get("from"), url_for("timeline")),
    )


TEMPL_POST_DETAIL = wrap("""
<p><a href="{{ back }}">← Back</a></p>
<article>
  <div class="meta">
    {% if p.author_icon %}<img class="avatar" src="{{ p.author_icon }}" alt="">{% endif %}
    <a href="{{ url_for('profile_other', username=p.username) }}">{{ p.author_name }}</a>
    @{{ p.username }} · {{ p.created_at|ts }}
  </div>
  <div>{{ p.message }}</div>
  {% if p.image %}<img class="post-image" src="{{ p.image }}" alt="">{% endif %}
  <div class="meta">{{ like_button(p) }}</div>
</article>
<h3>Comments</h3>
{% for c in comments %}
  <article>
    <div class="meta">{{ c['author_name'] }} @{{ c['username'] }} · {{ c['created_at']|ago }}
      {% if me and c['username'] == me['username'] %}
      <form method="post" action="{{ url_for('delete_comment', post_id=p.id, comment_id=c['id']) }}" class="inline">
        {{ csrf_field() }}<button>Delete</button>
      </form>
      {% endif %}
    </div>
    <div>{{ c['message'] }}</div>
  </article>
{% else %}
  <p class="meta">No comments yet.</p>
{% endfor %}
{% if not p.already_commented %}
<form method="post" action="{{ url_for('comment', post_id=p.id) }}">
  {{ csrf_field() }}
  <textarea name="message" placeholder="One comment per member"></textarea>
  <button>Comment</button>
</form>
{% endif %}
""")


@app.route("/post", methods=["GET", "POST"])
def new_post():
    user = login_required()
    return _post_form(user, "timeline")


def _post_form(user, kind: str):
    """Shared create form for timeline / anonymous / novel posts."""
    targets = {"timeline": "timeline", "anonymous": "tokumei", "novel": "tokumei_novel"}
    form = {k: request.form.get(k, "") for k in ("title", "message", "redirect")}
    if request.method == "POST":
        try:
            image = store_upload(request.files.get("image"), prefix=f"posts/{kind}")
            create_post(
                get_db(),
                user,
                kind=kind,
                title=form["title"] if kind in ANON_KINDS else None,
                message=form["message"],
                image=image,
            )
        except ValueError as exc:
            flash(str(exc))
            return render_template_string(
                TEMPL_POST_FORM, title="New post", kind=kind, form=form
            ), 400
        if form["redirect"] == "profile":
            return redirect(url_for("profile"))
        return redirect(url_for(targets[kind]))
    form["redirect"] = request.args.get("from", "")
    return render_template_string(TEMPL_POST_FORM, title="New post", kind=kind, form=form)


TEMPL_POST_FORM = wrap("""
<h2>{% if kind == 'timeline' %}New post{% elif kind == 'novel' %}New novel{% else %}New anonymous post{% endif %}</h2>
<form method="post" enctype="multipart/form-data">
  {{ csrf_field() }}
  <input type="hidden" name="redirect" value="{{ form.redirect }}">
  {% if kind != 'timeline' %}
    <input type="text" name="title" value="{{ form.title }}" placeholder="title">
  {% endif %}
  <textarea name="message" placeholder="{% if kind == 'novel' %}Markdown welcome{% else %}What's up?{% endif %}">{{ form.message }}</textarea>
  <input type="file" name="image" accept="image/png,image/jpeg,image/webp,image/gif">
  <button>Post</button>
</form>
""")


@app.route("/delete/<int:post_id>", methods=["POST"])
def delete_timeline_post(post_id):
    user = current_user()
    if user is None:
        if wants_json():
            return jsonify(success=False, message="login required"), 401
        return redirect(url_for("login"))

    status = delete_post(get_db(), user, post_id, kinds=("timeline",))
    if wants_json():
        return jsonify(success=status == 200), status
    if status != 200:
        abort(status)
    return redirect(_local_path(request.form.get("redirect"), url_for("timeline")))


@app.route("/comment/<int:post_id>", methods=["POST"])
def comment(post_id):
    user = login_required()
    db = get_db()
    # comments only exist on timeline posts
    if not post_exists(db, post_id, kind="timeline"):
        abort(404)
    # empty and duplicate comments are silently dropped
    add_comment(db, user, post_id, request.form.get("message"))
    return redirect(
        _local_path(
            request.form.get("redirect"), url_for("timeline_detail", post_id=post_id)
        )
    )


@app.route("/comment/delete/<int:post_id>/<int:comment_id>", methods=["POST"])
def delete_comment(post_id, comment_id):
    user = login_required()
    remove_comment(get_db(), user, post_id, comment_id)
    return redirect(url_for("timeline_detail", post_id=post_id))


@app.route("/like/<int:post_id>", methods=["POST"])
def like(post_id):
    user = api_user()
    db = get_db()
    if not post_exists(db, post_id):
        return jsonify(error="not found"), 404
    likes, is_liked = toggle_like(db, post_id, user)
    html = render_template_string(LIKE_BUTTON_INNER, likes=likes, is_liked=is_liked)
    return jsonify(likes=likes, isLiked=is_liked, html=html)


###############################################################################
# Profiles + follows
###############################################################################
def _render_profile(viewer, profile_user):
    db = get_db()
    rows = db.execute(
        _POST_SELECT
        + " WHERE p.kind = 'timeline' AND p.owner_id = :owner"
        " ORDER BY p.created_at DESC, p.id DESC",
        _viewer_params(viewer, owner=profile_user["id"]),
    ).fetchall()
    following = db.execute(
        "SELECT COUNT(*) FROM follow WHERE user_id=?", (profile_user["id"],)
    ).fetchone()[0]
    followers = db.execute(
        "SELECT COUNT(*) FROM follow WHERE username=?", (profile_user["username"],)
    ).fetchone()[0]
    is_following = (
        db.execute(
            "SELECT 1 FROM follow WHERE user_id=? AND username=?",
            (viewer["id"], profile_user["username"]),
        ).fetchone()
        is not None
    )
    return render_template_string(
        TEMPL_PROFILE,
        title=f"@{profile_user['username']}",
        u=profile_user,
        posts=[present_post(r, viewer) for r in rows],
        is_self=viewer["id"] == profile_user["id"],
        following_count=following,
        follower_count=followers,
        is_following=is_following,
    )


TEMPL_PROFILE = wrap("""
<h2>
  {% if u['icon'] %}<img class="avatar" src="{{ u['icon'] }}" alt="">{% endif %}
  {{ u['name'] }} <span class="meta">@{{ u['username'] }}</span>
</h2>
{% if u['bio'] %}<p>{{ u['bio'] }}</p>{% endif %}
<p class="meta">{{ following_count }} following · {{ follower_count }} followers</p>
{% if is_self %}
  <p><a href="{{ url_for('profile_edit') }}">Edit profile</a> · <a href="{{ url_for('new_post') }}?from=profile">＋ New post</a></p>
{% else %}
  <form method="post" action="{{ url_for('unfollow' if is_following else 'follow', username=u['username']) }}">
    {{ csrf_field() }}<button>{{ 'Unfollow' if is_following else 'Follow' }}</button>
  </form>
{% endif %}
{% for p in posts %}
  <article>
    <div class="meta"><a href="{{ url_for('timeline_detail', post_id=p.id) }}?from=/profile">{{ p.created_at|ago }}</a></div>
    <div>{{ p.message }}</div>
    {% if p.image %}<img class="post-image" src="{{ p.image }}" alt="">{% endif %}
    <div class="meta">{{ like_button(p) }} · 💬 {{ p.comment_count }}
      {% if p.deletable %}
      · <form method="post" action="{{ url_for('delete_timeline_post', post_id=p.id) }}" class="inline">
          {{ csrf_field() }}<input type="hidden" name="redirect" value="/profile"><button>Delete</button>
        </form>
      {% endif %}
    </div>
  </article>
{% else %}
  <p>No posts yet.</p>
{% endfor %}
""")


@app.route("/profile")
def profile():
    user = login_required()
    return _render_profile(user, user)


@app.route("/profile/edit", methods=["GET", "POST"])
def profile_edit():
    user = login_required()
    if request.method == "POST":
        name = request.form.get("name", "").strip() or user["username"]
        bio = request.form.get("bio", "").strip()
        icon = user["icon"]
        try:
            if _as_bool(request.form.get("reset_icon")):
                icon = None
            else:
                icon = store_upload(request.files.get("icon"), prefix="icons") or icon
        except ValueError as exc:
            flash(str(exc))
            return render_template_string(TEMPL_PROFILE_EDIT, title="Edit profile", u=user), 400
        db = get_db()
        db.execute(
            "UPDATE user SET name=?, bio=?, icon=? WHERE id=?", (name, bio, icon, user["id"])
        )
        db.commit()
        return redirect(url_for("profile"))
    return render_template_string(TEMPL_PROFILE_EDIT, title="Edit profile", u=user)


TEMPL_PROFILE_EDIT = wrap("""
<h2>Edit profile</h2>
<form method="post" enctype="multipart/form-data">
  {{ csrf_field() }}
  <input type="text" name="name" value="{{ u['name'] }}" placeholder="display name">
  <textarea name="bio" placeholder="bio">{{ u['bio'] }}</textarea>
  <input type="file" name="icon" accept="image/png,image/jpeg,image/webp,image/gif">
  <label><input type="checkbox" name="reset_icon" value="true"> Use the default icon</label>
  <button>Save</button>
</form>
""")


@app.route("/profile/<username>")
def profile_other(username):
    user = login_required()
    if username == user["username"]:
        return redirect(url_for("profile"))
    other = get_db().execute(
        "SELECT * FROM user WHERE username=?", (username,)
    ).fetchone()
    if other is None:
        abort(404)
    return _render_profile(user, other)


@app.route("/follow/<username>", methods=["POST"])
def follow(username):
    user = login_required()
    if username == user["username"]:
        return redirect(url_for("profile"))
    toggle_follow(get_db(), user, username, follow=True)
    return redirect(url_for("profile_other", username=username))


@app.route("/unfollow/<username>", methods=["POST"])
def unfollow(username):
    user = login_required()
    toggle_follow(get_db(), user, username, follow=False)
    return redirect(url_for("profile_other", username=username))


###############################################################################
# Tokumei (anonymous posts) + novels
###############################################################################
ANON_ENDPOINTS = {
    "anonymous": {"list": "tokumei", "detail": "tokumei_detail", "new": "tokumei_post"},
    "novel": {"list": "tokumei_novel", "detail": "tokumei_novel_detail", "new": "tokumei_novel_post"},
}


def _anon_list(kind: str):
    user = login_required()
    posts = list_visible(get_db(), user, kind)
    return render_template_string(
        TEMPL_ANON_LIST,
        title="Novels" if kind == "novel" else "Tokumei",
        kind=kind,
        posts=posts,
        ep=ANON_ENDPOINTS[kind],
    )


def _anon_detail(kind: str, post_id: int, *, record: bool = True, back: str | None = None):
    user = login_required()
    db = get_db()
    post = get_post(db, user, post_id, kind=kind)
    if post is None:
        abort(404)
    if record:
        record_view(db, user, post_id)
    return render_template_string(
        TEMPL_ANON_DETAIL,
        title=post.get("title") or ("Novel" if kind == "novel" else "Tokumei"),
        p=post,
        back=back or _local_path(request.args.get("from"), url_for(ANON_ENDPOINTS[kind]["list"])),
    )


def _anon_delete(kind: str):
    user = login_required()
    post_id = _int_or_none(request.form.get("postId"))
    if post_id is None:
        return redirect(url_for(ANON_ENDPOINTS[kind]["list"]))
    status = delete_post(get_db(), user, post_id, kinds=(kind,))
    if status != 200:
        abort(status)
    return redirect(url_for(ANON_ENDPOINTS[kind]["list"]))


TEMPL_ANON_LIST = wrap("""
<h2>{{ title }}</h2>
<p>
  <a href="{{ url_for(ep.new) }}">＋ Write</a> ·
  <a href="{{ url_for('tokumei_save') }}">Saved</a> ·
  <a href="{{ url_for('tokumei_log') }}">History</a> ·
  <a href="{{ url_for('tokumei_review') }}">Reviews</a>
</p>
{% for p in posts %}
  <article>
    <div class="meta">{{ p.created_at|ts }}</div>
    {% if p.title %}<h3><a href="{{ url_for(ep.detail, post_id=p.id) }}">{{ p.title }}</a></h3>{% endif %}
    <div>{% if kind == 'novel' %}{{ p.message|truncate(140) }}{% else %}{{ p.message }}{% endif %}</div>
    {% if p.image %}<img class="post-image" src="{{ p.image }}" alt="">{% endif %}
    <div class="meta">
      <a href="{{ url_for(ep.detail, post_id=p.id) }}">Read</a> · {{ like_button(p) }}
      {% if p.deletable %}
      · <form method="post" action="{{ url_for(ep.list ~ '_delete') }}" class="inline">
          {{ csrf_field() }}<input type="hidden" name="postId" value="{{ p.id }}"><button>Delete</button>
        </form>
      {% endif %}
    </div>
  </article>
{% else %}
  <p>Nothing here yet.</p>
{% endfor %}
""")

TEMPL_ANON_DETAIL = wrap("""
<p><a href="{{ back }}">← Back</a></p>
<article>
  {% if p.title %}<h2>{{ p.title }}</h2>{% endif %}
  <div class="meta">{{ p.created_at|ts }}</div>
  <div class="e-content">{{ p.message|md }}</div>
  {% if p.image %}<img class="post-image" src="{{ p.image }}" alt="">{% endif %}
  <div class="meta">{{ like_button(p) }}</div>
</article>
<form method="post" action="{{ url_for('tokumei_unsave' if p.is_saved else 'tokumei_save_add') }}" class="inline">
  {{ csrf_field() }}<input type="hidden" name="postId" value="{{ p.id }}">
  <button>{{ 'Unsave' if p.is_saved else 'Save' }}</button>
</form>
<form method="post" action="{{ url_for('tokumei_review_add') }}" class="inline">
  {{ csrf_field() }}
  <input type="hidden" name="postId" value="{{ p.id }}">
  <input type="hidden" name="redirect" value="{{ request.path }}">
  {% for r in ratings %}
    <button name="rating" value="{{ r }}"{% if p.my_rating == r %} aria-pressed="true" style="font-weight:bold"{% endif %}>{{ r }}</button>
  {% endfor %}
</form>
""")


@app.route("/tokumei")
def tokumei():
    return _anon_list("anonymous")


@app.route("/tokumei_post", methods=["GET", "POST"])
def tokumei_post():
    user = login_required()
    return _post_form(user, "anonymous")


@app.route("/tokumei/<int:post_id>")
def tokumei_detail(post_id):
    return _anon_detail("anonymous", post_id)


@app.route("/tokumei/delete", methods=["POST"])
def tokumei_delete():
    return _anon_delete("anonymous")


@app.route("/tokumei_novel")
def tokumei_novel():
    return _anon_list("novel")


@app.route("/tokumei_novel_post", methods=["GET", "POST"])
def tokumei_novel_post():
    user = login_required()
    return _post_form(user, "novel")


@app.route("/tokumei_novel/<int:post_id>")
def tokumei_novel_detail(post_id):
    return _anon_detail("novel", post_id)


@app.route("/tokumei_novel/delete", methods=["POST"])
def tokumei_novel_delete():
    return _anon_delete("novel")


###############################################################################
# Saved posts, history, reviews
###############################################################################
def _back(default: str) -> str:
    return _local_path(request.form.get("redirect") or request.referrer, default)


@app.route("/tokumei_save", methods=["POST"], endpoint="tokumei_save_add")
def tokumei_save_add():
    user = login_required()
    db = get_db()
    post_id = _int_or_none(request.form.get("postId"))
    if post_id is None or not post_exists(db, post_id):
        abort(404)
    db.execute(
        "INSERT OR IGNORE INTO saved_post (user_id, post_id, created_at) VALUES (?,?,?)",
        (user["id"], post_id, iso(utc_now())),
    )
    db.commit()
    return redirect(_back(url_for("tokumei")))


@app.route("/tokumei_save/remove", methods=["POST"])
def tokumei_unsave():
    user = login_required()
    db = get_db()
    db.execute(
        "DELETE FROM saved_post WHERE user_id=? AND post_id=?",
        (user["id"], _int_or_none(request.form.get("postId"))),
    )
    db.commit()
    return redirect(_back(url_for("tokumei")))


@app.route("/tokumei_save")
def tokumei_save():
    user = login_required()
    rows = get_db().execute(
        _POST_SELECT
        + " JOIN saved_post s ON s.post_id = p.id WHERE s.user_id = :me_id"
        " ORDER BY s.created_at DESC",
        _viewer_params(user),
    ).fetchall()
    return render_template_string(
        TEMPL_COLLECTION,
        title="Saved",
        items=[present_post(r, user) for r in rows],
        mode="save",
    )


@app.route("/tokumei_log")
def tokumei_log():
    user = login_required()
    rows = get_db().execute(
        """
        SELECT v.viewed_at, p.id, p.kind, p.title, p.message, p.image
          FROM viewed_post v JOIN post p ON p.id = v.post_id
         WHERE v.user_id = ?
         ORDER BY v.viewed_at DESC, v.id DESC
        """,
        (user["id"],),
    ).fetchall()
    return render_template_string(TEMPL_COLLECTION, title="History", items=rows, mode="log")


@app.route("/tokumei_log/delete", methods=["POST"])
def tokumei_log_delete():
    user = login_required()
    post_id = _int_or_none(request.form.get("postId"))
    if post_id is not None:
        forget_view(get_db(), user, post_id)
    return redirect(url_for("tokumei_log"))


@app.route("/tokumei_log/clear", methods=["POST"])
def tokumei_log_clear():
    user = login_required()
    db = get_db()
    db.execute("DELETE FROM viewed_post WHERE user_id=?", (user["id"],))
    db.commit()
    return redirect(url_for("tokumei_log"))


@app.route("/tokumei_log/<int:post_id>")
def tokumei_log_detail(post_id):
    login_required()
    row = get_db().execute("SELECT kind FROM post WHERE id=?", (post_id,)).fetchone()
    if row is None:
        return redirect(url_for("tokumei_log"))
    if row["kind"] == "timeline":
        return redirect(url_for("timeline_detail", post_id=post_id))
    return _anon_detail(row["kind"], post_id, record=False, back=url_for("tokumei_log"))


@app.route("/tokumei_review")
def tokumei_review():
    user = login_required()
    rows = get_db().execute(
        """
        SELECT r.rating, r.reviewed_at, p.id, p.kind, p.title, p.message, p.image
          FROM review r JOIN post p ON p.id = r.post_id
         WHERE r.user_id = ?
         ORDER BY r.reviewed_at DESC
        """,
        (user["id"],),
    ).fetchall()
    return render_template_string(TEMPL_COLLECTION, title="Reviews", items=rows, mode="review")


@app.route("/tokumei_review", methods=["POST"], endpoint="tokumei_review_add")
def tokumei_review_add():
    user = login_required()
    db = get_db()
    post_id = _int_or_none(request.form.get("postId"))
    if post_id is None or not post_exists(db, post_id):
        abort(404)
    try:
        set_rating(db, user, post_id, request.form.get("rating", ""))
    except ValueError:
        abort(400)
    return redirect(_local_path(request.form.get("redirect"), url_for("tokumei_review")))


TEMPL_COLLECTION = wrap("""
<h2>{{ title }}</h2>
<p>
  <a href="{{ url_for('tokumei_save') }}">Saved</a> ·
  <a href="{{ url_for('tokumei_log') }}">History</a> ·
  <a href="{{ url_for('tokumei_review') }}">Reviews</a>
</p>
{% if mode == 'log' and items %}
<form method="post" action="{{ url_for('tokumei_log_clear') }}">
  {{ csrf_field() }}<button>Clear history</button>
</form>
{% endif %}
{% for p in items %}
  {% set href = url_for('tokumei_log_detail', post_id=p['id']) %}
  <article>
    <div class="meta">
      {{ p['kind'] }}
      {% if mode == 'log' %} · viewed {{ p['viewed_at']|ago }}{% endif %}
      {% if mode == 'review' %} · rated <strong>{{ p['rating'] }}</strong> {{ p['reviewed_at']|ago }}{% endif %}
    </div>
    {% if p['title'] %}<h3><a href="{{ href }}">{{ p['title'] }}</a></h3>{% endif %}
    <div><a href="{{ href }}">{{ p['message']|truncate(120) }}</a></div>
    {% if mode == 'log' %}
    <form method="post" action="{{ url_for('tokumei_log_delete') }}" class="inline">
      {{ csrf_field() }}<input type="hidden" name="postId" value="{{ p['id'] }}"><button>Remove</button>
    </form>
    {% elif mode == 'save' %}
    <form method="post" action="{{ url_for('tokumei_unsave') }}" class="inline">
      {{ csrf_field() }}<input type="hidden" name="postId" value="{{ p['id'] }}">
      <input type="hidden" name="redirect" value="{{ url_for('tokumei_save') }}"><button>Unsave</button>
    </form>
    {% endif %}
  </article>
{% else %}
  <p>Nothing here yet.</p>
{% endfor %}
""")


###############################################################################
# Diary
###############################################################################
DIARY_RETURN = {"list": "diary", "calendar": "diary_calendar", "my": "diary_my"}


def _diary_return(origin: str | None, day: str | None = None) -> str:
    if origin == "date" and day:
        return url_for("diary", date=day)
    return url_for(DIARY_RETURN.get(origin or "", "diary"))


def _diary_dates(db, user) -> list[str]:
    return [
        r["date"]
        for r in db.execute(
            "SELECT date FROM diary WHERE user_id=? ORDER BY date", (user["id"],)
        )
    ]


@app.route("/diary")
def diary():
    user = login_required()
    day = request.args.get("date") or None
    if day:
        try:
            day = parse_diary_date(day).isoformat()
        except ValueError:
            abort(404)
    return render_template_string(
        TEMPL_DIARY_LIST,
        title="Diary",
        diaries=visible_diaries(get_db(), user, day=day),
        day=day,
    )


TEMPL_DIARY_LIST = wrap("""
<h2>Diary{% if day %} · {{ day }}{% endif %}</h2>
<p>
  <a href="{{ url_for('diary_post') }}?from=list">＋ Write</a> ·
  <a href="{{ url_for('diary_calendar') }}">Calendar</a> ·
  <a href="{{ url_for('diary_my') }}">Mine</a>
</p>
{% for d in diaries %}
  <article>
    <div class="meta">{{ d['date'] }} · {{ d['author_name'] }} @{{ d['author_username'] }}
      {% if not d['is_public'] %} · 🔒{% endif %} · {{ d['created_at']|ts }}</div>
    <h3><a href="{{ url_for('diary_detail', diary_id=d['id']) }}{% if day %}?from=date{% endif %}">{{ d['title'] or d['date'] }}</a></h3>
    <div>{{ d['content']|truncate(140) }}</div>
  </article>
{% else %}
  <p>No diaries{% if day %} on this day{% endif %}.</p>
{% endfor %}
""")


def _render_diary_form(*, diary_id=None, form, origin, error=None, status=200):
    return render_template_string(
        TEMPL_DIARY_FORM,
        title="Edit diary" if diary_id else "New diary",
        diary_id=diary_id,
        form=form,
        origin=origin,
        error=error,
        diary_dates=_diary_dates(get_db(), current_user()),
    ), status


def _diary_form_values() -> dict:
    return {
        "title": request.form.get("title", ""),
        "content": request.form.get("content", ""),
        "date": request.form.get("date", ""),
        "is_public": _as_bool(request.form.get("isPublic")),
    }


@app.route("/diary_post", methods=["GET", "POST"])
def diary_post():
    user = login_required()
    if request.method == "GET":
        form = {
            "title": "",
            "content": "",
            "date": request.args.get("date") or local_today().isoformat(),
            "is_public": False,
        }
        return _render_diary_form(form=form, origin=request.args.get("from"))

    form = _diary_form_values()
    origin = request.form.get("from")
    try:
        create_diary(
            get_db(),
            user,
            title=form["title"],
            content=form["content"],
            raw_date=form["date"],
            is_public=form["is_public"],
        )
    except ValueError as exc:
        return _render_diary_form(form=form, origin=origin, error=str(exc), status=400)
    except Conflict as exc:
        return _render_diary_form(form=form, origin=origin, error=str(exc), status=409)
    return redirect(_diary_return(origin))


TEMPL_DIARY_FORM = wrap("""
<h2>{{ title }}</h2>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" action="{{ url_for('diary_edit_save') if diary_id else url_for('diary_post') }}">
  {{ csrf_field() }}
  <input type="hidden" name="from" value="{{ origin or '' }}">
  {% if diary_id %}<input type="hidden" name="postId" value="{{ diary_id }}">{% endif %}
  <input type="date" name="date" value="{{ form.date }}">
  <input type="text" name="title" value="{{ form.title }}" placeholder="title">
  <textarea name="content" placeholder="Today…">{{ form.content }}</textarea>
  <label><input type="checkbox" name="isPublic"{% if form.is_public %} checked{% endif %}> Public</label>
  <button>Save</button>
</form>
{% if diary_dates %}
<p class="meta">You already wrote on: {{ diary_dates|join(', ') }}</p>
{% endif %}
""")


@app.route("/diary/<int:diary_id>")
def diary_detail(diary_id):
    user = login_required()
    entry = get_visible_diary(get_db(), user, diary_id)
    if entry is None:
        abort(404)
    origin = request.args.get("from")
    return render_template_string(
        TEMPL_DIARY_DETAIL,
        title=entry["title"] or entry["date"],
        d=entry,
        is_owner=entry["user_id"] == user["id"],
        origin=origin,
        back=_diary_return(origin, entry["date"]),
    )


TEMPL_DIARY_DETAIL = wrap("""
<p><a href="{{ back }}">← Back</a></p>
<article>
  <div class="meta">{{ d['date'] }} · {{ d['author_name'] }} @{{ d['author_username'] }}
    {% if not d['is_public'] %} · 🔒 private{% endif %}</div>
  {% if d['title'] %}<h2>{{ d['title'] }}</h2>{% endif %}
  <div class="e-content">{{ d['content']|md }}</div>
  <div class="meta">written {{ d['created_at']|ts }}{% if d['updated_at'] != d['created_at'] %} · edited {{ d['updated_at']|ts }}{% endif %}</div>
</article>
{% if is_owner %}
<p>
  <a href="{{ url_for('diary_edit', diary_id=d['id']) }}?from={{ origin or '' }}">Edit</a>
  <form method="post" action="{{ url_for('diary_delete') }}" class="inline">
    {{ csrf_field() }}
    <input type="hidden" name="postId" value="{{ d['id'] }}">
    <input type="hidden" name="from" value="{{ origin or '' }}">
    <input type="hidden" name="date" value="{{ d['date'] }}">
    <button>Delete</button>
  </form>
</p>
{% endif %}
""")


@app.route("/diary_edit/<int:diary_id>")
def diary_edit(diary_id):
    user = login_required()
    entry = get_db().execute(
        "SELECT * FROM diary WHERE id=? AND user_id=?", (diary_id, user["id"])
    ).fetchone()
    if entry is None:
        abort(404)
    form = {
        "title": entry["title"],
        "content": entry["content"],
        "date": entry["date"],
        "is_public": bool(entry["is_public"]),
    }
    return _render_diary_form(diary_id=diary_id, form=form, origin=request.args.get("from"))


@app.route("/diary_edit", methods=["POST"])
def diary_edit_save():
    user = login_required()
    diary_id = _int_or_none(request.form.get("postId"))
    if diary_id is None:
        abort(404)
    form = _diary_form_values()
    origin = request.form.get("from")
    try:
        updated = update_diary(
            get_db(),
            user,
            diary_id,
            title=form["title"],
            content=form["content"],
            raw_date=form["date"],
            is_public=form["is_public"],
        )
    except ValueError as exc:
        return _render_diary_form(
            diary_id=diary_id, form=form, origin=origin, error=str(exc), status=400
        )
    except Conflict as exc:
        return _render_diary_form(
            diary_id=diary_id, form=form, origin=origin, error=str(exc), status=409
        )
    if not updated:
        abort(404)
    target = url_for("diary_detail", diary_id=diary_id)
    return redirect(f"{target}?from={origin}" if origin else target)


@app.route("/diary_delete", methods=["POST"])
def diary_delete():
    user = login_required()
    diary_id = _int_or_none(request.form.get("postId"))
    if diary_id is None or not delete_diary(get_db(), user, diary_id):
        abort(404)
    app.logger.info("Diary %s deleted by @%s", diary_id, user["username"])
    return redirect(_diary_return(request.form.get("from"), request.form.get("date")))


def _render_calendar(*, heading: str, tab: str, cells: dict[str, dict]):
    today = local_today()
    month = _month_arg(request.args.get("month"), today)
    prev_month = (month - timedelta(days=1)).replace(day=1)
    next_month = (month + timedelta(days=32)).replace(day=1)
    return render_template_string(
        TEMPL_DIARY_CALENDAR,
        title=heading,
        heading=heading,
        tab=tab,
        month=month,
        weeks=month_grid(month),
        cells=cells,
        today=today,
        prev_month=prev_month.strftime("%Y-%m"),
        next_month=next_month.strftime("%Y-%m"),
    )


@app.route("/diary_calendar")
def diary_calendar():
    login_required()
    rows = get_db().execute(
        "SELECT date, COUNT(*) AS n FROM diary WHERE is_public = 1 GROUP BY date"
    ).fetchall()
    cells = {
        r["date"]: {"href": url_for("diary", date=r["date"]), "label": f"{r['n']} ✎"}
        for r in rows
    }
    return _render_calendar(heading="Everyone's diaries", tab="all", cells=cells)


@app.route("/diary_my")
def diary_my():
    user = login_required()
    rows = get_db().execute(
        "SELECT id, date FROM diary WHERE user_id = ?", (user["id"],)
    ).fetchall()
    cells = {
        r["date"]: {
            "href": url_for("diary_detail", diary_id=r["id"]) + "?from=my",
            "label": "✎",
        }
        for r in rows
    }
    return _render_calendar(heading="My diary", tab="my", cells=cells)


TEMPL_DIARY_CALENDAR = wrap("""
<h2>{{ heading }}</h2>
<p>
  <a href="{{ url_for('diary_calendar') }}"{% if tab == 'all' %} aria-current="page"{% endif %}>Everyone</a> ·
  <a href="{{ url_for('diary_my') }}"{% if tab == 'my' %} aria-current="page"{% endif %}>Mine</a> ·
  <a href="{{ url_for('diary') }}">List</a> ·
  <a href="{{ url_for('diary_post') }}?from={{ 'calendar' if tab == 'all' else 'my' }}">＋ Write</a>
</p>
<p>
  <a href="?month={{ prev_month }}">‹ {{ prev_month }}</a>
  <strong>{{ month.strftime('%Y-%m') }}</strong>
  <a href="?month={{ next_month }}">{{ next_month }} ›</a>
</p>
<table class="calendar">
  <tr>{% for d in ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat'] %}<th>{{ d }}</th>{% endfor %}</tr>
  {% for week in weeks %}
  <tr>
    {% for day in week %}
    {% set key = day.isoformat() %}
    <td class="{{ 'out' if day.month != month.month else '' }}"{% if day == today %} style="font-weight:bold"{% endif %}>
      {{ day.day }}
      {% if key in cells %}<br><a href="{{ cells[key].href }}">{{ cells[key].label }}</a>{% endif %}
    </td>
    {% endfor %}
  </tr>
  {% endfor %}
</table>
""")


###############################################################################
# Reads (bookshelf)
###############################################################################
@app.route("/reads")
def reads():
    user = login_required()
    db = get_db()
    reading = db.execute(
        "SELECT * FROM shelf WHERE user_id=? AND is_reading=1 ORDER BY last_read_at DESC",
        (user["id"],),
    ).fetchall()
    recent = db.execute(
        "SELECT * FROM shelf WHERE user_id=? AND last_read_at IS NOT NULL "
        "ORDER BY last_read_at DESC LIMIT 3",
        (user["id"],),
    ).fetchall()
    return render_template_string(
        TEMPL_READS,
        title="Reads",
        reading=reading,
        recent=recent,
        summary=reading_summary(db, user),
    )


TEMPL_READS = wrap("""
<h2>Reads</h2>
<p class="meta">Today {{ summary.today|duration }} · all time {{ summary.total|duration }}</p>
<p><a href="{{ url_for('reads_shelf') }}">My shelf →</a></p>
<h3>Continue reading</h3>
{% for b in reading %}
  <article><a href="{{ url_for('shelf_note', shelf_id=b['id']) }}">{{ b['title'] }}</a>
    <span class="meta">{{ b['authors'] }} · {{ b['total_reading_seconds']|duration }}</span></article>
{% else %}
  <p class="meta">Nothing in progress.</p>
{% endfor %}
<h3>Recently read</h3>
{% for b in recent %}
  <article><a href="{{ url_for('shelf_note', shelf_id=b['id']) }}">{{ b['title'] }}</a>
    <span class="meta">{{ b['last_read_at']|ago }}</span></article>
{% else %}
  <p class="meta">No reading sessions yet.</p>
{% endfor %}
""")


@app.route("/reads_shelf")
def reads_shelf():
    user = login_required()
    books = get_db().execute(
        "SELECT * FROM shelf WHERE user_id=? ORDER BY created_at DESC, id DESC",
        (user["id"],),
    ).fetchall()
    return render_template_string(
        TEMPL_SHELF,
        title="Shelf",
        unread=[b for b in books if not b["is_finished"]],
        finished=[b for b in books if b["is_finished"]],
    )


TEMPL_SHELF = wrap("""
<h2>Shelf</h2>
<form id="isbn-form">
  <input type="text" name="isbn" placeholder="ISBN" inputmode="numeric">
  <button>Add book</button>
  <span id="isbn-msg" class="meta"></span>
</form>
<script>
document.getElementById("isbn-form").addEventListener("submit", async (e) => {
  e.preventDefault();
  const isbn = e.target.isbn.value;
  const res = await fukubunPost("{{ url_for('add_book') }}", {isbn});
  const msg = document.getElementById("isbn-msg");
  if (res.ok) return location.reload();
  msg.textContent = {400: "Invalid ISBN", 404: "Book not found", 409: "Already on your shelf"}[res.status] || "Lookup failed";
});
</script>
<h3>On the shelf</h3>
{% for b in unread %}
  <article>
    {% if b['thumbnail'] %}<img class="cover" src="{{ b['thumbnail'] }}" alt="">{% endif %}
    <a href="{{ url_for('shelf_note', shelf_id=b['id']) }}">{{ b['title'] }}</a>
    <div class="meta">{{ b['authors'] }}{% if b['is_reading'] %} · reading{% endif %}</div>
  </article>
{% else %}
  <p class="meta">Empty.</p>
{% endfor %}
<h3>Finished</h3>
{% for b in finished %}
  <article>
    <a href="{{ url_for('shelf_note', shelf_id=b['id']) }}">{{ b['title'] }}</a>
    <div class="meta">{{ b['authors'] }} · finished {{ b['finished_at']|ts }}</div>
  </article>
{% else %}
  <p class="meta">None yet.</p>
{% endfor %}
""")


@app.route("/books/add", methods=["POST"])
def add_book():
    user = api_user()
    db = get_db()
    try:
        isbn = normalize_isbn(_payload().get("isbn"))
    except ValueError:
        return jsonify(error="invalid_isbn"), 400
    if shelf_has_isbn(db, user, isbn):
        return jsonify(error="already_exists"), 409
    try:
        book = lookup_isbn(isbn)
    except BookLookupError as exc:
        app.logger.warning("%s", exc)
        return jsonify(error="lookup_failed"), 502
    if book is None:
        return jsonify(error="not_found"), 404
    try:
        shelf_id = create_shelf_entry(db, user, isbn, book)
    except Conflict:
        return jsonify(error="already_exists"), 409
    return jsonify(success=True, id=shelf_id)


@app.route("/shelf/<int:shelf_id>")
def shelf_note(shelf_id):
    user = login_required()
    book = get_shelf_entry(get_db(), user, shelf_id)
    if book is None:
        abort(404)
    return render_template_string(TEMPL_SHELF_NOTE, title=book["title"], b=book)


TEMPL_SHELF_NOTE = wrap("""
<p><a href="{{ url_for('reads_shelf') }}">← Shelf</a></p>
<article>
  {% if b['thumbnail'] %}<img class="cover" src="{{ b['thumbnail'] }}" alt="">{% endif %}
  <h2>{{ b['title'] }}</h2>
  <div class="meta">{{ b['authors'] }} · ISBN {{ b['isbn'] }}</div>
  <p class="meta">
    today {{ b['today_reading_seconds']|duration }} · total {{ b['total_reading_seconds']|duration }}
    {% if b['last_read_at'] %} · last read {{ b['last_read_at']|ago }}{% endif %}
    {% if b['is_finished'] %} · finished {{ b['finished_at']|ts }}{% endif %}
  </p>
</article>
{% if not b['is_finished'] %}
<p>
  <button type="button" id="start-btn">Start</button>
  <button type="button" id="stop-btn">Stop</button>
  <span id="timer" class="meta"></span>
  <button type="button" id="finish-btn">Finished!</button>
</p>
<script>
(() => {
  const base = "/shelf/{{ b['id'] }}";
  const out = document.getElementById("timer");
  let started = null;
  setInterval(() => { if (started) out.textContent = Math.floor((Date.now() - started) / 1000) + "s"; }, 1000);
  document.getElementById("start-btn").addEventListener("click", async () => {
    started = Date.now();
    await fukubunPost(base + "/setReadingState", {isReading: true});
  });
  document.getElementById("stop-btn").addEventListener("click", async () => {
    if (!started) return;
    const seconds = Math.floor((Date.now() - started) / 1000);
    started = null;
    if (seconds > 0) await fukubunPost(base + "/addReadingTime", {seconds});
    await fukubunPost(base + "/setReadingState", {isReading: false});
    location.reload();
  });
  document.getElementById("finish-btn").addEventListener("click", async () => {
    await fukubunPost(base + "/finish");
    location.reload();
  });
})();
</script>
{% endif %}
<form method="post" action="{{ url_for('shelf_save', shelf_id=b['id']) }}">
  {{ csrf_field() }}
  <label for="readingNote">Reading notes</label>
  <textarea id="readingNote" name="readingNote">{{ b['reading_note'] }}</textarea>
  <label for="review">Review</label>
  <textarea id="review" name="review">{{ b['review'] }}</textarea>
  <button>Save</button>
</form>
""")


@app.route("/shelf/<int:shelf_id>/save", methods=["POST"])
def shelf_save(shelf_id):
    user = login_required()
    db = get_db()
    cur = db.execute(
        "UPDATE shelf SET reading_note=?, review=? WHERE id=? AND user_id=?",
        (
            request.form.get("readingNote", ""),
            request.form.get("review", ""),
            shelf_id,
            user["id"],
        ),
    )
    db.commit()
    if cur.rowcount == 0:
        abort(404)
    return redirect(url_for("shelf_note", shelf_id=shelf_id))


@app.route("/shelf/<int:shelf_id>/updateLastRead", methods=["POST"])
def shelf_update_last_read(shelf_id):
    user = api_user()
    if not touch_last_read(get_db(), user, shelf_id):
        return "", 404
    return "", 200


@app.route("/shelf/<int:shelf_id>/addReadingTime", methods=["POST"])
def shelf_add_reading_time(shelf_id):
    user = api_user()
    seconds = _int_or_none(_payload().get("seconds"))
    try:
        entry = add_reading_time(get_db(), user, shelf_id, seconds)
    except ValueError:
        return jsonify(error="seconds must be a positive integer"), 400
    if entry is None:
        return jsonify(error="not found"), 404
    return jsonify(
        totalReadingSeconds=entry["total_reading_seconds"],
        todayReadingSeconds=entry["today_reading_seconds"],
    )


@app.route("/shelf/<int:shelf_id>/setReadingState", methods=["POST"])
def shelf_set_reading_state(shelf_id):
    user = api_user()
    db = get_db()
    reading = _as_bool(_payload().get("isReading"))
    if not set_reading_state(db, user, shelf_id, reading):
        if get_shelf_entry(db, user, shelf_id) is None:
            return jsonify(error="not found"), 404
        return jsonify(error="already finished"), 409
    return jsonify(isReading=reading)


@app.route("/shelf/<int:shelf_id>/finish", methods=["POST"])
def shelf_finish(shelf_id):
    user = api_user()
    if not finish_reading(get_db(), user, shelf_id):
        return jsonify(error="not found"), 404
    return jsonify(isFinished=True)


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(403)
def forbidden(exc):
    return render_template_string(TEMPL_403, title=site_name()), 403


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title=site_name()), 404


@app.errorhandler(sqlite3.Error)
def database_error(exc):
    app.logger.exception("Database error on %s %s", request.method, request.path)
    return render_template_string(TEMPL_500, title=site_name()), 500


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.
    • With debug on, Flask bypasses this handler and the Werkzeug
      debugger shows the traceback instead.
    """
    return render_template_string(TEMPL_500, title=site_name()), 500


TEMPL_403 = wrap("""
<h2>Not allowed</h2>
<p>That belongs to someone else. <a href="{{ url_for('home') }}">Back to the start</a></p>
""")

TEMPL_404 = wrap("""
<h2>Page not found</h2>
<p>The page you asked for doesn’t exist. <a href="{{ url_for('home') }}">Back to the start</a></p>
""")

TEMPL_500 = wrap("""
<h2>Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        init_db()
    app.run(debug=True)
