#!/usr/bin/env python3
"""
A single-file keyword wiki.

Every entry is a keyword plus a description. When a description is shown,
every occurrence of *any* known keyword inside it becomes a link to that
keyword's page. Rendered HTML and stars live in Redis; entries and users
live in SQLite.
"""

import hashlib
import os
import re
import secrets
import sqlite3
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import Callable, DefaultDict, Iterable, Mapping, Sequence
from urllib.parse import quote

import click
import redis
import requests
from flask import (
    Flask,
    Response,
    abort,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "isuda.sqlite3"

SITE_NAME = "Isuda"
ENV_MODES = ("production", "development", "test")
PER_PAGE_DEFAULT = 10
PAGE_WINDOW = 5  # pages shown on each side of the current one
SEED_BOUNDARY_DEFAULT = 7101  # highest entry id that survives /initialize
SPAM_TIMEOUT_DEFAULT = 3.0
PLACEHOLDER_PREFIX = "isuda_"


def _int_or(raw, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _float_or(raw, default: float) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Settings:
    """
    Everything the service needs from its environment, in one place.

    • `database`      – path of the SQLite file holding users + entries
    • `redis_url`     – cache store for rendered HTML and stars
    • `spam_origin`   – URL of the spam classifier (POST content=…)
    • `spam_timeout`  – upper bound in seconds for one classifier call
    • `env`           – production | development | test
    • `seed_boundary` – entries above this id are dropped by /initialize
    """

    database: str = str(DB_FILE)
    redis_url: str = "redis://127.0.0.1:6379/0"
    spam_origin: str = "http://localhost:5050"
    spam_timeout: float = SPAM_TIMEOUT_DEFAULT
    session_secret: str = field(default_factory=lambda: secrets.token_hex(32), repr=False)
    env: str = "production"
    seed_boundary: int = SEED_BOUNDARY_DEFAULT
    per_page: int = PER_PAGE_DEFAULT

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        mode = (env.get("ISUDA_ENV") or "production").strip().lower()
        if mode not in ENV_MODES:
            mode = "production"
        per_page = _int_or(env.get("ISUDA_PER_PAGE"), PER_PAGE_DEFAULT)
        return cls(
            database=env.get("ISUDA_DATABASE") or str(DB_FILE),
            redis_url=env.get("ISUDA_REDIS_URL") or cls.redis_url,
            spam_origin=env.get("ISUPAM_ORIGIN") or cls.spam_origin,
            spam_timeout=_float_or(env.get("ISUPAM_TIMEOUT"), SPAM_TIMEOUT_DEFAULT),
            session_secret=env.get("ISUDA_SESSION_SECRET") or secrets.token_hex(32),
            env=mode,
            seed_boundary=_int_or(env.get("ISUDA_SEED_BOUNDARY"), SEED_BOUNDARY_DEFAULT),
            per_page=per_page if per_page > 0 else PER_PAGE_DEFAULT,
        )

    def flask_config(self) -> dict:
        return {
            "DATABASE": self.database,
            "REDIS_URL": self.redis_url,
            "SPAM_ORIGIN": self.spam_origin,
            "SPAM_TIMEOUT": self.spam_timeout,
            "SECRET_KEY": self.session_secret,
            "ENV_MODE": self.env,
            "SEED_BOUNDARY": self.seed_boundary,
            "PER_PAGE": self.per_page,
        }


class WikiError(Exception):
    """Base class for everything the wiki raises on purpose."""


class EntryNotFound(WikiError, LookupError):
    pass


class UserExists(WikiError, ValueError):
    pass


class SpamRejected(WikiError, ValueError):
    """The spam classifier said no; the write must not happen."""


class SpamCheckUnavailable(WikiError, RuntimeError):
    """The classifier could not be asked. Never treated as a pass."""


class DuplicateKeyConflict(WikiError):
    """INSERT lost against an existing keyword – the upsert turns it into an UPDATE."""


try:
    __version__ = version("isuda")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + cache store
################################################################################
SETTINGS = Settings.from_env()

app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SETTINGS.flask_config())
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def install_cache(client) -> None:
    """Swap the process-wide Redis client (it owns the connection pool)."""
    app.extensions["redis"] = client


def get_cache():
    return app.extensions["redis"]


# connects lazily, so importing the module never needs a running Redis
install_cache(redis.Redis.from_url(app.config["REDIS_URL"], decode_responses=True))


###############################################################################
# Database helpers
###############################################################################
def connect_db(path: str) -> sqlite3.Connection:
    # IMMEDIATE: concurrent writers queue on the busy timeout instead of
    # failing half-way through an upsert.
    db = sqlite3.connect(path, timeout=10, isolation_level="IMMEDIATE")
    db.execute("PRAGMA foreign_keys = ON;")
    db.row_factory = sqlite3.Row
    return db


def get_db():
    if "db" not in g:
        g.db = connect_db(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.execute("PRAGMA journal_mode=WAL;")
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            name        TEXT UNIQUE NOT NULL,
            password    TEXT NOT NULL,
            created_at  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Entries (one row per keyword, keyword is case-sensitive)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS entry (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            author_id   INTEGER NOT NULL,
            keyword     TEXT UNIQUE NOT NULL,
            description TEXT NOT NULL,
            html        TEXT,                   -- pre-rendered seed copy
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_entry_updated ON entry(updated_at);
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Keyword index
###############################################################################
class KeywordIndex:
    """
    All known keywords, longest first, read from the store at most once per
    request.

    Order matters: it decides which alternative wins when keywords nest
    (“ab” before “a”), so new keywords are slotted in by length rather than
    appended.
    """

    def __init__(self, db):
        self._db = db
        self._keywords: list[str] | None = None
        self._pattern: re.Pattern | None = None

    def keywords(self) -> list[str]:
        if self._keywords is None:
            rows = self._db.execute(
                "SELECT keyword FROM entry ORDER BY length(keyword) DESC, id"
            ).fetchall()
            self._keywords = [r["keyword"] for r in rows]
        return self._keywords

    def add(self, keyword: str) -> None:
        """Make *keyword* visible to this request's matching right away."""
        if self._keywords is None or keyword in self._keywords:
            return  # not loaded yet → the next load reads it from the store
        pos = next(
            (i for i, k in enumerate(self._keywords) if len(k) < len(keyword)),
            len(self._keywords),
        )
        self._keywords.insert(pos, keyword)
        self._pattern = None

    def refresh(self) -> None:
        self._keywords = None
        self._pattern = None

    def pattern(self) -> re.Pattern | None:
        if self._pattern is None:
            self._pattern = keyword_pattern(self.keywords())
        return self._pattern

    def __len__(self) -> int:
        return len(self.keywords())


def keyword_index() -> KeywordIndex:
    """The current request's index (built on first use)."""
    if "keyword_index" not in g:
        g.keyword_index = KeywordIndex(get_db())
    return g.keyword_index


###############################################################################
# Linker
###############################################################################
def keyword_pattern(keywords: Iterable[str]) -> re.Pattern | None:
    """
    One alternation over every keyword, longest first, each taken literally.
    `re` tries alternatives left to right, so at any position the longest
    keyword that fits wins. Ties keep their incoming order.
    """
    ordered = sorted((k for k in keywords if k), key=len, reverse=True)
    if not ordered:
        return None
    return re.compile("|".join(re.escape(k) for k in ordered))


def placeholder_for(keyword: str) -> str:
    return PLACEHOLDER_PREFIX + hashlib.sha1(keyword.encode("utf-8")).hexdigest()


def keyword_href(keyword: str) -> str:
    return "/keyword/" + quote(keyword, safe="")


def htmlify(
    content: str | None,
    keywords: "KeywordIndex | Sequence[str]",
    *,
    href: Callable[[str], str] = keyword_href,
) -> str:
    """
    Turn raw *content* into HTML where every keyword is a link.

    1. every match is swapped for a per-keyword placeholder
    2. the whole text is escaped (placeholders are plain [a-z0-9_])
    3. placeholders become `<a href=…>escaped keyword</a>` in a single pass,
       so anchor markup is never scanned again
    4. newlines become `<br />`
    """
    if not content:
        return ""

    if isinstance(keywords, KeywordIndex):
        pattern = keywords.pattern()
    else:
        pattern = keyword_pattern(keywords)

    kw2hash: dict[str, str] = {}

    def _stash(m: re.Match) -> str:
        kw = m.group(0)
        if kw not in kw2hash:
            kw2hash[kw] = placeholder_for(kw)
        return kw2hash[kw]

    hashed = pattern.sub(_stash, content) if pattern else content
    escaped = escape(hashed)

    if kw2hash:
        anchors = {
            h: f'<a href="{escape(href(kw))}">{escape(kw)}</a>'
            for kw, h in kw2hash.items()
        }
        tokens = sorted(anchors, key=len, reverse=True)
        escaped = re.sub(
            "|".join(re.escape(t) for t in tokens),
            lambda m: anchors[m.group(0)],
            escaped,
        )

    return escaped.replace("\n", "<br />\n")


###############################################################################
# Render cache + stars (Redis)
###############################################################################
def _sha1_key(prefix: str, keyword: str) -> str:
    return f"{prefix}_{hashlib.sha1(keyword.encode('utf-8')).hexdigest()}"


def html_cache_key(keyword: str) -> str:
    return _sha1_key("html", keyword)


def star_cache_key(keyword: str) -> str:
    return _sha1_key("star", keyword)


def cached_html(keyword: str, *, cache) -> str | None:
    return cache.get(html_cache_key(keyword))


def store_html(keyword: str, html: str, *, cache) -> None:
    cache.set(html_cache_key(keyword), html)


def remove_html_cache(keywords: Iterable[str], *, cache) -> None:
    keys = [html_cache_key(k) for k in keywords]
    if keys:
        cache.delete(*keys)


def html_by_keyword(
    keyword: str, description: str | None = None, *, db, cache, index
) -> str:
    """
    Cache-aside read of an entry's HTML.

    A miss renders *description* (fetched from the store unless the caller
    already has it) against *index* and stores the result.
    """
    html = cached_html(keyword, cache=cache)
    if html is not None:
        return html

    if description is None:
        row = db.execute(
            "SELECT description FROM entry WHERE keyword=? LIMIT 1", (keyword,)
        ).fetchone()
        if row is None:
            raise EntryNotFound(keyword)
        description = row["description"]

    html = htmlify(description, index)
    store_html(keyword, html, cache=cache)
    return html


def add_star(keyword: str, user_name: str, *, cache) -> None:
    """Append-only; the same user may star the same keyword any number of times."""
    cache.rpush(star_cache_key(keyword), user_name)


def load_stars(keyword: str, *, cache) -> list[str]:
    return list(cache.lrange(star_cache_key(keyword), 0, -1))


###############################################################################
# Entry store
###############################################################################
def get_entry(keyword: str, *, db):
    return db.execute(
        "SELECT * FROM entry WHERE keyword=? LIMIT 1", (keyword,)
    ).fetchone()


def entry_exists(keyword: str, *, db) -> bool:
    row = db.execute("SELECT 1 FROM entry WHERE keyword=? LIMIT 1", (keyword,)).fetchone()
    return row is not None


def count_entries(*, db) -> int:
    return db.execute("SELECT COUNT(*) FROM entry").fetchone()[0]


def recent_entries(*, db, page: int, per_page: int):
    return db.execute(
        """
        SELECT keyword, description, updated_at
          FROM entry
         ORDER BY updated_at DESC, id DESC
         LIMIT ? OFFSET ?
        """,
        (per_page, (page - 1) * per_page),
    ).fetchall()


def page_window(page: int, last_page: int) -> list[int]:
    return list(range(max(1, page - PAGE_WINDOW), min(last_page, page + PAGE_WINDOW) + 1))


def _insert_entry(keyword: str, description: str, author_id: int, *, db, now: str):
    try:
        db.execute(
            """INSERT INTO entry (author_id, keyword, description, created_at, updated_at)
                      VALUES (?,?,?,?,?)""",
            (author_id, keyword, description, now, now),
        )
    except sqlite3.IntegrityError as exc:
        if "UNIQUE constraint failed: entry.keyword" not in str(exc):
            raise
        raise DuplicateKeyConflict(keyword) from exc


def upsert_entry(
    keyword: str, description: str, author_id: int, *, db, index: KeywordIndex
) -> set[str]:
    """
    Insert *keyword*, or update it when it already exists.

    Returns the keywords whose cached HTML is now stale:
    • update → only *keyword* itself
    • insert → *keyword* plus every entry whose description contains it,
      because those descriptions can now link the new keyword

    No application lock: two racing inserts are settled by the UNIQUE
    constraint, and the loser takes the update path.
    """
    now = utc_now().isoformat(timespec="seconds")
    try:
        _insert_entry(keyword, description, author_id, db=db, now=now)
    except DuplicateKeyConflict:
        db.execute(
            """UPDATE entry SET author_id=?, description=?, updated_at=?
                WHERE keyword=?""",
            (author_id, description, now, keyword),
        )
        db.commit()
        app.logger.info("updated keyword %r", keyword)
        return {keyword}

    # instr() instead of LIKE: case-sensitive and no %/_ wildcards
    rows = db.execute(
        "SELECT keyword FROM entry WHERE instr(description, ?) > 0", (keyword,)
    ).fetchall()
    db.commit()
    index.add(keyword)

    affected = {keyword, *(r["keyword"] for r in rows)}
    app.logger.info(
        "created keyword %r, %d cached page(s) to invalidate", keyword, len(affected)
    )
    return affected


def delete_entry(keyword: str, *, db, cache) -> None:
    """
    Remove one entry. Other entries' cached HTML may still link to it until
    they are re-rendered; only the entry's own cache is dropped.
    """
    if not entry_exists(keyword, db=db):
        raise EntryNotFound(keyword)
    db.execute("DELETE FROM entry WHERE keyword=?", (keyword,))
    db.commit()
    remove_html_cache([keyword], cache=cache)
    app.logger.info("deleted keyword %r", keyword)


def initialize(*, db, cache, seed_boundary: int) -> int:
    """
    Reset to the seed data set: drop later entries, wipe the cache store
    and refill the render cache from the stored `entry.html` copies.
    Returns the number of cache entries seeded.
    """
    db.execute("DELETE FROM entry WHERE id > ?", (seed_boundary,))
    db.commit()
    cache.flushall()

    pipe = cache.pipeline(transaction=False)
    seeded = 0
    for row in db.execute("SELECT keyword, html FROM entry WHERE html IS NOT NULL"):
        pipe.set(html_cache_key(row["keyword"]), row["html"])
        seeded += 1
    pipe.execute()
    app.logger.info("initialized: %d seeded page(s)", seeded)
    return seeded


###############################################################################
# Spam check
###############################################################################
def is_spam_content(content: str | None) -> bool:
    """
    Ask the remote classifier. Development mode skips the call.
    A missing verdict counts as spam; an unreachable classifier raises.
    """
    if app.config.get("ENV_MODE") == "development":
        return False

    try:
        resp = requests.post(
            app.config["SPAM_ORIGIN"],
            data={"content": content or ""},
            timeout=float(app.config.get("SPAM_TIMEOUT", SPAM_TIMEOUT_DEFAULT)),
        )
        resp.raise_for_status()
        verdict = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise SpamCheckUnavailable(f"spam check failed – {exc}") from exc

    return not (isinstance(verdict, dict) and verdict.get("valid") is True)


def check_spam(*texts: str | None) -> None:
    for text in texts:
        if is_spam_content(text):
            app.logger.warning("spam rejected: %.60r", text)
            raise SpamRejected(text)


###############################################################################
# Users + authentication
###############################################################################
def register_user(name: str, password: str, *, db) -> int:
    try:
        db.execute(
            "INSERT INTO user (name, password, created_at) VALUES (?,?,?)",
            (
                name,
                generate_password_hash(password),
                utc_now().isoformat(timespec="seconds"),
            ),
        )
    except sqlite3.IntegrityError as exc:
        db.rollback()
        raise UserExists(name) from exc
    user_id = db.execute("SELECT last_insert_rowid()").fetchone()[0]
    db.commit()
    return user_id


def authenticate(name: str, password: str, *, db):
    """Return the user row when *password* matches, else None."""
    row = db.execute(
        "SELECT id, name, password FROM user WHERE name=?", (name,)
    ).fetchone()
    if row is None or not check_password_hash(row["password"], password or ""):
        return None
    return row


def _start_session(user_id: int) -> None:
    session.clear()
    session["user_id"] = user_id
    session["csrf"] = secrets.token_hex(16)


@app.before_request
def load_user():
    g.user = None
    user_id = session.get("user_id")
    if user_id is None:
        return
    row = get_db().execute("SELECT id, name FROM user WHERE id=?", (user_id,)).fetchone()
    if row is None:
        session.clear()  # account is gone → treat as logged out
        return
    g.user = row


def login_required() -> None:
    if g.get("user") is None:
        abort(403)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            # forget clients whose last hit fell out of the window
            for stale in [k for k, q in hits.items() if not q or now - q[-1] > window]:
                del hits[stale]

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


def _csrf_token() -> str:
    """One token per session (rotates on login)."""
    return session.get("csrf", "")


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

# login/register replace the session; stars are open to any caller
CSRF_EXEMPT = {"login", "register", "post_star"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS or request.endpoint in CSRF_EXEMPT:
        return

    # anonymous requests carry no session to protect
    if session.get("user_id") is None:
        return

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


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["version"] = __version__
app.jinja_env.globals["site_name"] = SITE_NAME


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="ja">
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ title or site_name }}</title>
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:42em;margin:auto;padding:13px;line-height:1.6;color:#222}
a{color:#0a58ca}header{display:flex;justify-content:space-between;align-items:baseline}
article{border-bottom:1px solid #ddd;padding:1em 0}.stars{color:#e0a800}
textarea,input[type=text],input[type=password]{width:100%;box-sizing:border-box;margin-bottom:.5em}
nav.pages a[aria-current]{font-weight:700}
</style>
<header>
  <h1><a href="{{ url_for('index') }}" style="color:inherit;text-decoration:none">{{ site_name }}</a></h1>
  <nav>
    {% if g.user %}
      {{ g.user['name'] }} · <a href="{{ url_for('logout') }}">logout</a>
    {% else %}
      <a href="{{ url_for('login') }}">login</a> · <a href="{{ url_for('register') }}">register</a>
    {% endif %}
  </nav>
</header>
<main>
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:2em;font-size:.8em;color:#888">isuda v{{ version }}</footer>
</html>
"""

TEMPL_ENTRY = """
<article>
  <h2><a href="{{ url_for('keyword_detail', keyword=e.keyword) }}">{{ e.keyword }}</a></h2>
  <div class="e-content">{{ e.html }}</div>
  <p class="stars">
    {% for name in e.stars %}<span title="{{ name }}">★</span>{% endfor %}
  </p>
</article>
"""

TEMPL_INDEX = wrap("""
{% if g.user %}
<form method="post" action="{{ url_for('create_keyword') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="text" name="keyword" placeholder="keyword">
  <textarea name="description" rows="4" placeholder="description"></textarea>
  <button type="submit">Post</button>
</form>
{% endif %}
{% for e in entries %}
""" + TEMPL_ENTRY + """
{% else %}
<p>No entries yet.</p>
{% endfor %}
{% if pages %}
<nav class="pages">
  {% if page > 1 %}<a href="{{ url_for('index', page=page-1) }}">«</a>{% endif %}
  {% for p in pages %}
    <a href="{{ url_for('index', page=p) }}"{% if p == page %} aria-current="page"{% endif %}>{{ p }}</a>
  {% endfor %}
  {% if page < last_page %}<a href="{{ url_for('index', page=page+1) }}">»</a>{% endif %}
</nav>
{% endif %}
""")

TEMPL_KEYWORD = wrap("""
{% set e = entry %}
""" + TEMPL_ENTRY + """
{% if g.user %}
<form method="post" action="{{ url_for('keyword_delete', keyword=entry.keyword) }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="delete" value="1">
  <button type="submit">Delete</button>
</form>
{% endif %}
""")

TEMPL_AUTHENTICATE = wrap("""
<h2>{{ action|capitalize }}</h2>
<form method="post" action="{{ url_for(action) }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="text" name="name" placeholder="name" autocomplete="username">
  <input type="password" name="password" placeholder="password"
         autocomplete="{{ 'new-password' if action == 'register' else 'current-password' }}">
  <button type="submit">{{ action|capitalize }}</button>
</form>
""")


# ───────────────────────── reset ───────────────────────────────────────
@app.route("/initialize")
def initialize_view():
    initialize(
        db=get_db(),
        cache=get_cache(),
        seed_boundary=int(app.config.get("SEED_BOUNDARY", SEED_BOUNDARY_DEFAULT)),
    )
    return jsonify(result="ok")


# ───────────────────────── listing ─────────────────────────────────────
def _entry_view(row, *, db, cache, index) -> dict:
    kw = row["keyword"]
    html = html_by_keyword(kw, row["description"], db=db, cache=cache, index=index)
    return {"keyword": kw, "html": Markup(html), "stars": load_stars(kw, cache=cache)}


@app.route("/")
def index():
    db, cache = get_db(), get_cache()
    per_page = int(app.config.get("PER_PAGE", PER_PAGE_DEFAULT))
    page = max(_int_or(request.args.get("page"), 1), 1)

    rows = recent_entries(db=db, page=page, per_page=per_page)
    idx = keyword_index()
    entries = [_entry_view(r, db=db, cache=cache, index=idx) for r in rows]

    total = count_entries(db=db)
    last_page = (total + per_page - 1) // per_page
    return render_template_string(
        TEMPL_INDEX,
        entries=entries,
        page=page,
        pages=page_window(page, last_page),
        last_page=last_page,
        title=SITE_NAME,
    )


@app.route("/robots.txt")
def robots():
    abort(404)


# ───────────────────────── accounts ────────────────────────────────────
@app.route("/register", methods=["GET", "POST"])
def register():
    if request.method == "GET":
        return render_template_string(TEMPL_AUTHENTICATE, action="register")

    name = request.form.get("name", "")
    password = request.form.get("password", "")
    if name == "" or password == "":
        abort(400)
    try:
        user_id = register_user(name, password, db=get_db())
    except UserExists:
        abort(400)

    _start_session(user_id)
    return redirect(url_for("index"))


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    if request.method == "GET":
        return render_template_string(TEMPL_AUTHENTICATE, action="login")

    user = authenticate(
        request.form.get("name", ""), request.form.get("password", ""), db=get_db()
    )
    if user is None:
        abort(403)

    _start_session(user["id"])
    return redirect(url_for("index"))


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


# ───────────────────────── keywords ────────────────────────────────────
@app.route("/keyword", methods=["POST"])
def create_keyword():
    login_required()
    keyword = request.form.get("keyword", "")
    if keyword == "":
        abort(400)
    description = request.form.get("description", "")

    try:
        check_spam(description, keyword)
    except SpamRejected:
        abort(400)

    affected = upsert_entry(
        keyword, description, g.user["id"], db=get_db(), index=keyword_index()
    )
    remove_html_cache(affected, cache=get_cache())
    return redirect(url_for("index"))


@app.route("/keyword/<path:keyword>", methods=["GET"])
def keyword_detail(keyword):
    db, cache = get_db(), get_cache()
    row = get_entry(keyword, db=db)
    if row is None:
        abort(404)

    entry = _entry_view(row, db=db, cache=cache, index=keyword_index())
    return render_template_string(TEMPL_KEYWORD, entry=entry, title=keyword)


@app.route("/keyword/<path:keyword>", methods=["POST"])
def keyword_delete(keyword):
    login_required()
    if not request.form.get("delete"):
        abort(400)

    try:
        delete_entry(keyword, db=get_db(), cache=get_cache())
    except EntryNotFound:
        abort(404)
    return redirect(url_for("index"))


# ───────────────────────── stars ───────────────────────────────────────
@app.route("/stars", methods=["POST"])
def post_star():
    keyword = request.values.get("keyword", "")
    user_name = request.values.get("user")
    if not entry_exists(keyword, db=get_db()):
        abort(404)
    if user_name is None:
        abort(400)

    add_star(keyword, user_name, cache=get_cache())
    return jsonify(result="ok")


@app.route("/stars", methods=["GET"])
def list_stars():
    keyword = request.args.get("keyword", "")
    stars = [
        {"keyword": keyword, "user_name": name}
        for name in load_stars(keyword, cache=get_cache())
    ]
    return jsonify(stars=stars)


###############################################################################
# Error pages
###############################################################################
TEMPL_404 = wrap("""
<h2>Not found</h2>
<p>No such page. <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
""")

TEMPL_500 = wrap("""
<h2>Internal Server Error</h2>
<p>Something broke on our side. Please try again in a minute.</p>
""")


@app.errorhandler(404)
def not_found(exc):
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Store, cache and spam-classifier failures end up here.
    In debug mode Flask shows the traceback instead.
    """
    cause = getattr(exc, "original_exception", None) or exc
    app.logger.error("request failed: %r", cause, exc_info=cause)
    return render_template_string(TEMPL_500, title="Error"), 500


###############################################################################
# CLI
###############################################################################
@app.cli.command("init-db")
def cli_init_db():
    """Create the SQLite schema."""
    init_db()
    click.echo(f"schema ready in {app.config['DATABASE']}")


@app.cli.command("add-user")
@click.option("--name", prompt=True, help="Account name")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
def cli_add_user(name: str, password: str):
    """Register an account without going through the web form."""
    if not name or not password:
        raise click.BadParameter("name and password are required")
    try:
        user_id = register_user(name, password, db=get_db())
    except UserExists:
        raise click.ClickException(f"user {name!r} already exists") from None
    click.echo(f"user {name!r} created (id {user_id})")


@app.cli.command("initialize")
def cli_initialize():
    """Same as GET /initialize."""
    seeded = initialize(
        db=get_db(),
        cache=get_cache(),
        seed_boundary=int(app.config.get("SEED_BOUNDARY", SEED_BOUNDARY_DEFAULT)),
    )
    click.echo(f"reset done, {seeded} page(s) seeded")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=app.config["ENV_MODE"] == "development")
