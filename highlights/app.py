#!/usr/bin/env python3
"""
A single-file highlights shelf: quotes from books & podcasts,
random sampling, per-source browsing and FTS5 keyword search.
"""

import logging
import os
import re
import secrets
import sqlite3
from collections import defaultdict, deque
from dataclasses import dataclass, field
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
import markdown
from markdown.extensions import Extension
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
from itsdangerous import BadSignature, TimestampSigner
from markupsafe import Markup
from werkzeug.exceptions import HTTPException, InternalServerError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("HIGHLIGHTS_DB", str(ROOT / "highlights.sqlite3")))
BACKUP_DIR = Path(os.environ.get("HIGHLIGHTS_BACKUP_DIR", str(ROOT / "backups")))

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
LOGIN_TOKEN_TTL = 60  # seconds
signer = TimestampSigner(SECRET_KEY, salt="login-token")

RANDOM_LIMIT = int(os.environ.get("HIGHLIGHTS_RANDOM_LIMIT", "10"))
SEARCH_LIMIT = int(os.environ.get("HIGHLIGHTS_SEARCH_LIMIT", "5"))
UPLOAD_MAX_BYTES = 10 * 1024 * 1024  # 10 MiB, text files only
LOG_LEVEL = os.environ.get("HIGHLIGHTS_LOG_LEVEL", "INFO").upper()

# tables `flush` may touch; anything else is refused
FLUSHABLE_TABLES = ("highlights", "highlights_fts")
BACKUP_SUFFIX = "_highlights"
HOME_SAMPLE = 3
SITE_NAME = "highlights"

try:
    __version__ = version("highlights")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    BACKUP_DIR=str(BACKUP_DIR),
    RANDOM_LIMIT=RANDOM_LIMIT,
    SEARCH_LIMIT=SEARCH_LIMIT,
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
    MAX_FORM_MEMORY_SIZE=UPLOAD_MAX_BYTES,
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
app.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))


class InlineOnlyExtension(Extension):
    """Drop every block construct but paragraphs: "1. " or "# " stays text."""

    BLOCKS = ("indent", "code", "hashheader", "setextheader", "hr",
              "olist", "ulist", "quote", "reference")

    def extendMarkdown(self, md_inst):
        for name in self.BLOCKS:
            md_inst.parser.blockprocessors.deregister(name, strict=False)


md = markdown.Markdown(
    extensions=["smarty", InlineOnlyExtension()], output_format="html"
)


@app.template_filter("mdinline")
def md_inline_filter(text: str | None) -> Markup:
    """
    Render a highlight as inline Markdown (*em*, **strong**, `code`).
    Raw HTML in the quote is escaped first; the <p>…</p> wrapper is dropped.
    """
    if not text:
        return Markup("")
    md.reset()
    s = md.convert(escape(text, quote=False))
    if s.startswith("<p>") and s.endswith("</p>"):
        s = s[3:-4].strip()
    return Markup(s)


@app.template_filter("smartcap")
def smartcap(s: str | None) -> str:
    """Capitalize a source type unless it is already ALL-CAPS (PDF, TV…)."""
    if not s:
        return ""
    return s if any(c.isalpha() for c in s) and s.upper() == s else s.capitalize()


@app.template_filter("plural")
def plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


###############################################################################
# Models
###############################################################################
@dataclass
class Highlight:
    source: str
    source_type: str
    content: str
    id: int | None = None


@dataclass
class Source:
    name: str
    type: str
    count: int = 0


@dataclass
class SearchHit:
    title: str
    content: str
    snippet: Markup
    rank: float


@dataclass
class IndexReport:
    """Outcome of importing one backup folder."""

    folder: str
    indexed: list[tuple[str, int]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(n for _, n in self.indexed)


def _to_highlight(row: sqlite3.Row) -> Highlight:
    return Highlight(
        id=row["id"],
        source=row["source"],
        source_type=row["source_type"],
        content=row["content"],
    )


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
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
        -- 1.  Account (single admin)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id          INTEGER PRIMARY KEY,
            username    TEXT UNIQUE NOT NULL,
            token_hash  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Highlights (flat, denormalised)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS highlights (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            source      TEXT,
            source_type TEXT,
            content     TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_highlights_source ON highlights(source);

        ------------------------------------------------------------
        -- 3.  Full-text search (standalone, written alongside)
        ------------------------------------------------------------
        CREATE VIRTUAL TABLE IF NOT EXISTS highlights_fts USING fts5(
            title, content,
            tokenize = 'porter unicode61'
        );
        """
    )
    db.commit()


def insert_highlights(highlights: list[Highlight], *, db) -> int:
    """
    Insert *highlights* into the primary table in one transaction.
    Rolls back and re-raises on the first failing row.
    """
    count = 0
    try:
        for h in highlights:
            db.execute(
                "INSERT INTO highlights (source, source_type, content) VALUES (?,?,?)",
                (h.source, h.source_type, h.content),
            )
            count += 1
        db.commit()
    except sqlite3.Error:
        db.rollback()
        raise
    return count


def random_highlights(limit: int | None = None, *, db) -> list[Highlight]:
    limit = app.config["RANDOM_LIMIT"] if limit is None else limit
    rows = db.execute(
        """
        SELECT id, source, source_type, content
          FROM highlights
         ORDER BY RANDOM()
         LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [_to_highlight(r) for r in rows]


def list_sources(*, db, source_type: str | None = None) -> list[Source]:
    where, params = "", ()
    if source_type:
        where, params = "WHERE source_type = ?", (source_type,)
    rows = db.execute(
        f"""
        SELECT source, source_type, COUNT(*) AS cnt
          FROM highlights
          {where}
         GROUP BY source, source_type
         ORDER BY source, source_type
        """,
        params,
    ).fetchall()
    return [Source(name=r["source"], type=r["source_type"], count=r["cnt"]) for r in rows]


def source_types(*, db) -> list[str]:
    rows = db.execute(
        "SELECT DISTINCT source_type FROM highlights ORDER BY source_type"
    ).fetchall()
    return [r["source_type"] for r in rows if r["source_type"]]


def source_highlights(name: str, *, db) -> list[Highlight]:
    rows = db.execute(
        """
        SELECT id, source, source_type, content
          FROM highlights
         WHERE source = ?
         ORDER BY id
        """,
        (name,),
    ).fetchall()
    return [_to_highlight(r) for r in rows]


def count_highlights(*, db) -> int:
    return db.execute("SELECT COUNT(*) FROM highlights").fetchone()[0]


def flush_tables(tables, *, db) -> list[str]:
    """
    Delete every row of each table in *tables*.
    Names are checked up front, so an unknown one flushes nothing.
    """
    tables = list(tables)
    unknown = [t for t in tables if t not in FLUSHABLE_TABLES]
    if unknown:
        raise ValueError(f"Refusing to flush unknown table(s): {', '.join(unknown)}")
    for tbl in tables:
        db.execute(f"DELETE FROM {tbl}")
        app.logger.info("Flushed table: %s", tbl)
    db.commit()
    return tables


###############################################################################
# Full-text index
###############################################################################
def index_highlights(highlights: list[Highlight], title: str, *, db) -> int:
    """Mirror *highlights* into highlights_fts under *title* (one transaction)."""
    app.logger.info("Indexing %d highlights for %r", len(highlights), title)
    try:
        db.executemany(
            "INSERT INTO highlights_fts (title, content) VALUES (?,?)",
            [(title, h.content) for h in highlights],
        )
        db.commit()
    except sqlite3.Error:
        db.rollback()
        raise
    return len(highlights)


def rebuild_index(*, db) -> int:
    """Throw the FTS table away and refill it from the primary table."""
    try:
        db.execute("DELETE FROM highlights_fts")
        db.execute(
            """
            INSERT INTO highlights_fts (title, content)
            SELECT COALESCE(source, ''), COALESCE(content, '')
              FROM highlights
             ORDER BY id
            """
        )
        db.commit()
    except sqlite3.Error:
        db.rollback()
        raise
    return db.execute("SELECT COUNT(*) FROM highlights_fts").fetchone()[0]


_SAFE_TOKEN_RE = re.compile(r"^\w+$", re.UNICODE)
_MARK_OPEN, _MARK_CLOSE = "\x02", "\x03"


def _fts_term(word: str) -> str:
    """A bare word (or word*) passes through; anything else becomes an FTS5 string."""
    stem, prefix = (word[:-1], "*") if len(word) > 1 and word.endswith("*") else (word, "")
    if _SAFE_TOKEN_RE.match(stem):
        return word
    return '"{}"{}'.format(stem.replace('"', '""'), prefix)


def fts_query(q: str) -> str:
    """User input -> MATCH expression; punctuation can no longer break the syntax."""
    return " ".join(map(_fts_term, q.split()))


def _mark_snippet(raw: str | None) -> Markup:
    """Escape an FTS snippet, then turn the sentinel marks into <mark> tags."""
    safe = escape(raw or "", quote=False)
    return Markup(
        safe.replace(_MARK_OPEN, "<mark>").replace(_MARK_CLOSE, "</mark>")
    )


def search_highlights(
    q: str,
    *,
    db,
    page: int = 1,
    per_page: int | None = None,
) -> tuple[list[SearchHit], int]:
    """
    Return (hits_on_page, total_hits), best bm25 rank first.
    Raises ValueError when FTS5 cannot parse the query.
    """
    per_page = per_page or app.config["SEARCH_LIMIT"]
    q = fts_query((q or "").strip())
    if not q:
        return [], 0

    app.logger.debug("FTS query: %s", q)
    try:
        total = db.execute(
            "SELECT COUNT(*) FROM highlights_fts WHERE highlights_fts MATCH ?", (q,)
        ).fetchone()[0]
        offset = (max(page, 1) - 1) * per_page
        if offset >= total:  # past the last page; also keeps OFFSET in int64
            return [], total
        rows = db.execute(
            """
            SELECT title,
                   content,
                   bm25(highlights_fts) AS rank,
                   snippet(highlights_fts, 1, ?, ?, ' … ', 24) AS snippet
              FROM highlights_fts
             WHERE highlights_fts MATCH ?
             ORDER BY rank
             LIMIT ? OFFSET ?
            """,
            (_MARK_OPEN, _MARK_CLOSE, q, per_page, offset),
        ).fetchall()
    except sqlite3.OperationalError as exc:
        raise ValueError(f"Cannot search for {q!r}: {exc}") from exc

    hits = [
        SearchHit(
            title=r["title"],
            content=r["content"],
            snippet=_mark_snippet(r["snippet"]),
            rank=r["rank"],
        )
        for r in rows
    ]
    return hits, total


###############################################################################
# Ingestion (upload + backup folders)
###############################################################################
def parse_lines(text: str | None) -> list[str]:
    """One highlight per non-blank line, surrounding whitespace trimmed."""
    if not text:
        return []
    return [ln.strip() for ln in text.splitlines() if ln.strip()]


def build_highlights(lines, source: str, source_type: str) -> list[Highlight]:
    return [Highlight(source=source, source_type=source_type, content=ln) for ln in lines]


def _path_part(value: str) -> str:
    for sep in ("/", "\\", os.sep, "\x00"):
        value = value.replace(sep, "_")
    value = value.strip()
    if not value.strip("."):  # "", "." and ".." would leave the folder
        value = value.replace(".", "_") or "_"
    return value


def backup_path(source: str, source_type: str) -> Path:
    """<BACKUP_DIR>/<type>/<source>_highlights.txt"""
    base = Path(app.config["BACKUP_DIR"])
    return base / _path_part(source_type) / f"{_path_part(source)}{BACKUP_SUFFIX}.txt"


def write_backup(highlights: list[Highlight], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        for h in highlights:
            fh.write(h.content + "\n")
    app.logger.info("Backed up %d highlights to %s", len(highlights), path)
    return path


def source_name_from_filename(filename: str) -> str:
    """
    "Dune_highlights.txt" → "Dune", "Sapiens.txt" → "Sapiens".
    Inverse of backup_path() for the file-name part.
    """
    stem = Path(filename).stem
    if stem.endswith(BACKUP_SUFFIX) and len(stem) > len(BACKUP_SUFFIX):
        stem = stem[: -len(BACKUP_SUFFIX)]
    return stem.strip()


def ingest(highlights: list[Highlight], source: str, *, db) -> int:
    """
    Dual-write: primary table first, FTS mirror second.
    The two commits are independent; a failure in the second
    leaves the first in place.
    """
    count = insert_highlights(highlights, db=db)
    app.logger.info("Inserted %d highlights for %r", count, source)
    index_highlights(highlights, source, db=db)
    return count


def index_folder(folder: str, *, db) -> IndexReport:
    """
    Import every file in <BACKUP_DIR>/<folder>; *folder* becomes the
    source type. A broken file is logged and skipped.
    """
    folder_path = Path(app.config["BACKUP_DIR"]) / folder
    if not folder_path.is_dir():
        raise FileNotFoundError(f"Backup folder not found: {folder_path}")

    app.logger.info("Indexing folder: %s", folder_path)
    report = IndexReport(folder=folder)
    for path in sorted(folder_path.iterdir()):
        if not path.is_file():
            continue
        source = source_name_from_filename(path.name)
        app.logger.info("Processing file: %s", path.name)
        try:
            lines = parse_lines(path.read_text(encoding="utf-8", errors="replace"))
            highlights = build_highlights(lines, source, folder)
            count = ingest(highlights, source, db=db) if highlights else 0
        except (OSError, sqlite3.Error) as exc:
            app.logger.exception("Failed to index %s", path.name)
            report.failed.append((path.name, str(exc)))
            continue
        report.indexed.append((path.name, count))
    return report


###############################################################################
# CLI – admin token + offline operations
###############################################################################
def admin_exists(db) -> bool:
    return db.execute("SELECT 1 FROM user LIMIT 1").fetchone() is not None


def issue_login_token(db, *, username: str | None = None) -> str:
    """
    Store the hash of a fresh random handle and return the signed token.
    With *username* the admin row is created; without, its hash is replaced.
    """
    handle = secrets.token_urlsafe(TOKEN_LEN)
    if username is None:
        db.execute("UPDATE user SET token_hash=?", (hash_token(handle),))
    else:
        db.execute(
            "INSERT INTO user (username, token_hash) VALUES (?,?)",
            (username, hash_token(handle)),
        )
    db.commit()
    return signer.sign(handle).decode()


def burn_login_token(db) -> None:
    """Replace the stored hash with one no token can match."""
    db.execute("UPDATE user SET token_hash=?", (hash_token(secrets.token_hex(16)),))
    db.commit()


def _show_token(headline: str, token: str, colour: str) -> None:
    click.secho(headline, fg=colour)
    click.echo(f"\n{token}\n")
    click.echo(
        f"Paste it into the login form at /login within {LOGIN_TOKEN_TTL} seconds."
    )


@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username")
def cli_init(username: str):
    """Create the tables and the admin account."""
    init_db()
    db = get_db()
    if admin_exists(db):
        raise click.ClickException("Admin already exists – use `flask token`.")
    token = issue_login_token(db, username=username.strip())
    _show_token("\nAdmin created. One-time login token:", token, "green")


@app.cli.command("token")
def cli_token():
    """Print a new one-time login token; the previous one stops working."""
    db = get_db()
    if not admin_exists(db):
        raise click.ClickException("No admin yet – run `flask init` first.")
    _show_token("\nFresh login token generated.", issue_login_token(db), "yellow")


@app.cli.command("index")
@click.argument("folder")
def cli_index(folder: str):
    """Import <BACKUP_DIR>/FOLDER; the folder name is the source type."""
    init_db()
    try:
        report = index_folder(folder, db=get_db())
    except FileNotFoundError as exc:
        raise click.BadParameter(str(exc), param_hint="FOLDER") from exc

    for name, n in report.indexed:
        click.echo(f"  • {name:<40} {n:>6}")
    for name, err in report.failed:
        click.secho(f"  ✗ {name:<40} {err}", fg="red")
    click.secho(
        f"\nIndexed folder {folder}: {report.total} highlights "
        f"from {len(report.indexed)} file(s), {len(report.failed)} failed.",
        fg="green" if not report.failed else "yellow",
    )


@app.cli.command("flush")
@click.argument("tables", nargs=-1, type=click.Choice(FLUSHABLE_TABLES))
@click.confirmation_option(prompt="This deletes every row. Continue?")
def cli_flush(tables: tuple[str, ...]):
    """Empty TABLES (default: highlights and highlights_fts)."""
    init_db()
    flushed = flush_tables(tables or FLUSHABLE_TABLES, db=get_db())
    click.secho(f"Flushed tables: {', '.join(flushed)}", fg="yellow")


@app.cli.command("reindex")
def cli_reindex():
    """Rebuild highlights_fts from the highlights table."""
    init_db()
    n = rebuild_index(db=get_db())
    click.secho(f"Rebuilt search index: {n} rows.", fg="green")


###############################################################################
# Request logging + security headers
###############################################################################
def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


@app.before_request
def log_request_start():
    g._started_at = time()
    app.logger.info("→ %s %s from %s", request.method, request.path, client_ip())


@app.after_request
def log_request_end(resp):
    started = getattr(g, "_started_at", None)
    dur_ms = int((time() - started) * 1000) if started else -1
    app.logger.info(
        "← %s %s [%d] completed in %dms",
        request.method,
        request.path,
        resp.status_code,
        dur_ms,
    )
    return resp


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
# Authentication
###############################################################################
def check_login_token(token: str, *, db, max_age: int = LOGIN_TOKEN_TTL) -> bool:
    """A token is good while its signature is younger than *max_age* and
    its handle still matches the stored hash."""
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except BadSignature:  # SignatureExpired is a subclass
        return False
    row = db.execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    return row is not None and verify_token(row["token_hash"], handle)


def login_required() -> None:
    if not session.get("logged_in"):
        abort(403)


class SlidingWindow:
    """Per-key hit timestamps, forgotten after *window* seconds."""

    def __init__(self, max_requests: int, window: int):
        self.max_requests = max_requests
        self.window = window
        self._hits: DefaultDict[str, deque] = defaultdict(deque)

    def retry_after(self, key: str, now: float) -> int | None:
        """Count a hit for *key*, or return the seconds to wait when over the limit."""
        hits = self._hits[key]
        while hits and now - hits[0] > self.window:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return max(int(self.window - (now - hits[0])), 1)
        hits.append(now)
        return None


def rate_limit(max_requests: int, window: int = 60):
    limiter = SlidingWindow(max_requests, window)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            ip = client_ip()
            wait = limiter.retry_after(ip, time())
            if wait is None:
                return view(*args, **kwargs)
            app.logger.warning("Rate limit hit on %s by %s", request.path, ip)
            return Response(
                "Too many requests – try again later.",
                status=429,
                headers={"Retry-After": str(wait)},
            )

        return wrapped

    return decorator


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    """Signed-in writes must echo the session's CSRF token."""
    if request.method in SAFE_METHODS or not session.get("logged_in"):
        return
    expected = session.get("csrf", "").encode()
    sent = (request.form.get("csrf") or request.headers.get("X-CSRFToken", "")).encode()
    if expected and secrets.compare_digest(expected, sent):
        return
    app.logger.warning("CSRF check failed for %s %s", request.method, request.path)
    abort(403)


def _csrf_token() -> str:
    return session.get("csrf", "")


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["version"] = __version__
app.jinja_env.globals["site_name"] = SITE_NAME


def _start_admin_session() -> None:
    session.clear()
    session.permanent = True
    session.update(logged_in=True, csrf=secrets.token_hex(16))


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    if request.method == "POST":
        db = get_db()
        token = request.form.get("token", "").strip()
        if token and check_login_token(token, db=db):
            burn_login_token(db)
            _start_admin_session()
            app.logger.info("Admin signed in from %s", client_ip())
            return redirect(url_for("admin"))
        app.logger.warning("Rejected login attempt from %s", client_ip())

    return render_template_string(TEMPL_LOGIN, title="Sign in")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-family:Georgia,"Times New Roman",serif}
body{font-size:1.1rem;line-height:1.6;max-width:40em;margin:auto;padding:1rem;color:#ddd;background:#1f1f1f}
a{color:#f0c674;text-decoration:none}a:hover{text-decoration:underline}
nav{display:flex;gap:1.2rem;flex-wrap:wrap;font-family:sans-serif;font-size:.9em;margin-bottom:1rem}
blockquote{margin:0 0 1.4rem;padding:.8em 1em;border-left:4px solid #f0c674;background:#2a2a2a}
blockquote footer{margin-top:.5em;font-size:.8em;color:#999;font-family:sans-serif}
.pill{display:inline-block;padding:.05em .6em;margin-right:.4em;background:#444;color:#fff;border-radius:1em;font-size:.75em;font-family:sans-serif}
mark{background:transparent;color:#f0c674;border-bottom:2px solid #f0c674}
input,textarea,select{width:100%;box-sizing:border-box;margin-bottom:.8rem;padding:.4em .6em;background:#2a2a2a;color:#ddd;border:1px solid #555;border-radius:4px}
button{padding:.45em 1.2em;cursor:pointer}
.alert{padding:.8em 1em;border:1px solid #6a6;background:#1f3a1f;color:#cfc;border-radius:4px}
small{color:#999}
</style>
<body>
<nav>
  <a href="{{ url_for('index') }}"><strong>{{ site_name }}</strong></a>
  <a href="{{ url_for('random_view') }}">Random</a>
  <a href="{{ url_for('sources') }}">Sources</a>
  <a href="{{ url_for('search') }}">Search</a>
  <a href="{{ url_for('admin') }}">Admin</a>
  {% if session.get('logged_in') %}<a href="{{ url_for('logout') }}">Logout</a>{% endif %}
</nav>
<main id="main-content">
{% macro quote(h, with_source=True) -%}
  <blockquote>
    {{ h.content|mdinline }}
    {% if with_source %}
    <footer>
      <span class="pill">{{ h.source_type|smartcap }}</span>
      <a href="{{ url_for('source_detail', name=h.source) }}">{{ h.source }}</a>
    </footer>
    {% endif %}
  </blockquote>
{%- endmacro %}
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:3rem;font-size:.75em;color:#777;">
  {{ site_name }} v{{ version }}
</footer>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
{% block body %}
  <p><small>{{ total|plural('highlight') }} from {{ n_sources|plural('source') }}.</small></p>
  {% for h in highlights %}
    {{ quote(h) }}
  {% else %}
    <p>Nothing here yet. <a href="{{ url_for('admin') }}">Upload some highlights</a>.</p>
  {% endfor %}
  {% if highlights %}<p><a href="{{ url_for('random_view') }}">More at random →</a></p>{% endif %}
{% endblock %}
""")

TEMPL_HIGHLIGHTS = wrap("""
{% block body %}
  {% if heading %}<h2>{{ heading }}</h2>{% endif %}
  {% if source_type %}<p><span class="pill">{{ source_type|smartcap }}</span>
     <small>{{ highlights|length|plural('highlight') }}</small></p>{% endif %}
  {% for h in highlights %}
    {{ quote(h, with_source=not heading) }}
  {% else %}
    <p>No highlights.</p>
  {% endfor %}
{% endblock %}
""")

TEMPL_SOURCES = wrap("""
{% block body %}
  <h2>Sources</h2>
  {% if types %}
  <p>
    <a class="pill" href="{{ url_for('sources') }}">all</a>
    {% for t in types %}
      <a class="pill" href="{{ url_for('sources', type=t) }}"
         {% if t == current %}style="background:#f0c674;color:#000;"{% endif %}>{{ t }}</a>
    {% endfor %}
  </p>
  {% endif %}
  <ul style="list-style:none;padding:0;">
  {% for s in sources %}
    <li style="margin:.4rem 0;">
      <span class="pill">{{ s.type|smartcap }}</span>
      <a href="{{ url_for('source_detail', name=s.name) }}">{{ s.name }}</a>
      <small>({{ s.count }})</small>
    </li>
  {% else %}
    <li>No sources.</li>
  {% endfor %}
  </ul>
{% endblock %}
""")

TEMPL_SEARCH = wrap("""
{% block body %}
  <form action="{{ url_for('search_results') }}" method="get">
    <input name="q" value="{{ query or '' }}" placeholder="Search highlights…" autofocus>
    <button type="submit">Search</button>
  </form>
  {% if query is not none %}
    <p><small>{{ total|plural('result') }} for <strong>{{ query }}</strong></small></p>
    {% for hit in hits %}
      <blockquote>
        {{ hit.snippet }}
        <footer><a href="{{ url_for('source_detail', name=hit.title) }}">{{ hit.title }}</a></footer>
      </blockquote>
    {% endfor %}
    {% if pages|length > 1 %}
    <nav style="font-size:.8em;">
      {% for p in pages %}
        {% if p == page %}<strong>{{ p }}</strong>
        {% else %}<a href="{{ url_for('search_results', q=query, page=p) }}">{{ p }}</a>{% endif %}
      {% endfor %}
    </nav>
    {% endif %}
  {% endif %}
{% endblock %}
""")

TEMPL_ADMIN = wrap("""
{% block body %}
  <h2>Upload highlights</h2>
  <form method="post" action="{{ url_for('upload') }}" enctype="multipart/form-data">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <label for="source_name">Source name</label>
    <input id="source_name" name="source_name" required>
    <label for="source_type">Source type</label>
    <input id="source_type" name="source_type" list="types" required>
    <datalist id="types">{% for t in types %}<option value="{{ t }}">{% endfor %}</datalist>
    <label for="highlights_text">One highlight per line</label>
    <textarea id="highlights_text" name="highlights_text" rows="10"></textarea>
    <label for="highlights_file">…or a text file</label>
    <input id="highlights_file" name="highlights_file" type="file" accept=".txt,text/plain">
    <button type="submit">Upload</button>
  </form>
{% endblock %}
""")

TEMPL_UPLOADED = """
<div class="alert" role="alert">
  <strong>Success!</strong>
  <span>Uploaded {{ count }} highlights for "{{ source_name }}"</span>
</div>
"""

TEMPL_LOGIN = wrap("""
{% block body %}
<form method="post">
  <label for="token">One-time token</label>
  <input id="token" name="token" type="password" autocomplete="current-password">
  <button type="submit">Sign in</button>
</form>
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h2>Internal Server Error</h2>
  <p>Something broke on our side. Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# Views
###############################################################################
@app.route("/")
def index():
    db = get_db()
    return render_template_string(
        TEMPL_INDEX,
        highlights=random_highlights(HOME_SAMPLE, db=db),
        total=count_highlights(db=db),
        n_sources=len(list_sources(db=db)),
        title=SITE_NAME,
    )


@app.route("/random")
def random_view():
    highlights = random_highlights(db=get_db())
    app.logger.info("Random highlights fetched: %d", len(highlights))
    return render_template_string(
        TEMPL_HIGHLIGHTS, highlights=highlights, heading=None, title="Random"
    )


@app.route("/sources")
def sources():
    db = get_db()
    current = request.args.get("type", "").strip() or None
    return render_template_string(
        TEMPL_SOURCES,
        sources=list_sources(db=db, source_type=current),
        types=source_types(db=db),
        current=current,
        title="Sources",
    )


@app.route("/source/")
def source_missing():
    abort(400, "Source name required")


@app.route("/source/<path:name>")
def source_detail(name: str):
    highlights = source_highlights(name, db=get_db())
    return render_template_string(
        TEMPL_HIGHLIGHTS,
        highlights=highlights,
        heading=name,
        source_type=highlights[0].source_type if highlights else None,
        title=name,
    )


@app.route("/export/<path:name>")
@rate_limit(max_requests=30, window=60)
def export_source_json(name: str):
    highlights = source_highlights(name, db=get_db())
    if not highlights:
        abort(404)
    return jsonify(
        source=name,
        source_type=highlights[0].source_type,
        count=len(highlights),
        highlights=[{"id": h.id, "content": h.content} for h in highlights],
    )


@app.route("/search")
def search():
    return render_template_string(TEMPL_SEARCH, query=None, title="Search")


@app.route("/searchResults")
def search_results():
    q_raw = request.args.get("q", "").strip()
    if not q_raw:
        abort(400, "Query parameter 'q' is required")
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    per_page = app.config["SEARCH_LIMIT"]

    try:
        hits, total = search_highlights(q_raw, db=get_db(), page=page, per_page=per_page)
    except ValueError:
        app.logger.warning("Rejected search query %r", q_raw)
        abort(400, "Could not understand that search query")

    pages = list(range(1, (total + per_page - 1) // per_page + 1))
    return render_template_string(
        TEMPL_SEARCH,
        query=q_raw,
        hits=hits,
        total=total,
        page=page,
        pages=pages,
        title=f"Search: {q_raw}",
    )


@app.route("/admin")
def admin():
    if not session.get("logged_in"):
        return redirect(url_for("login"))
    return render_template_string(
        TEMPL_ADMIN, types=source_types(db=get_db()), title="Admin"
    )


def _uploaded_text() -> str:
    """Text-area content wins; otherwise the uploaded file (UTF-8)."""
    text = request.form.get("highlights_text", "")
    if text.strip():
        app.logger.info("Processing highlights from text area")
        return text

    app.logger.info("Processing highlights from uploaded file")
    upload = request.files.get("highlights_file")
    if upload is None or not upload.filename:
        abort(400, "Failed to read file")
    return upload.read().decode("utf-8", errors="replace")


@app.route("/admin/upload", methods=["POST"])
def upload():
    login_required()

    source = request.form.get("source_name", "").strip()
    source_type = request.form.get("source_type", "").strip()
    if not source or not source_type:
        abort(400, "Source name and type are required")

    highlights = build_highlights(parse_lines(_uploaded_text()), source, source_type)
    if not highlights:
        abort(400, "No highlights found – one highlight per line")

    db = get_db()
    try:
        count = insert_highlights(highlights, db=db)
    except sqlite3.Error:
        app.logger.exception("Failed to insert highlights for %r", source)
        abort(500, "Failed to insert highlights into database")

    try:
        index_highlights(highlights, source, db=db)
    except sqlite3.Error:
        app.logger.exception("Failed to index highlights for %r", source)
        abort(500, "Failed to insert highlights into search index")

    try:
        write_backup(highlights, backup_path(source, source_type))
    except OSError:
        app.logger.exception("Failed to write backup for %r", source)
        abort(500, "Failed to write highlights to backup file")

    app.logger.info("Uploaded %d highlights for %r", count, source)
    return render_template_string(TEMPL_UPLOADED, count=count, source_name=source)


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Themed 500 page. An explicit abort(500, msg) keeps its message
    so the admin form can show what failed.
    """
    custom = (
        isinstance(exc, HTTPException)
        and exc.description != InternalServerError.description
    )
    if custom:
        return Response(exc.description, status=500, mimetype="text/plain")
    return render_template_string(TEMPL_500, title="Error"), 500


@app.errorhandler(400)
@app.errorhandler(405)
@app.errorhandler(413)
def plain_error(exc: HTTPException):
    return Response(exc.description, status=exc.code, mimetype="text/plain")
