#!/usr/bin/env python3
"""
HTTP glue for notepages: HTML pages, the JSON API and the CLI.

Run with ``flask --app notepages.webapp run``.
"""

import json
import os
import secrets
from html import escape
from pathlib import Path

import click
from flask import (
    Flask,
    Response,
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

from notepages.app import ITEM_LIST_LIMIT, UPLOAD_MAX_BYTES, App
from notepages.errors import (
    FirstLoginPending,
    NotAuthorized,
    NotFound,
    StorageFailure,
    ValidationError,
)
from notepages.interactors import (
    R2_ENV_KEYS,
    TOKEN_PROVIDER,
    R2UploadInteractor,
    SessionUserInteractor,
    UserInteractor,
    make_login_token,
    r2_is_configured,
    read_login_token,
)
from notepages.markup import time_ago
from notepages.models import Ident, Item, Page, Policy, TagList
from notepages.sqlite_repo import SqliteRepository, connect
from notepages.sqlite_repo import init_db as init_schema

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "notepages.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

PAGE_LIST_LIMIT = 10
PUBLIC_LIST_LIMIT = 20
IMAGE_LIST_LIMIT = 1000
DEFAULT_TEMPLATE = "blog2col"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

DEFAULT_BACKGROUND_SVG = """<svg xmlns="http://www.w3.org/2000/svg" width="1600" height="900">
<defs><linearGradient id="bg" x1="0" y1="0" x2="1" y2="1">
<stop offset="0" stop-color="#2b3a4a"/><stop offset="1" stop-color="#6b8aa6"/>
</linearGradient></defs><rect width="100%" height="100%" fill="url(#bg)"/></svg>"""


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


def env_value(key: str, default: str = "") -> str:
    """Process environment first, then the ``.env`` file."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


def _split_list(raw: str) -> set[str]:
    return {part.strip() for part in raw.split(",") if part.strip()}


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=env_value("SECRET_KEY") or SECRET_KEY,
    DATABASE=env_value("NOTEPAGES_DATABASE", str(DB_FILE)),
    ADMIN_IDENTITIES=_split_list(env_value("ADMIN_IDENTITIES")),
    UPLOAD_MAX_BYTES=int(env_value("UPLOAD_MAX_BYTES", str(UPLOAD_MAX_BYTES))),
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES + 1024 * 1024,
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=env_value("SESSION_COOKIE_SECURE", "1") != "0",
)
app.config.update({k: env_value(k) for k in R2_ENV_KEYS})
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
app.template_filter("ago")(time_ago)


@app.template_filter("sanitized")
def sanitized_filter(html: str | None) -> Markup:
    """Item HTML is cleaned by bleach when stored, so it renders as is."""
    return Markup(html or "")


def get_db():
    if "db" not in g:
        g.db = connect(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    g.pop("notes", None)
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    init_schema(get_db())


def r2_config() -> dict[str, str]:
    cfg = {k: (app.config.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


class ConsoleUserInteractor(UserInteractor):
    """The operator at the terminal: no identity, full admin rights."""

    def current_identity(self) -> Ident:
        return Ident()

    def current_user_is_admin(self) -> bool:
        return True

    def login_url(self, dest_url: str) -> str:
        return dest_url

    def logout_url(self, dest_url: str) -> str:
        return dest_url


def create_notes_app(users: UserInteractor | None = None) -> App:
    """The use-case layer wired to this request's DB connection and session."""
    if users is not None:
        return App(SqliteRepository(get_db()), users, app.logger)
    if "notes" not in g:
        g.notes = App(
            SqliteRepository(get_db()),
            SessionUserInteractor(app.config["ADMIN_IDENTITIES"]),
            app.logger,
            R2UploadInteractor(
                r2_config(), max_upload_bytes=app.config["UPLOAD_MAX_BYTES"]
            ),
        )
    return g.notes


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


def _safe_next(default: str) -> str:
    nxt = request.values.get("next", "")
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return default


def page_href(user_name: str, page_name: str) -> str:
    return url_for("page_view", user_name=user_name, page_name=page_name)


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["page_href"] = page_href
app.jinja_env.globals["r2_enabled"] = lambda: r2_is_configured(r2_config())


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema (no-op when it exists)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"    {app.config['DATABASE']}\n")


@app.cli.command("token")
@click.option("--identity", prompt=True, help="Identity to log in as (e-mail, handle, …)")
def cli_token(identity: str):
    """Print a one-minute login token for IDENTITY."""
    token = make_login_token(app.config["SECRET_KEY"], identity.strip())

    click.secho("\n🔑  Login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("seed-templates")
def cli_seed_templates():
    """Store the built-in page templates."""
    ids = create_notes_app(ConsoleUserInteractor()).seed_templates()
    click.secho(f"\n✅  Templates stored: {', '.join(ids)}\n", fg="green")


###############################################################################
# Security
###############################################################################
@app.before_request
def csrf_protect():
    # read-only verbs are always allowed
    if request.method in SAFE_METHODS:
        return

    # anonymous visitors have no session to ride on (covers /login POST)
    if not session.get("ident"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        if request.path.startswith("/api/"):
            return {"error": "CSRF token missing or invalid."}, 403
        return render_template_string(
            TEMPL_ERROR, title="Forbidden", code=403, message="CSRF token missing."
        ), 403


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


###############################################################################
# Error handling
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


def _error_response(exc, code: int):
    message = str(exc)
    if _wants_json():
        return {"error": message}, code
    return render_template_string(
        TEMPL_ERROR, title="notepages", code=code, message=message
    ), code


@app.errorhandler(NotFound)
def entity_not_found(exc):
    app.logger.info("%s %s: %s", request.method, request.path, exc)
    return _error_response(exc, 404)


@app.errorhandler(NotAuthorized)
def not_authorized(exc):
    app.logger.info("%s %s: %s", request.method, request.path, exc)
    notes = create_notes_app()
    if not _wants_json() and not notes.users.current_identity():
        return redirect(notes.login_url(request.full_path.rstrip("?")))
    return _error_response(exc, 401)


@app.errorhandler(ValidationError)
def invalid_input(exc):
    return _error_response(exc, 400)


@app.errorhandler(FirstLoginPending)
def first_login(exc):
    if _wants_json():
        return {"error": str(exc)}, 401
    return redirect(url_for("first_connection"))


@app.errorhandler(StorageFailure)
def storage_failure(exc):
    app.logger.error("%s %s: %s", request.method, request.path, exc)
    return _error_response(exc, 500)


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return _error_response("Page not found.", 404)


@app.errorhandler(500)
def internal_error(exc):
    return _error_response("Internal server error.", 500)


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'notepages' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{max-width:44em;margin:auto;padding:13px;line-height:1.5;color:#222;background:#fafafa}
a{color:#1d4f7c}nav{display:flex;gap:1em;flex-wrap:wrap;margin-bottom:1.5em}
nav .right{margin-left:auto}.meta{color:#777;font-size:.85em}
.item{background:#fff;border-radius:6px;padding:.8em 1em;margin:1em 0;box-shadow:0 1px 3px rgba(0,0,0,.1)}
.page-head{padding:3em 1em;background-size:cover;background-position:center;border-radius:6px}
.page-head h1{margin:0}.error{color:#a22}textarea{width:100%}
.images img{max-width:128px;vertical-align:middle}
</style>
<body>
<nav>
  <a href="{{ url_for('index') }}">notepages</a>
  {% if session.get('ident') %}
    <a href="{{ url_for('images') }}">Images</a>
    <a class="right" href="{{ url_for('logout') }}">Log out</a>
  {% else %}
    <a class="right" href="{{ url_for('login', next=request.full_path) }}">Log in</a>
  {% endif %}
</nav>
"""

TEMPL_EPILOG = """
</body>
</html>
"""

TEMPL_ERROR = wrap("""
<h1>{{ code }}</h1>
<p class="error">{{ message }}</p>
<p><a href="{{ url_for('index') }}">Back to the home page</a></p>
""")

TEMPL_LOGIN = wrap("""
<h1>Log in</h1>
{% if failed %}<p class="error">Invalid or expired token.</p>{% endif %}
<form method="post">
  <input type="hidden" name="next" value="{{ next }}">
  <input name="token" placeholder="One-time token" autofocus>
  <button>Log in</button>
</form>
<p class="meta">Get a token with <code>flask --app notepages.webapp token</code>.</p>
""")

TEMPL_FIRST_CONNECTION = wrap("""
<h1>Welcome</h1>
<p>You are connected as <strong>{{ identity }}</strong>. Pick a user name
(lowercase letters, digits, <code>_</code> and <code>-</code>, at least 3 characters).</p>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input name="name" required pattern="[a-z0-9_\\-]{3,}">
  <button>Create my account</button>
</form>
""")

TEMPL_INDEX = wrap("""
{% if user_name %}
<h2>My pages</h2>
<ul>
  {% for p in my_pages %}
  <li><a href="{{ page_href(p.user_name, p.name) }}">{{ p.title or p.name }}</a>
      <span class="meta">{{ (p.policy.value if p.policy else "")|lower }} · {{ p.last_modification_date|ago }}</span></li>
  {% else %}
  <li class="meta">No page yet.</li>
  {% endfor %}
  {% if more_my_pages %}<li class="meta">…</li>{% endif %}
</ul>
<form method="post" action="{{ url_for('create_page') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input name="pageName" placeholder="new-page" required>
  <select name="template">
    {% for t in templates %}<option value="{{ t.id }}">{{ t.name }}</option>{% endfor %}
  </select>
  <button>Create</button>
</form>
{% if is_admin %}<p><a href="{{ url_for('templates') }}">Templates</a></p>{% endif %}
{% endif %}

<h2>Recently updated</h2>
<ul>
  {% for p in public_pages %}
  <li><a href="{{ page_href(p.user_name, p.name) }}">{{ p.title or p.name }}</a>
      <span class="meta">by {{ p.user_name }} · {{ p.last_modification_date|ago }}</span></li>
  {% else %}
  <li class="meta">Nothing public yet.</li>
  {% endfor %}
</ul>
""")

TEMPL_CREATE = wrap("""
<h1>Create a page</h1>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input name="pageName" value="{{ page_name }}" required>
  <select name="template">
    {% for t in templates %}
    <option value="{{ t.id }}" {% if t.id == template_id %}selected{% endif %}>{{ t.name }}</option>
    {% endfor %}
  </select>
  <button>Create</button>
</form>
""")

TEMPL_PAGE = wrap("""
<header class="page-head"
        style="background-image:url('{{ url_for('image', img_id=page.tags.tag('background')) }}')">
  <h1 style="color:{{ page.tags.tag('title.color') }}">{{ page.title or page.name }}</h1>
  <span class="meta">by {{ page.user_name }} · updated {{ page.last_modification_date|ago }}</span>
</header>

{% if can_edit %}
<p class="meta">
  <a href="{{ url_for('administrate', userName=page.user_name, pageName=page.name) }}">Settings</a> ·
  <a href="{{ url_for('change_template', userName=page.user_name, pageName=page.name) }}">Template</a> ·
  <a href="{{ url_for('import_page', userName=page.user_name, pageName=page.name) }}">Import</a> ·
  <a href="{{ url_for('export_json', user_name=page.user_name, page_name=page.name,
                      export_name=page.user_name ~ '_' ~ page.name) }}">Export</a> ·
  <a href="{{ url_for('delete_page', userName=page.user_name, pageName=page.name) }}">Delete</a>
</p>
<form method="post" class="item">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input name="title" placeholder="Title">
  {% if template.id == 'urllist' %}<input name="URL" placeholder="https://…">{% endif %}
  <textarea name="content" rows="3" placeholder="Markdown"></textarea>
  <button>Add</button>
</form>
{% endif %}

{% for item in items %}
<article class="item" id="item-{{ item.id }}">
  {% if item.title %}<h3>{% if item.url %}<a href="{{ item.url }}">{{ item.title }}</a>{% else %}{{ item.title }}{% endif %}</h3>
  {% elif item.url %}<p><a href="{{ item.url }}">{{ item.url }}</a></p>{% endif %}
  {{ item.html_content|sanitized }}
  <p class="meta">
    {{ item.creation_date|ago }}{% if item.source %} · {{ item.source }}{% endif %}
    {% for d in template.item_tags %}
      {% if can_edit and d.kind == '_status' %}
      · <select class="tag" data-item="{{ item.id }}" data-key="{{ d.key }}">
        {% for s in ('new', 'done', 'archived') %}
        <option {% if item.tags.tag(d.key) == s %}selected{% endif %}>{{ s }}</option>
        {% endfor %}
      </select>
      {% elif item.tags.tag(d.key) %}· {{ d.name }}: {{ item.tags.tag(d.key) }}{% endif %}
    {% endfor %}
    {% if can_edit %}
    · <a href="{{ url_for('edit_item', userName=page.user_name, pageName=page.name, itemID=item.id) }}">edit</a>
    · <a href="{{ url_for('delete_item', userName=page.user_name, pageName=page.name, itemID=item.id) }}">delete</a>
    {% endif %}
  </p>
</article>
{% else %}
<p class="meta">Nothing here yet.</p>
{% endfor %}
<p class="meta"><a href="{{ url_for('atom', user_name=page.user_name, page_name=page.name) }}">Atom feed</a></p>

{% if can_edit %}
<script>
document.querySelectorAll('select.tag').forEach(sel => {
  sel.addEventListener('change', () => {
    const body = new FormData();
    body.append('mode', 'updateTag');
    body.append('tag-' + sel.dataset.key, sel.value);
    fetch('{{ url_for("api_item", user_name=page.user_name, page_name=page.name, item_id="__ID__") }}'
            .replace('__ID__', sel.dataset.item),
          {method: 'POST', body, headers: {'X-CSRFToken': '{{ csrf_token() }}'}});
  });
});
</script>
{% endif %}
""")

TEMPL_ADMINISTRATE = wrap("""
<h1>Settings of {{ page.name }}</h1>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="userName" value="{{ page.user_name }}">
  <input type="hidden" name="pageName" value="{{ page.name }}">
  <label>Title <input name="title" value="{{ page.title }}"></label>
  <label>Content license <input name="contentLicense" value="{{ page.content_license }}"></label>
  <label>Visibility
    <select name="policy">
      {% for p in policies %}
      <option value="{{ p.value }}" {% if p == page.policy %}selected{% endif %}>{{ p.value|lower }}</option>
      {% endfor %}
    </select>
  </label>
  {% for d in template.page_tags %}
  <label title="{{ d.description }}">{{ d.name }}
    {% if d.kind == 'color' %}
    <input type="color" name="tag-{{ d.key }}" value="{{ page.tags.tag(d.key) }}">
    {% elif d.kind == 'imageId' %}
    <select name="tag-{{ d.key }}">
      <option value="{{ d.default_value }}">{{ d.default_value }}</option>
      {% for img in images %}
      <option value="{{ img.key }}" {% if img.key == page.tags.tag(d.key) %}selected{% endif %}>{{ img.filename }}</option>
      {% endfor %}
    </select>
    {% else %}
    <input name="tag-{{ d.key }}" value="{{ page.tags.tag(d.key) }}">
    {% endif %}
  </label>
  {% endfor %}
  <button>Save</button>
</form>
""")

TEMPL_CHANGE_TEMPLATE = wrap("""
<h1>Template of {{ page_name }}</h1>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="userName" value="{{ user_name }}">
  <input type="hidden" name="pageName" value="{{ page_name }}">
  {% for t in templates %}
  <label><input type="radio" name="templateID" value="{{ t.id }}"
                {% if t.id == current %}checked{% endif %}> {{ t.name }}</label>
  {% endfor %}
  <button>Apply</button>
</form>
""")

TEMPL_CONFIRM = wrap("""
<h1>{{ heading }}</h1>
<p>{{ question }}</p>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% for k, v in fields.items() %}<input type="hidden" name="{{ k }}" value="{{ v }}">{% endfor %}
  <button>Delete</button>
  <a href="{{ back }}">Cancel</a>
</form>
""")

TEMPL_EDIT_ITEM = wrap("""
<h1>Edit item</h1>
<form method="post" class="item">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="userName" value="{{ user_name }}">
  <input type="hidden" name="pageName" value="{{ page_name }}">
  <input type="hidden" name="itemID" value="{{ item.id }}">
  <input type="hidden" name="kind" value="{{ item.kind }}">
  <input name="title" value="{{ item.title }}" placeholder="Title">
  <input name="URL" value="{{ item.url }}" placeholder="https://…">
  <input name="source" value="{{ item.source }}" placeholder="Source">
  <textarea name="content" rows="8">{{ item.content }}</textarea>
  <button>Save</button>
  <a href="{{ page_href(user_name, page_name) }}">Cancel</a>
</form>
""")

TEMPL_IMPORT = wrap("""
<h1>Import into {{ page_name }}</h1>
<p class="meta">Settings are replaced; items with a known id are updated, the others added.</p>
<form method="post" enctype="multipart/form-data">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="userName" value="{{ user_name }}">
  <input type="hidden" name="pageName" value="{{ page_name }}">
  <input type="file" name="file" accept="application/json" required>
  <button>Import</button>
</form>
""")

TEMPL_IMAGES = wrap("""
<h1>Images</h1>
{% if r2_enabled() %}
<form method="post" action="{{ upload_url }}" enctype="multipart/form-data">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="file" name="file" accept="image/*" required>
  <button>Upload</button>
</form>
{% else %}
<p class="meta">Image uploads are not configured.</p>
{% endif %}
<ul class="images">
  {% for img in images %}
  <li>
    <a href="{{ img.url }}"><img src="{{ img.thumb }}" alt="{{ img.name }}"></a>
    <form method="post" action="{{ url_for('image_rename') }}" style="display:inline">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <input type="hidden" name="imgID" value="{{ img.id }}">
      <input name="imageName" value="{{ img.name }}">
      <button>Rename</button>
    </form>
    <form method="post" action="{{ url_for('image_delete') }}" style="display:inline">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <input type="hidden" name="imgID" value="{{ img.id }}">
      <button {% if img.used %}title="Used by a page"{% endif %}>Delete</button>
    </form>
    <span class="meta">{{ img.created|ago }}</span>
  </li>
  {% else %}
  <li class="meta">No image yet.</li>
  {% endfor %}
</ul>
""")

TEMPL_TEMPLATES = wrap("""
<h1>Templates</h1>
<ul>
  {% for t in templates %}
  <li><strong>{{ t.id }}</strong> {{ t.name }} <span class="meta">{{ t.file }} · {{ t.last_modification_date|ago }}</span></li>
  {% else %}
  <li class="meta">No template stored.</li>
  {% endfor %}
</ul>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <button>Store built-in templates</button>
</form>
""")


###############################################################################
# Views – session
###############################################################################
@app.route("/login", methods=["GET", "POST"])
def login():
    dest = _safe_next(url_for("index"))
    token = request.form.get("token", "").strip()

    if request.method == "POST":
        identity = read_login_token(app.config["SECRET_KEY"], token) if token else None
        if identity:
            session.clear()
            session.permanent = True
            session["ident"] = [TOKEN_PROVIDER, identity]
            session["csrf"] = secrets.token_hex(16)
            app.logger.info("login: %s", identity)
            return redirect(dest)

    return render_template_string(
        TEMPL_LOGIN, title="Log in", next=dest, failed=request.method == "POST"
    )


@app.route("/logout")
def logout():
    session.clear()
    return redirect(_safe_next(url_for("index")))


@app.route("/first_connection.html", methods=["GET", "POST"], endpoint="first_connection")
def first_connection():
    notes = create_notes_app()
    try:
        notes.current_identity()
    except FirstLoginPending as exc:
        pending = exc.identity
    else:
        return redirect(url_for("index"))

    if request.method == "POST":
        notes.create_user(pending.ident, request.form.get("name", "").strip())
        return redirect(url_for("index"))

    return render_template_string(
        TEMPL_FIRST_CONNECTION, title="Welcome", identity=pending.ident.identity
    )


###############################################################################
# Views – pages
###############################################################################
@app.route("/")
@app.route("/index.html")
def index():
    notes = create_notes_app()
    identity = notes.current_identity()

    my_pages, more_my_pages, templates = [], False, []
    if identity.user_name:
        my_pages, more_my_pages = notes.list_owned_pages(PAGE_LIST_LIMIT)
        templates = notes.get_all_templates()
    public_pages, _ = notes.list_public_pages(PUBLIC_LIST_LIMIT)

    return render_template_string(
        TEMPL_INDEX,
        title="notepages",
        user_name=identity.user_name,
        my_pages=my_pages,
        more_my_pages=more_my_pages,
        public_pages=public_pages,
        templates=templates,
        is_admin=notes.current_user_is_admin(),
    )


@app.route("/create.html", methods=["GET", "POST"], endpoint="create_page")
def create_page():
    notes = create_notes_app()
    page_name = request.values.get("pageName", "").strip()
    template_id = request.values.get("template", "")

    user = notes.current_user()
    if not user.name:
        return redirect(
            notes.login_url(url_for("create_page", pageName=page_name, template=template_id))
        )

    if request.method == "GET":
        return render_template_string(
            TEMPL_CREATE,
            title="Create a page",
            page_name=page_name,
            template_id=template_id or DEFAULT_TEMPLATE,
            templates=notes.get_all_templates(),
        )

    try:
        notes.get_template(template_id)
    except NotFound:
        template_id = DEFAULT_TEMPLATE

    page = Page(
        user_name=user.name,
        name=page_name,
        title=page_name,
        template_id=template_id,
    )
    notes.create_page(page)
    return redirect(page_href(user.name, page_name) + "#administrate")


@app.route("/administrate.html", methods=["GET", "POST"])
def administrate():
    notes = create_notes_app()
    user_name = request.values.get("userName", "")
    page_name = request.values.get("pageName", "")

    try:
        page = notes.get_page(user_name, page_name)
    except NotFound:
        if request.method == "POST":
            return redirect(url_for("create_page", pageName=page_name))
        raise
    template = notes.get_template(page.template_id)

    if request.method == "GET":
        page.tags.default_to(template.page_tags)
        return render_template_string(
            TEMPL_ADMINISTRATE,
            title=f"Settings of {page.name}",
            page=page,
            template=template,
            policies=list(Policy),
            images=notes.images(IMAGE_LIST_LIMIT),
        )

    policy = request.form.get("policy", "")
    new_page = Page(
        user_name=user_name,
        name=page_name,
        title=request.form.get("title", ""),
        content_license=request.form.get("contentLicense", ""),
        policy=Policy(policy) if policy in Policy.__members__ else None,
        template_id=page.template_id,
    )
    # only values that differ from the template default are stored
    for desc in template.page_tags:
        value = request.form.get(f"tag-{desc.key}", "")
        if value and value != desc.default_value:
            new_page.tags.set_tag(desc.key, value)

    notes.update_page(new_page, template.page_tags)
    return redirect(page_href(user_name, page_name))


@app.route("/change_template.html", methods=["GET", "POST"])
def change_template():
    notes = create_notes_app()
    user_name = request.values.get("userName", "")
    page_name = request.values.get("pageName", "")

    if request.method == "POST":
        notes.update_template(user_name, page_name, request.form.get("templateID", ""))
        return redirect(page_href(user_name, page_name))

    page = notes.get_page(user_name, page_name)
    return render_template_string(
        TEMPL_CHANGE_TEMPLATE,
        title=f"Template of {page_name}",
        user_name=user_name,
        page_name=page_name,
        current=page.template_id,
        templates=notes.get_all_templates(),
    )


@app.route("/delete.html", methods=["GET", "POST"], endpoint="delete_page")
def delete_page():
    notes = create_notes_app()
    user_name = request.values.get("userName", "")
    page_name = request.values.get("pageName", "")

    if request.method == "POST":
        notes.delete_page(user_name, page_name)
        return redirect(url_for("index"))

    page = notes.get_page(user_name, page_name)
    return render_template_string(
        TEMPL_CONFIRM,
        title="Delete page",
        heading=f"Delete {page.title or page.name}?",
        question="The page and all of its items will be removed.",
        fields={"userName": user_name, "pageName": page_name},
        back=page_href(user_name, page_name),
    )


@app.route("/deleteItem.html", methods=["GET", "POST"], endpoint="delete_item")
def delete_item():
    notes = create_notes_app()
    user_name = request.values.get("userName", "")
    page_name = request.values.get("pageName", "")
    item_id = request.values.get("itemID", "")

    if request.method == "POST":
        notes.delete_item(user_name, page_name, item_id)
        return redirect(page_href(user_name, page_name))

    item = notes.get_item(user_name, page_name, item_id)
    return render_template_string(
        TEMPL_CONFIRM,
        title="Delete item",
        heading=f"Delete {item.title or item.id}?",
        question="This cannot be undone.",
        fields={"userName": user_name, "pageName": page_name, "itemID": item_id},
        back=page_href(user_name, page_name),
    )


@app.route("/editItem.html", methods=["GET", "POST"], endpoint="edit_item")
def edit_item():
    notes = create_notes_app()
    user_name = request.values.get("userName", "")
    page_name = request.values.get("pageName", "")
    item_id = request.values.get("itemID", "")

    if request.method == "POST":
        item = Item(
            id=item_id,
            kind=request.form.get("kind", ""),
            title=request.form.get("title", ""),
            content=request.form.get("content", ""),
            source=request.form.get("source", ""),
            url=request.form.get("URL", ""),
        )
        notes.update_item(user_name, page_name, item, update_tags=False)
        return redirect(page_href(user_name, page_name) + f"#item-{item_id}")

    item = notes.get_item(user_name, page_name, item_id)
    if notes.current_user_name() != user_name:
        raise NotAuthorized("Edit item")
    return render_template_string(
        TEMPL_EDIT_ITEM,
        title="Edit item",
        user_name=user_name,
        page_name=page_name,
        item=item,
    )


def _page_with_items(user_name: str, page_name: str):
    notes = create_notes_app()
    page = notes.get_page(user_name, page_name)
    items = notes.list_items(user_name, page_name, ITEM_LIST_LIMIT)
    template = notes.get_template(page.template_id)
    page.tags.default_to(template.page_tags)
    for item in items:
        item.tags.default_to(template.item_tags)
    return page, items, template


@app.route("/p/<user_name>/<page_name>.html", methods=["GET", "POST"], endpoint="page_view")
def page_view(user_name, page_name):
    notes = create_notes_app()

    if request.method == "POST":
        item = Item(
            kind=request.form.get("kind", ""),
            title=request.form.get("title", ""),
            content=request.form.get("content", ""),
            source=request.form.get("source", ""),
            url=request.form.get("URL", ""),
        )
        notes.create_item(user_name, page_name, item)
        return redirect(page_href(user_name, page_name))

    try:
        page, items, template = _page_with_items(user_name, page_name)
    except NotFound as exc:
        if exc.entity_type == "Page" and notes.current_user_name() == user_name:
            return redirect(url_for("create_page", pageName=page_name))
        raise

    return render_template_string(
        TEMPL_PAGE,
        title=page.title or page.name,
        page=page,
        items=items,
        template=template,
        can_edit=notes.current_user_name() == user_name,
    )


def _atom_time(dt) -> str:
    return dt.isoformat() if dt else ""


def _atom(page: Page, items: list[Item]) -> str:
    """Build an Atom 1.0 document (single string) for *page*."""
    entries = []
    for item in items:
        link = (
            f'<link rel="related" href="{escape(item.url)}"/>' if item.url else ""
        )
        author = (
            f"<author><name>{escape(item.source)}</name></author>" if item.source else ""
        )
        entries.append(
            f"""
  <entry>
    <title>{escape(item.title)}</title>
    <id>notepages:item:{escape(item.id)}</id>
    <published>{_atom_time(item.creation_date)}</published>
    <updated>{_atom_time(item.last_modification_date)}</updated>
    {link}{author}
    <content type="html">{escape(item.html_content)}</content>
  </entry>"""
        )

    return f"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>{escape(page.title or page.name)}</title>
  <id>notepages:page:{escape(page.user_name)}/{escape(page.name)}</id>
  <updated>{_atom_time(page.last_modification_date)}</updated>
  <author><name>{escape(page.user_name)}</name></author>
  <link rel="alternate" href="{escape(url_for('page_view', user_name=page.user_name, page_name=page.name, _external=True))}"/>
  {"".join(entries)}
</feed>"""


@app.route("/p/<user_name>/<page_name>/atom.xml")
def atom(user_name, page_name):
    page, items, _ = _page_with_items(user_name, page_name)
    return app.response_class(_atom(page, items), mimetype="application/atom+xml")


@app.route("/p/<user_name>/<page_name>/<export_name>.json", endpoint="export_json")
def export_json(user_name, page_name, export_name):
    if export_name != f"{user_name}_{page_name}":
        return not_found(None)
    data = create_notes_app().export_page(user_name, page_name)
    return Response(
        json.dumps(data, ensure_ascii=False, indent=2),
        mimetype="application/json",
        headers={"Content-Disposition": f'attachment; filename="{export_name}.json"'},
    )


@app.route("/importPage.html", methods=["GET", "POST"], endpoint="import_page")
def import_page():
    notes = create_notes_app()
    user_name = request.values.get("userName", "")
    page_name = request.values.get("pageName", "")

    if request.method == "GET":
        return render_template_string(
            TEMPL_IMPORT,
            title=f"Import into {page_name}",
            user_name=user_name,
            page_name=page_name,
        )

    f = request.files.get("file")
    if f is None or not f.filename:
        raise ValidationError("file", "No file uploaded")
    try:
        data = json.load(f.stream)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("file", "Not a page export") from exc
    if not isinstance(data, dict):
        raise ValidationError("file", "Not a page export")

    notes.import_page(user_name, page_name, data)
    return redirect(page_href(user_name, page_name))


###############################################################################
# Views – images + templates
###############################################################################
@app.route("/user/images.html", endpoint="images")
def images():
    notes = create_notes_app()
    dest = url_for("images")
    rows = [
        {
            "id": img.key,
            "name": img.filename,
            "thumb": notes.image_url(img.key, False, 128),
            "url": notes.image_url(img.key, False, 0),
            "created": img.creation_time,
            "used": notes.is_image_used(img.key),
        }
        for img in notes.images(IMAGE_LIST_LIMIT)
    ]
    return render_template_string(
        TEMPL_IMAGES, title="Images", images=rows, upload_url=notes.upload_url(dest)
    )


@app.route("/user/images.html", methods=["POST"], endpoint="images_post")
def images_post():
    notes = create_notes_app()
    img = notes.store_image(request, "file")
    app.logger.info("image stored: %s", img.key)
    return redirect(_safe_next(url_for("images")))


@app.route("/user/images/rename.html", methods=["POST"], endpoint="image_rename")
def image_rename():
    create_notes_app().rename_image(
        request.form.get("imgID", ""), request.form.get("imageName", "")
    )
    return redirect(url_for("images"))


@app.route("/user/images/delete.html", methods=["POST"], endpoint="image_delete")
def image_delete():
    create_notes_app().delete_image(request.form.get("imgID", ""))
    return redirect(url_for("images"))


@app.route("/images/<path:img_id>", endpoint="image")
def image(img_id):
    if img_id == "default":
        return Response(DEFAULT_BACKGROUND_SVG, mimetype="image/svg+xml")
    return redirect(create_notes_app().image_url(img_id))


@app.route("/templates.htm", methods=["GET", "POST"], endpoint="templates")
def templates():
    notes = create_notes_app()
    if not notes.current_user_is_admin():
        raise NotAuthorized("Manage templates")

    if request.method == "POST":
        notes.seed_templates()
        return redirect(url_for("templates"))

    return render_template_string(
        TEMPL_TEMPLATES, title="Templates", templates=notes.get_all_templates()
    )


###############################################################################
# JSON API
###############################################################################
def _item_from_request(item_id: str = "") -> Item:
    """JSON body when there is one, form fields otherwise."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        item = Item.from_json(data)
    else:
        item = Item(
            kind=request.form.get("kind", ""),
            title=request.form.get("title", ""),
            content=request.form.get("content", ""),
            source=request.form.get("source", ""),
            url=request.form.get("URL", ""),
        )
    if item_id:
        item.id = item_id
    return item


@app.route("/api/version")
def api_version():
    return {"version": create_notes_app().version()}


@app.route("/api/currentUser")
def api_current_user():
    return create_notes_app().current_user().to_json()


@app.route("/api/users/<user_name>/pages/<page_name>")
def api_page(user_name, page_name):
    return create_notes_app().get_page(user_name, page_name).to_json()


@app.route("/api/users/<user_name>/pages/<page_name>/items", methods=["GET", "POST"])
def api_items(user_name, page_name):
    notes = create_notes_app()
    if request.method == "POST":
        item = notes.create_item(user_name, page_name, _item_from_request())
        return item.to_json(), 201

    items = notes.list_items(user_name, page_name, ITEM_LIST_LIMIT)
    return jsonify([i.to_json() for i in items])


@app.route(
    "/api/users/<user_name>/pages/<page_name>/items/<item_id>",
    methods=["POST", "PUT", "DELETE"],
)
def api_item(user_name, page_name, item_id):
    notes = create_notes_app()

    if request.method == "DELETE":
        notes.delete_item(user_name, page_name, item_id)
        return {}

    if request.method == "PUT":
        item = notes.put_item(user_name, page_name, _item_from_request(item_id))
        return item.to_json()

    if request.form.get("mode") == "updateTag":
        item = Item(id=item_id, tags=TagList())
        for key, value in request.form.items():
            if key.startswith("tag-"):
                item = notes.set_item_tag(user_name, page_name, item_id, key[4:], value)
        return item.to_json(), 202

    item = notes.update_item(
        user_name, page_name, _item_from_request(item_id), update_tags=False
    )
    return item.to_json(), 202


if __name__ == "__main__":
    app.run(debug=True)
