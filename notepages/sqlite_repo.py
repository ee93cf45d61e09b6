"""
sqlite3 implementation of the notepages repository.

Rows are keyed the same way the ownership hierarchy is: ``page`` by
``(user_name, name)``, ``item`` and ``usage`` by their page key plus their
own id, ``upload_info`` by ``(user_name, key)``.  There are no foreign keys:
as in a key-value store, children can outlive their parent page.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from itertools import count
from typing import Callable, TypeVar

from notepages.errors import NotFound, StorageFailure
from notepages.models import (
    Ident,
    Identity,
    Item,
    Page,
    Policy,
    TagDescription,
    TagList,
    Template,
    UploadInfo,
    User,
    UserKind,
    Usage,
    from_iso,
)
from notepages.repository import PageQuery, Repository

T = TypeVar("T")

logger = logging.getLogger("notepages")

TX_RETRIES = 3
BUSY_TIMEOUT_MS = 5000

SCHEMA_SQL = r"""
------------------------------------------------------------
-- 1.  Accounts
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS user (
    name      TEXT PRIMARY KEY,
    kind      TEXT NOT NULL DEFAULT 'USER',
    full_name TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS identity (
    provider  TEXT NOT NULL,
    identity  TEXT NOT NULL,
    user_name TEXT NOT NULL,
    PRIMARY KEY (provider, identity)
);
CREATE INDEX IF NOT EXISTS idx_identity_user ON identity(user_name);

------------------------------------------------------------
-- 2.  Pages + items (children keyed under their page)
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS page (
    user_name              TEXT NOT NULL,
    name                   TEXT NOT NULL,
    title                  TEXT NOT NULL DEFAULT '',
    content_license        TEXT NOT NULL DEFAULT '',
    policy                 TEXT NOT NULL DEFAULT 'PRIVATE',
    template_id            TEXT NOT NULL DEFAULT '',
    creation_date          TEXT,
    last_modification_date TEXT,
    tags                   TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (user_name, name)
);
CREATE INDEX IF NOT EXISTS idx_page_policy_mod
    ON page(policy, last_modification_date);

CREATE TABLE IF NOT EXISTS item (
    user_name              TEXT NOT NULL,
    page_name              TEXT NOT NULL,
    id                     TEXT NOT NULL,
    kind                   TEXT NOT NULL DEFAULT '',
    title                  TEXT NOT NULL DEFAULT '',
    content                TEXT NOT NULL DEFAULT '',
    html_content           TEXT NOT NULL DEFAULT '',
    source                 TEXT NOT NULL DEFAULT '',
    url                    TEXT NOT NULL DEFAULT '',
    creation_date          TEXT,
    last_modification_date TEXT,
    tags                   TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (user_name, page_name, id)
);

------------------------------------------------------------
-- 3.  Uploads + usages
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS upload_info (
    user_name     TEXT NOT NULL,
    key           TEXT NOT NULL,
    content_type  TEXT NOT NULL DEFAULT '',
    creation_time TEXT,
    filename      TEXT NOT NULL DEFAULT '',
    size          INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_name, key)
);

CREATE TABLE IF NOT EXISTS usage (
    user_name TEXT NOT NULL,
    page_name TEXT NOT NULL,
    image_id  TEXT NOT NULL,
    PRIMARY KEY (user_name, page_name, image_id)
);
CREATE INDEX IF NOT EXISTS idx_usage_image ON usage(image_id);

------------------------------------------------------------
-- 4.  Templates (global)
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS template (
    id                     TEXT PRIMARY KEY,
    name                   TEXT NOT NULL DEFAULT '',
    file                   TEXT NOT NULL DEFAULT '',
    page_tags              TEXT NOT NULL DEFAULT '[]',
    item_tags              TEXT NOT NULL DEFAULT '[]',
    creation_date          TEXT,
    last_modification_date TEXT
);
"""


################################################################################
# Connection helpers
################################################################################
def connect(path: str) -> sqlite3.Connection:
    """
    Open *path* in autocommit mode: transactions are started explicitly by
    ``SqliteRepository.run_in_transaction``.
    """
    db = sqlite3.connect(path, isolation_level=None)
    db.row_factory = sqlite3.Row
    db.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    return db


def init_db(db: sqlite3.Connection) -> None:
    """Create every table if missing.  Safe to call on an existing DB."""
    db.execute("PRAGMA journal_mode = WAL")
    db.executescript(SCHEMA_SQL)


def _ts(dt: datetime | None) -> str | None:
    """Fixed-width UTC text so that column order equals time order."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _sql_value(value):
    if isinstance(value, Policy):
        return value.value
    if isinstance(value, datetime):
        return _ts(value)
    return value


def _is_lock_error(exc: sqlite3.Error) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


################################################################################
# Row mapping
################################################################################
def _page_from_row(row: sqlite3.Row) -> Page:
    return Page(
        user_name=row["user_name"],
        name=row["name"],
        title=row["title"],
        content_license=row["content_license"],
        policy=Policy(row["policy"]),
        template_id=row["template_id"],
        creation_date=from_iso(row["creation_date"]),
        last_modification_date=from_iso(row["last_modification_date"]),
        tags=TagList.from_json(json.loads(row["tags"])),
    )


def _item_from_row(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        kind=row["kind"],
        title=row["title"],
        content=row["content"],
        html_content=row["html_content"],
        source=row["source"],
        url=row["url"],
        creation_date=from_iso(row["creation_date"]),
        last_modification_date=from_iso(row["last_modification_date"]),
        tags=TagList.from_json(json.loads(row["tags"])),
    )


def _template_from_row(row: sqlite3.Row) -> Template:
    return Template(
        id=row["id"],
        name=row["name"],
        file=row["file"],
        page_tags=[TagDescription.from_json(d) for d in json.loads(row["page_tags"])],
        item_tags=[TagDescription.from_json(d) for d in json.loads(row["item_tags"])],
        creation_date=from_iso(row["creation_date"]),
        last_modification_date=from_iso(row["last_modification_date"]),
    )


def _upload_from_row(row: sqlite3.Row) -> UploadInfo:
    return UploadInfo(
        key=row["key"],
        content_type=row["content_type"],
        creation_time=from_iso(row["creation_time"]),
        filename=row["filename"],
        size=row["size"],
    )


################################################################################
# Queries
################################################################################
class SqlitePageQuery(PageQuery):
    def __init__(self, repo: "SqliteRepository"):
        super().__init__()
        self._repo = repo

    def _fetch(self, limit: int | None) -> list[Page]:
        where, params = [], []
        if self._user is not None:
            where.append("user_name = ?")
            params.append(self._user)
        # field names come from a whitelist, see repository.PAGE_QUERY_FIELDS
        for field_name, op, value in self._filters:
            where.append(f"{field_name} {op} ?")
            params.append(_sql_value(value))

        sql = "SELECT * FROM page"
        if where:
            sql += " WHERE " + " AND ".join(where)
        if self._order:
            field_name, descending = self._order
            sql += f" ORDER BY {field_name} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = self._repo._query(sql, params)
        return [_page_from_row(r) for r in rows]


################################################################################
# Repository
################################################################################
class SqliteRepository(Repository):
    """
    Repository backed by one sqlite3 connection (one per request).

    sqlite locks the whole file for writers, which is stricter than the
    per-user transaction groups the interface promises.
    """

    _savepoints = count(1)

    def __init__(self, db: sqlite3.Connection, *, retries: int = TX_RETRIES):
        self.db = db
        self.retries = retries

    # -- plumbing --------------------------------------------------------------
    def _execute(self, sql: str, params=()) -> sqlite3.Cursor:
        try:
            return self.db.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            raise StorageFailure(str(exc)) from exc

    def _query(self, sql: str, params=()) -> list[sqlite3.Row]:
        return self._execute(sql, params).fetchall()

    def _query_one(self, sql: str, params=()) -> sqlite3.Row | None:
        return self._execute(sql, params).fetchone()

    def _begin(self) -> None:
        last_exc: sqlite3.Error | None = None
        for attempt in range(1, self.retries + 1):
            try:
                self.db.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as exc:
                if not _is_lock_error(exc):
                    raise StorageFailure(str(exc)) from exc
                logger.warning("transaction conflict (attempt %d): %s", attempt, exc)
                last_exc = exc
        raise StorageFailure(
            f"transaction failed after {self.retries} attempts: {last_exc}"
        ) from last_exc

    def run_in_transaction(self, fn: Callable[[Repository], T]) -> T:
        if self.db.in_transaction:
            return self._run_nested(fn)

        self._begin()
        try:
            result = fn(self)
        except BaseException:
            if self.db.in_transaction:
                self.db.execute("ROLLBACK")
            raise
        try:
            self.db.execute("COMMIT")
        except sqlite3.Error as exc:
            if self.db.in_transaction:
                self.db.execute("ROLLBACK")
            raise StorageFailure(str(exc)) from exc
        return result

    def _run_nested(self, fn: Callable[[Repository], T]) -> T:
        name = f"sp_{next(self._savepoints)}"
        self._execute(f"SAVEPOINT {name}")
        try:
            result = fn(self)
        except BaseException:
            self._execute(f"ROLLBACK TO {name}")
            self._execute(f"RELEASE {name}")
            raise
        self._execute(f"RELEASE {name}")
        return result

    # -- pages -----------------------------------------------------------------
    def get_page(self, user_name: str, page_name: str) -> Page:
        row = self._query_one(
            "SELECT * FROM page WHERE user_name=? AND name=?", (user_name, page_name)
        )
        if row is None:
            raise NotFound("Page", page_name)
        return _page_from_row(row)

    def new_page_query(self) -> PageQuery:
        return SqlitePageQuery(self)

    def store_page(self, page: Page) -> None:
        self._execute(
            """
            INSERT OR REPLACE INTO page
                (user_name, name, title, content_license, policy, template_id,
                 creation_date, last_modification_date, tags)
            VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (
                page.user_name,
                page.name,
                page.title,
                page.content_license,
                (page.policy or Policy.PRIVATE).value,
                page.template_id,
                _ts(page.creation_date),
                _ts(page.last_modification_date),
                json.dumps(page.tags.to_json()),
            ),
        )

    def delete_page(self, user_name: str, page_name: str) -> None:
        self._execute(
            "DELETE FROM page WHERE user_name=? AND name=?", (user_name, page_name)
        )

    # -- items -----------------------------------------------------------------
    def get_items_from_page(
        self, user_name: str, page_name: str, limit: int
    ) -> list[Item]:
        rows = self._query(
            """
            SELECT *
              FROM item
             WHERE user_name=? AND page_name=?
             ORDER BY last_modification_date DESC
             LIMIT ?
            """,
            (user_name, page_name, limit if limit > 0 else -1),
        )
        return [_item_from_row(r) for r in rows]

    def delete_items_from_page(self, user_name: str, page_name: str) -> None:
        self._execute(
            "DELETE FROM item WHERE user_name=? AND page_name=?",
            (user_name, page_name),
        )

    def find_item(self, user_name: str, page_name: str, item_id: str) -> bool:
        row = self._query_one(
            "SELECT 1 FROM item WHERE user_name=? AND page_name=? AND id=?",
            (user_name, page_name, item_id),
        )
        return row is not None

    def get_item(self, user_name: str, page_name: str, item_id: str) -> Item:
        row = self._query_one(
            "SELECT * FROM item WHERE user_name=? AND page_name=? AND id=?",
            (user_name, page_name, item_id),
        )
        if row is None:
            raise NotFound("Item", item_id)
        return _item_from_row(row)

    def store_item(self, user_name: str, page_name: str, item: Item) -> None:
        self._execute(
            """
            INSERT OR REPLACE INTO item
                (user_name, page_name, id, kind, title, content, html_content,
                 source, url, creation_date, last_modification_date, tags)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                user_name,
                page_name,
                item.id,
                item.kind,
                item.title,
                item.content,
                item.html_content,
                item.source,
                item.url,
                _ts(item.creation_date),
                _ts(item.last_modification_date),
                json.dumps(item.tags.to_json()),
            ),
        )

    def delete_item(self, user_name: str, page_name: str, item_id: str) -> None:
        self._execute(
            "DELETE FROM item WHERE user_name=? AND page_name=? AND id=?",
            (user_name, page_name, item_id),
        )

    # -- users -----------------------------------------------------------------
    def find_user(self, user_name: str) -> bool:
        return self._query_one("SELECT 1 FROM user WHERE name=?", (user_name,)) is not None

    def get_user(self, ident: Ident) -> User:
        identity = self.get_identity(ident)
        row = self._query_one("SELECT * FROM user WHERE name=?", (identity.user_name,))
        if row is None:
            raise NotFound("User", identity.user_name)
        return User(name=row["name"], kind=UserKind(row["kind"]), full_name=row["full_name"])

    def get_identity(self, ident: Ident) -> Identity:
        row = self._query_one(
            "SELECT * FROM identity WHERE provider=? AND identity=? LIMIT 1",
            (ident.provider, ident.identity),
        )
        if row is None:
            raise NotFound("Identity", ident.identity)
        return Identity(
            ident=Ident(row["provider"], row["identity"]), user_name=row["user_name"]
        )

    def store_user(self, user: User) -> None:
        self._execute(
            "INSERT OR REPLACE INTO user (name, kind, full_name) VALUES (?,?,?)",
            (user.name, user.kind.value, user.full_name),
        )

    def store_identity(self, identity: Identity) -> None:
        self._execute(
            "INSERT OR REPLACE INTO identity (provider, identity, user_name) VALUES (?,?,?)",
            (identity.ident.provider, identity.ident.identity, identity.user_name),
        )

    # -- uploaded images -------------------------------------------------------
    def get_images(self, user_name: str, limit: int) -> list[UploadInfo]:
        rows = self._query(
            "SELECT * FROM upload_info WHERE user_name=? ORDER BY filename LIMIT ?",
            (user_name, limit if limit > 0 else -1),
        )
        return [_upload_from_row(r) for r in rows]

    def get_image(self, img_id: str, user_name: str) -> UploadInfo:
        row = self._query_one(
            "SELECT * FROM upload_info WHERE user_name=? AND key=?", (user_name, img_id)
        )
        if row is None:
            raise NotFound("UploadInfo", img_id)
        return _upload_from_row(row)

    def store_image(self, img: UploadInfo, user_name: str) -> None:
        self._execute(
            """
            INSERT OR REPLACE INTO upload_info
                (user_name, key, content_type, creation_time, filename, size)
            VALUES (?,?,?,?,?,?)
            """,
            (
                user_name,
                img.key,
                img.content_type,
                _ts(img.creation_time),
                img.filename,
                img.size,
            ),
        )

    def delete_image(self, img_id: str, user_name: str) -> None:
        self._execute(
            "DELETE FROM upload_info WHERE user_name=? AND key=?", (user_name, img_id)
        )

    # -- usages ----------------------------------------------------------------
    def is_used(self, img_id: str) -> bool:
        return (
            self._query_one("SELECT 1 FROM usage WHERE image_id=? LIMIT 1", (img_id,))
            is not None
        )

    def store_usage(self, user_name: str, page_name: str, img_id: str) -> None:
        self._execute(
            "INSERT OR REPLACE INTO usage (user_name, page_name, image_id) VALUES (?,?,?)",
            (user_name, page_name, img_id),
        )

    def delete_usages(self, user_name: str, page_name: str) -> None:
        self._execute(
            "DELETE FROM usage WHERE user_name=? AND page_name=?", (user_name, page_name)
        )

    def get_usages(self, user_name: str, page_name: str) -> list[Usage]:
        rows = self._query(
            "SELECT * FROM usage WHERE user_name=? AND page_name=? ORDER BY image_id",
            (user_name, page_name),
        )
        return [Usage(r["user_name"], r["page_name"], r["image_id"]) for r in rows]

    # -- templates -------------------------------------------------------------
    def get_template(self, template_id: str) -> Template:
        row = self._query_one("SELECT * FROM template WHERE id=?", (template_id,))
        if row is None:
            raise NotFound("Template", template_id)
        return _template_from_row(row)

    def find_template(self, template_id: str) -> bool:
        return (
            self._query_one("SELECT 1 FROM template WHERE id=?", (template_id,))
            is not None
        )

    def get_all_templates(self) -> list[Template]:
        rows = self._query("SELECT * FROM template ORDER BY name")
        return [_template_from_row(r) for r in rows]

    def put_template(self, tpl: Template) -> None:
        self._execute(
            """
            INSERT OR REPLACE INTO template
                (id, name, file, page_tags, item_tags,
                 creation_date, last_modification_date)
            VALUES (?,?,?,?,?,?,?)
            """,
            (
                tpl.id,
                tpl.name,
                tpl.file,
                json.dumps([d.to_json() for d in tpl.page_tags]),
                json.dumps([d.to_json() for d in tpl.item_tags]),
                _ts(tpl.creation_date),
                _ts(tpl.last_modification_date),
            ),
        )

    def delete_template(self, template_id: str) -> None:
        self._execute("DELETE FROM template WHERE id=?", (template_id,))
