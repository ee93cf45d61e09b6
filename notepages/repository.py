"""
Persistence contract for every notepages entity.

Keys mirror ownership: a page lives under its user, items and usage
records live under their page, uploads live under their user and
templates are global.  Only entities sharing the same top-level user are
guaranteed to be consistent together inside one transaction.
"""

from __future__ import annotations

import re
import secrets
import string
from abc import ABC, abstractmethod
from typing import Callable, TypeVar

from notepages.errors import NotFound
from notepages.models import (
    Ident,
    Identity,
    Item,
    Page,
    Template,
    UploadInfo,
    User,
    Usage,
    utc_now,
)

T = TypeVar("T")

ID_SIZE = 18
ID_CHARS = string.ascii_letters + string.digits

PAGE_QUERY_FIELDS = {
    "user_name",
    "name",
    "title",
    "content_license",
    "policy",
    "template_id",
    "creation_date",
    "last_modification_date",
}
_FILTER_RE = re.compile(r"^\s*([a-z_]+)\s*(=|!=|<=|>=|<|>)?\s*$")


def generate_id(size: int = ID_SIZE) -> str:
    """Random id over letters + digits.  Unique only once checked by a store."""
    return "".join(secrets.choice(ID_CHARS) for _ in range(size))


def parse_filter(filter_str: str) -> tuple[str, str]:
    """
    Split ``"policy ="`` into ``("policy", "=")``.  A missing operator
    means equality; unknown fields are rejected.
    """
    m = _FILTER_RE.match(filter_str or "")
    if not m or m.group(1) not in PAGE_QUERY_FIELDS:
        raise ValueError(f"unsupported page filter: {filter_str!r}")
    return m.group(1), m.group(2) or "="


def parse_order(field_name: str) -> tuple[str, bool]:
    """``"-last_modification_date"`` → ``("last_modification_date", True)``."""
    descending = field_name.startswith("-")
    name = field_name.lstrip("-").strip()
    if name not in PAGE_QUERY_FIELDS:
        raise ValueError(f"unsupported page order: {field_name!r}")
    return name, descending


################################################################################
# Page queries
################################################################################
class PageQuery(ABC):
    """
    Small finite query builder over pages.

    ``user`` scopes to one ancestor, ``filter`` adds equality/comparison
    conditions, ``order`` sorts on a single field and ``limit`` caps the
    result.  ``get_all`` reports whether more pages exist by asking the
    store for one extra row.
    """

    def __init__(self):
        self._user: str | None = None
        self._filters: list[tuple[str, str, object]] = []
        self._order: tuple[str, bool] | None = None
        self._limit: int = -1

    def user(self, user_name: str) -> "PageQuery":
        self._user = user_name
        return self

    def filter(self, filter_str: str, value) -> "PageQuery":
        field_name, op = parse_filter(filter_str)
        self._filters.append((field_name, op, value))
        return self

    def order(self, field_name: str) -> "PageQuery":
        self._order = parse_order(field_name)
        return self

    def limit(self, limit: int) -> "PageQuery":
        self._limit = limit
        return self

    def get_all(self) -> tuple[list[Page], bool]:
        if self._limit <= 0:
            return self._fetch(None), False
        pages = self._fetch(self._limit + 1)
        if len(pages) > self._limit:
            return pages[: self._limit], True
        return pages, False

    @abstractmethod
    def _fetch(self, limit: int | None) -> list[Page]:
        """Run the query against the store, returning at most *limit* pages."""


################################################################################
# Repository
################################################################################
class Repository(ABC):
    """
    Abstract datastore.  Concrete stores implement the point operations;
    the id-generation loops, template upsert and image rename are written
    once here on top of them.
    """

    @abstractmethod
    def run_in_transaction(self, fn: Callable[["Repository"], T]) -> T:
        """
        Run ``fn(tx_repo)``.  Every write made through *tx_repo* commits if
        *fn* returns and is rolled back if it raises; the exception is then
        re-raised unchanged.
        """

    # -- pages -----------------------------------------------------------------
    @abstractmethod
    def get_page(self, user_name: str, page_name: str) -> Page: ...

    @abstractmethod
    def new_page_query(self) -> PageQuery: ...

    @abstractmethod
    def store_page(self, page: Page) -> None: ...

    @abstractmethod
    def delete_page(self, user_name: str, page_name: str) -> None: ...

    # -- items -----------------------------------------------------------------
    @abstractmethod
    def get_items_from_page(
        self, user_name: str, page_name: str, limit: int
    ) -> list[Item]: ...

    @abstractmethod
    def delete_items_from_page(self, user_name: str, page_name: str) -> None: ...

    @abstractmethod
    def find_item(self, user_name: str, page_name: str, item_id: str) -> bool: ...

    @abstractmethod
    def get_item(self, user_name: str, page_name: str, item_id: str) -> Item: ...

    @abstractmethod
    def store_item(self, user_name: str, page_name: str, item: Item) -> None: ...

    @abstractmethod
    def delete_item(self, user_name: str, page_name: str, item_id: str) -> None: ...

    # -- users -----------------------------------------------------------------
    @abstractmethod
    def find_user(self, user_name: str) -> bool: ...

    @abstractmethod
    def get_user(self, ident: Ident) -> User: ...

    @abstractmethod
    def get_identity(self, ident: Ident) -> Identity: ...

    @abstractmethod
    def store_user(self, user: User) -> None: ...

    @abstractmethod
    def store_identity(self, identity: Identity) -> None: ...

    # -- uploaded images -------------------------------------------------------
    @abstractmethod
    def get_images(self, user_name: str, limit: int) -> list[UploadInfo]: ...

    @abstractmethod
    def get_image(self, img_id: str, user_name: str) -> UploadInfo: ...

    @abstractmethod
    def store_image(self, img: UploadInfo, user_name: str) -> None: ...

    @abstractmethod
    def delete_image(self, img_id: str, user_name: str) -> None: ...

    # -- usages ----------------------------------------------------------------
    @abstractmethod
    def is_used(self, img_id: str) -> bool:
        """True if any page of any user references *img_id*."""

    @abstractmethod
    def store_usage(self, user_name: str, page_name: str, img_id: str) -> None: ...

    @abstractmethod
    def delete_usages(self, user_name: str, page_name: str) -> None: ...

    @abstractmethod
    def get_usages(self, user_name: str, page_name: str) -> list[Usage]: ...

    # -- templates -------------------------------------------------------------
    @abstractmethod
    def get_template(self, template_id: str) -> Template: ...

    @abstractmethod
    def find_template(self, template_id: str) -> bool: ...

    @abstractmethod
    def get_all_templates(self) -> list[Template]: ...

    @abstractmethod
    def put_template(self, tpl: Template) -> None:
        """Write *tpl* as-is under its id."""

    @abstractmethod
    def delete_template(self, template_id: str) -> None: ...

    # -- composite operations --------------------------------------------------
    def insert_item(
        self,
        user_name: str,
        page_name: str,
        item: Item,
        generate_id: Callable[[], str],
    ) -> Item:
        """
        Store *item* under a fresh id that no sibling in the same page uses.
        Must be called on a transactional repository so that the existence
        check and the write are atomic.
        """
        item.id = generate_id()
        while self.find_item(user_name, page_name, item.id):
            item.id = generate_id()
        self.store_item(user_name, page_name, item)
        return item

    def store_template(self, tpl: Template, generate_id: Callable[[], str]) -> str:
        """
        Insert or update *tpl* in its own transaction; return its id.

        Templates have no owning ancestor, so a generated id is checked
        against every template.  The creation date of a previous version
        is kept; a new template starts with creation = modification.
        """

        def _store(repo: Repository) -> str:
            if not tpl.id:
                tpl.id = generate_id()
                while repo.find_template(tpl.id):
                    tpl.id = generate_id()

            if tpl.last_modification_date is None:
                tpl.last_modification_date = utc_now()
            try:
                old = repo.get_template(tpl.id)
            except NotFound:
                tpl.creation_date = tpl.last_modification_date
            else:
                tpl.creation_date = old.creation_date

            repo.put_template(tpl)
            return tpl.id

        return self.run_in_transaction(_store)

    def rename_image(self, name: str, img_id: str, user_name: str) -> None:
        """Change an upload's display name; nothing is written when unchanged."""

        def _rename(repo: Repository) -> None:
            img = repo.get_image(img_id, user_name)
            if img.filename == name:
                return
            img.filename = name
            repo.store_image(img, user_name)

        self.run_in_transaction(_rename)
