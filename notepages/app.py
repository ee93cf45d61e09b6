"""
Use-case layer of notepages.

Every operation follows the same shape: authorise the caller, run one or
more repository transactions, then maintain the derived state (page
modification dates, image usage records).  Item writes and the matching
page-date bump are two separate transactions, kept apart on purpose so a
store with cross-group transactions could merge them later.
"""

from __future__ import annotations

import logging
import re
from typing import Callable
from urllib.parse import urlsplit

from notepages.errors import (
    FirstLoginPending,
    NotAuthorized,
    NotesError,
    NotFound,
    StorageFailure,
    ValidationError,
)
from notepages.interactors import UploadInteractor, UserInteractor
from notepages.markup import ALLOWED_PROTOCOLS, markdown_to_html
from notepages.models import (
    Ident,
    Identity,
    Item,
    Page,
    Policy,
    TagDescription,
    TagDescriptionList,
    Template,
    UploadInfo,
    User,
    UserKind,
    utc_now,
)
from notepages.repository import Repository, generate_id

VERSION = "1.0-alpha7"
USER_NAME_RE = re.compile(r"[a-z0-9_-]{3,}")
IMAGE_TAG_KIND = "imageId"
UPLOAD_MAX_BYTES = 10_000_000
ITEM_LIST_LIMIT = 1000

# ignored by browsers when they read the scheme
_URL_IGNORED_RE = re.compile(r"[\x00-\x20\x7f]")


def _url_scheme(url: str) -> str:
    try:
        return urlsplit(_URL_IGNORED_RE.sub("", url)).scheme.lower()
    except ValueError:
        return ""


_BACKGROUND = TagDescription(
    "background",
    "Background image",
    IMAGE_TAG_KIND,
    "The location of the image to be used as a background for the page.",
    "default",
)
_TITLE_COLOR = TagDescription(
    "title.color",
    "Title color",
    "color",
    "The color to be used for the page title.",
    "#000000",
)
BUILTIN_TEMPLATES = (
    ("blog2col", "Micro-blog", "p_blog2col.html", []),
    ("urllist", "URL list", "p_urllist.html", []),
    ("angular", "Micro-blog with offline mode", "p_angular.html", []),
    (
        "todolist",
        "TODO list",
        "p_todolist.html",
        [
            TagDescription(
                "status",
                "Status",
                "_status",
                "The status of the item (new, done, archived, ...).",
                "new",
            ),
            TagDescription("deadline", "Deadline", "datetime", "The deadline for the item", ""),
        ],
    ),
)


class App:
    """
    One instance per request: the collaborators are request scoped (the
    repository wraps the request's DB connection, the user interactor
    reads the request's session).
    """

    def __init__(
        self,
        repository: Repository,
        users: UserInteractor,
        log: logging.Logger | None = None,
        uploads: UploadInteractor | None = None,
        *,
        render: Callable[[str], str] = markdown_to_html,
        generate_id: Callable[[], str] = generate_id,
    ):
        self.repository = repository
        self.users = users
        self.log = log or logging.getLogger("notepages")
        self.uploads = uploads
        self.render = render
        self.generate_id = generate_id

    ############################################################################
    # Identity
    ############################################################################
    def current_identity(self) -> Identity:
        """
        Identity of the caller.  Empty when anonymous; raises
        ``FirstLoginPending`` when the provider knows the caller but no
        local user exists yet.
        """
        ident = self.users.current_identity()
        if not ident:
            return Identity()
        self.log.info("ident.identity: %s", ident.identity)
        try:
            return self.repository.get_identity(ident)
        except NotFound:
            raise FirstLoginPending(Identity(ident=ident)) from None

    def current_user(self) -> User:
        ident = self.users.current_identity()
        if not ident:
            return User()
        try:
            return self.repository.get_user(ident)
        except NotFound:
            raise FirstLoginPending(Identity(ident=ident)) from None

    def current_user_name(self) -> str:
        """Name of the connected user, ``""`` when there is none."""
        try:
            return self.current_identity().user_name
        except NotesError as exc:
            self.log.debug("current_user_name: %s", exc)
            return ""

    def current_user_is_admin(self) -> bool:
        return self.users.current_user_is_admin()

    def login_url(self, dest_url: str) -> str:
        return self.users.login_url(dest_url)

    def logout_url(self, dest_url: str) -> str:
        return self.users.logout_url(dest_url)

    def version(self) -> str:
        return VERSION

    def _require_owner(self, user_name: str, operation: str) -> str:
        current = self.current_user_name()
        if not current or current != user_name:
            raise NotAuthorized(operation)
        return current

    def _require_user(self, operation: str) -> str:
        user_name = self.current_identity().user_name
        if not user_name:
            raise NotAuthorized(operation)
        return user_name

    def create_user(self, ident: Ident, user_name: str) -> User:
        """
        First-connection flow: create *user_name* and link *ident* to it.
        Both records are written in a single transaction.
        """
        if not ident:
            raise NotAuthorized("Create user")
        if not USER_NAME_RE.fullmatch(user_name or ""):
            raise ValidationError(
                "userName", "The selected user name does not follow the required pattern."
            )

        user = User(name=user_name, kind=UserKind.USER, full_name=user_name)
        identity = Identity(ident=ident, user_name=user_name)

        def _create(repo: Repository) -> None:
            if repo.find_user(user_name):
                raise ValidationError("userName", "The selected user name already exists")
            repo.store_user(user)
            repo.store_identity(identity)

        self.repository.run_in_transaction(_create)
        self.log.info("user %s created for %s", user_name, ident.identity)
        return user

    ############################################################################
    # Pages
    ############################################################################
    def get_page(self, user_name: str, page_name: str) -> Page:
        try:
            page = self.repository.get_page(user_name, page_name)
        except NotFound as exc:
            self.log.info("get_page error: %s", exc)
            raise

        if page.policy != Policy.PUBLIC and self.current_user_name() != user_name:
            self.log.info("Not authorized to read the page %s/%s", user_name, page_name)
            raise NotAuthorized("Read page")
        return page

    def list_public_pages(self, limit: int) -> tuple[list[Page], bool]:
        try:
            return (
                self.repository.new_page_query()
                .filter("policy =", Policy.PUBLIC)
                .order("-last_modification_date")
                .limit(limit)
                .get_all()
            )
        except NotesError as exc:
            self.log.error("list_public_pages failed: %s", exc)
            raise

    def list_owned_pages(self, limit: int) -> tuple[list[Page], bool]:
        user = self.current_user()
        if not user.name:
            raise NotAuthorized("List pages")
        try:
            return (
                self.repository.new_page_query()
                .user(user.name)
                .order("-last_modification_date")
                .limit(limit)
                .get_all()
            )
        except NotesError as exc:
            self.log.error("list_owned_pages failed: %s", exc)
            raise

    def create_page(self, page: Page) -> Page:
        current = self.current_user_name()
        if not current:
            raise NotAuthorized("Create page")
        if not page.user_name:
            page.user_name = current
        elif page.user_name != current:
            raise NotAuthorized("Create page")
        if not page.name:
            raise ValidationError("name", "A page name is required")

        page.last_modification_date = utc_now()
        page.creation_date = page.last_modification_date
        if not page.policy:
            page.policy = Policy.PRIVATE

        def _create(repo: Repository) -> None:
            try:
                repo.get_page(page.user_name, page.name)
            except NotFound:
                repo.store_page(page)
                return
            raise ValidationError("name", "Page already exists")

        self.repository.run_in_transaction(_create)
        return page

    def update_page(self, page: Page, page_tags: TagDescriptionList) -> Page:
        """
        Replace an existing page.  *page_tags* is the page-tag schema of
        the page's template: usage records are rebuilt from the tags whose
        kind is ``imageId``.
        """
        self._require_owner(page.user_name, "Update page")
        page.last_modification_date = utc_now()

        def _update(repo: Repository) -> None:
            old = repo.get_page(page.user_name, page.name)
            page.creation_date = old.creation_date
            if not page.policy:
                page.policy = old.policy

            repo.delete_usages(page.user_name, page.name)
            for desc in page_tags:
                if desc.kind != IMAGE_TAG_KIND:
                    continue
                img_id = page.tags.tag(desc.key)
                if img_id:
                    repo.store_usage(page.user_name, page.name, img_id)

            repo.store_page(page)

        self.repository.run_in_transaction(_update)
        return page

    def update_template(self, user_name: str, page_name: str, template_id: str) -> None:
        self._require_owner(user_name, "Update page")
        now = utc_now()

        def _update(repo: Repository) -> None:
            page = repo.get_page(user_name, page_name)
            if page.template_id == template_id:
                return
            page.template_id = template_id
            page.last_modification_date = now
            repo.store_page(page)

        self.repository.run_in_transaction(_update)

    def delete_page(self, user_name: str, page_name: str) -> None:
        """
        Delete the items, then the page: two independent writes.  Usage
        records of the page are left in place.
        """
        self._require_owner(user_name, "Delete page")
        self.repository.delete_items_from_page(user_name, page_name)
        self.repository.delete_page(user_name, page_name)

    def touch_page(self, user_name: str, page_name: str, when) -> None:
        """Second phase of every item write: bump the parent page's date."""

        def _touch(repo: Repository) -> None:
            page = repo.get_page(user_name, page_name)
            page.last_modification_date = when
            repo.store_page(page)

        try:
            self.repository.run_in_transaction(_touch)
        except NotesError as exc:
            self.log.error(
                "item stored but page %s/%s not touched: %s", user_name, page_name, exc
            )
            raise

    ############################################################################
    # Items
    ############################################################################
    def _prepare_item(self, item: Item) -> None:
        if item.is_empty():
            raise ValidationError(
                "item", "Empty item not allowed. Either content or URL must be provided."
            )
        if item.url and _url_scheme(item.url) not in ALLOWED_PROTOCOLS:
            raise ValidationError("url", "URL must start with http://, https:// or mailto:")
        item.html_content = self.render(item.content)

    def list_items(
        self, user_name: str, page_name: str, limit: int = ITEM_LIST_LIMIT
    ) -> list[Item]:
        self.get_page(user_name, page_name)
        return self.repository.get_items_from_page(user_name, page_name, limit)

    def get_item(self, user_name: str, page_name: str, item_id: str) -> Item:
        self.get_page(user_name, page_name)
        return self.repository.get_item(user_name, page_name, item_id)

    def create_item(self, user_name: str, page_name: str, item: Item) -> Item:
        """Store *item* under a new id, unique within the page."""
        self._require_owner(user_name, "Store item")
        self._prepare_item(item)
        item.creation_date = utc_now()
        item.last_modification_date = item.creation_date

        self.repository.run_in_transaction(
            lambda repo: repo.insert_item(user_name, page_name, item, self.generate_id)
        )
        self.touch_page(user_name, page_name, item.last_modification_date)
        return item

    def put_item(self, user_name: str, page_name: str, item: Item) -> Item:
        """Store a fully defined item under its own id, replacing any previous one."""
        self._require_owner(user_name, "Store item")
        if not item.id:
            raise ValidationError("id", "An item id is required")
        self._prepare_item(item)
        if item.last_modification_date is None:
            item.last_modification_date = utc_now()
        if item.creation_date is None:
            item.creation_date = item.last_modification_date

        self.repository.run_in_transaction(
            lambda repo: repo.store_item(user_name, page_name, item)
        )
        self.touch_page(user_name, page_name, item.last_modification_date)
        return item

    def update_item(
        self, user_name: str, page_name: str, item: Item, update_tags: bool
    ) -> Item:
        """
        Update an existing item.  With ``update_tags=False`` the stored tags
        are kept whatever *item* carries.
        """
        self._require_owner(user_name, "Store item")
        self._prepare_item(item)
        item.last_modification_date = utc_now()

        def _update(repo: Repository) -> None:
            old = repo.get_item(user_name, page_name, item.id)
            item.creation_date = old.creation_date
            if not update_tags:
                item.tags = old.tags
            repo.store_item(user_name, page_name, item)

        self.repository.run_in_transaction(_update)
        self.touch_page(user_name, page_name, item.last_modification_date)
        return item

    def set_item_tag(
        self, user_name: str, page_name: str, item_id: str, key: str, value: str
    ) -> Item:
        self._require_owner(user_name, "Store item")
        if not key:
            raise ValidationError("tag", "Empty tag key not allowed.")
        now = utc_now()

        def _set(repo: Repository) -> Item:
            item = repo.get_item(user_name, page_name, item_id)
            item.last_modification_date = now
            item.tags.set_tag(key, value)
            repo.store_item(user_name, page_name, item)
            return item

        item = self.repository.run_in_transaction(_set)
        self.touch_page(user_name, page_name, now)
        return item

    def delete_item(self, user_name: str, page_name: str, item_id: str) -> None:
        # the page modification date is left as is
        self._require_owner(user_name, "Delete item")
        self.repository.delete_item(user_name, page_name, item_id)

    ############################################################################
    # Templates
    ############################################################################
    def store_template(self, tpl: Template) -> str:
        if not self.users.current_user_is_admin():
            raise NotAuthorized("Store template")
        tpl.last_modification_date = utc_now()
        return self.repository.store_template(tpl, self.generate_id)

    def get_template(self, template_id: str) -> Template:
        return self.repository.get_template(template_id)

    def get_all_templates(self) -> list[Template]:
        return self.repository.get_all_templates()

    def delete_template(self, template_id: str) -> None:
        if not self.users.current_user_is_admin():
            raise NotAuthorized("Delete template")
        self.repository.delete_template(template_id)

    def seed_templates(self) -> list[str]:
        """(Re)store the built-in templates."""
        ids = []
        for template_id, name, file, item_tags in BUILTIN_TEMPLATES:
            tpl = Template(
                id=template_id,
                name=name,
                file=file,
                page_tags=[_BACKGROUND, _TITLE_COLOR],
                item_tags=list(item_tags),
            )
            ids.append(self.store_template(tpl))
        return ids

    ############################################################################
    # Images
    ############################################################################
    def _require_uploads(self) -> UploadInteractor:
        if self.uploads is None:
            raise StorageFailure("Image uploads are not configured.")
        return self.uploads

    def upload_url(self, dest_url: str) -> str:
        return self._require_uploads().upload_url(dest_url, UPLOAD_MAX_BYTES)

    def store_image(self, request, name: str) -> UploadInfo:
        """Persist the uploaded file and record it under the current user."""
        user_name = self._require_user("Store image")
        img = self._require_uploads().upload_info(request, name)
        try:
            self.repository.store_image(img, user_name)
        except NotesError:
            self.log.error("image %s uploaded but not recorded, removing blob", img.key)
            self.uploads.delete(img.key)
            raise
        return img

    def rename_image(self, img_id: str, new_name: str) -> None:
        user_name = self._require_user("Rename image")
        self.repository.rename_image(new_name, img_id, user_name)

    def delete_image(self, img_id: str) -> None:
        # pages referencing the image are not checked, see is_image_used
        user_name = self._require_user("Delete image")
        self.repository.delete_image(img_id, user_name)

    def is_image_used(self, img_id: str) -> bool:
        return self.repository.is_used(img_id)

    def images(self, limit: int) -> list[UploadInfo]:
        user_name = self._require_user("List images")
        return self.repository.get_images(user_name, limit)

    def image_url(self, key: str, secure: bool = False, size: int = 0) -> str:
        return self._require_uploads().image_url(key, secure, size)

    ############################################################################
    # Export / import
    ############################################################################
    def export_page(self, user_name: str, page_name: str) -> dict:
        page = self.get_page(user_name, page_name)
        items = self.repository.get_items_from_page(user_name, page_name, ITEM_LIST_LIMIT)
        return {"Page": page.to_json(), "Items": [i.to_json() for i in items]}

    def import_page(self, user_name: str, page_name: str, data: dict) -> Page:
        """
        Overwrite an existing page with exported *data*.  Items are updated
        when their id exists in the page and created otherwise.
        """
        # nothing is written unless the whole export parses
        try:
            page = Page.from_json(data.get("Page") or {})
            items = [Item.from_json(raw) for raw in data.get("Items") or []]
        except (ValueError, TypeError, AttributeError) as exc:
            raise ValidationError("file", "Not a page export") from exc
        for item in items:
            self._prepare_item(item)

        page.user_name, page.name = user_name, page_name
        tpl = self.get_template(page.template_id)
        self.update_page(page, tpl.page_tags)

        for item in items:
            try:
                self.update_item(user_name, page_name, item, update_tags=True)
            except NotFound:
                self.create_item(user_name, page_name, item)
        return page
