"""
Entity model: users, pages, items, templates, uploads and the tag lists
that extend pages and items.
"""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Iterator


################################################################################
# Time helpers
################################################################################
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def from_iso(raw: str | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp.  A trailing ``Z`` (as written by other
    JSON encoders) is accepted; naive values are taken as UTC.
    """
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


################################################################################
# Enumerations
################################################################################
class Policy(str, Enum):
    PRIVATE = "PRIVATE"  # only the owner may read
    PUBLIC = "PUBLIC"  # anonymous readers allowed


class UserKind(str, Enum):
    USER = "USER"
    ORG = "ORG"


################################################################################
# Tags
################################################################################
@dataclass(frozen=True)
class Tag:
    key: str
    value: str


@dataclass
class TagDescription:
    """Schema entry of a template: what a tag key means and its default."""

    key: str
    name: str = ""
    kind: str = ""
    description: str = ""
    default_value: str = ""

    def to_json(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "kind": self.kind,
            "description": self.description,
            "defaultValue": self.default_value,
        }

    @classmethod
    def from_json(cls, data: dict) -> "TagDescription":
        return cls(
            key=data.get("key", ""),
            name=data.get("name", ""),
            kind=data.get("kind", ""),
            description=data.get("description", ""),
            default_value=data.get("defaultValue", ""),
        )


TagDescriptionList = list[TagDescription]


class TagList:
    """
    Sorted associative array of ``Tag`` objects.

    Keys are unique and kept in ascending order after every mutation, so
    lookups are binary searches and the persisted array is stable.
    """

    def __init__(self, tags: Iterable | None = None):
        self._tags: list[Tag] = []
        for t in tags or ():
            if isinstance(t, Tag):
                self.set_tag(t.key, t.value)
            elif isinstance(t, dict):
                self.set_tag(t.get("key", ""), t.get("value", ""))
            else:
                k, v = t
                self.set_tag(k, v)

    def _index(self, key: str) -> int:
        return bisect_left(self._tags, key, key=lambda t: t.key)

    def tag(self, key: str) -> str:
        """Value stored under *key*, or an empty string."""
        i = self._index(key)
        if i < len(self._tags) and self._tags[i].key == key:
            return self._tags[i].value
        return ""

    def set_tag(self, key: str, value: str) -> None:
        """Add or replace *key*; the list stays sorted."""
        i = self._index(key)
        if i < len(self._tags) and self._tags[i].key == key:
            self._tags[i] = Tag(key, value)
        else:
            self._tags.insert(i, Tag(key, value))

    def default_to(self, descriptions: Iterable[TagDescription]) -> None:
        """Fill every described key that has no value with its default."""
        for desc in descriptions:
            if not self.tag(desc.key):
                self.set_tag(desc.key, desc.default_value)

    def keys(self) -> list[str]:
        return [t.key for t in self._tags]

    def copy(self) -> "TagList":
        return TagList(self._tags)

    def __iter__(self) -> Iterator[Tag]:
        return iter(self._tags)

    def __len__(self) -> int:
        return len(self._tags)

    def __contains__(self, key: str) -> bool:
        i = self._index(key)
        return i < len(self._tags) and self._tags[i].key == key

    def __eq__(self, other) -> bool:
        if isinstance(other, TagList):
            return self._tags == other._tags
        return NotImplemented

    def __repr__(self) -> str:
        return f"TagList({[(t.key, t.value) for t in self._tags]!r})"

    def to_json(self) -> list[dict]:
        return [{"key": t.key, "value": t.value} for t in self._tags]

    @classmethod
    def from_json(cls, data: list | None) -> "TagList":
        return cls(data or [])


################################################################################
# Users
################################################################################
@dataclass
class User:
    name: str = ""  # unique, immutable once created
    kind: UserKind = UserKind.USER
    full_name: str = ""

    def __str__(self) -> str:
        return self.name or "*Anonymous*"

    def to_json(self) -> dict:
        return {"name": self.name, "kind": self.kind.value, "fullName": self.full_name}


@dataclass(frozen=True)
class Ident:
    """Identity as reported by the third-party provider."""

    provider: str = ""
    identity: str = ""

    def __bool__(self) -> bool:
        return bool(self.identity)


@dataclass
class Identity:
    """Link between an external ``Ident`` and a local user name."""

    ident: Ident = field(default_factory=Ident)
    user_name: str = ""


################################################################################
# Pages + items
################################################################################
@dataclass
class Page:
    user_name: str
    name: str
    title: str = ""
    content_license: str = ""
    policy: Policy | None = None
    template_id: str = ""
    creation_date: datetime | None = None
    last_modification_date: datetime | None = None
    tags: TagList = field(default_factory=TagList)

    def to_json(self) -> dict:
        return {
            "userName": self.user_name,
            "name": self.name,
            "creationDate": to_iso(self.creation_date),
            "lastModificationDate": to_iso(self.last_modification_date),
            "title": self.title,
            "contentLicense": self.content_license,
            "policy": self.policy.value if self.policy else "",
            "templateID": self.template_id,
            "tags": self.tags.to_json(),
        }

    @classmethod
    def from_json(cls, data: dict) -> "Page":
        policy = data.get("policy") or None
        return cls(
            user_name=data.get("userName", ""),
            name=data.get("name", ""),
            title=data.get("title", ""),
            content_license=data.get("contentLicense", ""),
            policy=Policy(policy) if policy else None,
            template_id=data.get("templateID", ""),
            creation_date=from_iso(data.get("creationDate")),
            last_modification_date=from_iso(data.get("lastModificationDate")),
            tags=TagList.from_json(data.get("tags")),
        )


@dataclass
class Item:
    """Element of a page.  Either ``content`` or ``url`` carries the payload."""

    id: str = ""
    kind: str = ""
    title: str = ""
    content: str = ""  # markdown source
    html_content: str = ""  # sanitised rendering of ``content``
    source: str = ""
    url: str = ""
    creation_date: datetime | None = None
    last_modification_date: datetime | None = None
    tags: TagList = field(default_factory=TagList)

    def __str__(self) -> str:
        return self.title

    def is_empty(self) -> bool:
        return not self.content and not self.url

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "creationDate": to_iso(self.creation_date),
            "lastModificationDate": to_iso(self.last_modification_date),
            "kind": self.kind,
            "title": self.title,
            "content": self.content,
            "htmlContent": self.html_content,
            "source": self.source,
            "url": self.url,
            "tags": self.tags.to_json(),
        }

    @classmethod
    def from_json(cls, data: dict) -> "Item":
        return cls(
            id=data.get("id", ""),
            kind=data.get("kind", ""),
            title=data.get("title", ""),
            content=data.get("content", ""),
            html_content=data.get("htmlContent", ""),
            source=data.get("source", ""),
            url=data.get("url", ""),
            creation_date=from_iso(data.get("creationDate")),
            last_modification_date=from_iso(data.get("lastModificationDate")),
            tags=TagList.from_json(data.get("tags")),
        )


################################################################################
# Templates, uploads, usages
################################################################################
@dataclass
class Template:
    """Global page schema: rendering target plus tag descriptions."""

    id: str = ""
    name: str = ""
    file: str = ""
    page_tags: TagDescriptionList = field(default_factory=list)
    item_tags: TagDescriptionList = field(default_factory=list)
    creation_date: datetime | None = None
    last_modification_date: datetime | None = None

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "file": self.file,
            "pageTags": [d.to_json() for d in self.page_tags],
            "itemTags": [d.to_json() for d in self.item_tags],
            "creationDate": to_iso(self.creation_date),
            "lastModificationDate": to_iso(self.last_modification_date),
        }


@dataclass
class UploadInfo:
    key: str
    content_type: str = ""
    creation_time: datetime | None = None
    filename: str = ""
    size: int = 0


@dataclass(frozen=True)
class Usage:
    """A page references an uploaded image through one of its tags."""

    user_name: str
    page_name: str
    image_id: str
