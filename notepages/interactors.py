"""
External collaborators of the use-case layer: who is connected, and where
uploaded images live.  The abstract contracts are what ``App`` depends on;
the Flask session and R2 (S3-compatible) implementations are what the web
layer plugs in.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import urlencode

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from flask import session, url_for
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from werkzeug.utils import secure_filename

from notepages.errors import StorageFailure, ValidationError
from notepages.models import Ident, UploadInfo, utc_now

logger = logging.getLogger("notepages")

TOKEN_PROVIDER = "token"
TOKEN_MAX_AGE = 60
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
IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "image/svg+xml",
}


################################################################################
# Contracts
################################################################################
class UserInteractor(ABC):
    @abstractmethod
    def current_identity(self) -> Ident:
        """The provider identity of the caller; empty when anonymous."""

    @abstractmethod
    def current_user_is_admin(self) -> bool: ...

    @abstractmethod
    def login_url(self, dest_url: str) -> str: ...

    @abstractmethod
    def logout_url(self, dest_url: str) -> str: ...


class UploadInteractor(ABC):
    @abstractmethod
    def upload_url(self, dest_url: str, max_upload_bytes: int) -> str:
        """Where the browser must post the file; redirects to *dest_url* after."""

    @abstractmethod
    def upload_info(self, request, name: str) -> UploadInfo:
        """Persist the file posted under form field *name* and describe it."""

    @abstractmethod
    def image_url(self, key: str, secure: bool, size: int) -> str: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...


################################################################################
# Session identities + one-time login tokens
################################################################################
def _signer(secret_key: str) -> TimestampSigner:
    return TimestampSigner(secret_key, salt="login-token")


def make_login_token(secret_key: str, identity: str) -> str:
    """Signed, short-lived token proving control of *identity*."""
    return _signer(secret_key).sign(identity).decode()


def read_login_token(
    secret_key: str, token: str, max_age: int = TOKEN_MAX_AGE
) -> str | None:
    """
    Return the identity carried by *token*, or ``None`` when the token is
    forged or older than *max_age* seconds.
    """
    try:
        return _signer(secret_key).unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return None  # too old
    except BadSignature:
        return None  # forged


class SessionUserInteractor(UserInteractor):
    """Identity stored in the Flask session by the token login."""

    def __init__(self, admin_identities: set[str] | frozenset[str] = frozenset()):
        self.admin_identities = set(admin_identities)

    def current_identity(self) -> Ident:
        raw = session.get("ident")
        if not raw:
            return Ident()
        return Ident(raw[0], raw[1])

    def current_user_is_admin(self) -> bool:
        ident = self.current_identity()
        return bool(ident) and ident.identity in self.admin_identities

    def login_url(self, dest_url: str) -> str:
        return url_for("login", next=dest_url)

    def logout_url(self, dest_url: str) -> str:
        return url_for("logout", next=dest_url)


################################################################################
# R2 uploads
################################################################################
def r2_is_configured(cfg: dict[str, str]) -> bool:
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
        base = base.rstrip("/")
        return f"{base}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


class R2UploadInteractor(UploadInteractor):
    """
    Images go through the application (``/user/images`` POST) and are
    streamed into an R2 bucket; the bucket key is the image id.
    """

    def __init__(self, cfg: dict[str, str], *, max_upload_bytes: int, client=None):
        self.cfg = cfg
        self.max_upload_bytes = max_upload_bytes
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not r2_is_configured(self.cfg):
                raise StorageFailure("Image uploads are not configured.")
            self._client = _r2_client(self.cfg)
        return self._client

    def upload_url(self, dest_url: str, max_upload_bytes: int) -> str:
        self.max_upload_bytes = min(self.max_upload_bytes, max_upload_bytes)
        return url_for("images_post", next=dest_url)

    def upload_info(self, request, name: str) -> UploadInfo:
        f = request.files.get(name)
        if f is None or not f.filename:
            raise ValidationError("file", "No file uploaded")

        mime = (f.mimetype or "").lower()
        if mime not in IMAGE_MIMES:
            raise ValidationError("file", "Only image uploads are allowed")

        f.stream.seek(0, 2)
        size = f.stream.tell()
        f.stream.seek(0)
        if size > self.max_upload_bytes:
            raise ValidationError("file", f"File too large ({self.max_upload_bytes} bytes max)")

        now = utc_now()
        ext = Path(secure_filename(f.filename)).suffix.lower()
        key = f"uploads/{now.strftime('%Y/%m/%d')}/{uuid.uuid4().hex}{ext}"

        try:
            self.client.upload_fileobj(
                f.stream,
                self.cfg["R2_BUCKET"],
                key,
                ExtraArgs={"ContentType": mime},
            )
        except (BotoCoreError, ClientError) as exc:
            logger.exception("R2 upload failed")
            raise StorageFailure("Upload failed – check R2 credentials.") from exc

        return UploadInfo(
            key=key,
            content_type=mime,
            creation_time=now,
            filename=f.filename,
            size=size,
        )

    def image_url(self, key: str, secure: bool, size: int) -> str:
        url = r2_object_url(self.cfg, key)
        if secure and url.startswith("http://"):
            url = "https://" + url[len("http://") :]
        if size > 0:
            url += "?" + urlencode({"width": size})
        return url

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.cfg["R2_BUCKET"], Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.exception("R2 delete failed")
            raise StorageFailure(f"Could not delete {key}") from exc
