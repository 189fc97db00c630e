"""Filesystem-backed object storage with HMAC-signed, expiring URLs.

Objects live at ``<root>/<bucket>/<key>``.  Signed URLs point at the API's
``/files`` route, which calls ``verify`` before serving bytes, so links can
be revoked by rotating ``FESTPASS_SIGNING_SECRET`` or by regenerating the
object.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
import time
from pathlib import Path
from urllib.parse import quote, urlencode

from festpass.defaults import DEFAULT_PUBLIC_BASE_URL
from festpass.errors import NotFound, TransientIOError

log = logging.getLogger("festpass.storage")


def resolve_signing_secret(secret: str | None = None) -> str:
    """Explicit secret, else ``FESTPASS_SIGNING_SECRET``, else a per-process one."""
    secret = secret or os.environ.get("FESTPASS_SIGNING_SECRET", "")
    if not secret:
        log.warning(
            "FESTPASS_SIGNING_SECRET not set; signed URLs and session tokens "
            "will not survive a restart"
        )
        secret = secrets.token_hex(32)
    return secret


class LocalObjectStorage:
    """ObjectStoragePort over a local directory tree."""

    def __init__(
        self,
        root: str | Path,
        *,
        secret: str,
        base_url: str = DEFAULT_PUBLIC_BASE_URL,
    ) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._secret = secret.encode()
        self._base_url = base_url.rstrip("/")

    @classmethod
    def from_env(cls, secret: str | None = None) -> LocalObjectStorage:
        return cls(
            os.environ.get("FESTPASS_STORAGE_ROOT", str(Path(".festpass") / "objects")),
            secret=resolve_signing_secret(secret),
            base_url=os.environ.get("FESTPASS_PUBLIC_BASE_URL", DEFAULT_PUBLIC_BASE_URL),
        )

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, bucket: str, key: str) -> Path:
        path = (self._root / bucket / key).resolve()
        if not path.is_relative_to(self._root.resolve()):
            raise NotFound(f"Invalid object key: {bucket}/{key}")
        return path

    # ------------------------------------------------------------------
    # ObjectStoragePort
    # ------------------------------------------------------------------

    def get(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"Object not found: {bucket}/{key}") from None
        except OSError as exc:
            raise TransientIOError(f"Failed to read {bucket}/{key}: {exc}") from exc

    def put(self, bucket: str, key: str, data: bytes) -> str:
        path = self._path(bucket, key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as exc:
            raise TransientIOError(f"Failed to write {bucket}/{key}: {exc}") from exc
        return f"{bucket}/{key}"

    def exists(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).is_file()

    def signed_url(self, bucket: str, key: str, ttl: int) -> tuple[str, int]:
        """Return ``(url, expires_at)`` for a time-limited link."""
        expires = int(time.time()) + int(ttl)
        query = urlencode({"expires": expires, "sig": self._sign(bucket, key, expires)})
        return f"{self._base_url}/files/{quote(bucket)}/{quote(key)}?{query}", expires

    def verify(self, bucket: str, key: str, expires: int, signature: str) -> bool:
        if int(expires) < int(time.time()):
            return False
        return hmac.compare_digest(self._sign(bucket, key, int(expires)), signature)

    def _sign(self, bucket: str, key: str, expires: int) -> str:
        message = f"{bucket}/{key}:{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()
