import logging
import os
import tempfile
from io import BytesIO
from typing import Optional

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from .errors import StorageError

logger = logging.getLogger("certforms.storage")

PDF_CONTENT_TYPE = "application/pdf"
DEFAULT_BUCKET = "certificates"


def ensure_dir(path: str) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: str, data, mode: str = "wb") -> None:
    """Write data to a temporary file then atomically rename to target path."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, mode) as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def pdf_page_count(data: bytes) -> int:
    try:
        return len(PdfReader(BytesIO(data)).pages)
    except (PdfReadError, ValueError, OSError) as exc:
        raise StorageError(f"not a readable PDF: {exc}") from exc


def certificate_pdf_path(certificate_number: str, revision: Optional[str] = None) -> str:
    """Storage path for a certificate PDF.

    Re-issued certificates get a ``revision`` suffix so the new file never
    overwrites the one the current database row still points at.
    """
    if revision:
        return f"public/certificado-{certificate_number}-r{revision}.pdf"
    return f"public/certificado-{certificate_number}.pdf"


class ObjectStore:
    """Bucket-style file store rooted under ``SITE_ROOT``.

    Paths are relative to the bucket directory; public URLs are
    ``{public_base_url}/files/{bucket}/{path}``.
    """

    def __init__(
        self,
        site_root: str,
        bucket: str = DEFAULT_BUCKET,
        public_base_url: Optional[str] = None,
    ) -> None:
        self.site_root = site_root
        self.bucket = bucket
        self.root = os.path.join(site_root, bucket)
        self.public_base_url = (public_base_url or "").rstrip("/")

    def _full_path(self, path: str) -> str:
        rel = (path or "").lstrip("/")
        full = os.path.normpath(os.path.join(self.root, rel))
        root = os.path.normpath(self.root)
        if not rel or not full.startswith(root + os.sep):
            raise StorageError(f"invalid storage path {path!r}")
        return full

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/files/{self.bucket}/{path.lstrip('/')}"

    def upload(self, path: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        if not data:
            raise StorageError("refusing to store an empty file")
        if content_type == PDF_CONTENT_TYPE and pdf_page_count(data) < 1:
            raise StorageError("PDF has no pages")
        full = self._full_path(path)
        try:
            write_atomic(full, data)
        except OSError as exc:
            raise StorageError(f"write failed for {path}: {exc}") from exc
        logger.info("[STORE] bucket=%s path=%s bytes=%s", self.bucket, path, len(data))
        return self.public_url(path)

    def exists(self, path: str) -> bool:
        try:
            return os.path.isfile(self._full_path(path))
        except StorageError:
            return False

    def read(self, path: str) -> bytes:
        full = self._full_path(path)
        try:
            with open(full, "rb") as fh:
                return fh.read()
        except OSError as exc:
            raise StorageError(f"read failed for {path}: {exc}") from exc

    def remove(self, path: str) -> bool:
        full = self._full_path(path)
        try:
            os.remove(full)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"remove failed for {path}: {exc}") from exc
        logger.info("[STORE-REMOVE] bucket=%s path=%s", self.bucket, path)
        return True

    def list(self, prefix: str = "") -> list[str]:
        if not os.path.isdir(self.root):
            return []
        found: list[str] = []
        for root, dirs, files in os.walk(self.root):
            dirs[:] = [d for d in dirs if not d.startswith("_")]
            for name in files:
                rel = os.path.relpath(os.path.join(root, name), self.root).replace(os.sep, "/")
                if rel.startswith(prefix):
                    found.append(rel)
        return sorted(found)
