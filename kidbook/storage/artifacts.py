"""
Artifact storage for generated images and documents.

Paths are deterministic and namespaced per book; stores prefix them with the
tenant namespace and return a public URL that callers persist verbatim.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

import requests

from kidbook.common.errors import StorageError

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "application/pdf": "pdf",
}
_CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "pdf": "application/pdf",
}
DEFAULT_IMAGE_CONTENT_TYPE = "image/webp"


class ArtifactStore(Protocol):
    def put(self, path: str, data: bytes, content_type: str) -> str:
        ...

    def get(self, url: str) -> bytes:
        ...


def extension_for(content_type: str | None) -> str:
    base = (content_type or "").split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base, "webp")


def content_type_for(path: str) -> str:
    suffix = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return _CONTENT_TYPES.get(suffix, "application/octet-stream")


def cover_image_path(book_id: str, extension: str) -> str:
    return f"{book_id}/cover.{extension}"


def page_image_path(book_id: str, page_number: int, extension: str) -> str:
    if page_number == 0:
        return cover_image_path(book_id, extension)
    return f"{book_id}/pages/page_{page_number}.{extension}"


def character_ref_path(book_id: str, character_id: str, index: int, extension: str) -> str:
    return f"{book_id}/characters/{character_id}/ref_{index}.{extension}"


def document_path(book_id: str, extension: str = "pdf") -> str:
    return f"{book_id}/document.{extension}"


def _normalize_path(path: str) -> str:
    cleaned = path.strip().lstrip("/")
    if not cleaned or any(part in {"", ".", ".."} for part in cleaned.split("/")):
        raise StorageError(f"Invalid artifact path '{path}'.")
    return cleaned


def download(url: str, *, timeout: float = 30.0) -> tuple[bytes, str]:
    """
    Fetch a generator output and return its bytes and content type.
    """
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise StorageError(f"Failed to download {url}: {exc}") from exc

    content_type = response.headers.get("content-type")
    if not content_type:
        guessed = content_type_for(urlparse(url).path)
        content_type = guessed if guessed != "application/octet-stream" else DEFAULT_IMAGE_CONTENT_TYPE
    return response.content, content_type


class LocalArtifactStore:
    """
    Filesystem store rooted at ``root``.

    URLs are ``{base_url}/{namespace}/{path}`` when ``base_url`` is set (for a
    static file server in front of ``root``), otherwise ``file://`` URIs.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        base_url: str | None = None,
        namespace: str | None = None,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.base_url = base_url.rstrip("/") if base_url else None
        self.namespace = namespace.strip("/") if namespace else ""
        self.root.mkdir(parents=True, exist_ok=True)

    def _key(self, path: str) -> str:
        normalized = _normalize_path(path)
        return f"{self.namespace}/{normalized}" if self.namespace else normalized

    def put(self, path: str, data: bytes, content_type: str) -> str:
        key = self._key(path)
        target = self.root / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as exc:
            raise StorageError(f"Failed to store {key}: {exc}") from exc

        logger.debug("Stored %s (%s, %d bytes)", key, content_type, len(data))
        if self.base_url:
            return f"{self.base_url}/{key}"
        return target.as_uri()

    def _path_for_url(self, url: str) -> Path:
        if self.base_url and url.startswith(self.base_url + "/"):
            key = url[len(self.base_url) + 1:]
            return self.root / _normalize_path(key)
        parsed = urlparse(url)
        if parsed.scheme == "file":
            candidate = Path(unquote(parsed.path)).resolve()
            if self.root in candidate.parents:
                return candidate
        raise StorageError(f"URL {url} does not belong to this store.")

    def get(self, url: str) -> bytes:
        path = self._path_for_url(url)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read {url}: {exc}") from exc


class InMemoryArtifactStore:
    """Dictionary-backed store for tests and dry runs."""

    def __init__(
        self,
        *,
        base_url: str = "memory://artifacts",
        namespace: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.namespace = namespace.strip("/") if namespace else ""
        self._lock = threading.Lock()
        self._objects: dict[str, tuple[bytes, str]] = {}

    def _url(self, path: str) -> str:
        normalized = _normalize_path(path)
        key = f"{self.namespace}/{normalized}" if self.namespace else normalized
        return f"{self.base_url}/{key}"

    def put(self, path: str, data: bytes, content_type: str) -> str:
        url = self._url(path)
        with self._lock:
            self._objects[url] = (bytes(data), content_type)
        return url

    def get(self, url: str) -> bytes:
        with self._lock:
            entry = self._objects.get(url)
        if entry is None:
            raise StorageError(f"No artifact stored at {url}.")
        return entry[0]

    def content_type(self, url: str) -> str:
        with self._lock:
            entry = self._objects.get(url)
        if entry is None:
            raise StorageError(f"No artifact stored at {url}.")
        return entry[1]

    def urls(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)
