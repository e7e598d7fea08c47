"""
Static file cache.

Only a handful of small files (the home page, its script, example inputs)
are ever served, so each is read once and kept in memory for the lifetime of
the worker. Restart the worker to pick up changes on disk.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, Optional, Tuple

import aiofiles

log = logging.getLogger(__name__)

# URL patterns of static files
STATIC_GLOBS = (
    "/home.html",
    "/home.js",
    "/favicon.*",
    "/examples/*",
    "/lib/*",
)

VERSION_MARKER = "<!-- version -->"


@dataclass(frozen=True)
class FileType:
    content_type: str
    encoding: Optional[str]  # None means binary


# File types we know about, keyed by extension
FILE_TYPES: Dict[str, FileType] = {
    "html": FileType("text/html", "utf-8"),
    "ico": FileType("image/ico", None),
    "js": FileType("application/javascript", "utf-8"),
    "latex": FileType("application/x-tex", "utf-8"),
    "mml": FileType("application/mathml+xml", "utf-8"),
    "nxml": FileType("application/jats+xml", "utf-8"),
    "png": FileType("image/png", None),
    "svg": FileType("image/svg+xml", "utf-8"),
    "txt": FileType("text/plain", "utf-8"),
    "md": FileType("text/plain", "utf-8"),
}

DEFAULT_FILE_TYPE = FileType("application/octet-stream", "utf-8")


def file_type(extension: str) -> FileType:
    return FILE_TYPES.get(extension.lower(), DEFAULT_FILE_TYPE)


def content_type_header(ftype: FileType) -> str:
    if ftype.encoding:
        return f"{ftype.content_type}; charset={ftype.encoding}"
    return ftype.content_type


@dataclass(frozen=True)
class StaticAsset:
    path: str
    content_type: str
    encoding: Optional[str]
    body: bytes


def normalize_path(url_path: str) -> str:
    return "/home.html" if url_path in ("", "/") else url_path


def is_static_path(path: str) -> bool:
    """True if `path` (already normalized) matches the allow-list."""
    pure = PurePosixPath(path)
    if ".." in pure.parts:
        return False
    return any(pure.match(glob) for glob in STATIC_GLOBS)


class StaticFileCache:
    """
    Read-through cache of static assets, keyed by normalized URL path.

    Concurrent first requests for the same path share one load; a failed load
    is not cached, so the next request tries the disk again.
    """

    def __init__(self, root: str, version: str):
        self.root = root
        self.version = version
        self._entries: Dict[str, "asyncio.Future[StaticAsset]"] = {}

    def __contains__(self, path: str) -> bool:
        future = self._entries.get(path)
        return (
            future is not None
            and future.done()
            and not future.cancelled()
            and future.exception() is None
        )

    async def get(self, path: str) -> StaticAsset:
        """
        Return the asset for `path`, reading it from disk on first use.

        Raises:
            OSError: from the disk read (FileNotFoundError for a missing file)
        """
        future = self._entries.get(path)
        if future is None:
            future = asyncio.ensure_future(self._load(path))
            self._entries[path] = future
            future.add_done_callback(lambda f, p=path: self._forget_failure(p, f))
        return await asyncio.shield(future)

    def _forget_failure(self, path: str, future: "asyncio.Future[StaticAsset]"):
        if future.cancelled() or future.exception() is not None:
            if self._entries.get(path) is future:
                del self._entries[path]

    async def _load(self, path: str) -> StaticAsset:
        extension = path.rsplit(".", 1)[-1] if "." in path else ""
        ftype = file_type(extension)

        raw = await self._read_file(os.path.join(self.root, path.lstrip("/")))
        if ftype.encoding:
            text = raw.decode(ftype.encoding).replace(VERSION_MARKER, self.version)
            body = text.encode(ftype.encoding)
        else:
            body = raw

        log.debug(f"Cached static resource {path} ({len(body)} bytes)")
        return StaticAsset(path, content_type_header(ftype), ftype.encoding, body)

    async def _read_file(self, filename: str) -> bytes:
        async with aiofiles.open(filename, "rb") as f:
            return await f.read()


def split_static(url_path: str, query: str, method: str) -> Tuple[bool, str]:
    """
    Decide whether a request is for a static resource.

    Returns:
        (is_static, normalized_path)
    """
    path = normalize_path(url_path)
    if method != "GET" or query:
        return False, path
    return is_static_path(path), path
