"""
Content Store - Content-addressed storage for opaque blobs
==========================================================

Content identifiers are CIDv1 (raw codec, sha2-256 multihash, base32
multibase), the same shape IPFS hands out for raw blocks. Every read
re-hashes the bytes and compares against the requested id, so a store
can never silently return different content for a given id.

Unpinned content may be garbage-collected at any time; callers that need
durability must ``pin``.
"""

import base64
import hashlib
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Set, Union

from .errors import ContentIntegrityError, NotFound, Unavailable

logger = logging.getLogger(__name__)

# CIDv1 | raw codec | sha2-256 | 32-byte digest
_CID_PREFIX = bytes([0x01, 0x55, 0x12, 0x20])


def compute_content_id(data: bytes) -> str:
    """Content identifier for a byte string"""
    digest = hashlib.sha256(data).digest()
    encoded = base64.b32encode(_CID_PREFIX + digest).decode("ascii").lower().rstrip("=")
    return "b" + encoded


def is_content_id(value: str) -> bool:
    if not value.startswith("b"):
        return False
    body = value[1:].upper()
    try:
        raw = base64.b32decode(body + "=" * (-len(body) % 8))
    except (ValueError, TypeError):
        return False
    return raw.startswith(_CID_PREFIX) and len(raw) == len(_CID_PREFIX) + 32


class ContentStore(ABC):
    """Put/get interface shared by every backend"""

    def put(self, data: bytes) -> str:
        """
        Store bytes

        Idempotent: identical bytes always return the same id.

        Returns:
            Content identifier
        """
        content_id = compute_content_id(data)
        self._write(content_id, data)
        logger.debug("Stored %d bytes as %s", len(data), content_id)
        return content_id

    def get(self, content_id: str) -> bytes:
        """
        Retrieve bytes by content id

        Raises:
            NotFound: never stored, or unpinned and collected
            ContentIntegrityError: stored bytes do not match the id
        """
        data = self._read(content_id)
        if compute_content_id(data) != content_id:
            raise ContentIntegrityError(
                "Stored bytes do not match content id",
                operation="get",
                context={"content_id": content_id}
            )
        return data

    @abstractmethod
    def pin(self, content_id: str) -> None:
        """Request durability for content"""

    @abstractmethod
    def unpin(self, content_id: str) -> None:
        """Allow content to be collected"""

    @abstractmethod
    def is_pinned(self, content_id: str) -> bool:
        ...

    @abstractmethod
    def collect_garbage(self) -> int:
        """Drop unpinned content; returns the number of blobs removed"""

    @abstractmethod
    def _write(self, content_id: str, data: bytes) -> None:
        ...

    @abstractmethod
    def _read(self, content_id: str) -> bytes:
        ...


class InMemoryContentStore(ContentStore):
    """Process-local store (tests, single-process deployments)"""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._pinned: Set[str] = set()
        self._lock = threading.Lock()

    def _write(self, content_id: str, data: bytes) -> None:
        with self._lock:
            self._blobs.setdefault(content_id, bytes(data))

    def _read(self, content_id: str) -> bytes:
        with self._lock:
            data = self._blobs.get(content_id)
        if data is None:
            raise NotFound("Content not found", operation="get", context={"content_id": content_id})
        return data

    def pin(self, content_id: str) -> None:
        with self._lock:
            if content_id not in self._blobs:
                raise NotFound("Cannot pin missing content", operation="pin", context={"content_id": content_id})
            self._pinned.add(content_id)

    def unpin(self, content_id: str) -> None:
        with self._lock:
            self._pinned.discard(content_id)

    def is_pinned(self, content_id: str) -> bool:
        with self._lock:
            return content_id in self._pinned

    def collect_garbage(self) -> int:
        with self._lock:
            doomed = [cid for cid in self._blobs if cid not in self._pinned]
            for cid in doomed:
                del self._blobs[cid]
        if doomed:
            logger.info("Collected %d unpinned blobs", len(doomed))
        return len(doomed)


class FileContentStore(ContentStore):
    """
    Filesystem store

    Layout::

        <root>/blobs/<content-id>
        <root>/pins/<content-id>
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._blobs = self.root / "blobs"
        self._pins = self.root / "pins"
        try:
            self._blobs.mkdir(parents=True, exist_ok=True)
            self._pins.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise Unavailable(str(e), operation="open", context={"root": str(self.root)}) from e
        self._lock = threading.Lock()

    def _path(self, directory: Path, content_id: str) -> Path:
        if not is_content_id(content_id):
            raise NotFound("Malformed content id", operation="lookup", context={"content_id": content_id})
        return directory / content_id

    def _write(self, content_id: str, data: bytes) -> None:
        path = self._path(self._blobs, content_id)
        with self._lock:
            if path.exists():
                return
            try:
                fd, tmp = tempfile.mkstemp(dir=self._blobs)
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, path)
            except OSError as e:
                raise Unavailable(str(e), operation="put", context={"content_id": content_id}) from e

    def _read(self, content_id: str) -> bytes:
        path = self._path(self._blobs, content_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound("Content not found", operation="get", context={"content_id": content_id})
        except OSError as e:
            raise Unavailable(str(e), operation="get", context={"content_id": content_id}) from e

    def pin(self, content_id: str) -> None:
        if not self._path(self._blobs, content_id).exists():
            raise NotFound("Cannot pin missing content", operation="pin", context={"content_id": content_id})
        try:
            self._path(self._pins, content_id).touch()
        except OSError as e:
            raise Unavailable(str(e), operation="pin", context={"content_id": content_id}) from e

    def unpin(self, content_id: str) -> None:
        self._path(self._pins, content_id).unlink(missing_ok=True)

    def is_pinned(self, content_id: str) -> bool:
        return self._path(self._pins, content_id).exists()

    def collect_garbage(self) -> int:
        removed = 0
        with self._lock:
            for path in self._blobs.iterdir():
                if not (self._pins / path.name).exists():
                    path.unlink(missing_ok=True)
                    removed += 1
        if removed:
            logger.info("Collected %d unpinned blobs from %s", removed, self.root)
        return removed
