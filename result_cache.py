# result_cache.py
from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional

from overlay_errors import CacheCapacityError

if TYPE_CHECKING:
    from b2_helper import B2Manager
    from overlay_config import OverlayConfig

logger = logging.getLogger(__name__)

IMAGE_ID_RE = re.compile(r"^\d+-[a-f0-9]{16}$")


@dataclass(frozen=True)
class RenderedImage:
    data: bytes = field(repr=False)
    mime_type: str = "image/jpeg"
    created_at: float = field(default_factory=time.time)

    @property
    def byte_length(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class CacheEntry:
    id: str
    image: RenderedImage
    created_at: float


def make_image_id(data: bytes, created_ns: int) -> str:
    """`<epoch ns>-<16 hex>`: content hash salted with the creation time."""
    digest = hashlib.sha256(data)
    digest.update(str(created_ns).encode("ascii"))
    return f"{created_ns}-{digest.hexdigest()[:16]}"


def is_valid_image_id(image_id: str) -> bool:
    return bool(image_id) and IMAGE_ID_RE.match(image_id) is not None


def created_at_from_id(image_id: str) -> float:
    return int(image_id.split("-", 1)[0]) / 1e9


class BaseResultCache(ABC):
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ns = 0

    def _next_created_ns(self) -> int:
        # strictly increasing so two puts in the same tick still get distinct ids and a total order
        now_ns = int(self._clock() * 1_000_000_000)
        self._last_ns = max(now_ns, self._last_ns + 1)
        return self._last_ns

    @abstractmethod
    def put(self, image: RenderedImage) -> str: ...

    @abstractmethod
    def get(self, image_id: str) -> Optional[RenderedImage]: ...

    @abstractmethod
    def list_ids(self, prefix: str = "") -> List[str]: ...

    @abstractmethod
    def sweep(self) -> dict: ...


# ----------------------------
# In-process cache
# ----------------------------

class ResultCache(BaseResultCache):
    """
    Bounded in-memory store of rendered images.

    Entries are kept in creation order; inserting past `capacity` (or past
    `max_bytes` when set) drops the oldest ones. With `ttl_seconds` set, an
    expired entry reads as missing and is removed by `sweep()`.
    """

    def __init__(
        self,
        capacity: int = 200,
        max_bytes: int = 0,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.max_bytes = max_bytes
        self.ttl_seconds = ttl_seconds
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._total_bytes = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def put(self, image: RenderedImage) -> str:
        with self._lock:
            created_ns = self._next_created_ns()
            image_id = make_image_id(image.data, created_ns)
            entry = CacheEntry(id=image_id, image=image, created_at=created_ns / 1e9)
            self._entries[image_id] = entry
            self._total_bytes += image.byte_length
            try:
                self._evict_locked()
            except CacheCapacityError as e:
                logger.warning("%s; dropping all older entries", e)
                self._drop_all_except_locked(image_id)
        logger.info("Cached %s (%d bytes)", image_id, image.byte_length)
        return image_id

    def get(self, image_id: str) -> Optional[RenderedImage]:
        with self._lock:
            entry = self._entries.get(image_id)
            if entry is None:
                return None
            if self._expired(entry):
                self._remove_locked(image_id)
                return None
            return entry.image

    def list_ids(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [i for i in self._entries if i.startswith(prefix)]

    def sweep(self) -> dict:
        with self._lock:
            total = len(self._entries)
            expired = [i for i, e in self._entries.items() if self._expired(e)]
            for image_id in expired:
                self._remove_locked(image_id)
        return {"deletedCount": len(expired), "totalCount": total}

    def _expired(self, entry: CacheEntry) -> bool:
        if not self.ttl_seconds:
            return False
        return self._clock() - entry.created_at > self.ttl_seconds

    def _remove_locked(self, image_id: str) -> None:
        entry = self._entries.pop(image_id, None)
        if entry is not None:
            self._total_bytes -= entry.image.byte_length

    def _evict_locked(self) -> None:
        while len(self._entries) > self.capacity:
            oldest_id = next(iter(self._entries))
            self._remove_locked(oldest_id)
            logger.debug("Evicted %s (capacity %d)", oldest_id, self.capacity)

        if not self.max_bytes:
            return
        while self._total_bytes > self.max_bytes and len(self._entries) > 1:
            oldest_id = next(iter(self._entries))
            self._remove_locked(oldest_id)
            logger.debug("Evicted %s (byte bound %d)", oldest_id, self.max_bytes)
        if self._total_bytes > self.max_bytes:
            raise CacheCapacityError(
                f"Single image of {self._total_bytes} bytes exceeds cache bound of {self.max_bytes} bytes"
            )

    def _drop_all_except_locked(self, keep_id: str) -> None:
        for image_id in [i for i in self._entries if i != keep_id]:
            self._remove_locked(image_id)


# ----------------------------
# Temp-directory cache
# ----------------------------

class DiskResultCache(BaseResultCache):
    """One `overlay-<id>.jpg` file per image in a temp directory."""

    FILE_RE = re.compile(r"^overlay-(\d+-[a-f0-9]{16})\.jpg$")

    def __init__(
        self,
        directory: str,
        capacity: int = 200,
        ttl_seconds: Optional[float] = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds

    def _path(self, image_id: str) -> Path:
        return self.directory / f"overlay-{image_id}.jpg"

    def _ids_oldest_first(self) -> List[str]:
        ids = []
        for p in self.directory.iterdir():
            m = self.FILE_RE.match(p.name)
            if m:
                ids.append(m.group(1))
        return sorted(ids, key=lambda i: int(i.split("-", 1)[0]))

    def put(self, image: RenderedImage) -> str:
        with self._lock:
            created_ns = self._next_created_ns()
            image_id = make_image_id(image.data, created_ns)

            # write then rename so readers never see a half-written file
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".overlay-", suffix=".part")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(image.data)
                os.replace(tmp, self._path(image_id))
            except OSError:
                Path(tmp).unlink(missing_ok=True)
                raise

            ids = self._ids_oldest_first()
            for old_id in ids[: max(0, len(ids) - self.capacity)]:
                self._path(old_id).unlink(missing_ok=True)
                logger.debug("Evicted %s (capacity %d)", old_id, self.capacity)

        logger.info("Stored %s (%d bytes) in %s", image_id, image.byte_length, self.directory)
        return image_id

    def get(self, image_id: str) -> Optional[RenderedImage]:
        if not is_valid_image_id(image_id):
            return None
        created_at = created_at_from_id(image_id)
        if self.ttl_seconds and self._clock() - created_at > self.ttl_seconds:
            return None
        with self._lock:
            try:
                data = self._path(image_id).read_bytes()
            except FileNotFoundError:
                return None
        return RenderedImage(data=data, mime_type="image/jpeg", created_at=created_at)

    def list_ids(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [i for i in self._ids_oldest_first() if i.startswith(prefix)]

    def sweep(self) -> dict:
        """Delete files older than the TTL (by modification time)."""
        deleted = 0
        now = self._clock()
        with self._lock:
            files = [p for p in self.directory.iterdir() if self.FILE_RE.match(p.name)]
            for p in files:
                try:
                    age = now - p.stat().st_mtime
                    if self.ttl_seconds and age > self.ttl_seconds:
                        p.unlink()
                        deleted += 1
                        logger.info("Deleted expired file: %s", p.name)
                except OSError as e:
                    logger.warning("Could not process file %s: %s", p.name, e)
        logger.info("Cleanup complete: %d/%d files deleted", deleted, len(files))
        return {"deletedCount": deleted, "totalCount": len(files)}


# ----------------------------
# Backblaze B2 cache
# ----------------------------

class B2ResultCache(BaseResultCache):
    """Durable store: one `<prefix><id>.jpg` object per image in a B2 bucket."""

    def __init__(
        self,
        manager: "B2Manager",
        prefix: str = "overlays/",
        capacity: Optional[int] = None,
        ttl_seconds: Optional[float] = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self.manager = manager
        self.prefix = prefix if prefix.endswith("/") else prefix + "/"
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds

    def _file_name(self, image_id: str) -> str:
        return f"{self.prefix}{image_id}.jpg"

    def _stored(self):
        """(image_id, created_at) of stored objects, oldest first."""
        out = []
        for file_name, uploaded_ms in self.manager.list_files(self.prefix):
            name = file_name[len(self.prefix):]
            if not name.endswith(".jpg") or not is_valid_image_id(name[:-4]):
                continue
            out.append((name[:-4], uploaded_ms / 1000.0))
        out.sort(key=lambda t: int(t[0].split("-", 1)[0]))
        return out

    def put(self, image: RenderedImage) -> str:
        with self._lock:
            created_ns = self._next_created_ns()
            image_id = make_image_id(image.data, created_ns)
            self.manager.upload_bytes(image.data, self._file_name(image_id), content_type=image.mime_type)
            if self.capacity:
                stored = self._stored()
                for old_id, _ in stored[: max(0, len(stored) - self.capacity)]:
                    self.manager.delete_file(self._file_name(old_id))
                    logger.debug("Evicted %s (capacity %d)", old_id, self.capacity)
        logger.info("Uploaded %s (%d bytes) to B2", image_id, image.byte_length)
        return image_id

    def get(self, image_id: str) -> Optional[RenderedImage]:
        if not is_valid_image_id(image_id):
            return None
        created_at = created_at_from_id(image_id)
        if self.ttl_seconds and self._clock() - created_at > self.ttl_seconds:
            return None
        data = self.manager.download_bytes(self._file_name(image_id))
        if data is None:
            return None
        return RenderedImage(data=data, mime_type="image/jpeg", created_at=created_at)

    def list_ids(self, prefix: str = "") -> List[str]:
        return [i for i, _ in self._stored() if i.startswith(prefix)]

    def sweep(self) -> dict:
        deleted = 0
        now = self._clock()
        with self._lock:
            stored = self._stored()
            for image_id, uploaded_at in stored:
                if self.ttl_seconds and now - uploaded_at > self.ttl_seconds:
                    if self.manager.delete_file(self._file_name(image_id)):
                        deleted += 1
        logger.info("B2 cleanup complete: %d/%d objects deleted", deleted, len(stored))
        return {"deletedCount": deleted, "totalCount": len(stored)}


def build_result_cache(cfg: "OverlayConfig") -> BaseResultCache:
    backend = cfg.cache_backend
    ttl = cfg.cache_ttl_seconds or None
    if backend == "memory":
        return ResultCache(capacity=cfg.cache_capacity, max_bytes=cfg.cache_max_bytes, ttl_seconds=ttl)
    if backend == "disk":
        return DiskResultCache(cfg.cache_dir, capacity=cfg.cache_capacity, ttl_seconds=ttl)
    if backend == "b2":
        from b2_helper import get_b2_manager

        return B2ResultCache(get_b2_manager(), prefix=cfg.b2_prefix, capacity=cfg.cache_capacity, ttl_seconds=ttl)
    raise ValueError(f"Unknown RESULT_CACHE_BACKEND: {backend!r} (expected memory, disk or b2)")
