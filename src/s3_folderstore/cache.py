from s3_folderstore.interfaces import ICacheBackend
from s3_folderstore.interfaces import IListingCache
from s3_folderstore.records import ObjectRecord
from zope.interface import implementer

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import threading
import time


logger = logging.getLogger(__name__)

TAG_FILE = "file"
TAG_FOLDER = "folder"
LIFETIME = 3600


@implementer(ICacheBackend)
class MemoryCacheBackend:
    """Process-local tagged store; expired entries are dropped on read."""

    def __init__(self):
        self._entries = {}  # {key: (expires, tag, data)}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires, _tag, data = entry
            if expires <= time.monotonic():
                del self._entries[key]
                return None
            return data

    def set(self, key, data, tag, lifetime):
        with self._lock:
            self._entries[key] = (time.monotonic() + lifetime, tag, data)

    def flush_by_tag(self, tag):
        with self._lock:
            for key in [k for k, entry in self._entries.items() if entry[1] == tag]:
                del self._entries[key]

    def flush(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)


@implementer(ICacheBackend)
class FileCacheBackend:
    """Filesystem store for cache entries, shared between processes.

    Entries are stored as {cache_dir}/{key[-2:]}/{key}.entry JSON documents
    holding the expiry time, the tag and the data. Background cleanup
    removes expired entries once cleanup_threshold bytes have been written.
    """

    def __init__(self, cache_dir, cleanup_threshold=1024 * 1024):
        self.cache_dir = cache_dir
        self._check_threshold = max(int(cleanup_threshold), 1)
        self._bytes_written = 0
        self._lock = threading.Lock()
        self._checker_thread = None
        os.makedirs(cache_dir, exist_ok=True, mode=0o700)

    def _entry_path(self, key):
        return os.path.join(self.cache_dir, key[-2:], f"{key}.entry")

    def _read(self, path):
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def _entries(self):
        for dirpath, _dirnames, filenames in os.walk(self.cache_dir):
            for fn in filenames:
                if fn.endswith(".entry"):
                    yield os.path.join(dirpath, fn)

    def get(self, key):
        path = self._entry_path(key)
        try:
            entry = self._read(path)
        except FileNotFoundError:
            return None
        if entry["expires"] <= time.time():
            with contextlib.suppress(OSError):
                os.remove(path)
            return None
        return entry["data"]

    def set(self, key, data, tag, lifetime):
        path = self._entry_path(key)
        target_dir = os.path.dirname(path)
        os.makedirs(target_dir, exist_ok=True, mode=0o700)
        payload = json.dumps(
            {"expires": time.time() + lifetime, "tag": tag, "data": data}
        )
        fd, tmp_path = tempfile.mkstemp(dir=target_dir, suffix=".entry.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise
        self.notify_written(len(payload))

    def flush_by_tag(self, tag):
        for path in list(self._entries()):
            try:
                if self._read(path).get("tag") != tag:
                    continue
            except FileNotFoundError:
                continue
            except ValueError:
                pass  # unreadable entries go too
            with contextlib.suppress(OSError):
                os.remove(path)

    def flush(self):
        for path in list(self._entries()):
            with contextlib.suppress(OSError):
                os.remove(path)

    def notify_written(self, byte_count):
        with self._lock:
            self._bytes_written += byte_count
            if self._bytes_written >= self._check_threshold:
                self._bytes_written = 0
                self._start_cleanup()

    def _start_cleanup(self):
        """Start background cleanup thread if not already running."""
        if self._checker_thread is not None and self._checker_thread.is_alive():
            return
        t = threading.Thread(target=self._cleanup, daemon=True)
        self._checker_thread = t
        t.start()

    def _cleanup(self):
        """Remove expired entries and empty sub-directories."""
        try:
            now = time.time()
            for path in list(self._entries()):
                try:
                    expired = self._read(path)["expires"] <= now
                except (OSError, ValueError, KeyError):
                    expired = True
                if not expired:
                    continue
                with contextlib.suppress(OSError):
                    os.remove(path)
                parent = os.path.dirname(path)
                if parent != self.cache_dir:
                    with contextlib.suppress(OSError):
                        os.rmdir(parent)
        except Exception:
            logger.exception("Error during cache cleanup")

    def wait_for_cleanup(self):
        """Wait for any running cleanup thread to finish. For testing."""
        with self._lock:
            t = self._checker_thread
        if t is not None:
            t.join(timeout=10)

    def current_size(self):
        """Return total size of cached entries. For testing."""
        total = 0
        for path in self._entries():
            with contextlib.suppress(OSError):
                total += os.path.getsize(path)
        return total

    def close(self):
        self.wait_for_cleanup()
        with self._lock:
            self._checker_thread = None


@implementer(IListingCache)
class ListingCache:
    """Read-through cache of folder listings for one storage scope.

    File listings are tagged "file", sub-folder listings "folder", so a
    mutation can drop every listing of one kind at once. Backend failures
    never reach the caller: a failing get is a miss, a failing set or flush
    is logged and ignored.
    """

    def __init__(self, storage_uid, backend=None, lifetime=LIFETIME, enabled=True):
        self.storage_uid = storage_uid
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.lifetime = lifetime
        self._enabled = enabled

    @property
    def enabled(self):
        return self._enabled

    def enable(self):
        self._enabled = True
        return self

    def disable(self):
        self._enabled = False
        return self

    @contextlib.contextmanager
    def suppressed(self):
        was_enabled = self._enabled
        self.disable()
        try:
            yield self
        finally:
            if was_enabled:
                self.enable()

    def _key(self, kind, folder_identifier):
        # Identifiers hold "/" and other characters cache keys must not.
        digest = hashlib.md5(
            folder_identifier.encode("utf-8"), usedforsecurity=False
        ).hexdigest()
        return f"storage-{self.storage_uid}-{kind}-{digest}"

    def get_files(self, folder_identifier):
        data = self._get(self._key("files", folder_identifier))
        if data is None:
            return None
        try:
            return {
                identifier: ObjectRecord.from_dict(record)
                for identifier, record in data.items()
            }
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.warning(
                "Discarding malformed file listing for %s",
                folder_identifier,
                exc_info=True,
            )
            return None

    def set_files(self, folder_identifier, records):
        data = {identifier: record.as_dict() for identifier, record in records.items()}
        self._set(self._key("files", folder_identifier), data, TAG_FILE)

    def get_folders(self, folder_identifier):
        data = self._get(self._key("folders", folder_identifier))
        return list(data) if data is not None else None

    def set_folders(self, folder_identifier, identifiers):
        self._set(self._key("folders", folder_identifier), list(identifiers), TAG_FOLDER)

    def flush_file_tag(self):
        self._flush(TAG_FILE)

    def flush_folder_tag(self):
        self._flush(TAG_FOLDER)

    def flush_all(self):
        self._flush(None)

    def _get(self, key):
        if not self._enabled:
            return None
        try:
            return self.backend.get(key)
        except Exception:
            logger.warning("Cache lookup failed for %s, treating as miss", key, exc_info=True)
            return None

    def _set(self, key, data, tag):
        if not self._enabled:
            return
        try:
            self.backend.set(key, data, tag, self.lifetime)
        except Exception:
            logger.warning("Failed to cache %s data under %s", tag, key, exc_info=True)
            return
        logger.debug("Cached %s data under %s", tag, key)

    def _flush(self, tag):
        # Flushes apply while disabled too, mutations may happen in between.
        try:
            if tag is None:
                self.backend.flush()
            else:
                self.backend.flush_by_tag(tag)
        except Exception:
            logger.warning("Failed to flush %s cache", tag or "whole", exc_info=True)
            return
        logger.info("Flushed %s cache for storage %s", tag or "whole", self.storage_uid)
