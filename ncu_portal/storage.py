"""
Device-local key/value persistence.

Everything the portal keeps between restarts on this machine (the offline
transaction queue, the forced-offline flag, cached lookups) lives in a single
JSON document. Reads fall back to the caller's default; write failures are
logged and reported through the return value. A document that no longer
parses is moved aside to `<path>.corrupt-<ms>` before anything new is written.
"""
import json
import logging
import os
import tempfile
import threading
import time

logger = logging.getLogger(__name__)

KEY_PREFIX = "ncu_"
CACHE_PREFIX = KEY_PREFIX + "cache_"


class LocalStore:
    def __init__(self, path):
        self.path = path
        self._lock = threading.RLock()

    def _load(self):
        """Read the document. Unparseable files are moved aside; other read errors propagate."""
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except ValueError as e:
            self._quarantine(e)
            return {}
        if not isinstance(data, dict):
            self._quarantine("not a JSON object")
            return {}
        return data

    def _quarantine(self, reason):
        aside = f"{self.path}.corrupt-{int(time.time() * 1000)}"
        os.replace(self.path, aside)
        logger.error("Local store %s is unreadable (%s); moved it to %s", self.path, reason, aside)

    def _read_all(self):
        try:
            return self._load()
        except OSError as e:
            logger.warning("Failed to read local store %s: %s", self.path, e)
            return {}

    def _write_all(self, data):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key, default=None):
        with self._lock:
            data = self._read_all()
        return data.get(key, default)

    def set(self, key, value):
        """Persist ``value`` under ``key``. Returns False when the write failed."""
        with self._lock:
            try:
                data = self._load()
            except OSError as e:
                # Writing now would replace contents we could not see.
                logger.error("Refusing to save %s: local store %s unreadable: %s", key, self.path, e)
                return False
            data[key] = value
            try:
                self._write_all(data)
            except (OSError, TypeError, ValueError) as e:
                logger.warning("Failed to save %s to local store: %s", key, e)
                return False
        return True

    def remove(self, key):
        with self._lock:
            try:
                data = self._load()
            except OSError as e:
                logger.error("Refusing to remove %s: local store %s unreadable: %s", key, self.path, e)
                return False
            if key not in data:
                return True
            del data[key]
            try:
                self._write_all(data)
            except OSError as e:
                logger.warning("Failed to remove %s from local store: %s", key, e)
                return False
        return True

    def keys(self):
        with self._lock:
            return list(self._read_all().keys())


class LocalCache:
    """TTL cache kept in memory and mirrored into a LocalStore across restarts."""

    def __init__(self, store, clock=time.time):
        self.store = store
        self._clock = clock
        self._items = {}

    def set(self, key, data, ttl_minutes=15):
        expires_at = self._clock() + ttl_minutes * 60
        self._items[key] = {"data": data, "expires_at": expires_at}
        self.store.set(CACHE_PREFIX + key, {"data": data, "expires_at": expires_at})

    def get(self, key):
        now = self._clock()
        item = self._items.get(key)
        if item and item["expires_at"] > now:
            return item["data"]

        stored = self.store.get(CACHE_PREFIX + key)
        if isinstance(stored, dict) and "expires_at" in stored:
            if stored["expires_at"] > now:
                self._items[key] = stored
                return stored.get("data")
            self.store.remove(CACHE_PREFIX + key)
        return None

    def invalidate(self, key):
        self._items.pop(key, None)
        self.store.remove(CACHE_PREFIX + key)

    def clear_all(self):
        self._items = {}
        for key in self.store.keys():
            if key.startswith(CACHE_PREFIX):
                self.store.remove(key)


def get_cached_data(cache, cache_key, fetcher, ttl_minutes=15):
    """Return the cached value for ``cache_key`` or fetch and cache it."""
    cached = cache.get(cache_key)
    if cached is not None:
        return cached
    data = fetcher()
    cache.set(cache_key, data, ttl_minutes)
    return data
