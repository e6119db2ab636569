"""
Permission Cache — resolved permission sets keyed by (user_id, role).

Invalidation contract:
  - every entry expires after ``ttl_seconds`` (default 300)
  - ``invalidate_user(user_id)`` drops every entry for that user and MUST be
    called after a per-user override changes
  - ``clear()`` drops everything and MUST be called after role/permission
    mappings change

Backends:
  - memory:// (default) — a dict guarded by a lock. It is PER PROCESS: a
    change made through one worker is only seen by other workers after their
    entries expire. Multi-instance deployments either accept staleness bounded
    by the TTL or point PERMISSION_CACHE_URL at Redis.
  - redis://… — shared across processes; invalidation is immediate everywhere.
"""

import json
import logging
import threading
import time

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300  # 5 minutes
KEY_PREFIX = "perm:"


# ── Backends ─────────────────────────────────────────────────────────────


class _MemoryBackend:
    """Dict cache for single-process deployments and tests."""

    def __init__(self, clock=time.monotonic):
        self._store: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key):
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            val, expires = entry
            if self._clock() >= expires:
                del self._store[key]
                return None
            return val

    def setex(self, key, ttl_seconds, value):
        with self._lock:
            self._store[key] = (value, self._clock() + ttl_seconds)

    def delete(self, *keys):
        with self._lock:
            for k in keys:
                self._store.pop(k, None)

    def keys(self, pattern):
        """Glob matching for 'prefix*' patterns only."""
        with self._lock:
            if pattern.endswith("*"):
                prefix = pattern[:-1]
                return [k for k in self._store if k.startswith(prefix)]
            return [k for k in self._store if k == pattern]

    def ping(self):
        return True


def _redis_backend(url):
    import redis as _redis

    client = _redis.from_url(url, decode_responses=True)
    client.ping()
    return client


# ── Cache ────────────────────────────────────────────────────────────────


class PermissionCache:
    """TTL cache of effective permission sets."""

    def __init__(self, ttl_seconds=DEFAULT_TTL, backend=None, clock=time.monotonic):
        self.ttl_seconds = int(ttl_seconds)
        self._backend = backend if backend is not None else _MemoryBackend(clock=clock)

    @classmethod
    def from_url(cls, url, ttl_seconds=DEFAULT_TTL):
        """Build a cache from ``memory://`` or a ``redis://`` URL.

        An unreachable Redis falls back to the in-process backend with a
        warning so the engine keeps authorizing (with per-process staleness).
        """
        if url and not url.startswith("memory://"):
            try:
                backend = _redis_backend(url)
                logger.info("Permission cache: using Redis at %s", url.split("@")[-1])
                return cls(ttl_seconds=ttl_seconds, backend=backend)
            except Exception as exc:
                logger.warning("Redis unavailable (%s); permission cache is per-process", exc)
        return cls(ttl_seconds=ttl_seconds)

    @property
    def is_shared(self):
        return not isinstance(self._backend, _MemoryBackend)

    @staticmethod
    def _key(user_id, role):
        return f"{KEY_PREFIX}{user_id}:{role}"

    def get(self, user_id, role):
        """Return the cached permission set, or None on miss/expiry."""
        raw = self._backend.get(self._key(user_id, role))
        if raw is None:
            return None
        try:
            return set(json.loads(raw))
        except (json.JSONDecodeError, TypeError):
            return None

    def set(self, user_id, role, permissions):
        self._backend.setex(
            self._key(user_id, role),
            self.ttl_seconds,
            json.dumps(sorted(permissions)),
        )

    def invalidate_user(self, user_id):
        keys = self._backend.keys(f"{KEY_PREFIX}{user_id}:*")
        if keys:
            self._backend.delete(*keys)

    def clear(self):
        keys = self._backend.keys(f"{KEY_PREFIX}*")
        if keys:
            self._backend.delete(*keys)

    def health_check(self):
        try:
            self._backend.ping()
            return {"status": "ok", "backend": "redis" if self.is_shared else "memory"}
        except Exception as exc:
            return {"status": "error", "detail": str(exc)}


# ── Process-wide instance ────────────────────────────────────────────────

_cache = PermissionCache()


def get_permission_cache() -> PermissionCache:
    return _cache


def init_permission_cache(app):
    """Replace the process-wide cache with one built from app config."""
    global _cache
    _cache = PermissionCache.from_url(
        app.config.get("PERMISSION_CACHE_URL", "memory://"),
        ttl_seconds=app.config.get("PERMISSION_CACHE_TTL", DEFAULT_TTL),
    )
    app.extensions["permission_cache"] = _cache
    return _cache
