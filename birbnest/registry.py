"""Instance registry: stores instance contexts in a cache backend with an in-memory layer."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Optional, Protocol

from birbnest.context import (
    EmptyInstanceIDError,
    InstanceContext,
    InstanceError,
    InstanceNotFoundError,
    InstanceStatus,
    new_context,
)

REGISTRY_KEY_PREFIX = "registry:instance"
DEFAULT_TTL = timedelta(hours=24)
CACHE_TTL = timedelta(minutes=5)
ACTIVITY_UPDATE_INTERVAL = timedelta(minutes=1)


class CacheBackend(Protocol):
    """Minimal cache operations the registry needs.

    ``get`` returns the stored bytes, and either returns None or raises
    (``KeyError``, ``InstanceNotFoundError`` or an error mentioning
    "not found"/"nil") when the key is absent. A backend may also offer
    ``scan(pattern)`` returning matching keys, which ``list_instances`` uses.
    """

    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes, ttl: timedelta) -> None: ...

    def delete(self, key: str) -> None: ...


@dataclass(frozen=True)
class ListFilter:
    """Criteria for filtering instances; empty fields match everything."""

    status: Optional[InstanceStatus] = None
    region: str = ""
    game_type: str = ""

    def matches(self, inst_ctx: InstanceContext) -> bool:
        if self.status and inst_ctx.status != self.status:
            return False
        if self.region and inst_ctx.region != self.region:
            return False
        if self.game_type and inst_ctx.game_type != self.game_type:
            return False
        return True


@dataclass
class _CacheEntry:
    context: InstanceContext
    expires_at: float


def _build_key(instance_id: str) -> str:
    return f"{REGISTRY_KEY_PREFIX}:{instance_id}"


def _is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, (KeyError, InstanceNotFoundError)):
        return True
    text = str(exc)
    return "not found" in text or "nil" in text


class Registry:
    """Manages storage and retrieval of instance metadata."""

    def __init__(self, cache: CacheBackend) -> None:
        self._cache = cache
        self._mem: dict[str, _CacheEntry] = {}
        self._mem_lock = threading.Lock()
        self._activity: dict[str, float] = {}
        self._activity_lock = threading.Lock()

    def register(self, inst_ctx: InstanceContext) -> None:
        """Create or update an instance, refreshing its last-active time."""
        inst_ctx.validate()
        inst_ctx.update_last_active()
        data = inst_ctx.to_json()
        try:
            self._cache.set(_build_key(inst_ctx.instance_id), data, DEFAULT_TTL)
        except Exception as exc:
            raise InstanceError(f"failed to store in cache: {exc}") from exc
        self._remember(inst_ctx)

    def get(self, instance_id: str) -> InstanceContext:
        """Return the instance, preferring the in-memory copy."""
        if not instance_id:
            raise EmptyInstanceIDError()

        cached = self._recall(instance_id)
        if cached is not None:
            return cached

        key = _build_key(instance_id)
        data = self._fetch(key)
        inst_ctx = InstanceContext.from_json(data)
        self._refresh_ttl(key, data)
        self._remember(inst_ctx)
        return inst_ctx

    def get_or_create(self, instance_id: str) -> InstanceContext:
        """Return the instance, registering a fresh one if it does not exist."""
        if not instance_id:
            raise EmptyInstanceIDError()
        try:
            return self.get(instance_id)
        except InstanceNotFoundError:
            inst_ctx = new_context(instance_id)
            self.register(inst_ctx)
            return inst_ctx

    def update(self, inst_ctx: InstanceContext) -> None:
        """Save an existing instance, keeping its original creation time."""
        inst_ctx.validate()
        existing = self.get(inst_ctx.instance_id)
        inst_ctx.created_at = existing.created_at
        self.register(inst_ctx)

    def delete(self, instance_id: str) -> None:
        if not instance_id:
            raise EmptyInstanceIDError()
        try:
            self._cache.delete(_build_key(instance_id))
        except Exception as exc:
            raise InstanceError(f"failed to delete from cache: {exc}") from exc
        with self._mem_lock:
            self._mem.pop(instance_id, None)
        with self._activity_lock:
            self._activity.pop(instance_id, None)

    def update_last_active(self, instance_id: str) -> None:
        """Touch the instance's last-active time, at most once per interval."""
        if not self.should_update_activity(instance_id):
            return
        inst_ctx = self.get(instance_id)
        inst_ctx.update_last_active()
        self.register(inst_ctx)

    def list_instances(self, filter: Optional[ListFilter] = None) -> list[InstanceContext]:
        """Return all instances the backend can enumerate that match ``filter``."""
        criteria = filter if filter is not None else ListFilter()
        prefix = REGISTRY_KEY_PREFIX + ":"
        instances = []
        for key in self._scan_keys(f"{prefix}*"):
            try:
                inst_ctx = self.get(key.removeprefix(prefix))
            except Exception:
                continue
            if criteria.matches(inst_ctx):
                instances.append(inst_ctx)
        return instances

    def should_update_activity(self, instance_id: str) -> bool:
        """Return True (and record now) if the activity interval has passed."""
        now = time.monotonic()
        with self._activity_lock:
            last = self._activity.get(instance_id)
            if last is None or now - last >= ACTIVITY_UPDATE_INTERVAL.total_seconds():
                self._activity[instance_id] = now
                return True
            return False

    def stats(self) -> dict[str, Any]:
        with self._mem_lock:
            mem_size = len(self._mem)
        with self._activity_lock:
            activity_size = len(self._activity)
        return {
            "memory_cache_size": mem_size,
            "activity_tracking_size": activity_size,
        }

    def clear_memory_cache(self) -> None:
        with self._mem_lock:
            self._mem = {}

    def _fetch(self, key: str) -> bytes:
        try:
            data = self._cache.get(key)
        except Exception as exc:
            if _is_not_found(exc):
                raise InstanceNotFoundError() from exc
            raise InstanceError(f"failed to get from cache: {exc}") from exc
        if data is None:
            raise InstanceNotFoundError()
        return data

    def _refresh_ttl(self, key: str, data: bytes) -> None:
        try:
            self._cache.set(key, data, DEFAULT_TTL)
        except Exception:
            pass

    def _scan_keys(self, pattern: str) -> Iterable[str]:
        scan = getattr(self._cache, "scan", None)
        if not callable(scan):
            return []
        return list(scan(pattern))

    def _recall(self, instance_id: str) -> Optional[InstanceContext]:
        with self._mem_lock:
            entry = self._mem.get(instance_id)
        if entry is None or entry.expires_at < time.monotonic():
            return None
        return entry.context.clone()

    def _remember(self, inst_ctx: InstanceContext) -> None:
        entry = _CacheEntry(
            context=inst_ctx.clone(),
            expires_at=time.monotonic() + CACHE_TTL.total_seconds(),
        )
        with self._mem_lock:
            self._mem[inst_ctx.instance_id] = entry