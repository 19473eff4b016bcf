"""Bulk operations on all data that belongs to one instance."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timedelta, timezone
from typing import IO, Any, Iterator, Mapping, Optional, Protocol, Sequence

from birbnest.context import InstanceStatus
from birbnest.keys import KeyBuilder
from birbnest.registry import Registry

BATCH_SIZE = 1000

_log = logging.getLogger(__name__)

_LOAD_QUERY = """
    SELECT key, value, ttl, metadata
    FROM cache_entries
    WHERE instance_id = {p}
"""

_DELETE_QUERY = """
    DELETE FROM cache_entries WHERE instance_id = {p}
"""

_BACKUP_QUERY = """
    SELECT key, value, version, ttl, metadata, created_at, updated_at
    FROM cache_entries
    WHERE instance_id = {p}
    ORDER BY key
"""

_RESTORE_QUERY = """
    INSERT INTO cache_entries (instance_id, key, value, version, ttl, metadata, created_at, updated_at)
    VALUES ({p}, {p}, {p}, {p}, {p}, {p}, {p}, {p})
    ON CONFLICT (instance_id, key) DO UPDATE SET
        value = EXCLUDED.value,
        version = EXCLUDED.version,
        ttl = EXCLUDED.ttl,
        metadata = EXCLUDED.metadata,
        updated_at = EXCLUDED.updated_at
"""

_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIMESTAMP_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt ](?P<time>\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>[Zz]|[+-]\d{2}:?\d{2})?$"
)
_WHITESPACE_RE = re.compile(r"[ \t\r\n]*")


class BulkCache(Protocol):
    """Cache that can store many entries in one call."""

    def set_multiple(self, items: Mapping[str, bytes], ttl: timedelta) -> None: ...


class Database:
    """Wraps a DB-API connection holding the ``cache_entries`` table.

    Statements outside ``transaction()`` are committed immediately.
    """

    def __init__(self, conn: Any, placeholder: Optional[str] = None) -> None:
        self._conn = conn
        if placeholder is None:
            placeholder = "?" if isinstance(conn, sqlite3.Connection) else "%s"
        self._placeholder = placeholder
        self._in_transaction = False

    def _render(self, sql: str) -> str:
        return sql.replace("{p}", self._placeholder)

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        """Run a SELECT (``{p}`` marks parameters) and return all rows."""
        with closing(self._conn.cursor()) as cursor:
            cursor.execute(self._render(sql), tuple(params))
            rows = cursor.fetchall()
        if not self._in_transaction:
            self._conn.commit()
        return [tuple(row) for row in rows]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the number of affected rows."""
        try:
            with closing(self._conn.cursor()) as cursor:
                cursor.execute(self._render(sql), tuple(params))
                count = cursor.rowcount
        except BaseException:
            if not self._in_transaction:
                self._conn.rollback()
            raise
        if not self._in_transaction:
            self._conn.commit()
        return count

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """Group statements; commit on success, roll back on any exception."""
        if self._in_transaction:
            raise RuntimeError("transaction already in progress")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()
        finally:
            self._in_transaction = False


def _raw_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8")
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def _raw_bytes(value: Any) -> bytes:
    raw = _raw_json(value)
    return raw.encode("utf-8") if raw is not None else b""


def _load_raw(value: Any) -> Any:
    raw = _raw_json(value)
    return json.loads(raw) if raw is not None else None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp: {value!r}")
    match = _TIMESTAMP_RE.match(value.strip())
    if match is None:
        raise ValueError(f"invalid timestamp: {value!r}")
    micro = int((match.group("frac") or "").ljust(6, "0")[:6])
    tz_text = match.group("tz")
    if tz_text is None or tz_text in ("Z", "z"):
        tz = timezone.utc
    else:
        digits = tz_text[1:].replace(":", "")
        offset = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
        tz = timezone(-offset if tz_text[0] == "-" else offset)
    base = datetime.fromisoformat(f"{match.group('date')}T{match.group('time')}")
    return base.replace(microsecond=micro, tzinfo=tz)


def _format_timestamp(value: datetime) -> str:
    """RFC 3339 with trailing fractional zeros removed and Z for UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _iter_json_values(text: str) -> Iterator[Any]:
    decoder = json.JSONDecoder()
    pos = _WHITESPACE_RE.match(text, 0).end()
    while pos < len(text):
        try:
            value, pos = decoder.raw_decode(text, pos)
        except json.JSONDecodeError as exc:
            raise ValueError(f"failed to decode entry: {exc}") from exc
        yield value
        pos = _WHITESPACE_RE.match(text, pos).end()


def _write(writer: IO[Any], line: str) -> None:
    try:
        writer.write(line)
    except TypeError:
        writer.write(line.encode("utf-8"))


def _restore_params(instance_id: str, entry: Any) -> tuple:
    if not isinstance(entry, dict):
        raise ValueError("failed to decode entry: entry must be a JSON object")
    key = entry.get("key", "")
    version = entry.get("version", 0)
    ttl = entry.get("ttl")
    if not isinstance(key, str):
        raise ValueError("failed to decode entry: key must be a string")
    if isinstance(version, bool) or not isinstance(version, int):
        raise ValueError("failed to decode entry: version must be an integer")
    if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, int)):
        raise ValueError("failed to decode entry: ttl must be an integer")
    value = _raw_json(entry["value"]) if "value" in entry else None
    metadata = _raw_json(entry["metadata"]) if "metadata" in entry else None
    created_at = _format_timestamp(_parse_timestamp(entry.get("created_at", _ZERO_TIME)))
    updated_at = _format_timestamp(_parse_timestamp(entry.get("updated_at", _ZERO_TIME)))
    return (instance_id, key, value, version, ttl, metadata, created_at, updated_at)


class InstanceOperations:
    """Loads, deletes, backs up and restores the data of one instance."""

    def __init__(self, cache: BulkCache, db: Database, registry: Registry) -> None:
        self._cache = cache
        self._db = db
        self._registry = registry

    def load_instance(self, instance_id: str) -> int:
        """Copy every stored entry of the instance into the cache; return the count."""
        inst = self._registry.get(instance_id)
        inst.status = InstanceStatus.MIGRATING
        self._registry.update(inst)

        rows = self._db.query(_LOAD_QUERY, (instance_id,))
        key_builder = KeyBuilder(instance_id)
        count = 0
        batch: dict[str, bytes] = {}
        for key, value, _ttl, _metadata in rows:
            batch[key_builder.cache_key(key)] = _raw_bytes(value)
            count += 1
            if len(batch) >= BATCH_SIZE:
                self._cache.set_multiple(batch, timedelta(0))
                batch = {}
        if batch:
            self._cache.set_multiple(batch, timedelta(0))

        inst.status = InstanceStatus.ACTIVE
        loaded_at = datetime.now().astimezone().replace(microsecond=0)
        inst.metadata["last_loaded"] = _format_timestamp(loaded_at)
        inst.metadata["loaded_keys"] = str(count)
        self._registry.update(inst)
        return count

    def delete_instance(self, instance_id: str) -> int:
        """Remove the instance's stored rows and registry entry; return rows deleted."""
        inst = self._registry.get(instance_id)
        inst.status = InstanceStatus.DELETING
        self._registry.update(inst)

        _log.warning(
            "Cache deletion for instance %s requires key scanning; cached entries expire by TTL",
            instance_id,
        )

        rows_affected = self._db.execute(_DELETE_QUERY, (instance_id,))
        self._registry.delete(instance_id)
        _log.info("Deleted instance %s: %d database rows", instance_id, rows_affected)
        return rows_affected

    def backup_instance(self, instance_id: str, writer: IO[Any]) -> int:
        """Write the instance's entries to ``writer`` as JSON lines; return the count."""
        rows = self._db.query(_BACKUP_QUERY, (instance_id,))
        count = 0
        for key, value, version, ttl, metadata, created_at, updated_at in rows:
            entry: dict[str, Any] = {
                "instance_id": instance_id,
                "key": key,
                "value": _load_raw(value),
                "version": int(version),
            }
            if ttl is not None:
                entry["ttl"] = int(ttl)
            raw_metadata = _raw_json(metadata)
            if raw_metadata:
                entry["metadata"] = json.loads(raw_metadata)
            entry["created_at"] = _format_timestamp(_parse_timestamp(created_at))
            entry["updated_at"] = _format_timestamp(_parse_timestamp(updated_at))
            _write(writer, json.dumps(entry, separators=(",", ":")) + "\n")
            count += 1
        _log.info("Backed up instance %s: %d entries", instance_id, count)
        return count

    def restore_instance(self, instance_id: str, reader: IO[Any]) -> int:
        """Import JSON-line entries into ``instance_id`` atomically; return the count.

        The instance ID stored in the backup is ignored. Existing keys are
        overwritten. Any malformed entry aborts the whole restore.
        """
        text = reader.read()
        if isinstance(text, (bytes, bytearray)):
            text = text.decode("utf-8")
        count = 0
        with self._db.transaction() as tx:
            for entry in _iter_json_values(text):
                tx.execute(_RESTORE_QUERY, _restore_params(instance_id, entry))
                count += 1
        _log.info("Restored instance %s: %d entries", instance_id, count)
        return count