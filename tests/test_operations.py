import io
import json
import sqlite3
from datetime import timedelta

import pytest

from birbnest.context import InstanceNotFoundError, InstanceStatus, new_context
from birbnest.keys import KeyBuilder
from birbnest.operations import BATCH_SIZE, Database, InstanceOperations
from birbnest.registry import Registry

SCHEMA = """
CREATE TABLE cache_entries (
    instance_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    ttl INTEGER,
    metadata TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (instance_id, key)
)
"""

CREATED = "2024-01-01T00:00:00Z"
UPDATED = "2024-01-02T00:00:00Z"


class DictCache:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ttl):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


class RecordingBulkCache:
    def __init__(self):
        self.calls = []

    def set_multiple(self, items, ttl):
        self.calls.append((dict(items), ttl))


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:")
    connection.execute(SCHEMA)
    connection.commit()
    yield connection
    connection.close()


@pytest.fixture
def env(conn):
    registry = Registry(DictCache())
    cache = RecordingBulkCache()
    ops = InstanceOperations(cache, Database(conn), registry)
    return ops, cache, registry


def insert(conn, instance_id, key, value, version=1, ttl=None, metadata=None):
    conn.execute(
        "INSERT INTO cache_entries VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (instance_id, key, value, version, ttl, metadata, CREATED, UPDATED),
    )
    conn.commit()


def rows_for(conn, instance_id):
    return conn.execute(
        "SELECT key, value, version, ttl, metadata, created_at, updated_at "
        "FROM cache_entries WHERE instance_id = ? ORDER BY key",
        (instance_id,),
    ).fetchall()


def test_load_instance_populates_cache(conn, env):
    ops, cache, registry = env
    registry.register(new_context("inst_a"))
    insert(conn, "inst_a", "k1", '{"x":1}')
    insert(conn, "inst_a", "k2", '"hello"')
    insert(conn, "inst_b", "k3", '"other"')

    count = ops.load_instance("inst_a")

    assert count == 2
    merged = {}
    for items, ttl in cache.calls:
        assert ttl == timedelta(0)
        merged.update(items)
    kb = KeyBuilder("inst_a")
    assert merged == {kb.cache_key("k1"): b'{"x":1}', kb.cache_key("k2"): b'"hello"'}

    inst = registry.get("inst_a")
    assert inst.status == InstanceStatus.ACTIVE
    assert inst.metadata["loaded_keys"] == str(count)
    assert "last_loaded" in inst.metadata


def test_load_instance_flushes_in_batches(conn, env):
    ops, cache, registry = env
    registry.register(new_context("inst_a"))
    total = BATCH_SIZE * 2 + 7
    conn.executemany(
        "INSERT INTO cache_entries VALUES (?, ?, ?, 1, NULL, NULL, ?, ?)",
        [("inst_a", f"key-{n}", "1", CREATED, UPDATED) for n in range(total)],
    )
    conn.commit()

    assert ops.load_instance("inst_a") == total
    assert len(cache.calls) == 3
    assert all(len(items) <= BATCH_SIZE for items, _ in cache.calls)
    assert sum(len(items) for items, _ in cache.calls) == total


def test_load_missing_instance_raises(env):
    ops, cache, _ = env
    with pytest.raises(InstanceNotFoundError):
        ops.load_instance("missing")
    assert cache.calls == []


def test_delete_instance_removes_rows_and_registry_entry(conn, env):
    ops, _, registry = env
    registry.register(new_context("inst_a"))
    insert(conn, "inst_a", "k1", '"a"')
    insert(conn, "inst_a", "k2", '"b"')
    insert(conn, "inst_b", "k1", '"c"')

    assert ops.delete_instance("inst_a") == 2
    assert rows_for(conn, "inst_a") == []
    assert len(rows_for(conn, "inst_b")) == 1
    with pytest.raises(InstanceNotFoundError):
        registry.get("inst_a")


def test_delete_missing_instance_raises(conn, env):
    ops, _, _ = env
    insert(conn, "ghost", "k1", '"a"')
    with pytest.raises(InstanceNotFoundError):
        ops.delete_instance("ghost")
    assert len(rows_for(conn, "ghost")) == 1


def test_backup_writes_json_lines_sorted_by_key(conn, env):
    ops, _, _ = env
    insert(conn, "inst_a", "zeta", '{"n":2}', version=3, ttl=60, metadata='{"source":"test"}')
    insert(conn, "inst_a", "alpha", '"first"')

    out = io.StringIO()
    assert ops.backup_instance("inst_a", out) == 2

    entries = [json.loads(line) for line in out.getvalue().splitlines()]
    assert [e["key"] for e in entries] == ["alpha", "zeta"]
    first, second = entries
    assert first["instance_id"] == "inst_a"
    assert first["value"] == "first"
    assert "ttl" not in first
    assert "metadata" not in first
    assert first["created_at"] == CREATED
    assert first["updated_at"] == UPDATED
    assert second["value"] == {"n": 2}
    assert second["version"] == 3
    assert second["ttl"] == 60
    assert second["metadata"] == {"source": "test"}


def test_backup_accepts_binary_writer(conn, env):
    ops, _, _ = env
    insert(conn, "inst_a", "k1", '"v"')
    out = io.BytesIO()
    assert ops.backup_instance("inst_a", out) == 1
    entry = json.loads(out.getvalue().decode("utf-8"))
    assert entry["key"] == "k1"


def test_restore_accepts_bytes_reader(conn, env):
    ops, _, _ = env
    line = json.dumps({"key": "k1", "value": 5, "created_at": CREATED, "updated_at": UPDATED})
    assert ops.restore_instance("inst_d", io.BytesIO(line.encode("utf-8"))) == 1
    assert rows_for(conn, "inst_d")[0][:2] == ("k1", "5")


def test_restore_invalid_input_rolls_back(conn, env):
    ops, _, _ = env
    good = json.dumps({"key": "k1", "value": 1, "created_at": CREATED, "updated_at": UPDATED})
    with pytest.raises(ValueError):
        ops.restore_instance("inst_e", io.StringIO(good + "\n{not json\n"))
    assert rows_for(conn, "inst_e") == []


def test_restore_rejects_non_object_entry(conn, env):
    ops, _, _ = env
    with pytest.raises(ValueError):
        ops.restore_instance("inst_f", io.StringIO("[1, 2]\n"))
    assert rows_for(conn, "inst_f") == []


def test_database_transaction_rolls_back_on_error(conn):
    db = Database(conn)
    with pytest.raises(RuntimeError):
        with db.transaction() as tx:
            tx.execute(
                "INSERT INTO cache_entries VALUES ({p}, {p}, {p}, 1, NULL, NULL, {p}, {p})",
                ("inst_g", "k1", '"v"', CREATED, UPDATED),
            )
            raise RuntimeError("abort")
    assert db.query("SELECT COUNT(*) FROM cache_entries WHERE instance_id = {p}", ("inst_g",)) == [(0,)]