import sqlite3

import pytest

from birbnest.monitoring import get_instance_stats, get_largest_instances

ENTRIES = [
    ("inst-a", "k1", "aaaa"),
    ("inst-a", "k2", "bb"),
    ("inst-b", "k1", "c"),
    ("inst-c", "k1", "dddddddddd"),
]


def _size_pretty(n):
    return None if n is None else f"{n} bytes"


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:")
    connection.create_function("pg_column_size", 1, lambda v: None if v is None else len(v))
    connection.create_function("pg_size_pretty", 1, _size_pretty)
    connection.execute("CREATE TABLE cache_entries (instance_id TEXT, key TEXT, value TEXT)")
    connection.executemany("INSERT INTO cache_entries VALUES (?, ?, ?)", ENTRIES)
    yield connection
    connection.close()


def test_instance_stats(conn):
    stats = get_instance_stats(conn, "inst-a")
    expected_size = len("aaaa") + len("bb")
    assert stats.instance_id == "inst-a"
    assert stats.row_count == 2
    assert stats.data_size_bytes == expected_size
    assert stats.data_size_pretty == f"{expected_size} bytes"


def test_instance_stats_for_unknown_instance(conn):
    stats = get_instance_stats(conn, "nobody")
    assert stats.row_count == 0
    assert stats.data_size_bytes == 0
    assert stats.data_size_pretty == "0 bytes"


def test_largest_instances_ordered_by_size(conn):
    stats = get_largest_instances(conn, 10)
    assert [s.instance_id for s in stats] == ["inst-c", "inst-a", "inst-b"]
    sizes = [s.data_size_bytes for s in stats]
    assert sizes == sorted(sizes, reverse=True)


def test_largest_instances_counts_match_single_stats(conn):
    for stat in get_largest_instances(conn, 10):
        single = get_instance_stats(conn, stat.instance_id)
        assert single.row_count == stat.row_count
        assert single.data_size_bytes == stat.data_size_bytes
        assert single.data_size_pretty == stat.data_size_pretty


def test_largest_instances_respects_limit(conn):
    stats = get_largest_instances(conn, 2)
    assert len(stats) == 2
    assert stats[0].instance_id == "inst-c"


def test_largest_instances_empty_table():
    connection = sqlite3.connect(":memory:")
    connection.create_function("pg_column_size", 1, lambda v: None if v is None else len(v))
    connection.create_function("pg_size_pretty", 1, _size_pretty)
    connection.execute("CREATE TABLE cache_entries (instance_id TEXT, key TEXT, value TEXT)")
    assert get_largest_instances(connection, 5) == []
    connection.close()


def test_missing_table_raises():
    connection = sqlite3.connect(":memory:")
    with pytest.raises(sqlite3.OperationalError):
        get_instance_stats(connection, "inst-a")
    connection.close()