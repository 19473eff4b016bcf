"""Instance-level storage statistics gathered from the cache_entries table."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from dataclasses import dataclass
from typing import Any


@dataclass
class MonitoringStats:
    """Row count and data size for one instance."""

    instance_id: str = ""
    row_count: int = 0
    data_size_bytes: int = 0
    data_size_pretty: str = ""
    cache_hit_rate: float = 0.0
    query_count: int = 0
    last_active: str = ""


def _fetch(conn: Any, query: str, params: tuple[Any, ...]) -> list[tuple[Any, ...]]:
    """Run ``query`` on ``conn`` and return all rows.

    The query marks its parameters with ``{param}``; they are rendered in the
    parameter style of the connection's driver.
    """
    marker = "?" if isinstance(conn, sqlite3.Connection) else "%s"
    with closing(conn.cursor()) as cursor:
        cursor.execute(query.format(param=marker), params)
        return list(cursor.fetchall())


def get_instance_stats(conn: Any, instance_id: str) -> MonitoringStats:
    """Return row count and total value size for ``instance_id``.

    ``conn`` is a DB-API connection that provides ``pg_column_size`` and
    ``pg_size_pretty``.
    """
    query = """
        SELECT
            COUNT(*) AS row_count,
            COALESCE(SUM(pg_column_size(value)), 0) AS data_size,
            pg_size_pretty(COALESCE(SUM(pg_column_size(value)), 0)) AS size_pretty
        FROM cache_entries
        WHERE instance_id = {param}
    """
    row_count, data_size, size_pretty = _fetch(conn, query, (instance_id,))[0]
    return MonitoringStats(
        instance_id=instance_id,
        row_count=int(row_count),
        data_size_bytes=int(data_size),
        data_size_pretty=str(size_pretty),
    )


def get_largest_instances(conn: Any, limit: int) -> list[MonitoringStats]:
    """Return up to ``limit`` instances ordered by total data size, largest first."""
    query = """
        WITH instance_stats AS (
            SELECT
                instance_id,
                COUNT(*) AS row_count,
                SUM(pg_column_size(value)) AS data_size
            FROM cache_entries
            GROUP BY instance_id
        )
        SELECT
            instance_id,
            row_count,
            data_size,
            pg_size_pretty(data_size) AS size_pretty
        FROM instance_stats
        ORDER BY data_size DESC
        LIMIT {param}
    """
    return [
        MonitoringStats(
            instance_id=str(instance_id),
            row_count=int(row_count),
            data_size_bytes=int(data_size) if data_size is not None else 0,
            data_size_pretty=str(size_pretty) if size_pretty is not None else "",
        )
        for instance_id, row_count, data_size, size_pretty in _fetch(conn, query, (limit,))
    ]