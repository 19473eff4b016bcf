# birbnest

Building blocks for a multi-tenant cache service. Each module can be used on
its own; the package has no dependencies outside the standard library.

## Modules

- **`birbnest.context`** – `InstanceContext` describes one tenant instance:
  ID, game type, region, creation and last-active times, an `InstanceStatus`
  (`active`, `inactive`, `migrating`, `deleting`, `paused`), string metadata,
  an optional `ResourceQuota` and a permanence flag. `new_context(id)` makes an
  active context with `default_resource_quota()` (8192 MB memory, 100 GB
  storage, 4 cores, 10000 connections). Contexts round-trip through
  `to_dict` / `from_dict` and `to_json` / `from_json`, deep-copy with `clone()`,
  and `validate()` raises `EmptyInstanceIDError` for an empty ID. All errors
  derive from `InstanceError` and carry a `code`.
  `bind_context(ctx)` is a context manager that makes `ctx` the current
  instance; `extract_context()` and `extract_instance_id()` read it back
  (`None` / `""` when nothing is bound).
- **`birbnest.keys`** – `KeyBuilder(instance_id)` builds keys of the form
  `instance:{id}:{components...}` (`build_key`, `cache_key`, `table_key`,
  `index_key`, `schema_key`, `event_log_key`), splits them with `parse_key`,
  makes scan patterns with `build_pattern`, and checks or removes the instance
  prefix with `is_instance_key` / `strip_instance`. With an empty instance ID,
  keys carry no prefix.
- **`birbnest.registry`** – `Registry(cache)` stores contexts in any object
  with `get(key)`, `set(key, value, ttl)` and `delete(key)` (the
  `CacheBackend` protocol), under keys `registry:instance:{id}` with a 24-hour
  TTL. Lookups go through a five-minute in-memory cache. It offers `register`,
  `get`, `get_or_create`, `update` (keeps the original creation time),
  `delete`, `update_last_active` (at most once a minute per instance),
  `list_instances(ListFilter(...))`, `stats()` and `clear_memory_cache()`.
  A missing instance raises `InstanceNotFoundError`; the backend may signal
  absence by returning `None` or raising `KeyError`.
  `list_instances` only finds instances if the backend also has a
  `scan(pattern)` method returning matching keys; otherwise it returns `[]`.
- **`birbnest.monitoring`** – `get_instance_stats(conn, instance_id)` and
  `get_largest_instances(conn, limit)` return `MonitoringStats` (row count,
  data size in bytes and as text) from a `cache_entries` table. The queries use
  `pg_column_size` and `pg_size_pretty`, so the connection must provide them.
- **`birbnest.operations`** – `InstanceOperations(cache, db, registry)` works
  on all rows of one instance in a `cache_entries` table, reached through
  `Database(conn)`, a thin wrapper over a DB-API connection (`?` parameters
  for `sqlite3`, `%s` otherwise):
  - `load_instance(id)` copies every entry into the cache in batches of 1000
    via `cache.set_multiple(items, ttl)` under keys from
    `KeyBuilder(id).cache_key(key)`, marks the instance `migrating` while
    loading, then `active` with `last_loaded` and `loaded_keys` metadata, and
    returns the count;
  - `delete_instance(id)` deletes the rows and the registry entry and returns
    the number of rows deleted; entries already in the cache are left to
    expire;
  - `backup_instance(id, writer)` writes JSON Lines ordered by key;
  - `restore_instance(id, reader)` reads JSON Lines into `id` in one
    transaction, overwriting existing keys and ignoring the instance ID stored
    in the backup.
- **`birbnest.circuit_breaker`** – `CircuitBreaker(config)` runs callables via
  `execute(fn)`, opening after `failure_threshold` consecutive failures,
  moving to half-open after `timeout`, allowing `half_open_requests` trial
  calls and closing after `success_threshold` successes. While it refuses a
  call it raises `CircuitOpenError`; an exception from `fn` counts as a failure
  and is re-raised. `PerEndpointCircuitBreaker` keeps one breaker per endpoint
  name; `NoopCircuitBreaker` always runs the callable.
  `default_circuit_breaker_config()` gives 5 / 2 / 30 s / 3.
- **`birbnest.telemetry_config`** – `TelemetryConfig.from_env(environ=None)`
  reads `OTEL_SERVICE_NAME`, `ENVIRONMENT`, `SERVICE_VERSION`, `LOG_LEVEL`,
  `OTEL_SAMPLING_RATE`, `METRICS_INTERVAL`, `ENABLE_TRACING`,
  `ENABLE_METRICS`, `ENABLE_LOGGING`, `OTEL_EXPORT_TO_FILE`,
  `OTEL_METRICS_FILE_PATH`, `OTEL_TRACES_FILE_PATH`, `OTEL_LOGS_FILE_PATH` and
  `OTEL_EXPORTER_OTLP_ENDPOINT`; unset or unparsable values fall back to
  defaults.
- **`birbnest.logger`** – `init_logger(config)` configures the `birbnest`
  logger once: JSON records on stderr with service name, version and
  environment, plus a JSON-lines file (`JsonLineFileHandler`) when file export
  is on. `get_logger()`, `with_fields(fields)` (adds fields to every record)
  and `close_logger()` complete it.
- **`birbnest.metrics`** – thread-safe `Counter`, `Gauge` and `Histogram`
  in a `MetricsRegistry`. `default_registry()` holds the standard service
  metrics, updated by `record_cache_hit`, `record_cache_miss`,
  `record_cache_operation`, `record_http_request`,
  `record_message_processed`, `record_batch_size`, `record_dlq_message`,
  `update_queue_depth`, `update_cache_size`, `update_active_connections`,
  `update_database_connections` and `update_redis_connections` (durations as
  `timedelta` or seconds). `snapshot()` returns the values as a dict;
  `FileMetricsExporter` writes it to a JSON file on demand (`export()`) or
  periodically (`start(interval)` / `stop()`). `init_metrics(config)` sets
  `service_up` to 1 and starts file export when configured.

## Example

```python
from birbnest.keys import KeyBuilder
from birbnest.registry import Registry
from birbnest.circuit_breaker import CircuitBreaker, default_circuit_breaker_config


class MemoryBackend:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data[key]

    def set(self, key, value, ttl):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


kb = KeyBuilder("inst_123")
print(kb.cache_key("session", "user123"))  # instance:inst_123:cache:session:user123

registry = Registry(MemoryBackend())
ctx = registry.get_or_create("inst_123")
print(ctx.status)  # active

breaker = CircuitBreaker(default_circuit_breaker_config())
result = breaker.execute(lambda: "ok")
```

## What it does not do

- It contains no cache server, HTTP API or client for one, and no cache
  backend: you supply the objects behind `CacheBackend` and `BulkCache`.
- It does not create or migrate the `cache_entries` table; you supply the
  database and its connection.
- Telemetry covers logging and in-process metrics only. There is no tracing
  and no export to a collector or metrics endpoint; the tracing and OTLP
  settings in `TelemetryConfig` are read but not used by the package.
- No command-line program is installed.

## Tests

```
pip install -e ".[test]"
pytest
```