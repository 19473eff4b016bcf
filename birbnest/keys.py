"""Instance-aware key construction and parsing for multi-tenant isolation."""

from __future__ import annotations

SEPARATOR = ":"
PREFIX = "instance"


class KeyBuilder:
    """Builds and parses keys of the form ``instance:{id}:{components...}``.

    With an empty instance ID, keys carry no instance prefix.
    """

    def __init__(self, instance_id: str) -> None:
        self._instance_id = instance_id.strip()

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def has_instance(self) -> bool:
        return self._instance_id != ""

    @property
    def _key_prefix(self) -> str:
        return f"{PREFIX}{SEPARATOR}{self._instance_id}{SEPARATOR}"

    def build_key(self, *components: str) -> str:
        if not self._instance_id:
            return SEPARATOR.join(components)
        return SEPARATOR.join((PREFIX, self._instance_id, *components))

    def parse_key(self, key: str) -> tuple[str, list[str]]:
        """Split a key into its instance ID ("" if none) and its components."""
        parts = key.split(SEPARATOR)
        if len(parts) >= 2 and parts[0] == PREFIX:
            return parts[1], parts[2:]
        return "", parts

    def build_pattern(self, prefix: str) -> str:
        if not self._instance_id:
            return f"{prefix}*" if prefix else "*"
        base = f"{PREFIX}{SEPARATOR}{self._instance_id}"
        if prefix:
            return f"{base}{SEPARATOR}{prefix}*"
        return f"{base}{SEPARATOR}*"

    def is_instance_key(self, key: str) -> bool:
        if not self._instance_id:
            return not key.startswith(PREFIX + SEPARATOR)
        return key.startswith(self._key_prefix)

    def strip_instance(self, key: str) -> str:
        if not self._instance_id or not self.is_instance_key(key):
            return key
        return key.removeprefix(self._key_prefix)

    def table_key(self, table: str, row_id: str) -> str:
        return self.build_key("table", table, "row", row_id)

    def index_key(self, index: str, value: str) -> str:
        return self.build_key("index", index, value)

    def cache_key(self, *components: str) -> str:
        return self.build_key("cache", *components)

    def schema_key(self, table: str) -> str:
        return self.build_key("schema", table)

    def event_log_key(self, timestamp: str) -> str:
        return self.build_key("eventlog", timestamp)