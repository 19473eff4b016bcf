"""Instance context: metadata, status and resource limits of a tenant instance."""

from __future__ import annotations

import contextvars
import json
import re
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterator, Mapping, Optional

INSTANCE_TYPE_OVERWORLD = "overworld"
INSTANCE_TYPE_DUNGEON = "dungeon"
INSTANCE_TYPE_TEMPORARY = "temporary"

AUTO_DELETE_MIN_AGE = timedelta(minutes=30)


class InstanceStatus(str, Enum):
    """Lifecycle state of an instance."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    MIGRATING = "migrating"
    DELETING = "deleting"
    PAUSED = "paused"

    def __str__(self) -> str:
        return self.value


class InstanceError(Exception):
    """Base error for instance operations, carrying a machine-readable code."""

    code = "INSTANCE_ERROR"
    message = "instance error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None) -> None:
        self.message = message if message is not None else type(self).message
        self.code = code if code is not None else type(self).code
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class EmptyInstanceIDError(InstanceError):
    code = "EMPTY_INSTANCE_ID"
    message = "instance ID cannot be empty"


class InstanceNotFoundError(InstanceError):
    code = "INSTANCE_NOT_FOUND"
    message = "instance not found"


class InstanceNotActiveError(InstanceError):
    code = "INSTANCE_NOT_ACTIVE"
    message = "instance is not active"


class InvalidInstanceDataError(InstanceError):
    code = "INVALID_INSTANCE_DATA"
    message = "invalid instance data"


@dataclass
class ResourceQuota:
    """Resource limits for an instance."""

    max_memory_mb: int = 0
    max_storage_gb: int = 0
    max_cpu_cores: int = 0
    max_concurrent: int = 0


def _quota_to_dict(quota: ResourceQuota) -> dict[str, int]:
    return {
        "max_memory_mb": quota.max_memory_mb,
        "max_storage_gb": quota.max_storage_gb,
        "max_cpu_cores": quota.max_cpu_cores,
        "max_concurrent_connections": quota.max_concurrent,
    }


def _quota_from_dict(data: Mapping[str, Any]) -> ResourceQuota:
    return ResourceQuota(
        max_memory_mb=int(data.get("max_memory_mb", 0)),
        max_storage_gb=int(data.get("max_storage_gb", 0)),
        max_cpu_cores=int(data.get("max_cpu_cores", 0)),
        max_concurrent=int(data.get("max_concurrent_connections", 0)),
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


_TIME_RE = re.compile(
    r"^(?P<main>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|z|[+-]\d{2}:\d{2})$"
)


def _format_time(value: datetime) -> str:
    text = value.isoformat()
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_time(value: Any) -> datetime:
    if not isinstance(value, str):
        raise InvalidInstanceDataError(f"invalid timestamp: {value!r}")
    match = _TIME_RE.match(value)
    if match is None:
        raise InvalidInstanceDataError(f"invalid timestamp: {value!r}")
    frac = (match.group("frac") or "").ljust(6, "0")[:6]
    tz = match.group("tz")
    if tz in ("Z", "z"):
        tz = "+00:00"
    try:
        return datetime.fromisoformat(f"{match.group('main')}.{frac}{tz}")
    except ValueError as exc:
        raise InvalidInstanceDataError(f"invalid timestamp: {value!r}") from exc


@dataclass
class InstanceContext:
    """Complete instance information including metadata and resource limits."""

    instance_id: str = ""
    game_type: str = ""
    region: str = ""
    created_at: datetime = field(default_factory=_now)
    last_active: datetime = field(default_factory=_now)
    status: InstanceStatus = InstanceStatus.INACTIVE
    metadata: dict[str, str] = field(default_factory=dict)
    resource_quota: Optional[ResourceQuota] = None
    is_permanent: bool = False

    def is_active(self) -> bool:
        return self.status == InstanceStatus.ACTIVE

    def can_accept_requests(self) -> bool:
        return self.status in (InstanceStatus.ACTIVE, InstanceStatus.MIGRATING)

    def can_be_auto_deleted(self) -> bool:
        return (
            not self.is_permanent
            and self.status == InstanceStatus.ACTIVE
            and _now() - self.created_at >= AUTO_DELETE_MIN_AGE
        )

    def update_last_active(self) -> None:
        self.last_active = _now()

    def clone(self) -> InstanceContext:
        """Return a deep copy; metadata and quota are not shared."""
        return replace(
            self,
            metadata=dict(self.metadata),
            resource_quota=replace(self.resource_quota) if self.resource_quota else None,
        )

    def validate(self) -> None:
        if not self.instance_id:
            raise EmptyInstanceIDError()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "instance_id": self.instance_id,
            "game_type": self.game_type,
            "region": self.region,
            "created_at": _format_time(self.created_at),
            "last_active": _format_time(self.last_active),
            "status": self.status.value,
            "metadata": dict(self.metadata),
        }
        if self.resource_quota is not None:
            data["resource_quota"] = _quota_to_dict(self.resource_quota)
        data["is_permanent"] = self.is_permanent
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InstanceContext:
        if not isinstance(data, Mapping):
            raise InvalidInstanceDataError("instance data must be an object")
        try:
            raw_status = data.get("status") or InstanceStatus.INACTIVE.value
            status = InstanceStatus(raw_status)
            metadata = data.get("metadata") or {}
            if not isinstance(metadata, Mapping) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()
            ):
                raise InvalidInstanceDataError("metadata must map strings to strings")
            quota_data = data.get("resource_quota")
            quota = _quota_from_dict(quota_data) if quota_data is not None else None
            kwargs: dict[str, Any] = {
                "instance_id": str(data.get("instance_id", "")),
                "game_type": str(data.get("game_type", "")),
                "region": str(data.get("region", "")),
                "status": status,
                "metadata": dict(metadata),
                "resource_quota": quota,
                "is_permanent": bool(data.get("is_permanent", False)),
            }
            if "created_at" in data:
                kwargs["created_at"] = _parse_time(data["created_at"])
            if "last_active" in data:
                kwargs["last_active"] = _parse_time(data["last_active"])
        except InvalidInstanceDataError:
            raise
        except (TypeError, ValueError, AttributeError) as exc:
            raise InvalidInstanceDataError(f"invalid instance data: {exc}") from exc
        return cls(**kwargs)

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> InstanceContext:
        try:
            decoded = json.loads(data)
        except (ValueError, TypeError) as exc:
            raise InvalidInstanceDataError(f"invalid instance data: {exc}") from exc
        return cls.from_dict(decoded)


def default_resource_quota() -> ResourceQuota:
    """Generous default limits: 8 GB memory, 100 GB storage, 4 cores, 10k connections."""
    return ResourceQuota(
        max_memory_mb=8192,
        max_storage_gb=100,
        max_cpu_cores=4,
        max_concurrent=10000,
    )


def new_context(instance_id: str) -> InstanceContext:
    """Create an active instance context with default settings."""
    now = _now()
    return InstanceContext(
        instance_id=instance_id,
        game_type="default",
        region="default",
        created_at=now,
        last_active=now,
        status=InstanceStatus.ACTIVE,
        metadata={},
        resource_quota=default_resource_quota(),
    )


_current_instance: contextvars.ContextVar[Optional[InstanceContext]] = contextvars.ContextVar(
    "birbnest_instance_context", default=None
)


@contextmanager
def bind_context(inst_ctx: InstanceContext) -> Iterator[InstanceContext]:
    """Make ``inst_ctx`` the current instance for the duration of the block."""
    token = _current_instance.set(inst_ctx)
    try:
        yield inst_ctx
    finally:
        _current_instance.reset(token)


def extract_context() -> Optional[InstanceContext]:
    """Return the currently bound instance context, or None."""
    return _current_instance.get()


def extract_instance_id() -> str:
    """Return the bound instance ID, or an empty string when none is bound."""
    inst_ctx = extract_context()
    return inst_ctx.instance_id if inst_ctx is not None else ""