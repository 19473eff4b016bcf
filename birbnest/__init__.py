"""Instance-aware cache helpers: contexts, keys, registry, instance operations, circuit breakers and telemetry."""

__version__ = "0.1.0"