"""
Normalization rules for change detection.

Each resource type has an explicit set of tracked fields; everything else
(usage counters, uptime, bookkeeping timestamps) is volatile and never causes
an ``updated`` classification. ``config_digest`` is the SHA-256 of the
canonical JSON rendering of the normalized form.
"""

import hashlib
from typing import Any

from apps.backend.src.schemas.common import ResourceType
from apps.backend.src.utils.diff_generator import canonical_json

_GUEST_TRACKED = (
    "node_id",
    "name",
    "status",
    "template",
    "cpu_cores",
    "memory_bytes",
    "disk_size",
    "ha_managed",
    "lock_status",
    "config",
)

TRACKED_FIELDS: dict[ResourceType, tuple[str, ...]] = {
    ResourceType.NODE: ("status", "cpu_max", "memory_max", "version"),
    ResourceType.VM: _GUEST_TRACKED,
    ResourceType.CONTAINER: _GUEST_TRACKED + ("hostname", "swap_bytes", "os_template"),
    ResourceType.STORAGE: (
        "type",
        "content_types",
        "enabled",
        "shared",
        "total_bytes",
        "path",
        "accessible_nodes",
        "config",
    ),
}

_GUEST_VOLATILE = (
    "cpu_usage",
    "memory_usage",
    "disk_usage",
    "network_in",
    "network_out",
    "uptime",
    "pid",
    "last_seen",
)

VOLATILE_FIELDS: dict[ResourceType, tuple[str, ...]] = {
    ResourceType.NODE: ("cpu_usage", "memory_usage", "uptime", "last_seen"),
    ResourceType.VM: _GUEST_VOLATILE,
    ResourceType.CONTAINER: _GUEST_VOLATILE + ("swap_usage",),
    ResourceType.STORAGE: ("used_bytes", "available_bytes", "last_seen"),
}

# Fields a pass may fail to observe; None keeps the persisted value
STICKY_FIELDS: dict[ResourceType, tuple[str, ...]] = {
    ResourceType.NODE: ("version",),
}

# Keys dropped from remote configuration before comparison
VOLATILE_CONFIG_KEYS = frozenset({"digest"})

_SET_FIELDS = frozenset({"content_types", "accessible_nodes"})


def normalize_config(config: dict[str, Any] | None) -> dict[str, Any] | None:
    if config is None:
        return None
    return {key: value for key, value in config.items() if key not in VOLATILE_CONFIG_KEYS}


def apply_sticky(
    resource_type: ResourceType | str,
    observed: dict[str, Any],
    persisted: dict[str, Any] | None,
) -> dict[str, Any]:
    """Fill unobserved sticky fields from the persisted state."""
    if not persisted:
        return observed
    merged = dict(observed)
    for field in STICKY_FIELDS.get(ResourceType(resource_type), ()):
        if merged.get(field) is None and persisted.get(field) is not None:
            merged[field] = persisted[field]
    return merged


def normalize(resource_type: ResourceType | str, data: dict[str, Any]) -> dict[str, Any]:
    """Project a resource representation onto its tracked fields."""
    normalized: dict[str, Any] = {}
    for field in TRACKED_FIELDS[ResourceType(resource_type)]:
        value = data.get(field)
        if field == "config":
            value = normalize_config(value)
        elif field in _SET_FIELDS:
            value = sorted(set(value or []))
        elif hasattr(value, "value"):
            value = value.value
        normalized[field] = value
    return normalized


def compute_digest(resource_type: ResourceType | str, data: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(normalize(resource_type, data)).encode()).hexdigest()
