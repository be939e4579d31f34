"""
Diff Generator Utility

Field-level diffs between two normalized resource representations. Nested
mappings (guest and storage configuration) are flattened into dotted paths so
a change to a single configuration key is reported as that key.
"""

import json
from typing import Any

_MISSING = object()


class DiffGenerator:
    """
    Utility class for generating structured diffs between resource states.

    Diffs map a dotted field path to an ``{"old": ..., "new": ...}`` pair; a
    field absent on one side is reported as ``None`` on that side.
    """

    def __init__(self, flatten_keys: tuple[str, ...] = ("config",)):
        self.flatten_keys = flatten_keys

    def flatten(self, data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
        flat: dict[str, Any] = {}
        for key, value in data.items():
            path = f"{prefix}{key}"
            if isinstance(value, dict) and (prefix or key in self.flatten_keys):
                if value:
                    flat.update(self.flatten(value, prefix=f"{path}."))
                else:
                    flat[path] = {}
            else:
                flat[path] = value
        return flat

    def generate_field_diff(
        self,
        old_state: dict[str, Any] | None,
        new_state: dict[str, Any] | None,
    ) -> dict[str, dict[str, Any]]:
        """
        Generate the field-level diff between two states.

        Args:
            old_state: Previously persisted normalized state
            new_state: Freshly observed normalized state

        Returns:
            Mapping of changed field path to its old/new pair, sorted by path
        """
        old_flat = self.flatten(old_state or {})
        new_flat = self.flatten(new_state or {})

        diff: dict[str, dict[str, Any]] = {}
        for path in sorted(set(old_flat) | set(new_flat)):
            old_value = old_flat.get(path, _MISSING)
            new_value = new_flat.get(path, _MISSING)
            if self._equal(old_value, new_value):
                continue
            diff[path] = {
                "old": None if old_value is _MISSING else old_value,
                "new": None if new_value is _MISSING else new_value,
            }
        return diff

    def get_diff_summary(self, diff: dict[str, dict[str, Any]]) -> dict[str, Any]:
        """Statistical summary of a field diff."""
        added = [path for path, change in diff.items() if change["old"] is None]
        removed = [path for path, change in diff.items() if change["new"] is None]
        return {
            "total_changes": len(diff),
            "fields_added": len(added),
            "fields_removed": len(removed),
            "fields_modified": len(diff) - len(added) - len(removed),
            "fields": list(diff),
        }

    @staticmethod
    def _equal(old_value: Any, new_value: Any) -> bool:
        if old_value is _MISSING or new_value is _MISSING:
            # A key that disappeared is only a change if it carried a value
            present = new_value if old_value is _MISSING else old_value
            return present is None
        if isinstance(old_value, (dict, list)) or isinstance(new_value, (dict, list)):
            return canonical_json(old_value) == canonical_json(new_value)
        return old_value == new_value


def canonical_json(data: Any) -> str:
    """Deterministic JSON rendering: sorted keys, no insignificant whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
