"""
Structural diff between two JSON-like documents (model_dump(mode="json") output).

Each change is {"path": "rules[0].verbs", "before": ..., "after": ...}. Missing
keys appear as None on the missing side. Lists of equal length are compared
element-wise; otherwise the whole list is reported as one change.
"""

from typing import Any


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def diff_objects(before: Any, after: Any, path: str = "") -> list[dict[str, Any]]:
    if before == after:
        return []

    if isinstance(before, dict) and isinstance(after, dict):
        changes: list[dict[str, Any]] = []
        for key in sorted(set(before) | set(after)):
            changes.extend(diff_objects(before.get(key), after.get(key), _join(path, str(key))))
        return changes

    if isinstance(before, list) and isinstance(after, list) and len(before) == len(after):
        changes = []
        for i, (b, a) in enumerate(zip(before, after)):
            changes.extend(diff_objects(b, a, f"{path}[{i}]"))
        return changes

    return [{"path": path or "$", "before": before, "after": after}]
