from __future__ import annotations

from typing import Any, Iterable

from .models import EntryType, SpecEntry


def build_app_bundle(entries: Iterable[SpecEntry]) -> dict[str, Any]:
    """Aggregate an app's entries into the shape the rendering layer reads.

    Returns a dict with ``pages`` (list, store order) and ``dataModels``
    (by name) always present, plus ``theme``, ``schema``, ``permissions``,
    ``layouts`` and ``components`` when the app has any. Entry types the
    reader does not know are skipped.
    """
    bundle: dict[str, Any] = {"pages": [], "dataModels": {}}
    for entry in entries:
        value = entry.value
        if entry.entry_type == EntryType.PAGE.value:
            bundle["pages"].append({**value, "slug": entry.key})
        elif entry.entry_type == EntryType.DATA_MODEL.value:
            bundle["dataModels"][entry.key] = value
        elif entry.entry_type == EntryType.SCHEMA.value:
            schema = bundle.setdefault("schema", {})
            schema.update(value)
            if value.get("theme"):
                bundle["theme"] = value["theme"]
        elif entry.entry_type == EntryType.PERMISSION_RULESET.value:
            bundle["permissions"] = value
        elif entry.entry_type == EntryType.LAYOUT.value:
            bundle.setdefault("layouts", {})[entry.key] = value
        elif entry.entry_type == EntryType.COMPONENT.value:
            bundle.setdefault("components", {})[entry.key] = value
    return bundle


def snapshot_entries(app_id: str, document: dict[str, dict[str, Any]]) -> list[SpecEntry]:
    """Flatten a ``{entry_type: {key: value}}`` snapshot back into entries."""
    return [
        SpecEntry(app_id=app_id, entry_type=entry_type, key=key, value=value)
        for entry_type, partition in document.items()
        for key, value in partition.items()
    ]
