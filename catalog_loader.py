"""Utilities for loading the continent/level catalog from disk."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

CATALOG_DIR = Path(__file__).resolve().parent / "content"
CATALOG_PATH = CATALOG_DIR / "catalog.json"


def _safe_load_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except Exception as exc:
        print(f"[catalog] failed to load '{path}': {exc}")
        return None


def _sorted_by_order(items: Iterable[Dict[str, Any]], key: str = "order") -> List[Dict[str, Any]]:
    def _sort_key(item: Dict[str, Any]):
        try:
            order_val = int(item.get(key))
        except Exception:
            order_val = float("inf")
        return (order_val, (item.get("name") or "").lower())

    return sorted([dict(i) for i in items if isinstance(i, dict)], key=_sort_key)


@lru_cache(maxsize=1)
def load_catalog() -> Dict[str, Any]:
    """Load the catalog (continents, levels) once per process."""

    data = _safe_load_json(CATALOG_PATH)
    if not isinstance(data, dict):
        return {"continents": [], "levels": []}

    data["continents"] = _sorted_by_order(data.get("continents") or [])
    data["levels"] = _sorted_by_order(data.get("levels") or [], key="level")
    return data


def continents() -> List[Dict[str, Any]]:
    return list(load_catalog()["continents"])


def continent_ids() -> List[str]:
    return [str(c.get("id")) for c in continents() if c.get("id")]


def find_continent(continent_id: Optional[str]) -> Optional[Dict[str, Any]]:
    for c in continents():
        if str(c.get("id")) == str(continent_id):
            return c
    return None


def level_info(level: Any) -> Dict[str, Any]:
    """Level row for ``level``; unknown levels fall back to the first entry."""
    levels = load_catalog()["levels"]
    try:
        wanted = int(level)
    except Exception:
        wanted = 1
    for row in levels:
        if int(row.get("level") or 0) == wanted:
            return row
    if levels:
        return levels[0]
    return {"level": 1, "name": "", "xp_required": 0}


__all__ = [
    "load_catalog",
    "continents",
    "continent_ids",
    "find_continent",
    "level_info",
]
