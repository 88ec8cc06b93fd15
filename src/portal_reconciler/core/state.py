"""
Persisted confirmed collections, one YAML file per order:

  <base_dir>/<kind>/<order_id>.yml

  order_id: "..."
  kind: "address_policy"
  items:
    - {address_prefix: "DC.", address_name: "a1", ...}
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .entities import Collection, Entity
from .profiles import ResourceProfile

log = logging.getLogger("prec.state")


class StateError(Exception):
    """Raised when a state file cannot be read."""


class StateStore:
    def __init__(self, base_dir: str = ".prec-state") -> None:
        self.base_dir = Path(base_dir)

    def path_for(self, kind: str, order_id: str) -> Path:
        if not order_id or "/" in order_id or order_id in (".", ".."):
            raise ValueError(f"Invalid order id for state file: {order_id!r}")
        return self.base_dir / kind / f"{order_id}.yml"

    def load(self, profile: ResourceProfile, order_id: str) -> List[Entity]:
        """Entities last confirmed for the order ([] when nothing was recorded)."""
        path = self.path_for(profile.kind, order_id)
        if not path.exists():
            log.debug("No state for %s/%s at %s", profile.kind, order_id, path)
            return []
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise StateError(f"State file must be a mapping: {path}")
        items = data.get("items") or []
        if not isinstance(items, list):
            raise StateError(f"State file 'items' must be a list: {path}")
        return [profile.build_entity(raw, strict=False) for raw in items]

    def save(self, kind: str, order_id: str, collection: Collection) -> Path:
        """Write atomically: temp file in the same directory, then replace."""
        path = self.path_for(kind, order_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        doc: Dict[str, Any] = {
            "order_id": order_id,
            "kind": kind,
            "items": [e.to_dict() for e in collection.values()],
        }
        fd, tmp = tempfile.mkstemp(prefix=f".{order_id}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(doc, f, sort_keys=False, allow_unicode=True)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        log.debug("Saved %d entit(y/ies) to %s", len(collection), path)
        return path
