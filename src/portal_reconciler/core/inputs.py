"""
Desired-collection readers: YAML, CSV or XLSX, picked by file extension.

Each row maps field name -> value. Blank cells are dropped so the profile
defaults apply; fully blank rows are skipped. Entities are returned as a list
(not a Collection) so duplicate identities reach the validator intact.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import yaml

from .entities import Entity
from .profiles import FieldError, ResourceProfile

log = logging.getLogger("prec.inputs")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _clean(row: Dict[str, Any]) -> Dict[str, Any]:
    return {str(k).strip(): v for k, v in row.items() if k is not None and not _is_blank(v)}


def _read_yaml(path: Path) -> List[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("items") or []
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise FieldError(f"{path}: expected a list of mappings (optionally under 'items')")
    return data


def _read_csv(path: Path) -> List[Dict[str, Any]]:
    with path.open("r", encoding="utf-8-sig", newline="") as f:
        return [dict(row) for row in csv.DictReader(f)]


def _read_xlsx(path: Path, sheet: Optional[str]) -> List[Dict[str, Any]]:
    try:
        df = pd.read_excel(path, sheet_name=sheet or 0, dtype=str, engine="openpyxl").fillna("")
    except Exception as exc:
        raise FieldError(f"Failed to read {path}: {exc}") from exc
    return df.to_dict(orient="records")


def read_rows(path: str, *, sheet: Optional[str] = None) -> List[Dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Desired file not found: {path}")
    ext = p.suffix.lower()
    if ext in (".yml", ".yaml"):
        rows = _read_yaml(p)
    elif ext in (".xlsx", ".xlsm"):
        rows = _read_xlsx(p, sheet)
    elif ext == ".csv":
        rows = _read_csv(p)
    else:
        raise FieldError(f"Unsupported desired file type '{ext}' (use .yml, .csv or .xlsx)")
    return [r for r in (_clean(row) for row in rows) if r]


def load_desired(path: str, profile: ResourceProfile, *, sheet: Optional[str] = None) -> List[Entity]:
    """Read a desired collection and build entities through the profile."""
    rows = read_rows(path, sheet=sheet)
    out: List[Entity] = []
    for pos, row in enumerate(rows):
        try:
            out.append(profile.build_entity(row))
        except FieldError as exc:
            raise FieldError(f"{path} row #{pos}: {exc}") from exc
    log.debug("Loaded %d desired %s entit(y/ies) from %s", len(out), profile.kind, path)
    return out
