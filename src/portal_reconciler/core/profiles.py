"""
Resource profiles: the per-kind rules the generic reconciler runs with.

A profile is a YAML document (optionally `extends` another) declaring:
- identity:   how an entity's identity is rendered from its fields
- fields:     declared fields with type, default and set-like comparison
- immutable / unique / paired: pre-flight rules
- diff:       fields ignored when comparing
- remote:     how to read the current collection from an order and which
              order actions/payloads create, update and delete entities
- ordering:   create_first | delete_first

Transforms are an allow-list (deterministic, side-effect free).
"""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from .entities import Entity

BUILTIN_PROFILES_DIR = str(Path(__file__).resolve().parent.parent / "profiles")


# =========================
# Exceptions
# =========================

class ProfileError(Exception):
    """Base error for profile-related issues."""


class ProfileValidationError(ProfileError):
    """Raised when a profile is structurally invalid."""


class TransformError(ProfileError):
    """Raised when a transform fails or is unknown."""


class FieldError(ProfileError):
    """Raised when an entity cannot be built from a row."""


# =========================
# Transform registry (allow-list)
# =========================

def t_norm_str(value: Any, **_: Any) -> str:
    """Trim and collapse whitespace; preserve case."""
    return re.sub(r"\s+", " ", str(value if value is not None else "")).strip()


def t_split(value: Any, sep: str = ",", **_: Any) -> List[str]:
    """Split a scalar string into a list by separator; trims pieces; drops empties."""
    if isinstance(value, (list, tuple)):
        return [str(p).strip() for p in value if str(p).strip()]
    s = str(value or "")
    return [p.strip() for p in s.split(sep) if p.strip()]


def t_uniq(value: Any, **_: Any) -> List[Any]:
    """Remove duplicates while keeping the first occurrence."""
    if value is None:
        return []
    items = list(value) if isinstance(value, (list, tuple)) else [value]
    return list(dict.fromkeys(items))


def t_sort(value: Any, **_: Any) -> List[Any]:
    """Lexically sort a sequence; returns [] for None."""
    if value is None:
        return []
    try:
        return sorted(list(value))
    except Exception as exc:
        raise TransformError(f"Cannot sort value: {value!r}") from exc


def t_csv(value: Any, sep: str = ",", **_: Any) -> str:
    """Join a list into a string with a separator; coerce scalars to str."""
    if isinstance(value, (list, tuple)):
        return sep.join(map(str, value))
    return str(value or "")


def t_to_bool(value: Any, **_: Any) -> bool:
    """Coerce common truthy strings to boolean."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def t_to_int(value: Any, **_: Any) -> int:
    """Strict integer conversion (raises on invalid)."""
    if isinstance(value, bool):
        raise TransformError(f"Cannot convert to int: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    s = str(value).strip()
    if not re.fullmatch(r"-?\d+", s):
        raise TransformError(f"Cannot convert to int: {value!r}")
    return int(s)


def _longest_prefix(value: str, choices: Iterable[str]) -> str:
    for prefix in sorted(choices, key=len, reverse=True):
        if value.startswith(prefix):
            return prefix
    return ""


def t_prefix_of(value: Any, choices: Iterable[str] = (), **_: Any) -> str:
    """Return the longest prefix from `choices` the value starts with ('' if none)."""
    return _longest_prefix(str(value or ""), choices)


def t_strip_prefix(value: Any, choices: Iterable[str] = (), **_: Any) -> str:
    """Drop the longest matching prefix from `choices`."""
    s = str(value or "")
    return s[len(_longest_prefix(s, choices)):]


TRANSFORM_REGISTRY = {
    "norm_str": t_norm_str,
    "split": t_split,
    "uniq": t_uniq,
    "sort": t_sort,
    "csv": t_csv,
    "to_bool": t_to_bool,
    "to_int": t_to_int,
    "prefix_of": t_prefix_of,
    "strip_prefix": t_strip_prefix,
}

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def render(template: Any, context: Mapping[str, Any]) -> Any:
    """
    Render ${field} placeholders recursively in dicts and lists.
    A string that is exactly one placeholder keeps the native value type.
    """
    if isinstance(template, str):
        m = _PLACEHOLDER.fullmatch(template)
        if m:
            return context.get(m.group(1))
        return Template(template).safe_substitute(context)
    if isinstance(template, list):
        return [render(x, context) for x in template]
    if isinstance(template, dict):
        return {k: render(v, context) for k, v in template.items()}
    return template


def apply_transforms(value: Any, transforms: Iterable[Any], label: str) -> Any:
    for t in transforms or []:
        if isinstance(t, str):
            fn = TRANSFORM_REGISTRY.get(t)
            params: Dict[str, Any] = {}
        elif isinstance(t, dict):
            fn = TRANSFORM_REGISTRY.get(t.get("fn"))
            params = {k: v for k, v in t.items() if k != "fn"}
        else:
            fn = None
            params = {}
        if not fn:
            raise TransformError(f"Unknown transform for '{label}': {t!r}")
        value = fn(value, **params)
    return value


# =========================
# Typed pieces
# =========================

_FIELD_TYPES = ("str", "int", "bool", "list")


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str = "str"
    required: bool = True
    default: Any = None
    as_set: bool = False
    sep: str = ","

    def coerce(self, value: Any) -> Any:
        if value is None:
            return None
        try:
            if self.type == "int":
                return t_to_int(value)
            if self.type == "bool":
                return t_to_bool(value)
            if self.type == "list":
                return t_split(value, sep=self.sep)
            return str(value).strip()
        except TransformError as exc:
            raise FieldError(f"Field '{self.name}': {exc}") from exc

    def comparable(self, value: Any) -> Any:
        if value is None:
            return None
        if self.type == "list":
            items = [t_norm_str(v) for v in value]
            return sorted(set(items)) if self.as_set else items
        if self.type == "str":
            return t_norm_str(value)
        return value


@dataclass(frozen=True)
class PairSpec:
    """Two fields whose 'unset' sentinel must agree, with low <= high when set."""
    name: str
    low: str
    high: str
    sentinel: Any = -1
    unset_flag: str = ""
    # (low, high) sent as the new values when a change resets the pair to unset
    unset_fallback: Optional[Tuple[Any, Any]] = None

    def is_unset(self, fields: Mapping[str, Any]) -> bool:
        return fields.get(self.low) == self.sentinel and fields.get(self.high) == self.sentinel

    def touched_by(self, changed: Iterable[str]) -> bool:
        names = set(changed)
        return self.low in names or self.high in names


# =========================
# Profile Runtime
# =========================

@dataclass
class ResourceProfile:
    """Typed wrapper around a validated profile configuration."""

    name: str
    cfg: Dict[str, Any]

    # ----- Identity -----
    @property
    def kind(self) -> str:
        return str(self.cfg.get("kind") or self.name)

    @property
    def identity_format(self) -> str:
        return str(self.cfg.get("identity", {}).get("format", ""))

    @property
    def ordering(self) -> str:
        return str(self.cfg.get("ordering") or "create_first")

    # ----- Declared rules -----
    @property
    def fields(self) -> Dict[str, FieldSpec]:
        out: Dict[str, FieldSpec] = {}
        for fname, spec in (self.cfg.get("fields") or {}).items():
            spec = spec or {}
            ftype = spec.get("type", "str")
            if ftype not in _FIELD_TYPES:
                raise ProfileValidationError(
                    f"Profile '{self.name}' field '{fname}' has unknown type '{ftype}'"
                )
            out[fname] = FieldSpec(
                name=fname,
                type=ftype,
                required=bool(spec.get("required", "default" not in spec)),
                default=spec.get("default"),
                as_set=bool(spec.get("as_set", False)),
                sep=str(spec.get("sep", ",")),
            )
        return out

    @property
    def immutable(self) -> Tuple[str, ...]:
        return tuple(self.cfg.get("immutable") or ())

    @property
    def unique(self) -> Tuple[str, ...]:
        return tuple(self.cfg.get("unique") or ())

    @property
    def pairs(self) -> List[PairSpec]:
        out: List[PairSpec] = []
        for pname, spec in (self.cfg.get("paired") or {}).items():
            if not isinstance(spec, dict) or "low" not in spec or "high" not in spec:
                raise ProfileValidationError(
                    f"Profile '{self.name}' pair '{pname}' must declare 'low' and 'high'"
                )
            fallback = spec.get("unset_fallback")
            if fallback is not None:
                if not isinstance(fallback, (list, tuple)) or len(fallback) != 2:
                    raise ProfileValidationError(
                        f"Profile '{self.name}' pair '{pname}' unset_fallback must be [low, high]"
                    )
                fallback = (fallback[0], fallback[1])
            out.append(
                PairSpec(
                    name=pname,
                    low=spec["low"],
                    high=spec["high"],
                    sentinel=spec.get("sentinel", -1),
                    unset_flag=str(spec.get("unset_flag", "")),
                    unset_fallback=fallback,
                )
            )
        return out

    @property
    def ignore_fields(self) -> Tuple[str, ...]:
        return tuple((self.cfg.get("diff") or {}).get("ignore_fields") or ())

    @property
    def remote(self) -> Dict[str, Any]:
        return dict(self.cfg.get("remote") or {})

    # ----- Entities -----
    def identity_of(self, fields: Mapping[str, Any]) -> str:
        return str(render(self.identity_format, fields))

    def build_entity(self, raw: Mapping[str, Any], *, strict: bool = True) -> Entity:
        """Coerce a raw row (field -> value) into an Entity, applying defaults."""
        specs = self.fields
        unknown = [k for k in raw if k not in specs]
        if strict and unknown:
            raise FieldError(f"Profile '{self.name}' has no field(s): {', '.join(sorted(unknown))}")

        out: Dict[str, Any] = {}
        for fname, spec in specs.items():
            value = raw.get(fname)
            if value is None or value == "":
                if not spec.required:
                    out[fname] = copy.deepcopy(spec.default)
                    continue
                raise FieldError(f"Missing required field '{fname}' for {self.kind}")
            out[fname] = spec.coerce(value)
        return Entity(identity=self.identity_of(out), fields=out)

    def comparable(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Normalize fields for semantic comparison; ignored fields dropped."""
        ignore = set(self.ignore_fields)
        specs = self.fields
        return {
            k: specs[k].comparable(fields.get(k))
            for k in specs
            if k not in ignore
        }

    def changed_fields(self, current: Entity, desired: Entity) -> List[str]:
        cur = self.comparable(current.fields)
        new = self.comparable(desired.fields)
        return [k for k in new if cur.get(k) != new.get(k)]

    def unset_flags(self, fields: Mapping[str, Any]) -> Dict[str, bool]:
        return {p.unset_flag: p.is_unset(fields) for p in self.pairs if p.unset_flag}

    # ----- Remote mapping -----
    def map_remote(self, item: Mapping[str, Any]) -> Entity:
        """
        Map one item of the order's config list into an Entity.
        Supports either `col` or `expr`, plus an optional `transform` list;
        fields without a mapping are read under their own name.
        """
        mapping = self.remote.get("mapping") or {}
        row: Dict[str, Any] = {}
        for logical in self.fields:
            spec = mapping.get(logical)
            if spec is None:
                row[logical] = item.get(logical)
                continue
            if not isinstance(spec, dict):
                raise ProfileValidationError(
                    f"Profile '{self.name}' mapping for '{logical}' must be a map"
                )
            has_col = "col" in spec
            has_expr = "expr" in spec
            if has_col == has_expr:
                raise ProfileValidationError(
                    f"Profile '{self.name}' mapping for '{logical}' must specify exactly one of 'col' or 'expr'"
                )
            if has_col:
                val = item.get(spec["col"])
            else:
                val = Template(str(spec["expr"])).safe_substitute(item)
            row[logical] = apply_transforms(val, spec.get("transform", []), logical)
        return self.build_entity(row, strict=False)


# =========================
# Loader with inheritance
# =========================

def _deep_merge(base: Dict[str, Any], ext: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge: dicts merge recursively; lists/scalars override."""
    result = copy.deepcopy(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(result.get(k), dict):
            result[k] = _deep_merge(result[k], v)  # type: ignore[index]
        else:
            result[k] = copy.deepcopy(v)
    return result


class ProfileLoader:
    """
    Load profiles from disk, supporting `extends: "<parent>"` inheritance.

    Search order: the provided `search_paths`, then the built-in profiles
    shipped with the package, checked in order for `<name>.yml`.
    """

    def __init__(self, search_paths: Optional[List[str]] = None, *, builtin: bool = True) -> None:
        self.search_paths = list(search_paths or [])
        if builtin and BUILTIN_PROFILES_DIR not in self.search_paths:
            self.search_paths.append(BUILTIN_PROFILES_DIR)

    def _find_path(self, name: str) -> str:
        """Return the first existing '<search_path>/<name>.yml' or raise."""
        filename = f"{name}.yml"
        for base in self.search_paths:
            candidate = os.path.join(base, filename)
            if os.path.exists(candidate):
                return candidate
        raise ProfileError(f"Profile '{name}' not found in {self.search_paths}")

    def _read_yaml(self, path: str) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ProfileValidationError(f"Top-level YAML must be a mapping: {path}")
        return data

    def _load_recursive(self, name: str, stack: Optional[List[str]] = None) -> Dict[str, Any]:
        stack = stack or []
        if name in stack:
            cycle = " -> ".join(stack + [name])
            raise ProfileValidationError(f"Inheritance cycle detected: {cycle}")
        path = self._find_path(name)
        data = self._read_yaml(path)
        parent = data.get("extends")
        if parent:
            merged_parent = self._load_recursive(parent, stack + [name])
            data = _deep_merge(merged_parent, data)
        return data

    def load(self, name: str) -> ResourceProfile:
        """Load and validate a profile by name (without extension)."""
        data = self._load_recursive(name)

        for section in ("identity", "fields"):
            if section not in data:
                raise ProfileValidationError(f"Profile '{name}' missing required section: {section}")
        if not data.get("identity", {}).get("format"):
            raise ProfileValidationError(f"Profile '{name}' missing identity.format")
        if data.get("ordering", "create_first") not in ("create_first", "delete_first"):
            raise ProfileValidationError(f"Profile '{name}' has unknown ordering: {data.get('ordering')}")

        profile = ResourceProfile(name=name, cfg=data)
        declared = profile.fields
        referenced = list(profile.immutable) + list(profile.unique)
        for pair in profile.pairs:
            referenced += [pair.low, pair.high]
        missing = sorted({f for f in referenced if f not in declared})
        if missing:
            raise ProfileValidationError(
                f"Profile '{name}' references undeclared field(s): {', '.join(missing)}"
            )

        # low <= high ordering is only meaningful on integers
        for pair in profile.pairs:
            wrong = [f for f in (pair.low, pair.high) if declared[f].type != "int"]
            if wrong:
                raise ProfileValidationError(
                    f"Profile '{name}' pair '{pair.name}' needs int fields: {', '.join(wrong)}"
                )
        unhashable = [f for f in profile.unique if declared[f].type == "list"]
        if unhashable:
            raise ProfileValidationError(
                f"Profile '{name}' declares list field(s) as unique: {', '.join(unhashable)}"
            )
        return profile
