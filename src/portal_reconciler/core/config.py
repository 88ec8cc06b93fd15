from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv


class ConfigError(ValueError):
    """Invalid or incomplete configuration."""


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False
    ordering: Optional[str] = None   # None = the profile's own ordering


@dataclass
class PortalSection:
    base_url: str = ""
    token: str = ""          # secret – never log in clear text
    project: str = ""
    verify_tls: bool = True
    timeout_sec: int = 30
    retries: int = 3
    poll_interval_sec: float = 10.0
    wait_timeout_sec: float = 1800.0


@dataclass
class ProfilesSection:
    search_paths: List[str] = field(default_factory=list)


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class StateSection:
    dir: str = ".prec-state"


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    portal: PortalSection
    profiles: ProfilesSection
    logging: LoggingSection
    state: StateSection

    @property
    def run_id(self) -> str:
        """Stable run identifier for this process, generated on first access."""
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./portal-reconciler.yml",
    os.path.expanduser("~/.config/portal-reconciler/config.yml"),
    "/etc/portal-reconciler/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False, "ordering": None},
    "portal": {
        "base_url": "",
        "token": "",
        "project": "",
        "verify_tls": True,
        "timeout_sec": 30,
        "retries": 3,
        "poll_interval_sec": 10.0,
        "wait_timeout_sec": 1800.0,
    },
    "profiles": {"search_paths": []},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
    "state": {"dir": ".prec-state"},
}

_BOOL_KEYS = ("verify_tls", "dry_run")
_INT_KEYS = ("timeout_sec", "retries")
_FLOAT_KEYS = ("poll_interval_sec", "wait_timeout_sec")


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Maps merge recursively, lists/scalars override; `ext` wins."""
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _drop_none(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """CLI overrides left unset (None) must not mask lower layers."""
    out: Dict[str, Any] = {}
    for k, v in cfg.items():
        if isinstance(v, dict):
            v = _drop_none(v)
            if v:
                out[k] = v
        elif v is not None:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _env_to_dict(prefix: str = "PREC_") -> Dict[str, Any]:
    """PREC_PORTAL__BASE_URL=val -> {"portal": {"base_url": "val"}} (lowercased keys)."""
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        if len(path) < 2:
            continue
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Replace values like "${VAR}" with os.environ["VAR"] ("" when unset)."""
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(repl(x)) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Type coercion for booleans, integers and floats in known keys."""
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        key = key_path[-1] if key_path else ""
        try:
            if key in _BOOL_KEYS:
                return to_bool(obj)
            if key in _INT_KEYS:
                return int(obj)
            if key in _FLOAT_KEYS:
                return float(obj)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {'.'.join(key_path)}: {obj!r}") from exc
        return obj

    out = walk(cfg)
    paths = (out.get("profiles") or {}).get("search_paths")
    if isinstance(paths, str):
        out["profiles"]["search_paths"] = [p for p in paths.split(os.pathsep) if p]
    return out


def _validate(cfg: Dict[str, Any]) -> None:
    """Required fields when not in dry_run."""
    if bool(cfg.get("app", {}).get("dry_run", False)):
        return
    missing = [
        f"portal.{k}" for k in ("base_url", "token", "project")
        if not cfg.get("portal", {}).get(k)
    ]
    if missing:
        raise ConfigError(
            "Missing required configuration for non-dry run: " + ", ".join(missing)
        )


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Optional[Tuple[str, ...]] = None,
    env_prefix: str = "PREC_",
    dotenv_path: Optional[str] = None,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides (None values ignored)
      2) Environment variables (prefix PREC_, nested via __; a .env file is loaded first)
      3) YAML file (first existing)
      4) Built-in defaults

    Also performs ${ENV_VAR} interpolation, type coercion and validation of
    the portal settings when not in dry_run.
    """
    load_dotenv(dotenv_path or find_dotenv(usecwd=True), override=False)

    file_cfg = _load_first_existing(files or _DEFAULT_FILES)
    env_cfg = _env_to_dict(env_prefix)

    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, _drop_none(cli_overrides or {}))

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _validate(merged)

    try:
        return AppConfig(
            app=AppSection(**merged.get("app", {})),
            portal=PortalSection(**merged.get("portal", {})),
            profiles=ProfilesSection(**merged.get("profiles", {})),
            logging=LoggingSection(**merged.get("logging", {})),
            state=StateSection(**merged.get("state", {})),
        )
    except TypeError as exc:
        raise ConfigError(f"Unknown configuration key: {exc}") from exc
