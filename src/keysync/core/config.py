from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .layout import KeyFileLayout
from .provider import ON_PARSE_ERROR, ON_SET_ERROR


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    noop: bool = False


@dataclass
class LayoutSection:
    home_root: str = "/home"
    key_file: str = ".ssh/authorized_keys"
    root_key_file: str = "/root/.ssh/authorized_keys"

    def to_layout(self) -> KeyFileLayout:
        return KeyFileLayout(
            home_root=self.home_root,
            key_file=self.key_file,
            root_key_file=self.root_key_file,
        )


@dataclass
class PolicySection:
    on_set_error: str = "continue"   # continue | abort
    on_parse_error: str = "skip"     # skip | abort


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    layout: LayoutSection
    policy: PolicySection
    logging: LoggingSection

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./keysync.yml",
    os.path.expanduser("~/.config/keysync/config.yml"),
    "/etc/keysync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "noop": False},
    "layout": {
        "home_root": "/home",
        "key_file": ".ssh/authorized_keys",
        "root_key_file": "/root/.ssh/authorized_keys",
    },
    "policy": {"on_set_error": "continue", "on_parse_error": "skip"},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...], required: bool = False) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    if required:
        raise FileNotFoundError(f"Config file not found: {', '.join(files)}")
    return {}


def _load_dotenv() -> None:
    """Load a .env file found from the current directory upwards; real env vars win."""
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path, override=False)


def _env_to_dict(prefix: str = "KSYNC_") -> Dict[str, Any]:
    """
    Convert KSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Minimal type coercion for booleans in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if key_path[-1:] == ("noop",):
            return to_bool(obj)
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    """
    Validate policy values and layout paths.
    """
    problems = []
    policy = cfg.get("policy", {})
    if policy.get("on_set_error") not in ON_SET_ERROR:
        problems.append(f"policy.on_set_error must be one of {', '.join(ON_SET_ERROR)}")
    if policy.get("on_parse_error") not in ON_PARSE_ERROR:
        problems.append(f"policy.on_parse_error must be one of {', '.join(ON_PARSE_ERROR)}")
    layout = cfg.get("layout", {})
    for key in ("home_root", "root_key_file"):
        if not str(layout.get(key) or "").startswith("/"):
            problems.append(f"layout.{key} must be an absolute path")
    if str(layout.get("key_file") or "/").startswith("/"):
        problems.append("layout.key_file must be relative to the home directory")
    if problems:
        raise ValueError("Invalid configuration: " + "; ".join(problems))


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "KSYNC_",
    require_file: bool = False,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix KSYNC_, nested via __; .env loaded first)
      3) YAML file (first existing)
      4) Built-in defaults

    With require_file set, a missing config file is an error (an explicit --config).

    Also performs:
      - ${ENV_VAR} interpolation
      - basic type coercion (bool)
      - validation of policy values and layout paths
    """
    # Load file first (low precedence)
    file_cfg = _load_first_existing(files, required=require_file)

    # Env overlay
    _load_dotenv()
    env_cfg = _env_to_dict(env_prefix)

    # Combine: defaults <- file <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    # Interpolate and coerce
    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    # Validate
    _validate(merged)

    # Build typed object
    return AppConfig(
        app=AppSection(**merged.get("app", {})),
        layout=LayoutSection(**merged.get("layout", {})),
        policy=PolicySection(**merged.get("policy", {})),
        logging=LoggingSection(**merged.get("logging", {})),
    )
