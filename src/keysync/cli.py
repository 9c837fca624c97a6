"""
Command-line interface for KeySync.

Usage (examples):
  - Show the provider metadata:
      ksync describe

  - List every managed key, or only some names:
      ksync get
      ksync get --name bob@host --name carol@laptop --format json

  - Converge key files to a desired state (dry-run first):
      ksync set --updates ./keys.yml --noop
      ksync set --updates ./keys.csv --home-root /srv/home
"""

from __future__ import annotations

import argparse
import csv
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .core.config import AppConfig, load_config
from .core.errors import KeySyncError
from .core.logging_setup import build_logger
from .core.provider import AuthorizedKeysProvider, RecordingContext, Update

STATUS_ORDER = ["CREATED", "UPDATED", "REMOVED", "UNCHANGED", "ABSENT", "SKIP", "ERROR", "EXCEPTION"]


def _read_rows_xlsx(path: str) -> List[Dict[str, Any]]:
    """
    Minimal XLSX reader using openpyxl (optional dependency).
    - Uses the first worksheet
    - First row = headers
    - Returns a list of {header: string_value}
    """
    try:
        from openpyxl import load_workbook  # lazy import so dependency stays optional
    except ImportError as e:
        raise RuntimeError(
            "XLSX support requires 'openpyxl'. Install it (e.g. `pip install keysync[xlsx]`) "
            "or use a YAML or CSV file instead."
        ) from e

    wb = load_workbook(filename=path, data_only=True, read_only=True)
    ws = wb.active
    rows = list(ws.iter_rows(values_only=True))
    if not rows:
        return []

    headers = [("" if h is None else str(h).strip()) for h in rows[0]]
    out: List[Dict[str, Any]] = []
    for r in rows[1:]:
        d: Dict[str, Any] = {}
        for i, h in enumerate(headers):
            if not h:
                continue
            val = r[i] if i < len(r) else None
            d[h] = "" if val is None else str(val)
        out.append(d)
    return out


def _read_rows_csv(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        return [dict(row) for row in csv.DictReader(f)]


def _read_rows_yaml(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("updates") or []
    if not isinstance(data, list) or not all(isinstance(d, dict) for d in data):
        raise ValueError(f"Expected a list of records (or an 'updates' list) in {path}")
    return data


def _read_rows_auto(path: str) -> List[Dict[str, Any]]:
    """
    Auto-detect reader by file extension.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Updates file not found: {path}")
    ext = p.suffix.lower()
    if ext in (".xlsx", ".xlsm"):
        return _read_rows_xlsx(path)
    if ext == ".csv":
        return _read_rows_csv(path)
    return _read_rows_yaml(path)


def _row_to_update(row: Dict[str, Any]) -> Update:
    """Spreadsheet rows carry options as one ';'-separated cell; empty cells mean unset."""
    should: Dict[str, Any] = {}
    for k, v in row.items():
        key = str(k).strip().lower()
        if v is None or (isinstance(v, str) and not v.strip()):
            continue
        if key == "options" and isinstance(v, str):
            v = [o.strip() for o in v.split(";") if o.strip()]
        elif isinstance(v, str):
            v = v.strip()
        should[key] = v
    name = should.pop("name", None)
    if not name:
        raise ValueError(f"Record without a name: {row!r}")
    return Update(name=str(name), should=should)


def _summarize_counts(counts: Dict[str, int]) -> str:
    return " | ".join(f"{k}={counts.get(k, 0)}" for k in STATUS_ORDER)


def _exit_code_from_counts(counts: Dict[str, int]) -> int:
    if counts.get("ERROR", 0) or counts.get("EXCEPTION", 0):
        return 2
    return 0


def _dump(data: Any, fmt: str) -> str:
    if fmt == "json":
        return json.dumps(data, indent=2, sort_keys=False)
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False).rstrip()


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ksync", description="Manage SSH authorized keys across accounts")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="YAML config file (default: first of ./keysync.yml, ~/.config/keysync/config.yml, /etc/keysync/config.yml)")
    common.add_argument("--home-root", default=None, help="Directory holding one home per account")
    common.add_argument("--key-file", default=None, help="Key file path relative to a home directory")
    common.add_argument("--root-key-file", default=None, help="Absolute key file path of the root account")
    common.add_argument("--logs-dir", default=None, help="Logs base directory")
    common.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    common.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")
    common.add_argument("--format", default="yaml", choices=["yaml", "json"], help="Output format")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("describe", parents=[common], help="Print the provider metadata")

    g = sub.add_parser("get", parents=[common], help="List managed keys")
    g.add_argument("--name", action="append", default=[], help="Only this name (repeatable)")

    s = sub.add_parser("set", parents=[common], help="Converge key files to the desired records")
    s.add_argument("--updates", required=True, help="Desired records (.yml/.yaml/.json, .csv or .xlsx)")
    s.add_argument("--noop", action="store_true", help="Compute changes without writing any file")
    s.add_argument("--abort-on-error", action="store_true", help="Stop at the first failing update")

    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        "layout": {
            "home_root": args.home_root,
            "key_file": args.key_file,
            "root_key_file": args.root_key_file,
        },
        "logging": {
            "base_dir": args.logs_dir,
            "console_level": args.console_level,
            "file_level": args.file_level,
        },
    }
    if getattr(args, "noop", False):
        overrides["app"] = {"noop": True}
    if getattr(args, "abort_on_error", False):
        overrides["policy"] = {"on_set_error": "abort"}
    # Unset flags must not override file/env values
    return {sec: {k: v for k, v in vals.items() if v is not None} for sec, vals in overrides.items()}


def _make_provider(cfg: AppConfig, action: str) -> AuthorizedKeysProvider:
    logger = build_logger(
        run_id=cfg.run_id,
        action=action,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        noop=cfg.app.noop,
    )
    logger.info("Starting ksync %s (noop=%s)", action, cfg.app.noop)
    return AuthorizedKeysProvider(
        cfg.layout.to_layout(),
        logger=logger,
        on_set_error=cfg.policy.on_set_error,
        on_parse_error=cfg.policy.on_parse_error,
    )


def _get_cmd(provider: AuthorizedKeysProvider, args: argparse.Namespace) -> int:
    records = provider.get(args.name)
    print(_dump([r.to_dict() for r in records], args.format))
    return 0


def _set_cmd(provider: AuthorizedKeysProvider, cfg: AppConfig, args: argparse.Namespace) -> int:
    rows = _read_rows_auto(args.updates)
    updates = [_row_to_update(r) for r in rows]
    provider.log.info("Loaded %s desired records from %s", len(updates), args.updates)

    ctx = RecordingContext()
    outcome = provider.set(updates, noop=cfg.app.noop, context=ctx)
    for res in outcome.results:
        if res.error:
            print(f"{res.status} {res.name}: {res.error}", file=sys.stderr)
    summary = _summarize_counts(outcome.counts)
    provider.log.info("%s summary: %s", "Noop" if cfg.app.noop else "Set", summary)
    print(summary)
    return _exit_code_from_counts(outcome.counts)


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        kwargs = {"files": (args.config,), "require_file": True} if args.config else {}
        cfg = load_config(_cli_overrides(args), **kwargs)
        provider = _make_provider(cfg, args.cmd)

        if args.cmd == "describe":
            print(_dump(provider.describe(), args.format))
            return 0
        if args.cmd == "get":
            return _get_cmd(provider, args)
        if args.cmd == "set":
            return _set_cmd(provider, cfg, args)
    except (KeySyncError, ValueError, OSError, RuntimeError) as e:
        print(f"ksync: error: {e}", file=sys.stderr)
        return 1

    parser.error("Unknown command")  # pragma: no cover
    return 2  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
