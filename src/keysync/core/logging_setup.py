"""
Central logging for KeySync.

- Console handler: INFO..CRITICAL on stderr
- Timed rotated file handler: DEBUG (logs/app.log, daily rotation)
- Action-based file handler: DEBUG (logs/YYYY-MM-DD/<action>_<run_id>.log)
- Redaction: masks passwords/tokens and shortens public-key blobs, in both msg and % args
- UTC timestamps in ISO-8601
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path


class MaskSecretsFilter(logging.Filter):
    """
    Redact secrets and keep base64 key material out of log lines.
    """

    _patterns = [
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(passphrase\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\btoken\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]
    # Public keys are not secret, but a 700-char blob makes logs unreadable
    _key_blob = re.compile(r"\b(AAAA[A-Za-z0-9+/]{8})[A-Za-z0-9+/]{24,}={0,3}")

    @classmethod
    def _mask(cls, text: str) -> str:
        masked = text
        for pat in cls._patterns:
            masked = pat.sub(r"\1***REDACTED***", masked)
        return cls._key_blob.sub(r"\1...", masked)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask(v) if isinstance(v, str) else v for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        return True


class ContextDefaultsFilter(logging.Filter):
    """Fill the formatter fields for records that did not come through the adapter."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in ("run_id", "action", "noop"):
            if not hasattr(record, attr):
                setattr(record, attr, "-")
        return True


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _utc_formatter(fmt: str) -> logging.Formatter:
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def _ensure_single_console_handler(
    base_logger: logging.Logger,
    *,
    console_level: str,
    formatter: logging.Formatter,
    mask: logging.Filter,
) -> None:
    """Replace any plain console handler with one writing to the current sys.stderr."""
    for h in list(base_logger.handlers):
        if type(h) is logging.StreamHandler:
            base_logger.removeHandler(h)
            h.close()

    sh = logging.StreamHandler(stream=sys.stderr)
    sh.setLevel(_level(console_level, logging.INFO))
    sh.setFormatter(formatter)
    sh.addFilter(mask)
    sh.addFilter(ContextDefaultsFilter())
    base_logger.addHandler(sh)


def _ensure_app_file_handler(
    base_logger: logging.Logger,
    *,
    base_dir: str,
    file_level: str,
    formatter: logging.Formatter,
    mask: logging.Filter,
) -> None:
    """
    Ensure a single TimedRotatingFileHandler points to <base_dir>/app.log.
    A handler left over from a call with another base_dir is replaced.
    """
    _ensure_dir(base_dir)
    desired = os.path.abspath(os.path.join(base_dir, "app.log"))
    Path(desired).touch(exist_ok=True)

    for h in list(base_logger.handlers):
        if isinstance(h, logging.handlers.TimedRotatingFileHandler):
            if os.path.abspath(h.baseFilename) != desired:
                base_logger.removeHandler(h)
                h.close()

    if not any(
        isinstance(h, logging.handlers.TimedRotatingFileHandler)
        and os.path.abspath(h.baseFilename) == desired
        for h in base_logger.handlers
    ):
        rh = logging.handlers.TimedRotatingFileHandler(
            desired,
            when="midnight",
            backupCount=14,
            encoding="utf-8",
            utc=True,
        )
        rh.setLevel(_level(file_level, logging.DEBUG))
        rh.setFormatter(formatter)
        rh.addFilter(mask)
        rh.addFilter(ContextDefaultsFilter())
        base_logger.addHandler(rh)


def build_logger(
    *,
    name: str = "ksync",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    noop: bool = False,
) -> logging.LoggerAdapter:
    """
    Logger for one ksync run (`action` is describe, get or set).

    Handlers live on the `<name>` logger and are reused across runs in one
    process; the per-run file hangs off `<name>.<action>.<run_id>`. Tree and
    provider records carry run_id, action and noop through the adapter.
    """
    mask = MaskSecretsFilter()
    formatter = _utc_formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "run=%(run_id)s action=%(action)s noop=%(noop)s | "
        "%(message)s"
    )

    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)
    _ensure_single_console_handler(
        base_logger=base,
        console_level=console_level,
        formatter=formatter,
        mask=mask,
    )
    _ensure_app_file_handler(
        base_logger=base,
        base_dir=base_dir,
        file_level=file_level,
        formatter=formatter,
        mask=mask,
    )

    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True

    if not getattr(child, "_ksync_action_configured", False):
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dated_dir = os.path.join(base_dir, today)
        _ensure_dir(dated_dir)
        action_file = os.path.join(dated_dir, f"{action}_{run_id}.log")
        fh = logging.FileHandler(action_file, encoding="utf-8")
        fh.setLevel(_level(file_level, logging.DEBUG))
        fh.setFormatter(formatter)
        fh.addFilter(mask)
        fh.addFilter(ContextDefaultsFilter())
        child.addHandler(fh)
        child._ksync_action_configured = True  # type: ignore[attr-defined]

    fields = {"run_id": run_id, "action": action, "noop": noop}
    adapter = logging.LoggerAdapter(child, fields)
    adapter.debug("Logger initialised")
    return adapter
