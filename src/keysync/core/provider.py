"""
Authorized-keys resource provider.

- describe(): static metadata document
- get(names): enumerate key entries of every account file
- set(updates, noop): converge one update at a time, each in its own
  single-file edit transaction

Per-update isolation: an update that fails is reported (ERROR/EXCEPTION)
and the batch goes on, unless on_set_error="abort", in which case every
remaining update is marked SKIP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .errors import (
    InvalidValue,
    KeySyncError,
    MissingAttribute,
    MultipleMatches,
    UnknownEnsureValue,
)
from .layout import KeyFileLayout
from .lens import (
    ENTRY,
    KEY_TYPE_RE,
    LINE_BREAK_RE,
    OPTION_NAME_RE,
    WHITESPACE_RE,
    AuthorizedKeysLens,
)
from .paths import file_path
from .records import (
    ABSENT,
    ENSURE_VALUES,
    PRESENT,
    KeyRecord,
    build_entry,
    changed_attributes,
    entry_path,
    record_from_entry,
    split_option,
)
from .schema import metadata
from .tree import TreeEditor

ON_SET_ERROR = ("continue", "abort")
ON_PARSE_ERROR = ("skip", "abort")


@dataclass(frozen=True)
class Update:
    """One desired-state change: current (`is_`) and desired (`should`) attribute snapshots."""
    name: str
    should: Dict[str, Any]
    is_: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class UpdateResult:
    index: int
    name: str
    status: str
    target: str = ""
    changes: Tuple[str, ...] = ()
    error: str = ""


@dataclass
class SetResult:
    results: List[UpdateResult] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not (self.counts.get("ERROR", 0) or self.counts.get("EXCEPTION", 0))


class ChangeContext(Protocol):
    def report_error(self, update: Update, message: str) -> None:
        ...

    def report_change(self, update: Update, attribute: Optional[str] = None) -> None:
        ...


class RecordingContext:
    """Context that keeps every reported error and change in memory."""

    def __init__(self) -> None:
        self.errors: List[Tuple[str, str]] = []
        self.changes: List[Tuple[str, Optional[str]]] = []

    def report_error(self, update: Update, message: str) -> None:
        self.errors.append((update.name, message))

    def report_change(self, update: Update, attribute: Optional[str] = None) -> None:
        self.changes.append((update.name, attribute))


class AuthorizedKeysProvider:
    def __init__(
        self,
        layout: Optional[KeyFileLayout] = None,
        *,
        editor: Optional[TreeEditor] = None,
        logger: Optional[logging.LoggerAdapter] = None,
        on_set_error: str = "continue",
        on_parse_error: str = "skip",
    ) -> None:
        if on_set_error not in ON_SET_ERROR:
            raise ValueError(f"on_set_error must be one of {ON_SET_ERROR}, got {on_set_error!r}")
        if on_parse_error not in ON_PARSE_ERROR:
            raise ValueError(f"on_parse_error must be one of {ON_PARSE_ERROR}, got {on_parse_error!r}")
        self.layout = layout or KeyFileLayout()
        self.log = logger or logging.getLogger("ksync.provider")
        self.editor = editor or TreeEditor(AuthorizedKeysLens(), logger=self.log)
        self.on_set_error = on_set_error
        self.on_parse_error = on_parse_error

    def describe(self) -> Dict[str, Any]:
        return metadata()

    # ----- get -------------------------------------------------------------

    def get(self, names: Iterable[str] = ()) -> List[KeyRecord]:
        wanted = list(dict.fromkeys(names or ()))
        tree = self.editor.load(self.layout.patterns(), collect_errors=True)
        for path, err in tree.errors.items():
            if self.on_parse_error == "abort":
                raise err
            self.log.error("Skipping unparsable key file %s: %s", path, err)

        records: List[KeyRecord] = []
        seen_files = set()
        for pattern in self.layout.patterns():
            for fpath in tree.match(file_path(pattern)):
                if str(fpath) in seen_files:
                    continue
                seen_files.add(str(fpath))
                for entry in tree.nodes(fpath.child(ENTRY)):
                    rec = record_from_entry(entry, fpath, self.layout)
                    if rec is None:
                        self.log.debug("Unnamed entry in %s left unmanaged", fpath)
                        continue
                    if wanted and rec.name not in wanted:
                        continue
                    records.append(rec)

        found = {r.name for r in records}
        for name in wanted:
            if name not in found:
                records.append(KeyRecord(name=name, ensure=ABSENT))
        self.log.info("Enumerated %d records from %d files", len(records), len(seen_files))
        return records

    # ----- set -------------------------------------------------------------

    def set(
        self,
        updates: Iterable[Update],
        noop: bool = False,
        context: Optional[ChangeContext] = None,
    ) -> SetResult:
        ctx = context or RecordingContext()
        out = SetResult()
        aborted = False

        for idx, upd in enumerate(updates):
            if aborted:
                self._append(out, UpdateResult(idx, upd.name, "SKIP", error="batch aborted"))
                continue
            try:
                res = self._converge(idx, upd, noop, ctx)
            except KeySyncError as e:
                res = UpdateResult(idx, upd.name, "ERROR", error=str(e))
                ctx.report_error(upd, str(e))
                self.log.error("Update error: %s", e)
            except Exception as e:
                res = UpdateResult(idx, upd.name, "EXCEPTION", error=str(e))
                ctx.report_error(upd, str(e))
                self.log.exception("Update exception: %s", e)
            self._append(out, res)
            if res.status in ("ERROR", "EXCEPTION") and self.on_set_error == "abort":
                aborted = True
        return out

    def _converge(self, idx: int, upd: Update, noop: bool, ctx: ChangeContext) -> UpdateResult:
        should = dict(upd.should or {})
        current = dict(upd.is_ or {})

        self._check_name(upd.name)
        user = should.get("user") or current.get("user")
        if not user:
            raise MissingAttribute(upd.name, "user")
        ensure = should.get("ensure")
        if ensure is None:
            ensure = PRESENT
        if ensure not in ENSURE_VALUES:
            raise UnknownEnsureValue(upd.name, ensure)

        target = self.layout.path_for(str(user))
        fpath = file_path(target)
        slot = entry_path(fpath, upd.name)

        with self.editor.transaction(target) as tree:
            matches = tree.match(slot)
            if len(matches) > 1:
                raise MultipleMatches(upd.name, target, len(matches))
            observed = None
            if matches:
                observed = record_from_entry(tree.nodes(matches[0])[0], fpath, self.layout)

            if ensure == ABSENT:
                if observed is None:
                    self.log.debug("%s already absent from %s", upd.name, target)
                    return UpdateResult(idx, upd.name, "ABSENT", target=target)
                tree.remove(matches[0])
                status, changes = "REMOVED", ("ensure",)
            else:
                desired = self._desired(upd.name, str(user), should, observed)
                if observed is None:
                    status, changes = "CREATED", ("ensure",)
                else:
                    changes = changed_attributes(observed, desired)
                    if not changes:
                        self.log.debug("%s unchanged in %s", upd.name, target)
                        return UpdateResult(idx, upd.name, "UNCHANGED", target=target)
                    status = "UPDATED"
                handle = build_entry(tree, desired)
                tree.move(handle, slot)

            if noop:
                self.log.info("noop: would mark %s %s in %s", upd.name, status, target)
            else:
                tree.save()
                self.log.info("%s %s in %s", upd.name, status, target)

        if changes == ("ensure",):
            ctx.report_change(upd)
        else:
            for attr in changes:
                ctx.report_change(upd, attr)
        return UpdateResult(idx, upd.name, status, target=target, changes=changes)

    @staticmethod
    def _desired(name: str, user: str, should: Dict[str, Any], observed: Optional[KeyRecord]) -> KeyRecord:
        base = observed.to_dict() if observed is not None else {}
        merged = {**base, **{k: v for k, v in should.items() if v is not None}}
        merged.update(name=name, user=user, ensure=PRESENT)
        desired = KeyRecord.from_dict(merged)
        for attr in ("key", "type"):
            if not getattr(desired, attr):
                raise MissingAttribute(name, attr)
        if not KEY_TYPE_RE.fullmatch(str(desired.type)):
            raise InvalidValue(name, "type", f"unknown key type {desired.type!r}")
        if WHITESPACE_RE.search(str(desired.key)):
            raise InvalidValue(name, "key", "key material contains whitespace")
        for option in desired.options:
            label, value = split_option(option)
            if not OPTION_NAME_RE.fullmatch(label):
                raise InvalidValue(name, "options", f"malformed option {option!r}")
            if value is not None and LINE_BREAK_RE.search(value):
                raise InvalidValue(name, "options", f"option {label} contains a line break")
        return desired

    @staticmethod
    def _check_name(name: str) -> None:
        """The name is stored as the line comment; it must read back exactly as written."""
        if not isinstance(name, str) or not name.strip():
            raise InvalidValue(str(name), "name", "empty")
        if LINE_BREAK_RE.search(name):
            raise InvalidValue(name, "name", "contains a line break")
        if name != name.strip():
            raise InvalidValue(name, "name", "leading or trailing whitespace")

    @staticmethod
    def _append(out: SetResult, res: UpdateResult) -> None:
        out.results.append(res)
        out.counts[res.status] = out.counts.get(res.status, 0) + 1
