"""
Record mapper: key entries in the tree <-> flat KeyRecord resources.

Both directions are side-effect free apart from build_entry(), which only
creates a detached node (nothing becomes visible until Tree.move()).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .layout import KeyFileLayout
from .lens import ENTRY
from .paths import FILES, TreePath
from .tree import Node, Tree

PRESENT = "present"
ABSENT = "absent"
ENSURE_VALUES = (PRESENT, ABSENT)

COMPARED_ATTRIBUTES = ("key", "type", "options")


@dataclass
class KeyRecord:
    name: str
    ensure: str = PRESENT
    key: Optional[str] = None
    type: Optional[str] = None
    user: Optional[str] = None
    options: List[str] = field(default_factory=list)
    target: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ensure == ABSENT:
            return {"name": self.name, "ensure": ABSENT}
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyRecord":
        opts = data.get("options") or []
        if isinstance(opts, str):
            opts = [opts]
        return cls(
            name=str(data["name"]),
            ensure=str(data.get("ensure") or PRESENT),
            key=data.get("key"),
            type=data.get("type"),
            user=data.get("user"),
            options=[str(o) for o in opts],
            target=data.get("target"),
        )


def split_option(option: str) -> Tuple[str, Optional[str]]:
    label, sep, value = option.partition("=")
    return label, (value if sep else None)


def join_option(label: str, value: Optional[str]) -> str:
    return label if value is None else f"{label}={value}"


def entry_path(file_tree_path: TreePath, name: str) -> TreePath:
    """Name-addressed slot of an entry inside one file."""
    return file_tree_path.child(ENTRY, where=("comment", name))


def record_from_entry(entry: Node, file_tree_path: TreePath, layout: KeyFileLayout) -> Optional[KeyRecord]:
    """Map one key entry to a record; entries without a comment carry no name and give None."""
    name = entry.value_of("comment")
    if not name:
        return None
    target = file_tree_path.strip(FILES)
    options: List[str] = []
    opts = entry.first("options")
    if opts is not None:
        options = [join_option(o.label, o.value) for o in opts.children]
    return KeyRecord(
        name=name,
        ensure=PRESENT,
        key=entry.value,
        type=entry.value_of("type"),
        user=layout.user_for(target),
        options=options,
        target=target,
    )


def build_entry(tree: Tree, record: KeyRecord, scratch: str = "keysync-new") -> Node:
    """Build a detached entry for a present record: options, then type, then comment."""
    handle = tree.build(scratch, record.key)
    if record.options:
        opts = handle.add("options")
        for option in record.options:
            label, value = split_option(option)
            opts.add(label, value)
    handle.add("type", record.type)
    handle.add("comment", record.name)
    return handle


def changed_attributes(observed: KeyRecord, desired: KeyRecord) -> Tuple[str, ...]:
    """Attributes that differ; options are compared without regard to order."""
    changed = []
    for attr in COMPARED_ATTRIBUTES:
        a, b = getattr(observed, attr), getattr(desired, attr)
        if attr == "options":
            a, b = sorted(a or []), sorted(b or [])
        if a != b:
            changed.append(attr)
    return tuple(changed)
