"""
Structured tree paths.

A TreePath is a tuple of Segments. Each segment names a child label (or any
label, when wildcard) and may narrow the candidates with a child-value
predicate and/or a 1-based position. Values are never interpolated into a
path string, so a name containing '/', ']' or quotes cannot change what a
path addresses.

    FILES.join_file("/home/alice/.ssh/authorized_keys").child("key", where=("comment", "bob@host"))
    -> /files/home/alice/.ssh/authorized_keys/key[comment="bob@host"]
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class Segment:
    label: str
    wildcard: bool = False
    index: Optional[int] = None
    where: Optional[Tuple[str, str]] = None

    def accepts(self, label: str) -> bool:
        return self.wildcard or label == self.label

    def __str__(self) -> str:
        text = "*" if self.wildcard else self.label
        if self.where is not None:
            child, value = self.where
            escaped = value.replace("\\", "\\\\").replace('"', '\\"')
            text += f'[{child}="{escaped}"]'
        if self.index is not None:
            text += f"[{self.index}]"
        return text


ANY = Segment("*", wildcard=True)


@dataclass(frozen=True)
class TreePath:
    segments: Tuple[Segment, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "TreePath":
        """Parse a plain '/a/*/c' path. Predicates are not supported here."""
        segs = []
        for part in text.split("/"):
            if not part:
                continue
            segs.append(ANY if part == "*" else Segment(part))
        return cls(tuple(segs))

    def child(
        self,
        label: str,
        *,
        index: Optional[int] = None,
        where: Optional[Tuple[str, str]] = None,
    ) -> "TreePath":
        if index is not None and index < 1:
            raise ValueError(f"Path positions are 1-based, got {index}")
        return TreePath(self.segments + (Segment(label, index=index, where=where),))

    def any(self) -> "TreePath":
        return TreePath(self.segments + (ANY,))

    def join(self, other: "TreePath") -> "TreePath":
        return TreePath(self.segments + other.segments)

    def join_file(self, filename: str) -> "TreePath":
        """Append the segments of an absolute file path or glob ('*' parts become wildcards)."""
        normalized = posixpath.normpath(filename)
        if not normalized.startswith("/"):
            raise ValueError(f"File paths must be absolute: {filename}")
        return self.join(TreePath.parse(normalized))

    @property
    def parent(self) -> "TreePath":
        if not self.segments:
            raise ValueError("The root path has no parent")
        return TreePath(self.segments[:-1])

    @property
    def last(self) -> Segment:
        if not self.segments:
            raise ValueError("The root path has no last segment")
        return self.segments[-1]

    @property
    def is_concrete(self) -> bool:
        return not any(s.wildcard for s in self.segments)

    def strip(self, prefix: "TreePath") -> str:
        """
        Return the remaining labels as an absolute '/'-joined string, after
        dropping `prefix`. Predicates on the remaining segments are ignored.
        """
        n = len(prefix.segments)
        head = [s.label for s in self.segments[:n]]
        if head != [s.label for s in prefix.segments]:
            raise ValueError(f"{self} is not under {prefix}")
        return "/" + "/".join(s.label for s in self.segments[n:])

    def __str__(self) -> str:
        return "/" + "/".join(str(s) for s in self.segments)


ROOT = TreePath()
FILES = ROOT.child("files")


def file_path(filename: str) -> TreePath:
    """Tree path of a file node (or of every file matching a glob)."""
    return FILES.join_file(filename)
