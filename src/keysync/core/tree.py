"""
Structured tree editor.

Files are parsed by a lens into an addressable tree rooted at /files, edited
through path-addressed operations, and written back on `save()`. Untouched
lines keep their original text byte for byte; only nodes that were changed
(or newly moved in) are re-rendered by the lens.

Operations:
  - load(patterns)           parse every file matching the globs into one tree
  - match(path)              concrete paths of every node a TreePath selects
  - build(scratch, value)    detached node, invisible to match() until moved
  - move(handle, dest)       attach a detached node; replaces a single occupant in place
  - remove(path)             drop matching nodes and their children
  - save()                   write back changed files (atomic rename)

Insertion is two-phase (build, then move) so a partially populated entry is
never part of the live tree.
"""

from __future__ import annotations

import glob
import logging
import os
import stat
import tempfile
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Protocol

from .errors import KeySyncError, ParseError, PathError, WriteError
from .paths import Segment, TreePath, file_path


class Node:
    """One labelled tree node with an optional scalar value and ordered children."""

    __slots__ = ("label", "value", "children", "parent", "raw", "eol", "dirty")

    def __init__(
        self,
        label: str,
        value: Optional[str] = None,
        *,
        raw: Optional[str] = None,
        eol: str = "\n",
    ) -> None:
        self.label = label
        self.value = value
        self.children: List[Node] = []
        self.parent: Optional[Node] = None
        # Original line text for nodes that came from a file
        self.raw = raw
        self.eol = eol
        self.dirty = False

    def add(self, label: str, value: Optional[str] = None) -> "Node":
        child = Node(label, value)
        child.parent = self
        self.children.append(child)
        self.touch()
        return child

    def set_value(self, value: Optional[str]) -> None:
        self.value = value
        self.touch()

    def first(self, label: str) -> Optional["Node"]:
        for c in self.children:
            if c.label == label:
                return c
        return None

    def value_of(self, label: str) -> Optional[str]:
        c = self.first(label)
        return c.value if c is not None else None

    def touch(self) -> None:
        node: Optional[Node] = self
        while node is not None:
            node.dirty = True
            node = node.parent

    def clean(self) -> None:
        self.dirty = False
        for c in self.children:
            c.clean()

    def __repr__(self) -> str:
        return f"Node({self.label!r}, {self.value!r}, children={len(self.children)})"


class FileNode(Node):
    """Root of one parsed file; its children are the file's lines."""

    __slots__ = ("source", "original", "existed")

    def __init__(self, label: str, source: str, original: str, existed: bool) -> None:
        super().__init__(label)
        self.source = source
        self.original = original
        self.existed = existed


class Lens(Protocol):
    """Grammar for one file format: text -> line nodes, file node -> text."""

    name: str

    def parse(self, text: str, source: str) -> List[Node]:
        ...

    def render(self, file_node: FileNode) -> str:
        ...


class Tree:
    """An addressable tree over one or more parsed files."""

    def __init__(self, lens: Lens, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.lens = lens
        self.root = Node("")
        self.errors: Dict[str, KeySyncError] = {}
        self.log = logger or logging.getLogger("ksync.tree")
        self._detached: Dict[str, Node] = {}

    # ----- loading ---------------------------------------------------------

    def read(self, filename: str, *, missing_ok: bool = False) -> FileNode:
        """Parse `filename` and attach it. Absent files give an empty skeleton when missing_ok."""
        path = os.path.abspath(filename)
        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                text = f.read()
            existed = True
        except FileNotFoundError:
            if not missing_ok:
                raise
            text, existed = "", False
        except UnicodeDecodeError as e:
            raise ParseError(path, 0, "", f"not valid UTF-8 ({e.reason})") from e
        except OSError as e:
            raise ParseError(path, 0, "", f"cannot read file: {e.strerror or e}") from e

        lines = self.lens.parse(text, path)

        fpath = file_path(path)
        parent = self._ensure(fpath.parent)
        fnode = FileNode(fpath.last.label, path, text, existed)
        for line in lines:
            line.parent = fnode
            fnode.children.append(line)
        fnode.clean()

        for i, c in enumerate(parent.children):
            if c.label == fnode.label:
                fnode.parent = parent
                parent.children[i] = fnode
                break
        else:
            fnode.parent = parent
            parent.children.append(fnode)
        self.log.debug("Loaded %s (%d lines, existed=%s)", path, len(lines), existed)
        return fnode

    def _ensure(self, path: TreePath) -> Node:
        node = self.root
        for seg in path.segments:
            nxt = node.first(seg.label)
            if nxt is None:
                nxt = Node(seg.label)
                nxt.parent = node
                node.children.append(nxt)
            node = nxt
        return node

    def files(self) -> List[FileNode]:
        out: List[FileNode] = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            if isinstance(node, FileNode):
                out.append(node)
                continue
            stack.extend(reversed(node.children))
        return out

    # ----- addressing ------------------------------------------------------

    def nodes(self, path: TreePath) -> List[Node]:
        current = [self.root]
        for seg in path.segments:
            nxt: List[Node] = []
            for node in current:
                nxt.extend(self._select(node, seg))
            current = nxt
            if not current:
                break
        return current

    @staticmethod
    def _select(node: Node, seg: Segment) -> List[Node]:
        found = [c for c in node.children if seg.accepts(c.label)]
        if seg.where is not None:
            child, value = seg.where
            found = [
                c for c in found
                if any(g.label == child and g.value == value for g in c.children)
            ]
        if seg.index is not None:
            found = found[seg.index - 1:seg.index]
        return found

    def match(self, path: TreePath) -> List[TreePath]:
        return [self.path_of(n) for n in self.nodes(path)]

    def get(self, path: TreePath) -> Optional[Node]:
        found = self.nodes(path)
        if len(found) > 1:
            raise PathError(f"{path} matches {len(found)} nodes")
        return found[0] if found else None

    def exists(self, path: TreePath) -> bool:
        return bool(self.nodes(path))

    def path_of(self, node: Node) -> TreePath:
        segs: List[Segment] = []
        cur = node
        while cur.parent is not None:
            siblings = [c for c in cur.parent.children if c.label == cur.label]
            pos = next(i for i, c in enumerate(siblings, start=1) if c is cur)
            segs.append(Segment(cur.label, index=pos))
            cur = cur.parent
        if cur is not self.root:
            raise PathError(f"{node!r} is not attached to this tree")
        return TreePath(tuple(reversed(segs)))

    # ----- editing ---------------------------------------------------------

    def build(self, scratch: str, value: Optional[str] = None) -> Node:
        """Create a detached node under the scratch name `scratch`."""
        handle = Node(scratch, value)
        self._detached[scratch] = handle
        return handle

    def move(self, handle: Node, dest: TreePath) -> TreePath:
        """
        Attach a detached node at `dest`. The last segment gives the label.
        A single existing occupant is replaced at its position; a new slot is
        appended under the destination's parent.
        """
        if not any(h is handle for h in self._detached.values()):
            raise PathError("move() needs a handle returned by build()")
        last = dest.last
        if last.wildcard:
            raise PathError(f"Cannot move onto a wildcard path: {dest}")

        parents = self.nodes(dest.parent)
        if len(parents) != 1:
            raise PathError(f"Destination parent {dest.parent} matches {len(parents)} nodes")
        parent = parents[0]

        occupants = self._select(parent, last)
        if len(occupants) > 1:
            raise PathError(f"Destination {dest} matches {len(occupants)} nodes")

        self._detached = {k: v for k, v in self._detached.items() if v is not handle}
        handle.label = last.label
        handle.parent = parent
        if occupants:
            old = occupants[0]
            pos = next(i for i, c in enumerate(parent.children) if c is old)
            handle.eol = old.eol
            parent.children[pos] = handle
            old.parent = None
        else:
            parent.children.append(handle)
        handle.touch()
        return self.path_of(handle)

    def remove(self, path: TreePath) -> int:
        found = self.nodes(path)
        if not found:
            raise PathError(f"Nothing to remove at {path}")
        for node in found:
            parent = node.parent
            if parent is None:
                raise PathError("Cannot remove the tree root")
            parent.children = [c for c in parent.children if c is not node]
            node.parent = None
            parent.touch()
        return len(found)

    # ----- persistence -----------------------------------------------------

    def render(self, fnode: FileNode) -> str:
        return self.lens.render(fnode)

    def save(self) -> List[str]:
        """Write back every changed file. Returns the paths actually written."""
        written: List[str] = []
        for fnode in self.files():
            if not fnode.dirty:
                continue
            text = self.render(fnode)
            if text == fnode.original:
                fnode.clean()
                continue
            _atomic_write(fnode.source, text)
            fnode.original = text
            fnode.existed = True
            fnode.clean()
            written.append(fnode.source)
            self.log.info("Saved %s", fnode.source)
        return written

    def discard(self) -> None:
        self._detached.clear()
        self.root.children = []


def _atomic_write(path: str, text: str) -> None:
    directory = os.path.dirname(path) or "."
    try:
        if not os.path.isdir(directory):
            os.makedirs(directory, mode=0o700, exist_ok=True)
        try:
            st: Optional[os.stat_result] = os.stat(path)
        except FileNotFoundError:
            st = None
        fd, tmp = tempfile.mkstemp(prefix=".keysync-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(text)
            os.chmod(tmp, stat.S_IMODE(st.st_mode) if st is not None else 0o600)
            if st is not None and hasattr(os, "geteuid") and os.geteuid() == 0:
                os.chown(tmp, st.st_uid, st.st_gid)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except OSError as e:
        raise WriteError(path, e) from e


class TreeEditor:
    """Entry point for loading trees and opening one-file edit transactions."""

    def __init__(self, lens: Lens, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.lens = lens
        self.log = logger or logging.getLogger("ksync.tree")

    def load(self, patterns: Iterable[str], *, collect_errors: bool = False) -> Tree:
        """
        Parse every regular file matching `patterns` into a single tree.

        A malformed file raises ParseError, unless collect_errors is set: the
        error is then stored in `tree.errors[path]` and the file left out.
        """
        tree = Tree(self.lens, logger=self.log)
        seen = set()
        for pattern in patterns:
            for filename in sorted(glob.glob(pattern)):
                path = os.path.abspath(filename)
                if path in seen or not os.path.isfile(path):
                    continue
                seen.add(path)
                try:
                    tree.read(path)
                except ParseError as e:
                    if not collect_errors:
                        raise
                    tree.errors[path] = e
                    self.log.warning("Parse error, file left out: %s", e)
        return tree

    @contextmanager
    def transaction(self, filename: str) -> Iterator[Tree]:
        """
        Scoped edit of exactly one file. Nothing reaches disk unless the
        caller invokes `tree.save()`; the tree is discarded on exit.
        """
        tree = Tree(self.lens, logger=self.log)
        tree.read(filename, missing_ok=True)
        try:
            yield tree
        finally:
            tree.discard()


__all__ = ["Node", "FileNode", "Lens", "Tree", "TreeEditor"]
