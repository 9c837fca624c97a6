from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import List, Optional

ROOT_USER = "root"


@dataclass(frozen=True)
class KeyFileLayout:
    """
    Where key files live: <home_root>/<user>/<key_file> for every account,
    and a fixed path for the superuser.
    """
    home_root: str = "/home"
    key_file: str = ".ssh/authorized_keys"
    root_key_file: str = "/root/.ssh/authorized_keys"

    def __post_init__(self) -> None:
        if not posixpath.isabs(self.home_root):
            raise ValueError(f"home_root must be absolute: {self.home_root}")
        if not posixpath.isabs(self.root_key_file):
            raise ValueError(f"root_key_file must be absolute: {self.root_key_file}")
        if posixpath.isabs(self.key_file) or not self.key_file.strip("/"):
            raise ValueError(f"key_file must be relative to the home directory: {self.key_file}")

    @property
    def home_pattern(self) -> str:
        return posixpath.join(posixpath.normpath(self.home_root), "*", posixpath.normpath(self.key_file))

    def patterns(self) -> List[str]:
        return [self.home_pattern, posixpath.normpath(self.root_key_file)]

    def path_for(self, user: str) -> str:
        if user == ROOT_USER:
            return posixpath.normpath(self.root_key_file)
        if not user or "/" in user or user in (".", ".."):
            raise ValueError(f"Invalid account name: {user!r}")
        return posixpath.join(posixpath.normpath(self.home_root), user, posixpath.normpath(self.key_file))

    def user_for(self, filename: str) -> Optional[str]:
        """Account owning `filename`, or None when it is outside the convention."""
        path = posixpath.normpath(filename)
        if path == posixpath.normpath(self.root_key_file):
            return ROOT_USER
        rel = posixpath.relpath(path, posixpath.normpath(self.home_root))
        user, _, tail = rel.partition("/")
        if user in ("", ".", "..") or tail != posixpath.normpath(self.key_file):
            return None
        return user
