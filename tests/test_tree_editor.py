import os
import stat

import pytest

from keysync.core.errors import ParseError, PathError, WriteError
from keysync.core.lens import AuthorizedKeysLens
from keysync.core.paths import TreePath, file_path
from keysync.core.tree import TreeEditor

THREE = (
    "ssh-rsa AAAAB3Nza-one  first@host\n"
    "# keep me\n"
    "ssh-rsa AAAAB3Nza-two second@host\n"
    "ssh-ed25519 AAAAC3Nz-three third@host\n"
)


def _write(path, text, mode=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(text.encode("utf-8"))
    if mode is not None:
        os.chmod(path, mode)
    return path


def _editor():
    return TreeEditor(AuthorizedKeysLens())


def _entry(tree, name, key, ktype="ssh-rsa", options=()):
    handle = tree.build("new", key)
    if options:
        opts = handle.add("options")
        for label, value in options:
            opts.add(label, value)
    handle.add("type", ktype)
    handle.add("comment", name)
    return handle


def test_load_matches_accounts_with_wildcard(tmp_path):
    home = tmp_path / "home"
    _write(home / "alice" / ".ssh" / "authorized_keys", "ssh-rsa AAAA a1\n")
    _write(home / "bob" / ".ssh" / "authorized_keys", "ssh-rsa AAAA b1\nssh-rsa AAAA b2\n")
    (home / "nobody").mkdir()

    pattern = str(home / "*" / ".ssh" / "authorized_keys")
    tree = _editor().load([pattern])

    files = tree.match(file_path(pattern))
    assert [p.strip(TreePath.parse("/files")) for p in files] == [
        str(home / "alice" / ".ssh" / "authorized_keys"),
        str(home / "bob" / ".ssh" / "authorized_keys"),
    ]
    keys = tree.match(file_path(pattern).child("key"))
    assert len(keys) == 3
    assert str(keys[2]).endswith("/bob[1]/.ssh[1]/authorized_keys[1]/key[2]")


def test_load_raises_or_collects_parse_errors(tmp_path):
    good = _write(tmp_path / "h" / "good" / "keys", "ssh-rsa AAAA ok\n")
    bad = _write(tmp_path / "h" / "bad" / "keys", "not a key line\n")
    pattern = str(tmp_path / "h" / "*" / "keys")

    with pytest.raises(ParseError):
        _editor().load([pattern])

    tree = _editor().load([pattern], collect_errors=True)
    assert list(tree.errors) == [str(bad)]
    assert [f.source for f in tree.files()] == [str(good)]


def test_match_by_comment_is_literal(tmp_path):
    name = 'odd/name[1]="x"'
    f = _write(tmp_path / "keys", f"ssh-rsa AAAA {name}\nssh-rsa AAAA other\n")
    with _editor().transaction(str(f)) as tree:
        hits = tree.match(file_path(str(f)).child("key", where=("comment", name)))
        assert len(hits) == 1
        assert tree.nodes(hits[0])[0].value_of("comment") == name
        assert tree.match(file_path(str(f)).child("key", where=("comment", "odd"))) == []


def test_built_node_is_invisible_until_moved(tmp_path):
    f = _write(tmp_path / "keys", THREE)
    slot = file_path(str(f)).child("key", where=("comment", "fourth@host"))
    with _editor().transaction(str(f)) as tree:
        handle = _entry(tree, "fourth@host", "AAAAnew")
        assert tree.match(slot) == []
        assert len(tree.match(file_path(str(f)).child("key"))) == 3

        tree.move(handle, slot)
        assert len(tree.match(slot)) == 1
        tree.save()

    assert f.read_text(encoding="utf-8") == THREE + "ssh-rsa AAAAnew fourth@host\n"


def test_move_replaces_single_occupant_in_place(tmp_path):
    f = _write(tmp_path / "keys", THREE)
    slot = file_path(str(f)).child("key", where=("comment", "second@host"))
    with _editor().transaction(str(f)) as tree:
        handle = _entry(tree, "second@host", "AAAAC3Nz-rotated", "ssh-ed25519", [("no-pty", None)])
        tree.move(handle, slot)
        assert tree.save() == [str(f)]

    assert f.read_text(encoding="utf-8") == (
        "ssh-rsa AAAAB3Nza-one  first@host\n"
        "# keep me\n"
        "no-pty ssh-ed25519 AAAAC3Nz-rotated second@host\n"
        "ssh-ed25519 AAAAC3Nz-three third@host\n"
    )


def test_move_rejects_ambiguous_destination_and_foreign_handles(tmp_path):
    f = _write(tmp_path / "keys", "ssh-rsa AAAA dup\nssh-rsa BBBB dup\n")
    slot = file_path(str(f)).child("key", where=("comment", "dup"))
    with _editor().transaction(str(f)) as tree:
        with pytest.raises(PathError):
            tree.move(_entry(tree, "dup", "CCCC"), slot)
        stray = tree.nodes(file_path(str(f)).child("key", index=1))[0]
        with pytest.raises(PathError):
            tree.move(stray, file_path(str(f)).child("key", where=("comment", "x")))


def test_remove_deletes_entry_and_missing_path_raises(tmp_path):
    f = _write(tmp_path / "keys", THREE)
    base = file_path(str(f))
    with _editor().transaction(str(f)) as tree:
        assert tree.remove(base.child("key", where=("comment", "first@host"))) == 1
        with pytest.raises(PathError):
            tree.remove(base.child("key", where=("comment", "first@host")))
        tree.save()

    assert f.read_text(encoding="utf-8") == (
        "# keep me\n"
        "ssh-rsa AAAAB3Nza-two second@host\n"
        "ssh-ed25519 AAAAC3Nz-three third@host\n"
    )


def test_transaction_without_save_leaves_file_alone(tmp_path):
    f = _write(tmp_path / "keys", THREE)
    with _editor().transaction(str(f)) as tree:
        tree.remove(file_path(str(f)).child("key"))
        tree.move(_entry(tree, "x", "AAAA"), file_path(str(f)).child("key", where=("comment", "x")))
    assert f.read_bytes() == THREE.encode("utf-8")


def test_append_after_last_line_without_newline(tmp_path):
    f = _write(tmp_path / "keys", "ssh-rsa AAAA one")
    with _editor().transaction(str(f)) as tree:
        tree.move(_entry(tree, "two", "BBBB"), file_path(str(f)).child("key", where=("comment", "two")))
        tree.save()
    assert f.read_text(encoding="utf-8") == "ssh-rsa AAAA one\nssh-rsa BBBB two\n"


def test_touched_child_rerenders_only_that_line(tmp_path):
    f = _write(tmp_path / "keys", THREE)
    with _editor().transaction(str(f)) as tree:
        entry = tree.nodes(file_path(str(f)).child("key", where=("comment", "first@host")))[0]
        entry.first("type").set_value("ssh-dss")
        tree.save()
    lines = f.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "ssh-dss AAAAB3Nza-one first@host"
    assert lines[1:] == THREE.splitlines()[1:]


def test_save_keeps_existing_mode(tmp_path):
    f = _write(tmp_path / "keys", THREE, mode=0o640)
    with _editor().transaction(str(f)) as tree:
        tree.remove(file_path(str(f)).child("key", index=1))
        tree.save()
    assert stat.S_IMODE(os.stat(f).st_mode) == 0o640


def test_new_file_and_ssh_dir_are_private(tmp_path):
    f = tmp_path / "home" / "carol" / ".ssh" / "authorized_keys"
    with _editor().transaction(str(f)) as tree:
        assert tree.files()[0].existed is False
        tree.move(_entry(tree, "c", "AAAA"), file_path(str(f)).child("key", where=("comment", "c")))
        tree.save()
    assert f.read_text(encoding="utf-8") == "ssh-rsa AAAA c\n"
    assert stat.S_IMODE(os.stat(f).st_mode) == 0o600
    assert stat.S_IMODE(os.stat(f.parent).st_mode) == 0o700


def test_untouched_missing_file_is_not_created(tmp_path):
    f = tmp_path / "nope" / "authorized_keys"
    with _editor().transaction(str(f)) as tree:
        assert tree.save() == []
    assert not f.exists()


def _leftovers(directory):
    return [p.name for p in directory.iterdir() if p.name.startswith(".keysync-")]


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root ignores directory permissions")
def test_save_into_read_only_directory_raises_write_error(tmp_path):
    f = _write(tmp_path / ".ssh" / "authorized_keys", THREE)
    os.chmod(f.parent, 0o500)
    try:
        with _editor().transaction(str(f)) as tree:
            tree.remove(file_path(str(f)).child("key", index=1))
            with pytest.raises(WriteError) as exc:
                tree.save()
        assert exc.value.path == str(f)
        assert _leftovers(f.parent) == []
    finally:
        os.chmod(f.parent, 0o700)
    assert f.read_text(encoding="utf-8") == THREE


def test_failed_rename_removes_temp_file(tmp_path, monkeypatch):
    f = _write(tmp_path / "keys", THREE)

    def _fail(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(os, "replace", _fail)
    with _editor().transaction(str(f)) as tree:
        tree.remove(file_path(str(f)).child("key", index=1))
        with pytest.raises(WriteError) as exc:
            tree.save()
    assert "No space left on device" in str(exc.value)
    assert _leftovers(tmp_path) == []
    assert f.read_text(encoding="utf-8") == THREE
