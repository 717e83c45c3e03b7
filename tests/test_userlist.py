import os
import stat

import pytest

from authsync.errors import WriteError
from authsync.models import AuthFileEntry, Delta, EncryptionScheme
from authsync.userlist import HEADER, UserlistSynchronizer, parse_line, parse_text, render

from conftest import SCRAM_ALICE, SCRAM_BOB_1, SCRAM_BOB_2, principal


def _sync(path, scheme=EncryptionScheme.SCRAM, **kw):
    return UserlistSynchronizer(path, scheme, **kw)


def _seed(path, entries):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render(entries), encoding="utf-8")


def test_parse_ignores_comments_blanks_and_garbage():
    text = '# header\n\n"alice" "SCRAM-SHA-256$x"\nnot a line\n  "bob"   "md5abc"  \n'
    assert parse_text(text) == {"alice": "SCRAM-SHA-256$x", "bob": "md5abc"}


def test_quotes_are_doubled_and_round_trip():
    entry = AuthFileEntry('we"ird', "p")
    assert entry.render() == '"we""ird" "p"'
    assert parse_line(entry.render()) == entry


def test_bootstrap_writes_exactly_the_added_principal(userlist_path):
    result = _sync(userlist_path).apply(Delta(added=(principal("alice", SCRAM_ALICE),)))
    assert result.updated and result.added == ["alice"]
    assert userlist_path.read_text() == HEADER + f'"alice" "{SCRAM_ALICE}"\n'


def test_rotation_replaces_the_hash(userlist_path):
    _seed(userlist_path, {"bob": SCRAM_BOB_1})
    result = _sync(userlist_path).apply(Delta(modified=(principal("bob", SCRAM_BOB_2),)))
    assert result.changed == ["bob"]
    assert parse_text(userlist_path.read_text()) == {"bob": SCRAM_BOB_2}


def test_deactivation_removes_the_entry(userlist_path):
    _seed(userlist_path, {"carol": SCRAM_ALICE, "alice": SCRAM_ALICE})
    result = _sync(userlist_path).apply(
        Delta(modified=(principal("carol", SCRAM_ALICE, can_login=False),))
    )
    assert result.removed == ["carol"]
    assert parse_text(userlist_path.read_text()) == {"alice": SCRAM_ALICE}


def test_removal_from_catalog_removes_the_entry(userlist_path):
    _seed(userlist_path, {"dave": SCRAM_ALICE})
    result = _sync(userlist_path).apply(Delta(deleted=(principal("dave", SCRAM_ALICE),)))
    assert result.updated and result.removed == ["dave"]
    assert parse_text(userlist_path.read_text()) == {}


def test_empty_hash_and_foreign_scheme_are_skipped(userlist_path):
    _seed(userlist_path, {"erin": SCRAM_ALICE})
    delta = Delta(
        added=(principal("nopass", ""), principal("legacy", "md5" + "a" * 32)),
        modified=(principal("erin", "md5" + "b" * 32),),
    )
    result = _sync(userlist_path).apply(delta)
    assert not result.updated
    assert {u for u, _ in result.skipped} == {"nopass", "legacy", "erin"}
    # the existing entry is left untouched rather than replaced with a bad one
    assert parse_text(userlist_path.read_text()) == {"erin": SCRAM_ALICE}


def test_md5_scheme_accepts_md5_hashes(userlist_path):
    md5 = "md5" + "c" * 32
    result = _sync(userlist_path, EncryptionScheme.MD5).apply(
        Delta(added=(principal("frank", md5), principal("gina", SCRAM_ALICE)))
    )
    assert parse_text(userlist_path.read_text()) == {"frank": md5}
    assert result.skipped[0][0] == "gina"


def test_unchanged_delta_is_a_noop_and_does_not_touch_the_file(userlist_path):
    _seed(userlist_path, {"alice": SCRAM_ALICE})
    before = userlist_path.read_bytes()
    mtime = userlist_path.stat().st_mtime_ns
    delta = Delta(added=(principal("alice", SCRAM_ALICE),), deleted=(principal("ghost", "x"),))
    result = _sync(userlist_path).apply(delta)
    assert not result.updated
    assert userlist_path.read_bytes() == before
    assert userlist_path.stat().st_mtime_ns == mtime
    assert not list(userlist_path.parent.glob("userlist.txt.bak.*"))


def test_applying_the_same_delta_twice_is_idempotent(userlist_path):
    delta = Delta(added=(principal("alice", SCRAM_ALICE),))
    sync = _sync(userlist_path)
    assert sync.apply(delta).updated
    first = userlist_path.read_bytes()
    assert not sync.apply(delta).updated
    assert userlist_path.read_bytes() == first


def test_backup_is_taken_before_overwrite(userlist_path):
    _seed(userlist_path, {"bob": SCRAM_BOB_1})
    original = userlist_path.read_bytes()
    result = _sync(userlist_path).apply(Delta(modified=(principal("bob", SCRAM_BOB_2),)))
    assert result.backup is not None
    assert result.backup.read_bytes() == original


def test_old_backups_are_pruned(userlist_path):
    _seed(userlist_path, {})
    sync = _sync(userlist_path, backup_keep=2)
    for i in range(4):
        sync.apply(Delta(added=(principal(f"u{i}", SCRAM_ALICE),)))
    assert len(list(userlist_path.parent.glob("userlist.txt.bak.*"))) == 2


def test_result_file_is_not_world_readable(userlist_path):
    _sync(userlist_path).apply(Delta(added=(principal("alice", SCRAM_ALICE),)))
    assert stat.S_IMODE(userlist_path.stat().st_mode) == 0o640


def test_crash_before_rename_leaves_original_intact(userlist_path, monkeypatch):
    _seed(userlist_path, {"bob": SCRAM_BOB_1})
    original = userlist_path.read_bytes()

    def boom(src, dst):
        raise OSError("disk on fire")

    monkeypatch.setattr(os, "replace", boom)
    with pytest.raises(WriteError):
        _sync(userlist_path).apply(Delta(modified=(principal("bob", SCRAM_BOB_2),)))
    monkeypatch.undo()

    assert userlist_path.read_bytes() == original
    leftovers = [p for p in userlist_path.parent.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


def test_ensure_exists_creates_header_only_file(userlist_path):
    sync = _sync(userlist_path)
    assert sync.ensure_exists()
    assert userlist_path.read_text() == HEADER
    assert not sync.ensure_exists()


def test_undecodable_lines_are_dropped_not_fatal(userlist_path):
    userlist_path.parent.mkdir(parents=True)
    userlist_path.write_bytes(b'"b\xe9b" "md5zz"\n"carol" "' + SCRAM_BOB_1.encode() + b'"\n')
    sync = _sync(userlist_path)
    assert sync.read() == {"carol": SCRAM_BOB_1}

    result = sync.apply(Delta(added=(principal("alice", SCRAM_ALICE),)))
    assert result.updated
    assert parse_text(userlist_path.read_text()) == {"alice": SCRAM_ALICE, "carol": SCRAM_BOB_1}
