from datetime import datetime, timezone

import pytest

from authsync.acls import EligibilityChecker
from authsync.errors import ConnectivityError, PrivilegeError, SnapshotError
from authsync.extractor import HashExtractor
from authsync.models import EncryptionScheme
from authsync.snapshot import StateSnapshotter

from conftest import SCRAM_ALICE, SCRAM_BOB_1, md5_of


def _snapshotter(catalog, events, **kw):
    kw.setdefault("sleep", lambda s: None)
    return StateSnapshotter(catalog, EncryptionScheme.SCRAM, events=events, **kw)


@pytest.fixture()
def populated(catalog):
    return (
        catalog.add("alice", SCRAM_ALICE, valid_until=datetime(2030, 5, 1, tzinfo=timezone.utc))
        .add("bob", SCRAM_BOB_1, can_login=False)
        .add("nopass", "")
        .add("pg_monitor", "", can_login=False)
        .add("pg_signal_backend", "")
        .add("postgres_exporter", SCRAM_ALICE)
    )


def test_reserved_and_metrics_accounts_are_excluded(populated, events):
    snap = _snapshotter(populated, events).snapshot()
    assert [p.username for p in snap.principals] == ["alice", "bob", "nopass"]


@pytest.mark.parametrize("strategy", ["aggregate", "rows"])
def test_fields_are_typed(populated, events, strategy):
    snap = _snapshotter(populated, events, strategy=strategy).snapshot()
    alice = snap.as_map()["alice"]
    assert alice.password_hash == SCRAM_ALICE
    assert alice.can_login is True
    assert alice.valid_until == datetime(2030, 5, 1, tzinfo=timezone.utc)
    assert snap.as_map()["bob"].can_login is False
    assert snap.as_map()["nopass"].password_hash == ""


def test_both_strategies_agree(populated, events):
    agg = _snapshotter(populated, events, strategy="aggregate").snapshot()
    rows = _snapshotter(populated, events, strategy="rows").snapshot()
    assert [p.to_dict() | {"last_observed": None} for p in agg.principals] == [
        p.to_dict() | {"last_observed": None} for p in rows.principals
    ]


def test_connectivity_errors_are_retried_with_fixed_delay(populated, events):
    delays = []
    populated.unreachable = 2
    snap = _snapshotter(populated, events, retries=3, retry_delay=7, sleep=delays.append).snapshot()
    assert len(snap) == 3
    assert delays == [7, 7]


def test_retries_are_bounded(populated, events):
    delays = []
    populated.unreachable = 10
    with pytest.raises(ConnectivityError):
        _snapshotter(populated, events, retries=2, retry_delay=1, sleep=delays.append).snapshot()
    assert delays == [1, 1]
    assert populated.calls.count("aggregate") == 3


def test_privilege_errors_are_not_retried(populated, events):
    delays = []
    populated.denied.add("aggregate")
    with pytest.raises(PrivilegeError):
        _snapshotter(populated, events, sleep=delays.append).snapshot()
    assert delays == []


def test_invalid_record_aborts_the_whole_snapshot(catalog, events, monkeypatch):
    catalog.add("alice", SCRAM_ALICE)
    monkeypatch.setattr(
        catalog,
        "fetch_principals_json",
        lambda where, params: [
            {"username": "alice", "password_hash": SCRAM_ALICE, "can_login": True, "valid_until": None},
            {"username": "bob", "password_hash": "h", "can_login": "yes", "valid_until": None},
        ],
    )
    with pytest.raises(SnapshotError) as exc:
        _snapshotter(catalog, events).snapshot()
    assert exc.value.principal == "bob"


def test_duplicate_usernames_abort(catalog, events, monkeypatch):
    rec = {"username": "alice", "password_hash": SCRAM_ALICE, "can_login": True, "valid_until": None}
    monkeypatch.setattr(catalog, "fetch_principals_json", lambda where, params: [rec, dict(rec)])
    with pytest.raises(SnapshotError):
        _snapshotter(catalog, events).snapshot()


def test_infinity_expiry_means_no_expiry(catalog, events):
    catalog.add("alice", SCRAM_ALICE, valid_until="infinity")
    snap = _snapshotter(catalog, events).snapshot()
    assert snap.as_map()["alice"].valid_until is None


def test_custom_exclusions(populated, events):
    snap = _snapshotter(populated, events, eligibility=EligibilityChecker({"alice"})).snapshot()
    assert "alice" not in snap.as_map()
    assert "postgres_exporter" in snap.as_map()


def test_bootstrap_principal_is_normalized_through_extractor(catalog, events):
    catalog.encryption = "md5"
    catalog.add("postgres", md5_of("postgres", "s3cret")).add("bob", md5_of("bob", "pw"))
    snap = _snapshotter(
        catalog,
        events,
        extractor=HashExtractor(catalog, events),
        bootstrap_user="postgres",
        bootstrap_password="s3cret",
    ).snapshot()
    assert snap.as_map()["postgres"].password_hash.startswith("SCRAM-SHA-256$")
    # nobody else's password is ever touched
    assert snap.as_map()["bob"].password_hash == md5_of("bob", "pw")
    assert ("password", "bob") not in catalog.mutations


def test_unknown_strategy_is_rejected(catalog, events):
    with pytest.raises(ValueError):
        _snapshotter(catalog, events, strategy="psql")
