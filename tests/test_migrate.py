"""
Tests for the migration driver.

Tests cover:
- Selection filter (UDID set, last seen cut off)
- End-to-end delivery of Authenticate and TokenUpdate
- Dedup ledger skips across runs
- Per-record failure isolation
- User phase
- Dry run
"""

import logging
from datetime import datetime, timezone

import pytest

from conftest import StubRemote, days_ago, insert_raw
from mdmbridge.checkin import Authenticate, TokenUpdate, build_authenticate, decode_message, encode_message
from mdmbridge.config import Settings
from mdmbridge.delivery import DeliveryClient
from mdmbridge.errors import FatalPrecondition
from mdmbridge.ledger import DedupLedger, message_digest
from mdmbridge.migrate import (
    DEVICE_AUTHENTICATE,
    DEVICE_TOKEN_UPDATE,
    USER_TOKEN_UPDATE,
    Migrator,
    Outcome,
    SelectionFilter,
    run_migration,
)
from mdmbridge.records import RecordStore
from mdmbridge.schemas import DeviceRecord

PUSH = {"mdm_topic": "com.example.push", "token": "aabbcc", "push_magic": "magic1"}


def migrate(source_db, remote=None, ledger=None, selection=None):
    client = None
    if remote is not None:
        client = DeliveryClient("https://nano.example.com/migration", "k", transport=remote.transport)
    with RecordStore.open(source_db) as store:
        return Migrator(store, client=client, ledger=ledger, selection=selection).run()


def sent_messages(remote):
    return [decode_message(body) for body in remote.bodies]


class TestSelectionFilter:
    """Device selection."""

    def test_no_restriction(self):
        selection = SelectionFilter()

        assert selection.check(DeviceRecord(udid="B")) == (True, "")
        assert selection.active is False

    def test_udid_not_in_set(self):
        selection = SelectionFilter.from_options(udids="A")

        assert selection.check(DeviceRecord(udid="B")) == (False, "not in UDID set")
        assert selection.check(DeviceRecord(udid="A")) == (True, "")

    def test_udid_list_parsing(self):
        selection = SelectionFilter.from_options(udids="A, B,,C")

        assert selection.udids == frozenset({"A", "B", "C"})

    def test_cutoff(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        selection = SelectionFilter.from_options(days=30, now=now)

        old = DeviceRecord(udid="A", last_seen=datetime(2024, 4, 22))  # 40 days
        recent = DeviceRecord(udid="B", last_seen=datetime(2024, 5, 22))  # 10 days

        ok, reason = selection.check(old)
        assert ok is False
        assert reason == "LastSeen of 2024-04-22 before cut off"
        assert selection.check(recent) == (True, "")

    def test_cutoff_without_last_seen(self):
        selection = SelectionFilter.from_options(days=30)

        ok, _ = selection.check(DeviceRecord(udid="A"))
        assert ok is False

    def test_zero_days_disables_cutoff(self):
        assert SelectionFilter.from_options(days=0).cutoff is None


class TestEndToEnd:
    """Full runs against a stub remote."""

    def test_device_authenticate_and_token_update(self, d1_source_db, remote, caplog):
        caplog.set_level(logging.INFO)

        report = migrate(d1_source_db, remote=remote)

        messages = sent_messages(remote)
        assert [type(m) for m in messages] == [Authenticate, TokenUpdate]
        assert messages[0].udid == "D1"
        assert messages[0].serial_number == "SN1"
        assert messages[1].token == b"\xaa\xbb\xcc"
        assert messages[1].push_magic == "magic1"
        assert all(r.method == "PUT" for r in remote.requests)

        assert [r.kind for r in report.by_outcome(Outcome.DELIVERED)] == [
            DEVICE_AUTHENTICATE,
            DEVICE_TOKEN_UPDATE,
        ]
        assert "sent device Authenticate for: UDID=D1" in caplog.messages
        assert "sent device TokenUpdate for: UDID=D1" in caplog.messages

    def test_rerun_skips_seen_authenticate(self, d1_source_db, tmp_path, caplog):
        caplog.set_level(logging.INFO)
        first = StubRemote()
        migrate(d1_source_db, remote=first)
        auth_digest = message_digest(first.bodies[0])

        with DedupLedger.open(str(tmp_path / "track.db")) as ledger:
            ledger.mark_sent(auth_digest, "device_authenticate D1 earlier")
            second = StubRemote()
            report = migrate(d1_source_db, remote=second, ledger=ledger)

        assert [type(m) for m in sent_messages(second)] == [TokenUpdate]
        assert "skipping (seen) device Authenticate for: UDID=D1" in caplog.messages
        skipped = report.by_outcome(Outcome.SKIPPED)
        assert [(r.kind, r.reason) for r in skipped] == [(DEVICE_AUTHENTICATE, "seen")]

    def test_ledger_records_deliveries(self, d1_source_db, remote, tmp_path):
        path = str(tmp_path / "track.db")
        with DedupLedger.open(path) as ledger:
            migrate(d1_source_db, remote=remote, ledger=ledger)
            assert ledger.count() == 2
            audit = ledger.audit_for(message_digest(remote.bodies[0]))

        assert audit.startswith("device_authenticate D1 ")

        # a second run with the same ledger sends nothing
        again = StubRemote()
        with DedupLedger.open(path) as ledger:
            report = migrate(d1_source_db, remote=again, ledger=ledger)

        assert again.requests == []
        assert report.counts()["skipped"] == 2

    def test_failed_delivery_not_recorded(self, d1_source_db, tmp_path):
        failing = StubRemote(status_code=500)
        with DedupLedger.open(str(tmp_path / "track.db")) as ledger:
            report = migrate(d1_source_db, remote=failing, ledger=ledger)

            assert ledger.count() == 0

        # Authenticate failure does not stop the TokenUpdate
        assert len(failing.requests) == 2
        assert report.counts()["failed"] == 2

    def test_without_ledger_always_sends(self, d1_source_db):
        remote = StubRemote()
        migrate(d1_source_db, remote=remote)
        migrate(d1_source_db, remote=remote)

        assert len(remote.requests) == 4


class TestRecordIsolation:
    """A bad record never aborts the run."""

    def test_missing_push_info_skips_device(self, make_source_db, remote):
        source_db = make_source_db(
            devices=[{"udid": "D1"}, {"udid": "D2"}],
            push=[{"id": "D2", **PUSH}],
        )

        report = migrate(source_db, remote=remote)

        assert {m.udid for m in sent_messages(remote)} == {"D2"}
        skipped = report.by_outcome(Outcome.SKIPPED)
        assert [(r.key, r.reason) for r in skipped] == [("D1", "push info not found: D1")]

    def test_undecodable_push_token_skips_only_that_device(self, make_source_db, remote):
        source_db = make_source_db(devices=[{"udid": "D1"}, {"udid": "D2"}], push=[{"id": "D2", **PUSH}])
        insert_raw(
            source_db, "push_info",
            id="D1", mdm_topic="com.example.push", token=b"\xff\xfe", push_magic="magic1",
        )

        report = migrate(source_db, remote=remote)

        assert {m.udid for m in sent_messages(remote)} == {"D2"}
        skipped = report.by_outcome(Outcome.SKIPPED)
        assert [r.key for r in skipped] == ["D1"]
        assert skipped[0].reason.startswith("malformed push info: D1")

    def test_unparseable_last_seen_skips_only_that_device(self, make_source_db, remote):
        source_db = make_source_db(devices=[{"udid": "D2"}], push=[{"id": "D1", **PUSH}, {"id": "D2", **PUSH}])
        insert_raw(source_db, "devices", udid="D1", last_seen="yesterday")

        report = migrate(source_db, remote=remote)

        assert {m.udid for m in sent_messages(remote)} == {"D2"}
        skipped = report.by_outcome(Outcome.SKIPPED)
        assert [(r.kind, r.key) for r in skipped] == [("device", "D1")]
        assert report.counts()["delivered"] == 2

    def test_malformed_user_row_skipped(self, make_source_db, remote):
        source_db = make_source_db(
            devices=[{"udid": "D1"}],
            users=[{"user_id": "U2", "udid": "D1"}],
            push=[{"id": "U1", **PUSH}, {"id": "U2", **PUSH}],
        )
        insert_raw(source_db, "users", user_id="U1", udid="D1", user_short_name=b"\xff")

        report = migrate(source_db, remote=remote)

        assert {m.user_id for m in sent_messages(remote)} == {"U2"}
        assert ("U1", "malformed user: U1: invalid user_short_name") in [
            (r.key, r.reason) for r in report.by_outcome(Outcome.SKIPPED)
        ]

    def test_malformed_unlock_token_still_sends_authenticate(self, make_source_db, remote):
        source_db = make_source_db(
            devices=[{"udid": "D1", "unlock_token": "xyz"}],
            push=[{"id": "D1", **PUSH}],
        )

        report = migrate(source_db, remote=remote)

        assert [type(m) for m in sent_messages(remote)] == [Authenticate]
        skipped = report.by_outcome(Outcome.SKIPPED)
        assert skipped[0].kind == DEVICE_TOKEN_UPDATE
        assert "UnlockToken" in skipped[0].reason

    def test_filtered_device_never_built(self, make_source_db, remote, caplog):
        caplog.set_level(logging.INFO)
        source_db = make_source_db(
            devices=[{"udid": "A"}, {"udid": "B"}],
            push=[{"id": "A", **PUSH}, {"id": "B", **PUSH}],
        )

        report = migrate(source_db, remote=remote, selection=SelectionFilter.from_options(udids="A"))

        assert {m.udid for m in sent_messages(remote)} == {"A"}
        assert "skipping device UDID=B: not in UDID set" in caplog.messages
        assert [r.key for r in report.by_outcome(Outcome.SKIPPED)] == ["B"]

    def test_stale_device_skipped(self, make_source_db, remote):
        source_db = make_source_db(
            devices=[
                {"udid": "OLD", "last_seen": days_ago(40)},
                {"udid": "NEW", "last_seen": days_ago(10)},
            ],
            push=[{"id": "OLD", **PUSH}, {"id": "NEW", **PUSH}],
        )

        migrate(source_db, remote=remote, selection=SelectionFilter.from_options(days=30))

        assert {m.udid for m in sent_messages(remote)} == {"NEW"}


class TestUsers:
    """User channel TokenUpdates."""

    @pytest.fixture
    def source_db(self, make_source_db):
        return make_source_db(
            devices=[{"udid": "D1"}, {"udid": "D2"}],
            users=[
                {"user_id": "U1", "udid": "D1", "user_short_name": "jappleseed", "user_long_name": "J Appleseed"},
                {"user_id": "U2", "udid": "D2", "user_short_name": "other"},
                {"user_id": "U3", "udid": "GONE", "user_short_name": "orphan"},
            ],
            push=[
                {"id": "U1", **PUSH},
                {"id": "U2", **PUSH},
                {"id": "U3", **PUSH},
            ],
        )

    def test_user_token_updates(self, source_db, remote):
        report = migrate(source_db, remote=remote)

        user_updates = [m for m in sent_messages(remote) if m.user_id]
        assert {(m.user_id, m.udid) for m in user_updates} == {("U1", "D1"), ("U2", "D2"), ("U3", "GONE")}
        u1 = next(m for m in user_updates if m.user_id == "U1")
        assert u1.user_long_name == "J Appleseed"
        assert len([r for r in report.results if r.kind == USER_TOKEN_UPDATE]) == 3

    def test_user_filtered_by_owning_device(self, source_db, remote, caplog):
        caplog.set_level(logging.INFO)

        migrate(source_db, remote=remote, selection=SelectionFilter.from_options(udids="D1"))

        user_ids = {m.user_id for m in sent_messages(remote) if m.user_id}
        assert user_ids == {"U1"}
        assert any("for UserID=U2 UserShortName=other: not in UDID set" in m for m in caplog.messages)

    def test_orphan_user_skipped_when_filter_active(self, source_db, remote):
        report = migrate(source_db, remote=remote, selection=SelectionFilter.from_options(udids="GONE"))

        assert remote.requests == []
        assert ("U3", "owning device not found") in [
            (r.key, r.reason) for r in report.by_outcome(Outcome.SKIPPED)
        ]


class TestDryRun:
    def test_nothing_sent(self, d1_source_db, caplog):
        caplog.set_level(logging.INFO)

        report = migrate(d1_source_db, remote=None)

        assert report.counts()["processed"] == 2
        assert "processing device Authenticate for: UDID=D1" in caplog.messages


class TestRunMigration:
    """Wiring from settings."""

    def test_missing_source_store_is_fatal(self, tmp_path):
        settings = Settings(SOURCE_DB_PATH=str(tmp_path / "missing.db"))

        with pytest.raises(FatalPrecondition):
            run_migration(settings)

    def test_from_settings(self, d1_source_db, remote, tmp_path):
        settings = Settings(
            SOURCE_DB_PATH=d1_source_db,
            REMOTE_URL="https://nano.example.com/migration",
            REMOTE_API_KEY="k",
            TRACK_PATH=str(tmp_path / "track.db"),
        )

        report = run_migration(settings, transport=remote.transport)

        assert report.counts()["delivered"] == 2
        with DedupLedger.open(settings.TRACK_PATH) as ledger:
            assert ledger.count() == 2

    def test_without_key_is_dry_run(self, d1_source_db):
        settings = Settings(SOURCE_DB_PATH=d1_source_db, REMOTE_URL="https://nano.example.com")

        report = run_migration(settings)

        assert report.counts()["processed"] == 2


def test_digest_matches_driver_bytes(d1_source_db, remote):
    """The bytes on the wire are exactly what the builder encodes."""
    migrate(d1_source_db, remote=remote)

    with RecordStore.open(d1_source_db) as store:
        device = store.device_by_udid("D1")
        push_info = store.push_info_for("D1")
    expected = encode_message(build_authenticate(device, push_info))

    assert remote.bodies[0] == expected
