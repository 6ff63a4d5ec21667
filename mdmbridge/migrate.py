"""
Migration driver: source records -> check-in messages -> remote endpoint.

Two sequential phases, devices then users. Every record ends in exactly one
terminal result per message (delivered, processed in dry run, skipped,
failed) and no single record can abort the run. Only FatalPrecondition
(stores cannot be opened, records cannot be enumerated) propagates.

Dedup is check-then-deliver-then-mark with no lock held across the remote
call: delivery is at-least-once, recording at-most-once.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from mdmbridge.checkin import (
    Authenticate,
    TokenUpdate,
    build_authenticate,
    build_device_token_update,
    build_user_token_update,
    encode_message,
)
from mdmbridge.config import Settings
from mdmbridge.delivery import DeliveryClient
from mdmbridge.errors import DeliveryError, EncodingError, RecordSkip
from mdmbridge.ledger import DedupLedger, message_digest
from mdmbridge.records import RecordStore
from mdmbridge.schemas import DeviceRecord, UserRecord
from mdmbridge.utils import parse_udid_list

logger = logging.getLogger(__name__)

DEVICE = "device"
USER = "user"
DEVICE_AUTHENTICATE = "device_authenticate"
DEVICE_TOKEN_UPDATE = "device_token_update"
USER_TOKEN_UPDATE = "user_token_update"


# =============================================================================
# Selection
# =============================================================================

def _as_utc(ts: datetime) -> datetime:
    # Naive timestamps from the store are UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class SelectionFilter:
    """
    Which devices to migrate.

    An empty udids set places no restriction. A cutoff skips devices last
    seen before it.
    """
    udids: frozenset = frozenset()
    cutoff: Optional[datetime] = None

    @classmethod
    def from_options(
        cls,
        udids: Union[str, Iterable[str], None] = None,
        days: int = 0,
        now: Optional[datetime] = None,
    ) -> "SelectionFilter":
        if isinstance(udids, str) or udids is None:
            udid_set = parse_udid_list(udids or "")
        else:
            udid_set = frozenset(udids)
        cutoff = None
        if days > 0:
            now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
            cutoff = now - timedelta(days=days)
        return cls(udids=udid_set, cutoff=cutoff)

    @property
    def active(self) -> bool:
        return bool(self.udids) or self.cutoff is not None

    def check(self, device: DeviceRecord) -> tuple[bool, str]:
        """Returns (ok, reason); reason is empty when ok."""
        if self.udids and device.udid not in self.udids:
            return False, "not in UDID set"
        if self.cutoff is not None:
            if device.last_seen is None:
                return False, "no LastSeen recorded before cut off"
            if _as_utc(device.last_seen) < _as_utc(self.cutoff):
                return False, f"LastSeen of {device.last_seen:%Y-%m-%d} before cut off"
        return True, ""


# =============================================================================
# Results
# =============================================================================

class Outcome(str, Enum):
    DELIVERED = "delivered"
    PROCESSED = "processed"  # dry run: built, not sent
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordResult:
    """Terminal state of one message (or one record, when it never got that far)."""
    kind: str
    key: str
    outcome: Outcome
    reason: str = ""


@dataclass
class MigrationReport:
    results: list = field(default_factory=list)

    def add(self, result: RecordResult) -> None:
        self.results.append(result)

    def extend(self, results: Iterable[RecordResult]) -> None:
        self.results.extend(results)

    def counts(self) -> dict:
        counter = Counter(r.outcome.value for r in self.results)
        return {outcome.value: counter.get(outcome.value, 0) for outcome in Outcome}

    def by_outcome(self, outcome: Outcome) -> list:
        return [r for r in self.results if r.outcome is outcome]


# =============================================================================
# Driver
# =============================================================================

class Migrator:
    """
    Sequential, single-pass migration.

    client=None is dry-run mode: messages are built and logged but not sent
    and the ledger is not consulted. ledger=None disables dedup.
    """

    def __init__(
        self,
        store: RecordStore,
        client: Optional[DeliveryClient] = None,
        ledger: Optional[DedupLedger] = None,
        selection: Optional[SelectionFilter] = None,
    ):
        self.store = store
        self.client = client
        self.ledger = ledger
        self.selection = selection or SelectionFilter()

    def run(self) -> MigrationReport:
        """
        Run both phases.

        Raises:
            FatalPrecondition: device or user keys cannot be enumerated
        """
        report = MigrationReport()

        for udid in self.store.device_udids():
            try:
                device = self.store.device_by_udid(udid)
            except RecordSkip as e:
                logger.warning(f"skipping device UDID={udid}: {e}")
                report.add(RecordResult(DEVICE, udid, Outcome.SKIPPED, str(e)))
                continue
            report.extend(self.process_device(device))

        for user_id in self.store.user_ids():
            try:
                user = self.store.user_by_id(user_id)
            except RecordSkip as e:
                logger.warning(f"skipping user UserID={user_id}: {e}")
                report.add(RecordResult(USER, user_id, Outcome.SKIPPED, str(e)))
                continue
            report.extend(self.process_user(user))

        logger.info("migration finished", extra={"counts": report.counts()})
        return report

    def process_device(self, device: DeviceRecord) -> list:
        """Authenticate then TokenUpdate for one device."""
        ok, reason = self.selection.check(device)
        if not ok:
            logger.info(f"skipping device UDID={device.udid}: {reason}")
            return [RecordResult(DEVICE, device.udid, Outcome.SKIPPED, reason)]

        try:
            push_info = self.store.push_info_for(device.udid)
        except RecordSkip as e:
            logger.warning(f"skipping device UDID={device.udid}: {e}")
            return [RecordResult(DEVICE, device.udid, Outcome.SKIPPED, str(e))]

        results = [
            self.deliver_message(
                DEVICE_AUTHENTICATE,
                device.udid,
                f"device Authenticate for: UDID={device.udid}",
                build_authenticate(device, push_info),
            )
        ]

        try:
            token_update = build_device_token_update(device, push_info)
        except RecordSkip as e:
            logger.warning(f"skipping device TokenUpdate for: UDID={device.udid}: {e}")
            results.append(RecordResult(DEVICE_TOKEN_UPDATE, device.udid, Outcome.SKIPPED, str(e)))
            return results

        results.append(
            self.deliver_message(
                DEVICE_TOKEN_UPDATE,
                device.udid,
                f"device TokenUpdate for: UDID={device.udid}",
                token_update,
            )
        )
        return results

    def process_user(self, user: UserRecord) -> list:
        """User channel TokenUpdate, filtered by the owning device."""
        short_name = user.user_short_name or ""
        try:
            device = self.store.device_by_udid(user.udid)
        except RecordSkip as e:
            logger.warning(
                f"error looking up device by UDID {user.udid} for user {user.user_id}: {e}"
            )
            device = None

        if device is None:
            if self.selection.active:
                reason = "owning device not found"
                logger.info(
                    f"skipping device UDID={user.udid} for UserID={user.user_id} "
                    f"UserShortName={short_name}: {reason}"
                )
                return [RecordResult(USER, user.user_id, Outcome.SKIPPED, reason)]
        else:
            ok, reason = self.selection.check(device)
            if not ok:
                logger.info(
                    f"skipping device UDID={device.udid} for UserID={user.user_id} "
                    f"UserShortName={short_name}: {reason}"
                )
                return [RecordResult(USER, user.user_id, Outcome.SKIPPED, reason)]

        label = (
            f"user TokenUpdate for: UserID={user.user_id} "
            f"UserShortName={short_name} UDID={user.udid}"
        )
        try:
            push_info = self.store.push_info_for(user.user_id)
            token_update = build_user_token_update(user, push_info)
        except RecordSkip as e:
            logger.warning(f"skipping {label}: {e}")
            return [RecordResult(USER, user.user_id, Outcome.SKIPPED, str(e))]

        key = f"{user.user_id},{user.udid},{short_name}"
        return [self.deliver_message(USER_TOKEN_UPDATE, key, label, token_update)]

    def deliver_message(
        self,
        kind: str,
        key: str,
        label: str,
        message: Union[Authenticate, TokenUpdate],
    ) -> RecordResult:
        """
        Encode, dedup-check, deliver and record one message.

        Never raises for per-message failures; they become the result.
        """
        try:
            data = encode_message(message)
        except EncodingError as e:
            logger.error(f"error encoding {label}: {e}")
            return RecordResult(kind, key, Outcome.FAILED, str(e))

        if self.client is None:
            logger.info(f"processing {label}")
            return RecordResult(kind, key, Outcome.PROCESSED)

        digest = message_digest(data)
        if self._seen(digest):
            logger.info(f"skipping (seen) {label}")
            return RecordResult(kind, key, Outcome.SKIPPED, "seen")

        logger.info(f"sending {label}")
        try:
            self.client.deliver(data)
        except DeliveryError as e:
            logger.error(f"error sending {label}: {e}")
            return RecordResult(kind, key, Outcome.FAILED, str(e))

        if self.ledger is not None:
            audit = f"{kind} {key} {datetime.now(timezone.utc).isoformat()}"
            try:
                self.ledger.mark_sent(digest, audit)
            except SQLAlchemyError as e:
                logger.error(f"error saving track {label}: {e}")

        logger.info(f"sent {label}")
        return RecordResult(kind, key, Outcome.DELIVERED)

    def _seen(self, digest: bytes) -> bool:
        if self.ledger is None:
            return False
        try:
            return self.ledger.seen(digest)
        except SQLAlchemyError as e:
            # unreadable ledger counts as unseen
            logger.error(f"error reading track ledger: {e}")
            return False


def run_migration(settings: Settings, transport=None) -> MigrationReport:
    """
    Open stores and client from settings and run the migration.

    Raises:
        FatalPrecondition: a store cannot be opened or enumerated
    """
    selection = SelectionFilter.from_options(settings.MIGRATE_UDIDS, settings.MIGRATE_DAYS)

    client = None
    if settings.can_send:
        client = DeliveryClient(settings.REMOTE_URL, settings.REMOTE_API_KEY, transport=transport)
    else:
        logger.warning("URL or API key not set; not sending server requests")

    ledger = None
    store = RecordStore.open(settings.SOURCE_DB_PATH)
    try:
        if settings.TRACK_PATH:
            ledger = DedupLedger.open(settings.TRACK_PATH)
        return Migrator(store, client=client, ledger=ledger, selection=selection).run()
    finally:
        store.close()
        if ledger is not None:
            ledger.close()
        if client is not None:
            client.close()
