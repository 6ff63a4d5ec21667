"""
Content-addressed dedup ledger.

A digest of the encoded message bytes is recorded after a successful
delivery. Presence of the digest means "already delivered". Entries are
never updated or deleted.

seen() and mark_sent() each run in their own transaction. Nothing holds
a lock across the remote delivery between them, so a crash after
delivery and before mark_sent() re-delivers that message on the next run.
Concurrent runs against the same ledger file are not supported.
"""

import hashlib
import logging

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from mdmbridge.errors import FatalPrecondition
from mdmbridge.models import SentMessage
from mdmbridge.storage import LedgerBase, make_session_factory, open_engine

logger = logging.getLogger(__name__)

DIGEST_SIZE = 20


def message_digest(data: bytes) -> bytes:
    """SHA-1 of the encoded message bytes."""
    return hashlib.sha1(data).digest()


class DedupLedger:
    """Persistent set of delivered message digests."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = make_session_factory(engine)

    @classmethod
    def open(cls, path: str) -> "DedupLedger":
        """
        Open (creating if needed) the ledger file and its table.

        Raises:
            FatalPrecondition: the ledger cannot be opened or initialized
        """
        logger.info(f"Opening dedup ledger: {path}")
        engine = open_engine(path)
        try:
            LedgerBase.metadata.create_all(bind=engine)
        except SQLAlchemyError as e:
            engine.dispose()
            raise FatalPrecondition(f"cannot initialize ledger {path}: {e}") from e
        return cls(engine)

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> "DedupLedger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def seen(self, digest: bytes) -> bool:
        """True if digest was recorded by this or an earlier run."""
        with self._session_factory() as db:
            return db.get(SentMessage, digest) is not None

    def mark_sent(self, digest: bytes, audit: str) -> bool:
        """
        Record digest as delivered.

        Returns:
            True if the entry was created, False if it already existed
            (the existing audit value is kept)
        """
        with self._session_factory() as db:
            try:
                db.add(SentMessage(digest=digest, audit=audit))
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.debug(f"Digest already recorded: {digest.hex()}")
                return False
        return True

    def audit_for(self, digest: bytes):
        """Audit value recorded for digest, or None."""
        with self._session_factory() as db:
            entry = db.get(SentMessage, digest)
            return entry.audit if entry is not None else None

    def count(self) -> int:
        with self._session_factory() as db:
            return db.query(func.count(SentMessage.digest)).scalar() or 0
