import logging
import os

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from mdmbridge.errors import FatalPrecondition

logger = logging.getLogger(__name__)

# Exported MDM state (devices, users, push registrations). Opened read-only.
SourceBase = declarative_base()

# Dedup ledger of delivered message digests.
LedgerBase = declarative_base()


def sqlite_url(path: str, read_only: bool = False) -> str:
    """
    Build an SQLAlchemy URL for an SQLite file.

    Read-only URLs use SQLite's URI filename form so that any write attempt
    fails at the driver level.
    """
    path = os.path.abspath(path)
    if read_only:
        return f"sqlite:///file:{path}?mode=ro&uri=true"
    return f"sqlite:///{path}"


def open_engine(path: str, read_only: bool = False) -> Engine:
    """
    Create an engine for an SQLite file and verify it can be opened.

    Raises:
        FatalPrecondition: the file is missing (read-only) or unreadable
    """
    if read_only and not os.path.exists(path):
        raise FatalPrecondition(f"database not found: {path}")

    url = sqlite_url(path, read_only=read_only)
    logger.debug(f"Opening database: {url}")
    engine = create_engine(url, echo=False)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        engine.dispose()
        raise FatalPrecondition(f"cannot open database {path}: {e}") from e
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
