"""
Read-only views over the exported MDM state.

Enumeration order is whatever the store returns; callers must not rely
on it for anything beyond log readability.

Keys are enumerated first and each row is loaded on its own, so a row
that cannot be decoded is skipped without losing the rest.
"""

import logging

from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from mdmbridge.errors import FatalPrecondition, MalformedRecord, NotFound, RecordSkip
from mdmbridge.models import Device, PushRegistration, User
from mdmbridge.schemas import DeviceRecord, PushInfo, UserRecord
from mdmbridge.storage import make_session_factory, open_engine

logger = logging.getLogger(__name__)


class RecordStore:
    """Devices, users and push registrations held in the source store."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = make_session_factory(engine)

    @classmethod
    def open(cls, path: str) -> "RecordStore":
        """
        Open the source store read-only.

        Raises:
            FatalPrecondition: the store is missing or cannot be opened
        """
        logger.info(f"Opening source store: {path}")
        return cls(open_engine(path, read_only=True))

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> "RecordStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def device_udids(self) -> list[str]:
        """
        Enumerate device keys.

        Raises:
            FatalPrecondition: the devices table cannot be read
        """
        return self._keys(Device.udid, "devices")

    def user_ids(self) -> list[str]:
        """
        Enumerate user keys.

        Raises:
            FatalPrecondition: the users table cannot be read
        """
        return self._keys(User.user_id, "users")

    def list_devices(self) -> list[DeviceRecord]:
        """All readable devices; malformed rows are logged and left out."""
        return self._load_all(self.device_udids(), self.device_by_udid)

    def list_users(self) -> list[UserRecord]:
        """All readable users; malformed rows are logged and left out."""
        return self._load_all(self.user_ids(), self.user_by_id)

    def device_by_udid(self, udid: str) -> DeviceRecord:
        """Look up a single device; raises NotFound or MalformedRecord."""
        return self._load(Device, DeviceRecord, "device", udid)

    def user_by_id(self, user_id: str) -> UserRecord:
        """Look up a single user; raises NotFound or MalformedRecord."""
        return self._load(User, UserRecord, "user", user_id)

    def push_info_for(self, id: str) -> PushInfo:
        """
        Look up push registration by UDID or UserID.

        Raises:
            NotFound: no push registration exists for id
            MalformedRecord: the registration cannot be decoded
            RecordSkip: the lookup itself failed
        """
        return self._load(PushRegistration, PushInfo, "push info", id)

    def _keys(self, column, table: str) -> list[str]:
        try:
            with self._session_factory() as db:
                keys = [key for (key,) in db.query(column).all()]
        except SQLAlchemyError as e:
            raise FatalPrecondition(f"cannot list {table}: {e}") from e
        logger.info(f"Listed {len(keys)} {table}")
        return keys

    @staticmethod
    def _load_all(keys, load) -> list:
        records = []
        for key in keys:
            try:
                records.append(load(key))
            except RecordSkip as e:
                logger.warning(f"skipping record: {e}")
        return records

    def _load(self, model, schema, kind: str, key: str):
        with self._session_factory() as db:
            try:
                row = db.get(model, key)
            except SQLAlchemyError as e:
                raise RecordSkip(f"lookup of {kind} {key} failed: {e}") from e
            except ValueError as e:
                # column value the type processor cannot parse
                raise MalformedRecord(kind, key, str(e)) from e
            if row is None:
                raise NotFound(kind, key)
            try:
                return schema.model_validate(row)
            except ValidationError as e:
                raise MalformedRecord(kind, key, _invalid_fields(e)) from e


def _invalid_fields(error: ValidationError) -> str:
    locs = sorted({".".join(str(part) for part in err["loc"]) for err in error.errors()})
    return f"invalid {', '.join(locs)}"
