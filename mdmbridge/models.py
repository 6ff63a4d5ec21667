"""
SQLAlchemy ORM models for database tables.

Source tables mirror the exported MDM state and are only ever read.
The ledger table is the single bucket of delivered message digests.
For Pydantic record schemas, see schemas.py.
"""

from sqlalchemy import Column, DateTime, LargeBinary, String, Text

from mdmbridge.storage import LedgerBase, SourceBase


class Device(SourceBase):
    """Enrolled device. Table: devices, primary key udid."""
    __tablename__ = "devices"

    udid = Column(String, primary_key=True)
    serial_number = Column(String, nullable=True, index=True)
    build_version = Column(String, nullable=True)
    device_name = Column(String, nullable=True)
    model = Column(String, nullable=True)
    model_name = Column(String, nullable=True)
    os_version = Column(String, nullable=True)
    product_name = Column(String, nullable=True)
    imei = Column(String, nullable=True)
    meid = Column(String, nullable=True)
    unlock_token = Column(String, nullable=True)  # hex
    last_seen = Column(DateTime, nullable=True)


class User(SourceBase):
    """User channel on a device. Table: users, primary key user_id."""
    __tablename__ = "users"

    user_id = Column(String, primary_key=True)
    udid = Column(String, nullable=False, index=True)
    user_short_name = Column(String, nullable=True)
    user_long_name = Column(String, nullable=True)


class PushRegistration(SourceBase):
    """
    Push registration keyed by UDID (device channel) or UserID (user channel).
    Table: push_info
    """
    __tablename__ = "push_info"

    id = Column(String, primary_key=True)
    mdm_topic = Column(String, nullable=False)
    token = Column(String, nullable=False)  # hex
    push_magic = Column(String, nullable=False)


class SentMessage(LedgerBase):
    """
    Ledger entry: presence of a digest means the message was delivered.
    Table: mdm_checkin_message_hashes
    """
    __tablename__ = "mdm_checkin_message_hashes"

    digest = Column(LargeBinary(20), primary_key=True)
    audit = Column(Text, nullable=False)
