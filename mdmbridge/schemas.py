"""
Pydantic schemas for source records and API responses.

This module contains:
- Record models: read-only snapshots of source store rows
- Response models for the command proxy API
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# =============================================================================
# Source Record Models
# =============================================================================

class DeviceRecord(BaseModel):
    """
    Snapshot of an enrolled device.

    unlock_token is hex encoded as stored; it is decoded when a
    TokenUpdate is built.
    """
    model_config = ConfigDict(from_attributes=True, frozen=True, protected_namespaces=())

    udid: str = Field(..., description="Device UDID")
    serial_number: Optional[str] = None
    build_version: Optional[str] = None
    device_name: Optional[str] = None
    model: Optional[str] = None
    model_name: Optional[str] = None
    os_version: Optional[str] = None
    product_name: Optional[str] = None
    imei: Optional[str] = None
    meid: Optional[str] = None
    unlock_token: Optional[str] = Field(None, description="Hex encoded unlock token")
    last_seen: Optional[datetime] = None


class UserRecord(BaseModel):
    """User channel; udid references the owning device."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    user_id: str
    udid: str
    user_short_name: Optional[str] = None
    user_long_name: Optional[str] = None


class PushInfo(BaseModel):
    """Push registration for a device or user channel."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    topic: str = Field(..., validation_alias=AliasChoices("topic", "mdm_topic"))
    token: str = Field(..., description="Hex encoded push token")
    push_magic: str


# =============================================================================
# Pydantic Response Models
# =============================================================================

class CommandResponse(BaseModel):
    """
    Envelope returned by POST /v1/commands.
    Exactly one of payload or error is set.
    """
    payload: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class VersionResponse(BaseModel):
    """Response model for GET /version."""
    version: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
