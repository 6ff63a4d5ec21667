"""
Check-in message construction and wire encoding.

Authenticate and TokenUpdate form a closed tagged union discriminated on
MessageType. Each variant carries only its own fields. Optional fields
with no value are omitted from the encoded property list, never encoded
empty, and keys are sorted, so equal messages encode to equal bytes.
"""

import binascii
import plistlib
from typing import Annotated, ClassVar, Literal, Optional, Union
from xml.parsers.expat import ExpatError

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from mdmbridge.errors import EncodingError, MalformedField
from mdmbridge.schemas import DeviceRecord, PushInfo, UserRecord


class Authenticate(BaseModel):
    """Device identity announcement."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, protected_namespaces=())

    always_encoded: ClassVar[frozenset] = frozenset({"MessageType", "UDID", "Topic"})

    message_type: Literal["Authenticate"] = Field("Authenticate", alias="MessageType")
    udid: str = Field(..., alias="UDID")
    topic: str = Field(..., alias="Topic")
    build_version: Optional[str] = Field(None, alias="BuildVersion")
    device_name: Optional[str] = Field(None, alias="DeviceName")
    model: Optional[str] = Field(None, alias="Model")
    model_name: Optional[str] = Field(None, alias="ModelName")
    os_version: Optional[str] = Field(None, alias="OSVersion")
    product_name: Optional[str] = Field(None, alias="ProductName")
    serial_number: Optional[str] = Field(None, alias="SerialNumber")
    imei: Optional[str] = Field(None, alias="IMEI")
    meid: Optional[str] = Field(None, alias="MEID")


class TokenUpdate(BaseModel):
    """Push registration for a device channel, or a user channel when user_id is set."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    always_encoded: ClassVar[frozenset] = frozenset(
        {"MessageType", "UDID", "PushMagic", "Topic", "Token"}
    )

    message_type: Literal["TokenUpdate"] = Field("TokenUpdate", alias="MessageType")
    udid: str = Field(..., alias="UDID")
    push_magic: str = Field(..., alias="PushMagic")
    topic: str = Field(..., alias="Topic")
    token: bytes = Field(..., alias="Token")
    unlock_token: Optional[bytes] = Field(None, alias="UnlockToken")
    user_id: Optional[str] = Field(None, alias="UserID")
    user_short_name: Optional[str] = Field(None, alias="UserShortName")
    user_long_name: Optional[str] = Field(None, alias="UserLongName")


CheckinMessage = Annotated[Union[Authenticate, TokenUpdate], Field(discriminator="message_type")]

_checkin_adapter = TypeAdapter(CheckinMessage)


def decode_hex(field: str, value: Optional[str]) -> bytes:
    """
    Decode a hex encoded binary field.

    Raises:
        MalformedField: value is not valid hex
    """
    if not value:
        return b""
    try:
        return binascii.unhexlify(value)
    except (binascii.Error, ValueError) as e:
        raise MalformedField(field, str(e)) from e


def build_authenticate(device: DeviceRecord, push_info: PushInfo) -> Authenticate:
    return Authenticate(
        udid=device.udid,
        topic=push_info.topic,
        build_version=device.build_version,
        device_name=device.device_name,
        model=device.model,
        model_name=device.model_name,
        os_version=device.os_version,
        product_name=device.product_name,
        serial_number=device.serial_number,
        imei=device.imei,
        meid=device.meid,
    )


def build_device_token_update(device: DeviceRecord, push_info: PushInfo) -> TokenUpdate:
    """
    Build the device channel TokenUpdate.

    Raises:
        MalformedField: Token or UnlockToken is not valid hex
    """
    token = decode_hex("Token", push_info.token)
    unlock_token = decode_hex("UnlockToken", device.unlock_token)
    return TokenUpdate(
        udid=device.udid,
        push_magic=push_info.push_magic,
        topic=push_info.topic,
        token=token,
        unlock_token=unlock_token or None,
    )


def build_user_token_update(user: UserRecord, push_info: PushInfo) -> TokenUpdate:
    """
    Build the user channel TokenUpdate. The UDID is the owning device's.

    Raises:
        MalformedField: Token is not valid hex
    """
    token = decode_hex("Token", push_info.token)
    return TokenUpdate(
        udid=user.udid,
        user_id=user.user_id,
        push_magic=push_info.push_magic,
        topic=push_info.topic,
        token=token,
        user_short_name=user.user_short_name,
        user_long_name=user.user_long_name,
    )


def message_fields(message: Union[Authenticate, TokenUpdate]) -> dict:
    """Wire-named fields of message with empty optional fields dropped."""
    fields = message.model_dump(by_alias=True)
    return {
        key: value
        for key, value in fields.items()
        if key in message.always_encoded or value not in (None, "", b"")
    }


def encode_message(message: Union[Authenticate, TokenUpdate]) -> bytes:
    """
    Encode message as an XML property list.

    Raises:
        EncodingError: the message cannot be serialized
    """
    try:
        return plistlib.dumps(message_fields(message), fmt=plistlib.FMT_XML, sort_keys=True)
    except (TypeError, ValueError, OverflowError) as e:
        raise EncodingError(f"cannot encode {message.message_type}: {e}") from e


def decode_message(data: bytes) -> Union[Authenticate, TokenUpdate]:
    """
    Parse an encoded check-in message back into its variant.

    Raises:
        EncodingError: data is not a valid check-in property list
    """
    try:
        return _checkin_adapter.validate_python(plistlib.loads(data))
    except (ExpatError, ValidationError, ValueError) as e:
        raise EncodingError(f"cannot decode check-in message: {e}") from e
