"""
MDM command payloads built from JSON command requests.

A request names a RequestType and carries the command's fields under
their wire names. Binary fields arrive base64 encoded. The payload is
encoded as a property list of {CommandUUID, Command} for the remote
command endpoint.
"""

import base64
import binascii
import logging
import plistlib
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from mdmbridge.errors import EncodingError, MalformedField, UnsupportedRequestType

logger = logging.getLogger(__name__)


# =============================================================================
# Command Registry
# =============================================================================

@dataclass(frozen=True)
class CommandSpec:
    """Field kinds of a command and which of them are required."""
    fields: dict
    required: tuple = ()


COMMANDS: dict[str, CommandSpec] = {
    "DeviceInformation": CommandSpec({"Queries": "strings"}, required=("Queries",)),
    "SecurityInfo": CommandSpec({}),
    "ProfileList": CommandSpec({}),
    "ProvisioningProfileList": CommandSpec({}),
    "CertificateList": CommandSpec({}),
    "InstalledApplicationList": CommandSpec({"Identifiers": "strings", "ManagedAppsOnly": "bool"}),
    "ManagedApplicationList": CommandSpec({"Identifiers": "strings"}),
    "InstallProfile": CommandSpec({"Payload": "bytes"}, required=("Payload",)),
    "RemoveProfile": CommandSpec({"Identifier": "string"}, required=("Identifier",)),
    "InstallProvisioningProfile": CommandSpec(
        {"ProvisioningProfile": "bytes"}, required=("ProvisioningProfile",)
    ),
    "RemoveProvisioningProfile": CommandSpec({"UUID": "string"}, required=("UUID",)),
    "InstallApplication": CommandSpec({
        "ITunesStoreID": "int",
        "Identifier": "string",
        "ManifestURL": "string",
        "ManagementFlags": "int",
        "ChangeManagementState": "string",
        "Options": "dict",
        "Configuration": "dict",
        "Attributes": "dict",
    }),
    "InstallEnterpriseApplication": CommandSpec({
        "Manifest": "dict",
        "ManifestURL": "string",
        "ManifestURLPinningCerts": "bytes_list",
        "PinningRevocationCheckRequired": "bool",
    }),
    "RemoveApplication": CommandSpec({"Identifier": "string"}, required=("Identifier",)),
    "DeviceLock": CommandSpec({"PIN": "string", "Message": "string", "PhoneNumber": "string"}),
    "EraseDevice": CommandSpec({"PIN": "string", "PreserveDataPlan": "bool"}),
    "ClearPasscode": CommandSpec({"UnlockToken": "bytes"}, required=("UnlockToken",)),
    "RestartDevice": CommandSpec({"NotifyUser": "bool"}),
    "ShutDownDevice": CommandSpec({}),
    "ScheduleOSUpdate": CommandSpec({"Updates": "dicts"}),
    "ScheduleOSUpdateScan": CommandSpec({"Force": "bool"}),
    "AvailableOSUpdates": CommandSpec({}),
    "OSUpdateStatus": CommandSpec({}),
    "DeviceConfigured": CommandSpec({}),
    "Settings": CommandSpec({"Settings": "dicts"}, required=("Settings",)),
    "EnableLostMode": CommandSpec({"Message": "string", "PhoneNumber": "string", "Footnote": "string"}),
    "DisableLostMode": CommandSpec({}),
    "DeviceLocation": CommandSpec({}),
    "PlayLostModeSound": CommandSpec({}),
    "ActivationLockBypassCode": CommandSpec({}),
    "ClearRestrictionsPassword": CommandSpec({}),
    "UserList": CommandSpec({}),
    "LogOutUser": CommandSpec({}),
    "DeleteUser": CommandSpec({"UserName": "string", "ForceDeletion": "bool"}),
    "SetFirmwarePassword": CommandSpec({
        "CurrentPassword": "string",
        "NewPassword": "string",
        "AllowOroms": "bool",
    }),
    "VerifyFirmwarePassword": CommandSpec({"Password": "string"}),
}


def _decode_base64(name: str, value: Any) -> bytes:
    if not isinstance(value, str):
        raise MalformedField(name, "expected base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedField(name, str(e)) from e


def _convert(name: str, kind: str, value: Any) -> Any:
    """Check value against kind and convert it to its wire value."""
    if kind == "string":
        if not isinstance(value, str):
            raise MalformedField(name, "expected string")
        return value
    if kind == "bool":
        if not isinstance(value, bool):
            raise MalformedField(name, "expected boolean")
        return value
    if kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedField(name, "expected integer")
        return value
    if kind == "bytes":
        return _decode_base64(name, value)
    if kind == "strings":
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise MalformedField(name, "expected list of strings")
        return value
    if kind == "bytes_list":
        if not isinstance(value, list):
            raise MalformedField(name, "expected list of base64 strings")
        return [_decode_base64(name, v) for v in value]
    if kind == "dict":
        if not isinstance(value, dict):
            raise MalformedField(name, "expected object")
        return value
    if kind == "dicts":
        if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
            raise MalformedField(name, "expected list of objects")
        return value
    raise ValueError(f"unknown field kind {kind!r}")


# =============================================================================
# Request / Payload Models
# =============================================================================

class CommandRequest(BaseModel):
    """
    Inbound command request.

    UDID and RequestType are required; CommandUUID is optional. All other
    keys are command fields under their wire names.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    udid: str = Field(..., min_length=1, validation_alias=AliasChoices("UDID", "udid"))
    request_type: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("RequestType", "request_type")
    )
    command_uuid: Optional[str] = Field(
        None, validation_alias=AliasChoices("CommandUUID", "command_uuid")
    )

    @property
    def command_fields(self) -> dict:
        return dict(self.model_extra or {})


class CommandPayload(BaseModel):
    """
    Command addressed to a device.

    command holds RequestType plus the converted fields. udid selects the
    remote queue and is not part of the encoded command.
    """
    udid: str
    command_uuid: str
    command: dict[str, Any]

    @property
    def request_type(self) -> str:
        return self.command["RequestType"]

    def wire_fields(self) -> dict:
        return {"CommandUUID": self.command_uuid, "Command": self.command}

    def to_json(self) -> dict:
        """JSON-safe form; binary values become base64 strings."""
        return _jsonable({"UDID": self.udid, **self.wire_fields()})


def _jsonable(value: Any) -> Any:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


# =============================================================================
# Builders
# =============================================================================

def build_command_payload(request: CommandRequest) -> CommandPayload:
    """
    Build the command payload for a request.

    Raises:
        UnsupportedRequestType: no command mapping for the request type
        MalformedField: a required field is missing or has the wrong kind
    """
    command_spec = COMMANDS.get(request.request_type)
    if command_spec is None:
        raise UnsupportedRequestType(request.request_type)

    provided = request.command_fields
    for name in command_spec.required:
        if name not in provided:
            raise MalformedField(name, "required")

    command: dict[str, Any] = {"RequestType": request.request_type}
    for name, value in provided.items():
        kind = command_spec.fields.get(name)
        if kind is None:
            logger.debug(f"Ignoring unknown field {name} for {request.request_type}")
            continue
        command[name] = _convert(name, kind, value)

    return CommandPayload(
        udid=request.udid,
        command_uuid=request.command_uuid or str(uuid.uuid4()),
        command=command,
    )


def encode_command(payload: CommandPayload) -> bytes:
    """
    Encode payload as an XML property list.

    Raises:
        EncodingError: the payload holds values a property list cannot carry
    """
    try:
        return plistlib.dumps(payload.wire_fields(), fmt=plistlib.FMT_XML, sort_keys=True)
    except (TypeError, ValueError, OverflowError) as e:
        raise EncodingError(f"cannot encode {payload.request_type} command: {e}") from e
