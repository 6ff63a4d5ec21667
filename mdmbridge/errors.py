"""
Exception hierarchy for mdmbridge.

- FatalPrecondition aborts a migration run (stores cannot be opened,
  records cannot be enumerated).
- RecordSkip and its subclasses abandon a single record; the run continues.
- DeliveryError and EncodingError abandon a single message; the ledger is
  not updated for it.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all mdmbridge errors."""


class FatalPrecondition(BridgeError):
    """A precondition for the whole run failed."""


class RecordSkip(BridgeError):
    """A record cannot be processed and is skipped."""


class NotFound(RecordSkip):
    """A lookup in the source store found nothing."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class MalformedField(RecordSkip):
    """A field could not be decoded."""

    def __init__(self, field: str, detail: str = ""):
        self.field = field
        message = f"malformed field {field}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MalformedRecord(RecordSkip):
    """A source row exists but cannot be read into a record."""

    def __init__(self, kind: str, key: str, detail: str = ""):
        self.kind = kind
        self.key = key
        message = f"malformed {kind}: {key}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnsupportedRequestType(RecordSkip):
    """A command request names a request type with no command mapping."""

    def __init__(self, request_type: str):
        self.request_type = request_type
        super().__init__(f"unsupported request type: {request_type!r}")


class DeliveryError(BridgeError):
    """The remote endpoint did not answer with HTTP 200."""

    def __init__(self, status: Optional[int], body: str = ""):
        self.status = status
        self.body = body
        if status is None:
            message = f"delivery failed: {body}"
        else:
            message = f"request failed with HTTP status: {status}"
        super().__init__(message)


class EncodingError(BridgeError):
    """A message could not be serialized to the wire format."""
