"""Message envelope and wire codec.

The envelope is the transport-level wrapper around one integration
event.  On the wire it is a single JSON document::

    {
      "messageId":  "<uuid>",
      "eventType":  "OrderCreated",
      "occurredOn": "2024-01-01T00:00:00Z",
      "body":       { ...event fields... },
      "headers":    { "correlation-id": "...", ... }
    }

The codec is pure: no I/O, no shared state.  Every decode failure is a
``DecodeError`` so transports can dead-letter it instead of retrying.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from commerce_bus.core.errors import DecodeError, UnknownEventTypeError
from commerce_bus.core.events import IntegrationEvent
from commerce_bus.core.ids import ensure_utc, utc_now
from commerce_bus.observability.logger import get_correlation_id

from .registry import EventTypeRegistry

CONTENT_TYPE = "application/json"

HEADER_CONTENT_TYPE = "content-type"
HEADER_CORRELATION_ID = "correlation-id"
HEADER_PUBLISHED_AT = "published-at"


class Envelope(BaseModel):
    """Transport wrapper: routing metadata plus the serialized event."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    event_type: str
    occurred_on: datetime
    body: bytes
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("occurred_on")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def correlation_id(self) -> str | None:
        return self.headers.get(HEADER_CORRELATION_ID)


class _WireEnvelope(BaseModel):
    """Validation model for the JSON wire document."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message_id: str = Field(alias="messageId", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    occurred_on: datetime = Field(alias="occurredOn")
    body: dict[str, Any]
    headers: dict[str, str] = Field(default_factory=dict)


class EnvelopeCodec:
    """Encodes events into envelopes and envelopes to/from wire bytes."""

    def encode(
        self,
        event: IntegrationEvent,
        headers: dict[str, str] | None = None,
        message_id: str | None = None,
    ) -> Envelope:
        """Wrap *event* in an envelope with default headers attached."""
        merged = {
            HEADER_CONTENT_TYPE: CONTENT_TYPE,
            HEADER_CORRELATION_ID: get_correlation_id(),
            HEADER_PUBLISHED_AT: utc_now().isoformat(),
        }
        if headers:
            merged.update({str(k): str(v) for k, v in headers.items()})

        return Envelope(
            message_id=message_id or str(event.event_id),
            event_type=event.event_type,
            occurred_on=event.occurred_on,
            body=event.model_dump_json().encode("utf-8"),
            headers=merged,
        )

    def decode(self, envelope: Envelope) -> tuple[str, bytes]:
        """Return ``(type_name, payload_bytes)``."""
        return envelope.event_type, envelope.body

    def load_event(
        self,
        envelope: Envelope,
        registry: EventTypeRegistry,
    ) -> IntegrationEvent:
        """Rebuild the typed event from *envelope*.

        Raises ``UnknownEventTypeError`` for unregistered types and
        ``DecodeError`` when the body does not validate.
        """
        type_name, payload = self.decode(envelope)
        event_cls = registry.get(type_name)
        if event_cls is None:
            raise UnknownEventTypeError(type_name)
        try:
            return event_cls.model_validate_json(payload)
        except ValidationError as exc:
            raise DecodeError(
                f"Invalid {type_name} body in message {envelope.message_id}: "
                f"{exc.error_count()} validation error(s)"
            ) from exc

    # ------------------------------------------------------------------
    # Wire format
    # ------------------------------------------------------------------

    def to_wire(self, envelope: Envelope) -> bytes:
        doc = {
            "messageId": envelope.message_id,
            "eventType": envelope.event_type,
            "occurredOn": envelope.occurred_on.isoformat(),
            "body": json.loads(envelope.body),
            "headers": dict(envelope.headers),
        }
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    def from_wire(self, raw: bytes | str) -> Envelope:
        try:
            wire = _WireEnvelope.model_validate_json(raw)
        except ValidationError as exc:
            raise DecodeError(f"Malformed envelope: {exc.error_count()} error(s)") from exc

        return Envelope(
            message_id=wire.message_id,
            event_type=wire.event_type,
            occurred_on=wire.occurred_on,
            body=json.dumps(wire.body, separators=(",", ":")).encode("utf-8"),
            headers=wire.headers,
        )
