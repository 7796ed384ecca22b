"""Integration event contract.

Every message published on the bus is an ``IntegrationEvent`` subclass:
an immutable Pydantic model that carries its identity (``event_id``) and
the time the fact occurred (``occurred_on``).  Both are fixed when the
event is constructed and travel unchanged through redeliveries.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .ids import ensure_utc, new_event_id, utc_now


class IntegrationEvent(BaseModel):
    """Base for all integration events. Provides identity and time."""

    model_config = ConfigDict(frozen=True)

    event_id: uuid.UUID = Field(default_factory=new_event_id)
    occurred_on: datetime = Field(default_factory=utc_now)

    @field_validator("occurred_on")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def event_type_name(cls) -> str:
        """Routing discriminator: the contract's class name."""
        return cls.__name__

    @property
    def event_type(self) -> str:
        return type(self).event_type_name()
