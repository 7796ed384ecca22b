"""User service integration events."""

from __future__ import annotations

import uuid

from commerce_bus.core.events import IntegrationEvent


class UserRegistered(IntegrationEvent):
    user_id: uuid.UUID
    email: str
    first_name: str
    last_name: str


class ProfileUpdated(IntegrationEvent):
    user_id: uuid.UUID
    display_name: str
    avatar_url: str = ""


class AddressAdded(IntegrationEvent):
    user_id: uuid.UUID
    address_id: uuid.UUID
    street: str
    number: str
    city: str
    state: str
    postal_code: str
