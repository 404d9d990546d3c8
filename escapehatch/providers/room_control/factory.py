from __future__ import annotations

from escapehatch.core.config import get_settings
from escapehatch.providers.room_control.base import RoomControlProvider
from escapehatch.providers.room_control.fake import FakeRoomControlProvider
from escapehatch.providers.room_control.synapse import SynapseRoomControlProvider


def get_room_control_provider() -> RoomControlProvider:
    settings = get_settings()
    provider = (settings.room_control_provider or "synapse").lower()

    if provider == "fake":
        return FakeRoomControlProvider()
    if provider == "synapse":
        return SynapseRoomControlProvider()

    raise ValueError(f"Unsupported room control provider: {provider}")
