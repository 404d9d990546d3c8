from __future__ import annotations

import pytest

from escapehatch.core.config import get_settings
from escapehatch.providers.room_control.factory import get_room_control_provider
from escapehatch.providers.room_control.fake import FakeRoomControlProvider
from escapehatch.providers.room_control.synapse import SynapseRoomControlProvider


def test_factory_selects_provider(monkeypatch) -> None:
    monkeypatch.setenv("ROOM_CONTROL_PROVIDER", "fake")
    get_settings.cache_clear()
    assert isinstance(get_room_control_provider(), FakeRoomControlProvider)

    monkeypatch.setenv("ROOM_CONTROL_PROVIDER", "Synapse")
    get_settings.cache_clear()
    assert isinstance(get_room_control_provider(), SynapseRoomControlProvider)

    monkeypatch.setenv("ROOM_CONTROL_PROVIDER", "slack")
    get_settings.cache_clear()
    with pytest.raises(ValueError):
        get_room_control_provider()


@pytest.mark.asyncio
async def test_fake_provider_scripts_failures() -> None:
    provider = FakeRoomControlProvider(failing_rooms={"!bad:hs.test"})
    ok = await provider.set_room_server_acl("!good:hs.test", ["hs.test"])
    bad = await provider.set_room_server_acl("!bad:hs.test", ["hs.test"])
    assert (ok.ok, ok.applied) == (True, True)
    assert (bad.ok, bad.applied) == (False, False)
    assert bad.error
    assert [room for room, _ in provider.calls] == ["!good:hs.test", "!bad:hs.test"]
