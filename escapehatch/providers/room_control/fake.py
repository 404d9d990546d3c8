from __future__ import annotations

from escapehatch.providers.room_control.base import AclResult


class FakeRoomControlProvider:
    def __init__(self, *, failing_rooms: set[str] | None = None, configured: bool = True) -> None:
        # Deterministic outcomes let tests script partial failures per room.
        self._failing_rooms = set(failing_rooms or ())
        self._configured = configured
        self.calls: list[tuple[str, list[str]]] = []

    def fail_room(self, room_id: str) -> None:
        self._failing_rooms.add(room_id)

    def recover_room(self, room_id: str) -> None:
        self._failing_rooms.discard(room_id)

    async def set_room_server_acl(self, room_id: str, allowlist: list[str]) -> AclResult:
        self.calls.append((room_id, list(allowlist)))
        if not self._configured:
            return AclResult(ok=True, applied=False)
        if room_id in self._failing_rooms:
            return AclResult(ok=False, applied=False, error=f"Scripted failure for {room_id}")
        return AclResult(ok=True, applied=True)
