from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class AclResult:
    # ok=False means the homeserver call failed; applied=False with ok=True means nothing to do.
    ok: bool
    applied: bool
    error: str | None = None


class RoomControlProvider(Protocol):
    async def set_room_server_acl(self, room_id: str, allowlist: list[str]) -> AclResult:
        ...
