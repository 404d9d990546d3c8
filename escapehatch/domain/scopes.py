from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol


class Role(str, Enum):
    USER = "user"
    SPACE_MODERATOR = "space_moderator"
    SPACE_OWNER = "space_owner"
    HUB_ADMIN = "hub_admin"


# Lowest to highest; every role inherits the capabilities of the roles before it.
ROLE_ORDER: tuple[Role, ...] = (
    Role.USER,
    Role.SPACE_MODERATOR,
    Role.SPACE_OWNER,
    Role.HUB_ADMIN,
)

MODERATION_KICK = "moderation.kick"
MODERATION_BAN = "moderation.ban"
MODERATION_UNBAN = "moderation.unban"
MODERATION_TIMEOUT = "moderation.timeout"
MODERATION_REDACT = "moderation.redact"
CHANNEL_LOCK = "channel.lock"
CHANNEL_UNLOCK = "channel.unlock"
CHANNEL_SLOWMODE = "channel.slowmode"
CHANNEL_POSTING = "channel.posting"
VOICE_TOKEN_ISSUE = "voice.token.issue"
REPORTS_TRIAGE = "reports.triage"
AUDIT_READ = "audit.read"
ROLES_GRANT = "roles.grant"
SPACE_MANAGE = "space.manage"
SPACE_TRANSFER = "space.transfer"
FEDERATION_MANAGE = "federation.manage"

# Capabilities each role adds on top of the role directly below it.
_ROLE_GRANTS: dict[Role, frozenset[str]] = {
    Role.USER: frozenset({VOICE_TOKEN_ISSUE}),
    Role.SPACE_MODERATOR: frozenset(
        {
            MODERATION_KICK,
            MODERATION_BAN,
            MODERATION_TIMEOUT,
            MODERATION_REDACT,
            CHANNEL_LOCK,
            CHANNEL_UNLOCK,
            CHANNEL_SLOWMODE,
            REPORTS_TRIAGE,
            AUDIT_READ,
        }
    ),
    Role.SPACE_OWNER: frozenset({MODERATION_UNBAN, CHANNEL_POSTING, ROLES_GRANT, SPACE_MANAGE}),
    Role.HUB_ADMIN: frozenset({SPACE_TRANSFER, FEDERATION_MANAGE}),
}


def _build_capabilities() -> dict[Role, frozenset[str]]:
    capabilities: dict[Role, frozenset[str]] = {}
    inherited: frozenset[str] = frozenset()
    for role in ROLE_ORDER:
        inherited = inherited | _ROLE_GRANTS[role]
        capabilities[role] = inherited
    return capabilities


ROLE_CAPABILITIES: dict[Role, frozenset[str]] = _build_capabilities()

PRIVILEGED_ACTIONS: frozenset[str] = ROLE_CAPABILITIES[Role.HUB_ADMIN]


def parse_role(value: str | Role) -> Role:
    # Reject unknown role strings instead of silently granting nothing.
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError as exc:
        raise ValueError(f"Unknown role: {value}") from exc


def role_rank(role: str | Role) -> int:
    return ROLE_ORDER.index(parse_role(role))


def role_capabilities(role: str | Role) -> frozenset[str]:
    return ROLE_CAPABILITIES[parse_role(role)]


@dataclass(frozen=True)
class Scope:
    """Where an authorization check applies.

    Fields form a containment hierarchy (channel inside server inside hub).
    All fields ``None`` is the platform-global scope.
    """

    hub_id: str | None = None
    server_id: str | None = None
    channel_id: str | None = None

    @classmethod
    def global_scope(cls) -> "Scope":
        return cls()

    def is_global(self) -> bool:
        return self.hub_id is None and self.server_id is None and self.channel_id is None

    def as_dict(self) -> dict[str, Any]:
        return {"hub_id": self.hub_id, "server_id": self.server_id, "channel_id": self.channel_id}


class BindingLike(Protocol):
    role: str
    hub_id: str | None
    server_id: str | None
    channel_id: str | None


@dataclass(frozen=True)
class EffectiveBinding:
    # Binding materialized from a source other than the role_bindings table.
    role: str
    hub_id: str | None
    server_id: str | None
    channel_id: str | None
    source: str = "role_binding"
