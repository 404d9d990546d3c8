from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.core.config import get_settings
from escapehatch.core.errors import ExternalUnavailableError, NotFoundError
from escapehatch.domain.models import FederationPolicyEvent, RoomAclStatus, ensure_utc, utc_now
from escapehatch.persistence.repos import federation as federation_repo
from escapehatch.persistence.repos import hierarchy as hierarchy_repo
from escapehatch.providers.room_control.base import AclResult, RoomControlProvider
from escapehatch.providers.room_control.factory import get_room_control_provider
from escapehatch.services.audit import SYSTEM_ACTOR_ID
from escapehatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STATUS_APPLIED = "applied"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class FederationPolicyRecord:
    hub_id: str
    allowlist: list[str]
    updated_by_user_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # False when the hub has no stored policy and the default allowlist applies.
    stored: bool = True


@dataclass(frozen=True)
class ReconcileSummary:
    checked_rooms: int = 0
    applied_rooms: int = 0
    failed_rooms: int = 0
    room_statuses: dict[str, str] = field(default_factory=dict)

    def as_event_payload(self) -> dict[str, int]:
        return {
            "checked_rooms": self.checked_rooms,
            "applied_rooms": self.applied_rooms,
            "failed_rooms": self.failed_rooms,
        }


def normalize_host(host: str) -> str:
    return host.strip().lower()


def normalize_allowlist(hosts: Iterable[str]) -> list[str]:
    # Trim, lower-case and de-duplicate while keeping first-seen order.
    normalized: list[str] = []
    seen: set[str] = set()
    for host in hosts:
        value = normalize_host(host)
        if not value or value in seen:
            continue
        seen.add(value)
        normalized.append(value)
    return normalized


def is_federation_host_allowed(allowlist: Iterable[str], host: str) -> bool:
    target = normalize_host(host)
    if not target:
        return False
    return any(normalize_host(entry) == target for entry in allowlist)


def default_allowlist() -> list[str]:
    # Configured defaults plus our own homeserver, which must always federate with itself.
    settings = get_settings()
    hosts = settings.federation_default_allowlist.split(",") if settings.federation_default_allowlist else []
    if settings.synapse_base_url:
        own_host = urlparse(settings.synapse_base_url).hostname
        if own_host:
            hosts.append(own_host)
    return normalize_allowlist(hosts)


async def get_hub_federation_policy(session: AsyncSession, hub_id: str) -> FederationPolicyRecord | None:
    policy = await federation_repo.get_policy(session, hub_id)
    if policy is None:
        return None
    return FederationPolicyRecord(
        hub_id=policy.hub_id,
        allowlist=list(policy.allowlist or []),
        updated_by_user_id=policy.updated_by_user_id,
        created_at=ensure_utc(policy.created_at),
        updated_at=ensure_utc(policy.updated_at),
    )


async def effective_hub_policy(session: AsyncSession, hub_id: str) -> FederationPolicyRecord:
    policy = await get_hub_federation_policy(session, hub_id)
    if policy is not None:
        return policy
    return FederationPolicyRecord(
        hub_id=hub_id,
        allowlist=default_allowlist(),
        updated_by_user_id=SYSTEM_ACTOR_ID,
        stored=False,
    )


async def upsert_hub_federation_policy(
    session: AsyncSession,
    *,
    hub_id: str,
    allowlist: Iterable[str],
    actor_user_id: str,
) -> FederationPolicyRecord:
    """Replace the hub's allowlist and record a ``policy_updated`` event.

    Authorization is the caller's concern (``federation.manage``); this
    function only normalizes and persists.
    """
    if await hierarchy_repo.get_hub(session, hub_id) is None:
        raise NotFoundError(f"Hub not found: {hub_id}")
    normalized = normalize_allowlist(allowlist)
    policy = await federation_repo.upsert_policy(
        session,
        hub_id=hub_id,
        allowlist=normalized,
        actor_user_id=actor_user_id,
        now=utc_now(),
    )
    session.add(
        federation_repo.build_policy_event(
            hub_id=hub_id,
            actor_user_id=actor_user_id,
            action_type="policy_updated",
            policy_json={"allowlist": normalized},
        )
    )
    record = FederationPolicyRecord(
        hub_id=policy.hub_id,
        allowlist=list(policy.allowlist or []),
        updated_by_user_id=policy.updated_by_user_id,
        created_at=ensure_utc(policy.created_at),
        updated_at=ensure_utc(policy.updated_at),
    )
    await session.commit()
    logger.info("federation_policy_updated hub_id=%s hosts=%s actor=%s", hub_id, len(normalized), actor_user_id)
    return record


def _status_for(result: AclResult) -> str:
    if not result.ok:
        return STATUS_ERROR
    return STATUS_APPLIED if result.applied else STATUS_SKIPPED


async def apply_federation_policy_to_room(
    session: AsyncSession,
    *,
    hub_id: str,
    room_id: str | None,
    room_kind: str,
    server_id: str | None = None,
    channel_id: str | None = None,
    provider: RoomControlProvider | None = None,
) -> str:
    # Rooms that were never provisioned have nothing to enforce.
    if not room_id:
        return STATUS_SKIPPED
    provider = provider or get_room_control_provider()
    policy = await effective_hub_policy(session, hub_id)

    strict_error: ExternalUnavailableError | None = None
    try:
        result = await provider.set_room_server_acl(room_id, policy.allowlist)
    except ExternalUnavailableError as exc:
        # Strict provisioning: record the failure for this room, then surface it.
        strict_error = exc
        result = AclResult(ok=False, applied=False, error=str(exc))

    status = _status_for(result)
    now = utc_now()
    await federation_repo.upsert_room_status(
        session,
        room_id=room_id,
        hub_id=hub_id,
        server_id=server_id,
        channel_id=channel_id,
        room_kind=room_kind,
        allowlist=policy.allowlist,
        status=status,
        last_error=result.error,
        applied_at=now if status == STATUS_APPLIED else None,
        now=now,
    )
    await session.commit()
    increment_counter(f"federation_room_acl_total.{status}")
    if status == STATUS_ERROR:
        logger.warning("room_acl_apply_failed room_id=%s hub_id=%s error=%s", room_id, hub_id, result.error)
    if strict_error is not None:
        raise strict_error
    return status


async def reconcile_hub_federation_policy(
    session: AsyncSession,
    *,
    hub_id: str,
    actor_user_id: str,
    provider: RoomControlProvider | None = None,
) -> ReconcileSummary:
    """Push the hub's effective allowlist to every provisioned room.

    Each room is applied independently, so one failing room never blocks
    the rest, and status rows are upserted so running this again only
    refreshes them. Rooms without a homeserver id are not counted.
    """
    if await hierarchy_repo.get_hub(session, hub_id) is None:
        raise NotFoundError(f"Hub not found: {hub_id}")
    provider = provider or get_room_control_provider()

    targets: list[tuple[str, str, str, str | None]] = []
    for server in await hierarchy_repo.list_servers_for_hub(session, hub_id):
        if server.matrix_space_id:
            targets.append((server.matrix_space_id, "space", server.id, None))
    for channel in await hierarchy_repo.list_channels_for_hub(session, hub_id):
        if channel.matrix_room_id:
            targets.append((channel.matrix_room_id, "room", channel.server_id, channel.id))

    checked = applied = failed = 0
    room_statuses: dict[str, str] = {}
    for room_id, room_kind, server_id, channel_id in targets:
        checked += 1
        status = await apply_federation_policy_to_room(
            session,
            hub_id=hub_id,
            room_id=room_id,
            room_kind=room_kind,
            server_id=server_id,
            channel_id=channel_id,
            provider=provider,
        )
        room_statuses[room_id] = status
        if status == STATUS_APPLIED:
            applied += 1
        elif status == STATUS_ERROR:
            failed += 1

    summary = ReconcileSummary(
        checked_rooms=checked,
        applied_rooms=applied,
        failed_rooms=failed,
        room_statuses=room_statuses,
    )
    session.add(
        federation_repo.build_policy_event(
            hub_id=hub_id,
            actor_user_id=actor_user_id,
            action_type="policy_reconciled",
            policy_json=summary.as_event_payload(),
        )
    )
    await session.commit()
    logger.info(
        "federation_policy_reconciled hub_id=%s checked=%s applied=%s failed=%s",
        hub_id,
        checked,
        applied,
        failed,
    )
    return summary


async def list_federation_policy_events(
    session: AsyncSession,
    *,
    hub_id: str,
    limit: int | None = None,
) -> list[FederationPolicyEvent]:
    limit = limit or get_settings().federation_event_default_limit
    return await federation_repo.list_policy_events(session, hub_id=hub_id, limit=limit)


async def list_federation_policy_statuses(session: AsyncSession, hub_id: str) -> list[RoomAclStatus]:
    return await federation_repo.list_room_statuses(session, hub_id)
