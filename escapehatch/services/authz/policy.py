from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.core.config import get_settings
from escapehatch.core.errors import ConflictError, NotFoundError
from escapehatch.domain.models import RoleAssignmentAuditLog, RoleBinding, utc_now
from escapehatch.domain.scopes import (
    ROLES_GRANT,
    SPACE_MANAGE,
    BindingLike,
    EffectiveBinding,
    Role,
    Scope,
    parse_role,
    role_capabilities,
    role_rank,
)
from escapehatch.persistence.repos import delegation as delegation_repo
from escapehatch.persistence.repos import hierarchy as hierarchy_repo
from escapehatch.persistence.repos import roles as roles_repo
from escapehatch.services.audit import append_audit_row


logger = logging.getLogger(__name__)

_SCOPE_FIELDS = ("hub_id", "server_id", "channel_id")


@dataclass(frozen=True)
class _GrantDecision:
    allowed: bool
    reason: str


def binding_matches_scope(binding: BindingLike, scope: Scope) -> bool:
    # Every non-null binding field must equal the requested field; null widens.
    for field in _SCOPE_FIELDS:
        bound = getattr(binding, field)
        if bound is not None and bound != getattr(scope, field):
            return False
    return True


def binding_allows_action(binding: BindingLike, action: str) -> bool:
    try:
        capabilities = role_capabilities(binding.role)
    except ValueError:
        # Rows with retired role names grant nothing rather than failing the whole check.
        logger.warning("role_binding_unknown_role role=%s", binding.role)
        return False
    return action in capabilities


async def complete_scope(session: AsyncSession, scope: Scope) -> Scope:
    """Resolve containing ids from the stored hierarchy.

    Coarser bindings then match scopes named by their finest id. Parent ids
    supplied by the caller must agree with the stored ones; a channel named
    under the wrong server raises NotFoundError rather than borrowing that
    server's authority.
    """
    hub_id, server_id, channel_id = scope.hub_id, scope.server_id, scope.channel_id
    if channel_id is not None:
        channel = await hierarchy_repo.get_channel(session, channel_id)
        if channel is None:
            raise NotFoundError(f"Channel not found: {channel_id}")
        if server_id is not None and server_id != channel.server_id:
            raise NotFoundError(f"Channel not found in server: {channel_id}")
        server_id = channel.server_id
    if server_id is not None:
        server = await hierarchy_repo.get_server(session, server_id)
        if server is not None:
            if hub_id is not None and hub_id != server.hub_id:
                raise NotFoundError(f"Server not found in hub: {server_id}")
            hub_id = server.hub_id
    return Scope(hub_id=hub_id, server_id=server_id, channel_id=channel_id)


async def load_effective_bindings(session: AsyncSession, actor_user_id: str) -> list[BindingLike]:
    """Return every binding that currently grants the actor authority.

    Explicit role bindings are combined with grants derived from other
    tables: active delegated assignments and server ownership act as
    ``space_owner`` at the server, hub ownership acts as ``hub_admin`` at
    the hub. Expired delegations are swept for the actor first.
    """
    # Imported here because delegation depends on this module for its own checks.
    from escapehatch.services.delegation import expire_space_admin_assignments

    await expire_space_admin_assignments(session, assigned_user_id=actor_user_id)
    now = utc_now()
    bindings: list[BindingLike] = list(await roles_repo.list_bindings_for_user(session, actor_user_id))
    for hub_id, server_id in await delegation_repo.list_active_for_user(
        session, assigned_user_id=actor_user_id, now=now
    ):
        bindings.append(
            EffectiveBinding(
                role=Role.SPACE_OWNER.value,
                hub_id=hub_id,
                server_id=server_id,
                channel_id=None,
                source="delegated_assignment",
            )
        )
    for hub_id, server_id in await hierarchy_repo.list_owned_servers(session, actor_user_id):
        bindings.append(
            EffectiveBinding(
                role=Role.SPACE_OWNER.value,
                hub_id=hub_id,
                server_id=server_id,
                channel_id=None,
                source="server_owner",
            )
        )
    for hub_id in await hierarchy_repo.list_owned_hub_ids(session, actor_user_id):
        bindings.append(
            EffectiveBinding(
                role=Role.HUB_ADMIN.value,
                hub_id=hub_id,
                server_id=None,
                channel_id=None,
                source="hub_owner",
            )
        )
    return bindings


async def is_action_allowed(
    session: AsyncSession,
    *,
    actor_user_id: str,
    action: str,
    scope: Scope,
) -> bool:
    # Union over matching bindings: one grant anywhere in scope is enough.
    completed = await complete_scope(session, scope)
    bindings = await load_effective_bindings(session, actor_user_id)
    return any(
        binding_matches_scope(binding, completed) and binding_allows_action(binding, action)
        for binding in bindings
    )


async def list_allowed_actions(session: AsyncSession, *, actor_user_id: str, scope: Scope) -> set[str]:
    # Capability discovery only; enforcement always goes through is_action_allowed.
    completed = await complete_scope(session, scope)
    allowed: set[str] = set()
    for binding in await load_effective_bindings(session, actor_user_id):
        if not binding_matches_scope(binding, completed):
            continue
        try:
            allowed |= role_capabilities(binding.role)
        except ValueError:
            logger.warning("role_binding_unknown_role role=%s", binding.role)
    return allowed


async def can_manage_server(session: AsyncSession, *, actor_user_id: str, server_id: str) -> bool:
    server = await hierarchy_repo.get_server(session, server_id)
    if server is None:
        return False
    if server.owner_user_id == actor_user_id:
        return True
    return await is_action_allowed(
        session,
        actor_user_id=actor_user_id,
        action=SPACE_MANAGE,
        scope=Scope(hub_id=server.hub_id, server_id=server.id),
    )


async def _decide_role_authority(
    session: AsyncSession,
    *,
    actor_user_id: str,
    role: Role,
    scope: Scope,
) -> _GrantDecision:
    # The actor must be able to grant at this scope and may not grant above their own rank.
    required_rank = role_rank(role)
    can_grant_somewhere = False
    for binding in await load_effective_bindings(session, actor_user_id):
        if not binding_matches_scope(binding, scope) or not binding_allows_action(binding, ROLES_GRANT):
            continue
        can_grant_somewhere = True
        if role_rank(binding.role) >= required_rank:
            return _GrantDecision(allowed=True, reason="authorized")
    if can_grant_somewhere:
        return _GrantDecision(allowed=False, reason=f"Actor cannot grant role above their own: {role.value}")
    return _GrantDecision(allowed=False, reason="Actor lacks role management authority in scope")


async def grant_role(
    session: AsyncSession,
    *,
    actor_user_id: str,
    target_user_id: str,
    role: str | Role,
    scope: Scope,
) -> RoleBinding:
    """Grant ``role`` to the target at ``scope`` on behalf of the actor.

    Every attempt leaves exactly one row in the role assignment audit log.
    A successful grant is committed together with its ``granted`` row; a
    denied attempt records a ``denied`` row and raises ConflictError.
    """
    target_role = parse_role(role)
    completed = await complete_scope(session, scope)
    decision = await _decide_role_authority(
        session, actor_user_id=actor_user_id, role=target_role, scope=completed
    )
    if not decision.allowed:
        await append_audit_row(
            session,
            roles_repo.build_assignment_audit(
                actor_user_id=actor_user_id,
                target_user_id=target_user_id,
                role=target_role.value,
                hub_id=completed.hub_id,
                server_id=completed.server_id,
                channel_id=completed.channel_id,
                outcome="denied",
                reason=decision.reason,
            ),
            event_type="role.grant.denied",
        )
        logger.info(
            "role_grant_denied actor=%s target=%s role=%s server_id=%s",
            actor_user_id,
            target_user_id,
            target_role.value,
            completed.server_id,
        )
        raise ConflictError(decision.reason)

    binding = await roles_repo.find_identical_binding(
        session,
        product_user_id=target_user_id,
        role=target_role.value,
        hub_id=completed.hub_id,
        server_id=completed.server_id,
        channel_id=completed.channel_id,
    )
    if binding is None:
        binding = roles_repo.build_binding(
            product_user_id=target_user_id,
            role=target_role.value,
            hub_id=completed.hub_id,
            server_id=completed.server_id,
            channel_id=completed.channel_id,
        )
        session.add(binding)
    session.add(
        roles_repo.build_assignment_audit(
            actor_user_id=actor_user_id,
            target_user_id=target_user_id,
            role=target_role.value,
            hub_id=completed.hub_id,
            server_id=completed.server_id,
            channel_id=completed.channel_id,
            outcome="granted",
            reason=None,
        )
    )
    await session.commit()
    return binding


async def revoke_role(session: AsyncSession, *, actor_user_id: str, binding_id: str) -> RoleBinding:
    binding = await roles_repo.get_binding(session, binding_id)
    if binding is None:
        raise NotFoundError(f"Role binding not found: {binding_id}")
    scope = Scope(hub_id=binding.hub_id, server_id=binding.server_id, channel_id=binding.channel_id)
    target_role = parse_role(binding.role)
    decision = await _decide_role_authority(session, actor_user_id=actor_user_id, role=target_role, scope=scope)
    audit = roles_repo.build_assignment_audit(
        actor_user_id=actor_user_id,
        target_user_id=binding.product_user_id,
        role=binding.role,
        hub_id=binding.hub_id,
        server_id=binding.server_id,
        channel_id=binding.channel_id,
        outcome="revoked" if decision.allowed else "denied",
        reason=None if decision.allowed else decision.reason,
    )
    if not decision.allowed:
        await append_audit_row(session, audit, event_type="role.revoke.denied")
        raise ConflictError(decision.reason)
    await session.delete(binding)
    session.add(audit)
    await session.commit()
    return binding


async def list_role_bindings(session: AsyncSession, product_user_id: str) -> list[RoleBinding]:
    return await roles_repo.list_bindings_for_user(session, product_user_id)


async def list_role_assignment_audit(
    session: AsyncSession,
    *,
    target_user_id: str | None = None,
    server_id: str | None = None,
    limit: int | None = None,
) -> list[RoleAssignmentAuditLog]:
    limit = limit or get_settings().delegation_audit_default_limit
    return await roles_repo.list_assignment_audit(
        session, target_user_id=target_user_id, server_id=server_id, limit=limit
    )
