from __future__ import annotations

import pytest

from escapehatch.domain.scopes import (
    CHANNEL_POSTING,
    FEDERATION_MANAGE,
    MODERATION_BAN,
    MODERATION_UNBAN,
    PRIVILEGED_ACTIONS,
    ROLE_ORDER,
    ROLES_GRANT,
    VOICE_TOKEN_ISSUE,
    Role,
    Scope,
    parse_role,
    role_capabilities,
    role_rank,
)


def test_higher_roles_hold_every_lower_capability() -> None:
    for lower, higher in zip(ROLE_ORDER, ROLE_ORDER[1:]):
        assert role_capabilities(lower) <= role_capabilities(higher)


def test_role_rank_follows_total_order() -> None:
    ranks = [role_rank(role) for role in ("user", "space_moderator", "space_owner", "hub_admin")]
    assert ranks == sorted(ranks)
    assert len(set(ranks)) == 4


def test_moderator_can_ban_but_not_unban_or_grant() -> None:
    capabilities = role_capabilities(Role.SPACE_MODERATOR)
    assert MODERATION_BAN in capabilities
    assert MODERATION_UNBAN not in capabilities
    assert CHANNEL_POSTING not in capabilities
    assert ROLES_GRANT not in capabilities


def test_member_only_issues_voice_tokens() -> None:
    assert role_capabilities("user") == frozenset({VOICE_TOKEN_ISSUE})


def test_hub_admin_holds_every_privileged_action() -> None:
    assert role_capabilities(Role.HUB_ADMIN) == PRIVILEGED_ACTIONS
    assert FEDERATION_MANAGE in PRIVILEGED_ACTIONS


def test_unknown_role_is_rejected() -> None:
    with pytest.raises(ValueError):
        parse_role("creator_admin")


def test_scope_global_and_dict() -> None:
    assert Scope.global_scope().is_global()
    scope = Scope(server_id="srv_1")
    assert not scope.is_global()
    assert scope.as_dict() == {"hub_id": None, "server_id": "srv_1", "channel_id": None}
