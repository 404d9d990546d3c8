from __future__ import annotations

from escapehatch.domain.scopes import (
    MODERATION_BAN,
    SPACE_MANAGE,
    EffectiveBinding,
    Scope,
)
from escapehatch.services.authz.policy import binding_allows_action, binding_matches_scope


def _binding(role: str, hub_id=None, server_id=None, channel_id=None) -> EffectiveBinding:
    return EffectiveBinding(role=role, hub_id=hub_id, server_id=server_id, channel_id=channel_id)


def test_space_moderator_can_ban_within_scope() -> None:
    binding = _binding("space_moderator", server_id="srv_1")
    assert binding_allows_action(binding, MODERATION_BAN)
    assert binding_matches_scope(binding, Scope(server_id="srv_1"))


def test_cross_scope_moderation_is_rejected() -> None:
    binding = _binding("space_moderator", server_id="srv_primary")
    assert not binding_matches_scope(binding, Scope(server_id="srv_other"))


def test_server_binding_covers_channels_inside_it() -> None:
    binding = _binding("space_moderator", hub_id="hub_1", server_id="srv_1")
    assert binding_matches_scope(binding, Scope(hub_id="hub_1", server_id="srv_1", channel_id="chn_9"))


def test_channel_binding_does_not_cover_whole_server() -> None:
    binding = _binding("space_moderator", server_id="srv_1", channel_id="chn_1")
    assert not binding_matches_scope(binding, Scope(server_id="srv_1"))
    assert not binding_matches_scope(binding, Scope(server_id="srv_1", channel_id="chn_2"))


def test_global_binding_matches_every_scope() -> None:
    binding = _binding("hub_admin")
    assert binding_matches_scope(binding, Scope.global_scope())
    assert binding_matches_scope(binding, Scope(hub_id="hub_9", server_id="srv_9", channel_id="chn_9"))


def test_bound_field_missing_from_request_does_not_match() -> None:
    binding = _binding("space_owner", hub_id="hub_1", server_id="srv_1")
    assert not binding_matches_scope(binding, Scope(hub_id="hub_1"))


def test_unknown_role_allows_nothing() -> None:
    assert not binding_allows_action(_binding("creator_admin", server_id="srv_1"), SPACE_MANAGE)
