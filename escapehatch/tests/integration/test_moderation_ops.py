from __future__ import annotations

import pytest

from escapehatch.core.errors import ForbiddenError, NotFoundError
from escapehatch.services.moderation import (
    create_report,
    list_moderation_actions,
    perform_moderation_action,
    set_channel_controls,
    transition_report_status,
)
from escapehatch.tests.utils.hierarchy import seed_basic_hierarchy, seed_binding, seed_channel


async def _seed(session) -> None:
    await seed_basic_hierarchy(session)
    await seed_binding(
        session, binding_id="rb_mod", product_user_id="mod_1", role="space_moderator", server_id="srv_1"
    )


@pytest.mark.asyncio
async def test_moderator_timeout_is_recorded(session) -> None:
    await _seed(session)
    await perform_moderation_action(
        session,
        actor_user_id="mod_1",
        server_id="srv_1",
        action="timeout",
        reason="cool down",
        target_user_id="user_9",
        timeout_seconds=600,
    )
    rows = await list_moderation_actions(session, server_id="srv_1")
    assert [row.action_type for row in rows] == ["timeout"]
    assert rows[0].metadata_json == {"timeout_seconds": 600}


@pytest.mark.asyncio
async def test_moderator_cannot_unban(session) -> None:
    await _seed(session)
    with pytest.raises(ForbiddenError):
        await perform_moderation_action(
            session, actor_user_id="mod_1", server_id="srv_1", action="unban", reason="appeal", target_user_id="u"
        )
    with pytest.raises(ValueError):
        await perform_moderation_action(
            session, actor_user_id="mod_1", server_id="srv_1", action="nuke", reason="x"
        )


@pytest.mark.asyncio
async def test_channel_controls_apply_each_change_separately(session) -> None:
    await _seed(session)
    controls = await set_channel_controls(
        session,
        actor_user_id="owner_1",
        server_id="srv_1",
        channel_id="chn_1",
        reason="raid",
        lock=True,
        slow_mode_seconds=30,
        posting_restricted_to_roles=["space_moderator"],
    )
    assert controls.is_locked is True
    assert controls.slow_mode_seconds == 30
    assert controls.posting_restricted_to_roles == ["space_moderator"]

    labels = sorted(row.action_type for row in await list_moderation_actions(session, server_id="srv_1"))
    assert labels == ["lock_channel", "set_posting_restrictions", "set_slow_mode"]


@pytest.mark.asyncio
async def test_moderator_cannot_restrict_posting(session) -> None:
    await _seed(session)
    controls = await set_channel_controls(
        session, actor_user_id="mod_1", server_id="srv_1", channel_id="chn_1", reason="raid", lock=True
    )
    assert controls.is_locked is True
    with pytest.raises(ForbiddenError):
        await set_channel_controls(
            session,
            actor_user_id="mod_1",
            server_id="srv_1",
            channel_id="chn_1",
            reason="raid",
            posting_restricted_to_roles=["space_owner"],
        )
    with pytest.raises(NotFoundError):
        await set_channel_controls(
            session, actor_user_id="owner_1", server_id="srv_2", channel_id="chn_1", reason="x", lock=False
        )


@pytest.mark.asyncio
async def test_report_triage_flow(session) -> None:
    await _seed(session)
    report = await create_report(
        session, reporter_user_id="user_5", server_id="srv_1", reason="harassment", target_user_id="user_9"
    )
    assert report.status == "open"
    assert report.id.startswith("rpt_")

    with pytest.raises(ForbiddenError):
        await transition_report_status(
            session, actor_user_id="user_5", server_id="srv_1", report_id=report.id, status="dismissed", reason="no"
        )

    triaged = await transition_report_status(
        session, actor_user_id="mod_1", server_id="srv_1", report_id=report.id, status="triaged", reason="looking"
    )
    assert triaged.status == "triaged"
    assert triaged.triaged_by_user_id == "mod_1"

    with pytest.raises(NotFoundError):
        await transition_report_status(
            session, actor_user_id="mod_1", server_id="srv_1", report_id="rpt_missing", status="resolved", reason="x"
        )
    labels = [row.action_type for row in await list_moderation_actions(session, server_id="srv_1")]
    assert labels == ["triage_report"]


@pytest.mark.asyncio
async def test_report_on_unknown_server_is_rejected(session) -> None:
    await _seed(session)
    with pytest.raises(NotFoundError):
        await create_report(session, reporter_user_id="user_5", server_id="srv_missing", reason="spam")


@pytest.mark.asyncio
async def test_action_on_channel_of_another_server_is_rejected(session) -> None:
    await _seed(session)
    await seed_channel(session, channel_id="chn_2", server_id="srv_2")
    with pytest.raises(NotFoundError):
        await perform_moderation_action(
            session,
            actor_user_id="mod_1",
            server_id="srv_1",
            channel_id="chn_2",
            action="ban",
            reason="spam",
            target_user_id="user_9",
        )
    assert await list_moderation_actions(session, server_id="srv_1") == []
    assert await list_moderation_actions(session, server_id="srv_2") == []
