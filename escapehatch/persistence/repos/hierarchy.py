from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.domain.models import Channel, Hub, Server


async def get_hub(session: AsyncSession, hub_id: str) -> Hub | None:
    return await session.get(Hub, hub_id)


async def get_server(session: AsyncSession, server_id: str) -> Server | None:
    return await session.get(Server, server_id)


async def get_channel(session: AsyncSession, channel_id: str) -> Channel | None:
    return await session.get(Channel, channel_id)


async def get_channel_in_server(
    session: AsyncSession,
    *,
    server_id: str,
    channel_id: str,
) -> Channel | None:
    # Never resolve a channel outside the server named by the caller's scope.
    result = await session.execute(
        select(Channel).where(Channel.id == channel_id, Channel.server_id == server_id)
    )
    return result.scalar_one_or_none()


async def list_servers_for_hub(session: AsyncSession, hub_id: str) -> list[Server]:
    result = await session.execute(
        select(Server).where(Server.hub_id == hub_id).order_by(Server.created_at.asc(), Server.id.asc())
    )
    return list(result.scalars().all())


async def list_channels_for_hub(session: AsyncSession, hub_id: str) -> list[Channel]:
    result = await session.execute(
        select(Channel)
        .join(Server, Server.id == Channel.server_id)
        .where(Server.hub_id == hub_id)
        .order_by(Channel.created_at.asc(), Channel.id.asc())
    )
    return list(result.scalars().all())


async def list_owned_servers(session: AsyncSession, product_user_id: str) -> list[tuple[str, str]]:
    # Return (hub_id, server_id) pairs where the user is the owner of record.
    result = await session.execute(
        select(Server.hub_id, Server.id).where(Server.owner_user_id == product_user_id)
    )
    return [(row.hub_id, row.id) for row in result.all()]


async def list_owned_hub_ids(session: AsyncSession, product_user_id: str) -> list[str]:
    result = await session.execute(select(Hub.id).where(Hub.owner_user_id == product_user_id))
    return list(result.scalars().all())

