from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq.connections import RedisSettings

from escapehatch.core.config import get_settings
from escapehatch.persistence.db import SessionLocal
from escapehatch.services.delegation import expire_space_admin_assignments
from escapehatch.services.federation_queue import ReconcileJobPayload, process_reconciliation_job

logger = logging.getLogger(__name__)


async def reconcile_hub_federation(ctx, payload: dict[str, Any]) -> dict[str, int]:
    summary = await process_reconciliation_job(ReconcileJobPayload.model_validate(payload))
    return summary.as_event_payload()


async def expire_assignments(ctx) -> int:
    # Global sweep; lazy expiry on reads covers the gaps between runs.
    async with SessionLocal() as session:
        return await expire_space_admin_assignments(session)


async def _scheduler_loop() -> None:
    # Sweep on a fixed cadence so expired grants get audit events even when nobody reads them.
    settings = get_settings()
    interval_s = max(1, int(settings.delegation_sweep_interval_s))
    while True:
        try:
            async with SessionLocal() as session:
                await expire_space_admin_assignments(session)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("delegation expiry sweep failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    logging.basicConfig(level=get_settings().log_level)
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())


async def _shutdown(ctx) -> None:
    # Cancel scheduler task on shutdown to avoid dangling coroutines in tests and local runs.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.worker_queue_name
    functions = [reconcile_hub_federation, expire_assignments]
    on_startup = _startup
    on_shutdown = _shutdown
