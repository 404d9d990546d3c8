from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from escapehatch.core.config import get_settings
from escapehatch.persistence.db import SessionLocal
from escapehatch.services.federation import ReconcileSummary, reconcile_hub_federation_policy


logger = logging.getLogger(__name__)

RECONCILE_JOB_NAME = "reconcile_hub_federation"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class ReconcileJobPayload(BaseModel):
    hub_id: str
    actor_user_id: str


def reconcile_job_id(hub_id: str) -> str:
    # One queued reconciliation per hub; repeated policy edits collapse into it.
    return f"reconcile:{hub_id}"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.worker_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def process_reconciliation_job(payload: ReconcileJobPayload) -> ReconcileSummary:
    # Shared by the worker and inline mode so both paths behave the same.
    async with SessionLocal() as session:
        return await reconcile_hub_federation_policy(
            session,
            hub_id=payload.hub_id,
            actor_user_id=payload.actor_user_id,
        )


async def enqueue_reconciliation(hub_id: str, actor_user_id: str) -> str:
    payload = ReconcileJobPayload(hub_id=hub_id, actor_user_id=actor_user_id)
    job_id = reconcile_job_id(hub_id)
    settings = get_settings()
    if settings.federation_reconcile_mode.lower() == "inline":
        await process_reconciliation_job(payload)
        return job_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        RECONCILE_JOB_NAME,
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.worker_queue_name,
    )
    if job is None:
        # arq returns None while a job with this id is still queued or running.
        logger.info("federation_reconcile_already_queued hub_id=%s", hub_id)
    return job.job_id if job else job_id
