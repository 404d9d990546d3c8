from __future__ import annotations

import logging
import time
from urllib.parse import quote

import httpx

from escapehatch.core.config import get_settings
from escapehatch.core.errors import ExternalUnavailableError
from escapehatch.providers.room_control.base import AclResult
from escapehatch.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from escapehatch.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "matrix.synapse"


class SynapseStatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Synapse request failed: {status_code}")
        self.status_code = status_code


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.NetworkError):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


class SynapseRoomControlProvider:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker = breaker

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        # Share breaker state across instances for homeserver calls.
        if self._breaker is not None:
            return self._breaker
        redis = await get_resilience_redis()
        self._breaker = CircuitBreaker(_INTEGRATION, redis=redis)
        return self._breaker

    def _fail(self, message: str) -> AclResult:
        # Strict provisioning turns every homeserver failure into a hard error.
        if self._settings.synapse_strict_provisioning:
            raise ExternalUnavailableError(message)
        logger.warning("synapse_acl_failed_continuing message=%s", message)
        return AclResult(ok=False, applied=False, error=message)

    async def set_room_server_acl(self, room_id: str, allowlist: list[str]) -> AclResult:
        base_url = (self._settings.synapse_base_url or "").rstrip("/")
        access_token = self._settings.synapse_access_token
        if not base_url or not access_token:
            # No homeserver configured: nothing to apply, not an error.
            return AclResult(ok=True, applied=False)

        url = f"{base_url}/_matrix/client/v3/rooms/{quote(room_id, safe='')}/state/m.room.server_acl/"
        payload = {"allow": list(allowlist), "deny": [], "allow_ip_literals": False}
        headers = {"Authorization": f"Bearer {access_token}"}
        client = self._get_client()

        breaker = await self._get_breaker()
        start = time.monotonic()
        try:
            await breaker.before_call()

            async def _call() -> httpx.Response:
                response = await client.put(url, json=payload, headers=headers)
                if response.status_code >= 500:
                    # Raise so retry_async can retry server-side failures.
                    raise SynapseStatusError(response.status_code)
                return response

            response = await retry_async(_call, retryable=_retryable)
        except ExternalUnavailableError as exc:
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            return self._fail(str(exc))
        except SynapseStatusError as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            return self._fail(str(exc))
        except (httpx.HTTPError, TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            return self._fail(f"Synapse request network failure: {exc.__class__.__name__}")

        if response.status_code >= 400:
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            increment_counter("synapse_acl_rejected_total")
            return self._fail(f"Synapse request failed: {response.status_code}")

        await breaker.record_success()
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return AclResult(ok=True, applied=True)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
