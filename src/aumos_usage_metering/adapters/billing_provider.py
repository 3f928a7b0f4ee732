"""HTTP client for the external metered-billing provider.

Submits one usage record per ledger entry, passing the ledger event id as
the Idempotency-Key header. The provider de-duplicates on that key, so a
retry of a submission whose response was lost never charges twice.

Status mapping:
  2xx                      -> success
  409 with an id in body   -> success, already recorded under this key
  408 / 425 / 429 / 5xx    -> TransientSyncError (retried with backoff)
  other 4xx                -> PermanentSyncError (dead-lettered)
  timeout / transport      -> TransientSyncError
"""

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from aumos_usage_metering.core.interfaces import ProviderReceipt
from aumos_usage_metering.errors import PermanentSyncError, TransientSyncError

logger = structlog.get_logger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class HttpBillingProvider:
    """Async httpx client for the provider's usage-record endpoint.

    Args:
        base_url: Provider API base URL.
        api_key: Bearer token for the provider API (None to send no auth header).
        timeout_seconds: Per-request timeout; a timeout counts as a transient failure.
        transport: Optional httpx transport (used to inject a mock in tests).
    """

    usage_path = "/v1/usage_records"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def initialize(self) -> None:
        """Create the shared HTTP client.

        Must be called before submit_usage().
        """
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(self._timeout),
            follow_redirects=False,
            transport=self._transport,
        )
        logger.info("billing_provider_initialized", base_url=self._base_url, timeout_seconds=self._timeout)

    async def close(self) -> None:
        """Close the HTTP client on shutdown."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def submit_usage(
        self,
        idempotency_key: str,
        tenant_external_ref: str,
        kind: str,
        quantity: int,
        timestamp: datetime,
    ) -> ProviderReceipt:
        """Report one usage record to the provider.

        Args:
            idempotency_key: Ledger event id; the provider de-duplicates on it.
            tenant_external_ref: Provider customer id of the tenant.
            kind: Usage kind.
            quantity: Units consumed.
            timestamp: When the usage occurred.

        Returns:
            ProviderReceipt carrying the provider's usage record id.

        Raises:
            TransientSyncError: Network failure, timeout, throttling, or 5xx.
            PermanentSyncError: Payload rejected with a non-retryable 4xx.
        """
        if self._client is None:
            raise RuntimeError("HttpBillingProvider.initialize() was not called")

        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        payload = {
            "customer": tenant_external_ref,
            "kind": kind,
            "quantity": quantity,
            "timestamp": int(timestamp.timestamp()),
        }

        try:
            response = await self._client.post(
                self.usage_path,
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.TimeoutException as exc:
            raise TransientSyncError(f"Billing provider timed out: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise TransientSyncError(f"Billing provider unreachable: {exc!r}") from exc

        return self._parse_response(response, idempotency_key)

    @staticmethod
    def _parse_response(response: httpx.Response, idempotency_key: str) -> ProviderReceipt:
        status = response.status_code
        body = _json_or_empty(response)

        if 200 <= status < 300:
            external_ref = body.get("id")
            if not external_ref:
                raise TransientSyncError(
                    "Billing provider accepted usage but returned no record id",
                    status_code=status,
                )
            return ProviderReceipt(external_ref=str(external_ref))

        if status == 409 and body.get("id"):
            logger.info(
                "billing_provider_duplicate_acknowledged",
                idempotency_key=idempotency_key,
                external_ref=body["id"],
            )
            return ProviderReceipt(external_ref=str(body["id"]), duplicate=True)

        detail = _error_detail(body) or response.text[:500]
        message = f"Billing provider returned HTTP {status}: {detail}"
        if status >= 500 or status in _TRANSIENT_STATUS_CODES:
            raise TransientSyncError(message, status_code=status)
        raise PermanentSyncError(message, status_code=status)


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_detail(body: dict[str, Any]) -> str:
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message", ""))
    if error:
        return str(error)
    return ""


__all__ = ["HttpBillingProvider"]
