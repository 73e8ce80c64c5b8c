"""
Publish targets — Push accepted definitions to the execution engine.

Publishing is best-effort: the orchestrator logs and reports failures but
never unregisters a definition because it could not be published.

``HttpPublishTarget`` upserts a remote record over REST:
  - ``PUT  {base_url}/workflows/{id}``  update an existing record
  - ``POST {base_url}/workflows``       create it when the PUT returns 404

Every call carries an explicit timeout, transient failures are retried
with backoff, and a circuit breaker stops hammering an engine that keeps
failing.
"""

from __future__ import annotations

import abc
import time

import httpx
import structlog

from flowdeck.errors import PublishError
from flowdeck.models import Definition, LoadedDefinition
from flowdeck.utils.resilience import CircuitBreaker, RetryExecutor, RetryOptions, is_transient_io_error

logger = structlog.get_logger(__name__)


def is_engine_failure(exc: BaseException) -> bool:
    """Breaker predicate: a definition the engine rejects (4xx) says nothing about engine health."""
    return not (isinstance(exc, PublishError) and not exc.retryable)


class PublishTarget(abc.ABC):
    """External deployment target for accepted definitions."""

    name: str = "publish-target"

    @abc.abstractmethod
    async def publish(self, entry: LoadedDefinition, definition: Definition) -> None:
        """Create or update the remote record for ``entry``. Raise on failure."""

    async def close(self) -> None:
        """Release client resources."""


class HttpPublishTarget(PublishTarget):
    """
    REST upsert into an execution engine.

    Usage:
        target = HttpPublishTarget("http://localhost:5678/api/v1", api_key="...")
        await target.publish(entry, definition)
        await target.close()
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 10.0,
        api_key_header: str = "X-API-Key",
        breaker: CircuitBreaker | None = None,
        retry_options: RetryOptions | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers[api_key_header] = api_key

        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
        )
        self._breaker = breaker or CircuitBreaker(name="publish", is_failure=is_engine_failure)
        self._retry = RetryExecutor(
            retry_options
            or RetryOptions(max_attempts=3, base_delay=0.5, max_delay=5.0, should_retry=is_transient_io_error),
            name="publish",
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def publish(self, entry: LoadedDefinition, definition: Definition) -> None:
        await self._breaker.call(lambda: self._retry.run(lambda: self._upsert(entry, definition)))

    async def close(self) -> None:
        await self._client.aclose()

    async def _upsert(self, entry: LoadedDefinition, definition: Definition) -> None:
        payload = definition.to_document()
        payload["sourcePath"] = entry.source_path

        start = time.monotonic()
        try:
            resp = await self._client.put(f"/workflows/{entry.id}", json=payload)
            method = "PUT"
            if resp.status_code == 404:
                resp = await self._client.post("/workflows", json=payload)
                method = "POST"
        except httpx.TimeoutException as exc:
            raise PublishError(
                f"Publishing '{entry.id}' timed out: {exc}",
                definition_id=entry.id,
            ) from exc
        except httpx.TransportError as exc:
            raise PublishError(
                f"Publishing '{entry.id}' failed: connection error: {exc}",
                definition_id=entry.id,
            ) from exc

        latency_ms = (time.monotonic() - start) * 1000

        if resp.status_code >= 400:
            raise PublishError(
                f"Publishing '{entry.id}' failed: {resp.status_code} {resp.text}",
                definition_id=entry.id,
                status_code=resp.status_code,
                retryable=resp.status_code >= 500 or resp.status_code == 429,
            )

        logger.info(
            "definition_published",
            definition_id=entry.id,
            method=method,
            status=resp.status_code,
            latency_ms=round(latency_ms),
        )
