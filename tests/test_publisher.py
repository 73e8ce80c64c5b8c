"""
Tests for HttpPublishTarget — REST upsert with retry and circuit breaking.

The engine is simulated with ``httpx.MockTransport``; no network.
"""

import json

import httpx
import pytest

from flowdeck.errors import CircuitOpenError, PublishError, RetryExhaustedError
from flowdeck.loader.publisher import HttpPublishTarget, is_engine_failure
from flowdeck.models import Definition, LoadedDefinition
from flowdeck.utils.resilience import CircuitBreaker, CircuitState, RetryOptions, is_transient_io_error

BASE_URL = "http://engine.local/api/v1"
NO_WAIT = RetryOptions(max_attempts=3, base_delay=0, max_delay=0, should_retry=is_transient_io_error)


class FakeEngine:
    """Scripted responses keyed by HTTP method; records every request."""

    def __init__(self, **status_by_method: int):
        self.status_by_method = status_by_method
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.status_by_method.get(request.method, 200)
        return httpx.Response(status, json={"ok": status < 400})

    @property
    def calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests]


def _target(engine, **kwargs) -> HttpPublishTarget:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(engine))
    kwargs.setdefault("retry_options", NO_WAIT)
    return HttpPublishTarget(BASE_URL, client=client, **kwargs)


@pytest.fixture
def accepted(make_doc):
    definition = Definition.model_validate(make_doc())
    entry = LoadedDefinition(id=definition.id, name=definition.name, source_path="workflows/sample.json")
    return entry, definition


class TestUpsert:
    @pytest.mark.asyncio
    async def test_put_updates_existing_record(self, accepted):
        engine = FakeEngine(PUT=200)
        target = _target(engine)

        await target.publish(*accepted)
        await target.close()

        assert engine.calls == [("PUT", "/api/v1/workflows/sample-workflow")]
        body = json.loads(engine.requests[0].content)
        assert body["id"] == "sample-workflow"
        assert body["sourcePath"] == "workflows/sample.json"
        assert body["nodes"][0]["typeVersion"] == 1

    @pytest.mark.asyncio
    async def test_missing_record_is_created_with_post(self, accepted):
        engine = FakeEngine(PUT=404, POST=201)
        target = _target(engine)

        await target.publish(*accepted)

        assert engine.calls == [
            ("PUT", "/api/v1/workflows/sample-workflow"),
            ("POST", "/api/v1/workflows"),
        ]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, accepted):
        engine = FakeEngine(PUT=422)
        target = _target(engine)

        with pytest.raises(PublishError) as exc_info:
            await target.publish(*accepted)

        assert exc_info.value.status_code == 422
        assert exc_info.value.retryable is False
        assert len(engine.requests) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried_until_exhausted(self, accepted):
        engine = FakeEngine(PUT=503)
        target = _target(engine)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await target.publish(*accepted)

        assert len(engine.requests) == 3
        assert isinstance(exc_info.value.last_error, PublishError)

    @pytest.mark.asyncio
    async def test_transport_error_becomes_publish_error(self, accepted):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        target = _target(refuse, retry_options=RetryOptions(max_attempts=1, base_delay=0, max_delay=0))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await target.publish(*accepted)
        assert "connection error" in str(exc_info.value.last_error)


class TestBreaker:
    @pytest.mark.asyncio
    async def test_open_breaker_rejects_without_a_request(self, accepted):
        engine = FakeEngine(PUT=503)
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60, name="publish", is_failure=is_engine_failure)
        target = _target(engine, breaker=breaker)

        with pytest.raises(RetryExhaustedError):
            await target.publish(*accepted)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await target.publish(*accepted)
        assert len(engine.requests) == 3

    @pytest.mark.asyncio
    async def test_rejected_definitions_do_not_open_the_breaker(self, accepted):
        engine = FakeEngine(PUT=400)
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60, name="publish", is_failure=is_engine_failure)
        target = _target(engine, breaker=breaker)

        for _ in range(3):
            with pytest.raises(PublishError) as exc_info:
                await target.publish(*accepted)
            assert exc_info.value.retryable is False

        assert breaker.state == CircuitState.CLOSED
        assert len(engine.requests) == 3

    def test_default_breaker_ignores_rejections(self):
        target = HttpPublishTarget(BASE_URL)
        rejected = PublishError("bad request", definition_id="x", status_code=400, retryable=False)
        assert target.breaker._is_failure(rejected) is False
        assert target.breaker._is_failure(PublishError("engine down", definition_id="x", status_code=503)) is True


class TestHeaders:
    @pytest.mark.asyncio
    async def test_api_key_header_on_default_client(self, accepted):
        target = HttpPublishTarget(BASE_URL, api_key="secret", api_key_header="X-N8N-API-KEY")
        try:
            assert target._client.headers["X-N8N-API-KEY"] == "secret"
            assert str(target._client.base_url).rstrip("/") == BASE_URL
        finally:
            await target.close()
