"""
Tests for the remote manifest fetcher: retry policy, error mapping and
entry validation.
"""
import asyncio

import httpx
import pytest

from expgate.errors import FetchFailed, FetchHttpError, FetchTimeout, ManifestParseError
from expgate.fetcher import RemoteManifestFetcher
from expgate.resilience import RetryPolicy

URL = "https://example.test/experiments.json"
GOOD_BODY = [
    {"name": "X-exp", "salt": "x", "min": 0, "max": 50},
    {"name": "X-ctrl", "salt": "x", "min": 50, "max": 100},
]


class ScriptedServer:
    """Plays back one scripted outcome per request."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, int):
            return httpx.Response(outcome, json={"error": "nope"})
        if isinstance(outcome, bytes):
            return httpx.Response(200, content=outcome)
        return httpx.Response(200, json=outcome)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_fetcher(server: ScriptedServer, sleep: RecordingSleep, max_attempts: int = 3):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return RemoteManifestFetcher(
        URL,
        timeout_seconds=1.0,
        retry_policy=RetryPolicy(max_attempts=max_attempts, initial_delay=0.1, backoff_factor=2),
        client=client,
        sleep=sleep,
    )


@pytest.mark.asyncio
async def test_fetch_returns_validated_manifest():
    server, sleep = ScriptedServer(GOOD_BODY), RecordingSleep()
    manifest = await make_fetcher(server, sleep).fetch()

    assert [d.name for d in manifest] == ["X-exp", "X-ctrl"]
    assert server.requests == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_server_errors_are_retried_with_exponential_backoff():
    server, sleep = ScriptedServer(503, 500, GOOD_BODY), RecordingSleep()
    manifest = await make_fetcher(server, sleep).fetch()

    assert len(manifest) == 2
    assert server.requests == 3
    assert sleep.delays == [0.1, 0.2]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_fetch_failed():
    server, sleep = ScriptedServer(502), RecordingSleep()

    with pytest.raises(FetchFailed) as excinfo:
        await make_fetcher(server, sleep, max_attempts=4).fetch()

    assert server.requests == 4
    assert excinfo.value.attempts == 4
    assert isinstance(excinfo.value.cause, FetchHttpError)
    assert excinfo.value.cause.status_code == 502
    assert sleep.delays == [0.1, 0.2, 0.4]


@pytest.mark.asyncio
async def test_timeouts_are_retried():
    timeout = httpx.ReadTimeout("read timed out")
    server, sleep = ScriptedServer(timeout, GOOD_BODY), RecordingSleep()

    manifest = await make_fetcher(server, sleep).fetch()

    assert len(manifest) == 2
    assert server.requests == 2


@pytest.mark.asyncio
async def test_persistent_timeout_maps_to_fetch_timeout():
    server, sleep = ScriptedServer(httpx.ConnectTimeout("connect timed out")), RecordingSleep()

    with pytest.raises(FetchFailed) as excinfo:
        await make_fetcher(server, sleep, max_attempts=2).fetch()

    assert isinstance(excinfo.value.cause, FetchTimeout)
    assert server.requests == 2


@pytest.mark.asyncio
async def test_connection_errors_are_retried():
    server, sleep = ScriptedServer(httpx.ConnectError("refused"), GOOD_BODY), RecordingSleep()
    manifest = await make_fetcher(server, sleep).fetch()
    assert len(manifest) == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    server, sleep = ScriptedServer(404), RecordingSleep()

    with pytest.raises(FetchFailed) as excinfo:
        await make_fetcher(server, sleep).fetch()

    assert server.requests == 1
    assert excinfo.value.cause.status_code == 404
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_invalid_json_is_not_retried():
    server, sleep = ScriptedServer(b"<html>oops</html>"), RecordingSleep()

    with pytest.raises(FetchFailed) as excinfo:
        await make_fetcher(server, sleep).fetch()

    assert server.requests == 1
    assert isinstance(excinfo.value.cause, ManifestParseError)


@pytest.mark.asyncio
async def test_non_array_body_is_a_parse_error():
    server, sleep = ScriptedServer({"experiments": GOOD_BODY}), RecordingSleep()

    with pytest.raises(FetchFailed) as excinfo:
        await make_fetcher(server, sleep).fetch()

    assert isinstance(excinfo.value.cause, ManifestParseError)


@pytest.mark.asyncio
async def test_malformed_entries_are_dropped_not_fatal():
    body = GOOD_BODY + [
        {"name": "Inverted", "salt": "i", "min": 80, "max": 20},
        {"name": "Huge", "salt": "h", "min": 0, "max": 1000},
        {"salt": "nameless", "min": 0, "max": 10},
        ["not", "an", "object"],
    ]
    server, sleep = ScriptedServer(body), RecordingSleep()

    manifest = await make_fetcher(server, sleep).fetch()

    assert [d.name for d in manifest] == ["X-exp", "X-ctrl"]


@pytest.mark.asyncio
async def test_slow_response_is_bounded_by_total_deadline():
    async def dripping_server(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json=GOOD_BODY)

    client = httpx.AsyncClient(transport=httpx.MockTransport(dripping_server))
    sleep = RecordingSleep()
    fetcher = RemoteManifestFetcher(
        URL,
        timeout_seconds=0.05,
        retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.1, backoff_factor=2),
        client=client,
        sleep=sleep,
    )

    with pytest.raises(FetchFailed) as excinfo:
        await asyncio.wait_for(fetcher.fetch(), timeout=2)

    assert isinstance(excinfo.value.cause, FetchTimeout)
    assert excinfo.value.attempts == 2
    assert sleep.delays == [0.1]
