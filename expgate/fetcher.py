"""
Remote manifest download with timeout, retry and validation.
"""
import asyncio
import json
from typing import Awaitable, Callable, Optional, Protocol

import httpx
from datadog import statsd
from ddtrace import tracer

from expgate.errors import FetchHttpError, FetchTimeout, ManifestParseError
from expgate.logging_config import setup_logging
from expgate.models import Manifest, parse_manifest
from expgate.resilience import RetryPolicy, call_with_backoff

logger = setup_logging()


class ManifestFetcher(Protocol):
    """Anything that can produce a validated manifest or raise FetchFailed"""

    async def fetch(self) -> Manifest:
        ...


def is_transient_fetch_error(exc: Exception) -> bool:
    """Timeouts, connection errors and 5xx are retried; 4xx and bad bodies are not."""
    if isinstance(exc, FetchTimeout):
        return True
    if isinstance(exc, FetchHttpError):
        return exc.is_transient
    return False


class RemoteManifestFetcher:
    """
    Downloads the experiment manifest over HTTP.

    The caller gets a list of valid descriptors or a FetchFailed; malformed
    entries are dropped and logged rather than failing the whole download.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client
        self._sleep = sleep

    async def fetch(self) -> Manifest:
        """
        Fetch and validate the manifest.

        Raises:
            FetchFailed: all attempts failed or the response was unusable
        """
        with tracer.trace("experiments.manifest.fetch", resource=self.url) as span:
            manifest = await call_with_backoff(
                self._fetch_once,
                self.retry_policy,
                is_transient_fetch_error,
                sleep=self._sleep,
                name="Manifest download",
            )
            span.set_tag("entries", len(manifest))
        statsd.increment("experiments.manifest.fetch.success")
        return manifest

    async def _fetch_once(self) -> Manifest:
        statsd.increment("experiments.manifest.fetch.attempts")
        if self._client is not None:
            payload = await self._get_json(self._client)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                payload = await self._get_json(client)

        parsed = parse_manifest(payload)
        if parsed.dropped:
            logger.warning(
                f"Dropped {len(parsed.dropped)} malformed manifest entries",
                extra={"url": self.url, "dropped": parsed.dropped},
            )
            statsd.increment("experiments.manifest.dropped_entries", value=len(parsed.dropped))

        logger.info(
            "Experiment manifest downloaded",
            extra={"url": self.url, "entries": len(parsed.descriptors)},
        )
        return parsed.descriptors

    async def _get_json(self, client: httpx.AsyncClient):
        try:
            # httpx timeouts are per phase; wait_for bounds the whole request
            response = await asyncio.wait_for(
                client.get(self.url, timeout=self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise FetchTimeout(f"Manifest request timed out after {self.timeout_seconds}s") from e
        except httpx.TransportError as e:
            raise FetchHttpError(f"Manifest request failed: {e}") from e

        if response.status_code >= 400:
            raise FetchHttpError(
                f"Manifest endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestParseError(f"Manifest body is not valid JSON: {e}") from e
