"""
Experiments manager.
Selects a manifest (fresh cache, network, stale cache or nothing), buckets
the installation once, and answers membership queries with deduplicated
group telemetry.
"""
import asyncio
import uuid
from enum import Enum
from typing import List, Optional, Set, Tuple

from datadog import statsd
from ddtrace import tracer

from expgate.bucketing import find_overlaps, is_member
from expgate.cache import CachedManifest, ManifestCache
from expgate.config import ExperimentsOptions
from expgate.errors import ExperimentsNotReady, FetchFailed
from expgate.fetcher import ManifestFetcher, RemoteManifestFetcher
from expgate.logging_config import setup_logging
from expgate.models import ExperimentDescriptor, Manifest
from expgate.resilience import RetryPolicy
from expgate.store import PersistentStore
from expgate.telemetry import EventName, TelemetrySink, group_properties

logger = setup_logging()

INSTALLATION_ID_KEY = "experiments.installation_id"

# Listing this name in opt_out_from disables every experiment
OPT_OUT_ALL = "All"


class ManagerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class ManifestSource(str, Enum):
    """Where the manifest used for bucketing came from"""
    FRESH_CACHE = "fresh_cache"
    NETWORK = "network"
    STALE_CACHE = "stale_cache"
    EMPTY = "empty"
    DISABLED = "disabled"


class ExperimentsManager:
    """
    Owns the experiment state for one process.

    initialize() is single-flight: every caller awaits the same task, so the
    manifest is fetched at most once and bucketing runs exactly once.
    """

    def __init__(
        self,
        installation_id: str,
        options: ExperimentsOptions,
        cache: ManifestCache,
        telemetry: TelemetrySink,
        fetcher: Optional[ManifestFetcher] = None,
    ):
        self.installation_id = installation_id
        self.options = options
        self.cache = cache
        self.telemetry = telemetry
        self.fetcher = fetcher

        self._state = ManagerState.UNINITIALIZED
        self._source: Optional[ManifestSource] = None
        self._user_experiments: Tuple[ExperimentDescriptor, ...] = ()
        self._init_task: Optional[asyncio.Task] = None
        self._fetch_task: Optional[asyncio.Task] = None
        self._shutting_down = False

        # Names already reported by in_experiment
        self._usage_reported: Set[str] = set()
        self._bulk_reported = False

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def source(self) -> Optional[ManifestSource]:
        return self._source

    @property
    def user_experiments(self) -> List[ExperimentDescriptor]:
        """Descriptors this installation belongs to. Valid once initialized."""
        if self._state is not ManagerState.READY:
            raise ExperimentsNotReady("Experiments manager has not finished initializing")
        return list(self._user_experiments)

    async def initialize(self) -> List[ExperimentDescriptor]:
        """Resolve membership once; concurrent callers share the same task."""
        if self._init_task is None:
            self._state = ManagerState.INITIALIZING
            self._init_task = asyncio.ensure_future(self._initialize())
        # One caller being cancelled must not cancel initialization for the rest
        await asyncio.shield(self._init_task)
        return list(self._user_experiments)

    async def in_experiment(self, name: str) -> bool:
        """
        Check membership for an experiment or control arm.

        The first positive check for a name in this process sends one
        group telemetry event; later checks are silent.
        """
        await self.initialize()
        member = any(descriptor.name == name for descriptor in self._user_experiments)
        if member and name not in self._usage_reported:
            self._usage_reported.add(name)
            self._send_group_event(name)
        return member

    async def report_assignments(self) -> List[str]:
        """
        Send one group event per assigned experiment or control arm.
        Runs once per process; returns the names reported by this call.
        """
        await self.initialize()
        if self._bulk_reported:
            return []
        self._bulk_reported = True

        reported = []
        for descriptor in self._user_experiments:
            self._send_group_event(descriptor.name)
            reported.append(descriptor.name)
        return reported

    async def shutdown(self) -> None:
        """
        Abandon an in-flight download. A pending initialization still
        resolves, to the cache or empty fallback.
        """
        self._shutting_down = True
        if self._fetch_task is not None and not self._fetch_task.done():
            logger.info("Abandoning in-flight manifest download")
            self._fetch_task.cancel()
        if self._init_task is not None:
            await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        with tracer.trace("experiments.initialize") as span:
            try:
                manifest, source = await self._select_manifest()
            except Exception as e:
                logger.error(
                    "Manifest selection failed, using an empty manifest",
                    extra={"error": str(e)},
                    exc_info=True,
                )
                manifest, source = [], ManifestSource.EMPTY
            self._apply(manifest, source)
            span.set_tag("source", source.value)
            span.set_tag("user_experiments", len(self._user_experiments))

    async def _select_manifest(self) -> Tuple[Manifest, ManifestSource]:
        if not self.options.enabled:
            logger.info("Experiments disabled by configuration")
            return [], ManifestSource.DISABLED

        cached = await self.cache.load()
        if cached is not None and cached.is_fresh:
            return cached.manifest, ManifestSource.FRESH_CACHE

        if self.options.is_test_mode or self.fetcher is None:
            logger.info("Manifest download skipped", extra={"state": "network_disabled"})
            return self._fallback(cached)

        manifest = await self._download()
        if manifest is None:
            return self._fallback(cached)

        await self.cache.save(manifest)
        return manifest, ManifestSource.NETWORK

    async def _download(self) -> Optional[Manifest]:
        if self._shutting_down:
            return None

        fetch_task = asyncio.ensure_future(self.fetcher.fetch())
        self._fetch_task = fetch_task
        try:
            # asyncio.wait does not raise when fetch_task is cancelled by shutdown()
            await asyncio.wait({fetch_task})
        except asyncio.CancelledError:
            fetch_task.cancel()
            raise
        finally:
            self._fetch_task = None

        if fetch_task.cancelled():
            logger.warning("Manifest download cancelled during shutdown")
            statsd.increment("experiments.manifest.fetch.cancelled")
            return None

        error = fetch_task.exception()
        if error is None:
            return fetch_task.result()

        if isinstance(error, FetchFailed):
            logger.warning(
                "Manifest download failed, falling back to cache",
                extra={"attempt": error.attempts, "error": str(error)},
            )
        else:
            logger.error(
                "Unexpected error while downloading manifest",
                extra={"error": str(error)},
                exc_info=error,
            )
        statsd.increment("experiments.manifest.fetch.failed")
        return None

    def _fallback(self, cached: Optional[CachedManifest]) -> Tuple[Manifest, ManifestSource]:
        if cached is not None:
            source = ManifestSource.FRESH_CACHE if cached.is_fresh else ManifestSource.STALE_CACHE
            return cached.manifest, source
        logger.warning("No manifest available, no experiments will be active")
        return [], ManifestSource.EMPTY

    def _apply(self, manifest: Manifest, source: ManifestSource) -> None:
        for a, b in find_overlaps(manifest):
            logger.warning(
                f"Experiments {a.name!r} and {b.name!r} share salt {a.salt!r} with overlapping ranges",
                extra={"exp_name": a.name},
            )

        self._user_experiments = tuple(d for d in manifest if self._is_member(d))
        self._source = source
        self._state = ManagerState.READY

        statsd.gauge(
            "experiments.user_experiments.count",
            len(self._user_experiments),
            tags=[f"source:{source.value}"],
        )
        logger.info(
            "Experiments initialized",
            extra={
                "source": source.value,
                "entries": len(manifest),
                "user_experiments": [d.name for d in self._user_experiments],
            },
        )

    def _is_member(self, descriptor: ExperimentDescriptor) -> bool:
        opt_out = self.options.opt_out_from
        if OPT_OUT_ALL in opt_out or descriptor.name in opt_out:
            return False
        if descriptor.name in self.options.opt_into:
            return True
        return is_member(self.installation_id, descriptor)

    def _send_group_event(self, name: str) -> None:
        try:
            self.telemetry.send(EventName.EXPERIMENTS, group_properties(name))
        except Exception as e:
            # Telemetry transport problems never change membership answers
            logger.warning(
                "Failed to send experiment telemetry",
                extra={"exp_name": name, "error": str(e)},
            )


async def load_installation_id(store: PersistentStore, configured: Optional[str] = None) -> str:
    """Return the configured id, the persisted one, or a new persisted uuid."""
    if configured:
        return configured

    try:
        value, exists = await store.get(INSTALLATION_ID_KEY)
        if exists and isinstance(value, str) and value:
            return value
    except Exception as e:
        logger.warning("Cannot read installation id", extra={"error": str(e)})

    installation_id = uuid.uuid4().hex
    try:
        await store.set(INSTALLATION_ID_KEY, installation_id)
    except Exception as e:
        logger.warning(
            "Cannot persist installation id, bucketing will change on restart",
            extra={"error": str(e)},
        )
    return installation_id


async def create_experiments_manager(
    options: ExperimentsOptions,
    store: PersistentStore,
    telemetry: TelemetrySink,
    fetcher: Optional[ManifestFetcher] = None,
) -> ExperimentsManager:
    """
    Wire a manager from options. A RemoteManifestFetcher is built from
    options.manifest_url unless a fetcher is supplied.
    """
    installation_id = await load_installation_id(store, options.installation_id)
    if fetcher is None and options.manifest_url and not options.is_test_mode:
        fetcher = RemoteManifestFetcher(
            options.manifest_url,
            timeout_seconds=options.fetch_timeout_seconds,
            retry_policy=RetryPolicy(
                max_attempts=options.max_attempts,
                initial_delay=options.initial_backoff_seconds,
                backoff_factor=options.backoff_factor,
            ),
        )
    cache = ManifestCache(store, ttl_seconds=options.cache_ttl_seconds)
    return ExperimentsManager(installation_id, options, cache, telemetry, fetcher=fetcher)
