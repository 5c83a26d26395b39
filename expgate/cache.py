"""
Manifest cache on top of a PersistentStore.
Freshness is judged here from the store's write timestamp.
"""
import time
from dataclasses import dataclass
from typing import Callable, Optional

from datadog import statsd

from expgate.errors import CacheUnavailable, ManifestParseError
from expgate.logging_config import setup_logging
from expgate.models import Manifest, parse_manifest
from expgate.store import PersistentStore

logger = setup_logging()

MANIFEST_CACHE_KEY = "experiments.manifest"
DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class CachedManifest:
    """Manifest loaded from the store together with its age"""
    manifest: Manifest
    fetched_at: float
    is_fresh: bool

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)


class ManifestCache:
    """Reads and writes the manifest under a single store key."""

    def __init__(
        self,
        store: PersistentStore,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        key: str = MANIFEST_CACHE_KEY,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key = key
        self._clock = clock

    async def load(self) -> Optional[CachedManifest]:
        """
        Load the cached manifest, fresh or stale.

        Returns:
            CachedManifest, or None when nothing usable is stored.
            Store failures are logged and treated as a missing cache.
        """
        try:
            value, exists = await self.store.get(self.key)
            if not exists:
                return None
            fetched_at = await self.store.written_at(self.key)
        except CacheUnavailable as e:
            logger.warning("Manifest cache unavailable", extra={"error": str(e)})
            statsd.increment("experiments.cache.errors", tags=["operation:load"])
            return None
        except Exception as e:
            # Stores are pluggable; anything they raise degrades to a cache miss
            logger.error("Unexpected manifest cache failure", extra={"error": str(e)}, exc_info=True)
            statsd.increment("experiments.cache.errors", tags=["operation:load"])
            return None

        try:
            parsed = parse_manifest(value)
        except ManifestParseError as e:
            logger.warning("Cached manifest is corrupt, ignoring it", extra={"error": str(e)})
            statsd.increment("experiments.cache.errors", tags=["operation:parse"])
            return None

        if parsed.dropped:
            logger.warning(
                "Dropped malformed cached descriptors",
                extra={"dropped": parsed.dropped},
            )

        # A value without a write timestamp can still serve as a stale fallback
        if not isinstance(fetched_at, (int, float)):
            return CachedManifest(manifest=parsed.descriptors, fetched_at=0.0, is_fresh=False)

        age = self._clock() - fetched_at
        return CachedManifest(
            manifest=parsed.descriptors,
            fetched_at=fetched_at,
            is_fresh=0 <= age < self.ttl_seconds,
        )

    async def save(self, manifest: Manifest) -> bool:
        """Persist a manifest. Returns False when the store rejected the write."""
        try:
            await self.store.set(self.key, [descriptor.to_dict() for descriptor in manifest])
        except CacheUnavailable as e:
            logger.warning("Failed to persist manifest cache", extra={"error": str(e)})
            statsd.increment("experiments.cache.errors", tags=["operation:save"])
            return False
        except Exception as e:
            logger.error("Unexpected manifest cache failure", extra={"error": str(e)}, exc_info=True)
            statsd.increment("experiments.cache.errors", tags=["operation:save"])
            return False
        return True
