"""
Bucketing for experiments.
Maps an installation onto a stable percentage slot per salt.
"""
import hashlib
from itertools import combinations
from typing import Iterable, List, Tuple

from expgate.models import ExperimentDescriptor

BUCKET_COUNT = 100


def bucket_of(installation_id: str, salt: str) -> int:
    """Assign an installation to a bucket in [0, 100) based on a SHA-256 hash."""
    digest = hashlib.sha256(f"{installation_id}+{salt}".encode("utf-8")).hexdigest()
    return int(digest, 16) % BUCKET_COUNT


def is_member(installation_id: str, descriptor: ExperimentDescriptor) -> bool:
    """Lower bound inclusive, upper bound exclusive: min=0,max=0 never matches."""
    bucket = bucket_of(installation_id, descriptor.salt)
    return descriptor.min <= bucket < descriptor.max


def find_overlaps(
    manifest: Iterable[ExperimentDescriptor],
) -> List[Tuple[ExperimentDescriptor, ExperimentDescriptor]]:
    """Pairs of descriptors that share a salt and have intersecting ranges."""
    overlaps = []
    for a, b in combinations(list(manifest), 2):
        if a.salt != b.salt:
            continue
        if a.min < b.max and b.min < a.max:
            overlaps.append((a, b))
    return overlaps
