"""Deterministic bucketing of users into rollout percentages."""

from __future__ import annotations

import hashlib

# 15 hex digits of the SHA-1 digest
LONG_SCALE = float(0xFFFFFFFFFFFFFFF)

VARIANT_SALT = "variant"


def bucket(key: str, distinct_id: str, salt: str = "") -> float:
    """
    Map ``(key, distinct_id)`` to a stable float in ``[0, 1]``.

    The upper bound is closed: a digest prefix of fifteen ``f`` digits maps
    to exactly 1.0, which only a 100% rollout includes.

    The same inputs always land in the same bucket, in every process and
    every language binding, so rollouts are consistent across services.
    """
    hash_key = f"{key}.{distinct_id}{salt}"
    digest = hashlib.sha1(hash_key.encode("utf-8")).hexdigest()
    return int(digest[:15], 16) / LONG_SCALE


def in_rollout(key: str, distinct_id: str, rollout_percentage: float | None) -> bool:
    """True when the user's bucket falls inside ``rollout_percentage``."""
    if rollout_percentage is None:
        return True
    return bucket(key, distinct_id) <= rollout_percentage / 100
