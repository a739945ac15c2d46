"""Gzip capability probe and payload compression."""

from __future__ import annotations

import gzip
import logging


logger = logging.getLogger(__name__)


def is_gzip_supported() -> bool:
    """Probe once whether gzip compression works in this interpreter."""
    try:
        gzip.compress(b"{}")
    except Exception as e:
        logger.debug(f"Gzip compression unavailable, sending uncompressed: {e}")
        return False
    return True


def gzip_compress(payload: str) -> bytes:
    """Compress a JSON payload."""
    return gzip.compress(payload.encode("utf-8"))
