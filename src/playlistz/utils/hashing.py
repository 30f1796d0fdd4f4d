"""Content-hash helpers for audio payloads."""

from __future__ import annotations

from hashlib import sha256

from playlistz.utils.async_utils import run_blocking


def sha256_hex(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of raw payload bytes."""
    return sha256(data).hexdigest()


async def sha256_hex_async(data: bytes) -> str:
    """Hash on the IO executor; hashlib releases the GIL for large buffers."""
    return await run_blocking(sha256_hex, data)
