import asyncio
import logging
import re
from pathlib import Path

from src.core.config import settings

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-/]{0,511}$")


def _resolve(key: str) -> Path:
    if not _KEY_RE.match(key) or ".." in key.split("/"):
        raise ValueError(f"Invalid storage key: {key!r}")
    root = settings.storage_path.resolve()
    path = (root / key).resolve()
    if root not in path.parents:
        raise ValueError(f"Storage key escapes storage root: {key!r}")
    return path


def public_url(key: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/api/files/{key}"


async def store(key: str, data: bytes) -> str:
    """Write ``data`` under ``key`` and return the URL it is served from."""
    path = _resolve(key)
    await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(path.write_bytes, data)
    logger.info("Stored %d bytes at %s", len(data), key)
    return public_url(key)


async def load(key: str) -> bytes | None:
    path = _resolve(key)
    if not await asyncio.to_thread(path.is_file):
        return None
    return await asyncio.to_thread(path.read_bytes)
