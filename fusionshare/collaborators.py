"""
Endpoint Collaborators

Small pieces the endpoint talks to but does not own: the join URL shared
with the other device, the screen wake lock held during transfers, and
the place finished files are written to.
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiofiles

from .signaling.rooms import ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH, normalize_room_code

logger = logging.getLogger(__name__)


# === Join URL ===

def build_join_url(base_url: str, room_code: str) -> str:
    """Append `room=CODE` to the base URL, keeping any existing query."""
    parts = urlsplit(base_url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != 'room']
    query.append(('room', normalize_room_code(room_code)))
    return urlunsplit(parts._replace(query=urlencode(query)))


def is_room_code(text: str) -> bool:
    code = normalize_room_code(text)
    return len(code) == ROOM_CODE_LENGTH and all(c in ROOM_CODE_ALPHABET for c in code)


def parse_join_url(text: str) -> Optional[str]:
    """
    Extract a room code from a join URL or a bare code.

    Returns the upper-cased code, or None if `text` holds neither.
    """
    if not text or not text.strip():
        return None
    text = text.strip()
    if is_room_code(text):
        return normalize_room_code(text)

    parts = urlsplit(text)
    for key, value in parse_qsl(parts.query):
        if key == 'room' and is_room_code(value):
            return normalize_room_code(value)
    return None


# === Wake lock ===

class WakeLock:
    """Keeps the device awake while a transfer is running."""

    @property
    def held(self) -> bool:
        raise NotImplementedError

    def acquire(self):
        raise NotImplementedError

    def release(self):
        raise NotImplementedError


class NullWakeLock(WakeLock):
    """Wake lock for hosts without one: only tracks whether it is held."""

    def __init__(self):
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self):
        if not self._held:
            logger.debug("Wake lock acquired")
        self._held = True

    def release(self):
        if self._held:
            logger.debug("Wake lock released")
        self._held = False


# === File delivery ===

class DirectoryDelivery:
    """Writes received files into a download directory."""

    def __init__(self, download_dir: Path):
        self.download_dir = Path(download_dir)

    def target_path(self, file_name: str) -> Path:
        """
        Pick a path for `file_name` inside the download directory.

        Directory components from the sender are stripped, and an existing
        file is never overwritten: `name (1).ext`, `name (2).ext`, ... are
        tried in turn.
        """
        name = Path(file_name).name or 'download'
        path = self.download_dir / name
        counter = 1
        while path.exists():
            path = self.download_dir / f"{Path(name).stem} ({counter}){Path(name).suffix}"
            counter += 1
        return path

    async def deliver(self, file_name: str, data: bytes) -> Path:
        self.download_dir.mkdir(parents=True, exist_ok=True)
        path = self.target_path(file_name)
        async with aiofiles.open(path, 'wb') as f:
            await f.write(data)
        logger.info(f"Saved {file_name} to {path}")
        return path
