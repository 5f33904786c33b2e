"""
Asset storage service for card asset files.

Files live under ``<base_path>/<card_id>/<filename>`` and are addressed
by URLs of the form ``/storage/<card_id>/<filename>``.
"""

import hashlib
import logging
import asyncio
import re
from pathlib import Path

logger = logging.getLogger(__name__)

STORAGE_URL_PREFIX = "/storage/"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class AssetStorageError(Exception):
    """Base exception for asset storage errors."""
    pass


def sanitize_filename(filename: str) -> str:
    """Reduce a filename to a single safe path component."""
    name = filename.replace("\\", "/").split("/")[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).lstrip(".")
    return name or "file"


def safe_join(base: Path, *parts: str) -> Path:
    """
    Join path parts under base, refusing anything that escapes it.

    Raises:
        AssetStorageError: Resolved path lies outside base
    """
    base_resolved = base.resolve()
    target = base_resolved.joinpath(*parts).resolve()
    if target != base_resolved and base_resolved not in target.parents:
        raise AssetStorageError(f"Path escapes storage root: {'/'.join(parts)}")
    return target


class AssetStorage:
    """
    Service for storing and reading card asset bytes.

    Handles:
    - Saving asset files per card
    - Mapping storage URLs to disk paths
    - Existence checks used by export validation
    """

    def __init__(self, base_path: Path = Path("data/storage")):
        """
        Initialize asset storage.

        Args:
            base_path: Root directory for asset files
        """
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

        logger.info(f"Asset storage initialized: {self.base_path}")

    def url_for(self, card_id: str, filename: str) -> str:
        """Storage URL for a card file."""
        return f"{STORAGE_URL_PREFIX}{sanitize_filename(card_id)}/{sanitize_filename(filename)}"

    def path_for_url(self, url: str) -> Path:
        """
        Resolve a storage URL to a path on disk.

        Raises:
            AssetStorageError: URL is not a storage URL or escapes the root
        """
        if not url.startswith(STORAGE_URL_PREFIX):
            raise AssetStorageError(f"Not a storage URL: {url}")
        relative = url[len(STORAGE_URL_PREFIX):]
        return safe_join(self.base_path, *relative.split("/"))

    async def save(self, card_id: str, filename: str, data: bytes) -> str:
        """
        Write asset bytes for a card.

        Args:
            card_id: Owning card
            filename: Target file name (sanitized)
            data: File contents

        Returns:
            Storage URL of the written file
        """
        url = self.url_for(card_id, filename)
        path = self.path_for_url(url)

        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)

        logger.debug(f"Saved asset {url} ({len(data)} bytes)")
        return url

    async def read(self, url: str) -> bytes:
        """Read asset bytes by storage URL."""
        path = self.path_for_url(url)
        return await asyncio.to_thread(path.read_bytes)

    async def exists(self, url: str) -> bool:
        """Check whether the file behind a storage URL exists."""
        try:
            path = self.path_for_url(url)
        except AssetStorageError:
            return False
        return await asyncio.to_thread(path.is_file)

    async def sha256(self, url: str) -> str:
        """Content hash of a stored file."""
        data = await self.read(url)
        return hashlib.sha256(data).hexdigest()

    async def delete_card_files(self, card_id: str) -> int:
        """
        Delete every stored file for a card.

        Returns:
            Number of files deleted
        """
        card_dir = safe_join(self.base_path, sanitize_filename(card_id))
        if not card_dir.exists():
            return 0

        files = [p for p in card_dir.iterdir() if p.is_file()]
        for file_path in files:
            await asyncio.to_thread(file_path.unlink)
        await asyncio.to_thread(card_dir.rmdir)

        logger.info(f"Deleted {len(files)} files for card: {card_id}")
        return len(files)
