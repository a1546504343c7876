"""Destinations for downloaded resource bytes."""

import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)


class ResourceSink(ABC):
    """Persists bytes and returns a public reference to them."""

    @abstractmethod
    def store(self, content: bytes, suggested_extension: str) -> str:
        """Store bytes as a new object.

        Every call creates a new object; no deduplication happens here.

        Args:
            content: Raw bytes to persist.
            suggested_extension: File extension including the dot (".jpg").

        Returns:
            Public reference to the stored object.
        """


def normalize_extension(extension: str | None) -> str:
    extension = (extension or "").strip().lower()
    if not extension:
        return ".bin"
    if not extension.startswith("."):
        extension = "." + extension
    # Keep the extension filename-safe
    if not extension[1:].isalnum():
        return ".bin"
    return extension


class FilesystemResourceSink(ResourceSink):
    """Writes each stored object to a uuid-named file under root_dir.

    Args:
        root_dir: Directory files are written to; created on demand.
        public_prefix: Prefix of the returned references ("/images").
    """

    def __init__(self, root_dir: str | Path, public_prefix: str = "/images") -> None:
        self.root_dir = Path(root_dir)
        self.public_prefix = public_prefix.rstrip("/")

    def store(self, content: bytes, suggested_extension: str) -> str:
        self.root_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{uuid.uuid4().hex}{normalize_extension(suggested_extension)}"
        target = self.root_dir / filename
        tmp = target.with_suffix(target.suffix + ".part")

        with tmp.open("wb") as f:
            f.write(content)
        os.replace(tmp, target)

        logger.debug(f"Stored {len(content)} bytes as {target}")
        return f"{self.public_prefix}/{filename}"
