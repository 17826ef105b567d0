"""Local filesystem blob storage for offloaded context values."""

import logging
import os
from pathlib import Path
from typing import Union
from uuid import UUID, uuid4

from gapminer.config import settings

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """Stores context payloads as JSON files under a root directory.

    Paths handed back to callers are relative to the root so the database
    never records machine-specific locations.
    """

    storage_type = "local_file"

    def __init__(self, root: Union[str, Path, None] = None):
        self.root = Path(root or settings.CONTEXT_STORAGE_DIR)

    def path_for(self, run_id: UUID, key: str, version: int) -> str:
        # Unique per write; writers racing for one version never share a file
        return f"{run_id}/{key}/v{version}-{uuid4().hex}.json"

    def write(self, run_id: UUID, key: str, version: int, data: bytes) -> str:
        """
        Write a payload atomically.

        Args:
            run_id: Owning run
            key: Validated context key (may contain '/')
            version: Version number being written

        Returns:
            Relative storage path
        """
        relative = self.path_for(run_id, key, version)
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)

        tmp = target.with_name(f".{target.name}.{uuid4().hex}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, target)

        logger.debug(f"Wrote {len(data)} bytes to blob {relative}")
        return relative

    def read(self, relative: str) -> bytes:
        return (self.root / relative).read_bytes()

    def delete(self, relative: str) -> None:
        try:
            (self.root / relative).unlink()
        except FileNotFoundError:
            pass
