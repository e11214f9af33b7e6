"""
Filesystem collaborator for the search: bounded content reads and stat
calls, run off the event loop.

Workspace enumeration happens upstream; this reader only touches files the
caller already listed.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .types import normalize_path

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_BYTES = 800_000  # ~800 KB safeguard against huge binaries


@dataclass(frozen=True)
class FileStat:
    mtime: float
    size: int


class WorkspaceReader:
    """
    Reads files relative to a project root.

    Subclass or duck-type this to serve content from somewhere other than the
    local filesystem; the search only calls ``read_prefix`` and ``stat``.
    """

    def __init__(self, project_dir: Union[str, Path]):
        self.project_dir = Path(project_dir)

    def _resolve(self, relative_path: str) -> Path:
        return self.project_dir / normalize_path(relative_path)

    async def stat(self, relative_path: str) -> FileStat:
        st = await asyncio.to_thread(os.stat, self._resolve(relative_path))
        return FileStat(mtime=st.st_mtime, size=st.st_size)

    async def read_prefix(self, relative_path: str, limit: int) -> str:
        """Read at most ``limit`` bytes from the start of a file as text."""
        return await asyncio.to_thread(self._read_prefix_sync, self._resolve(relative_path), limit)

    @staticmethod
    def _read_prefix_sync(file_path: Path, limit: int) -> str:
        with open(file_path, "rb") as f:
            data = f.read(min(limit, MAX_FILE_SIZE_BYTES))
        return data.decode("utf-8", errors="ignore")


async def safe_stat(reader: WorkspaceReader, relative_path: str) -> Optional[FileStat]:
    """Stat a file, returning None (and logging) when the call fails."""
    try:
        return await reader.stat(relative_path)
    except Exception as e:
        logger.warning(f"⚠️ Failed to stat {relative_path}: {e}")
        return None
