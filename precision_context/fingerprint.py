"""
Workspace fingerprint: an order-independent digest of (path, mtime) pairs.

Equal fingerprints mean no corpus file was modified between two searches.
The digest is only used to validate cached results.
"""

from __future__ import annotations

import hashlib
import logging
from typing import List, Optional, Sequence

from .cancellation import CancellationToken, run_bounded
from .workspace import safe_stat

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 16


async def compute_fingerprint(
    corpus: Sequence[str],
    reader,
    *,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    cancellation: Optional[CancellationToken] = None,
) -> str:
    """
    Stat every corpus file and hash the sorted ``path:mtime`` entries.

    Files that cannot be stat-ed are left out of the digest, so a file that
    disappears still changes the fingerprint.
    """

    async def entry(file_path: str) -> Optional[str]:
        stat = await safe_stat(reader, file_path)
        if stat is None:
            return None
        return f"{file_path}:{stat.mtime!r}"

    entries: List[Optional[str]] = await run_bounded(corpus, entry, max_concurrency, cancellation)
    present = sorted(e for e in entries if e is not None)
    if len(present) < len(entries):
        logger.debug("Fingerprint skipped %d unreadable files", len(entries) - len(present))
    return hashlib.md5("|".join(present).encode("utf-8")).hexdigest()
