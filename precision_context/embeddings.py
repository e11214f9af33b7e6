"""
Embedding collaborator backed by sentence-transformers.

The search only needs ``await service.embed(text) -> vector``. Any object
with that coroutine works; this module provides the sentence-transformers
implementation and a helper to embed file contents ahead of a search.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

try:
    from sentence_transformers import SentenceTransformer
    SENTENCE_TRANSFORMERS_AVAILABLE = True
except ImportError:  # pragma: no cover - optional dependency
    SENTENCE_TRANSFORMERS_AVAILABLE = False
    logger.warning(
        "sentence-transformers not available. Install the 'embeddings' extra to enable embedding similarity."
    )

DEFAULT_MODEL_NAME = "all-MiniLM-L6-v2"

MODEL_CACHE: Dict[str, "SentenceTransformer"] = {}


def _model_source(local_model_path: Optional[str], model_name: str) -> str:
    """A local model directory when one exists, otherwise the hub model name."""
    if local_model_path:
        local_dir = Path(local_model_path).expanduser().resolve()
        if local_dir.is_dir():
            return str(local_dir)
        logger.warning(f"⚠️ Embedding model directory {local_dir} not found, using {model_name}")
    return model_name


def _load_embedding_model(
    local_model_path: Optional[str],
    model_name: str,
) -> Optional["SentenceTransformer"]:
    """Return a shared SentenceTransformer, loading it on first use."""
    if not SENTENCE_TRANSFORMERS_AVAILABLE:
        return None

    source = _model_source(local_model_path, model_name)
    if source not in MODEL_CACHE:
        try:
            MODEL_CACHE[source] = SentenceTransformer(source)
        except Exception as e:  # pragma: no cover - depends on model download
            logger.error(f"Could not load embedding model {source}: {e}")
            return None
        logger.info(f"✅ Embedding model loaded: {source}")
    return MODEL_CACHE[source]


class SentenceTransformerEmbeddingService:
    """
    ``embed(text)`` over a lazily loaded SentenceTransformer.

    Vectors are L2-normalised, so cosine similarity reduces to a dot product.
    Encoding runs in a worker thread to keep the event loop free.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL_NAME, local_model_path: Optional[str] = None):
        self.model_name = model_name
        self.local_model_path = local_model_path

    def _model(self) -> "SentenceTransformer":
        model = _load_embedding_model(self.local_model_path, self.model_name)
        if model is None:
            raise RuntimeError(f"Embedding model {self.model_name} is not available")
        return model

    async def embed(self, text: str) -> List[float]:
        model = self._model()
        vector = await asyncio.to_thread(
            model.encode, text, show_progress_bar=False, normalize_embeddings=True
        )
        return [float(x) for x in vector]


async def embed_files(service, contents: Mapping[str, str]) -> Dict[str, List[float]]:
    """
    Embed file contents one by one.

    Files whose embedding fails are left out and logged; the similarity
    signal simply ignores them.
    """
    embeddings: Dict[str, List[float]] = {}
    for file_path, text in contents.items():
        try:
            embeddings[file_path] = list(await service.embed(text))
        except Exception as e:
            logger.warning(f"⚠️ Failed to embed {file_path}: {e}")
    logger.info(f"✅ Embedded {len(embeddings)}/{len(contents)} files")
    return embeddings
