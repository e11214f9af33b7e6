"""
Signal scorer: independent per-file relevance contributions.

Five signals are computed for every corpus file and folded into a single
score in [0, 1]:

- path: query keywords found in path segments and the filename
- proximity: directory distance to the active file
- dependency: import-graph adjacency to the active file plus fan-in
- symbol: call-hierarchy membership for the symbol under the cursor
- semantic: embedding similarity, or keyword density in a summary or in
  the first bytes of the file

The helpers at module level are pure. ``SignalScorer`` prepares the
request-wide state once, then scores the corpus with bounded concurrency.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from .cancellation import CancellationToken, run_bounded
from .core.config import SearchConfig
from .types import (
    Candidate,
    DependencyGraph,
    RequestContext,
    SignalScores,
    SymbolInfo,
    lowercase_graph,
    path_key,
)

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "can",
    "may", "might", "must", "shall",
})

MIN_KEYWORD_LENGTH = 3

PATH_SEGMENT_WEIGHT = 0.3
FILENAME_WEIGHT = 0.5

SAME_DIRECTORY_SCORE = 0.4
NESTED_DIRECTORY_SCORE = 0.3
SHARED_TOP_LEVEL_SCORE = 0.2

DIRECT_IMPORT_SCORE = 0.4
FAN_IN_STEP = 0.1
FAN_IN_CAP = 0.3

SYMBOL_DEFINITION_SCORE = 0.5
INCOMING_CALL_SCORE = 0.3
OUTGOING_CALL_SCORE = 0.3

KEYWORD_MATCH_STEP = 0.05
KEYWORD_MATCH_CAP = 0.2
IMPORT_STEP = 0.02
IMPORT_CAP = 0.1
EXPORT_STEP = 0.02
EXPORT_CAP = 0.1

_NON_WORD = re.compile(r"[^\w]")

# JS/TS ``import ... from "x"`` plus Python ``import x`` / ``from x import y``
IMPORT_PATTERN = re.compile(
    r"""import.*from\s+['"][^'"]+['"]|^\s*(?:from\s+[\w.]+\s+)?import\s+[\w.]+""",
    re.MULTILINE,
)
# JS/TS exports plus top-level Python definitions
EXPORT_PATTERN = re.compile(
    r"export\s+(?:default\s+)?(?:function|class|const|let|var|interface|type)"
    r"|^(?:async\s+)?def\s+\w+|^class\s+\w+",
    re.MULTILINE,
)


def extract_keywords(query: str) -> List[str]:
    """
    Lowercase the query, split on whitespace, strip punctuation and drop
    short words and stop words. Repeated words are kept.
    """
    keywords: List[str] = []
    for word in query.lower().split():
        cleaned = _NON_WORD.sub("", word)
        if len(cleaned) < MIN_KEYWORD_LENGTH or cleaned in STOP_WORDS:
            continue
        keywords.append(cleaned)
    return keywords


def path_score(file_path: str, keywords: Sequence[str]) -> float:
    """Keyword hits in the path: +0.3 for any segment, +0.5 for the filename."""
    lowered = path_key(file_path)
    segments = lowered.split("/")
    filename = segments[-1]
    score = 0.0
    for keyword in keywords:
        if any(keyword in segment for segment in segments):
            score += PATH_SEGMENT_WEIGHT
        if keyword in filename:
            score += FILENAME_WEIGHT
    return score


def proximity_score(file_path: str, active_path: Optional[str]) -> float:
    if not active_path:
        return 0.0
    file_dir = posixpath.dirname(path_key(file_path))
    active_dir = posixpath.dirname(path_key(active_path))

    if file_dir == active_dir:
        return SAME_DIRECTORY_SCORE
    if file_dir.startswith(active_dir + "/") or active_dir.startswith(file_dir + "/"):
        return NESTED_DIRECTORY_SCORE
    if file_dir.split("/")[0] == active_dir.split("/")[0]:
        return SHARED_TOP_LEVEL_SCORE
    return 0.0


def dependency_score(
    file_key: str,
    active_key: Optional[str],
    graph: Mapping[str, Sequence[str]],
    reverse_graph: Mapping[str, Sequence[str]],
) -> float:
    """
    Import-graph contribution. Both graphs must already be keyed by
    ``path_key`` (see ``lowercase_graph``).
    """
    score = 0.0
    if active_key and file_key in graph.get(active_key, ()):
        score += DIRECT_IMPORT_SCORE
    importers = reverse_graph.get(file_key, ())
    if importers:
        score += min(FAN_IN_CAP, FAN_IN_STEP * len(importers))
    return score


def symbol_score(
    file_key: str,
    defining_key: Optional[str],
    incoming_keys: Set[str],
    outgoing_keys: Set[str],
) -> float:
    score = 0.0
    if defining_key and file_key == defining_key:
        score += SYMBOL_DEFINITION_SCORE
    if file_key in incoming_keys:
        score += INCOMING_CALL_SCORE
    if file_key in outgoing_keys:
        score += OUTGOING_CALL_SCORE
    return score


def keyword_density(text: str, keywords: Sequence[str]) -> float:
    """Keyword frequency plus small bonuses for import and export density."""
    lowered = text.lower()
    score = 0.0
    for keyword in keywords:
        occurrences = lowered.count(keyword)
        score += min(KEYWORD_MATCH_CAP, KEYWORD_MATCH_STEP * occurrences)
    score += min(IMPORT_CAP, IMPORT_STEP * len(IMPORT_PATTERN.findall(lowered)))
    score += min(EXPORT_CAP, EXPORT_STEP * len(EXPORT_PATTERN.findall(lowered)))
    return score


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    if vec_a.shape != vec_b.shape:
        raise ValueError(f"Embedding dimensions differ: {vec_a.shape} vs {vec_b.shape}")
    norm = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if norm == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)


def embedding_matches(
    query_embedding: Sequence[float],
    file_embeddings: Mapping[str, Sequence[float]],
    min_similarity: float,
    max_files: int,
) -> Dict[str, float]:
    """
    Return ``{path_key: similarity}`` for the files at or above
    ``min_similarity``, keeping only the ``max_files`` most similar.
    """
    similarities: List[Tuple[str, float]] = []
    for raw_path, vector in file_embeddings.items():
        try:
            similarity = cosine_similarity(query_embedding, vector)
        except ValueError as e:
            logger.warning(f"⚠️ Skipping embedding for {raw_path}: {e}")
            continue
        if similarity >= min_similarity:
            similarities.append((path_key(raw_path), similarity))

    similarities.sort(key=lambda item: item[1], reverse=True)
    return dict(similarities[:max_files])


def _location_keys(locations) -> Set[str]:
    return {path_key(location.path) for location in locations}


def _defining_key(symbol: SymbolInfo) -> Optional[str]:
    if symbol.file_path:
        return path_key(symbol.file_path)
    if symbol.definitions:
        return path_key(symbol.definitions[0].path)
    return None


@dataclass
class ScoringContext:
    """Request-wide state shared by every per-file scoring call"""

    keywords: List[str]
    active_path: Optional[str] = None
    active_key: Optional[str] = None
    graph: Dict[str, List[str]] = field(default_factory=dict)
    reverse_graph: Dict[str, List[str]] = field(default_factory=dict)
    defining_key: Optional[str] = None
    incoming_keys: Set[str] = field(default_factory=set)
    outgoing_keys: Set[str] = field(default_factory=set)
    embedded_keys: Set[str] = field(default_factory=set)
    embedding_scores: Optional[Dict[str, float]] = None
    summaries: Dict[str, str] = field(default_factory=dict)


class SignalScorer:
    """
    Scores corpus files against one request.

    Each signal can be switched off through ``SearchConfig``. Dependency and
    symbol signals are relative to the active file, so they stay at 0 when
    the request has none.
    """

    def __init__(self, config: SearchConfig, reader=None, embedding_service=None):
        self.config = config
        self.reader = reader
        self.embedding_service = embedding_service

    async def prepare(
        self,
        request: RequestContext,
        dependency_graph: Optional[DependencyGraph] = None,
        reverse_dependency_graph: Optional[DependencyGraph] = None,
        symbol_info: Optional[SymbolInfo] = None,
    ) -> ScoringContext:
        active_path = request.active_path
        context = ScoringContext(
            keywords=extract_keywords(request.query),
            active_path=active_path,
            active_key=path_key(active_path) if active_path else None,
        )

        if active_path and self.config.enable_dependency_analysis:
            context.graph = lowercase_graph(dependency_graph)
            context.reverse_graph = lowercase_graph(reverse_dependency_graph)

        symbol = symbol_info or request.symbol_info
        if active_path and symbol is not None and self.config.enable_symbol_analysis:
            context.defining_key = _defining_key(symbol)
            context.incoming_keys = _location_keys(symbol.incoming_calls)
            context.outgoing_keys = _location_keys(symbol.outgoing_calls)

        if self.config.enable_semantic_search:
            context.summaries = {path_key(p): text for p, text in request.file_summaries.items()}
            context.embedded_keys = {path_key(p) for p in request.file_embeddings}
            context.embedding_scores = await self._embedding_scores(request)
        return context

    async def _embedding_scores(self, request: RequestContext) -> Optional[Dict[str, float]]:
        """
        Similarity per file when embeddings are usable, otherwise None.
        A failing embedding service degrades to an empty mapping, which
        scores every embedded file at 0.
        """
        if not request.file_embeddings:
            return None

        query_embedding = request.query_embedding
        if query_embedding is None:
            if self.embedding_service is None:
                return None
            try:
                query_embedding = await self.embedding_service.embed(request.query)
            except Exception as e:
                logger.warning(f"⚠️ Embedding service failed: {e}. Semantic signal disabled for this search.")
                return {}

        try:
            matches = embedding_matches(
                query_embedding,
                request.file_embeddings,
                self.config.semantic_min_similarity,
                self.config.max_semantic_files,
            )
        except Exception as e:
            logger.warning(f"⚠️ Embedding comparison failed: {e}. Semantic signal disabled for this search.")
            return {}
        logger.debug("Embedding similarity matched %d files", len(matches))
        return matches

    async def _semantic_score(self, file_path: str, file_key: str, context: ScoringContext) -> Tuple[float, Optional[str]]:
        if not self.config.enable_semantic_search:
            return 0.0, None

        if context.embedding_scores is not None and file_key in context.embedded_keys:
            similarity = context.embedding_scores.get(file_key, 0.0)
            if similarity:
                return similarity, f"semantic similarity {similarity:.2f}"
            return 0.0, None

        summary = context.summaries.get(file_key)
        if summary:
            return keyword_density(summary, context.keywords), "summary keywords"

        if self.config.enable_content_scan and self.reader is not None:
            try:
                text = await self.reader.read_prefix(file_path, self.config.max_content_bytes)
            except Exception as e:
                logger.warning(f"⚠️ Failed to read {file_path} for semantic analysis: {e}")
                return 0.0, None
            return keyword_density(text[: self.config.max_content_bytes], context.keywords), "content keywords"

        return 0.0, None

    def score_static(self, file_path: str, context: ScoringContext) -> Tuple[SignalScores, List[str]]:
        """Path, proximity, dependency and symbol signals for one file."""
        file_key = path_key(file_path)
        reasons: List[str] = []

        path = path_score(file_path, context.keywords)
        if path:
            reasons.append("path match")

        proximity = proximity_score(file_path, context.active_path)
        if proximity == SAME_DIRECTORY_SCORE:
            reasons.append("same directory")
        elif proximity:
            reasons.append("nearby directory")

        dependency = dependency_score(file_key, context.active_key, context.graph, context.reverse_graph)
        if context.active_key and file_key in context.graph.get(context.active_key, ()):
            reasons.append("imported by active file")
        fan_in = len(context.reverse_graph.get(file_key, ()))
        if dependency and fan_in:
            reasons.append(f"imported by {fan_in} files")

        symbol = symbol_score(file_key, context.defining_key, context.incoming_keys, context.outgoing_keys)
        if file_key == context.defining_key:
            reasons.append("defines active symbol")
        if file_key in context.incoming_keys:
            reasons.append("calls active symbol")
        if file_key in context.outgoing_keys:
            reasons.append("called by active symbol")

        scores = SignalScores(path=path, proximity=proximity, dependency=dependency, symbol=symbol)
        return scores, reasons

    async def score_file(self, file_path: str, context: ScoringContext) -> Candidate:
        scores, reasons = self.score_static(file_path, context)
        semantic, reason = await self._semantic_score(file_path, path_key(file_path), context)
        if semantic:
            scores = SignalScores(
                path=scores.path,
                proximity=scores.proximity,
                dependency=scores.dependency,
                symbol=scores.symbol,
                semantic=semantic,
            )
            reasons.append(reason)
        return Candidate(path=file_path, score=scores.total, reasons=tuple(reasons), signals=scores)

    async def score_corpus(
        self,
        corpus: Sequence[str],
        context: ScoringContext,
        cancellation: Optional[CancellationToken] = None,
    ) -> List[Candidate]:
        """Score every file, in corpus order, with bounded concurrency."""
        candidates = await run_bounded(
            corpus,
            lambda file_path: self.score_file(file_path, context),
            self.config.max_concurrency,
            cancellation,
        )
        logger.debug("Scored %d files", len(candidates))
        return candidates

    def semantic_candidates(self, candidates: Sequence[Candidate]) -> List[str]:
        """Files with a positive semantic score, highest first, capped."""
        semantic = [c for c in candidates if c.signals.semantic > 0]
        semantic.sort(key=lambda c: c.signals.semantic, reverse=True)
        return [c.path for c in semantic[: self.config.max_semantic_files]]
