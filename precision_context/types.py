"""
Core data types for a precision context search: request context, per-file
signals, candidates, accuracy metrics and the final search result.

File identities are workspace-relative, forward-slash paths. They keep their
original casing for display but compare case-insensitively (see ``path_key``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple


def normalize_path(raw_path: str) -> str:
    """Normalise file paths to POSIX-style relative strings."""
    path = str(raw_path).replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def path_key(raw_path: str) -> str:
    """Case-insensitive identity key for a file path."""
    return normalize_path(raw_path).lower()


class CorpusIndex:
    """
    Lookup of corpus paths by case-insensitive key.

    The first spelling seen for a key wins, so enumeration order of the
    corpus decides which casing is reported.
    """

    def __init__(self, paths: Sequence[str]):
        self.paths: List[str] = []
        self._by_key: Dict[str, str] = {}
        for raw in paths:
            normalized = normalize_path(raw)
            key = normalized.lower()
            if key in self._by_key:
                continue
            self._by_key[key] = normalized
            self.paths.append(normalized)

    def __len__(self) -> int:
        return len(self.paths)

    def __contains__(self, raw_path: str) -> bool:
        return path_key(raw_path) in self._by_key

    def resolve(self, raw_path: str) -> Optional[str]:
        """Return the corpus spelling of ``raw_path`` or None if unknown."""
        return self._by_key.get(path_key(raw_path))


@dataclass(frozen=True)
class Location:
    """A (file, position) pair reported by the symbol service."""

    path: str
    line: int = 0
    character: int = 0


@dataclass(frozen=True)
class SymbolInfo:
    """Call-hierarchy information for the symbol under the cursor."""

    name: str
    kind: Optional[str] = None
    file_path: Optional[str] = None
    definitions: Tuple[Location, ...] = ()
    implementations: Tuple[Location, ...] = ()
    incoming_calls: Tuple[Location, ...] = ()
    outgoing_calls: Tuple[Location, ...] = ()
    referenced_type_files: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RequestContext:
    """Everything known about one search request. Immutable for its duration."""

    query: str
    active_file: Optional[str] = None
    selected_text: Optional[str] = None
    instruction: Optional[str] = None
    cursor: Optional[Tuple[int, int]] = None
    diagnostics: Optional[str] = None
    chat_history: Tuple[str, ...] = ()
    symbol_info: Optional[SymbolInfo] = None
    file_summaries: Mapping[str, str] = field(default_factory=dict)
    file_embeddings: Mapping[str, Sequence[float]] = field(default_factory=dict)
    query_embedding: Optional[Sequence[float]] = None

    @property
    def active_path(self) -> Optional[str]:
        return normalize_path(self.active_file) if self.active_file else None


SIGNAL_CAP = 1.0


@dataclass(frozen=True)
class SignalScores:
    """Independent relevance contributions for one file, each capped."""

    path: float = 0.0
    proximity: float = 0.0
    dependency: float = 0.0
    symbol: float = 0.0
    semantic: float = 0.0

    def __post_init__(self):
        for name in ("path", "proximity", "dependency", "symbol", "semantic"):
            value = getattr(self, name)
            object.__setattr__(self, name, max(0.0, min(SIGNAL_CAP, float(value))))

    @property
    def total(self) -> float:
        """Aggregate relevance score, clamped to [0, 1]."""
        raw = self.path + self.proximity + self.dependency + self.symbol + self.semantic
        return max(0.0, min(1.0, raw))


@dataclass(frozen=True)
class Candidate:
    """A file paired with its relevance score for one search"""

    path: str
    score: float
    reasons: Tuple[str, ...] = ()
    signals: SignalScores = field(default_factory=SignalScores)


@dataclass(frozen=True)
class AccuracyMetrics:
    """Advisory precision/recall proxies. Not ground truth."""

    precision: float = 0.0
    recall: float = 0.0
    f1: float = 0.0
    confidence: float = 0.0


@dataclass(frozen=True)
class SearchResult:
    """Ranked file set returned to the caller"""

    files: Tuple[str, ...]
    scores: Mapping[str, float]
    metrics: AccuracyMetrics
    elapsed: float
    cache_hit: bool
    context_size: int
    selection_source: str = "ranked"
    candidates: Tuple[Candidate, ...] = ()

    def __post_init__(self):
        # shared with cache entries; read-only
        object.__setattr__(self, "scores", MappingProxyType(dict(self.scores)))


DependencyGraph = Mapping[str, Sequence[str]]


def build_reverse_graph(graph: DependencyGraph) -> Dict[str, List[str]]:
    """
    Invert a forward import graph: importer -> imported becomes
    imported -> importers, preserving encounter order.
    """
    reverse: Dict[str, List[str]] = {}
    seen: Set[Tuple[str, str]] = set()
    for importer, targets in graph.items():
        importer_path = normalize_path(importer)
        for target in targets:
            target_path = normalize_path(target)
            pair = (target_path.lower(), importer_path.lower())
            if pair in seen:
                continue
            seen.add(pair)
            reverse.setdefault(target_path, []).append(importer_path)
    return reverse


def lowercase_graph(graph: Optional[DependencyGraph]) -> Dict[str, List[str]]:
    """Re-key a graph by case-insensitive identity, merging duplicates in order."""
    lowered: Dict[str, List[str]] = {}
    if not graph:
        return lowered
    for source, targets in graph.items():
        bucket = lowered.setdefault(path_key(source), [])
        for target in targets:
            key = path_key(target)
            if key not in bucket:
                bucket.append(key)
    return lowered
