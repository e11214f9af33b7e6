"""
Ranking and dynamic sizing of scored candidates.
"""

from __future__ import annotations

import math
from typing import List, Sequence

from .core.config import SearchConfig
from .signals import extract_keywords
from .types import Candidate

BASE_COMPLEXITY = 0.5
MIN_DYNAMIC_FILES = 5
FILES_PER_COMPLEXITY = 20

# (trigger words, bonus)
COMPLEXITY_PATTERNS = (
    (("refactor", "optimize"), 0.2),
    (("bug", "fix"), 0.1),
    (("test", "spec"), 0.1),
)


def estimate_complexity(query: str) -> float:
    """Estimate how much context a request needs, in [0, 1]."""
    complexity = BASE_COMPLEXITY
    complexity += min(0.3, len(extract_keywords(query)) * 0.05)
    complexity += min(0.2, len(query) / 1000)

    lowered = query.lower()
    for words, bonus in COMPLEXITY_PATTERNS:
        if any(word in lowered for word in words):
            complexity += bonus
    return max(0.0, min(1.0, complexity))


def max_files_for_complexity(complexity: float, config: SearchConfig) -> int:
    return min(config.max_context_files, max(MIN_DYNAMIC_FILES, math.floor(complexity * FILES_PER_COMPLEXITY)))


def max_files_for_query(query: str, config: SearchConfig) -> int:
    if not config.enable_dynamic_sizing:
        return config.max_context_files
    return max_files_for_complexity(estimate_complexity(query), config)


def rank(candidates: Sequence[Candidate], query: str, config: SearchConfig) -> List[Candidate]:
    """
    Drop candidates below ``min_relevance_score``, sort by score (ties keep
    corpus order) and cut to the size the request warrants.
    """
    kept = [c for c in candidates if c.score >= config.min_relevance_score]
    kept.sort(key=lambda c: c.score, reverse=True)
    return kept[: max_files_for_query(query, config)]
