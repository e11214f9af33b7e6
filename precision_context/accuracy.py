"""
Accuracy proxies for a selection, and a bounded history of them.

No ground truth exists at search time. Precision is the share of
high-scoring files in the selection; recall is fixed at 1.0 until user
feedback is available.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Mapping, Sequence

from .types import AccuracyMetrics, path_key

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_SCORE = 0.7
RECALL_PROXY = 1.0
REQUEST_PREFIX_CHARS = 100


def estimate_accuracy(selected: Sequence[str], scores: Mapping[str, float]) -> AccuracyMetrics:
    """
    Derive precision/recall/F1/confidence proxies for ``selected``.

    Files missing from ``scores`` count as 0.
    """
    if not selected:
        return AccuracyMetrics()

    by_key = {path_key(p): s for p, s in scores.items()}
    selected_scores = [by_key.get(path_key(p), 0.0) for p in selected]

    precision = sum(1 for s in selected_scores if s > HIGH_CONFIDENCE_SCORE) / len(selected_scores)
    recall = RECALL_PROXY
    f1 = 2 * precision * recall / (precision + recall) if precision > 0 else 0.0
    average = sum(selected_scores) / len(selected_scores)
    return AccuracyMetrics(precision=precision, recall=recall, f1=f1, confidence=average * precision)


@dataclass(frozen=True)
class AccuracyRecord:
    request: str
    precision: float
    recall: float
    timestamp: float


class AccuracyHistory:
    """Append-only window of recent metrics; drops the oldest half when full."""

    def __init__(self, cap: int = 1000, clock: Callable[[], float] = time.time):
        self.cap = cap
        self.clock = clock
        self._records: List[AccuracyRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> List[AccuracyRecord]:
        return list(self._records)

    def record(self, request: str, metrics: AccuracyMetrics) -> None:
        self._records.append(
            AccuracyRecord(
                request=request[:REQUEST_PREFIX_CHARS],
                precision=metrics.precision,
                recall=metrics.recall,
                timestamp=self.clock(),
            )
        )
        if len(self._records) > self.cap:
            self._records = self._records[len(self._records) - self.cap // 2:]
            logger.debug("Accuracy history truncated to %d records", len(self._records))

    def average_precision(self) -> float:
        if not self._records:
            return 0.0
        return sum(r.precision for r in self._records) / len(self._records)

    def clear(self) -> None:
        self._records.clear()
