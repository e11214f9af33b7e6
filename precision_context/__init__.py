"""Precision context search: pick the few project files a request needs"""

from .cancellation import CancellationToken, SearchCancelled
from .core.config import APIConfig, Config, RefinementConfig, SearchConfig
from .search import PrecisionSearchSystem
from .types import (
    AccuracyMetrics,
    Candidate,
    Location,
    RequestContext,
    SearchResult,
    SignalScores,
    SymbolInfo,
)
from .workspace import WorkspaceReader

__all__ = [
    "APIConfig",
    "AccuracyMetrics",
    "CancellationToken",
    "Candidate",
    "Config",
    "Location",
    "PrecisionSearchSystem",
    "RefinementConfig",
    "RequestContext",
    "SearchCancelled",
    "SearchConfig",
    "SearchResult",
    "SignalScores",
    "SymbolInfo",
    "WorkspaceReader",
]
