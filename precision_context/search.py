"""
Precision search orchestrator.

``PrecisionSearchSystem.search`` runs one request through the pipeline:

    heuristic seed set -> workspace fingerprint -> cache lookup
    -> signal scoring -> ranking -> optional model refinement
    -> accuracy estimate -> conditional cache write

It always returns a usable ``SearchResult``. Collaborator failures degrade
individual signals; model failures take the fallback chain. Only
cancellation (``SearchCancelled``) and invalid configuration (``ValueError``)
reach the caller.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import dataclasses
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from .accuracy import AccuracyHistory, estimate_accuracy
from .cache import SearchCache, make_cache_key
from .cancellation import CancellationToken, SearchCancelled, run_bounded
from .core.config import Config, SearchConfig
from .fingerprint import compute_fingerprint
from .heuristics import select_heuristic
from .llm_integration import LLMModelCall, ModelCall, RefinementDelegate, fallback_selection
from .ranking import rank
from .signals import SignalScorer
from .types import (
    AccuracyMetrics,
    CorpusIndex,
    DependencyGraph,
    RequestContext,
    SearchResult,
    SymbolInfo,
    build_reverse_graph,
    normalize_path,
    path_key,
)
from .workspace import safe_stat

logger = logging.getLogger(__name__)

SYNC_SEARCH_TIMEOUT_SECONDS = 300


def validate_result(result: SearchResult, config: SearchConfig) -> List[str]:
    """Advisory checks on a finished search; each finding is logged as a warning."""
    warnings: List[str] = []
    if result.metrics.confidence < config.low_confidence_threshold:
        warnings.append(
            f"Low confidence: {result.metrics.confidence:.2f} < {config.low_confidence_threshold:.2f}"
        )
    if not result.files:
        warnings.append("No files selected")
    if result.elapsed > config.max_search_time_seconds:
        warnings.append(f"Slow search: {result.elapsed:.2f}s > {config.max_search_time_seconds:.2f}s")
    for message in warnings:
        logger.warning(f"⚠️ Accuracy validation: {message}")
    return warnings


class PrecisionSearchSystem:
    """
    Owns the cache and accuracy history for a series of searches.

    Collaborators are optional:
        reader: stat/read access to the workspace (fingerprint, context size,
            content scan). Without it, caching is skipped.
        embedding_service: ``await embed(text)`` for the query vector.
        symbol_provider: ``await provider(active_file, cursor)`` returning
            ``SymbolInfo`` when the request carries a cursor but no symbol.
        model_call: ``await model_call(prompt, model_name, generation_config)``
            enabling model refinement. Defaults to the adapter for
            ``config.refinement.provider`` when its credentials are set.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        reader=None,
        embedding_service=None,
        symbol_provider: Optional[Callable[..., Any]] = None,
        model_call: Optional[ModelCall] = None,
        clock: Callable[[], float] = time.time,
    ):
        config = config or Config()
        self._check_config(config.search)
        self.config = config
        self.reader = reader
        self.embedding_service = embedding_service
        self.symbol_provider = symbol_provider
        if model_call is None and config.refinement.enabled:
            model_call = self._provider_model_call(config)
        self.model_call = model_call
        self.clock = clock

        search_config = config.search
        self.cache = SearchCache(
            max_size=search_config.cache_max_size,
            ttl_seconds=search_config.cache_ttl_seconds,
            precision_threshold=search_config.cache_precision_threshold,
            clock=clock,
        )
        self.history = AccuracyHistory(cap=search_config.accuracy_history_cap, clock=clock)
        self.scorer = SignalScorer(search_config, reader=reader, embedding_service=embedding_service)
        self.delegate = RefinementDelegate(model_call, config.refinement) if model_call else None

    @staticmethod
    def _provider_model_call(config: Config) -> Optional[ModelCall]:
        """The configured provider's adapter, or None when it has no credentials."""
        model_call = LLMModelCall(config.api, config.refinement.provider)
        if not model_call.available:
            logger.info(f"No {config.refinement.provider} credentials, using ranked selection without refinement")
            return None
        return model_call

    @staticmethod
    def _check_config(search_config: SearchConfig) -> None:
        errors = search_config.validate()
        if errors:
            raise ValueError(f"Invalid search configuration: {'; '.join(errors)}")

    async def search(
        self,
        request: RequestContext,
        corpus: Sequence[str],
        *,
        dependency_graph: Optional[DependencyGraph] = None,
        reverse_dependency_graph: Optional[DependencyGraph] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> SearchResult:
        try:
            return await self._search(
                request,
                corpus,
                dependency_graph=dependency_graph,
                reverse_dependency_graph=reverse_dependency_graph,
                cancellation=cancellation,
            )
        except SearchCancelled:
            logger.debug("Search cancelled: %s", request.query[:50])
            raise

    async def _search(
        self,
        request: RequestContext,
        corpus: Sequence[str],
        *,
        dependency_graph: Optional[DependencyGraph],
        reverse_dependency_graph: Optional[DependencyGraph],
        cancellation: Optional[CancellationToken],
    ) -> SearchResult:
        started = time.perf_counter()
        search_config = self.config.search
        index = CorpusIndex(corpus)

        if not index:
            logger.warning("⚠️ Empty corpus, nothing to search")
            return SearchResult(
                files=(),
                scores={},
                metrics=AccuracyMetrics(),
                elapsed=time.perf_counter() - started,
                cache_hit=False,
                context_size=0,
            )

        if reverse_dependency_graph is None and dependency_graph:
            reverse_dependency_graph = build_reverse_graph(dependency_graph)

        symbol_info = await self._resolve_symbol(request)
        heuristic_files = select_heuristic(
            index,
            request.active_file,
            dependency_graph,
            reverse_dependency_graph,
            symbol_info=symbol_info,
            max_reverse_dependencies=search_config.max_reverse_dependencies,
            max_call_hierarchy_files=search_config.max_call_hierarchy_files,
            cancellation=cancellation,
        )

        fingerprint = None
        cache_key = None
        if search_config.enable_smart_caching and self.reader is not None:
            fingerprint = await compute_fingerprint(
                index.paths,
                self.reader,
                max_concurrency=search_config.max_concurrency,
                cancellation=cancellation,
            )
            cache_key = make_cache_key(
                request.query,
                fingerprint,
                request.active_path,
                heuristic_files,
                symbol_info.name if symbol_info else None,
            )
            entry = self.cache.get(cache_key, fingerprint)
            if entry is not None:
                logger.info(f"✅ Using cached search results for: {request.query[:50]}")
                return dataclasses.replace(
                    entry.result,
                    cache_hit=True,
                    elapsed=time.perf_counter() - started,
                    selection_source="cache",
                )

        context = await self.scorer.prepare(request, dependency_graph, reverse_dependency_graph, symbol_info)
        candidates = await self.scorer.score_corpus(index.paths, context, cancellation)
        ranked = rank(candidates, request.query, search_config)
        semantic_files = self.scorer.semantic_candidates(candidates)
        logger.info(f"📊 Scored {len(candidates)} files, {len(ranked)} ranked for selection")

        active_path = None
        if request.active_path:
            active_path = index.resolve(request.active_path) or normalize_path(request.active_path)

        if self.delegate is not None and self.config.refinement.enabled:
            refinement = await self.delegate.refine(
                request,
                ranked,
                heuristic_files,
                semantic_files,
                index,
                symbol_info=symbol_info,
                dependency_graph=dependency_graph,
                reverse_dependency_graph=reverse_dependency_graph,
                cancellation=cancellation,
            )
            files = list(refinement.files)
            selection_source = "fallback" if refinement.used_fallback else "ai"
        else:
            files = [c.path for c in ranked]
            selection_source = "ranked"
            if not files:
                files = fallback_selection(active_path, heuristic_files, semantic_files, (), index.paths)
                selection_source = "fallback"
            elif active_path and path_key(active_path) not in {path_key(f) for f in files}:
                files.insert(0, active_path)

        score_by_key = {path_key(c.path): c.score for c in candidates}
        scores = {f: score_by_key.get(path_key(f), 0.0) for f in files}
        metrics = estimate_accuracy(files, scores)
        context_size = await self._context_size(files, cancellation)

        result = SearchResult(
            files=tuple(files),
            scores=scores,
            metrics=metrics,
            elapsed=time.perf_counter() - started,
            cache_hit=False,
            context_size=context_size,
            selection_source=selection_source,
            candidates=tuple(ranked),
        )

        if cache_key is not None and self.cache.put(cache_key, fingerprint, result, request.query[:100]):
            logger.debug("Cached search result (confidence %.2f)", metrics.confidence)
        if search_config.enable_feedback_loop:
            self.history.record(request.query, metrics)
        if search_config.enable_accuracy_validation:
            validate_result(result, search_config)

        logger.info(
            f"✅ Selected {len(result.files)} files via {selection_source} "
            f"(precision {metrics.precision:.2f}, confidence {metrics.confidence:.2f})"
        )
        return result

    async def _resolve_symbol(self, request: RequestContext) -> Optional[SymbolInfo]:
        if request.symbol_info is not None or not self.config.search.enable_symbol_analysis:
            return request.symbol_info
        if self.symbol_provider is None or not request.active_file or request.cursor is None:
            return None
        try:
            return await self.symbol_provider(request.active_path, request.cursor)
        except Exception as e:
            logger.warning(f"⚠️ Symbol provider failed for {request.active_path}: {e}")
            return None

    async def _context_size(self, files: Sequence[str], cancellation: Optional[CancellationToken]) -> int:
        if self.reader is None or not files:
            return 0
        stats = await run_bounded(
            files,
            lambda file_path: safe_stat(self.reader, file_path),
            self.config.search.max_concurrency,
            cancellation,
        )
        return sum(stat.size for stat in stats if stat is not None)

    def search_sync(
        self,
        request: RequestContext,
        corpus: Sequence[str],
        **kwargs,
    ) -> SearchResult:
        """
        Synchronous wrapper around ``search``.

        Inside a running event loop the search runs on a worker thread with
        its own loop.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.search(request, corpus, **kwargs))

        def run_in_thread():
            return asyncio.run(self.search(request, corpus, **kwargs))

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(run_in_thread)
            return future.result(timeout=SYNC_SEARCH_TIMEOUT_SECONDS)

    def get_search_stats(self) -> Dict[str, Any]:
        return {
            "cache_size": len(self.cache),
            "accuracy_history": [dataclasses.asdict(r) for r in self.history.records],
            "average_precision": self.history.average_precision(),
            "config": dataclasses.asdict(self.config.search),
        }

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Search cache cleared")

    def update_config(self, **changes) -> None:
        """Replace search settings; the new configuration is validated first."""
        known = {f.name for f in dataclasses.fields(SearchConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown search settings: {', '.join(unknown)}")

        search_config = dataclasses.replace(self.config.search, **changes)
        self._check_config(search_config)
        self.config = dataclasses.replace(self.config, search=search_config)

        self.cache.max_size = search_config.cache_max_size
        self.cache.ttl_seconds = search_config.cache_ttl_seconds
        self.cache.precision_threshold = search_config.cache_precision_threshold
        self.history.cap = search_config.accuracy_history_cap
        self.scorer.config = search_config
        logger.info(f"🔧 Search configuration updated: {', '.join(sorted(changes))}")
