#!/usr/bin/env python3
"""
End-to-end tests for PrecisionSearchSystem with fake collaborators
"""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from precision_context import (
    CancellationToken,
    Config,
    Location,
    PrecisionSearchSystem,
    RequestContext,
    SearchCancelled,
    SearchConfig,
    SymbolInfo,
)
from precision_context.core.config import APIConfig, RefinementConfig
from precision_context.llm_integration import LLMModelCall
from precision_context.search import validate_result
from precision_context.types import AccuracyMetrics, SearchResult
from precision_context.workspace import FileStat

SAMPLE_FILES = {
    "src/parser.ts": (100.0, 1200),
    "src/tokenizer.ts": (100.0, 800),
    "docs/readme.md": (100.0, 50),
    "tests/parser.test.ts": (100.0, 300),
}

SAMPLE_GRAPH = {
    "src/parser.ts": ["src/tokenizer.ts"],
    "tests/parser.test.ts": ["src/parser.ts"],
}

PARSER_REQUEST = RequestContext(query="parser tokenizer", active_file="src/parser.ts")


@pytest.fixture(autouse=True)
def no_provider_credentials(monkeypatch):
    """Keep real API keys from the environment out of these tests"""
    for name in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "OPENAI_BASE_URL"):
        monkeypatch.delenv(name, raising=False)


class FakeReader:
    """Reader with controllable modification times and sizes"""

    def __init__(self, files=SAMPLE_FILES):
        self.files = {path: list(meta) for path, meta in files.items()}

    def touch(self, path, mtime):
        self.files[path][0] = mtime

    async def stat(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        mtime, size = self.files[path]
        return FileStat(mtime=mtime, size=size)

    async def read_prefix(self, path, limit):
        return ""


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeModelCall:
    def __init__(self, response):
        self.response = response
        self.calls = 0

    async def __call__(self, prompt, model_name, generation_config):
        self.calls += 1
        return self.response


class FailingEmbeddingService:
    async def embed(self, text):
        raise ConnectionError("embedding service unreachable")


def run_search(system, request=PARSER_REQUEST, corpus=None, **kwargs):
    return asyncio.run(system.search(request, corpus or list(SAMPLE_FILES), **kwargs))


def test_ranked_search_without_model():
    system = PrecisionSearchSystem(Config(), reader=FakeReader())
    result = run_search(system, dependency_graph=SAMPLE_GRAPH)

    assert result.files[:2] == ("src/parser.ts", "src/tokenizer.ts")
    assert "docs/readme.md" not in result.files
    assert result.selection_source == "ranked"
    assert not result.cache_hit
    assert result.context_size == sum(SAMPLE_FILES[f][1] for f in result.files)
    assert result.scores["src/parser.ts"] == 1.0
    assert result.candidates[0].path == "src/parser.ts"


def test_second_identical_search_hits_cache():
    system = PrecisionSearchSystem(Config(), reader=FakeReader(), clock=FakeClock())
    first = run_search(system)
    second = run_search(system)

    assert first.metrics.confidence >= 0.8
    assert not first.cache_hit
    assert second.cache_hit
    assert second.files == first.files
    assert second.selection_source == "cache"


def test_cached_result_cannot_be_altered_by_caller():
    system = PrecisionSearchSystem(Config(), reader=FakeReader(), clock=FakeClock())
    first = run_search(system)
    expected = dict(first.scores)

    with pytest.raises(TypeError):
        first.scores["src/parser.ts"] = -1.0

    second = run_search(system)
    assert second.cache_hit
    assert dict(second.scores) == expected


def test_modified_file_invalidates_cache():
    reader = FakeReader()
    system = PrecisionSearchSystem(Config(), reader=reader, clock=FakeClock())
    run_search(system)

    reader.touch("docs/readme.md", 200.0)
    assert not run_search(system).cache_hit


def test_cache_expires_after_ttl():
    clock = FakeClock()
    system = PrecisionSearchSystem(Config(), reader=FakeReader(), clock=clock)
    run_search(system)

    clock.now += system.config.search.cache_ttl_seconds
    assert not run_search(system).cache_hit


def test_caching_disabled():
    config = Config(search=SearchConfig(enable_smart_caching=False))
    system = PrecisionSearchSystem(config, reader=FakeReader())
    run_search(system)
    assert not run_search(system).cache_hit
    assert len(system.cache) == 0


def test_no_reader_means_no_cache_and_zero_context_size():
    system = PrecisionSearchSystem(Config())
    first = run_search(system)
    assert first.context_size == 0
    assert not run_search(system).cache_hit


def test_embedding_failure_still_scores_ranks_and_caches():
    request = RequestContext(
        query="parser tokenizer",
        active_file="src/parser.ts",
        file_embeddings={path: [1.0, 0.0] for path in SAMPLE_FILES},
    )
    system = PrecisionSearchSystem(
        Config(),
        reader=FakeReader(),
        embedding_service=FailingEmbeddingService(),
        clock=FakeClock(),
    )
    result = run_search(system, request=request)

    assert all(c.signals.semantic == 0.0 for c in result.candidates)
    assert result.files[:2] == ("src/parser.ts", "src/tokenizer.ts")
    assert len(system.cache) == 1


def test_garbage_model_output_yields_exact_fallback_set():
    request = RequestContext(
        query="parser tokenizer",
        active_file="src/parser.ts",
        query_embedding=[1.0, 0.0],
        file_embeddings={"docs/readme.md": [1.0, 0.0]},
    )
    model_call = FakeModelCall("Sure! The relevant files are parser and tokenizer.")
    system = PrecisionSearchSystem(Config(), reader=FakeReader(), model_call=model_call)
    result = run_search(system, request=request, dependency_graph=SAMPLE_GRAPH)

    assert model_call.calls == 1
    assert result.selection_source == "fallback"
    # active file, heuristic set (sibling, import, importer), semantic candidates
    assert result.files == (
        "src/parser.ts",
        "src/tokenizer.ts",
        "tests/parser.test.ts",
        "docs/readme.md",
    )


def test_non_text_model_output_takes_fallback():
    model_call = FakeModelCall({"files": ["src/parser.ts"]})
    system = PrecisionSearchSystem(Config(), reader=FakeReader(), model_call=model_call)
    result = run_search(system, dependency_graph=SAMPLE_GRAPH)

    assert result.selection_source == "fallback"
    assert result.files[0] == "src/parser.ts"


def test_model_selection_keeps_active_file():
    system = PrecisionSearchSystem(Config(), reader=FakeReader(), model_call=FakeModelCall('["docs/readme.md"]'))
    result = run_search(system)

    assert result.selection_source == "ai"
    assert result.files == ("src/parser.ts", "docs/readme.md")


def test_refinement_disabled_ignores_model():
    config = Config()
    config.refinement.enabled = False
    model_call = FakeModelCall('["docs/readme.md"]')
    result = run_search(PrecisionSearchSystem(config, model_call=model_call))

    assert model_call.calls == 0
    assert result.selection_source == "ranked"


def test_nothing_relevant_still_returns_files():
    request = RequestContext(query="zzz qqq")
    result = run_search(PrecisionSearchSystem(Config()), request=request)

    assert result.selection_source == "fallback"
    assert result.files == tuple(SAMPLE_FILES)


def test_empty_corpus():
    result = asyncio.run(PrecisionSearchSystem(Config()).search(PARSER_REQUEST, []))
    assert result.files == ()
    assert result.metrics == AccuracyMetrics()


def test_cancelled_search_raises():
    token = CancellationToken()
    token.cancel("superseded")
    system = PrecisionSearchSystem(Config(), reader=FakeReader())
    with pytest.raises(SearchCancelled):
        run_search(system, cancellation=token)
    assert len(system.cache) == 0


def test_symbol_provider_consulted_for_cursor():
    seen = []

    async def provider(active_file, cursor):
        seen.append((active_file, cursor))
        return SymbolInfo(name="parse", file_path="src/parser.ts", incoming_calls=(Location("docs/readme.md", 4),))

    request = RequestContext(query="explain", active_file="src/parser.ts", cursor=(10, 4))
    system = PrecisionSearchSystem(Config(), symbol_provider=provider)
    result = run_search(system, request=request)

    assert seen == [("src/parser.ts", (10, 4))]
    assert "docs/readme.md" in result.files


def test_symbol_provider_failure_degrades():
    async def provider(active_file, cursor):
        raise RuntimeError("language server crashed")

    request = RequestContext(query="parser", active_file="src/parser.ts", cursor=(1, 1))
    result = run_search(PrecisionSearchSystem(Config(), symbol_provider=provider), request=request)
    assert "src/parser.ts" in result.files


def test_invalid_config_rejected():
    with pytest.raises(ValueError, match="min_relevance_score"):
        PrecisionSearchSystem(Config(search=SearchConfig(min_relevance_score=1.5)))


def test_update_config():
    system = PrecisionSearchSystem(Config())
    system.update_config(cache_max_size=5, min_relevance_score=0.5)

    assert system.config.search.min_relevance_score == 0.5
    assert system.cache.max_size == 5
    with pytest.raises(ValueError):
        system.update_config(max_concurrency=0)
    with pytest.raises(ValueError):
        system.update_config(no_such_setting=True)
    assert system.config.search.max_concurrency == 16


def test_search_stats_and_clear_cache():
    system = PrecisionSearchSystem(Config(), reader=FakeReader(), clock=FakeClock())
    run_search(system)

    stats = system.get_search_stats()
    assert stats["cache_size"] == 1
    assert len(stats["accuracy_history"]) == 1
    assert stats["accuracy_history"][0]["request"] == "parser tokenizer"
    assert stats["config"]["max_context_files"] == 50

    system.clear_cache()
    assert system.get_search_stats()["cache_size"] == 0


def test_search_sync_outside_and_inside_event_loop():
    system = PrecisionSearchSystem(Config())
    outside = system.search_sync(PARSER_REQUEST, list(SAMPLE_FILES))

    async def inside():
        return system.search_sync(PARSER_REQUEST, list(SAMPLE_FILES))

    assert asyncio.run(inside()).files == outside.files


def test_validate_result_warnings():
    config = SearchConfig()
    result = SearchResult(
        files=(),
        scores={},
        metrics=AccuracyMetrics(),
        elapsed=config.max_search_time_seconds + 1,
        cache_hit=False,
        context_size=0,
    )
    warnings = validate_result(result, config)
    assert len(warnings) == 3


def test_provider_adapter_built_from_config():
    config = Config(
        api=APIConfig(anthropic_api_key="test-key"),
        refinement=RefinementConfig(provider="anthropic"),
    )
    system = PrecisionSearchSystem(config)

    assert isinstance(system.model_call, LLMModelCall)
    assert system.model_call.provider == "anthropic"
    assert system.delegate is not None


def test_provider_without_credentials_uses_ranked_selection():
    system = PrecisionSearchSystem(Config(refinement=RefinementConfig(provider="anthropic")))
    assert system.model_call is None
    assert system.delegate is None
    assert run_search(system).selection_source == "ranked"


def test_unknown_provider_rejected():
    with pytest.raises(ValueError, match="Unknown provider"):
        PrecisionSearchSystem(Config(refinement=RefinementConfig(provider="ollama")))


def test_injected_model_call_wins_over_provider():
    model_call = FakeModelCall('["src/tokenizer.ts"]')
    config = Config(api=APIConfig(openai_api_key="test-key"))
    system = PrecisionSearchSystem(config, model_call=model_call)
    assert system.model_call is model_call


def test_call_hierarchy_files_survive_model_failure():
    symbol = SymbolInfo(name="parse", file_path="src/parser.ts", incoming_calls=(Location("docs/readme.md", 4),))
    request = RequestContext(query="parser", active_file="src/parser.ts", symbol_info=symbol)
    system = PrecisionSearchSystem(Config(), model_call=FakeModelCall("no idea"))
    result = run_search(system, request=request)

    assert result.selection_source == "fallback"
    assert "docs/readme.md" in result.files
