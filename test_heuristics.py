#!/usr/bin/env python3
"""
Tests for heuristic (model-free) file selection
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from precision_context.cancellation import CancellationToken, SearchCancelled
from precision_context.heuristics import select_heuristic
from precision_context.types import Location, SymbolInfo, build_reverse_graph

SAMPLE_CORPUS = [
    "src/parser.ts",
    "src/tokenizer.ts",
    "src/testParser.ts",
    "src/ast/nodes.ts",
    "lib/format.ts",
    "README.md",
]

SAMPLE_GRAPH = {
    "src/parser.ts": ["src/tokenizer.ts", "src/ast/nodes.ts"],
    "src/testParser.ts": ["src/parser.ts"],
    "lib/format.ts": ["src/parser.ts"],
}


def test_scenario_parser_tokenizer_test_file():
    graph = {
        "src/parser.ts": ["src/tokenizer.ts"],
        "src/testParser.ts": ["src/parser.ts"],
    }
    selected = select_heuristic(
        SAMPLE_CORPUS,
        "src/parser.ts",
        graph,
        build_reverse_graph(graph),
        max_reverse_dependencies=10,
    )
    assert set(selected) == {"src/parser.ts", "src/tokenizer.ts", "src/testParser.ts"}


def test_selection_order():
    selected = select_heuristic(
        SAMPLE_CORPUS,
        "src/parser.ts",
        SAMPLE_GRAPH,
        build_reverse_graph(SAMPLE_GRAPH),
    )
    assert selected == [
        "src/parser.ts",
        "src/tokenizer.ts",
        "src/testParser.ts",
        "src/ast/nodes.ts",
        "lib/format.ts",
    ]


def test_no_active_file_gives_empty_set():
    assert select_heuristic(SAMPLE_CORPUS, None, SAMPLE_GRAPH) == []


def test_imports_outside_corpus_are_ignored():
    graph = {"src/parser.ts": ["node_modules/left-pad/index.js"]}
    selected = select_heuristic(SAMPLE_CORPUS, "src/parser.ts", graph)
    assert "node_modules/left-pad/index.js" not in selected


def test_paths_match_case_insensitively_and_keep_corpus_spelling():
    graph = {"SRC/Parser.ts": ["src/ast/NODES.ts"]}
    selected = select_heuristic(SAMPLE_CORPUS, "src/PARSER.ts", graph)
    assert selected[0] == "src/parser.ts"
    assert "src/ast/nodes.ts" in selected


def test_reverse_dependencies_are_capped():
    corpus = ["core/base.ts"] + [f"feature{i}/user.ts" for i in range(15)]
    reverse = {"core/base.ts": [f"feature{i}/user.ts" for i in range(15)]}
    selected = select_heuristic(corpus, "core/base.ts", None, reverse, max_reverse_dependencies=3)
    assert selected == ["core/base.ts", "feature0/user.ts", "feature1/user.ts", "feature2/user.ts"]


def test_reverse_cap_counts_only_new_files():
    # src/testParser.ts is already a sibling, so it does not use up the cap
    reverse = {"src/parser.ts": ["src/testParser.ts", "lib/format.ts"]}
    selected = select_heuristic(SAMPLE_CORPUS, "src/parser.ts", None, reverse, max_reverse_dependencies=1)
    assert "lib/format.ts" in selected


def test_cancelled_selection_raises():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(SearchCancelled):
        select_heuristic(SAMPLE_CORPUS, "src/parser.ts", SAMPLE_GRAPH, cancellation=token)


def test_build_reverse_graph():
    assert build_reverse_graph(SAMPLE_GRAPH) == {
        "src/tokenizer.ts": ["src/parser.ts"],
        "src/ast/nodes.ts": ["src/parser.ts"],
        "src/parser.ts": ["src/testParser.ts", "lib/format.ts"],
    }


def test_call_hierarchy_files_added_with_their_own_cap():
    corpus = SAMPLE_CORPUS + ["app/main.ts", "app/cli.ts", "lib/emit.ts"]
    symbol = SymbolInfo(
        name="parse",
        file_path="src/parser.ts",
        incoming_calls=(Location("app/main.ts", 12), Location("src/tokenizer.ts", 3), Location("app/cli.ts", 40)),
        outgoing_calls=(Location("lib/emit.ts", 7),),
    )
    selected = select_heuristic(corpus, "src/parser.ts", symbol_info=symbol, max_call_hierarchy_files=2)

    # src/tokenizer.ts is already a sibling, so only new files use the cap
    assert selected[-2:] == ["app/main.ts", "app/cli.ts"]
    assert "lib/emit.ts" not in selected


def test_outgoing_calls_follow_incoming_calls():
    corpus = SAMPLE_CORPUS + ["app/main.ts", "lib/emit.ts"]
    symbol = SymbolInfo(
        name="parse",
        incoming_calls=(Location("app/main.ts", 12),),
        outgoing_calls=(Location("lib/emit.ts", 7), Location("vendor/missing.ts", 1)),
    )
    selected = select_heuristic(corpus, "src/parser.ts", symbol_info=symbol, max_call_hierarchy_files=5)
    assert selected[-2:] == ["app/main.ts", "lib/emit.ts"]
    assert "vendor/missing.ts" not in selected


def test_symbol_related_files_come_first_within_each_step():
    symbol = SymbolInfo(
        name="Node",
        implementations=(Location("src/testParser.ts", 2),),
        referenced_type_files=("src/ast/nodes.ts",),
    )
    graph = {"src/parser.ts": ["lib/format.ts", "src/ast/nodes.ts"]}
    selected = select_heuristic(SAMPLE_CORPUS, "src/parser.ts", graph, symbol_info=symbol)

    assert selected == [
        "src/parser.ts",
        "src/testParser.ts",
        "src/tokenizer.ts",
        "src/ast/nodes.ts",
        "lib/format.ts",
    ]


def test_call_hierarchy_cap_of_zero_adds_nothing():
    symbol = SymbolInfo(name="parse", incoming_calls=(Location("lib/format.ts", 1),))
    selected = select_heuristic(SAMPLE_CORPUS, "src/parser.ts", symbol_info=symbol, max_call_hierarchy_files=0)
    assert "lib/format.ts" not in selected
