"""
Heuristic selection (no model involved).

A cheap, deterministic seed set built from directory, import and call
adjacency to the active file. It is the fallback when model refinement fails
and the hint list handed to the model when it does not.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Iterable, List, Optional, Sequence, Set

from .cancellation import CancellationToken, check_cancelled
from .types import CorpusIndex, DependencyGraph, SymbolInfo, lowercase_graph, normalize_path, path_key

logger = logging.getLogger(__name__)

DEFAULT_MAX_REVERSE_DEPENDENCIES = 10
DEFAULT_MAX_CALL_HIERARCHY_FILES = 2


def symbol_related_keys(symbol_info: Optional[SymbolInfo]) -> Set[str]:
    """Path keys of every file the symbol under the cursor touches."""
    if symbol_info is None:
        return set()
    keys = {path_key(p) for p in symbol_info.referenced_type_files}
    if symbol_info.file_path:
        keys.add(path_key(symbol_info.file_path))
    for locations in (
        symbol_info.definitions,
        symbol_info.implementations,
        symbol_info.incoming_calls,
        symbol_info.outgoing_calls,
    ):
        keys.update(path_key(location.path) for location in locations)
    return keys


def _symbol_first(paths: Iterable[str], related: Set[str]) -> List[str]:
    # stable: corpus or graph order holds within each group
    return sorted(paths, key=lambda p: path_key(p) not in related)


def select_heuristic(
    corpus: Sequence[str],
    active_file: Optional[str],
    dependency_graph: Optional[DependencyGraph] = None,
    reverse_dependency_graph: Optional[DependencyGraph] = None,
    *,
    symbol_info: Optional[SymbolInfo] = None,
    max_reverse_dependencies: int = DEFAULT_MAX_REVERSE_DEPENDENCIES,
    max_call_hierarchy_files: int = DEFAULT_MAX_CALL_HIERARCHY_FILES,
    cancellation: Optional[CancellationToken] = None,
) -> List[str]:
    """
    Build the heuristic file set for ``active_file``.

    Order of the result:
    1. the active file
    2. corpus files in the active file's directory
    3. direct imports of the active file that exist in the corpus
    4. files importing the active file, at most ``max_reverse_dependencies``
       new entries
    5. files holding incoming, then outgoing, calls of ``symbol_info``, at
       most ``max_call_hierarchy_files`` new entries

    Within steps 2-4, files related to ``symbol_info`` come first; otherwise
    corpus or graph order is kept. Paths are returned in their corpus
    spelling. Without an active file the set is empty.

    Raises:
        SearchCancelled: if the token is cancelled during any loop
    """
    if not active_file:
        return []

    index = corpus if isinstance(corpus, CorpusIndex) else CorpusIndex(corpus)
    active_path = index.resolve(active_file) or normalize_path(active_file)
    active_key = path_key(active_path)
    related = symbol_related_keys(symbol_info)

    selected: List[str] = [active_path]
    seen = {active_key}

    def add(raw_path: str) -> bool:
        resolved = index.resolve(raw_path)
        if resolved is None:
            return False
        key = path_key(resolved)
        if key in seen:
            return False
        seen.add(key)
        selected.append(resolved)
        return True

    active_dir = posixpath.dirname(active_key)
    siblings = []
    for file_path in index.paths:
        check_cancelled(cancellation)
        if posixpath.dirname(path_key(file_path)) == active_dir:
            siblings.append(file_path)
    for file_path in _symbol_first(siblings, related):
        add(file_path)

    graph = lowercase_graph(dependency_graph)
    for target in _symbol_first(graph.get(active_key, ()), related):
        check_cancelled(cancellation)
        add(target)

    reverse_graph = lowercase_graph(reverse_dependency_graph)
    added_reverse = 0
    for importer in _symbol_first(reverse_graph.get(active_key, ()), related):
        if added_reverse >= max_reverse_dependencies:
            break
        check_cancelled(cancellation)
        if add(importer):
            added_reverse += 1

    if symbol_info is not None:
        added_calls = 0
        for location in symbol_info.incoming_calls + symbol_info.outgoing_calls:
            if added_calls >= max_call_hierarchy_files:
                break
            check_cancelled(cancellation)
            if add(location.path):
                added_calls += 1

    logger.debug("Heuristic selection for %s: %d files", active_path, len(selected))
    return selected
