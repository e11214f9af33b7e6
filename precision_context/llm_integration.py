"""
Model-driven refinement of the ranked file set.

The delegate builds a bounded selection prompt, asks a language model for a
JSON array of paths, validates the answer against the corpus and falls back
to the deterministic heuristic/semantic set on any anomaly. Model output is
untrusted: it is parsed into one of three tagged outcomes and never raises
past this module (cancellation excepted).

``LLMModelCall`` adapts the async OpenAI and Anthropic clients to the
``invoke(prompt, model_name, generation_config) -> text`` interface the
delegate consumes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

try:
    import openai
    OPENAI_AVAILABLE = True
except ImportError:
    OPENAI_AVAILABLE = False

try:
    import anthropic
    ANTHROPIC_AVAILABLE = True
except ImportError:
    ANTHROPIC_AVAILABLE = False

from .cancellation import CancellationToken, SearchCancelled, check_cancelled
from .core.config import APIConfig, RefinementConfig
from .types import (
    Candidate,
    CorpusIndex,
    DependencyGraph,
    RequestContext,
    SymbolInfo,
    normalize_path,
    path_key,
)

logger = logging.getLogger(__name__)

ModelCall = Callable[[str, Optional[str], Dict[str, Any]], Awaitable[str]]

SELECTED_TEXT_CHARS = 200
DIAGNOSTICS_CHARS = 1000
CHAT_TAIL_MESSAGES = 5
CHAT_MESSAGE_CHARS = 300
LAST_RESORT_FILES = 10


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelectionOk:
    paths: Tuple[str, ...]


@dataclass(frozen=True)
class SelectionParseError:
    raw: str
    message: str


@dataclass(frozen=True)
class SelectionSchemaError:
    raw: str
    message: str


SelectionOutcome = Union[SelectionOk, SelectionParseError, SelectionSchemaError]


def strip_code_fences(text: str) -> str:
    """Remove a leading ``` or ```json fence and a trailing ``` fence."""
    stripped = text.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1:] if first_newline != -1 else stripped[3:]
        if stripped[:4].lower() == "json":
            stripped = stripped[4:]
    if stripped.endswith("```"):
        stripped = stripped[:-3]
    return stripped.strip()


def parse_selection(raw: Any) -> SelectionOutcome:
    """Parse a model response that should be a JSON array of path strings."""
    if raw is None:
        return SelectionParseError(raw="", message="Empty response")
    if not isinstance(raw, str):
        return SelectionSchemaError(raw=repr(raw), message=f"Expected text, got {type(raw).__name__}")
    try:
        data = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as e:
        return SelectionParseError(raw=raw, message=f"Invalid JSON: {e}")

    if not isinstance(data, list):
        return SelectionSchemaError(raw=raw, message=f"Expected a JSON array, got {type(data).__name__}")
    if not all(isinstance(item, str) for item in data):
        return SelectionSchemaError(raw=raw, message="Array elements must all be strings")
    return SelectionOk(paths=tuple(data))


def match_to_corpus(paths: Sequence[str], corpus: CorpusIndex) -> List[str]:
    """Resolve model paths against the corpus, dropping unknown ones."""
    matched: List[str] = []
    seen = set()
    for raw in paths:
        resolved = corpus.resolve(raw)
        if resolved is None:
            logger.warning(f"⚠️ Model selected unknown file, ignoring: {raw}")
            continue
        key = path_key(resolved)
        if key not in seen:
            seen.add(key)
            matched.append(resolved)
    return matched


# ---------------------------------------------------------------------------
# Fallback chain
# ---------------------------------------------------------------------------


def _ordered_union(*groups: Sequence[str]) -> List[str]:
    merged: List[str] = []
    seen = set()
    for group in groups:
        for file_path in group:
            key = path_key(file_path)
            if key not in seen:
                seen.add(key)
                merged.append(file_path)
    return merged


def fallback_selection(
    active_path: Optional[str],
    heuristic_files: Sequence[str],
    semantic_files: Sequence[str],
    ranked_files: Sequence[str] = (),
    corpus: Sequence[str] = (),
) -> List[str]:
    """
    Active file, then heuristic files, then semantic candidates.

    When that union is empty the ranked list is used, then the first corpus
    files, so a non-empty corpus never yields an empty selection.
    """
    selected = _ordered_union([active_path] if active_path else [], heuristic_files, semantic_files)
    if selected:
        return selected
    if ranked_files:
        return list(ranked_files)
    return list(corpus[:LAST_RESORT_FILES])


def _force_active(selected: Sequence[str], active_path: Optional[str]) -> List[str]:
    if not active_path:
        return list(selected)
    return _ordered_union([active_path], selected)


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------


def _truncation_marker(dropped: int) -> str:
    return f"... ({dropped} more lines truncated)"


def truncate_lines(block: str, budget: int) -> str:
    """Keep whole leading lines of ``block`` plus a marker, within ``budget`` chars."""
    if len(block) <= budget:
        return block
    lines = block.split("\n")
    marker_length = len(_truncation_marker(len(lines)))
    kept: List[str] = []
    used = 0
    for line in lines:
        cost = len(line) + 1
        if used + cost + marker_length > budget:
            break
        kept.append(line)
        used += cost
    if not kept and budget < marker_length:
        return ""
    kept.append(_truncation_marker(len(lines) - len(kept)))
    return "\n".join(kept)


def _unique(paths: Sequence[str], limit: int) -> List[str]:
    return _ordered_union(paths)[:limit]


def build_request_block(request: RequestContext) -> str:
    lines = [f'User Request: "{request.query}"']
    if request.active_path:
        lines.append(f"Active File: {request.active_path}")
    if request.selected_text and request.selected_text.strip():
        lines.append(f'Selected Text: "{request.selected_text[:SELECTED_TEXT_CHARS]}"')
    if request.instruction:
        lines.append(f"Instruction: {request.instruction}")
    if request.diagnostics:
        lines.append("Diagnostics:")
        lines.append(request.diagnostics[:DIAGNOSTICS_CHARS])
    if request.chat_history:
        lines.append("Recent Conversation:")
        for message in request.chat_history[-CHAT_TAIL_MESSAGES:]:
            lines.append(f"- {message[:CHAT_MESSAGE_CHARS]}")
    return "\n".join(lines)


def build_heuristic_block(heuristic_files: Sequence[str]) -> str:
    if not heuristic_files:
        return ""
    lines = ["Heuristically Pre-selected Files (strong candidates, but critically evaluate them):"]
    lines.extend(f"- {p}" for p in heuristic_files)
    return "\n".join(lines)


def build_symbol_block(symbol: Optional[SymbolInfo], max_entries: int) -> str:
    if symbol is None or not symbol.name:
        return ""
    lines = [
        "--- Active Symbol Information ---",
        f'Symbol: "{symbol.name}" (Type: {symbol.kind or "Unknown"})',
    ]
    groups = (
        ("Definition in", [loc.path for loc in symbol.definitions] or ([symbol.file_path] if symbol.file_path else [])),
        ("Implementations in", [loc.path for loc in symbol.implementations]),
        ("Incoming calls from", [loc.path for loc in symbol.incoming_calls]),
        ("Outgoing calls to", [loc.path for loc in symbol.outgoing_calls]),
        ("References types defined in", list(symbol.referenced_type_files)),
    )
    for label, paths in groups:
        unique_paths = _unique([normalize_path(p) for p in paths], max_entries)
        if unique_paths:
            lines.append(f"{label}: {', '.join(unique_paths)}")
    lines.append("--- End Active Symbol Information ---")
    return "\n".join(lines)


def build_dependency_block(
    active_path: Optional[str],
    candidate_paths: Sequence[str],
    dependency_graph: Optional[DependencyGraph],
    reverse_dependency_graph: Optional[DependencyGraph],
    max_entries: int,
) -> str:
    """One line per file with known imports, active file first, capped."""
    graph = {path_key(k): list(v) for k, v in (dependency_graph or {}).items()}
    reverse_graph = {path_key(k): list(v) for k, v in (reverse_dependency_graph or {}).items()}

    entries: List[str] = []
    if active_path:
        key = path_key(active_path)
        if graph.get(key):
            entries.append(f"{active_path} imports: {', '.join(_unique(graph[key], 10))}")
        if reverse_graph.get(key):
            entries.append(f"{active_path} is imported by: {', '.join(_unique(reverse_graph[key], 10))}")

    for file_path in candidate_paths:
        if len(entries) >= max_entries:
            break
        key = path_key(file_path)
        if active_path and key == path_key(active_path):
            continue
        if graph.get(key):
            entries.append(f"{file_path} imports: {', '.join(_unique(graph[key], 10))}")

    if not entries:
        return ""
    return "\n".join(["--- Dependency Relationships ---", *entries[:max_entries]])


def build_file_list(
    file_paths: Sequence[str],
    summaries: Dict[str, str],
    max_summary_chars: int,
) -> str:
    lines = ["--- Available Project Files ---"]
    for file_path in file_paths:
        summary = summaries.get(path_key(file_path))
        if summary:
            flattened = " ".join(summary[:max_summary_chars].split())
            lines.append(f'- "{file_path}" (Summary: {flattened}...)')
        else:
            lines.append(f'- "{file_path}"')
    return "\n".join(lines)


PROMPT_HEADER = (
    "You are an expert AI developer assistant. Your task is to select the most "
    "relevant files to help with a user's request."
)

PROMPT_INSTRUCTIONS = """-- Instructions --
1. Analyze the user's request and the context above, especially the active symbol information.
2. Files that define, implement, call or are called by the active symbol are the most important.
3. Use file summaries to judge semantic relevance.
4. Treat the pre-selected files as suggestions and discard any file that is not essential.
5. Return ONLY a JSON array of strings, each an exact relative path from the "Available Project Files" list. Do not include any other text.

JSON Array of selected file paths:"""


@dataclass
class PromptSections:
    request: str
    heuristics: str = ""
    symbol: str = ""
    dependencies: str = ""
    files: str = ""

    def render(self) -> str:
        context = "\n\n".join(b for b in (self.request, self.heuristics, self.symbol, self.dependencies) if b)
        parts = [PROMPT_HEADER, f"-- Context --\n{context}\n-- End Context --"]
        if self.files:
            parts.append(self.files)
        parts.append(PROMPT_INSTRUCTIONS)
        return "\n\n".join(parts)


def assemble_prompt(sections: PromptSections, max_length: int) -> str:
    """
    Render the prompt, truncating the file list, then the dependency block,
    then the symbol summary until it fits. The request block and the
    instructions are never truncated.
    """
    for name in ("files", "dependencies", "symbol"):
        overflow = len(sections.render()) - max_length
        if overflow <= 0:
            break
        block = getattr(sections, name)
        setattr(sections, name, truncate_lines(block, len(block) - overflow))
        logger.debug("Truncated %s block to fit prompt budget", name)
    return sections.render()


# ---------------------------------------------------------------------------
# Delegate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RefinementResult:
    files: Tuple[str, ...]
    used_fallback: bool
    outcome: Optional[SelectionOutcome] = None
    prompt_length: int = 0


class RefinementDelegate:
    """
    Asks a language model to pick the final files from the ranked set.

    ``model_call`` is awaited as ``model_call(prompt, model_name,
    generation_config)`` and must return the raw response text.
    """

    def __init__(self, model_call: ModelCall, config: Optional[RefinementConfig] = None):
        self.model_call = model_call
        self.config = config or RefinementConfig()

    def build_prompt(
        self,
        request: RequestContext,
        ranked: Sequence[Candidate],
        heuristic_files: Sequence[str],
        *,
        symbol_info: Optional[SymbolInfo] = None,
        dependency_graph: Optional[DependencyGraph] = None,
        reverse_dependency_graph: Optional[DependencyGraph] = None,
    ) -> str:
        ranked_paths = [c.path for c in ranked]
        listed = _ordered_union(ranked_paths, heuristic_files)
        summaries = {path_key(p): text for p, text in request.file_summaries.items()}
        sections = PromptSections(
            request=build_request_block(request),
            heuristics=build_heuristic_block(heuristic_files),
            symbol=build_symbol_block(symbol_info or request.symbol_info, self.config.max_symbol_entries),
            dependencies=build_dependency_block(
                request.active_path,
                ranked_paths,
                dependency_graph,
                reverse_dependency_graph,
                self.config.max_dependency_entries,
            ),
            files=build_file_list(listed, summaries, self.config.max_summary_chars),
        )
        return assemble_prompt(sections, self.config.max_prompt_length)

    async def refine(
        self,
        request: RequestContext,
        ranked: Sequence[Candidate],
        heuristic_files: Sequence[str],
        semantic_files: Sequence[str],
        corpus: CorpusIndex,
        *,
        symbol_info: Optional[SymbolInfo] = None,
        dependency_graph: Optional[DependencyGraph] = None,
        reverse_dependency_graph: Optional[DependencyGraph] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> RefinementResult:
        """
        Return the model's selection, or the fallback set when the call
        fails or its answer is unusable. Only cancellation propagates.
        """
        active_path = None
        if request.active_path:
            active_path = corpus.resolve(request.active_path) or request.active_path

        def fallback(outcome: Optional[SelectionOutcome], prompt_length: int) -> RefinementResult:
            files = fallback_selection(
                active_path,
                heuristic_files,
                semantic_files,
                [c.path for c in ranked],
                corpus.paths,
            )
            logger.info(f"🔧 Falling back to heuristic selection ({len(files)} files)")
            return RefinementResult(files=tuple(files), used_fallback=True, outcome=outcome, prompt_length=prompt_length)

        prompt = self.build_prompt(
            request,
            ranked,
            heuristic_files,
            symbol_info=symbol_info,
            dependency_graph=dependency_graph,
            reverse_dependency_graph=reverse_dependency_graph,
        )
        logger.debug("Sending selection prompt (%d chars)", len(prompt))
        generation_config = {"temperature": self.config.temperature, "response_format": "json"}

        check_cancelled(cancellation)
        try:
            raw = await self.model_call(prompt, self.config.model, generation_config)
        except (SearchCancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.error(f"Model selection call failed: {e}")
            return fallback(None, len(prompt))
        check_cancelled(cancellation)

        outcome = parse_selection(raw)
        if not isinstance(outcome, SelectionOk):
            logger.warning(f"⚠️ Unusable model selection ({type(outcome).__name__}): {outcome.message}")
            return fallback(outcome, len(prompt))

        matched = match_to_corpus(outcome.paths, corpus)
        if not matched:
            logger.warning("⚠️ Model selection contained no known files")
            return fallback(outcome, len(prompt))

        files = _force_active(matched, active_path)
        logger.info(f"✅ Model selected {len(files)} files")
        return RefinementResult(files=tuple(files), used_fallback=False, outcome=outcome, prompt_length=len(prompt))


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------


class LLMModelCall:
    """
    ``invoke(prompt, model_name, generation_config) -> text`` over the async
    OpenAI or Anthropic client. No retries: failures propagate to the
    delegate, which falls back immediately.
    """

    def __init__(self, api_config: Optional[APIConfig] = None, provider: str = "openai"):
        if provider not in ("openai", "anthropic"):
            raise ValueError(f"Unknown provider: {provider}. Use 'openai' or 'anthropic'.")
        self.api_config = api_config or APIConfig()
        self.provider = provider
        self.openai_client: Optional[Any] = None
        self.anthropic_client: Optional[Any] = None
        self._initialize_clients()

    def _initialize_clients(self):
        """Initialize the client for the configured provider"""
        if self.provider == "openai" and OPENAI_AVAILABLE and self.api_config.openai_api_key:
            self.openai_client = openai.AsyncOpenAI(
                api_key=self.api_config.openai_api_key,
                base_url=self.api_config.openai_base_url.rstrip("/") if self.api_config.openai_base_url else None,
                timeout=self.api_config.openai_timeout,
            )
            logger.info("✅ OpenAI client initialized for context selection")

        if self.provider == "anthropic" and ANTHROPIC_AVAILABLE and self.api_config.anthropic_api_key:
            self.anthropic_client = anthropic.AsyncAnthropic(api_key=self.api_config.anthropic_api_key)
            logger.info("✅ Anthropic client initialized for context selection")

    @property
    def available(self) -> bool:
        """True when the configured provider has a client to call."""
        if self.provider == "openai":
            return self.openai_client is not None
        return self.anthropic_client is not None

    async def __call__(
        self,
        prompt: str,
        model_name: Optional[str] = None,
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> str:
        generation_config = generation_config or {}
        temperature = generation_config.get("temperature", 0.1)

        if self.provider == "openai":
            if not self.openai_client:
                raise ValueError("OpenAI client not initialized. Set OPENAI_API_KEY.")
            response = await self.openai_client.chat.completions.create(
                model=model_name or self.api_config.default_model_openai,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
            )
            return response.choices[0].message.content or ""

        if not self.anthropic_client:
            raise ValueError("Anthropic client not initialized. Set ANTHROPIC_API_KEY.")
        response = await self.anthropic_client.messages.create(
            model=model_name or self.api_config.default_model_anthropic,
            max_tokens=generation_config.get("max_tokens", 2048),
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
