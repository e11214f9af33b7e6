"""
Configuration for precision context search.

Sections are plain dataclasses so they can be built in code, loaded from a
YAML file (``Config.from_yaml("config.yaml")``) or switched to one of the
named presets.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)


@dataclass
class APIConfig:
    """Credentials and defaults for the language-model providers"""

    openai_api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    openai_base_url: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_BASE_URL"))
    openai_timeout: float = 60.0
    anthropic_api_key: Optional[str] = field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY"))
    default_model_openai: str = "gpt-4o"
    default_model_anthropic: str = "claude-sonnet-4"


@dataclass
class SearchConfig:
    """
    Scoring, sizing, caching and validation settings.

    Each ``enable_*`` flag switches one signal or pipeline stage on or off;
    a disabled signal contributes 0 to every file.
    """

    # Accuracy thresholds
    min_relevance_score: float = 0.3
    max_context_files: int = 50
    cache_precision_threshold: float = 0.8
    low_confidence_threshold: float = 0.6

    # Signals
    enable_semantic_search: bool = True
    enable_dependency_analysis: bool = True
    enable_symbol_analysis: bool = True
    enable_content_scan: bool = False
    semantic_min_similarity: float = 0.7
    max_semantic_files: int = 20
    max_content_bytes: int = 10_000

    # Heuristic seed set
    max_reverse_dependencies: int = 10
    max_call_hierarchy_files: int = 2

    # Pipeline
    enable_smart_caching: bool = True
    enable_dynamic_sizing: bool = True
    enable_accuracy_validation: bool = True
    enable_feedback_loop: bool = True

    # Resources
    cache_max_size: int = 100
    cache_ttl_seconds: float = 300.0
    max_search_time_seconds: float = 10.0
    accuracy_history_cap: int = 1000
    max_concurrency: int = 16

    def validate(self) -> List[str]:
        """Return a list of human-readable problems, empty when valid."""
        errors: List[str] = []
        for name in (
            "min_relevance_score",
            "cache_precision_threshold",
            "low_confidence_threshold",
            "semantic_min_similarity",
        ):
            value = getattr(self, name)
            if value < 0 or value > 1:
                errors.append(f"{name} must be between 0 and 1")

        for name in (
            "max_context_files",
            "max_semantic_files",
            "max_content_bytes",
            "cache_max_size",
            "cache_ttl_seconds",
            "max_search_time_seconds",
            "accuracy_history_cap",
            "max_concurrency",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be greater than 0")

        for name in ("max_reverse_dependencies", "max_call_hierarchy_files"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative")
        return errors


@dataclass
class RefinementConfig:
    """Settings for the model-driven refinement of the ranked file set"""

    enabled: bool = True
    provider: str = "openai"
    model: Optional[str] = None
    temperature: float = 0.1
    max_prompt_length: int = 50_000
    max_summary_chars: int = 200
    max_symbol_entries: int = 10
    max_dependency_entries: int = 30


PRESETS: Dict[str, Dict[str, Any]] = {
    "default": {},
    "high-precision": {
        "min_relevance_score": 0.5,
        "max_context_files": 25,
        "cache_precision_threshold": 0.9,
        "max_search_time_seconds": 15.0,
        "max_content_bytes": 8_000,
    },
    "performance": {
        "min_relevance_score": 0.25,
        "max_context_files": 60,
        "cache_precision_threshold": 0.7,
        "max_search_time_seconds": 8.0,
        "max_content_bytes": 15_000,
    },
    "balanced": {
        "min_relevance_score": 0.3,
        "max_context_files": 50,
        "cache_precision_threshold": 0.75,
        "max_search_time_seconds": 10.0,
        "max_content_bytes": 12_000,
    },
}


def _build_section(cls, data: Optional[Dict[str, Any]]):
    """Build a dataclass section, ignoring unknown keys with a warning."""
    data = data or {}
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class Config:
    """Top-level configuration object"""

    api: APIConfig = field(default_factory=APIConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Config":
        """
        Build a config from a mapping shaped like the YAML file.

        A top-level ``preset`` key applies a named preset before the
        explicit ``search`` values.
        """
        data = data or {}
        config = cls(
            api=_build_section(APIConfig, data.get("api")),
            search=SearchConfig(),
            refinement=_build_section(RefinementConfig, data.get("refinement")),
        )
        preset = data.get("preset")
        if preset:
            config = config.with_preset(preset)
        search_overrides = data.get("search") or {}
        config.search = _build_section(
            SearchConfig, {**dataclasses.asdict(config.search), **search_overrides}
        )
        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Config":
        """Load configuration from a YAML file."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
        return cls.from_dict(data)

    def with_preset(self, name: str) -> "Config":
        """Return a copy whose search section is the named preset."""
        if name not in PRESETS:
            raise ValueError(f"Unknown preset: {name}. Use one of: {', '.join(PRESETS)}")
        search = dataclasses.replace(SearchConfig(), **PRESETS[name])
        return dataclasses.replace(self, search=search)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)
