"""Core configuration for precision context search"""

from .config import APIConfig, Config, RefinementConfig, SearchConfig, PRESETS

__all__ = ["APIConfig", "Config", "RefinementConfig", "SearchConfig", "PRESETS"]
