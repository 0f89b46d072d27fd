"""
TechAnal Engine

Request-governance and diagnostics layer for the chart analysis backend:
- Per-key fixed-window rate limiting with 429 responses
- Fingerprint-addressed response cache with TTL and usage-based eviction
- Bounded live event bus backing a server-sent events console
"""

__version__ = "1.4.0"
__author__ = "TechAnal Development Team"

from techanal_engine.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]
