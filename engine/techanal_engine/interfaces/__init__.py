"""
Interfaces (abstract base classes) for the TechAnal engine.

These define the contracts that must be implemented by:
- AnalysisClient: AI chart analysis provider
"""

from techanal_engine.interfaces.analysis_client import AnalysisClient

__all__ = [
    "AnalysisClient",
]
