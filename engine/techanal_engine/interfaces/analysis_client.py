"""
AnalysisClient interface.

Defines the contract for the AI chart-analysis collaborator. The engine
governs and caches calls to it but does not implement the analysis.
"""

from abc import ABC, abstractmethod
from typing import Any

from techanal_engine.runtime.response_cache import AnalysisRequest


class AnalysisClient(ABC):
    """
    Abstract base class for chart analysis providers.
    """

    @abstractmethod
    async def analyze(self, request: AnalysisRequest) -> dict[str, Any]:
        """
        Analyze a chart.

        Args:
            request: Prompt, chart image and metadata

        Returns:
            JSON-serializable analysis result

        Raises:
            Exception: Any provider failure; callers treat it as an error
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check whether the provider is reachable."""
        pass
