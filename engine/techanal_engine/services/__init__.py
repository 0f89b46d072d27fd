"""Application services built on the governance runtime."""

from techanal_engine.services.analysis import AnalysisError, AnalysisOutcome, AnalysisService

__all__ = ["AnalysisError", "AnalysisOutcome", "AnalysisService"]
