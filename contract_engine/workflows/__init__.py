"""LangGraph workflows."""

from .fallback_analysis_workflow import FallbackAnalysisOrchestrator, FallbackAnalysisState

__all__ = ["FallbackAnalysisOrchestrator", "FallbackAnalysisState"]
