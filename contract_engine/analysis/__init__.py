"""
Analysis components: clause extraction, risk analysis and result assembly.

Extraction and risk analysis each offer a deterministic rule-based path
and a model-backed path that goes through the ModelLifecycleManager.
"""

from .clause_extractor import ClauseExtractor
from .pipeline import AnalysisPipeline
from .risk_analyzer import RiskAnalyzer

__all__ = ["AnalysisPipeline", "ClauseExtractor", "RiskAnalyzer"]
