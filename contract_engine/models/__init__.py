"""
Models package for the contract engine.

Pydantic schemas for domain records and configuration namespaces.
"""

from .schemas import (
    AnalysisFeature,
    AnalysisMetadata,
    AnalysisOptions,
    AnalysisRequest,
    AnalysisResult,
    BackendState,
    BusinessImpact,
    Clause,
    ClauseSummary,
    ContractSummary,
    ModelConfiguration,
    ModelDescriptor,
    OperationResult,
    ProcessingMethod,
    Recommendation,
    ResourceLimits,
    Risk,
    RiskAnalysisResult,
    RiskSummary,
    Severity,
)

__all__ = [
    "AnalysisFeature",
    "AnalysisMetadata",
    "AnalysisOptions",
    "AnalysisRequest",
    "AnalysisResult",
    "BackendState",
    "BusinessImpact",
    "Clause",
    "ClauseSummary",
    "ContractSummary",
    "ModelConfiguration",
    "ModelDescriptor",
    "OperationResult",
    "ProcessingMethod",
    "Recommendation",
    "ResourceLimits",
    "Risk",
    "RiskAnalysisResult",
    "RiskSummary",
    "Severity",
]
