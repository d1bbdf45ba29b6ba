"""
Analysis pipeline - turns contract text into a complete AnalysisResult.

Shared by the built-in plugins and the fallback workflow so every tier
assembles results the same way: extract clauses, analyze risks, rank
them, derive recommendations and summarize.
"""

import time
from typing import Any, Awaitable, Callable, List, Optional, TYPE_CHECKING

from ..models.schemas import (
    AnalysisFeature,
    AnalysisMetadata,
    AnalysisOptions,
    AnalysisResult,
    Clause,
    ContractSummary,
    ProcessingMethod,
    RiskAnalysisResult,
)
from ..services.errors import ValidationError
from ..utils.functional import mean
from ..utils.performance import elapsed_ms
from .clause_extractor import ClauseExtractor
from .risk_analyzer import RiskAnalyzer

if TYPE_CHECKING:
    from ..services.configuration_store import ConfigurationStore
    from ..services.model_lifecycle import ModelLifecycleManager

# Wraps one model call, e.g. with retries: call(name, factory) -> awaitable result.
ModelCallWrapper = Callable[[str, Callable[[], Awaitable[Any]]], Awaitable[Any]]


async def _direct(name: str, factory: Callable[[], Awaitable[Any]]) -> Any:
    return await factory()


def overall_confidence(clauses: List[Clause], risk_result: RiskAnalysisResult) -> float:
    """Mean of clause and risk confidences; 0.5 when nothing was extracted."""
    if not clauses:
        return 0.5
    scores = [c.confidence for c in clauses] + [r.confidence for r in risk_result.risks]
    return round(mean(scores, default=0.5), 2)


class AnalysisPipeline:
    """
    Runs extraction and risk analysis and assembles the result.

    Usage:
        pipeline = AnalysisPipeline(ClauseExtractor(), RiskAnalyzer())
        result = pipeline.analyze_with_rules(text)
    """

    def __init__(
        self,
        extractor: ClauseExtractor,
        analyzer: RiskAnalyzer,
        config_store: Optional["ConfigurationStore"] = None
    ):
        self.extractor = extractor
        self.analyzer = analyzer
        self.config_store = config_store

    @staticmethod
    def _options(options: Optional[AnalysisOptions]) -> AnalysisOptions:
        return options if options is not None else AnalysisOptions()

    @staticmethod
    def _needs_clauses(options: AnalysisOptions) -> bool:
        return options.has(AnalysisFeature.CLAUSE_EXTRACTION) or options.has(AnalysisFeature.RISK_ANALYSIS)

    def analyze_with_rules(
        self,
        text: str,
        options: Optional[AnalysisOptions] = None
    ) -> AnalysisResult:
        """
        Deterministic analysis that needs no backend.

        Raises:
            ValidationError: If text is not a string
        """
        if not isinstance(text, str):
            raise ValidationError("Contract text must be a string")
        options = self._options(options)
        start = time.perf_counter()

        clauses = self.extractor.extract_with_rules(text, options) if self._needs_clauses(options) else []
        risk_result = (
            self.analyzer.analyze_risks(clauses, options)
            if options.has(AnalysisFeature.RISK_ANALYSIS)
            else RiskAnalysisResult()
        )
        return self.assemble(
            clauses,
            risk_result,
            ProcessingMethod.RULE_BASED,
            options,
            elapsed_ms(start),
        )

    async def analyze_with_model(
        self,
        text: str,
        lifecycle: "ModelLifecycleManager",
        options: Optional[AnalysisOptions] = None,
        method: ProcessingMethod = ProcessingMethod.AI_MODEL,
        call: Optional[ModelCallWrapper] = None
    ) -> AnalysisResult:
        """
        Model-backed analysis.

        Args:
            text: Contract text
            lifecycle: Manager of the loaded model
            options: Analysis options
            method: Tier recorded in the result metadata
            call: Wrapper applied to each model call (retries, logging)

        Raises:
            ValidationError: If text is not a string
            InferenceError: If a model call fails or returns unusable output
            BackendUnavailableError: If no model is ready
        """
        if not isinstance(text, str):
            raise ValidationError("Contract text must be a string")
        options = self._options(options)
        call = call or _direct
        start = time.perf_counter()

        clauses: List[Clause] = []
        if self._needs_clauses(options):
            clauses = await call(
                "clause_extraction",
                lambda: self.extractor.extract_with_ai(text, lifecycle, options)
            )
        risk_result = RiskAnalysisResult()
        if options.has(AnalysisFeature.RISK_ANALYSIS):
            risk_result = await call(
                "risk_analysis",
                lambda: self.analyzer.analyze_with_ai(clauses, lifecycle, options)
            )
        return self.assemble(
            clauses,
            risk_result,
            method,
            options,
            elapsed_ms(start),
            model_used=lifecycle.config.model_name,
        )

    def assemble(
        self,
        clauses: List[Clause],
        risk_result: RiskAnalysisResult,
        method: ProcessingMethod,
        options: AnalysisOptions,
        processing_time_ms: float,
        model_used: Optional[str] = None
    ) -> AnalysisResult:
        risk_settings = self.config_store.get("risk") if self.config_store else {}
        risks = risk_result.risks
        if risk_settings.get("prioritize_by_impact", True):
            risks = self.analyzer.prioritize_risks(risks)

        recommendations = []
        if options.has(AnalysisFeature.RECOMMENDATIONS) and risk_settings.get("enable_mitigation", True):
            recommendations = self.analyzer.generate_recommendations(risks)

        summary = risk_result.summary
        findings = [f"{len(clauses)} clauses identified"]
        if summary.total_risks:
            findings.append(
                f"{summary.total_risks} risks found "
                f"({summary.critical_risks} critical, {summary.high_risks} high)"
            )
        if summary.highest_risk is not None:
            findings.append(f"Highest risk: {summary.highest_risk.title}")

        reported_clauses = clauses if options.has(AnalysisFeature.CLAUSE_EXTRACTION) else []
        return AnalysisResult(
            summary=ContractSummary(
                total_clauses=len(reported_clauses),
                risk_score=self.analyzer.calculate_risk_score(risks),
                key_findings=findings,
            ),
            clauses=reported_clauses,
            risks=risks,
            recommendations=recommendations,
            metadata=AnalysisMetadata(
                processing_method=method,
                model_used=model_used,
                processing_time_ms=round(processing_time_ms, 2),
                confidence=overall_confidence(clauses, risk_result),
            ),
        )
