"""
Rule-based analysis plugin.

Deterministic and backend-free; a safe default plugin.
"""

from typing import List, Optional, TYPE_CHECKING

from ..analysis.clause_extractor import ClauseExtractor
from ..analysis.pipeline import AnalysisPipeline
from ..analysis.risk_analyzer import RiskAnalyzer
from ..models.schemas import AnalysisOptions, AnalysisResult, Clause, RiskAnalysisResult
from .base import PluginBehavior

if TYPE_CHECKING:
    from ..services.configuration_store import ConfigurationStore


class RuleBasedPlugin(PluginBehavior):
    """Keyword and pattern based contract analysis."""

    description = "Deterministic keyword and pattern based contract analysis"

    def __init__(
        self,
        name: str = "rule_based",
        version: str = "1.0.0",
        config_store: Optional["ConfigurationStore"] = None,
        pipeline: Optional[AnalysisPipeline] = None
    ):
        super().__init__(
            name,
            version,
            capabilities=[
                "contract-analysis",
                "clause-extraction",
                "risk-analysis",
                "recommendations",
                "deterministic",
                "offline",
            ],
        )
        self.pipeline = pipeline or AnalysisPipeline(
            ClauseExtractor(config_store),
            RiskAnalyzer(config_store),
            config_store
        )

    async def initialize(self) -> bool:
        self.is_initialized = True
        return True

    async def process_contract(self, text: str, options: Optional[AnalysisOptions] = None) -> AnalysisResult:
        return self.pipeline.analyze_with_rules(text, options)

    async def extract_clauses(self, text: str, options: Optional[AnalysisOptions] = None) -> List[Clause]:
        return self.pipeline.extractor.extract_with_rules(text, options)

    async def analyze_risks(
        self,
        clauses: List[Clause],
        options: Optional[AnalysisOptions] = None
    ) -> RiskAnalysisResult:
        return self.pipeline.analyzer.analyze_risks(clauses, options)

    async def cleanup(self) -> None:
        self.is_initialized = False
