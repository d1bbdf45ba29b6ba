"""
Model-backed analysis plugin.

Uses the loaded model for clause extraction and risk analysis. While no
model is ready it answers with the rule-based path and says so in the
result metadata: ``processing_method`` is ``rule_based``, ``model_used``
stays empty and ``fallback_reason`` names the model state.
"""

import logging
from typing import Any, Dict, List, Optional

from ..analysis.clause_extractor import ClauseExtractor
from ..analysis.pipeline import AnalysisPipeline
from ..analysis.risk_analyzer import RiskAnalyzer
from ..models.schemas import AnalysisOptions, AnalysisResult, Clause, RiskAnalysisResult
from ..services.model_lifecycle import ModelLifecycleManager
from .base import PluginBehavior

logger = logging.getLogger(__name__)


class ModelBackedPlugin(PluginBehavior):
    """
    Analysis plugin driving a ModelLifecycleManager.

    Usage:
        plugin = ModelBackedPlugin(lifecycle, auto_load=True)
        await registry.register("model", plugin)
    """

    description = "Model-backed clause extraction and risk analysis"

    def __init__(
        self,
        lifecycle: ModelLifecycleManager,
        name: str = "model",
        version: str = "1.0.0",
        auto_load: bool = False,
        load_config: Optional[Dict[str, Any]] = None,
        unload_on_cleanup: bool = False,
        pipeline: Optional[AnalysisPipeline] = None
    ):
        """
        Initialize the plugin.

        Args:
            lifecycle: Manager of the model to use
            name: Registry name
            version: Plugin version
            auto_load: Load the model during ``initialize`` if none is loaded
            load_config: Configuration passed to ``load`` when auto-loading
            unload_on_cleanup: Unload the model when the plugin is removed
            pipeline: Analysis pipeline, built from the lifecycle's store if None
        """
        super().__init__(
            name,
            version,
            capabilities=[
                "contract-analysis",
                "clause-extraction",
                "risk-analysis",
                "recommendations",
                "ai-inference",
                "structured-output",
            ],
        )
        self.lifecycle = lifecycle
        self.auto_load = auto_load
        self.load_config = load_config
        self.unload_on_cleanup = unload_on_cleanup
        store = lifecycle.config_store
        self.pipeline = pipeline or AnalysisPipeline(
            ClauseExtractor(store),
            RiskAnalyzer(store),
            store
        )

    async def initialize(self) -> bool:
        if self.auto_load and not self.lifecycle.is_loaded:
            if not await self.lifecycle.load(self.load_config):
                # Not fatal: the plugin answers with rules until a model is loaded.
                logger.warning(
                    f"Plugin {self.name} could not load its model: {self.lifecycle.last_error}"
                )
        self.is_initialized = True
        return True

    async def process_contract(self, text: str, options: Optional[AnalysisOptions] = None) -> AnalysisResult:
        if self.lifecycle.is_ready:
            return await self.pipeline.analyze_with_model(text, self.lifecycle, options)
        reason = (
            f"model {self.lifecycle.config.model_name} not ready "
            f"(state: {self.lifecycle.state.value}), used rule-based analysis"
        )
        logger.info(f"Plugin {self.name}: {reason}")
        result = self.pipeline.analyze_with_rules(text, options)
        metadata = result.metadata.model_copy(update={"fallback_reason": reason})
        return result.model_copy(update={"metadata": metadata})

    async def extract_clauses(self, text: str, options: Optional[AnalysisOptions] = None) -> List[Clause]:
        if self.lifecycle.is_ready:
            return await self.pipeline.extractor.extract_with_ai(text, self.lifecycle, options)
        return self.pipeline.extractor.extract_with_rules(text, options)

    async def analyze_risks(
        self,
        clauses: List[Clause],
        options: Optional[AnalysisOptions] = None
    ) -> RiskAnalysisResult:
        if self.lifecycle.is_ready:
            return await self.pipeline.analyzer.analyze_with_ai(clauses, self.lifecycle, options)
        return self.pipeline.analyzer.analyze_risks(clauses, options)

    def get_metadata(self) -> Dict[str, Any]:
        metadata = super().get_metadata()
        metadata["model"] = self.lifecycle.config.model_name
        metadata["model_state"] = self.lifecycle.state.value
        return metadata

    async def cleanup(self) -> None:
        if self.unload_on_cleanup and self.lifecycle.is_loaded:
            await self.lifecycle.unload()
        self.is_initialized = False
