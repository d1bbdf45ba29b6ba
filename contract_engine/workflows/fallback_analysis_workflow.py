"""
LangGraph workflow for multi-tier fallback contract analysis.

Tries the active plugin, then direct model inference, then the
deterministic rules, dropping to the next tier whenever one fails. The
rule tier needs no backend, so a well-formed request always gets a
result. The orchestrator also exposes the administrative API for models,
plugins and configuration, and builds the collaborators once through
``create`` / ``from_settings``.
"""

import time
from typing import Any, Dict, List, Optional, TypedDict

import structlog
from langgraph.graph import END, StateGraph
from pydantic import ValidationError as PydanticValidationError

from ..analysis.clause_extractor import ClauseExtractor
from ..analysis.pipeline import AnalysisPipeline
from ..analysis.risk_analyzer import RiskAnalyzer
from ..models.schemas import (
    AnalysisOptions,
    AnalysisResult,
    OperationResult,
    ProcessingMethod,
    ResourceLimits,
)
from ..models.settings import EngineSettings
from ..plugins.base import PluginBehavior
from ..plugins.registry import ActivePlugin, PluginRegistry
from ..services.compatibility import CURRENT_FORMAT_VERSION, CompatibilityLayer
from ..services.configuration_store import ConfigurationStore
from ..services.errors import AnalysisError, ValidationError
from ..services.inference_backend import GeminiBackend, InferenceBackend, OllamaBackend
from ..services.metrics_collector import MetricsCollector
from ..services.model_lifecycle import ModelLifecycleManager
from ..services.persistence import (
    DurablePersistence,
    InMemoryPersistence,
    JsonFilePersistence,
    RedisPersistence,
)
from ..services.resilience import RetryPolicy, bounded_wait, call_with_retries
from ..utils.logging import setup_logging
from ..utils.performance import elapsed_ms, log_execution_time
from ..utils.request_context import request_scope

logger = structlog.get_logger()

FINALIZE = "finalize"
TIER_NODES = {
    ProcessingMethod.PLUGIN.value: "plugin",
    ProcessingMethod.AI_MODEL.value: "model",
    ProcessingMethod.RULE_BASED.value: "rules",
}


class FallbackAnalysisState(TypedDict, total=False):
    """
    State schema for the fallback analysis workflow.

    Input fields:
        text: Contract text
        options: Analysis options
        request_id: Correlation ID of the request
        plugin_snapshot: Active plugin at request start, or None
        retry_policy: Retry bounds for model and plugin calls
        tier_timeout_ms: Upper bound on the plugin and model tiers
        fallback_enabled: Whether to continue after a failed tier
        started_at: perf_counter reading at request start

    Routing fields:
        pending_tiers: Tiers not tried yet, in order
        next_node: Node the router sends the request to next

    Output fields:
        result: Analysis result, None until a tier succeeds
        result_tier: Tier that produced the result
        attempted_tiers: Tiers tried, in order
        errors: One message per failed tier
        fallback_reason: Why the last failed tier failed
        last_exception: Exception of the last failed tier
    """
    # Input
    text: str
    options: AnalysisOptions
    request_id: str
    plugin_snapshot: Optional[ActivePlugin]
    retry_policy: RetryPolicy
    tier_timeout_ms: float
    fallback_enabled: bool
    started_at: float

    # Routing
    pending_tiers: List[str]
    next_node: str

    # Output
    result: Optional[AnalysisResult]
    result_tier: Optional[ProcessingMethod]
    attempted_tiers: List[str]
    errors: List[str]
    fallback_reason: Optional[str]
    last_exception: Optional[BaseException]


class FallbackAnalysisOrchestrator:
    """
    Entry point of the engine.

    Nodes:
    1. select - snapshot the active plugin and order the tiers
    2. plugin - analysis by the active plugin
    3. model - model-backed extraction and risk analysis
    4. rules - deterministic extraction and risk analysis
    5. finalize - stamp metadata and record metrics

    Usage:
        engine = await FallbackAnalysisOrchestrator.create(OllamaBackend())
        result = await engine.process_contract(text)
        result.metadata.processing_method  # which tier answered
    """

    def __init__(
        self,
        config_store: ConfigurationStore,
        lifecycle: ModelLifecycleManager,
        registry: PluginRegistry,
        pipeline: AnalysisPipeline,
        metrics: Optional[MetricsCollector] = None,
        owns_backend: bool = False,
        compatibility: Optional[CompatibilityLayer] = None
    ):
        """
        Initialize the orchestrator with its collaborators.

        Args:
            config_store: Runtime configuration
            lifecycle: Manager of the inference model
            registry: Analysis plugins
            pipeline: Extraction/risk pipeline used by the model and rule tiers
            metrics: Collector for analysis and fallback metrics
            owns_backend: Close the lifecycle's backend on ``cleanup``
            compatibility: Legacy format conversion, built over the store if None
        """
        self.config_store = config_store
        self.lifecycle = lifecycle
        self.registry = registry
        self.pipeline = pipeline
        self.metrics = metrics or MetricsCollector()
        self.owns_backend = owns_backend
        self.compatibility = compatibility or CompatibilityLayer(config_store)

        self.workflow = self._build_workflow()

    # ------------------------------------------------------------------
    # Composition root
    # ------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        backend: InferenceBackend,
        persistence: Optional[DurablePersistence] = None,
        resource_limits: Optional[ResourceLimits] = None,
        plugins: Optional[Dict[str, PluginBehavior]] = None,
        load_model: bool = False,
        owns_backend: bool = False
    ) -> "FallbackAnalysisOrchestrator":
        """
        Build and wire every collaborator.

        Args:
            backend: Inference backend adapter
            persistence: Durable configuration backend (memory only if None)
            resource_limits: Memory and latency ceilings of the model
            plugins: Plugins to register, in order; the first becomes default
            load_model: Load the configured model right away (failure is logged)
            owns_backend: Close the backend on ``cleanup``
        """
        config_store = ConfigurationStore(persistence)
        await config_store.initialize()

        metrics = MetricsCollector()
        lifecycle = ModelLifecycleManager(backend, config_store, resource_limits, metrics)
        pipeline = AnalysisPipeline(
            ClauseExtractor(config_store, metrics),
            RiskAnalyzer(config_store, metrics),
            config_store
        )
        engine = cls(config_store, lifecycle, PluginRegistry(), pipeline, metrics, owns_backend)

        if load_model and not await lifecycle.load():
            logger.warning("initial_model_load_failed", reason=lifecycle.last_error)

        for name, plugin in (plugins or {}).items():
            if not await engine.registry.register(name, plugin):
                logger.warning("plugin_registration_failed", plugin=name, reason=engine.registry.last_error)

        logger.info(
            "orchestrator_created",
            backend=backend.name,
            model_state=lifecycle.state.value,
            plugins=len(engine.registry.list_plugins())
        )
        return engine

    @classmethod
    async def from_settings(
        cls,
        settings: Optional[EngineSettings] = None,
        **kwargs: Any
    ) -> "FallbackAnalysisOrchestrator":
        """
        Build the engine from process settings (the environment by default).

        Configures logging, picks the backend and the persistence layer,
        then delegates to ``create``.
        """
        settings = settings or EngineSettings.from_env()
        setup_logging(settings.log_level, settings.log_json)

        if settings.backend == "gemini":
            if not settings.google_api_key:
                raise ValidationError("GOOGLE_API_KEY is required for the gemini backend")
            backend: InferenceBackend = GeminiBackend(api_key=settings.google_api_key)
        else:
            backend = OllamaBackend(settings.ollama_base_url)

        if settings.redis_url:
            persistence: DurablePersistence = RedisPersistence(settings.redis_url)
        elif settings.config_dir:
            persistence = JsonFilePersistence(settings.config_dir)
        else:
            persistence = InMemoryPersistence()

        limits = ResourceLimits(
            memory_limit_mb=settings.memory_limit_mb,
            max_processing_time_ms=settings.max_processing_time_ms,
        )
        return await cls.create(
            backend,
            persistence=persistence,
            resource_limits=limits,
            owns_backend=True,
            **kwargs
        )

    # ------------------------------------------------------------------
    # Workflow graph
    # ------------------------------------------------------------------

    def _build_workflow(self):
        """
        Build the LangGraph workflow.

        Flow: select → (plugin | model | rules)* → finalize → END, where
        each tier node routes to the next applicable tier on failure.
        """
        workflow = StateGraph(FallbackAnalysisState)

        workflow.add_node("select", self._select_node)
        workflow.add_node("plugin", self._plugin_node)
        workflow.add_node("model", self._model_node)
        workflow.add_node("rules", self._rules_node)
        workflow.add_node(FINALIZE, self._finalize_node)

        routes = {"plugin": "plugin", "model": "model", "rules": "rules", FINALIZE: FINALIZE}
        workflow.set_entry_point("select")
        for node in ("select", "plugin", "model", "rules"):
            workflow.add_conditional_edges(node, self._route, routes)
        workflow.add_edge(FINALIZE, END)

        return workflow.compile()

    @staticmethod
    def _route(state: FallbackAnalysisState) -> str:
        return state.get("next_node", FINALIZE)

    def _tier_available(self, tier: str, state: FallbackAnalysisState) -> bool:
        if tier == ProcessingMethod.PLUGIN.value:
            # The registry only holds plugins whose initialize() succeeded.
            return state.get("plugin_snapshot") is not None
        if tier == ProcessingMethod.AI_MODEL.value:
            return self.lifecycle.is_ready
        return tier == ProcessingMethod.RULE_BASED.value

    def _advance(self, state: FallbackAnalysisState) -> str:
        """Pick the next node: the first pending tier that can run, else finalize."""
        if state.get("result") is not None:
            return FINALIZE
        if state["attempted_tiers"] and not state.get("fallback_enabled", True):
            return FINALIZE
        pending = state["pending_tiers"]
        while pending:
            tier = pending.pop(0)
            if self._tier_available(tier, state):
                return TIER_NODES[tier]
            logger.debug("analysis_tier_skipped", tier=tier)
        return FINALIZE

    def _record_failure(self, state: FallbackAnalysisState, tier: ProcessingMethod, error: BaseException) -> None:
        reason = f"{tier.value} failed: {type(error).__name__}: {error}"
        state["errors"].append(reason)
        state["fallback_reason"] = reason
        state["last_exception"] = error
        logger.warning(
            "analysis_tier_failed",
            tier=tier.value,
            error_type=type(error).__name__,
            error=str(error)
        )

    def _continue(self, state: FallbackAnalysisState, tier: ProcessingMethod) -> FallbackAnalysisState:
        state["next_node"] = self._advance(state)
        if state.get("result") is None and state["next_node"] != FINALIZE:
            next_tier = next(t for t, node in TIER_NODES.items() if node == state["next_node"])
            last = state.get("last_exception")
            self.metrics.record_fallback(type(last).__name__ if last else "unavailable", tier.value, next_tier)
            logger.info("analysis_fallback", from_tier=tier.value, to_tier=next_tier)
        return state

    async def _select_node(self, state: FallbackAnalysisState) -> FallbackAnalysisState:
        """Snapshot the active plugin and queue the tiers."""
        state["plugin_snapshot"] = self.registry.get_active_plugin()
        state["next_node"] = self._advance(state)
        logger.info(
            "analysis_started",
            plugin=state["plugin_snapshot"].name if state["plugin_snapshot"] else None,
            model_state=self.lifecycle.state.value,
            first_tier=state["next_node"]
        )
        return state

    def _retrying_call(self, policy: RetryPolicy):
        async def call(name: str, factory):
            return await call_with_retries(factory, policy, name)
        return call

    async def _plugin_node(self, state: FallbackAnalysisState) -> FallbackAnalysisState:
        """Tier 1: the plugin that was active when the request started."""
        tier = ProcessingMethod.PLUGIN
        state["attempted_tiers"].append(tier.value)
        snapshot = state["plugin_snapshot"]
        try:
            state["result"] = await bounded_wait(
                call_with_retries(
                    lambda: self.registry.process(state["text"], state["options"], active=snapshot),
                    state["retry_policy"],
                    f"plugin:{snapshot.name}"
                ),
                state["tier_timeout_ms"],
                f"plugin tier ({snapshot.name})"
            )
            state["result_tier"] = tier
        except Exception as e:
            self._record_failure(state, tier, e)
        return self._continue(state, tier)

    async def _model_node(self, state: FallbackAnalysisState) -> FallbackAnalysisState:
        """Tier 2: direct model inference."""
        tier = ProcessingMethod.AI_MODEL
        state["attempted_tiers"].append(tier.value)
        try:
            state["result"] = await bounded_wait(
                self.pipeline.analyze_with_model(
                    state["text"],
                    self.lifecycle,
                    state["options"],
                    method=tier,
                    call=self._retrying_call(state["retry_policy"])
                ),
                state["tier_timeout_ms"],
                "model tier"
            )
            state["result_tier"] = tier
        except Exception as e:
            self._record_failure(state, tier, e)
        return self._continue(state, tier)

    async def _rules_node(self, state: FallbackAnalysisState) -> FallbackAnalysisState:
        """Tier 3: deterministic rules; only malformed input makes it fail."""
        tier = ProcessingMethod.RULE_BASED
        state["attempted_tiers"].append(tier.value)
        try:
            state["result"] = self.pipeline.analyze_with_rules(state["text"], state["options"])
            state["result_tier"] = tier
        except ValidationError as e:
            self._record_failure(state, tier, e)
        return self._continue(state, tier)

    async def _finalize_node(self, state: FallbackAnalysisState) -> FallbackAnalysisState:
        """Stamp how the result was produced and record metrics."""
        duration_ms = round(elapsed_ms(state["started_at"]), 2)
        result = state.get("result")
        if result is None:
            self.metrics.record_analysis(
                success=False,
                processing_time_ms=duration_ms,
                error_type=type(state["last_exception"]).__name__ if state.get("last_exception") else "NoTierAvailable"
            )
            logger.error("analysis_failed", attempted_tiers=state["attempted_tiers"], errors=state["errors"])
            return state

        update = {"fallback_reason": state.get("fallback_reason")}
        if state["result_tier"] == ProcessingMethod.PLUGIN:
            # Keep the plugin's own account, e.g. rules while its model was down.
            update["plugin_method"] = result.metadata.processing_method
            update["fallback_reason"] = update["fallback_reason"] or result.metadata.fallback_reason
        metadata = result.metadata.model_copy(update={
            **update,
            "processing_method": state["result_tier"],
            "attempted_tiers": [ProcessingMethod(t) for t in state["attempted_tiers"]],
            "request_id": state["request_id"],
            "processing_time_ms": duration_ms,
        })
        state["result"] = result.model_copy(update={"metadata": metadata})
        self.metrics.record_analysis(
            success=True,
            processing_time_ms=duration_ms,
            method=state["result_tier"].value,
            confidence=metadata.confidence
        )
        logger.info(
            "analysis_complete",
            processing_method=state["result_tier"].value,
            attempted_tiers=state["attempted_tiers"],
            clauses=len(result.clauses),
            risks=len(result.risks),
            duration_ms=duration_ms
        )
        return state

    # ------------------------------------------------------------------
    # Analysis API
    # ------------------------------------------------------------------

    def _coerce_options(self, options: Any) -> AnalysisOptions:
        if options is None:
            return AnalysisOptions()
        if isinstance(options, AnalysisOptions):
            return options
        if isinstance(options, dict):
            try:
                return AnalysisOptions(**self.compatibility.migrate_options(options))
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid analysis options: {e.errors()[0]['msg']}",
                    errors=[err["msg"] for err in e.errors()]
                ) from e
        raise ValidationError("Analysis options must be a mapping")

    def _tier_order(self, analysis: Dict[str, Any]) -> List[str]:
        methods = list(analysis.get("methods") or TIER_NODES)
        primary = analysis.get("primary_method")
        if primary in methods:
            methods.remove(primary)
            methods.insert(0, primary)
        return methods

    @log_execution_time("process_contract")
    async def process_contract(
        self,
        text: str,
        options: Optional[Any] = None
    ) -> AnalysisResult:
        """
        Analyze contract text through the fallback tiers.

        Args:
            text: Contract text
            options: ``AnalysisOptions`` or an equivalent mapping

        Returns:
            The first successful tier's result; ``metadata.processing_method``
            names the tier and ``metadata.attempted_tiers`` every tier tried

        Raises:
            ValidationError: If the text is not a string or options are invalid
            AnalysisError: If every tier failed
        """
        if not isinstance(text, str):
            raise ValidationError("Contract text must be a string")
        options = self._coerce_options(options)
        analysis = self.config_store.get("analysis")

        with request_scope() as request_id:
            initial_state: FallbackAnalysisState = {
                "text": text,
                "options": options,
                "request_id": request_id,
                "plugin_snapshot": None,
                "retry_policy": RetryPolicy.from_settings(analysis, self.config_store.get("model")),
                "tier_timeout_ms": analysis["timeout_ms"],
                "fallback_enabled": analysis.get("fallback_enabled", True),
                "started_at": time.perf_counter(),
                "pending_tiers": self._tier_order(analysis),
                "result": None,
                "result_tier": None,
                "attempted_tiers": [],
                "errors": [],
                "fallback_reason": None,
                "last_exception": None,
            }
            final_state = await self.workflow.ainvoke(initial_state)

        result = final_state.get("result")
        if result is None:
            raise AnalysisError(
                final_state.get("fallback_reason") or "no analysis tier available",
                cause=final_state.get("last_exception"),
                attempted_tiers=final_state.get("attempted_tiers", [])
            )
        return result

    async def process_contract_for_version(
        self,
        text: str,
        options: Optional[Any] = None,
        version: str = CURRENT_FORMAT_VERSION
    ) -> Dict[str, Any]:
        """
        Analyze and render the result in an older format version.

        The version is checked before any tier runs.

        Raises:
            ValidationError: If the version is unknown or no longer served
        """
        self.compatibility.require_supported(version)
        result = await self.process_contract(text, options)
        return self.compatibility.convert_result(result, version)

    # ------------------------------------------------------------------
    # Model administration
    # ------------------------------------------------------------------

    async def load_model(self, config: Optional[Dict[str, Any]] = None) -> OperationResult:
        """Load a model and record its configuration in the ``model`` namespace."""
        if not await self.lifecycle.load(config):
            return OperationResult.failed(self.lifecycle.last_error)
        try:
            if not await self.config_store.set("model", self.lifecycle.config.model_dump()):
                logger.warning("model_configuration_not_stored", reason=self.config_store.last_error)
        except ValidationError as e:
            logger.warning("model_configuration_not_stored", reason=str(e))
        return OperationResult.ok(model_name=self.lifecycle.config.model_name)

    async def unload_model(self) -> OperationResult:
        await self.lifecycle.unload()
        return OperationResult.ok()

    async def health_check(self) -> OperationResult:
        healthy = await self.lifecycle.health_check()
        status = self.lifecycle.state.value
        if healthy:
            return OperationResult.ok(health_status=status)
        return OperationResult.failed(self.lifecycle.last_error or f"model is {status}", health_status=status)

    def get_model_status(self) -> Dict[str, Any]:
        return self.lifecycle.get_model_status()

    def get_performance_metrics(self) -> Dict[str, Any]:
        return {
            "model": self.lifecycle.get_performance_metrics(),
            "analysis": self.metrics.get_metrics(),
            "plugins": self.registry.get_status(),
            "configuration": self.config_store.get_status(),
            "compatibility": self.compatibility.get_report(),
        }

    # ------------------------------------------------------------------
    # Configuration administration
    # ------------------------------------------------------------------

    def get_configuration(self, name: Optional[str] = None) -> Dict[str, Any]:
        """One namespace, or every namespace keyed by name."""
        if name is not None:
            return self.config_store.get(name)
        return {ns: self.config_store.get(ns) for ns in self.config_store.list_configurations()}

    async def _apply_configuration(
        self,
        name: str,
        apply,
        lifecycle_change: Optional[Dict[str, Any]] = None
    ) -> OperationResult:
        try:
            applied = await apply()
        except ValidationError as e:
            return OperationResult.failed(str(e), errors=e.errors)
        if not applied:
            return OperationResult.failed(self.config_store.last_error)

        if name == "model":
            # Partial updates only touch the fields they name on the lifecycle.
            change = lifecycle_change if lifecycle_change is not None else self.config_store.get("model")
            if not await self.lifecycle.update_configuration(change):
                reason = self.lifecycle.last_error
                await self.config_store.restore("model")
                return OperationResult.failed(reason)
        return OperationResult.ok(configuration=self.config_store.get(name))

    async def set_configuration(self, name: str, value: Dict[str, Any]) -> OperationResult:
        return await self._apply_configuration(name, lambda: self.config_store.set(name, value))

    async def update_configuration(self, name: str, partial: Dict[str, Any]) -> OperationResult:
        """
        Deep-merge a partial value into a namespace.

        Updates to ``model`` are applied to the lifecycle manager as well;
        if it rejects them (e.g. the reload fails) the store is restored.
        """
        return await self._apply_configuration(
            name,
            lambda: self.config_store.update(name, partial),
            lifecycle_change=partial
        )

    async def reset_configuration(self, name: str) -> OperationResult:
        return await self._apply_configuration(name, lambda: self.config_store.reset(name))

    async def restore_configuration(self, name: str) -> OperationResult:
        return await self._apply_configuration(name, lambda: self.config_store.restore(name))

    # ------------------------------------------------------------------
    # Plugin administration
    # ------------------------------------------------------------------

    async def register_plugin(self, name: str, plugin: PluginBehavior) -> OperationResult:
        if await self.registry.register(name, plugin):
            return OperationResult.ok(plugin=name)
        return OperationResult.failed(self.registry.last_error)

    async def unregister_plugin(self, name: str) -> OperationResult:
        if await self.registry.unregister(name):
            return OperationResult.ok(active_plugin=self.registry.active_name)
        return OperationResult.failed(self.registry.last_error)

    def switch_plugin(self, name: str) -> OperationResult:
        if self.registry.switch_plugin(name):
            return OperationResult.ok(active_plugin=name)
        return OperationResult.failed(self.registry.last_error)

    def list_plugins(self) -> List[Dict[str, Any]]:
        return self.registry.list_plugins()

    def get_plugin_history(self) -> List[Dict[str, Any]]:
        return self.registry.get_plugin_history()

    async def cleanup(self) -> None:
        """Unregister plugins, unload the model and release the backend."""
        await self.registry.cleanup()
        await self.lifecycle.cleanup()
        await self.config_store.cleanup()
        if self.owns_backend:
            await self.lifecycle.backend.aclose()
        logger.info("orchestrator_cleaned_up")
