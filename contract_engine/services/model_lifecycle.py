"""
Model Lifecycle Manager - load, health, inference and reconfiguration of
the inference backend model.

Loading is a chain of explicit stages (validate, reach backend, ensure
model, describe, check requirements, test inference) that stops at the
first failing stage. Load, unload and reconfiguration are serialized by a
single asyncio lock so at most one model is loaded at any time.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from ..models.schemas import (
    BackendState,
    ModelConfiguration,
    ModelDescriptor,
    ResourceLimits,
)
from ..models.settings import validate_namespace
from ..utils.functional import format_timestamp
from ..utils.performance import elapsed_ms, log_execution_time
from ..utils.request_context import get_request_id
from .configuration_store import ConfigurationStore
from .errors import (
    BackendUnavailableError,
    ContractEngineError,
    InferenceError,
    ModelRequirementError,
    ValidationError,
)
from .inference_backend import InferenceBackend
from .metrics_collector import MetricsCollector
from .resilience import bounded_wait

logger = logging.getLogger(__name__)

PARAMETER_PATTERN = re.compile(r"(\d+(?:\.\d+)?)b")
MIN_PARAMETERS_B = 7
MIN_CONTEXT_WINDOW = 50000
DEFAULT_PARAMETERS_B = 8
# Changing any of these on a loaded model requires unload + reload.
CRITICAL_FIELDS = ("model_name", "context_window", "memory_optimization")
RESOURCE_LIMIT_FIELDS = ("memory_limit_mb", "max_processing_time_ms")
HEALTH_PROMPT = "Respond with 'OK'"
HEALTH_OPTIONS = {"max_tokens": 10, "temperature": 0.1}
# Fraction of the memory ceiling at which the optimization pass runs.
MEMORY_PRESSURE_RATIO = 0.9


@dataclass
class InferenceCounters:
    """Inference counters of the currently loaded model."""
    inference_count: int = 0
    total_time_ms: float = 0.0
    total_requests: int = 0
    failed_requests: int = 0

    @property
    def average_time_ms(self) -> float:
        if not self.inference_count:
            return 0.0
        return self.total_time_ms / self.inference_count

    @property
    def success_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return (self.total_requests - self.failed_requests) / self.total_requests


@dataclass
class _Snapshot:
    config: ModelConfiguration
    resource_limits: ResourceLimits
    counters: InferenceCounters


def _request_prefix() -> str:
    request_id = get_request_id()
    return f"[{request_id}] " if request_id else ""


def parameter_count_b(model_name: str, descriptor: Optional[ModelDescriptor] = None) -> Optional[float]:
    """
    Parameter count in billions, from the model name or the backend's label.

    Returns:
        The count, or None when neither source states it
    """
    match = PARAMETER_PATTERN.search(model_name.lower())
    if match:
        return float(match.group(1))
    if descriptor and descriptor.parameter_size:
        match = PARAMETER_PATTERN.search(descriptor.parameter_size.lower())
        if match:
            return float(match.group(1))
    return None


class ModelLifecycleManager:
    """
    Owns the inference backend model and its state machine.

    States: unloaded -> loading -> healthy | error; healthy <-> degraded
    through health checks; any -> unloaded through unload/cleanup.

    Usage:
        manager = ModelLifecycleManager(OllamaBackend())
        if await manager.load({"model_name": "llama3.1:8b"}):
            text = await manager.infer("Summarize this clause: ...")
    """

    def __init__(
        self,
        backend: InferenceBackend,
        config_store: Optional[ConfigurationStore] = None,
        resource_limits: Optional[ResourceLimits] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """
        Initialize the manager.

        Args:
            backend: Inference backend adapter
            config_store: Source of the ``model`` namespace defaults
            resource_limits: Memory and latency ceilings
            metrics: Collector receiving inference samples
        """
        self.backend = backend
        self.config_store = config_store
        self.resource_limits = resource_limits or ResourceLimits()
        self.metrics = metrics

        self.config = ModelConfiguration(**self._base_configuration())
        self.state = BackendState.UNLOADED
        self.descriptor: Optional[ModelDescriptor] = None
        self.counters = InferenceCounters()
        self.estimated_memory_mb = 0.0
        self.is_compacted = False
        self.optimization_runs = 0
        self.load_time: Optional[str] = None
        self.last_activity: Optional[str] = None
        self.last_error: Optional[str] = None

        self._is_loaded = False
        self._loaded_at: Optional[float] = None
        self._lock = asyncio.Lock()
        # Bounds concurrent backend calls to the configured batch size.
        self._slot_count = self.config.batch_size
        self._inference_slots = asyncio.Semaphore(self._slot_count)

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded

    @property
    def is_ready(self) -> bool:
        """Loaded and in a state that accepts inference."""
        return self._is_loaded and self.state in (BackendState.HEALTHY, BackendState.DEGRADED)

    def _sync_inference_slots(self) -> None:
        if self._slot_count != self.config.batch_size:
            self._slot_count = self.config.batch_size
            self._inference_slots = asyncio.Semaphore(self._slot_count)

    def _base_configuration(self) -> Dict[str, Any]:
        base = ModelConfiguration().model_dump()
        if self.config_store is not None:
            base.update(self.config_store.get("model"))
        return base

    # ------------------------------------------------------------------
    # Load pipeline stages
    # ------------------------------------------------------------------

    def _stage_validate_config(self, config: Optional[Dict[str, Any]]) -> ModelConfiguration:
        if config is not None and not isinstance(config, dict):
            raise ValidationError("Model configuration must be a mapping")
        merged = {**self._base_configuration(), **(config or {})}
        return ModelConfiguration(**validate_namespace("model", merged))

    async def _stage_check_backend(self) -> None:
        if not await self.backend.is_available():
            raise BackendUnavailableError(
                f"Inference backend '{self.backend.name}' is not available"
            )

    async def _stage_ensure_model(self, model_name: str) -> None:
        if await self.backend.is_model_available(model_name):
            return
        logger.info(f"Model {model_name} not present, pulling")
        if not await self.backend.pull_model(model_name):
            raise BackendUnavailableError(
                f"Model {model_name} is not available and could not be pulled"
            )

    async def _stage_fetch_descriptor(self, model_name: str) -> ModelDescriptor:
        descriptor = await self.backend.get_model_info(model_name)
        if descriptor is None:
            raise BackendUnavailableError(f"Backend has no information about {model_name}")
        return descriptor

    def _stage_verify_requirements(
        self,
        config: ModelConfiguration,
        descriptor: ModelDescriptor
    ) -> None:
        size = parameter_count_b(config.model_name, descriptor)
        if size is not None and size < MIN_PARAMETERS_B:
            raise ModelRequirementError(
                f"Model {config.model_name} has {size:g}B parameters, "
                f"at least {MIN_PARAMETERS_B}B required"
            )
        if config.context_window < MIN_CONTEXT_WINDOW:
            raise ModelRequirementError(
                f"Context window {config.context_window} is below the "
                f"required {MIN_CONTEXT_WINDOW} tokens"
            )

    async def _stage_test_inference(self, config: ModelConfiguration) -> None:
        text = await bounded_wait(
            self.backend.generate(config.model_name, HEALTH_PROMPT, dict(HEALTH_OPTIONS)),
            config.timeout_ms,
            "test inference"
        )
        if not text or not text.strip():
            raise InferenceError(f"Test inference with {config.model_name} returned an empty response")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @log_execution_time("model_load")
    async def load(self, config: Optional[Dict[str, Any]] = None) -> bool:
        """
        Load a model, unloading the current one first.

        Args:
            config: Partial configuration merged over the compiled defaults
                and the store's ``model`` namespace

        Returns:
            True when the model is loaded and answered the test inference.
            On failure the previous configuration is kept, the state is
            ``error`` and ``last_error`` holds the reason.
        """
        async with self._lock:
            return await self._load_locked(config)

    async def _load_locked(self, config: Optional[Dict[str, Any]]) -> bool:
        if self._is_loaded:
            await self._unload_locked()

        previous_config = self.config
        self.state = BackendState.LOADING
        try:
            candidate = self._stage_validate_config(config)
            logger.info(f"Loading model {candidate.model_name} on {self.backend.name}")
            await self._stage_check_backend()
            await self._stage_ensure_model(candidate.model_name)
            descriptor = await self._stage_fetch_descriptor(candidate.model_name)
            self._stage_verify_requirements(candidate, descriptor)
            await self._stage_test_inference(candidate)
        except ContractEngineError as e:
            return self._fail_load(previous_config, str(e))
        except Exception as e:
            logger.error(f"Unexpected error while loading model: {e}", exc_info=True)
            return self._fail_load(previous_config, f"{type(e).__name__}: {e}")

        self.config = candidate
        self.descriptor = descriptor
        self._sync_inference_slots()
        self.counters = InferenceCounters()
        self.is_compacted = False
        self.estimated_memory_mb = self._estimate_memory()
        self._is_loaded = True
        self._loaded_at = time.perf_counter()
        self.load_time = format_timestamp()
        self.last_activity = self.load_time
        self.state = BackendState.HEALTHY
        self.last_error = None

        if self._under_memory_pressure():
            self.optimize_memory()

        logger.info(
            f"Model {candidate.model_name} loaded "
            f"(estimated {self.estimated_memory_mb:.0f}MB)"
        )
        return True

    def _fail_load(self, previous_config: ModelConfiguration, reason: str) -> bool:
        self.config = previous_config
        self.state = BackendState.ERROR
        self.last_error = reason
        logger.error(f"Model load failed: {reason}")
        return False

    async def unload(self) -> bool:
        """Unload the model, zeroing memory usage and counters."""
        async with self._lock:
            return await self._unload_locked()

    async def _unload_locked(self) -> bool:
        model_name = self.config.model_name
        self._is_loaded = False
        self._loaded_at = None
        self.state = BackendState.UNLOADED
        self.descriptor = None
        self.estimated_memory_mb = 0.0
        self.is_compacted = False
        self.counters = InferenceCounters()
        self.load_time = None
        logger.info(f"Model {model_name} unloaded")
        return True

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _call_options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = {
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "context_window": self.config.context_window,
        }
        merged.update({k: v for k, v in (options or {}).items() if v is not None})
        return merged

    async def infer(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        """
        Run one inference against the loaded model.

        Args:
            prompt: Prompt text
            options: Per-call overrides (temperature, max_tokens, format)

        Returns:
            The generated text

        Raises:
            BackendUnavailableError: If no model is loaded, it is in error, or
                its estimated memory stays above the ceiling after optimization
            ValidationError: If the prompt is empty or not a string
            InferenceError: If the backend call fails or times out
        """
        if not self.is_ready:
            raise BackendUnavailableError(
                f"No model ready for inference (state: {self.state.value})"
            )
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Prompt must be a non-empty string")

        if self._under_memory_pressure():
            self.optimize_memory()
        if self.estimated_memory_mb > self.resource_limits.memory_limit_mb:
            logger.error(
                f"{_request_prefix()}Refusing inference: estimated {self.estimated_memory_mb:.0f}MB "
                f"exceeds the {self.resource_limits.memory_limit_mb:.0f}MB ceiling"
            )
            raise BackendUnavailableError(
                f"Estimated memory {self.estimated_memory_mb:.0f}MB exceeds the "
                f"{self.resource_limits.memory_limit_mb:.0f}MB ceiling"
            )

        call_options = self._call_options(options)
        async with self._inference_slots:
            self.counters.total_requests += 1
            start = time.perf_counter()
            try:
                text = await bounded_wait(
                    self.backend.generate(self.config.model_name, prompt, call_options),
                    self.config.timeout_ms,
                    "inference"
                )
            except Exception as e:
                duration_ms = elapsed_ms(start)
                self.counters.failed_requests += 1
                if self.metrics:
                    self.metrics.record_inference(duration_ms, success=False)
                logger.error(
                    f"{_request_prefix()}Inference with {self.config.model_name} "
                    f"failed after {duration_ms:.0f}ms: {e}"
                )
                if isinstance(e, InferenceError):
                    raise
                raise InferenceError(f"Inference failed: {e}") from e

        duration_ms = elapsed_ms(start)
        self.counters.inference_count += 1
        self.counters.total_time_ms += duration_ms
        self.last_activity = format_timestamp()
        if self.metrics:
            self.metrics.record_inference(duration_ms, success=True)

        if duration_ms > self.resource_limits.max_processing_time_ms:
            logger.warning(
                f"{_request_prefix()}Inference took {duration_ms:.0f}ms, above the "
                f"{self.resource_limits.max_processing_time_ms:.0f}ms ceiling"
            )
        return text

    async def health_check(self) -> bool:
        """
        Check the loaded model with a minimal prompt.

        Sets the state to healthy on a prompt non-empty answer, degraded on
        an empty or slow one and error when the call fails.

        Returns:
            True when healthy; False otherwise or when nothing is loaded
        """
        if not self._is_loaded:
            return False

        start = time.perf_counter()
        try:
            text = await bounded_wait(
                self.backend.generate(self.config.model_name, HEALTH_PROMPT, dict(HEALTH_OPTIONS)),
                self.config.timeout_ms,
                "health check"
            )
        except Exception as e:
            if self._is_loaded:
                self.state = BackendState.ERROR
                self.last_error = f"Health check failed: {e}"
            logger.error(f"Health check of {self.config.model_name} failed: {e}")
            return False

        duration_ms = elapsed_ms(start)
        if not self._is_loaded:
            # Unloaded while the health check was in flight.
            return False
        if not text or not text.strip():
            self.state = BackendState.DEGRADED
            logger.warning(f"Health check of {self.config.model_name} returned an empty response")
            return False
        if duration_ms > self.resource_limits.max_processing_time_ms:
            self.state = BackendState.DEGRADED
            logger.warning(f"Health check of {self.config.model_name} slow: {duration_ms:.0f}ms")
            return False

        self.state = BackendState.HEALTHY
        self.last_activity = format_timestamp()
        return True

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def update_configuration(self, partial: Dict[str, Any]) -> bool:
        """
        Apply a partial configuration, reloading when a critical field changes.

        ``memory_limit_mb`` and ``max_processing_time_ms`` update the resource
        limits. The update is atomic: if the reload with the new values
        fails, configuration, limits and counters are restored and the
        previous model is loaded again.

        Returns:
            True when the whole update (including any reload) succeeded
        """
        async with self._lock:
            if not isinstance(partial, dict):
                self.last_error = "Configuration update must be a mapping"
                return False

            limit_partial = {k: v for k, v in partial.items() if k in RESOURCE_LIMIT_FIELDS}
            config_partial = {k: v for k, v in partial.items() if k not in RESOURCE_LIMIT_FIELDS}
            try:
                new_config = ModelConfiguration(
                    **validate_namespace("model", {**self.config.model_dump(), **config_partial})
                )
                new_limits = ResourceLimits.model_validate(
                    {**self.resource_limits.model_dump(), **limit_partial}
                )
            except (ValidationError, PydanticValidationError) as e:
                self.last_error = f"Invalid configuration update: {e}"
                logger.warning(self.last_error)
                return False

            backup = _Snapshot(
                config=self.config,
                resource_limits=self.resource_limits,
                counters=replace(self.counters)
            )
            needs_reload = self._is_loaded and any(
                getattr(new_config, field) != getattr(self.config, field)
                for field in CRITICAL_FIELDS
            )

            self.config = new_config
            self.resource_limits = new_limits

            if not needs_reload:
                self._sync_inference_slots()
                if self._is_loaded:
                    self.estimated_memory_mb = self._estimate_memory()
                logger.info("Model configuration updated without reload")
                return True

            logger.info(f"Critical configuration change, reloading as {new_config.model_name}")
            await self._unload_locked()
            if await self._load_locked(new_config.model_dump()):
                return True

            reason = self.last_error
            await self._rollback(backup)
            self.last_error = f"Reload with new configuration failed: {reason}"
            logger.error(self.last_error)
            return False

    async def _rollback(self, backup: _Snapshot) -> None:
        self.config = backup.config
        self.resource_limits = backup.resource_limits
        if await self._load_locked(backup.config.model_dump()):
            self.counters = backup.counters
            logger.info(f"Restored previous model {backup.config.model_name}")
        else:
            logger.error(f"Could not reload previous model {backup.config.model_name}")

    def get_configuration(self) -> Dict[str, Any]:
        return {
            **self.config.model_dump(),
            **self.resource_limits.model_dump(),
        }

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    def _estimate_memory(self) -> float:
        size = parameter_count_b(self.config.model_name, self.descriptor) or DEFAULT_PARAMETERS_B
        estimate = size * 1000
        if self.config.memory_optimization:
            estimate *= 0.5
        if self.is_compacted:
            estimate *= 0.75
        return estimate

    def _under_memory_pressure(self) -> bool:
        ceiling = self.resource_limits.memory_limit_mb * MEMORY_PRESSURE_RATIO
        return self._is_loaded and not self.is_compacted and self.estimated_memory_mb >= ceiling

    def optimize_memory(self) -> float:
        """
        Run the memory optimization pass on the loaded model.

        Returns:
            The new estimated memory usage in MB
        """
        self.optimization_runs += 1
        before = self.estimated_memory_mb
        self.is_compacted = True
        self.estimated_memory_mb = self._estimate_memory() if self._is_loaded else 0.0
        logger.info(
            f"Memory optimization: {before:.0f}MB -> {self.estimated_memory_mb:.0f}MB "
            f"(limit {self.resource_limits.memory_limit_mb:.0f}MB)"
        )
        if self.estimated_memory_mb > self.resource_limits.memory_limit_mb * MEMORY_PRESSURE_RATIO:
            logger.warning("Estimated memory usage still close to the configured ceiling")
        return self.estimated_memory_mb

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_model_status(self) -> Dict[str, Any]:
        return {
            "is_loaded": self._is_loaded,
            "model_name": self.config.model_name,
            "health_status": self.state.value,
            "memory_usage_mb": self.estimated_memory_mb,
            "context_window": self.config.context_window,
            "last_activity": self.last_activity,
            "load_time": self.load_time,
            "inference_count": self.counters.inference_count,
            "backend": self.backend.name,
            "descriptor": self.descriptor.model_dump(exclude={"raw"}) if self.descriptor else None,
            "performance_metrics": {
                "average_inference_time_ms": round(self.counters.average_time_ms, 2),
                "success_rate": round(self.counters.success_rate, 4),
                "total_requests": self.counters.total_requests,
                "failed_requests": self.counters.failed_requests,
            },
            "resource_limits": self.resource_limits.model_dump(),
            "configuration": self.config.model_dump(),
            "last_error": self.last_error,
        }

    def get_performance_metrics(self) -> Dict[str, Any]:
        limit = self.resource_limits.memory_limit_mb
        uptime = time.perf_counter() - self._loaded_at if self._loaded_at is not None else 0.0
        return {
            "average_inference_time_ms": round(self.counters.average_time_ms, 2),
            "success_rate": round(self.counters.success_rate, 4),
            "total_requests": self.counters.total_requests,
            "failed_requests": self.counters.failed_requests,
            "inference_count": self.counters.inference_count,
            "memory_usage_mb": self.estimated_memory_mb,
            "memory_limit_mb": limit,
            "memory_utilization": round(self.estimated_memory_mb / limit * 100, 2),
            "optimization_runs": self.optimization_runs,
            "uptime_seconds": round(uptime, 3),
            "health_status": self.state.value,
        }

    def reset_metrics(self) -> None:
        self.counters = InferenceCounters()

    async def cleanup(self) -> None:
        """Unload the model. The backend itself is closed by its owner."""
        await self.unload()
        logger.info("ModelLifecycleManager cleaned up")
