"""
Error taxonomy for the contract engine.

Validation errors are raised before any state is touched. Inference and
plugin errors drive the fallback tiers; ``AnalysisError`` only surfaces
when every tier has failed.
"""

from typing import List, Optional


class ContractEngineError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(ContractEngineError):
    """Raised when a configuration value or request input is rejected."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [message])
        super().__init__(message)


class BackendUnavailableError(ContractEngineError):
    """Raised when the inference backend cannot be reached or no model is loaded."""
    pass


class ModelRequirementError(ContractEngineError):
    """Raised when a model does not meet minimum parameter/context requirements."""
    pass


class InferenceError(ContractEngineError):
    """Raised when a backend call fails, times out or returns unusable output."""
    pass


class PluginContractError(ContractEngineError):
    """Raised when a plugin does not implement the full plugin contract."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        self.missing = list(missing or [])
        super().__init__(message)


class PluginNotAvailableError(ContractEngineError):
    """Raised when analysis is requested but no plugin is active."""
    pass


class ConfigurationPersistenceError(ContractEngineError):
    """Raised by persistence backends when a read or write fails."""
    pass


class AnalysisError(ContractEngineError):
    """
    Raised when every analysis tier failed.

    Attributes:
        reason: Why the last tier failed
        cause: The last underlying exception, if any
        attempted_tiers: Tiers tried, in order
    """

    def __init__(
        self,
        reason: str,
        cause: Optional[BaseException] = None,
        attempted_tiers: Optional[List[str]] = None
    ):
        self.reason = reason
        self.cause = cause
        self.attempted_tiers = list(attempted_tiers or [])
        super().__init__(f"Contract analysis failed: {reason}")
