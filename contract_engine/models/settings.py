"""
Configuration namespaces and process settings.

Each namespace of the configuration store is an explicit pydantic struct
with documented defaults. Field constraints double as the namespace's
validation rules, applied centrally by ``validate_namespace``.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Type

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator

from ..services.errors import ValidationError
from .schemas import ModelConfiguration, ProcessingMethod, Severity

CLAUSE_TYPES = [
    "payment_terms",
    "termination_clause",
    "liability_limitation",
    "confidentiality_agreement",
    "intellectual_property",
    "force_majeure",
    "governing_law",
    "dispute_resolution",
    "warranties_representations",
    "indemnification",
    "assignment_rights",
    "amendment_modification",
    "severability_clause",
    "entire_agreement",
    "notice_provisions",
]

RISK_CATEGORIES = [
    "Risk Management",
    "Financial",
    "Legal",
    "Intellectual Property",
    "Information Security",
    "Contract Management",
    "Compliance",
    "Operational",
]


class _Namespace(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")


class AnalysisSettings(_Namespace):
    """Fallback chain, tier time limit and retry backoff. Attempts come from ``model``."""
    methods: List[str] = Field(
        default_factory=lambda: [m.value for m in ProcessingMethod],
        description="Tiers in fallback order"
    )
    primary_method: Literal["plugin", "ai_model", "rule_based"] = "plugin"
    fallback_enabled: bool = True
    timeout_ms: float = Field(30000.0, gt=0, le=300000, description="Upper bound on one tier, retries included")
    backoff_base_ms: float = Field(200.0, ge=0)
    backoff_max_ms: float = Field(2000.0, ge=0)

    @field_validator("methods")
    @classmethod
    def validate_methods(cls, v: List[str]) -> List[str]:
        allowed = {m.value for m in ProcessingMethod}
        unknown = [m for m in v if m not in allowed]
        if unknown:
            raise ValueError(f"Unknown analysis methods: {unknown}")
        if not v:
            raise ValueError("At least one analysis method is required")
        return v


class ExtractionSettings(_Namespace):
    """Clause extraction thresholds."""
    min_confidence: float = Field(0.3, ge=0, le=1)
    max_clauses: int = Field(100, ge=1)
    enable_categorization: bool = True
    supported_types: List[str] = Field(default_factory=lambda: list(CLAUSE_TYPES))


class RiskSettings(_Namespace):
    """Risk analysis taxonomy switches."""
    severity_levels: List[str] = Field(default_factory=lambda: [s.value for s in Severity])
    risk_categories: List[str] = Field(default_factory=lambda: list(RISK_CATEGORIES))
    enable_mitigation: bool = True
    prioritize_by_impact: bool = True

    @field_validator("severity_levels")
    @classmethod
    def validate_severity_levels(cls, v: List[str]) -> List[str]:
        allowed = {s.value for s in Severity}
        unknown = [s for s in v if s not in allowed]
        if unknown:
            raise ValueError(f"Severity levels must be among {sorted(allowed)}")
        return v


class CompatibilitySettings(_Namespace):
    """Legacy result formats and request options."""
    version: str = Field(
        "1.0.0",
        pattern=r"^\d+\.\d+\.\d+$",
        description="Oldest result format version still served"
    )
    support_legacy_formats: bool = Field(True, description="Serve results in older format versions")
    migration_enabled: bool = Field(True, description="Rename legacy request option keys")
    deprecation_warnings: bool = Field(True, description="Log once per legacy conversion step")


NAMESPACE_SCHEMAS: Dict[str, Type[BaseModel]] = {
    "analysis": AnalysisSettings,
    "model": ModelConfiguration,
    "extraction": ExtractionSettings,
    "risk": RiskSettings,
    "compatibility": CompatibilitySettings,
}


def default_namespaces() -> Dict[str, Dict[str, Any]]:
    """Compiled defaults of every known namespace."""
    return {name: schema().model_dump(mode="json") for name, schema in NAMESPACE_SCHEMAS.items()}


def _format_errors(exc: PydanticValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "value"
        messages.append(f"{location}: {error['msg']}")
    return messages


def validate_namespace(name: str, value: Any) -> Dict[str, Any]:
    """
    Validate a namespace value against its schema.

    Args:
        name: Namespace name
        value: Candidate value (a mapping)

    Returns:
        The normalized value. Missing fields are filled from defaults.
        Unknown namespaces accept any mapping unchanged.

    Raises:
        ValidationError: If the value is not a mapping or breaks a rule
    """
    if not isinstance(value, dict):
        raise ValidationError(f"Configuration '{name}' must be a mapping")

    schema = NAMESPACE_SCHEMAS.get(name)
    if schema is None:
        return dict(value)

    try:
        return schema.model_validate(value).model_dump(mode="json")
    except PydanticValidationError as e:
        errors = _format_errors(e)
        raise ValidationError(
            f"Invalid '{name}' configuration: {errors[0]}",
            errors=errors
        ) from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"Environment variable {name} must be numeric, got {raw!r}")


@dataclass
class EngineSettings:
    """Process-level settings read from the environment."""
    backend: str = "ollama"
    ollama_base_url: str = "http://localhost:11434"
    google_api_key: Optional[str] = None
    redis_url: Optional[str] = None
    config_dir: Optional[str] = None
    memory_limit_mb: float = 16000
    max_processing_time_ms: float = 30000
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "EngineSettings":
        """
        Read settings from the environment.

        Args:
            env_file: Optional .env file loaded first; variables already set
                in the environment win over the file
        """
        if env_file:
            load_dotenv(env_file, override=False)
        backend = os.getenv("CONTRACT_ENGINE_BACKEND", "ollama").strip().lower()
        if backend not in ("ollama", "gemini"):
            raise ValidationError(f"CONTRACT_ENGINE_BACKEND must be 'ollama' or 'gemini', got {backend!r}")
        return cls(
            backend=backend,
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            google_api_key=os.getenv("GOOGLE_API_KEY"),
            redis_url=os.getenv("REDIS_URL"),
            config_dir=os.getenv("CONTRACT_ENGINE_CONFIG_DIR"),
            memory_limit_mb=_env_float("CONTRACT_ENGINE_MEMORY_LIMIT_MB", 16000),
            max_processing_time_ms=_env_float("CONTRACT_ENGINE_MAX_PROCESSING_TIME_MS", 30000),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", True),
        )
