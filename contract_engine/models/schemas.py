"""
Pydantic schemas for the contract engine.

Domain records exchanged between the lifecycle manager, the analysis
components, the plugins and the fallback workflow.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


SUPPORTED_CONTEXT_WINDOWS = (4096, 8192, 16384, 32768, 65536, 128000)


class BackendState(str, Enum):
    """Lifecycle state of the inference backend."""
    UNLOADED = "unloaded"
    LOADING = "loading"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


class Severity(str, Enum):
    """Risk severity levels."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class BusinessImpact(str, Enum):
    """Business impact levels of a risk."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    VERY_HIGH = "Very High"


class ProcessingMethod(str, Enum):
    """Analysis tier that produced a result."""
    PLUGIN = "plugin"
    AI_MODEL = "ai_model"
    RULE_BASED = "rule_based"


class AnalysisFeature(str, Enum):
    """Optional stages of an analysis request."""
    CLAUSE_EXTRACTION = "clause_extraction"
    RISK_ANALYSIS = "risk_analysis"
    RECOMMENDATIONS = "recommendations"


class ModelConfiguration(BaseModel):
    """
    Configuration of the inference backend model.

    Values are strictly typed: numeric strings and bools standing in for
    numbers are rejected, as are unknown keys.
    """
    model_config = ConfigDict(strict=True, extra="forbid", protected_namespaces=())

    model_name: str = Field("llama3.1:8b", min_length=1, description="Backend model identifier")
    temperature: float = Field(0.1, ge=0, le=2, description="Sampling temperature")
    max_tokens: int = Field(2048, gt=0, le=8192, description="Maximum tokens per answer")
    context_window: Literal[4096, 8192, 16384, 32768, 65536, 128000] = Field(
        128000,
        description="Context window in tokens"
    )
    timeout_ms: float = Field(30000.0, gt=0, le=300000, description="Per-call timeout")
    retry_attempts: int = Field(3, ge=1, le=10, description="Attempts per model or plugin call")
    batch_size: int = Field(1, ge=1, le=20, description="Inference calls sent to the backend at once")
    memory_optimization: bool = Field(True, description="Run the model in reduced-memory mode")

    @field_validator("model_name")
    @classmethod
    def validate_model_name(cls, v: str) -> str:
        """Reject whitespace-only model names."""
        if not v.strip():
            raise ValueError("model_name must not be blank")
        return v


class ResourceLimits(BaseModel):
    """Resource ceilings applied to the loaded model."""
    model_config = ConfigDict(strict=True, extra="forbid")

    memory_limit_mb: float = Field(16000.0, gt=0, description="Estimated memory ceiling")
    max_processing_time_ms: float = Field(30000.0, gt=0, description="Latency ceiling before warnings")


class ModelDescriptor(BaseModel):
    """What a backend reports about a model."""
    model_config = ConfigDict(protected_namespaces=())

    name: str
    parameter_size: Optional[str] = Field(None, description="Parameter count label, e.g. '8B'")
    context_length: Optional[int] = None
    family: Optional[str] = None
    quantization: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class Clause(BaseModel):
    """A contract clause with its category and extraction confidence."""
    id: str
    text: str
    category: str = Field("unknown", description="Clause type from the supported taxonomy")
    confidence: float = Field(0.0, ge=0, le=1)
    start_position: int = Field(0, ge=0)
    end_position: int = Field(0, ge=0)


class Risk(BaseModel):
    """A risk identified in one or more clauses."""
    id: str
    title: str
    description: str
    severity: Severity
    category: str
    affected_clauses: List[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0, le=1)
    risk_score: float = Field(..., ge=0, le=1)
    business_impact: BusinessImpact = BusinessImpact.MEDIUM
    explanation: str = ""
    mitigation: Optional[str] = None
    priority_score: Optional[float] = Field(None, ge=0, le=1)
    priority_rank: Optional[int] = None


class Recommendation(BaseModel):
    """Mitigation recommendation for a high or critical risk."""
    id: str
    risk_id: str
    title: str
    description: str
    priority: Severity
    category: str
    action_required: bool = True
    timeline: str


class RiskSummary(BaseModel):
    """Aggregate view over a list of risks."""
    total_risks: int = 0
    critical_risks: int = 0
    high_risks: int = 0
    medium_risks: int = 0
    low_risks: int = 0
    average_confidence: float = 0.0
    risk_distribution: Dict[str, int] = Field(default_factory=dict)
    highest_risk: Optional[Risk] = None


class RiskAnalysisResult(BaseModel):
    """Risks found in a clause set, with their summary."""
    risks: List[Risk] = Field(default_factory=list)
    summary: RiskSummary = Field(default_factory=RiskSummary)


class ClauseSummary(BaseModel):
    """Counts and confidence statistics for extracted clauses."""
    total_clauses: int = 0
    clause_types: Dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0
    supported_types: int = 0
    identified_types: int = 0


class AnalysisOptions(BaseModel):
    """Per-request analysis options."""
    model_config = ConfigDict(extra="forbid")

    confidence_threshold: Optional[float] = Field(
        None,
        ge=0,
        le=1,
        description="Minimum clause/risk confidence; the extraction namespace default when None"
    )
    enabled_features: List[AnalysisFeature] = Field(
        default_factory=lambda: list(AnalysisFeature),
        description="Stages to run"
    )
    risk_tolerance: Literal["low", "medium", "high"] = Field(
        "medium",
        description="'high' drops Low severity risks from the report"
    )
    max_clauses: Optional[int] = Field(None, ge=1, description="Cap on identified clauses")

    def has(self, feature: AnalysisFeature) -> bool:
        return feature in self.enabled_features


class AnalysisRequest(BaseModel):
    """Text to analyze plus options."""
    text: str
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)


class ContractSummary(BaseModel):
    """Headline numbers of an analysis."""
    title: str = "Contract Analysis"
    document_type: str = "contract"
    total_clauses: int = 0
    risk_score: int = Field(0, ge=0, le=100, description="Weighted risk score (0-100)")
    key_findings: List[str] = Field(default_factory=list)


class AnalysisMetadata(BaseModel):
    """How a result was produced."""
    model_config = ConfigDict(protected_namespaces=())

    processing_method: ProcessingMethod
    model_used: Optional[str] = None
    processing_time_ms: float = 0.0
    confidence: float = Field(0.5, ge=0, le=1)
    plugin_used: Optional[str] = None
    plugin_version: Optional[str] = None
    plugin_method: Optional[ProcessingMethod] = Field(
        None,
        description="How the plugin itself produced the result, e.g. rules while its model is not ready"
    )
    attempted_tiers: List[ProcessingMethod] = Field(default_factory=list)
    fallback_reason: Optional[str] = None
    request_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AnalysisResult(BaseModel):
    """Complete analysis result returned to callers."""
    summary: ContractSummary
    clauses: List[Clause] = Field(default_factory=list)
    risks: List[Risk] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    metadata: AnalysisMetadata


class OperationResult(BaseModel):
    """Outcome of an administrative call."""
    success: bool
    reason: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, **details: Any) -> "OperationResult":
        return cls(success=True, details=details)

    @classmethod
    def failed(cls, reason: Optional[str], **details: Any) -> "OperationResult":
        return cls(success=False, reason=reason or "operation failed", details=details)
