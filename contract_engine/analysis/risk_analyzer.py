"""
Risk Analyzer - finds risks in clauses, prioritizes them and derives
mitigation recommendations.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from pydantic import ValidationError as PydanticValidationError

from ..models.schemas import (
    AnalysisOptions,
    BusinessImpact,
    Clause,
    Recommendation,
    Risk,
    RiskAnalysisResult,
    RiskSummary,
    Severity,
)
from ..models.settings import RISK_CATEGORIES
from ..services.errors import InferenceError, ValidationError
from ..utils.functional import clamp, count_by, mean
from ..utils.performance import elapsed_ms
from .parsing import parse_json_object

if TYPE_CHECKING:
    from ..services.configuration_store import ConfigurationStore
    from ..services.metrics_collector import MetricsCollector
    from ..services.model_lifecycle import ModelLifecycleManager

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS = {"Critical": 1.0, "High": 0.8, "Medium": 0.6, "Low": 0.4}
IMPACT_WEIGHTS = {"Very High": 1.0, "High": 0.8, "Medium": 0.6, "Low": 0.4}
DEFAULT_WEIGHT = 0.5

RISK_SCORE_POINTS = {"Critical": 25, "High": 15, "Medium": 8, "Low": 3}

RECOMMENDATION_TIMELINES = {
    Severity.CRITICAL: "Before contract execution",
    Severity.HIGH: "Within 30 days",
}


@dataclass(frozen=True)
class RiskRule:
    """A keyword rule producing one kind of risk."""
    title: str
    description: str
    severity: Severity
    category: str
    explanation: str
    confidence: float
    risk_score: float
    business_impact: BusinessImpact
    mitigation: str
    applies: Callable[[str, str], bool]

    def build(self, risk_id: str, clause_id: str) -> Risk:
        return Risk(
            id=risk_id,
            title=self.title,
            description=self.description,
            severity=self.severity,
            category=self.category,
            affected_clauses=[clause_id],
            confidence=self.confidence,
            risk_score=self.risk_score,
            business_impact=self.business_impact,
            explanation=self.explanation,
            mitigation=self.mitigation,
        )


def _mentions(text: str, *needles: str) -> bool:
    return any(needle in text for needle in needles)


RISK_RULES: List[RiskRule] = [
    RiskRule(
        title="Extended Payment Terms Risk",
        description="Long payment terms may impact cash flow and increase collection risk",
        severity=Severity.MEDIUM,
        category="Financial",
        explanation="Extended payment terms can strain cash flow and increase the risk of non-payment",
        confidence=0.85,
        risk_score=0.7,
        business_impact=BusinessImpact.MEDIUM,
        mitigation="Consider negotiating shorter payment terms or requiring deposits",
        applies=lambda text, category: (
            (category == "payment_terms" or "payment" in text)
            and _mentions(text, "90 days", "ninety", "120 days")
        ),
    ),
    RiskRule(
        title="Unlimited Liability Exposure",
        description="Unlimited liability creates significant financial exposure",
        severity=Severity.HIGH,
        category="Legal",
        explanation="Unlimited liability exposes the party to potentially catastrophic financial losses",
        confidence=0.95,
        risk_score=0.9,
        business_impact=BusinessImpact.VERY_HIGH,
        mitigation="Negotiate liability caps and ensure adequate insurance coverage",
        applies=lambda text, category: (
            (category == "liability_limitation" or "liability" in text)
            and _mentions(text, "unlimited", "no limit")
        ),
    ),
    RiskRule(
        title="Inadequate Termination Protection",
        description="Termination clause may not provide adequate notice or protection",
        severity=Severity.MEDIUM,
        category="Contract Management",
        explanation="Insufficient termination notice can disrupt business operations",
        confidence=0.75,
        risk_score=0.6,
        business_impact=BusinessImpact.MEDIUM,
        mitigation="Negotiate adequate notice periods and termination protections",
        applies=lambda text, category: (
            (category == "termination_clause" or "terminat" in text)
            and ("notice" not in text or "immediate" in text)
        ),
    ),
    RiskRule(
        title="Broad Indemnification Obligation",
        description="Indemnification covers any and all claims without limitation",
        severity=Severity.HIGH,
        category="Legal",
        explanation="Open-ended indemnities shift third-party and first-party losses onto the indemnifying party",
        confidence=0.8,
        risk_score=0.75,
        business_impact=BusinessImpact.HIGH,
        mitigation="Limit indemnification to claims caused by the indemnifying party and cap the exposure",
        applies=lambda text, category: (
            (category == "indemnification" or "indemnif" in text)
            and _mentions(text, "any and all", "unlimited", "regardless of fault")
        ),
    ),
    RiskRule(
        title="Automatic Renewal",
        description="The agreement renews automatically unless cancelled in time",
        severity=Severity.LOW,
        category="Contract Management",
        explanation="Missed cancellation windows lock the party into another term",
        confidence=0.7,
        risk_score=0.4,
        business_impact=BusinessImpact.LOW,
        mitigation="Track the renewal notice window or negotiate opt-in renewal",
        applies=lambda text, category: _mentions(
            text, "automatically renew", "auto-renew", "renew automatically"
        ),
    ),
    RiskRule(
        title="Perpetual Confidentiality Obligation",
        description="Confidentiality obligations have no end date",
        severity=Severity.MEDIUM,
        category="Compliance",
        explanation="Obligations without a term create open-ended compliance burden",
        confidence=0.7,
        risk_score=0.5,
        business_impact=BusinessImpact.MEDIUM,
        mitigation="Limit confidentiality obligations to a fixed period after termination",
        applies=lambda text, category: (
            (category == "confidentiality_agreement" or "confidential" in text)
            and _mentions(text, "perpetual", "in perpetuity", "indefinitely")
        ),
    ),
    RiskRule(
        title="Unilateral Amendment Right",
        description="One party may change the terms at its sole discretion",
        severity=Severity.MEDIUM,
        category="Risk Management",
        explanation="Terms can change after signature without the other party's consent",
        confidence=0.75,
        risk_score=0.55,
        business_impact=BusinessImpact.MEDIUM,
        mitigation="Require written mutual consent for amendments",
        applies=lambda text, category: (
            (category == "amendment_modification" or _mentions(text, "amend", "modify"))
            and "sole discretion" in text
        ),
    ),
]


def priority_score(risk: Risk) -> float:
    """
    Weighted priority of a risk in [0, 1].

    0.4 x severity weight + 0.3 x impact weight + 0.2 x confidence
    + 0.1 x risk score.
    """
    severity = SEVERITY_WEIGHTS.get(_value(risk.severity), DEFAULT_WEIGHT)
    impact = IMPACT_WEIGHTS.get(_value(risk.business_impact), DEFAULT_WEIGHT)
    score = 0.4 * severity + 0.3 * impact + 0.2 * risk.confidence + 0.1 * risk.risk_score
    return round(clamp(score), 4)


def _value(member: Any) -> str:
    return member.value if hasattr(member, "value") else str(member)


class RiskAnalyzer:
    """
    Rule-based and model-backed risk analysis.

    Usage:
        analyzer = RiskAnalyzer()
        result = analyzer.analyze_risks(clauses)
        ranked = analyzer.prioritize_risks(result.risks)
    """

    def __init__(
        self,
        config_store: Optional["ConfigurationStore"] = None,
        metrics: Optional["MetricsCollector"] = None,
        rules: Optional[List[RiskRule]] = None
    ):
        self.config_store = config_store
        self.metrics = metrics
        self.rules = list(rules) if rules is not None else list(RISK_RULES)

    def _settings(self) -> Dict[str, Any]:
        if self.config_store is None:
            return {}
        return self.config_store.get("risk")

    def get_risk_categories(self) -> List[str]:
        return list(self._settings().get("risk_categories") or RISK_CATEGORIES)

    def get_risk_levels(self) -> List[str]:
        return list(self._settings().get("severity_levels") or [s.value for s in Severity])

    @staticmethod
    def _coerce_clauses(clauses: Any) -> List[Clause]:
        if clauses is None or not isinstance(clauses, list):
            raise ValidationError("Clauses must be a list")
        try:
            return [c if isinstance(c, Clause) else Clause.model_validate(c) for c in clauses]
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed clause: {e.errors()[0]['msg']}") from e

    def _filter(self, risks: List[Risk], options: Optional[AnalysisOptions]) -> List[Risk]:
        levels = set(self.get_risk_levels())
        kept = [r for r in risks if r.severity.value in levels]
        if options is not None:
            if options.confidence_threshold is not None:
                kept = [r for r in kept if r.confidence >= options.confidence_threshold]
            if options.risk_tolerance == "high":
                kept = [r for r in kept if r.severity != Severity.LOW]
        return kept

    def _finish(self, risks: List[Risk], start: float) -> RiskAnalysisResult:
        if self.metrics:
            self.metrics.record_risk_analysis([r.severity.value for r in risks], elapsed_ms(start))
        return RiskAnalysisResult(risks=risks, summary=self.build_risk_summary(risks))

    def analyze_risks(
        self,
        clauses: List[Clause],
        options: Optional[AnalysisOptions] = None
    ) -> RiskAnalysisResult:
        """
        Rule-based risk analysis.

        Args:
            clauses: Clauses (or clause mappings) to inspect
            options: Threshold and tolerance filters

        Returns:
            Risks in detection order plus their summary. An empty clause list
            yields an empty result.

        Raises:
            ValidationError: If clauses is None or not a list
        """
        clauses = self._coerce_clauses(clauses)
        start = time.perf_counter()
        if not clauses:
            return self._finish([], start)

        risks: List[Risk] = []
        for clause in clauses:
            text = clause.text.lower()
            for rule in self.rules:
                if rule.applies(text, clause.category):
                    risks.append(rule.build(f"risk_{len(risks) + 1}", clause.id))

        return self._finish(self._filter(risks, options), start)

    async def analyze_with_ai(
        self,
        clauses: List[Clause],
        lifecycle: "ModelLifecycleManager",
        options: Optional[AnalysisOptions] = None
    ) -> RiskAnalysisResult:
        """
        Model-backed risk analysis with validation of every returned risk.

        Raises:
            ValidationError: If clauses is None or not a list
            InferenceError: If the model call fails or the answer is unusable
        """
        clauses = self._coerce_clauses(clauses)
        start = time.perf_counter()
        if not clauses:
            return self._finish([], start)

        answer = await lifecycle.infer(
            self.build_risk_prompt(clauses),
            {"temperature": 0.1, "max_tokens": 4000, "format": "json"}
        )
        payload = parse_json_object(answer)
        raw_risks = payload.get("risks")
        if not isinstance(raw_risks, list):
            raise InferenceError("Model answer has no 'risks' list")

        known_ids = {c.id for c in clauses}
        risks = [
            self._validate_ai_risk(raw, index, known_ids)
            for index, raw in enumerate(raw_risks, start=1)
            if isinstance(raw, dict)
        ]
        return self._finish(self._filter(risks, options), start)

    def _validate_ai_risk(self, raw: Dict[str, Any], index: int, known_ids: set) -> Risk:
        severity = raw.get("severity")
        if severity not in self.get_risk_levels():
            severity = Severity.MEDIUM.value
        category = raw.get("category")
        if category not in self.get_risk_categories():
            category = "Risk Management"
        impact = raw.get("business_impact", raw.get("businessImpact"))
        if impact not in IMPACT_WEIGHTS:
            impact = BusinessImpact.MEDIUM.value
        affected = raw.get("affected_clauses", raw.get("affectedClauses"))
        if not isinstance(affected, list):
            affected = []

        return Risk(
            id=str(raw.get("id") or f"risk_{index}"),
            title=str(raw.get("title") or "Unspecified Risk"),
            description=str(raw.get("description") or "Risk description not provided"),
            severity=Severity(severity),
            category=category,
            affected_clauses=[str(a) for a in affected if str(a) in known_ids],
            confidence=clamp(raw.get("confidence")),
            risk_score=clamp(raw.get("risk_score", raw.get("riskScore"))),
            business_impact=BusinessImpact(impact),
            explanation=str(raw.get("explanation") or "Risk explanation not provided"),
            mitigation=raw.get("mitigation") if isinstance(raw.get("mitigation"), str) else None,
        )

    def build_risk_prompt(self, clauses: List[Clause]) -> str:
        listing = json.dumps(
            [{"id": c.id, "category": c.category, "text": c.text} for c in clauses],
            indent=1
        )
        return (
            "Identify legal and business risks in the contract clauses below.\n"
            f"Severity: one of {', '.join(self.get_risk_levels())}.\n"
            f"Category: one of {', '.join(self.get_risk_categories())}.\n"
            f"Business impact: one of {', '.join(IMPACT_WEIGHTS)}.\n"
            "Answer with JSON only, in the form "
            '{"risks": [{"id": "risk_1", "title": "...", "description": "...", '
            '"severity": "...", "category": "...", "affected_clauses": ["clause_1"], '
            '"confidence": 0.0, "risk_score": 0.0, "business_impact": "...", '
            '"explanation": "...", "mitigation": "..."}]}\n\n'
            f"CLAUSES:\n{listing}"
        )

    # ------------------------------------------------------------------
    # Aggregation, prioritization, recommendations
    # ------------------------------------------------------------------

    @staticmethod
    def build_risk_summary(risks: List[Risk]) -> RiskSummary:
        if not risks:
            return RiskSummary()
        by_severity = count_by(risks, lambda r: r.severity.value)
        highest = max(
            risks,
            key=lambda r: (SEVERITY_WEIGHTS.get(r.severity.value, DEFAULT_WEIGHT), r.risk_score)
        )
        return RiskSummary(
            total_risks=len(risks),
            critical_risks=by_severity.get("Critical", 0),
            high_risks=by_severity.get("High", 0),
            medium_risks=by_severity.get("Medium", 0),
            low_risks=by_severity.get("Low", 0),
            average_confidence=round(mean(r.confidence for r in risks), 2),
            risk_distribution=count_by(risks, lambda r: r.category),
            highest_risk=highest,
        )

    @staticmethod
    def prioritize_risks(risks: List[Risk]) -> List[Risk]:
        """
        Rank risks by weighted priority, highest first.

        The sort is stable, so equal scores keep their input order.

        Returns:
            New risk objects with ``priority_score`` and ``priority_rank`` set
        """
        if risks is None or not isinstance(risks, list):
            raise ValidationError("Risks must be a list")
        scored = [r.model_copy(update={"priority_score": priority_score(r)}) for r in risks]
        ranked = sorted(scored, key=lambda r: r.priority_score, reverse=True)
        return [r.model_copy(update={"priority_rank": rank}) for rank, r in enumerate(ranked, start=1)]

    @staticmethod
    def generate_recommendations(risks: List[Risk]) -> List[Recommendation]:
        """One recommendation per High or Critical risk, in input order."""
        recommendations = []
        for risk in risks:
            if risk.severity not in (Severity.HIGH, Severity.CRITICAL):
                continue
            recommendations.append(Recommendation(
                id=f"rec_{len(recommendations) + 1}",
                risk_id=risk.id,
                title=f"Address {risk.title}",
                description=risk.mitigation or "Review this provision with legal counsel",
                priority=risk.severity,
                category=risk.category,
                action_required=True,
                timeline=RECOMMENDATION_TIMELINES[risk.severity],
            ))
        return recommendations

    @staticmethod
    def calculate_risk_score(risks: List[Risk]) -> int:
        """Overall contract risk score in 0..100."""
        total = sum(RISK_SCORE_POINTS.get(r.severity.value, 0) for r in risks)
        return min(100, total)
