"""
Unit tests for RiskAnalyzer.

Tests cover:
- Keyword rules and filtering by severity, confidence and tolerance
- Weighted prioritization
- Recommendations and the overall risk score
- Model-backed analysis with validation of returned risks
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from contract_engine.analysis.risk_analyzer import RiskAnalyzer, priority_score
from contract_engine.models.schemas import (
    AnalysisOptions,
    BusinessImpact,
    Clause,
    Risk,
    Severity,
)
from contract_engine.services.errors import InferenceError, ValidationError
from contract_engine.services.metrics_collector import MetricsCollector


@pytest.fixture
def clauses():
    """One clause per rule: payment, liability, termination, renewal."""
    return [
        Clause(id="clause_1", text="Customer shall pay within 90 days.", category="payment_terms", confidence=0.85),
        Clause(id="clause_2", text="The Provider accepts unlimited liability for all damages.",
               category="liability_limitation", confidence=0.8),
        Clause(id="clause_3", text="Either party may terminate immediately upon notice.",
               category="termination_clause", confidence=0.72),
        Clause(id="clause_4", text="This agreement shall automatically renew.", category="unknown", confidence=0.3),
    ]


def make_risk(risk_id, severity=Severity.MEDIUM, impact=BusinessImpact.MEDIUM, confidence=0.5, score=0.5):
    return Risk(
        id=risk_id,
        title=f"Risk {risk_id}",
        description="test risk",
        severity=severity,
        category="Legal",
        confidence=confidence,
        risk_score=score,
        business_impact=impact,
    )


class TestRuleBasedAnalysis:
    """Test keyword rules."""

    def test_one_risk_per_matching_clause(self, clauses):
        result = RiskAnalyzer().analyze_risks(clauses)

        assert [r.title for r in result.risks] == [
            "Extended Payment Terms Risk",
            "Unlimited Liability Exposure",
            "Inadequate Termination Protection",
            "Automatic Renewal",
        ]
        assert [r.affected_clauses for r in result.risks] == [
            ["clause_1"], ["clause_2"], ["clause_3"], ["clause_4"]
        ]
        assert [r.id for r in result.risks] == ["risk_1", "risk_2", "risk_3", "risk_4"]

    def test_summary(self, clauses):
        summary = RiskAnalyzer().analyze_risks(clauses).summary

        assert summary.total_risks == 4
        assert summary.high_risks == 1
        assert summary.medium_risks == 2
        assert summary.low_risks == 1
        assert summary.critical_risks == 0
        assert summary.highest_risk.title == "Unlimited Liability Exposure"
        assert summary.risk_distribution == {"Financial": 1, "Legal": 1, "Contract Management": 2}

    def test_empty_clauses(self):
        result = RiskAnalyzer().analyze_risks([])

        assert result.risks == []
        assert result.summary.total_risks == 0

    def test_invalid_input(self):
        with pytest.raises(ValidationError):
            RiskAnalyzer().analyze_risks(None)
        with pytest.raises(ValidationError):
            RiskAnalyzer().analyze_risks("clause text")

    def test_accepts_clause_mappings(self):
        result = RiskAnalyzer().analyze_risks([
            {"id": "c9", "text": "Payment is due 120 days after delivery.", "category": "payment_terms"}
        ])

        assert len(result.risks) == 1
        assert result.risks[0].affected_clauses == ["c9"]

    def test_malformed_clause_mapping(self):
        with pytest.raises(ValidationError):
            RiskAnalyzer().analyze_risks([{"text": "no id"}])

    def test_notice_protects_termination(self):
        clause = Clause(id="clause_1", text="Either party may terminate with 30 days notice.",
                        category="termination_clause")
        assert RiskAnalyzer().analyze_risks([clause]).risks == []

    def test_high_tolerance_drops_low_risks(self, clauses):
        result = RiskAnalyzer().analyze_risks(clauses, AnalysisOptions(risk_tolerance="high"))

        assert "Automatic Renewal" not in [r.title for r in result.risks]
        assert result.summary.total_risks == 3

    def test_confidence_threshold(self, clauses):
        result = RiskAnalyzer().analyze_risks(clauses, AnalysisOptions(confidence_threshold=0.8))

        assert [r.title for r in result.risks] == [
            "Extended Payment Terms Risk",
            "Unlimited Liability Exposure",
        ]

    @pytest.mark.asyncio
    async def test_severity_levels_from_store(self, config_store, clauses):
        await config_store.update("risk", {"severity_levels": ["High", "Critical"]})
        analyzer = RiskAnalyzer(config_store)

        result = analyzer.analyze_risks(clauses)

        assert [r.severity for r in result.risks] == [Severity.HIGH]
        assert analyzer.get_risk_levels() == ["High", "Critical"]

    def test_records_metrics(self, clauses):
        metrics = MetricsCollector()
        RiskAnalyzer(metrics=metrics).analyze_risks(clauses)

        assert metrics.risk_analysis_count == 1
        assert metrics.risk_level_distribution["Medium"] == 2


class TestPrioritization:
    """Test weighted ranking."""

    def test_priority_score_formula(self):
        risk = make_risk("r", Severity.HIGH, BusinessImpact.VERY_HIGH, confidence=0.95, score=0.9)
        assert priority_score(risk) == pytest.approx(0.9)

    def test_ranked_highest_first(self, clauses):
        analyzer = RiskAnalyzer()
        ranked = analyzer.prioritize_risks(analyzer.analyze_risks(clauses).risks)

        assert [r.title for r in ranked] == [
            "Unlimited Liability Exposure",
            "Extended Payment Terms Risk",
            "Inadequate Termination Protection",
            "Automatic Renewal",
        ]
        assert [r.priority_rank for r in ranked] == [1, 2, 3, 4]
        assert all(0.0 <= r.priority_score <= 1.0 for r in ranked)
        scores = [r.priority_score for r in ranked]
        assert scores == sorted(scores, reverse=True)

    def test_stable_for_equal_scores(self):
        risks = [make_risk("a"), make_risk("b"), make_risk("c", Severity.CRITICAL), make_risk("d")]

        ranked = RiskAnalyzer.prioritize_risks(risks)

        assert [r.id for r in ranked] == ["c", "a", "b", "d"]

    def test_input_not_mutated(self):
        risks = [make_risk("a")]
        RiskAnalyzer.prioritize_risks(risks)
        assert risks[0].priority_score is None

    def test_rejects_non_list(self):
        with pytest.raises(ValidationError):
            RiskAnalyzer.prioritize_risks(None)


class TestRecommendationsAndScore:
    """Test recommendations and the 0-100 score."""

    def test_only_high_and_critical(self):
        risks = [
            make_risk("low", Severity.LOW),
            make_risk("high", Severity.HIGH),
            make_risk("critical", Severity.CRITICAL),
        ]

        recommendations = RiskAnalyzer.generate_recommendations(risks)

        assert [r.risk_id for r in recommendations] == ["high", "critical"]
        assert recommendations[0].timeline == "Within 30 days"
        assert recommendations[1].timeline == "Before contract execution"
        assert recommendations[0].description == "Review this provision with legal counsel"

    def test_uses_mitigation_text(self, clauses):
        analyzer = RiskAnalyzer()
        recommendations = analyzer.generate_recommendations(analyzer.analyze_risks(clauses).risks)

        assert len(recommendations) == 1
        assert recommendations[0].description.startswith("Negotiate liability caps")

    def test_risk_score(self, clauses):
        analyzer = RiskAnalyzer()
        assert analyzer.calculate_risk_score(analyzer.analyze_risks(clauses).risks) == 34
        assert analyzer.calculate_risk_score([]) == 0

    def test_risk_score_capped(self):
        risks = [make_risk(str(i), Severity.CRITICAL) for i in range(5)]
        assert RiskAnalyzer.calculate_risk_score(risks) == 100


class TestModelAnalysis:
    """Test model-backed risk analysis."""

    def make_lifecycle(self, payload):
        lifecycle = MagicMock()
        answer = payload if isinstance(payload, str) else json.dumps(payload)
        lifecycle.infer = AsyncMock(return_value=answer)
        return lifecycle

    @pytest.mark.asyncio
    async def test_validates_returned_risks(self, clauses):
        lifecycle = self.make_lifecycle({"risks": [
            {
                "title": "Odd",
                "severity": "Catastrophic",
                "category": "Space Law",
                "affected_clauses": ["clause_2", "clause_99"],
                "confidence": 3,
                "risk_score": "high",
                "business_impact": "Enormous",
            },
            "ignored",
        ]})

        result = await RiskAnalyzer().analyze_with_ai(clauses, lifecycle)

        assert len(result.risks) == 1
        risk = result.risks[0]
        assert risk.id == "risk_1"
        assert risk.severity == Severity.MEDIUM
        assert risk.category == "Risk Management"
        assert risk.business_impact == BusinessImpact.MEDIUM
        assert risk.affected_clauses == ["clause_2"]
        assert risk.confidence == 1.0
        assert risk.risk_score == 0.5

    @pytest.mark.asyncio
    async def test_prompt_lists_clauses(self, clauses):
        lifecycle = self.make_lifecycle({"risks": []})

        await RiskAnalyzer().analyze_with_ai(clauses, lifecycle)

        prompt, options = lifecycle.infer.call_args[0]
        assert prompt.startswith("Identify legal and business risks")
        assert '"clause_4"' in prompt
        assert options["format"] == "json"

    @pytest.mark.asyncio
    async def test_missing_risk_list(self, clauses):
        with pytest.raises(InferenceError):
            await RiskAnalyzer().analyze_with_ai(clauses, self.make_lifecycle({"findings": []}))

    @pytest.mark.asyncio
    async def test_empty_clauses_skip_model(self):
        lifecycle = self.make_lifecycle({"risks": []})

        result = await RiskAnalyzer().analyze_with_ai([], lifecycle)

        assert result.risks == []
        lifecycle.infer.assert_not_awaited()
