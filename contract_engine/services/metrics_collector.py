"""
Metrics Collector - in-process counters and latency benchmarks.

Created once by the composition root and handed to the components that
report into it; nothing here is a process-wide singleton.
"""

import statistics
from collections import deque
from typing import Any, Deque, Dict, Iterable, Optional

from ..utils.functional import format_timestamp, mean, percentile


class MetricsCollector:
    """
    Collects analysis, extraction, risk, inference and fallback metrics.

    Latency samples are kept in bounded windows so memory stays flat on
    long-running processes.
    """

    def __init__(self, window_size: int = 1000):
        """
        Initialize the collector.

        Args:
            window_size: Number of recent samples kept per series
        """
        self.window_size = window_size
        self.reset()

    def _window(self) -> Deque[float]:
        return deque(maxlen=self.window_size)

    def reset(self) -> None:
        """Zero every counter and drop all samples."""
        self.total_analyses = 0
        self.successful_analyses = 0
        self.failed_analyses = 0
        self.processing_times = self._window()
        self.confidence_scores = self._window()
        self.method_counts: Dict[str, int] = {}
        self.error_counts: Dict[str, int] = {}

        self.extraction_count = 0
        self.extracted_clauses = 0
        self.extraction_confidences = self._window()
        self.extraction_times = self._window()

        self.risk_analysis_count = 0
        self.identified_risks = 0
        self.risk_level_distribution = {"Low": 0, "Medium": 0, "High": 0, "Critical": 0}
        self.risk_analysis_times = self._window()

        self.inference_count = 0
        self.inference_failures = 0
        self.total_inference_time_ms = 0.0

        self.fallback_count = 0
        self.fallback_reasons: Dict[str, int] = {}
        self.fallback_transitions: Dict[str, int] = {}
        self.started_at = format_timestamp()

    def record_analysis(
        self,
        success: bool,
        processing_time_ms: float,
        method: Optional[str] = None,
        confidence: Optional[float] = None,
        error_type: Optional[str] = None
    ) -> None:
        self.total_analyses += 1
        self.processing_times.append(processing_time_ms)
        if success:
            self.successful_analyses += 1
        else:
            self.failed_analyses += 1
            if error_type:
                self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1
        if method:
            self.method_counts[method] = self.method_counts.get(method, 0) + 1
        if confidence is not None:
            self.confidence_scores.append(confidence)

    def record_clause_extraction(
        self,
        clause_count: int,
        processing_time_ms: float,
        average_confidence: float
    ) -> None:
        self.extraction_count += 1
        self.extracted_clauses += clause_count
        self.extraction_times.append(processing_time_ms)
        self.extraction_confidences.append(average_confidence)

    def record_risk_analysis(
        self,
        severities: Iterable[str],
        processing_time_ms: float
    ) -> None:
        self.risk_analysis_count += 1
        self.risk_analysis_times.append(processing_time_ms)
        for severity in severities:
            self.identified_risks += 1
            if severity in self.risk_level_distribution:
                self.risk_level_distribution[severity] += 1

    def record_inference(self, duration_ms: float, success: bool) -> None:
        self.inference_count += 1
        self.total_inference_time_ms += duration_ms
        if not success:
            self.inference_failures += 1

    def record_fallback(self, reason: str, from_tier: str, to_tier: Optional[str]) -> None:
        """Count a drop from one analysis tier to the next."""
        self.fallback_count += 1
        self.fallback_reasons[reason] = self.fallback_reasons.get(reason, 0) + 1
        transition = f"{from_tier}->{to_tier or 'none'}"
        self.fallback_transitions[transition] = self.fallback_transitions.get(transition, 0) + 1

    def get_benchmarks(self) -> Dict[str, Any]:
        """Latency statistics over the recent analysis window."""
        samples = sorted(self.processing_times)
        if not samples:
            return {
                "fastest": None,
                "slowest": None,
                "average_processing_time": 0.0,
                "median_processing_time": 0.0,
                "p95_processing_time": 0.0,
                "p99_processing_time": 0.0,
            }
        return {
            "fastest": samples[0],
            "slowest": samples[-1],
            "average_processing_time": round(mean(samples), 2),
            "median_processing_time": round(statistics.median(samples), 2),
            "p95_processing_time": round(percentile(samples, 0.95), 2),
            "p99_processing_time": round(percentile(samples, 0.99), 2),
        }

    def get_metrics(self) -> Dict[str, Any]:
        success_rate = (
            self.successful_analyses / self.total_analyses if self.total_analyses else 0.0
        )
        return {
            "total_analyses": self.total_analyses,
            "successful_analyses": self.successful_analyses,
            "failed_analyses": self.failed_analyses,
            "success_rate": round(success_rate, 4),
            "average_confidence": round(mean(self.confidence_scores), 4),
            "method_counts": dict(self.method_counts),
            "error_counts": dict(self.error_counts),
            "clause_extraction": {
                "total_extractions": self.extraction_count,
                "average_clauses_per_document": round(
                    self.extracted_clauses / self.extraction_count, 2
                ) if self.extraction_count else 0.0,
                "average_confidence": round(mean(self.extraction_confidences), 4),
                "average_processing_time": round(mean(self.extraction_times), 2),
            },
            "risk_analysis": {
                "total_analyses": self.risk_analysis_count,
                "average_risks_per_document": round(
                    self.identified_risks / self.risk_analysis_count, 2
                ) if self.risk_analysis_count else 0.0,
                "risk_level_distribution": dict(self.risk_level_distribution),
                "average_processing_time": round(mean(self.risk_analysis_times), 2),
            },
            "model": {
                "inference_count": self.inference_count,
                "failure_count": self.inference_failures,
                "average_inference_time": round(
                    self.total_inference_time_ms / self.inference_count, 2
                ) if self.inference_count else 0.0,
            },
            "fallback": {
                "fallback_count": self.fallback_count,
                "fallback_reasons": dict(self.fallback_reasons),
                "transitions": dict(self.fallback_transitions),
            },
            "performance_benchmarks": self.get_benchmarks(),
            "collecting_since": self.started_at,
        }
