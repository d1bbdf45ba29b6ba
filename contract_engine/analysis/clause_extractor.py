"""
Clause Extractor - splits contract text into clauses and categorizes them.

The rule-based path is deterministic: the same text and options always
produce the same clauses. The model-backed path asks the loaded model for
a JSON clause list and normalizes whatever comes back.
"""

import logging
import re
import time
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ..models.schemas import AnalysisOptions, Clause, ClauseSummary
from ..models.settings import CLAUSE_TYPES
from ..services.errors import InferenceError, ValidationError
from ..utils.functional import clamp, count_by, mean
from ..utils.performance import elapsed_ms
from .parsing import parse_json_object

if TYPE_CHECKING:
    from ..services.configuration_store import ConfigurationStore
    from ..services.metrics_collector import MetricsCollector
    from ..services.model_lifecycle import ModelLifecycleManager

logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY = "unknown"

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "confidentiality_agreement": ["confidential", "non-disclosure", "secret", "proprietary", "confidentiality"],
    "payment_terms": ["payment", "pay", "invoice", "billing", "fee", "cost"],
    "termination_clause": ["terminate", "termination", "end", "expire", "cancel"],
    "liability_limitation": ["liability", "liable", "damages", "loss", "harm", "limitation"],
    "intellectual_property": ["intellectual property", "copyright", "patent", "trademark", "ip rights"],
    "force_majeure": ["force majeure", "act of god", "unforeseeable", "beyond control"],
    "governing_law": ["governing law", "jurisdiction", "applicable law", "courts"],
    "dispute_resolution": ["dispute", "arbitration", "mediation", "resolution"],
    "warranties_representations": ["warrant", "represent", "guarantee", "assure"],
    "indemnification": ["indemnify", "hold harmless", "defend", "protect"],
    "assignment_rights": ["assign", "transfer", "delegate", "convey"],
    "amendment_modification": ["amend", "modify", "change", "alter"],
    "severability_clause": ["severable", "invalid", "unenforceable", "separate"],
    "entire_agreement": ["entire agreement", "complete agreement", "supersede", "merge"],
    "notice_provisions": ["notice", "notification", "inform", "notify"],
}

SECTION_PATTERNS = [
    re.compile(r"\n\s*\d+\."),
    re.compile(r"\n\s*[A-Z]\."),
    re.compile(r"Section \d+", re.IGNORECASE),
    re.compile(r"Article \d+", re.IGNORECASE),
    re.compile(r"\n\s*\([a-z]\)"),
    re.compile(r"\n\s*\d+\.\d+"),
]

KEYWORD_PATTERNS = [
    re.compile(r"payment[^.]*\.", re.IGNORECASE),
    re.compile(r"termination[^.]*\.", re.IGNORECASE),
    re.compile(r"liability[^.]*\.", re.IGNORECASE),
    re.compile(r"confidential[^.]*\.", re.IGNORECASE),
    re.compile(r"intellectual property[^.]*\.", re.IGNORECASE),
    re.compile(r"indemnif[^.]*\.", re.IGNORECASE),
]

MIN_SECTION_LENGTH = 30
MIN_SENTENCE_LENGTH = 15
MIN_PARAGRAPH_LENGTH = 10


def _segment(clause_id: str, text: str, source: str) -> Dict[str, Any]:
    start = source.find(text)
    if start < 0:
        return {"id": clause_id, "text": text, "start_position": 0, "end_position": len(text)}
    return {"id": clause_id, "text": text, "start_position": start, "end_position": start + len(text)}


class ClauseExtractor:
    """
    Identifies, categorizes and scores contract clauses.

    Usage:
        extractor = ClauseExtractor()
        clauses = extractor.extract_with_rules(text, AnalysisOptions(confidence_threshold=0.6))
    """

    def __init__(
        self,
        config_store: Optional["ConfigurationStore"] = None,
        metrics: Optional["MetricsCollector"] = None
    ):
        self.config_store = config_store
        self.metrics = metrics

    def _settings(self) -> Dict[str, Any]:
        if self.config_store is None:
            return {}
        return self.config_store.get("extraction")

    def get_supported_clause_types(self) -> List[str]:
        return list(self._settings().get("supported_types") or CLAUSE_TYPES)

    def _threshold(self, options: Optional[AnalysisOptions]) -> float:
        if options is not None and options.confidence_threshold is not None:
            return options.confidence_threshold
        return float(self._settings().get("min_confidence", 0.3))

    def _max_clauses(self, options: Optional[AnalysisOptions]) -> int:
        if options is not None and options.max_clauses is not None:
            return options.max_clauses
        return int(self._settings().get("max_clauses", 100))

    # ------------------------------------------------------------------
    # Identification
    # ------------------------------------------------------------------

    def identify_clauses(self, text: str) -> List[Dict[str, Any]]:
        """
        Split text into clause segments.

        Tries numbered/lettered section markers first, then sentences,
        then keyword-anchored sentences, then paragraphs, and finally the
        whole text as a single clause.

        Returns:
            Segments with ``id``, ``text``, ``start_position`` and ``end_position``
        """
        if not text or not text.strip():
            return []

        for strategy in (
            self._split_by_sections,
            self._split_by_sentences,
            self._split_by_keywords,
            self._split_by_paragraphs,
        ):
            pieces = strategy(text)
            if pieces:
                return [
                    _segment(f"clause_{i}", piece, text)
                    for i, piece in enumerate(pieces, start=1)
                ]

        return [{"id": "clause_1", "text": text.strip(), "start_position": 0, "end_position": len(text)}]

    @staticmethod
    def _split_by_sections(text: str) -> List[str]:
        sections = [text]
        for pattern in SECTION_PATTERNS:
            sections = [part for section in sections for part in pattern.split(section)]
        return [s.strip() for s in sections if len(s.strip()) > MIN_SECTION_LENGTH]

    @staticmethod
    def _split_by_sentences(text: str) -> List[str]:
        sentences = re.split(r"[.!?]+", text)
        return [s.strip() for s in sentences if len(s.strip()) > MIN_SENTENCE_LENGTH]

    @staticmethod
    def _split_by_keywords(text: str) -> List[str]:
        return [
            match.strip()
            for pattern in KEYWORD_PATTERNS
            for match in pattern.findall(text)
        ]

    @staticmethod
    def _split_by_paragraphs(text: str) -> List[str]:
        paragraphs = re.split(r"\n\s*\n", text)
        return [p.strip() for p in paragraphs if len(p.strip()) > MIN_PARAGRAPH_LENGTH]

    # ------------------------------------------------------------------
    # Categorization and confidence
    # ------------------------------------------------------------------

    def categorize_clause(self, text: str) -> str:
        """
        Pick the category whose keywords score highest in the text.

        Each keyword occurrence scores 2 for keywords longer than five
        characters and 1 otherwise. No match means ``unknown``.
        """
        if not text:
            return UNKNOWN_CATEGORY
        lowered = text.lower()
        best_category, best_score = UNKNOWN_CATEGORY, 0
        for category, keywords in CATEGORY_KEYWORDS.items():
            score = 0
            for keyword in keywords:
                occurrences = lowered.count(keyword)
                score += occurrences * (2 if len(keyword) > 5 else 1)
            if score > best_score:
                best_category, best_score = category, score
        return best_category

    def calculate_confidence(self, text: str, category: str) -> float:
        """
        Confidence that ``text`` belongs to ``category``.

        Any keyword hit gives at least 0.6, scaled up by the share of the
        category's keywords present, plus 0.1 when a keyword repeats.
        ``unknown`` scores 0.3. Result is rounded to two decimals.
        """
        if not text:
            return 0.0
        keywords = CATEGORY_KEYWORDS.get(category, [])
        lowered = text.lower()

        matched = [k for k in keywords if k in lowered]
        repeated = [k for k in matched if lowered.count(k) > 1]

        confidence = 0.0
        if matched:
            confidence = 0.6 + (len(matched) / len(keywords)) * 0.3
            if repeated:
                confidence += 0.1
        elif category == UNKNOWN_CATEGORY:
            confidence = 0.3

        return round(clamp(confidence, default=0.0), 2)

    def categorize_clauses(self, segments: List[Dict[str, Any]]) -> List[Clause]:
        categorize = self._settings().get("enable_categorization", True)
        clauses = []
        for segment in segments:
            category = self.categorize_clause(segment["text"]) if categorize else UNKNOWN_CATEGORY
            clauses.append(Clause(
                id=segment["id"],
                text=segment["text"],
                category=category,
                confidence=self.calculate_confidence(segment["text"], category),
                start_position=segment["start_position"],
                end_position=segment["end_position"],
            ))
        return clauses

    def _accept(self, clauses: List[Clause], options: Optional[AnalysisOptions]) -> List[Clause]:
        # Cap first, then filter: the accepted set only shrinks as the threshold rises.
        threshold = self._threshold(options)
        capped = clauses[:self._max_clauses(options)]
        return [c for c in capped if c.confidence >= threshold]

    @staticmethod
    def _check_text(text: Any) -> None:
        if not isinstance(text, str):
            raise ValidationError("Contract text must be a string")

    def _record(self, clauses: List[Clause], start: float) -> None:
        if self.metrics:
            self.metrics.record_clause_extraction(
                len(clauses),
                elapsed_ms(start),
                mean(c.confidence for c in clauses)
            )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def extract_with_rules(self, text: str, options: Optional[AnalysisOptions] = None) -> List[Clause]:
        """
        Deterministic rule-based extraction.

        Args:
            text: Contract text
            options: Threshold and cap overrides

        Returns:
            Accepted clauses in document order; empty for blank text

        Raises:
            ValidationError: If text is not a string
        """
        self._check_text(text)
        start = time.perf_counter()
        clauses = self._accept(self.categorize_clauses(self.identify_clauses(text)), options)
        self._record(clauses, start)
        return clauses

    async def extract_with_ai(
        self,
        text: str,
        lifecycle: "ModelLifecycleManager",
        options: Optional[AnalysisOptions] = None
    ) -> List[Clause]:
        """
        Model-backed extraction.

        The answer is validated clause by clause: unsupported categories are
        re-scored with the keyword rules and confidences are clamped.

        Raises:
            ValidationError: If text is not a string
            InferenceError: If the model call fails or the answer is unusable
        """
        self._check_text(text)
        if not text.strip():
            return []

        start = time.perf_counter()
        answer = await lifecycle.infer(
            self.build_extraction_prompt(text),
            {"temperature": 0.1, "max_tokens": 4000, "format": "json"}
        )
        payload = parse_json_object(answer)
        raw_clauses = payload.get("clauses")
        if not isinstance(raw_clauses, list):
            raise InferenceError("Model answer has no 'clauses' list")

        clauses = self._accept(self._normalize_ai_clauses(raw_clauses, text), options)
        self._record(clauses, start)
        logger.info(f"Model extracted {len(raw_clauses)} clauses, {len(clauses)} accepted")
        return clauses

    def _normalize_ai_clauses(self, raw_clauses: List[Any], source: str) -> List[Clause]:
        supported = set(self.get_supported_clause_types())
        clauses = []
        for index, raw in enumerate(raw_clauses, start=1):
            if not isinstance(raw, dict):
                continue
            clause_text = str(raw.get("text") or "").strip()
            if not clause_text:
                continue

            category = str(raw.get("category") or raw.get("type") or "").strip().lower()
            if category not in supported:
                category = self.categorize_clause(clause_text)

            confidence = raw.get("confidence")
            if confidence is None:
                confidence = self.calculate_confidence(clause_text, category)

            segment = _segment(str(raw.get("id") or f"clause_{index}"), clause_text, source)
            start = raw.get("start_position", raw.get("startPosition"))
            end = raw.get("end_position", raw.get("endPosition"))
            if isinstance(start, int) and isinstance(end, int) and 0 <= start <= end:
                segment["start_position"], segment["end_position"] = start, end

            clauses.append(Clause(
                id=segment["id"],
                text=clause_text,
                category=category,
                confidence=round(clamp(confidence), 2),
                start_position=segment["start_position"],
                end_position=segment["end_position"],
            ))
        return clauses

    def build_extraction_prompt(self, text: str) -> str:
        types = ", ".join(self.get_supported_clause_types())
        return (
            "Extract the individual clauses of the contract below.\n"
            f"Allowed categories: {types}, unknown.\n"
            "Answer with JSON only, in the form "
            '{"clauses": [{"id": "clause_1", "text": "...", "category": "...", '
            '"confidence": 0.0, "start_position": 0, "end_position": 0}]}\n\n'
            f"CONTRACT:\n{text}"
        )

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    @staticmethod
    def group_clauses_by_type(clauses: List[Clause]) -> Dict[str, List[Clause]]:
        grouped: Dict[str, List[Clause]] = {}
        for clause in clauses:
            grouped.setdefault(clause.category or UNKNOWN_CATEGORY, []).append(clause)
        return grouped

    def generate_clause_summary(self, clauses: List[Clause]) -> ClauseSummary:
        clause_types = count_by(clauses, lambda c: c.category or UNKNOWN_CATEGORY)
        return ClauseSummary(
            total_clauses=len(clauses),
            clause_types=clause_types,
            average_confidence=round(mean(c.confidence for c in clauses), 2),
            supported_types=len(self.get_supported_clause_types()),
            identified_types=len(clause_types),
        )
