"""
Shared pytest fixtures for contract engine tests.

Provides reusable mocks and test data for unit and integration tests.
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from contract_engine.models.schemas import (
    AnalysisMetadata,
    AnalysisResult,
    ContractSummary,
    ModelDescriptor,
    ProcessingMethod,
    RiskAnalysisResult,
)
from contract_engine.models.settings import default_namespaces
from contract_engine.plugins.base import PluginBehavior
from contract_engine.services.configuration_store import ConfigurationStore
from contract_engine.services.persistence import InMemoryPersistence


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


MODEL_CLAUSES = {
    "clauses": [
        {
            "id": "clause_1",
            "text": "The Provider accepts unlimited liability for all damages arising under this agreement.",
            "category": "liability_limitation",
            "confidence": 0.92,
        },
        {
            "id": "clause_2",
            "text": "Customer shall pay each invoice within 90 days of receipt of the invoice.",
            "category": "payment_terms",
            "confidence": 0.88,
        },
    ]
}

MODEL_RISKS = {
    "risks": [
        {
            "id": "risk_1",
            "title": "Unlimited Liability",
            "description": "Liability is not capped",
            "severity": "Critical",
            "category": "Legal",
            "affected_clauses": ["clause_1"],
            "confidence": 0.9,
            "risk_score": 0.95,
            "business_impact": "Very High",
            "explanation": "No cap on damages",
            "mitigation": "Negotiate a liability cap",
        }
    ]
}


def scripted_answer(model_name, prompt, options):
    """Answer like a model: health check, clause extraction or risk analysis."""
    if prompt.startswith("Extract the individual clauses"):
        return json.dumps(MODEL_CLAUSES)
    if prompt.startswith("Identify legal and business risks"):
        return json.dumps(MODEL_RISKS)
    return "OK"


@pytest.fixture
def model_descriptor():
    """Descriptor of an 8B model with a large context window."""
    return ModelDescriptor(
        name="llama3.1:8b",
        parameter_size="8.0B",
        context_length=131072,
        family="llama",
        quantization="Q4_K_M",
    )


@pytest.fixture
def mock_backend(model_descriptor):
    """Mock inference backend that is reachable and serves every model."""
    backend = MagicMock()
    backend.name = "mock"
    backend.is_available = AsyncMock(return_value=True)
    backend.is_model_available = AsyncMock(return_value=True)
    backend.pull_model = AsyncMock(return_value=True)
    backend.get_model_info = AsyncMock(return_value=model_descriptor)
    backend.generate = AsyncMock(side_effect=scripted_answer)
    backend.aclose = AsyncMock()
    return backend


@pytest.fixture
def unavailable_backend(mock_backend):
    """Mock inference backend that cannot be reached."""
    mock_backend.is_available = AsyncMock(return_value=False)
    return mock_backend


@pytest.fixture
def mock_redis():
    """Mock Redis client for persistence tests."""
    redis = MagicMock()

    redis.get = MagicMock(return_value=None)
    redis.smembers = MagicMock(return_value=set())
    redis.ping = MagicMock(return_value=True)

    pipeline_mock = MagicMock()
    pipeline_mock.set = MagicMock(return_value=pipeline_mock)
    pipeline_mock.sadd = MagicMock(return_value=pipeline_mock)
    pipeline_mock.execute = MagicMock(return_value=[True, 1])
    redis.pipeline = MagicMock(return_value=pipeline_mock)

    return redis


@pytest.fixture
def fast_defaults():
    """Built-in namespace defaults with retry backoff disabled."""
    defaults = default_namespaces()
    defaults["analysis"]["backoff_base_ms"] = 0.0
    defaults["analysis"]["backoff_max_ms"] = 0.0
    return defaults


@pytest.fixture
def config_store(fast_defaults):
    """Configuration store over in-memory persistence."""
    return ConfigurationStore(InMemoryPersistence(), defaults=fast_defaults)


class StubPlugin(PluginBehavior):
    """Plugin returning a canned result; ``fail_with`` makes processing raise."""

    def __init__(self, name="stub", version="1.0.0", capabilities=("contract-analysis",),
                 initialize_result=True, fail_with=None):
        super().__init__(name, version, capabilities)
        self.initialize_result = initialize_result
        self.fail_with = fail_with
        self.calls = 0
        self.cleaned_up = False

    async def initialize(self):
        self.is_initialized = self.initialize_result
        return self.initialize_result

    async def process_contract(self, text, options=None):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return AnalysisResult(
            summary=ContractSummary(key_findings=[f"analyzed by {self.name}"]),
            metadata=AnalysisMetadata(processing_method=ProcessingMethod.AI_MODEL, confidence=0.9),
        )

    async def extract_clauses(self, text, options=None):
        return []

    async def analyze_risks(self, clauses, options=None):
        return RiskAnalysisResult()

    async def cleanup(self):
        self.cleaned_up = True
        self.is_initialized = False


@pytest.fixture
def stub_plugin_class():
    """Factory class for canned-result plugins."""
    return StubPlugin


@pytest.fixture
def sample_contract_text():
    """Sample contract text for testing."""
    return """
SERVICE AGREEMENT

This Agreement is entered into as of January 1, 2025 between Acme Corporation ("Client")
and TechServ Inc. ("Provider").

1. PAYMENT TERMS

Payment shall be made within Net 30 days of invoice date. Late payments will incur
a 1.5% monthly interest charge.

2. LIABILITY AND INDEMNIFICATION

Provider's total liability under this Agreement shall not exceed $1,000,000 in the
aggregate. Provider shall not be liable for consequential, incidental, or punitive damages.

3. TERMINATION

Either party may terminate this Agreement with 30 days written notice.

4. CONFIDENTIALITY

Both parties agree to maintain confidentiality of proprietary information disclosed
during the term of this Agreement for a period of 3 years following termination.

5. GOVERNING LAW

This Agreement shall be governed by the laws of the State of Delaware without
regard to conflicts of law principles.
"""


@pytest.fixture
def risky_contract_text():
    """Four numbered clauses, each triggering exactly one risk rule."""
    return (
        "MASTER SERVICES AGREEMENT\n"
        "\n"
        "1. Payment Terms. Customer shall pay each invoice within 90 days of receipt of the invoice.\n"
        "\n"
        "2. Liability. The Provider accepts unlimited liability for all damages arising under this agreement.\n"
        "\n"
        "3. Termination. Either party may terminate this agreement immediately upon written notice.\n"
        "\n"
        "4. Renewal. This agreement shall automatically renew for successive one-year terms.\n"
    )
