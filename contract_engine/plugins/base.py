"""
Plugin contract.

Every analysis plugin exposes the same operations. The registry runs
``check_plugin_contract`` before accepting a plugin, so a plugin missing
an operation is rejected up front instead of failing mid-request.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..models.schemas import AnalysisOptions, AnalysisResult, Clause, RiskAnalysisResult

ASYNC_OPERATIONS = (
    "initialize",
    "process_contract",
    "extract_clauses",
    "analyze_risks",
    "cleanup",
)
SYNC_OPERATIONS = ("get_capabilities", "get_metadata")


@dataclass
class ContractReport:
    """Result of checking an object against the plugin contract."""
    plugin: str
    missing: List[str] = field(default_factory=list)
    not_callable: List[str] = field(default_factory=list)
    not_async: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not (self.missing or self.not_callable or self.not_async)

    def describe(self) -> str:
        if self.is_valid:
            return f"Plugin {self.plugin} satisfies the plugin contract"
        problems = []
        if self.missing:
            problems.append(f"missing {', '.join(self.missing)}")
        if self.not_callable:
            problems.append(f"not callable {', '.join(self.not_callable)}")
        if self.not_async:
            problems.append(f"not async {', '.join(self.not_async)}")
        return f"Plugin {self.plugin} is incomplete: {'; '.join(problems)}"


def check_plugin_contract(plugin: Any, name: Optional[str] = None) -> ContractReport:
    """
    Check that ``plugin`` implements every plugin operation.

    Args:
        plugin: Candidate plugin object
        name: Name used in the report, the plugin's own name by default

    Returns:
        A report listing missing, non-callable and non-async operations
    """
    report = ContractReport(plugin=name or getattr(plugin, "name", type(plugin).__name__))
    if plugin is None:
        report.missing = list(ASYNC_OPERATIONS + SYNC_OPERATIONS)
        return report

    for operation in ASYNC_OPERATIONS + SYNC_OPERATIONS:
        attr = getattr(plugin, operation, None)
        if attr is None or getattr(attr, "__isabstractmethod__", False):
            report.missing.append(operation)
        elif not callable(attr):
            report.not_callable.append(operation)
        elif operation in ASYNC_OPERATIONS and not inspect.iscoroutinefunction(attr):
            report.not_async.append(operation)
    return report


class PluginBehavior(ABC):
    """
    Base class for analysis plugins.

    Subclasses implement the async analysis operations; capabilities and
    metadata come from the constructor arguments.
    """

    description = ""

    def __init__(self, name: str, version: str = "1.0.0", capabilities: Optional[Iterable[str]] = None):
        self.name = name
        self.version = version
        self.capabilities = set(capabilities or [])
        self.is_initialized = False

    @abstractmethod
    async def initialize(self) -> bool:
        """
        Prepare the plugin.

        Returning False rejects the registration. On success the registry
        sets ``is_initialized``.
        """

    @abstractmethod
    async def process_contract(self, text: str, options: Optional[AnalysisOptions] = None) -> AnalysisResult:
        """Run a full analysis of the contract text."""

    @abstractmethod
    async def extract_clauses(self, text: str, options: Optional[AnalysisOptions] = None) -> List[Clause]:
        """Extract clauses from the contract text."""

    @abstractmethod
    async def analyze_risks(
        self,
        clauses: List[Clause],
        options: Optional[AnalysisOptions] = None
    ) -> RiskAnalysisResult:
        """Find risks in extracted clauses."""

    @abstractmethod
    async def cleanup(self) -> None:
        """Release resources; called when the plugin is unregistered."""

    def get_capabilities(self) -> List[str]:
        return sorted(self.capabilities)

    def supports_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "capabilities": self.get_capabilities(),
            "is_initialized": self.is_initialized,
        }
