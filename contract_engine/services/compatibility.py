"""
Backward compatibility for result formats and request options.

Results are produced in the current format. Callers pinned to an older
format version get a down-converted copy, one version step at a time, and
legacy camelCase request options are renamed before validation. The
``compatibility`` namespace decides which formats are still served and
whether legacy use is logged.
"""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from ..models.schemas import AnalysisResult
from ..models.settings import CompatibilitySettings
from .configuration_store import ConfigurationStore
from .errors import ValidationError

logger = logging.getLogger(__name__)

CURRENT_FORMAT_VERSION = "1.2.0"
FORMAT_VERSIONS = ("1.0.0", "1.1.0", "1.2.0")

FEATURES_BY_VERSION: Dict[str, List[str]] = {
    "1.0.0": ["basic-analysis", "clause-extraction", "risk-analysis"],
    "1.1.0": [
        "basic-analysis",
        "clause-extraction",
        "risk-analysis",
        "confidence-scores",
        "enhanced-metadata",
    ],
    "1.2.0": [
        "basic-analysis",
        "clause-extraction",
        "risk-analysis",
        "confidence-scores",
        "enhanced-metadata",
        "plugin-architecture",
        "runtime-configuration",
        "backward-compatibility",
    ],
}

# Legacy request option keys; None means the option no longer exists.
LEGACY_OPTION_KEYS: Dict[str, Optional[str]] = {
    "confidenceThreshold": "confidence_threshold",
    "enabledFeatures": "enabled_features",
    "riskTolerance": "risk_tolerance",
    "maxClauses": "max_clauses",
    "includeConfidence": None,
    "preferredPlugin": None,
}


def _drop_plugin_metadata(result: Dict[str, Any]) -> None:
    metadata = result.get("metadata") or {}
    for key in ("plugin_used", "plugin_version", "plugin_method"):
        metadata.pop(key, None)


def _drop_clause_confidence(result: Dict[str, Any]) -> None:
    for clause in result.get("clauses") or []:
        clause.pop("confidence", None)


# Conversion from each version to the one before it.
DOWNGRADE_STEPS: Dict[str, Callable[[Dict[str, Any]], None]] = {
    "1.2.0": _drop_plugin_metadata,
    "1.1.0": _drop_clause_confidence,
}


def _version_key(version: str) -> tuple:
    return tuple(int(part) for part in version.split("."))


class CompatibilityLayer:
    """
    Converts results and options between format versions.

    Usage:
        layer = CompatibilityLayer(config_store)
        options = layer.migrate_options({"confidenceThreshold": 0.6})
        legacy = layer.convert_result(result, "1.0.0")
    """

    def __init__(self, config_store: Optional[ConfigurationStore] = None):
        self.config_store = config_store
        # Insertion-ordered set of conversion steps already warned about.
        self._warnings: Dict[str, None] = {}

    def _settings(self) -> Dict[str, Any]:
        if self.config_store is None:
            return CompatibilitySettings().model_dump()
        return self.config_store.get("compatibility")

    def _deprecated(self, feature: str, context: str) -> None:
        if not self._settings().get("deprecation_warnings", True):
            return
        key = f"{feature} ({context})"
        if key in self._warnings:
            return
        self._warnings[key] = None
        logger.warning(
            f"Deprecated format used: {key}; update callers to format {CURRENT_FORMAT_VERSION}"
        )

    def is_version_supported(self, version: str) -> bool:
        """Whether results are currently served in ``version``."""
        if version not in FORMAT_VERSIONS:
            return False
        if version == CURRENT_FORMAT_VERSION:
            return True
        settings = self._settings()
        oldest = settings.get("version", FORMAT_VERSIONS[0])
        return bool(settings.get("support_legacy_formats", True)) and _version_key(version) >= _version_key(oldest)

    def require_supported(self, version: str) -> None:
        """
        Raises:
            ValidationError: If ``version`` is unknown or no longer served
        """
        if version not in FORMAT_VERSIONS:
            raise ValidationError(
                f"Unknown result format version {version!r}; known: {', '.join(FORMAT_VERSIONS)}"
            )
        if not self.is_version_supported(version):
            raise ValidationError(f"Result format {version} is not served by this engine")

    def migrate_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """
        Rename legacy option keys to their current names.

        Current keys win over their legacy spelling. Options that no longer
        exist are dropped. With ``migration_enabled`` off the mapping is
        returned unchanged, so legacy keys fail validation.
        """
        if not any(key in LEGACY_OPTION_KEYS for key in options):
            return dict(options)
        if not self._settings().get("migration_enabled", True):
            return dict(options)

        migrated: Dict[str, Any] = {}
        for key, value in options.items():
            if key not in LEGACY_OPTION_KEYS:
                migrated[key] = value
                continue
            self._deprecated(f"option {key}", "request options")
            target = LEGACY_OPTION_KEYS[key]
            if target is not None:
                migrated.setdefault(target, value)
        return migrated

    def convert_result(
        self,
        result: Union[AnalysisResult, Dict[str, Any]],
        version: str = CURRENT_FORMAT_VERSION
    ) -> Dict[str, Any]:
        """
        Render a result in the requested format version.

        Args:
            result: Result in the current format
            version: Target format version

        Returns:
            A JSON-ready dict with ``format_version`` set

        Raises:
            ValidationError: If the version is unknown or no longer served
        """
        self.require_supported(version)
        if isinstance(result, AnalysisResult):
            data = result.model_dump(mode="json")
        else:
            data = copy.deepcopy(result)

        current = CURRENT_FORMAT_VERSION
        while _version_key(current) > _version_key(version):
            DOWNGRADE_STEPS[current](data)
            previous = FORMAT_VERSIONS[FORMAT_VERSIONS.index(current) - 1]
            self._deprecated(f"{current}_to_{previous}", "result conversion")
            current = previous

        data["format_version"] = version
        return data

    def get_supported_features(self, version: str) -> List[str]:
        return list(FEATURES_BY_VERSION.get(version, []))

    def get_report(self) -> Dict[str, Any]:
        warnings = list(self._warnings)
        return {
            "current_version": CURRENT_FORMAT_VERSION,
            "served_versions": [v for v in FORMAT_VERSIONS if self.is_version_supported(v)],
            "deprecation_warnings_issued": len(warnings),
            "recent_warnings": warnings[-10:],
        }

    def clear_deprecation_warnings(self) -> None:
        self._warnings.clear()
        logger.info("Deprecation warnings cleared")
