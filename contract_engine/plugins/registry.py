"""
Plugin Registry - runtime-swappable analysis plugins.

Once at least one plugin is registered there is always exactly one
active and one default plugin. Every switch is appended to the history.
Requests take a snapshot of the active plugin when they start, so a
concurrent switch never changes the plugin a running request uses.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from ..models.schemas import AnalysisOptions, AnalysisResult
from ..services.errors import PluginContractError, PluginNotAvailableError
from ..utils.functional import format_timestamp
from .base import PluginBehavior, check_plugin_contract

logger = structlog.get_logger()


@dataclass(frozen=True)
class ActivePlugin:
    """Snapshot of the active plugin taken at request start."""
    name: str
    plugin: PluginBehavior


class PluginRegistry:
    """
    Registry of analysis plugins with active/default selection.

    Usage:
        registry = PluginRegistry()
        await registry.register("rules", RuleBasedPlugin())
        result = await registry.process(text)
    """

    def __init__(self):
        self._plugins: Dict[str, PluginBehavior] = {}
        self.active_name: Optional[str] = None
        self.default_name: Optional[str] = None
        self._history: List[Dict[str, Any]] = []
        self.last_error: Optional[str] = None

    def _fail(self, reason: str, **context: Any) -> bool:
        self.last_error = reason
        logger.warning("plugin_registry_rejected", reason=reason, **context)
        return False

    async def register(self, name: str, plugin: PluginBehavior) -> bool:
        """
        Validate, initialize and add a plugin.

        The first plugin registered becomes both default and active.

        Returns:
            False if the contract check fails, the name is taken, or
            ``initialize()`` fails; ``last_error`` then holds the reason
        """
        if not name or not isinstance(name, str):
            return self._fail("Plugin name must be a non-empty string")
        if name in self._plugins:
            return self._fail(f"Plugin {name} is already registered", plugin=name)

        report = check_plugin_contract(plugin, name)
        if not report.is_valid:
            error = PluginContractError(report.describe(), missing=report.missing + report.not_async)
            return self._fail(str(error), plugin=name)

        try:
            initialized = await plugin.initialize()
        except Exception as e:
            logger.error("plugin_initialize_failed", plugin=name, error=str(e))
            return self._fail(f"Plugin {name} failed to initialize: {e}", plugin=name)
        if not initialized:
            return self._fail(f"Plugin {name} failed to initialize", plugin=name)

        # Re-check: another registration may have completed while initialize() ran.
        if name in self._plugins:
            await self._cleanup_quietly(name, plugin)
            return self._fail(f"Plugin {name} is already registered", plugin=name)

        # Registered plugins are initialized, whatever initialize() itself recorded.
        plugin.is_initialized = True

        self._plugins[name] = plugin
        if self.default_name is None:
            self.default_name = name
        if self.active_name is None:
            self.active_name = name

        self.last_error = None
        logger.info(
            "plugin_registered",
            plugin=name,
            version=getattr(plugin, "version", None),
            is_default=self.default_name == name,
            is_active=self.active_name == name
        )
        return True

    async def unregister(self, name: str) -> bool:
        """
        Remove a plugin, calling its ``cleanup()``.

        When the removed plugin was the default, the default becomes the
        first remaining plugin. When it was active, the registry switches
        to the new default, or to no active plugin if none remain.
        """
        plugin = self._plugins.get(name)
        if plugin is None:
            return self._fail(f"Plugin {name} is not registered", plugin=name)

        await self._cleanup_quietly(name, plugin)

        del self._plugins[name]
        if self.default_name == name:
            self.default_name = next(iter(self._plugins), None)
        if self.active_name == name:
            self._record_switch(name, self.default_name)
            self.active_name = self.default_name

        self.last_error = None
        logger.info("plugin_unregistered", plugin=name, active=self.active_name, default=self.default_name)
        return True

    @staticmethod
    async def _cleanup_quietly(name: str, plugin: PluginBehavior) -> None:
        try:
            await plugin.cleanup()
        except Exception as e:
            logger.error("plugin_cleanup_failed", plugin=name, error=str(e))

    def _record_switch(self, from_name: Optional[str], to_name: Optional[str]) -> None:
        self._history.append({
            "from": from_name,
            "to": to_name,
            "timestamp": format_timestamp(),
        })

    def switch_plugin(self, name: str) -> bool:
        """Make ``name`` the active plugin. Unknown names change nothing."""
        if name not in self._plugins:
            return self._fail(f"Plugin {name} is not registered", plugin=name)
        previous = self.active_name
        self._record_switch(previous, name)
        self.active_name = name
        self.last_error = None
        logger.info("plugin_switched", from_plugin=previous, to_plugin=name)
        return True

    def switch_to_default(self) -> bool:
        if self.default_name is None:
            return self._fail("No default plugin registered")
        return self.switch_plugin(self.default_name)

    def get_active_plugin(self) -> Optional[ActivePlugin]:
        if self.active_name is None:
            return None
        return ActivePlugin(name=self.active_name, plugin=self._plugins[self.active_name])

    def get_plugin(self, name: str) -> Optional[PluginBehavior]:
        return self._plugins.get(name)

    def _describe(self, name: str, plugin: PluginBehavior) -> Dict[str, Any]:
        return {
            **plugin.get_metadata(),
            "name": name,
            "is_active": name == self.active_name,
            "is_default": name == self.default_name,
        }

    def list_plugins(self) -> List[Dict[str, Any]]:
        return [self._describe(name, plugin) for name, plugin in self._plugins.items()]

    def find_by_capability(self, capability: str) -> List[Dict[str, Any]]:
        return [
            self._describe(name, plugin)
            for name, plugin in self._plugins.items()
            if capability in plugin.get_capabilities()
        ]

    def get_plugin_history(self) -> List[Dict[str, Any]]:
        return [dict(entry) for entry in self._history]

    async def process(
        self,
        text: str,
        options: Optional[AnalysisOptions] = None,
        active: Optional[ActivePlugin] = None
    ) -> AnalysisResult:
        """
        Analyze text with the given snapshot or the current active plugin.

        Returns:
            The plugin's result with ``plugin_used`` and ``plugin_version``
            set in its metadata

        Raises:
            PluginNotAvailableError: If no plugin is active
            Exception: Whatever the plugin raised, unchanged
        """
        target = active or self.get_active_plugin()
        if target is None:
            raise PluginNotAvailableError("No active plugin")

        try:
            result = await target.plugin.process_contract(text, options)
        except Exception as e:
            logger.error(
                "plugin_processing_failed",
                plugin=target.name,
                version=getattr(target.plugin, "version", None),
                error_type=type(e).__name__,
                error=str(e)
            )
            raise

        metadata = result.metadata.model_copy(update={
            "plugin_used": target.name,
            "plugin_version": getattr(target.plugin, "version", None),
        })
        return result.model_copy(update={"metadata": metadata})

    def get_status(self) -> Dict[str, Any]:
        return {
            "total_plugins": len(self._plugins),
            "active_plugin": self.active_name,
            "default_plugin": self.default_name,
            "plugins": list(self._plugins),
            "switch_count": len(self._history),
        }

    async def cleanup(self) -> None:
        """Unregister every plugin."""
        for name in list(self._plugins):
            await self.unregister(name)
        logger.info("plugin_registry_cleaned_up")
