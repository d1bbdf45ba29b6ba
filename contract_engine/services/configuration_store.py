"""
Configuration Store - validated, versioned runtime configuration.

Holds one value per namespace with a single-deep backup, write-through
persistence and change listeners. Validation and replacement happen
before the first suspension point of ``set``, so concurrent readers never
see a half-merged value.
"""

import copy
import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..models.settings import default_namespaces, validate_namespace
from ..utils.functional import deep_merge, utc_now
from .errors import ConfigurationPersistenceError, ValidationError
from .persistence import DurablePersistence

logger = logging.getLogger(__name__)

ChangeListener = Callable[
    [Dict[str, Any], Dict[str, Any], str],
    Union[None, Awaitable[None]]
]


@dataclass
class ConfigBackup:
    """Previous value of a namespace, kept for one-step rollback."""
    config: Dict[str, Any]
    timestamp: str


class ConfigurationStore:
    """
    Namespaced configuration with validation, backup and listeners.

    Usage:
        store = ConfigurationStore(persistence=InMemoryPersistence())
        await store.initialize()
        await store.update("extraction", {"min_confidence": 0.5})
        store.get("extraction")["min_confidence"]  # 0.5
    """

    def __init__(
        self,
        persistence: Optional[DurablePersistence] = None,
        defaults: Optional[Dict[str, Dict[str, Any]]] = None
    ):
        """
        Initialize the store.

        Args:
            persistence: Durable backend for write-through, None for memory only
            defaults: Compiled defaults per namespace (the built-in ones if None)
        """
        self.persistence = persistence
        self._defaults = copy.deepcopy(defaults) if defaults is not None else default_namespaces()
        self._values: Dict[str, Dict[str, Any]] = {}
        self._backups: Dict[str, ConfigBackup] = {}
        self._listeners: Dict[str, Dict[str, ChangeListener]] = {}
        self.is_initialized = False
        self.last_error: Optional[str] = None

    async def initialize(self) -> bool:
        """
        Load persisted namespaces and seed defaults for the rest.

        Invalid or unreadable persisted blobs are logged and replaced by
        the compiled default.

        Returns:
            True once the store is ready
        """
        for name, default in self._defaults.items():
            value = copy.deepcopy(default)
            if self.persistence is not None:
                value = await self._load_persisted(name, value)
            self._values[name] = value

        self.is_initialized = True
        logger.info(f"ConfigurationStore initialized with {len(self._values)} namespaces")
        return True

    async def _load_persisted(self, name: str, fallback: Dict[str, Any]) -> Dict[str, Any]:
        try:
            stored = await self.persistence.read(name)
        except ConfigurationPersistenceError as e:
            logger.warning(f"Could not read persisted configuration '{name}': {e}")
            return fallback
        if stored is None:
            return fallback
        try:
            return validate_namespace(name, stored)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid persisted configuration '{name}': {e.errors}")
            return fallback

    def get(self, name: str) -> Dict[str, Any]:
        """Current value of a namespace (a copy), or its compiled default."""
        if name in self._values:
            return copy.deepcopy(self._values[name])
        return copy.deepcopy(self._defaults.get(name, {}))

    def get_default(self, name: str) -> Dict[str, Any]:
        return copy.deepcopy(self._defaults.get(name, {}))

    async def set(self, name: str, value: Dict[str, Any], persist: bool = True) -> bool:
        """
        Validate and replace a namespace value.

        Args:
            name: Namespace name
            value: Complete new value
            persist: Write through to the persistence backend

        Returns:
            True when the value was applied

        Raises:
            ValidationError: If the value breaks the namespace rules.
                Nothing is changed in that case.
        """
        normalized = validate_namespace(name, value)

        old_value = self.get(name)
        self._backups[name] = ConfigBackup(
            config=copy.deepcopy(old_value),
            timestamp=utc_now().isoformat()
        )
        self._values[name] = normalized
        self.last_error = None

        if persist and self.persistence is not None:
            try:
                await self.persistence.write(name, normalized)
            except ConfigurationPersistenceError as e:
                logger.warning(f"Configuration '{name}' applied but not persisted: {e}")

        await self._notify(name, self.get(name), old_value)
        logger.info(f"Configuration '{name}' updated")
        return True

    async def update(self, name: str, partial: Dict[str, Any], persist: bool = True) -> bool:
        """
        Deep-merge a partial value into a namespace.

        Nested mappings merge recursively; lists are replaced.

        Raises:
            ValidationError: If the merged value is invalid
        """
        if not isinstance(partial, dict):
            raise ValidationError(f"Update for '{name}' must be a mapping")
        merged = deep_merge(self.get(name), partial)
        return await self.set(name, merged, persist)

    async def reset(self, name: str) -> bool:
        """Restore a namespace to its compiled default."""
        if name not in self._defaults:
            self.last_error = f"No default configuration for '{name}'"
            logger.warning(self.last_error)
            return False
        return await self.set(name, self.get_default(name))

    async def restore(self, name: str) -> bool:
        """Re-apply the last backup of a namespace."""
        backup = self._backups.get(name)
        if backup is None:
            self.last_error = f"No backup available for configuration '{name}'"
            logger.warning(self.last_error)
            return False
        return await self.set(name, backup.config)

    def get_backup(self, name: str) -> Optional[ConfigBackup]:
        return self._backups.get(name)

    def add_change_listener(self, name: str, callback: ChangeListener) -> str:
        """
        Register a callback ``(new, old, name)`` for changes of a namespace.

        Callbacks may be plain functions or coroutines.

        Returns:
            Listener ID for ``remove_change_listener``
        """
        listener_id = f"listener_{uuid.uuid4().hex[:12]}"
        self._listeners.setdefault(name, {})[listener_id] = callback
        return listener_id

    def remove_change_listener(self, name: str, listener_id: str) -> bool:
        listeners = self._listeners.get(name)
        if not listeners or listener_id not in listeners:
            return False
        del listeners[listener_id]
        if not listeners:
            del self._listeners[name]
        return True

    async def _notify(self, name: str, new_value: Dict[str, Any], old_value: Dict[str, Any]) -> None:
        # Sequential, each failure isolated from the others.
        for listener_id, callback in list(self._listeners.get(name, {}).items()):
            try:
                result = callback(copy.deepcopy(new_value), copy.deepcopy(old_value), name)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Configuration listener {listener_id} for '{name}' failed: {e}",
                    exc_info=True
                )

    def list_configurations(self) -> List[str]:
        return sorted(set(self._defaults) | set(self._values))

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_initialized": self.is_initialized,
            "total_configurations": len(self.list_configurations()),
            "configurations": self.list_configurations(),
            "total_listeners": sum(len(l) for l in self._listeners.values()),
            "backups": sorted(self._backups),
            "persistence": type(self.persistence).__name__ if self.persistence else None,
        }

    async def cleanup(self) -> None:
        """Drop listeners and backups."""
        self._listeners.clear()
        self._backups.clear()
        self.is_initialized = False
        logger.info("ConfigurationStore cleaned up")
