"""
Unit tests for the ConfigurationStore.

Tests cover:
- Defaults, set/get round trip and copy isolation
- Validation before mutation
- Deep-merge updates, backup, restore and reset
- Change listeners
- Soft-fail persistence and initialization from persisted values
"""

import pytest
from unittest.mock import AsyncMock

from contract_engine.services.configuration_store import ConfigurationStore
from contract_engine.services.errors import ConfigurationPersistenceError, ValidationError
from contract_engine.services.persistence import InMemoryPersistence


class TestGetAndSet:
    """Test reading and replacing namespace values."""

    def test_get_returns_default_before_initialize(self):
        store = ConfigurationStore()
        assert store.get("extraction")["min_confidence"] == 0.3

    def test_get_unknown_namespace_is_empty(self):
        assert ConfigurationStore().get("nope") == {}

    def test_get_returns_copy(self):
        store = ConfigurationStore()
        value = store.get("analysis")
        value["methods"].clear()

        assert store.get("analysis")["methods"] == ["plugin", "ai_model", "rule_based"]

    @pytest.mark.asyncio
    async def test_set_then_get_round_trip(self, config_store):
        value = config_store.get("risk")
        value["enable_mitigation"] = False

        assert await config_store.set("risk", value) is True
        assert config_store.get("risk") == value

    @pytest.mark.asyncio
    async def test_set_normalizes_partial_value(self):
        store = ConfigurationStore()
        await store.set("extraction", {"min_confidence": 0.6})

        assert store.get("extraction")["min_confidence"] == 0.6
        assert store.get("extraction")["max_clauses"] == 100

    @pytest.mark.asyncio
    async def test_invalid_set_rejected_before_mutation(self, config_store):
        before = config_store.get("model")

        with pytest.raises(ValidationError):
            await config_store.set("model", {"temperature": 9.0})

        assert config_store.get("model") == before
        assert config_store.get_backup("model") is None

    @pytest.mark.asyncio
    async def test_set_writes_through(self):
        persistence = InMemoryPersistence()
        store = ConfigurationStore(persistence)
        await store.set("risk", {"enable_mitigation": False})

        stored = await persistence.read("risk")
        assert stored["enable_mitigation"] is False
        assert "last_modified" not in stored

    @pytest.mark.asyncio
    async def test_set_without_persist(self):
        persistence = InMemoryPersistence()
        store = ConfigurationStore(persistence)
        await store.set("risk", {"enable_mitigation": False}, persist=False)

        assert await persistence.read("risk") is None

    @pytest.mark.asyncio
    async def test_persistence_failure_is_soft(self):
        persistence = InMemoryPersistence()
        persistence.write = AsyncMock(side_effect=ConfigurationPersistenceError("disk full"))
        store = ConfigurationStore(persistence)

        assert await store.set("risk", {"enable_mitigation": False}) is True
        assert store.get("risk")["enable_mitigation"] is False


class TestUpdateBackupRestore:
    """Test deep-merge updates and the single-deep backup."""

    @pytest.mark.asyncio
    async def test_update_merges(self, config_store):
        await config_store.update("analysis", {"timeout_ms": 5000.0})

        analysis = config_store.get("analysis")
        assert analysis["timeout_ms"] == 5000.0
        assert analysis["fallback_enabled"] is True

    @pytest.mark.asyncio
    async def test_update_replaces_lists(self, config_store):
        await config_store.update("analysis", {"methods": ["rule_based"]})
        assert config_store.get("analysis")["methods"] == ["rule_based"]

    @pytest.mark.asyncio
    async def test_failed_update_leaves_snapshot(self, config_store):
        await config_store.update("extraction", {"min_confidence": 0.4})
        snapshot = config_store.get("extraction")

        with pytest.raises(ValidationError):
            await config_store.update("extraction", {"min_confidence": 1.5})

        assert config_store.get("extraction") == snapshot

    @pytest.mark.asyncio
    async def test_update_requires_mapping(self, config_store):
        with pytest.raises(ValidationError):
            await config_store.update("extraction", "min_confidence=0.4")

    @pytest.mark.asyncio
    async def test_backup_and_restore(self, config_store):
        original = config_store.get("extraction")
        await config_store.update("extraction", {"max_clauses": 10})

        backup = config_store.get_backup("extraction")
        assert backup.config == original
        assert backup.timestamp

        assert await config_store.restore("extraction") is True
        assert config_store.get("extraction") == original

    @pytest.mark.asyncio
    async def test_backup_is_single_deep(self, config_store):
        await config_store.update("extraction", {"max_clauses": 10})
        await config_store.update("extraction", {"max_clauses": 20})

        assert config_store.get_backup("extraction").config["max_clauses"] == 10

    @pytest.mark.asyncio
    async def test_restore_without_backup(self, config_store):
        assert await config_store.restore("risk") is False
        assert "No backup" in config_store.last_error

    @pytest.mark.asyncio
    async def test_reset_to_default(self, config_store):
        await config_store.update("extraction", {"max_clauses": 10})
        assert await config_store.reset("extraction") is True
        assert config_store.get("extraction")["max_clauses"] == 100

    @pytest.mark.asyncio
    async def test_reset_unknown_namespace(self, config_store):
        assert await config_store.reset("custom") is False
        assert config_store.last_error is not None


class TestChangeListeners:
    """Test change notification."""

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners_notified(self, config_store):
        seen = []

        def on_change(new, old, name):
            seen.append(("sync", name, old["max_clauses"], new["max_clauses"]))

        async def on_change_async(new, old, name):
            seen.append(("async", name, old["max_clauses"], new["max_clauses"]))

        config_store.add_change_listener("extraction", on_change)
        config_store.add_change_listener("extraction", on_change_async)
        await config_store.update("extraction", {"max_clauses": 7})

        assert seen == [
            ("sync", "extraction", 100, 7),
            ("async", "extraction", 100, 7),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_isolated(self, config_store):
        calls = []

        def broken(new, old, name):
            raise RuntimeError("listener bug")

        config_store.add_change_listener("risk", broken)
        config_store.add_change_listener("risk", lambda new, old, name: calls.append(name))

        assert await config_store.update("risk", {"enable_mitigation": False}) is True
        assert calls == ["risk"]
        assert config_store.get("risk")["enable_mitigation"] is False

    @pytest.mark.asyncio
    async def test_listener_cannot_mutate_store(self, config_store):
        def meddle(new, old, name):
            new["max_clauses"] = 1

        config_store.add_change_listener("extraction", meddle)
        await config_store.update("extraction", {"max_clauses": 7})

        assert config_store.get("extraction")["max_clauses"] == 7

    @pytest.mark.asyncio
    async def test_remove_listener(self, config_store):
        calls = []
        listener_id = config_store.add_change_listener("risk", lambda *args: calls.append(args))

        assert listener_id.startswith("listener_")
        assert config_store.remove_change_listener("risk", listener_id) is True
        assert config_store.remove_change_listener("risk", listener_id) is False

        await config_store.update("risk", {"enable_mitigation": False})
        assert calls == []

    @pytest.mark.asyncio
    async def test_listeners_scoped_to_namespace(self, config_store):
        calls = []
        config_store.add_change_listener("risk", lambda *args: calls.append(args))
        await config_store.update("extraction", {"max_clauses": 7})

        assert calls == []


class TestInitialization:
    """Test loading persisted namespaces."""

    @pytest.mark.asyncio
    async def test_initialize_loads_persisted_values(self):
        persistence = InMemoryPersistence({"extraction": {"min_confidence": 0.7}})
        store = ConfigurationStore(persistence)

        assert await store.initialize() is True
        assert store.is_initialized
        assert store.get("extraction")["min_confidence"] == 0.7
        assert store.get("extraction")["max_clauses"] == 100

    @pytest.mark.asyncio
    async def test_invalid_persisted_value_ignored(self):
        persistence = InMemoryPersistence({"model": {"temperature": 42.0}})
        store = ConfigurationStore(persistence)
        await store.initialize()

        assert store.get("model")["temperature"] == 0.1

    @pytest.mark.asyncio
    async def test_unreadable_persistence_uses_defaults(self):
        persistence = InMemoryPersistence()
        persistence.read = AsyncMock(side_effect=ConfigurationPersistenceError("unreachable"))
        store = ConfigurationStore(persistence)
        await store.initialize()

        assert store.get("analysis")["timeout_ms"] == 30000.0

    @pytest.mark.asyncio
    async def test_status_and_cleanup(self, config_store):
        await config_store.initialize()
        config_store.add_change_listener("risk", lambda *args: None)
        await config_store.update("risk", {"enable_mitigation": False})

        status = config_store.get_status()
        assert status["is_initialized"] is True
        assert status["total_configurations"] == 5
        assert status["total_listeners"] == 1
        assert status["backups"] == ["risk"]
        assert status["persistence"] == "InMemoryPersistence"

        await config_store.cleanup()
        status = config_store.get_status()
        assert status["total_listeners"] == 0
        assert status["backups"] == []
        assert status["is_initialized"] is False
