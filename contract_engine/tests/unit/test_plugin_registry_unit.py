"""
Unit tests for PluginRegistry and the plugin contract check.

Tests cover:
- Registration rules (contract, duplicates, initialization)
- Active/default selection and switch history
- Unregistration and cleanup
- Processing through the active plugin or a snapshot
"""

import pytest

from contract_engine.models.schemas import ProcessingMethod
from contract_engine.plugins.base import check_plugin_contract
from contract_engine.plugins.registry import PluginRegistry
from contract_engine.services.errors import InferenceError, PluginNotAvailableError


class Incomplete:
    """Has a name and nothing else."""
    name = "incomplete"


@pytest.fixture
def registry():
    return PluginRegistry()


def sync_initialize_plugin(stub_plugin_class):
    class SyncInit(stub_plugin_class):
        def initialize(self):
            return True
    return SyncInit("sync")


class TestContractCheck:
    """Test check_plugin_contract."""

    def test_complete_plugin(self, stub_plugin_class):
        report = check_plugin_contract(stub_plugin_class())

        assert report.is_valid
        assert report.plugin == "stub"

    def test_missing_operations(self):
        report = check_plugin_contract(Incomplete())

        assert not report.is_valid
        assert "process_contract" in report.missing
        assert "get_metadata" in report.missing
        assert "incomplete" in report.describe()

    def test_none(self):
        report = check_plugin_contract(None, "ghost")
        assert report.plugin == "ghost"
        assert len(report.missing) == 7

    def test_not_callable(self, stub_plugin_class):
        plugin = stub_plugin_class()
        plugin.get_capabilities = "everything"

        assert check_plugin_contract(plugin).not_callable == ["get_capabilities"]

    def test_sync_operation_flagged(self, stub_plugin_class):
        report = check_plugin_contract(sync_initialize_plugin(stub_plugin_class))
        assert report.not_async == ["initialize"]


class TestRegistration:
    """Test register()."""

    @pytest.mark.asyncio
    async def test_first_plugin_is_active_and_default(self, registry, stub_plugin_class):
        assert await registry.register("p1", stub_plugin_class("p1")) is True

        listing = registry.list_plugins()
        assert len(listing) == 1
        assert listing[0]["name"] == "p1"
        assert listing[0]["is_active"] is True
        assert listing[0]["is_default"] is True
        assert listing[0]["is_initialized"] is True

    @pytest.mark.asyncio
    async def test_second_plugin_not_active(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1"))
        await registry.register("p2", stub_plugin_class("p2"))

        assert registry.active_name == "p1"
        assert registry.default_name == "p1"
        assert registry.get_status()["total_plugins"] == 2

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, registry, stub_plugin_class):
        original = stub_plugin_class("p1")
        await registry.register("p1", original)

        assert await registry.register("p1", stub_plugin_class("other")) is False
        assert "already registered" in registry.last_error
        assert registry.get_plugin("p1") is original

    @pytest.mark.asyncio
    async def test_incomplete_plugin_rejected(self, registry):
        assert await registry.register("bad", Incomplete()) is False
        assert "incomplete" in registry.last_error
        assert registry.list_plugins() == []

    @pytest.mark.asyncio
    async def test_sync_initialize_rejected(self, registry, stub_plugin_class):
        assert await registry.register("sync", sync_initialize_plugin(stub_plugin_class)) is False
        assert "not async initialize" in registry.last_error

    @pytest.mark.asyncio
    async def test_initialize_false_rejected(self, registry, stub_plugin_class):
        assert await registry.register("p1", stub_plugin_class("p1", initialize_result=False)) is False
        assert registry.last_error == "Plugin p1 failed to initialize"
        assert registry.active_name is None

    @pytest.mark.asyncio
    async def test_initialize_raising_rejected(self, registry, stub_plugin_class):
        class Exploding(stub_plugin_class):
            async def initialize(self):
                raise RuntimeError("no license")

        assert await registry.register("p1", Exploding("p1")) is False
        assert "no license" in registry.last_error

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, registry, stub_plugin_class):
        assert await registry.register("", stub_plugin_class()) is False

    @pytest.mark.asyncio
    async def test_registry_marks_plugin_initialized(self, registry, stub_plugin_class):
        """A plugin whose initialize() only returns True counts as initialized."""
        class QuietInit(stub_plugin_class):
            async def initialize(self):
                return True

        plugin = QuietInit("p1")
        assert await registry.register("p1", plugin) is True

        assert plugin.is_initialized is True
        assert registry.list_plugins()[0]["is_initialized"] is True

    @pytest.mark.asyncio
    async def test_name_taken_during_initialize_with_failing_cleanup(self, registry, stub_plugin_class):
        """A late duplicate is rejected even when its cleanup raises."""
        winner = stub_plugin_class("p1")

        class Racing(stub_plugin_class):
            async def initialize(self):
                await registry.register("p1", winner)
                return True

            async def cleanup(self):
                raise RuntimeError("cleanup exploded")

        assert await registry.register("p1", Racing("p1")) is False
        assert "already registered" in registry.last_error
        assert registry.get_plugin("p1") is winner


class TestSwitching:
    """Test switch_plugin() and the history."""

    @pytest.mark.asyncio
    async def test_switch_records_history(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1"))
        await registry.register("p2", stub_plugin_class("p2"))

        assert registry.switch_plugin("p2") is True

        assert registry.active_name == "p2"
        assert registry.default_name == "p1"
        history = registry.get_plugin_history()
        assert len(history) == 1
        assert history[0]["from"] == "p1"
        assert history[0]["to"] == "p2"
        assert history[0]["timestamp"]

    @pytest.mark.asyncio
    async def test_switch_to_unknown_changes_nothing(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1"))

        assert registry.switch_plugin("missing") is False
        assert registry.active_name == "p1"
        assert registry.get_plugin_history() == []

    @pytest.mark.asyncio
    async def test_switch_to_default(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1"))
        await registry.register("p2", stub_plugin_class("p2"))
        registry.switch_plugin("p2")

        assert registry.switch_to_default() is True
        assert registry.active_name == "p1"
        assert len(registry.get_plugin_history()) == 2

    def test_switch_to_default_when_empty(self, registry):
        assert registry.switch_to_default() is False

    @pytest.mark.asyncio
    async def test_history_is_a_copy(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1"))
        await registry.register("p2", stub_plugin_class("p2"))
        registry.switch_plugin("p2")

        registry.get_plugin_history()[0]["to"] = "tampered"
        assert registry.get_plugin_history()[0]["to"] == "p2"


class TestUnregistration:
    """Test unregister() and cleanup()."""

    @pytest.mark.asyncio
    async def test_unregister_active_falls_back_to_default(self, registry, stub_plugin_class):
        p2 = stub_plugin_class("p2")
        await registry.register("p1", stub_plugin_class("p1"))
        await registry.register("p2", p2)
        registry.switch_plugin("p2")

        assert await registry.unregister("p2") is True

        assert p2.cleaned_up is True
        assert registry.active_name == "p1"
        assert registry.get_plugin_history()[-1] == {
            "from": "p2",
            "to": "p1",
            "timestamp": registry.get_plugin_history()[-1]["timestamp"],
        }

    @pytest.mark.asyncio
    async def test_unregister_default_promotes_next(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1"))
        await registry.register("p2", stub_plugin_class("p2"))

        await registry.unregister("p1")

        assert registry.default_name == "p2"
        assert registry.active_name == "p2"

    @pytest.mark.asyncio
    async def test_unregister_last_plugin(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1"))
        await registry.unregister("p1")

        assert registry.active_name is None
        assert registry.default_name is None
        assert registry.get_active_plugin() is None

    @pytest.mark.asyncio
    async def test_unregister_unknown(self, registry):
        assert await registry.unregister("missing") is False
        assert "not registered" in registry.last_error

    @pytest.mark.asyncio
    async def test_cleanup_error_does_not_block_removal(self, registry, stub_plugin_class):
        class BadCleanup(stub_plugin_class):
            async def cleanup(self):
                raise RuntimeError("socket already closed")

        await registry.register("p1", BadCleanup("p1"))

        assert await registry.unregister("p1") is True
        assert registry.list_plugins() == []

    @pytest.mark.asyncio
    async def test_registry_cleanup(self, registry, stub_plugin_class):
        plugins = [stub_plugin_class(f"p{i}") for i in range(3)]
        for plugin in plugins:
            await registry.register(plugin.name, plugin)

        await registry.cleanup()

        assert registry.get_status()["total_plugins"] == 0
        assert all(p.cleaned_up for p in plugins)


class TestProcessing:
    """Test process() and capability lookup."""

    @pytest.mark.asyncio
    async def test_no_active_plugin(self, registry):
        with pytest.raises(PluginNotAvailableError):
            await registry.process("Some contract text")

    @pytest.mark.asyncio
    async def test_metadata_names_plugin(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1", version="2.3.0"))

        result = await registry.process("Some contract text")

        assert result.metadata.plugin_used == "p1"
        assert result.metadata.plugin_version == "2.3.0"
        assert result.metadata.processing_method == ProcessingMethod.AI_MODEL

    @pytest.mark.asyncio
    async def test_snapshot_survives_switch(self, registry, stub_plugin_class):
        p1 = stub_plugin_class("p1")
        p2 = stub_plugin_class("p2")
        await registry.register("p1", p1)
        await registry.register("p2", p2)

        snapshot = registry.get_active_plugin()
        registry.switch_plugin("p2")
        result = await registry.process("Some contract text", active=snapshot)

        assert result.metadata.plugin_used == "p1"
        assert p1.calls == 1
        assert p2.calls == 0

    @pytest.mark.asyncio
    async def test_plugin_errors_propagate(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1", fail_with=InferenceError("model crashed")))

        with pytest.raises(InferenceError, match="model crashed"):
            await registry.process("Some contract text")

    @pytest.mark.asyncio
    async def test_find_by_capability(self, registry, stub_plugin_class):
        await registry.register("p1", stub_plugin_class("p1", capabilities=("contract-analysis", "offline")))
        await registry.register("p2", stub_plugin_class("p2"))

        assert [p["name"] for p in registry.find_by_capability("offline")] == ["p1"]
        assert len(registry.find_by_capability("contract-analysis")) == 2
        assert registry.find_by_capability("translation") == []
