"""
Analysis plugins and their registry.
"""

from .base import ContractReport, PluginBehavior, check_plugin_contract
from .model_plugin import ModelBackedPlugin
from .registry import ActivePlugin, PluginRegistry
from .rule_based_plugin import RuleBasedPlugin

__all__ = [
    "ActivePlugin",
    "ContractReport",
    "ModelBackedPlugin",
    "PluginBehavior",
    "PluginRegistry",
    "RuleBasedPlugin",
    "check_plugin_contract",
]
