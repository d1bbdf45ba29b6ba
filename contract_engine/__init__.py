"""
Contract Engine.

Resilient model orchestration and multi-tier fallback contract analysis:
inference backend lifecycle, hot-swappable analysis plugins, a validated
configuration store and a fallback workflow that always returns a result.
"""

__version__ = "0.1.0"
