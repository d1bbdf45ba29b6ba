"""
Services package for the contract engine.

Inference backends, model lifecycle, configuration store, persistence,
retry helpers, metrics and result-format compatibility.
"""
