"""Shared helpers: structured logging, request context, timing and pure transforms."""
