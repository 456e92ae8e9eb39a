"""Shared utilities: error taxonomy, retry policy and structured logging."""
