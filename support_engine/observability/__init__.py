"""Prometheus metrics for the engine."""
