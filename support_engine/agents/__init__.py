"""Top-level coordination of the engine components."""

from support_engine.agents.orchestrator import SupportOrchestrator

__all__ = ["SupportOrchestrator"]
