"""Conversation analysis, retrieval, resolution and escalation services."""
