# Support Engine - Main Package
"""
Conversation intelligence core for a customer-support chat platform.

This package provides:
- Text embeddings and vector similarity
- Retrieval of historical context (FAQ, cases, products, success patterns)
- Latent-need and sentiment extraction
- Escalation decisions and routing to human operators
- Learning from successful conversations
"""

__version__ = "0.1.0"
