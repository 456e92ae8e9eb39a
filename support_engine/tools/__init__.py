"""Clients for embeddings, vector storage, notifications and completions."""
