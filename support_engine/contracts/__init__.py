"""Interfaces to collaborators owned by the host platform."""
