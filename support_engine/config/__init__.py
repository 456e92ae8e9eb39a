"""Configuration package."""

from support_engine.config.settings import Config, config

__all__ = ["Config", "config"]
