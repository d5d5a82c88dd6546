"""
Configuration package.

Exports the settings instance for easy importing.
"""

from src.config.settings import Settings, settings

__all__ = ["Settings", "settings"]
