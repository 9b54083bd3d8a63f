"""Core components for Convert Engine."""

from convert_engine.core.config import Settings, settings

__all__ = ["Settings", "settings"]
