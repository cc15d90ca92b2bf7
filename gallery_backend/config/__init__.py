"""Configuration module."""

from gallery_backend.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
