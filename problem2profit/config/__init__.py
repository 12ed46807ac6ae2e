"""Configuration package for Problem2Profit."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
