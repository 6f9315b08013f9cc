"""
Configuration module.

Provides:
- Environment-driven runtime settings
- YAML taxonomy loading with environment variable substitution
"""

from .loader import ConfigLoader, load_rule_set
from .settings import Settings, get_settings

__all__ = ["ConfigLoader", "load_rule_set", "Settings", "get_settings"]
