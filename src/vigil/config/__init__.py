"""Configuration management for vigil."""

from vigil.config.ignore_endpoints import IgnoreEndpoints, IgnoreRule, load_ignore_endpoints
from vigil.config.secrets import SecretsMatcher
from vigil.config.settings import VigilSettings, get_settings

__all__ = [
    "IgnoreEndpoints",
    "IgnoreRule",
    "SecretsMatcher",
    "VigilSettings",
    "get_settings",
    "load_ignore_endpoints",
]
