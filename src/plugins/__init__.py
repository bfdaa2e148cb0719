"""
Plugin system for the secret sync operator.

This package provides the plugin architecture for secret providers.
"""

from plugins.providers.base import SecretProvider
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "SecretProvider",
    "PluginRegistry",
    "get_registry",
]
