"""
Secret provider plugins.

Providers fetch raw secret payloads from external systems. Built-in
providers are ``http`` and ``file``; others are discovered via Python entry
points (group: 'secretsync.providers').
"""

from plugins.providers.base import SecretProvider

__all__ = ["SecretProvider"]
