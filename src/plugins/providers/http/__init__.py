"""
HTTP Secret Provider.

Fetches secrets from an HTTP secret service (Vault-style KV endpoints).
"""

from plugins.providers.http.provider import HTTPSecretProvider

__all__ = ["HTTPSecretProvider"]
