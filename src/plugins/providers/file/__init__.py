"""
File Secret Provider.

Reads secrets from files under a root directory (mounted volumes, CSI).
"""

from plugins.providers.file.provider import FileSecretProvider

__all__ = ["FileSecretProvider"]
