"""
Local Secret Store - Interface and in-memory backend.

The reconciler only mutates local secrets through a compare-and-swap
``put``: a write is accepted only if the target's current content hash
matches the hash the writer last observed.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from errors import WriteConflict
from specs import content_hash, make_spec_id

logger = logging.getLogger(__name__)


@dataclass
class LocalSecret:
    """Materialized key/value bundle, tagged with the hash it was derived from."""

    name: str
    namespace: str
    data: Dict[str, str] = field(default_factory=dict)
    content_hash: str = ""

    @property
    def id(self) -> str:
        return make_spec_id(self.namespace, self.name)


class LocalSecretStore(ABC):
    """
    Abstract base class for local secret stores.

    Implementations must make ``put`` atomic: readers see either the
    previous content or the new content, never a mix of both.
    """

    @abstractmethod
    async def get(self, name: str, namespace: str) -> Optional[LocalSecret]:
        """
        Read a local secret.

        Args:
            name: Secret name
            namespace: Secret namespace

        Returns:
            The LocalSecret, or None if it does not exist
        """
        pass

    @abstractmethod
    async def put(
        self,
        name: str,
        namespace: str,
        data: Dict[str, str],
        expected_previous_hash: Optional[str],
    ) -> str:
        """
        Compare-and-swap write of a local secret.

        Args:
            name: Secret name
            namespace: Secret namespace
            data: New key/value content
            expected_previous_hash: Hash the caller last observed, or None
                if the caller expects the secret not to exist

        Returns:
            The content hash of the newly written secret

        Raises:
            WriteConflict: If the current hash differs from the expected one
            StoreUnavailable: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def delete(self, name: str, namespace: str) -> bool:
        """
        Delete a local secret.

        Returns:
            True if a secret was deleted, False if none existed
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class InMemorySecretStore(LocalSecretStore):
    """
    Process-local store backed by a dict.

    Each write replaces the whole LocalSecret object under a lock, so a
    reader never observes partially written content. ``write_count`` counts
    committed writes.
    """

    def __init__(self):
        self._secrets: Dict[Tuple[str, str], LocalSecret] = {}
        self._lock = asyncio.Lock()
        self.write_count = 0

    async def get(self, name: str, namespace: str) -> Optional[LocalSecret]:
        secret = self._secrets.get((namespace, name))
        return copy.deepcopy(secret) if secret is not None else None

    async def put(
        self,
        name: str,
        namespace: str,
        data: Dict[str, str],
        expected_previous_hash: Optional[str],
    ) -> str:
        async with self._lock:
            current = self._secrets.get((namespace, name))
            current_hash = current.content_hash if current is not None else None
            if current_hash != expected_previous_hash:
                raise WriteConflict(
                    f"Local secret {namespace}/{name} changed concurrently "
                    f"(expected {expected_previous_hash}, found {current_hash})",
                    spec_id=make_spec_id(namespace, name),
                )

            new_hash = content_hash(data)
            self._secrets[(namespace, name)] = LocalSecret(
                name=name,
                namespace=namespace,
                data=dict(data),
                content_hash=new_hash,
            )
            self.write_count += 1

        logger.debug(f"Wrote local secret {namespace}/{name} ({new_hash[:12]})")
        return new_hash

    async def delete(self, name: str, namespace: str) -> bool:
        async with self._lock:
            return self._secrets.pop((namespace, name), None) is not None
