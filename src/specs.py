"""
Secret Specs - Declarative remote-to-local secret mappings.

A SecretSpec names a remote secret (provider + remote key), the local secret
it is materialized into (namespace + name), how often it is refreshed and
how remote JSON fields map onto local field names. Specs are loaded once at
startup into an immutable SpecRegistry.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import yaml

from errors import DuplicateSpecError, InvalidSpecError, MalformedSecretPayload
from validation import validate_secret_definition, validate_spec_file

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 60.0


def make_spec_id(namespace: str, name: str) -> str:
    """Build the registry id of a spec from its target namespace and name."""
    return f"{namespace}/{name}"


@dataclass(frozen=True)
class SecretSpec:
    """Declarative description of one remote-to-local secret mapping."""

    provider: str
    remote_key: str
    name: str
    namespace: str
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    key_mapping: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.refresh_interval <= 0:
            raise InvalidSpecError(
                f"refresh_interval must be positive, got {self.refresh_interval}",
                spec_id=self.id,
            )
        local_fields = [local for _, local in self.key_mapping]
        if len(local_fields) != len(set(local_fields)):
            raise InvalidSpecError(
                "key_mapping maps several remote fields onto the same local field",
                spec_id=self.id,
            )

    @property
    def id(self) -> str:
        return make_spec_id(self.namespace, self.name)

    @property
    def mapping(self) -> Dict[str, str]:
        """Key mapping as a ``remote_field -> local_field`` dict."""
        return dict(self.key_mapping)

    @classmethod
    def from_dict(
        cls,
        definition: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> "SecretSpec":
        """
        Build a spec from a declarative definition.

        Definitions use the camelCase keys of the spec file
        (``remoteKey``, ``refreshInterval``, ``keyMapping``). Missing
        ``provider`` and ``refreshInterval`` fall back to ``defaults``.

        Raises:
            InvalidSpecError: If the definition does not match the schema
        """
        defaults = defaults or {}
        merged = dict(definition)
        if "provider" not in merged and "provider" in defaults:
            merged["provider"] = defaults["provider"]

        is_valid, error = validate_secret_definition(merged)
        if not is_valid:
            name = definition.get("name", "<unnamed>")
            raise InvalidSpecError(f"Invalid secret spec '{name}': {error}")

        refresh_interval = merged.get(
            "refreshInterval",
            defaults.get("refreshInterval", DEFAULT_REFRESH_INTERVAL),
        )
        return cls(
            provider=merged["provider"],
            remote_key=merged["remoteKey"],
            name=merged["name"],
            namespace=merged["namespace"],
            refresh_interval=float(refresh_interval),
            key_mapping=tuple(merged.get("keyMapping", {}).items()),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back into the spec file representation."""
        return {
            "name": self.name,
            "namespace": self.namespace,
            "provider": self.provider,
            "remoteKey": self.remote_key,
            "refreshInterval": self.refresh_interval,
            "keyMapping": self.mapping,
        }


class SpecRegistry:
    """
    Immutable set of secret specs, keyed by ``namespace/name``.

    Built once from configuration; the reconciler never mutates it.
    """

    def __init__(self, specs: Optional[List[SecretSpec]] = None):
        self._specs: Dict[str, SecretSpec] = {}
        for spec in specs or []:
            if spec.id in self._specs:
                raise DuplicateSpecError(
                    f"Secret spec {spec.id} is declared more than once",
                    spec_id=spec.id,
                )
            self._specs[spec.id] = spec

    def __iter__(self) -> Iterator[SecretSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, spec_id: object) -> bool:
        return spec_id in self._specs

    def get(self, spec_id: str) -> Optional[SecretSpec]:
        return self._specs.get(spec_id)

    def ids(self) -> List[str]:
        return list(self._specs.keys())


def parse_spec_document(
    document: Any, default_refresh_interval: Optional[float] = None
) -> SpecRegistry:
    """
    Turn a parsed spec file into a SpecRegistry.

    A spec's own ``refreshInterval`` wins over the file's ``defaults``,
    which win over ``default_refresh_interval``.

    Raises:
        InvalidSpecError: If the document does not match the schema
        DuplicateSpecError: If two entries share a namespace and name
    """
    is_valid, error = validate_spec_file(document)
    if not is_valid:
        raise InvalidSpecError(f"Invalid secret spec file: {error}")

    defaults = dict(document.get("defaults", {}))
    if default_refresh_interval is not None:
        defaults.setdefault("refreshInterval", default_refresh_interval)
    specs = [SecretSpec.from_dict(entry, defaults) for entry in document["secrets"]]
    return SpecRegistry(specs)


def load_specs_file(
    path: Union[str, Path], default_refresh_interval: Optional[float] = None
) -> SpecRegistry:
    """
    Load a YAML (or JSON) spec file from disk.

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidSpecError: If the file cannot be parsed or validated
    """
    path = Path(path)
    with open(path, "r") as f:
        try:
            document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidSpecError(f"Cannot parse {path}: {e}")

    registry = parse_spec_document(
        document or {"secrets": []}, default_refresh_interval
    )
    logger.info(f"Loaded {len(registry)} secret spec(s) from {path}")
    return registry


def _encode_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def map_payload(spec: SecretSpec, payload: bytes) -> Dict[str, str]:
    """
    Map a fetched payload onto the spec's local fields.

    The payload must be a UTF-8 JSON object. With a key mapping, the result
    holds exactly the declared local fields; without one, every top-level
    field is passed through.

    Raises:
        MalformedSecretPayload: If the payload is not a JSON object or a
            mapped remote field is missing
    """
    try:
        document = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedSecretPayload(
            f"Payload for {spec.id} is not valid JSON: {e}", spec_id=spec.id
        )

    if not isinstance(document, dict):
        raise MalformedSecretPayload(
            f"Payload for {spec.id} must be a JSON object, "
            f"got {type(document).__name__}",
            spec_id=spec.id,
        )

    if not spec.key_mapping:
        return {str(key): _encode_value(value) for key, value in document.items()}

    missing = [remote for remote, _ in spec.key_mapping if remote not in document]
    if missing:
        raise MalformedSecretPayload(
            f"Payload for {spec.id} is missing field(s): {', '.join(missing)}",
            spec_id=spec.id,
        )

    return {
        local: _encode_value(document[remote]) for remote, local in spec.key_mapping
    }


def content_hash(data: Dict[str, str]) -> str:
    """Calculate the hash of local secret content for change detection."""
    content_string = json.dumps(data, sort_keys=True)
    return hashlib.sha256(content_string.encode()).hexdigest()
