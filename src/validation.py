"""
Schema Validation - JSON Schema validation of secret spec definitions.

Provides functions to validate declarative secret spec files before they
are turned into SecretSpec objects.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

# Kubernetes-style name: lowercase alphanumeric and '-', max 63 chars
NAME_REGEX = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"

SECRET_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name", "namespace", "provider", "remoteKey"],
    "additionalProperties": False,
    "properties": {
        "name": {"type": "string", "pattern": NAME_REGEX},
        "namespace": {"type": "string", "pattern": NAME_REGEX},
        "provider": {"type": "string", "minLength": 1},
        "remoteKey": {"type": "string", "minLength": 1},
        "refreshInterval": {"type": "number", "exclusiveMinimum": 0},
        "keyMapping": {
            "type": "object",
            "additionalProperties": {"type": "string", "minLength": 1},
        },
    },
}

# Entries of a spec file may take their provider from ``defaults``;
# SecretSpec.from_dict checks the merged definition against SECRET_SPEC_SCHEMA.
SPEC_FILE_ENTRY_SCHEMA: Dict[str, Any] = dict(
    SECRET_SPEC_SCHEMA,
    required=[k for k in SECRET_SPEC_SCHEMA["required"] if k != "provider"],
)

SPEC_FILE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["secrets"],
    "additionalProperties": False,
    "properties": {
        "defaults": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "refreshInterval": {"type": "number", "exclusiveMinimum": 0},
                "provider": {"type": "string", "minLength": 1},
            },
        },
        "secrets": {"type": "array", "items": SPEC_FILE_ENTRY_SCHEMA},
    },
}


def _format_errors(validator: Draft7Validator, document: Any) -> Optional[str]:
    """Collect all validation errors into a single message, or None."""
    errors = sorted(
        validator.iter_errors(document), key=lambda e: [str(p) for p in e.path]
    )
    if not errors:
        return None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")
    return "; ".join(error_messages)


def validate_secret_definition(
    definition: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a single secret spec definition.

    Args:
        definition: One entry of the ``secrets`` list

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        message = _format_errors(Draft7Validator(SECRET_SPEC_SCHEMA), definition)
        return message is None, message
    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def validate_spec_file(document: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate a whole spec file document (``defaults`` plus ``secrets``).

    Args:
        document: The parsed YAML/JSON document

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        message = _format_errors(Draft7Validator(SPEC_FILE_SCHEMA), document)
        return message is None, message
    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
    except Exception as e:
        logger.error(f"Unexpected error during validation: {e}")
        return False, f"Validation failed: {str(e)}"
