"""
Schema Validation - JSON Schema validation of device specs.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

DEVICE_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["projectID", "facility", "plan", "hostname", "os"],
    "properties": {
        "projectID": {"type": "string", "minLength": 1},
        "facility": {"type": "string", "minLength": 1},
        "plan": {"type": "string", "minLength": 1},
        "hostname": {"type": "string", "minLength": 1},
        "os": {"type": "string", "minLength": 1},
        "billingCycle": {"type": "string"},
        "userData": {"type": "string"},
    },
    "additionalProperties": False,
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a spec against a JSON Schema.

    Args:
        spec: The device spec to validate
        schema: The Draft 7 JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = list(validator.iter_errors(spec))

        if not errors:
            return True, None

        # Collect all validation errors
        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def validate_device_spec(spec: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Validate a device spec payload."""
    return validate_spec_against_schema(spec, DEVICE_SPEC_SCHEMA)
