"""Validate caller parameters against a derived input schema."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError as JsonSchemaValidationError

from .errors import InputValidationError


logger = logging.getLogger(__name__)


def validate_params(schema: Dict[str, Any], params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return the validated parameters or raise ``InputValidationError``.

    Each error is a ``{"path", "message"}`` pair; ``path`` is the top-level
    property name (or a ``/``-joined pointer for nested values).
    """
    if not schema.get("properties") and not params:
        return {}

    instance: Any = {} if params is None else params
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors: List[Dict[str, str]] = []
    reported_missing: Set[str] = set()
    for error in validator.iter_errors(instance):
        errors.append(_to_error(error, reported_missing))

    if errors:
        logger.info("Input validation failed with %s error(s)", len(errors))
        raise InputValidationError(errors)
    return dict(instance)


def _to_error(error: JsonSchemaValidationError, reported_missing: Set[str]) -> Dict[str, str]:
    return {"path": _error_path(error, reported_missing), "message": error.message}


def _error_path(error: JsonSchemaValidationError, reported_missing: Set[str]) -> str:
    if error.absolute_path:
        return "/".join(str(part) for part in error.absolute_path)
    if error.validator == "required" and isinstance(error.instance, dict):
        # One error per missing property, in the order of the "required" list.
        for name in error.validator_value:
            if name not in error.instance and name not in reported_missing:
                reported_missing.add(name)
                return name
    return "/"
