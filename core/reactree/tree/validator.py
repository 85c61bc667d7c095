"""Leaf output validation against the JSON schema a node declares."""

from typing import Any

import jsonschema


def validate_output(output: Any, schema: dict[str, Any]) -> list[str]:
    """
    Validate an executor's output against ``schema`` (JSON Schema draft 7).

    Returns one ``path: message`` string per violation, empty when the output
    conforms.
    """
    validator = jsonschema.Draft7Validator(schema)
    errors = []
    for error in validator.iter_errors(output):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")
    return errors


def check_schema(schema: dict[str, Any]) -> list[str]:
    """Problems with the schema itself, reported at plan time."""
    try:
        jsonschema.Draft7Validator.check_schema(schema)
    except jsonschema.SchemaError as e:
        return [e.message]
    return []
