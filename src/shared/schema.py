"""JSON Schema utilities for tool input schemas."""

from typing import Any

from jsonschema import Draft7Validator


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(data))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def required_parameters(schema: dict[str, Any]) -> list[str]:
    """Required property names in declared order, without duplicates."""
    seen: list[str] = []
    for name in schema.get("required") or []:
        name = str(name)
        if name not in seen:
            seen.append(name)
    return seen


def parameter_descriptions(schema: dict[str, Any]) -> dict[str, str]:
    """Map property name to its description, skipping undocumented properties."""
    descriptions = {}
    for name, prop in (schema.get("properties") or {}).items():
        if isinstance(prop, dict) and prop.get("description"):
            descriptions[name] = str(prop["description"])
    return descriptions


def object_schema(
    properties: dict[str, dict[str, Any]],
    required: list[str] | None = None
) -> dict[str, Any]:
    """
    Create an object JSON Schema.

    Args:
        properties: Property name to property schema
        required: Required property names; defaults to every property
            without a default value

    Returns:
        JSON Schema dictionary
    """
    if required is None:
        required = [name for name, prop in properties.items() if "default" not in prop]

    return {
        "type": "object",
        "properties": properties,
        "required": required,
    }
