"""JSON-Schema sanitization for backends with a restricted schema dialect.

Gemini's function declarations are protobuf-backed: no type unions, no
oneOf/anyOf, and unknown keywords are rejected.
"""

from __future__ import annotations

from typing import Any

_PASSTHROUGH_KEYS = ("description", "enum", "required")


def sanitize_schema(schema: Any) -> Any:
    """Reduce a JSON schema to the subset Gemini accepts.

    - ``type: [a, b]`` collapses to ``a`` (``string`` when the list is empty)
    - ``oneOf`` / ``anyOf`` collapse to their first option
    - properties and items are cleaned recursively
    - every other keyword is dropped
    """
    if not isinstance(schema, dict):
        return schema

    options = schema.get("oneOf") or schema.get("anyOf")
    if isinstance(options, list) and options:
        return sanitize_schema(options[0])

    cleaned: dict[str, Any] = {}

    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        non_null = [t for t in schema_type if t != "null"]
        cleaned["type"] = (non_null or schema_type or ["string"])[0]
    elif schema_type:
        cleaned["type"] = schema_type

    for key in _PASSTHROUGH_KEYS:
        if schema.get(key):
            cleaned[key] = schema[key]

    properties = schema.get("properties")
    if isinstance(properties, dict):
        cleaned["properties"] = {
            name: sanitize_schema(value) for name, value in properties.items()
        }

    if "items" in schema:
        cleaned["items"] = sanitize_schema(schema["items"])

    return cleaned
