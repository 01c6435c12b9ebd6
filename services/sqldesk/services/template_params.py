"""Template parameter schemas, payload validation and placeholder substitution.

A template's ``params_schema`` maps each parameter name to a definition:

    {"table": {"name": "table", "type": "identifier", "required": true,
               "default": "orders", "constraints": {"pattern": "^t_"}}}

Definitions are checked against PARAMS_SCHEMA_META, and payloads are checked
against a JSON Schema compiled from the definitions. Both checks use
jsonschema's Draft 2020-12 validator.
"""

import re
from collections.abc import Mapping
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError as SchemaError

from sqldesk.errors import ValidationError

PROCEDURE_NAME_PLACEHOLDER = "procedureName"
PLACEHOLDER_RE = re.compile(r"\{\{([A-Za-z0-9_]+)\}\}")
IDENTIFIER_PATTERN = r"^[A-Za-z0-9_]+$"
PARAM_TYPES = ("identifier", "string", "number")

PARAMS_SCHEMA_META: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "propertyNames": {"pattern": IDENTIFIER_PATTERN},
    "additionalProperties": {
        "type": "object",
        "required": ["name", "type"],
        "properties": {
            "name": {"type": "string"},
            "type": {"enum": list(PARAM_TYPES)},
            "required": {"type": "boolean"},
            "description": {"type": "string"},
            "default": {},
            "constraints": {
                "type": "object",
                "properties": {
                    "min": {"type": "number"},
                    "max": {"type": "number"},
                    "pattern": {"type": "string"},
                    "options": {"type": "array", "items": {"type": "string"}},
                },
                "additionalProperties": False,
            },
        },
    },
}

_meta_validator = Draft202012Validator(PARAMS_SCHEMA_META)


def _path_key(error: SchemaError) -> list[str]:
    return [str(p) for p in error.path]


def _describe(error: SchemaError) -> str:
    path = ".".join(str(p) for p in error.absolute_path)
    return f"{path}: {error.message}" if path else error.message


def check_params_schema(params_schema: Any) -> list[str]:
    """Return every problem with a params_schema definition (empty if valid)."""
    errors = [
        _describe(e) for e in sorted(_meta_validator.iter_errors(params_schema), key=_path_key)
    ]
    if errors or not isinstance(params_schema, Mapping):
        return errors

    for key, definition in params_schema.items():
        if definition.get("name") != key:
            errors.append(f'Parameter definition key "{key}" must match its name property')
        pattern = definition.get("constraints", {}).get("pattern")
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as e:
                errors.append(f'Parameter "{key}" has an invalid pattern: {e}')
    return errors


def _property_schema(definition: Mapping[str, Any]) -> dict[str, Any]:
    constraints = definition.get("constraints") or {}
    param_type = definition["type"]

    if param_type == "number":
        schema: dict[str, Any] = {"type": "number"}
        if "min" in constraints:
            schema["minimum"] = constraints["min"]
        if "max" in constraints:
            schema["maximum"] = constraints["max"]
    else:
        schema = {"type": "string"}
        checks = []
        if param_type == "identifier":
            checks.append({"pattern": IDENTIFIER_PATTERN})
        if "pattern" in constraints:
            checks.append({"pattern": constraints["pattern"]})
        if checks:
            schema["allOf"] = checks

    if "options" in constraints:
        schema["enum"] = list(constraints["options"])
    if "description" in definition:
        schema["description"] = definition["description"]
    return schema


def compile_json_schema(params_schema: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    """Compile parameter definitions into a JSON Schema for payload validation."""
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "properties": {
            name: _property_schema(definition) for name, definition in params_schema.items()
        },
        "required": [
            name for name, definition in params_schema.items() if definition.get("required")
        ],
    }


def validate_params(
    params_schema: Mapping[str, Mapping[str, Any]] | None,
    params: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Validate a payload and return it with declared defaults filled in.

    Without a schema the payload is passed through unchecked.
    """
    if params is None:
        params = {}
    if not isinstance(params, Mapping):
        raise ValidationError("Template parameters must be an object")
    if not params_schema:
        return dict(params)

    validator = Draft202012Validator(compile_json_schema(params_schema))
    errors = sorted(validator.iter_errors(dict(params)), key=_path_key)
    if errors:
        raise ValidationError(
            "Template parameters are invalid", [_describe(e) for e in errors]
        )

    resolved = {
        name: definition["default"]
        for name, definition in params_schema.items()
        if "default" in definition and name not in params
    }
    resolved.update(params)
    return resolved


def extract_placeholders(sql_template: str) -> list[str]:
    """Distinct placeholder names in order of first appearance."""
    return list(dict.fromkeys(PLACEHOLDER_RE.findall(sql_template)))


def substitute(sql_template: str, procedure_name: str, params: Mapping[str, Any]) -> str:
    """Replace every ``{{placeholder}}``. Raises ValidationError if any has no value."""
    values = {**params, PROCEDURE_NAME_PLACEHOLDER: procedure_name}
    missing = [p for p in extract_placeholders(sql_template) if p not in values]
    if missing:
        raise ValidationError(
            "Template placeholders have no value",
            [f'No value for placeholder "{p}"' for p in missing],
        )
    return PLACEHOLDER_RE.sub(lambda m: str(values[m.group(1)]), sql_template)
