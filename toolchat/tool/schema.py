"""
Validate tool arguments against a tool's declared JSON input schema.

The schema's top-level ``properties``/``required`` are turned into a strict
pydantic model; nested objects and arrays are checked for shape only.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    create_model,
)

from toolchat.errors import SchemaMismatch

_JSON_TYPES: Dict[str, Any] = {
    "string": StrictStr,
    "integer": StrictInt,
    "number": Union[StrictInt, StrictFloat],
    "boolean": StrictBool,
    "array": List[Any],
    "object": Dict[str, Any],
    "null": type(None),
}


def _annotation(prop: Dict[str, Any]) -> Any:
    declared = prop.get("type")
    if isinstance(declared, list):
        options = tuple(_JSON_TYPES[t] for t in declared if t in _JSON_TYPES)
        if not options:
            return Any
        return Union[options] if len(options) > 1 else options[0]
    if isinstance(declared, str) and declared in _JSON_TYPES:
        return _JSON_TYPES[declared]
    return Any


def _model_for(schema: Dict[str, Any]) -> Optional[type[BaseModel]]:
    if not schema or schema.get("type", "object") != "object":
        return None
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])

    # Property names are arbitrary strings, so fields are keyed by position and aliased
    fields: Dict[str, Tuple[Any, Any]] = {}
    for i, (name, prop) in enumerate(properties.items()):
        annotation = _annotation(prop if isinstance(prop, dict) else {})
        if name in required:
            fields[f"field_{i}"] = (annotation, Field(..., alias=name))
        else:
            fields[f"field_{i}"] = (Optional[annotation], Field(None, alias=name))

    extra = "forbid" if schema.get("additionalProperties") is False else "allow"
    return create_model(
        "ToolArguments",
        __config__=ConfigDict(extra=extra),
        **fields,
    )


def validate_arguments(server_name: str, tool_name: str, schema: Dict[str, Any], arguments: Any) -> Dict[str, Any]:
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise SchemaMismatch(server_name, tool_name, "arguments must be an object")

    model = _model_for(schema)
    if model is None:
        return arguments
    try:
        model.model_validate(arguments)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise SchemaMismatch(server_name, tool_name, problems) from e
    return arguments
