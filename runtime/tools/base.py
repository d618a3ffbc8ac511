"""Tool base utilities — parameter binding for sqlgate tools."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

import jsonschema

from contracts.errors import ParameterError
from contracts.tool_sdk import BaseTool, ParamValue, ParamValues


def validate_args(tool: BaseTool, args: Mapping[str, Any]) -> None:
    """Validate *args* against the tool's input_schema.

    Raises ``ParameterError`` on invalid input.
    """
    schema = tool.definition().input_schema
    try:
        jsonschema.validate(instance=dict(args), schema=schema)
    except jsonschema.ValidationError as exc:
        where = ".".join(str(p) for p in exc.absolute_path)
        prefix = f"Parameter '{where}': " if where else ""
        raise ParameterError(f"{prefix}{exc.message}") from exc


def bind_params(
    tool: BaseTool, params: ParamValues | Mapping[str, Any] | Iterable[ParamValue]
) -> dict[str, Any]:
    """Resolve ordered parameter values against the tool's declared schema.

    Returns the validated values with schema defaults filled in.
    """
    values = ParamValues.coerce(params)
    names = values.names()
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ParameterError(f"Parameters given more than once: {', '.join(duplicates)}")

    args = values.as_map()
    validate_args(tool, args)

    properties = tool.definition().input_schema.get("properties", {})
    for name, prop in properties.items():
        if name not in args and "default" in prop:
            args[name] = prop["default"]
    return args
