"""
Toolgate Argument Schemas

Synthesizes pydantic argument models from flat dynamic tool parameter
lists and validates model-supplied arguments against any tool's model.

Type mapping (strict, so ``"5"`` is not accepted for a number):
    string  -> StrictStr
    number  -> StrictInt | StrictFloat
    boolean -> StrictBool

Unsupported types are dropped with a warning. Optional parameters
without a default are optional and absent values are omitted on
serialization; parameters with a default are pre-filled.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, ValidationError, create_model

from toolgate.exceptions import SchemaMismatchError
from toolgate.logging import get_logger
from toolgate.tools.models import ToolParameter

logger = get_logger("toolgate.tools.schema")

SUPPORTED_TYPES: dict[str, Any] = {
    "string": StrictStr,
    "number": Union[StrictInt, StrictFloat],
    "boolean": StrictBool,
}


class ArgumentModel(BaseModel):
    """Base for synthesized argument models. Unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore")

    def to_arguments(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def supported_parameters(tool_name: str, parameters: list[ToolParameter]) -> list[ToolParameter]:
    """Drop parameters whose declared type cannot be validated."""
    kept = []
    for param in parameters:
        if param.type.lower() in SUPPORTED_TYPES:
            kept.append(param)
        else:
            logger.warning(
                f"Dropping parameter '{param.name}' with unsupported type '{param.type}'",
                extra={"tool_name": tool_name},
            )
    return kept


def build_argument_model(tool_name: str, parameters: list[ToolParameter]) -> type[ArgumentModel]:
    """Create a pydantic model validating the declared parameters.

    Field names are positional (``p0``, ``p1``, ...) with the declared
    name as alias, so a parameter called ``json`` or ``model_config``
    cannot collide with BaseModel attributes.
    """
    fields: dict[str, Any] = {}
    for index, param in enumerate(supported_parameters(tool_name, parameters)):
        annotation = SUPPORTED_TYPES[param.type.lower()]
        if param.required and not param.has_default:
            fields[f"p{index}"] = (annotation, Field(alias=param.name, description=param.description))
        elif param.has_default:
            fields[f"p{index}"] = (annotation, Field(default=param.default, alias=param.name, description=param.description))
        else:
            fields[f"p{index}"] = (Optional[annotation], Field(default=None, alias=param.name, description=param.description))

    model_name = "".join(part.capitalize() for part in tool_name.replace("-", "_").split("_")) or "Dynamic"
    return create_model(f"{model_name}Arguments", __base__=ArgumentModel, **fields)


def build_input_schema(tool_name: str, parameters: list[ToolParameter]) -> dict[str, Any]:
    """JSON schema advertised to the model for a flat parameter list."""
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param in supported_parameters(tool_name, parameters):
        prop: dict[str, Any] = {"type": param.type.lower()}
        if param.description:
            prop["description"] = param.description
        if param.has_default:
            prop["default"] = param.default
        properties[param.name] = prop
        if param.required and not param.has_default:
            required.append(param.name)
    return {"type": "object", "properties": properties, "required": required}


def validate_arguments(tool_name: str, model: type[BaseModel], raw: dict[str, Any] | str) -> BaseModel:
    """Validate raw model output against `model`.

    `raw` may be a dict or an unparsed JSON string.

    Raises:
        SchemaMismatchError: the arguments are not a JSON object or fail
            validation.
    """
    if isinstance(raw, str):
        if not raw.strip():
            raw = {}
        else:
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise SchemaMismatchError(tool_name, f"arguments are not valid JSON ({e.msg})") from e
    if not isinstance(raw, dict):
        raise SchemaMismatchError(tool_name, f"arguments must be a JSON object, got {type(raw).__name__}")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise SchemaMismatchError(tool_name, e.errors(include_url=False, include_context=False)) from e
