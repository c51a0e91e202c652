import inspect
from typing import Any, Callable

from pydantic import BaseModel, Field


class FunctionParameters(BaseModel):
    type: str = "object"
    properties: dict[str, dict[str, Any]] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class FunctionDefinition(BaseModel):
    name: str
    description: str = ""
    parameters: FunctionParameters = Field(default_factory=FunctionParameters)


class ToolDefinition(BaseModel):
    """JSON-schema function declaration sent with a chat request.

    Tool definitions are only forwarded to the provider; the calls the model
    makes come back as :class:`~coderelay.streaming.AccumulatedToolCall`
    objects for the host application to run.
    """

    type: str = "function"
    function: FunctionDefinition


_JSON_TYPES = {
    'str': 'string',
    'int': 'number',
    'float': 'number',
    'bool': 'boolean',
    'NoneType': 'null',
    'dict': 'object',
    'list': 'array',
    'tuple': 'array',  # closest equivalent
    'set': 'array',    # closest equivalent
}


def normalize_to_json_type(annotation) -> str:
    name = getattr(annotation, "__name__", str(annotation))
    return _JSON_TYPES.get(name, 'string')


def tool_from_function(func: Callable, descriptions: dict[str, str] | None = None) -> ToolDefinition:
    """Build a :class:`ToolDefinition` from a Python signature.

    Parameters without a default are required. Unannotated parameters are
    declared as strings.
    """
    descriptions = descriptions or {}
    properties = {}
    required = []
    for name, param in inspect.signature(func).parameters.items():
        properties[name] = {
            "type": normalize_to_json_type(param.annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)

    return ToolDefinition(
        function=FunctionDefinition(
            name=func.__name__,
            description=inspect.getdoc(func) or "",
            parameters=FunctionParameters(properties=properties, required=required),
        )
    )


def dump_tools(tools: list) -> list[dict]:
    """Serialise a mix of :class:`ToolDefinition` objects and plain dicts."""
    return [
        t.model_dump(exclude_none=True) if isinstance(t, ToolDefinition) else dict(t)
        for t in tools
    ]
