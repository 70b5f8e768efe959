"""
Tool Registry for the devtools MCP server

Tools are declared through an explicit table of ToolDefinition entries. The
extractor checks every declared parameter schema against the handler's
signature and turns the definition into an immutable ToolDescriptor; the
registry merges descriptors from all active provider groups exactly once
and is read-only afterwards.

Key Features:
- Declarative tool registration (no signature-driven discovery)
- Per-tool extraction failures exclude only that tool
- Duplicate names across active groups fail assembly
- Wire representation computed once and shared by every session
"""

import copy
import inspect
import re
import types
import typing
from collections.abc import Mapping as AbcMapping, Sequence as AbcSequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel

from common.logging import get_logger
from .errors import AssemblyError, ToolExtractionError

logger = get_logger(__name__)

TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")

# Keyword under which a ToolContext is passed to handlers that ask for one
CONTEXT_PARAMETER = "context"


class ToolParameterType(str, Enum):
    """Standard parameter types for tools."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


# Python annotations accepted for each declared parameter type
_ANNOTATION_TYPES: Dict[ToolParameterType, Tuple[type, ...]] = {
    ToolParameterType.STRING: (str,),
    ToolParameterType.INTEGER: (int,),
    ToolParameterType.NUMBER: (float, int),
    ToolParameterType.BOOLEAN: (bool,),
    ToolParameterType.ARRAY: (list, tuple, AbcSequence),
    ToolParameterType.OBJECT: (dict, AbcMapping),
}


class ToolParameter(BaseModel):
    """Declared tool parameter."""

    model_config = {"frozen": True}

    name: str
    type: ToolParameterType
    description: str = ""
    required: bool = False
    enum: Optional[List[Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "required": self.required,
            "description": self.description,
        }


@dataclass
class ToolDefinition:
    """One row of a provider group's declarative tool table."""

    name: str
    description: str
    handler: Callable[..., Any]
    parameters: List[ToolParameter] = field(default_factory=list)
    uses_context: bool = False


@dataclass(frozen=True)
class ToolDescriptor:
    """Immutable, validated description of a callable tool."""

    name: str
    description: str
    parameters: Tuple[ToolParameter, ...]
    handler: Callable[..., Any]
    group: str
    uses_context: bool = False
    is_async: bool = False

    def parameter(self, name: str) -> Optional[ToolParameter]:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def input_schema(self) -> Dict[str, Any]:
        """Convert tool parameters to JSON Schema format."""
        properties: Dict[str, Any] = {}
        required: List[str] = []

        for param in self.parameters:
            prop_schema: Dict[str, Any] = {"type": param.type.value}
            if param.description:
                prop_schema["description"] = param.description
            if param.enum:
                prop_schema["enum"] = list(param.enum)

            properties[param.name] = prop_schema
            if param.required:
                required.append(param.name)

        return {"type": "object", "properties": properties, "required": required}

    def to_wire(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": [param.to_wire() for param in self.parameters],
            "inputSchema": self.input_schema(),
        }


def _unwrap_optional(annotation: Any) -> Any:
    if typing.get_origin(annotation) in (Union, types.UnionType):
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _annotation_matches(param: ToolParameter, annotation: Any) -> bool:
    """Check a handler annotation against a declared type; unknown annotations pass."""
    if annotation is inspect.Parameter.empty or annotation is Any or isinstance(annotation, str):
        return True

    annotation = _unwrap_optional(annotation)
    origin = typing.get_origin(annotation) or annotation
    if not isinstance(origin, type):
        return True

    # bool is an int subclass; do not let it satisfy integer or number
    if origin is bool and param.type is not ToolParameterType.BOOLEAN:
        return False
    if origin is str and param.type is not ToolParameterType.STRING:
        return False

    return any(
        origin is expected or issubclass(origin, expected)
        for expected in _ANNOTATION_TYPES[param.type]
    )


def extract_descriptor(definition: ToolDefinition, group: str) -> ToolDescriptor:
    """
    Validate one tool definition against its handler and build its descriptor.

    Raises:
        ToolExtractionError: If the definition cannot be matched to the handler
    """
    name = definition.name
    if not isinstance(name, str) or not TOOL_NAME_PATTERN.match(name):
        raise ToolExtractionError(str(name), "invalid tool name")
    if not definition.description:
        raise ToolExtractionError(name, "missing description")
    if not callable(definition.handler):
        raise ToolExtractionError(name, "handler is not callable")

    try:
        signature = inspect.signature(definition.handler)
    except (TypeError, ValueError) as e:
        raise ToolExtractionError(name, f"cannot inspect handler: {e}") from e

    handler_params = dict(signature.parameters)
    accepts_var_kwargs = any(
        p.kind is inspect.Parameter.VAR_KEYWORD for p in handler_params.values()
    )

    if definition.uses_context:
        if CONTEXT_PARAMETER not in handler_params and not accepts_var_kwargs:
            raise ToolExtractionError(name, "handler does not accept a context argument")
        handler_params.pop(CONTEXT_PARAMETER, None)

    declared = [param.name for param in definition.parameters]
    if len(declared) != len(set(declared)):
        raise ToolExtractionError(name, "duplicate parameter names")

    for param in definition.parameters:
        if param.name == CONTEXT_PARAMETER:
            raise ToolExtractionError(name, f"'{CONTEXT_PARAMETER}' is a reserved parameter name")

        handler_param = handler_params.get(param.name)
        if handler_param is None:
            if accepts_var_kwargs:
                continue
            raise ToolExtractionError(name, f"handler has no parameter '{param.name}'")

        if handler_param.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.VAR_POSITIONAL,
        ):
            raise ToolExtractionError(name, f"parameter '{param.name}' cannot be passed by name")

        if not param.required and handler_param.default is inspect.Parameter.empty:
            raise ToolExtractionError(
                name, f"optional parameter '{param.name}' has no default in the handler"
            )

        if not _annotation_matches(param, handler_param.annotation):
            raise ToolExtractionError(
                name,
                f"parameter '{param.name}' declared as {param.type.value} "
                f"but annotated {handler_param.annotation!r}",
            )

    for param_name, handler_param in handler_params.items():
        if handler_param.kind in (
            inspect.Parameter.VAR_KEYWORD,
            inspect.Parameter.VAR_POSITIONAL,
        ):
            continue
        if handler_param.default is inspect.Parameter.empty and param_name not in declared:
            raise ToolExtractionError(
                name, f"handler argument '{param_name}' is required but not declared"
            )

    return ToolDescriptor(
        name=name,
        description=definition.description,
        parameters=tuple(definition.parameters),
        handler=definition.handler,
        group=group,
        uses_context=definition.uses_context,
        is_async=inspect.iscoroutinefunction(definition.handler),
    )


def extract_descriptors(definitions: Iterable[ToolDefinition], group: str) -> List[ToolDescriptor]:
    """Extract descriptors for a group, logging and skipping tools that fail."""
    descriptors = []

    for definition in definitions:
        try:
            descriptors.append(extract_descriptor(definition, group))
        except ToolExtractionError as e:
            logger.error(
                event="tool_extraction_failed",
                group=group,
                tool_name=e.tool_name,
                reason=e.reason,
            )

    return descriptors


class ToolRegistry:
    """
    Read-only table of active tools.

    Built once before the listener starts and shared by all sessions
    without locking.
    """

    def __init__(self, descriptors: Iterable[ToolDescriptor]):
        tools: Dict[str, ToolDescriptor] = {}

        for descriptor in descriptors:
            existing = tools.get(descriptor.name)
            if existing is not None:
                raise AssemblyError(
                    f"Tool name '{descriptor.name}' is declared by both "
                    f"'{existing.group}' and '{descriptor.group}'"
                )
            tools[descriptor.name] = descriptor

        self._tools = MappingProxyType(tools)
        self._wire = tuple(descriptor.to_wire() for descriptor in tools.values())

        logger.info(
            event="tool_registry_assembled",
            tools_count=len(tools),
            tool_names=list(tools),
        )

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, tool_name: str) -> Optional[ToolDescriptor]:
        """Get a specific tool descriptor."""
        return self._tools.get(tool_name)

    def list_tools(self) -> List[ToolDescriptor]:
        """List all registered tools in assembly order."""
        return list(self._tools.values())

    def to_wire(self) -> List[Dict[str, Any]]:
        """Wire form of every tool; a fresh copy so callers cannot mutate the registry."""
        return copy.deepcopy(list(self._wire))

    def groups(self) -> List[str]:
        """Names of the provider groups that contributed at least one tool."""
        seen: Dict[str, None] = {}
        for descriptor in self._tools.values():
            seen.setdefault(descriptor.group, None)
        return list(seen)
