"""Tool call value types, the tool boundary protocol, and an in-process
registry of ``@tool``-decorated functions."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class ToolCallRequest:
    """A tool invocation requested by the model.

    ``arguments`` is always a parsed mapping, never raw JSON text.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallResult:
    """Outcome of one :class:`ToolCallRequest`, matched by ``id``."""

    id: str
    name: str
    success: bool
    content: str
    error: str | None = None


@dataclass
class ToolOutput:
    """Explicit result shape a tool boundary may return instead of raising."""

    success: bool
    content: str = ""
    error: str | None = None


@runtime_checkable
class ToolExecutor(Protocol):
    """The external tool boundary.

    ``execute`` returns the tool's content (or a :class:`ToolOutput`) and
    raises on failure.  ``name in executor`` tells whether a tool exists.
    """

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        ...

    def __contains__(self, name: object) -> bool:
        ...


_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
    type(None): "null",
}


def _json_type(annotation) -> str:
    if isinstance(annotation, str):
        annotation = {
            "str": str, "int": int, "float": float, "bool": bool,
            "list": list, "dict": dict,
        }.get(annotation, annotation)
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(origin or annotation, "string")


_ARGS_HEADER = re.compile(r"^\s*(Args|Arguments|Parameters):\s*$")
_GOOGLE_PARAM = re.compile(r"^\s*(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_REST_PARAM = re.compile(r"^\s*:param\s+(?:\w+\s+)?(\w+)\s*:\s*(.*)$")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Pull per-parameter descriptions from a Google or reST docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}

    descriptions: dict[str, str] = {}
    lines = doc.splitlines()

    for line in lines:
        match = _REST_PARAM.match(line)
        if match:
            descriptions[match.group(1)] = match.group(2).strip()
    if descriptions:
        return descriptions

    in_args = False
    current: str | None = None
    indent: int | None = None
    for line in lines:
        if _ARGS_HEADER.match(line):
            in_args = True
            continue
        if not in_args:
            continue
        if not line.strip():
            current = None
            continue
        line_indent = len(line) - len(line.lstrip())
        if indent is None:
            indent = line_indent
        if line_indent < indent:
            break
        match = _GOOGLE_PARAM.match(line)
        if line_indent == indent and match:
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current is not None:
            descriptions[current] = f"{descriptions[current]} {line.strip()}".strip()
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """JSON schema for *func*'s parameters, plus the required names."""
    descriptions = _parse_param_descriptions(func)
    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in inspect.signature(func).parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = param.annotation
        properties[name] = {
            "type": (
                "string" if annotation is inspect.Parameter.empty
                else _json_type(annotation)
            ),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


class Tool:
    """A callable exposed to the model.

    Args:
        func: Sync or async function implementing the tool.
        name: Name the model calls the tool by.
        description: What the tool does, shown to the model.
        parameters_schema: JSON schema of the arguments.
    """

    def __init__(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        parameters_schema: dict | None = None,
    ):
        self.func = func
        self.name = name or func.__name__
        self.description = description if description is not None else (
            (inspect.getdoc(func) or "").split("\n\n")[0]
        )
        if parameters_schema is None:
            parameters_schema, _ = _build_parameters_schema(func)
        self.parameters_schema = parameters_schema

    def schema(self) -> dict:
        """Backend-neutral description: name, description, parameters."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }

    async def __call__(self, **kwargs) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(**kwargs)
        # Sync tools run off the event loop so timeouts stay enforceable.
        return await asyncio.to_thread(self.func, **kwargs)

    def __repr__(self) -> str:
        return f"Tool(name={self.name!r})"


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None):
    """Decorate a function as a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="lookup", description="...")``).
    """
    def wrap(f: Callable) -> Tool:
        return Tool(f, name=name, description=description)

    if func is not None:
        return wrap(func)
    return wrap


class ToolRegistry:
    """In-process :class:`ToolExecutor` over a set of :class:`Tool` objects."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, t: Tool) -> None:
        if t.name in self._tools:
            raise ValueError(f"Tool '{t.name}' is already registered")
        self._tools[t.name] = t

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [t.schema() for t in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        t = self._tools.get(name)
        if t is None:
            raise KeyError(f"tool '{name}' not found")
        logger.info(f"Calling {name} with {arguments}")
        return await t(**arguments)
