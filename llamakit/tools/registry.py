"""
llamakit :: Tool Registry

Immutable name -> ToolSpec mapping built once, before the session starts.
Each tool's arguments are described by a pydantic model generated from the
handler's signature, with parameter descriptions taken from its docstring:

    @tool
    def get_weather(city: str, unit: Unit = Unit.CELSIUS) -> dict:
        '''Current weather for a city.

        Args:
            city: city name
            unit: temperature unit
        '''

    tools = ToolRegistryBuilder().add(get_weather).build()

The JSON schema shown to the model comes from that model (arrays carry
their items, enums and Literals their values, nested models their
properties), and incoming arguments are validated and converted through
it before the handler runs. Handlers may be plain or coroutine functions.

INL - 2025
"""

import asyncio
import inspect
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Type, get_type_hints

from pydantic import BaseModel, ConfigDict, Field, PydanticUserError, ValidationError, create_model

from llamakit.errors import ConfigurationError, ToolArgumentError


TOOL_MARKER = "__llamakit_tool__"


# =========================================================================
# Schema
# =========================================================================

def _strip_titles(node: Any) -> Any:
    """Drop pydantic's generated titles; names under properties/$defs are kept."""
    if isinstance(node, list):
        return [_strip_titles(item) for item in node]
    if not isinstance(node, dict):
        return node
    out = {}
    for key, value in node.items():
        if key == "title" and isinstance(value, str):
            continue
        if key in ("properties", "$defs") and isinstance(value, dict):
            out[key] = {name: _strip_titles(sub) for name, sub in value.items()}
        else:
            out[key] = _strip_titles(value)
    return out


def _inline_refs(node: Any, defs: Dict[str, Any], stack: Tuple[str, ...] = ()) -> Tuple[Any, bool]:
    """
    Replace "#/$defs/X" references by their definitions.
    Returns (node, unresolved): self-referencing models keep their $ref.
    """
    if isinstance(node, list):
        items = [_inline_refs(item, defs, stack) for item in node]
        return [i for i, _ in items], any(u for _, u in items)
    if not isinstance(node, dict):
        return node, False

    ref = node.get("$ref")
    if isinstance(ref, str) and ref.startswith("#/$defs/"):
        name = ref[len("#/$defs/"):]
        if name in stack or name not in defs:
            return node, True
        resolved, unresolved = _inline_refs(defs[name], defs, stack + (name,))
        siblings = {k: v for k, v in node.items() if k != "$ref"}
        siblings, sib_unresolved = _inline_refs(siblings, defs, stack)
        return {**resolved, **siblings}, unresolved or sib_unresolved

    out, unresolved = {}, False
    for key, value in node.items():
        out[key], u = _inline_refs(value, defs, stack)
        unresolved = unresolved or u
    return out, unresolved


def arguments_json_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    """JSON schema of an arguments model, self-contained where possible."""
    schema = _strip_titles(model.model_json_schema())
    defs = schema.pop("$defs", {})
    schema, unresolved = _inline_refs(schema, defs)
    if unresolved:
        schema["$defs"] = defs
    return schema


@dataclass(frozen=True)
class ToolParameter:
    name: str
    annotation: Any = str
    description: str = ""
    required: bool = True


@dataclass(frozen=True)
class ToolSchema:
    name: str
    description: str
    arguments: Type[BaseModel] = field(compare=False)
    parameters_schema: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def parameters(self) -> Tuple[ToolParameter, ...]:
        return tuple(
            ToolParameter(
                name=pname,
                annotation=info.annotation,
                description=info.description or "",
                required=info.is_required(),
            )
            for pname, info in self.arguments.model_fields.items()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }


def _describe_error(error: Dict[str, Any]) -> str:
    where = ".".join(str(p) for p in error.get("loc", ())) or "arguments"
    kind = error.get("type")
    if kind == "missing":
        return f"missing required argument '{where}'"
    if kind == "extra_forbidden":
        return f"unexpected argument '{where}'"
    return f"argument '{where}': {error.get('msg', 'invalid value')}"


@dataclass(frozen=True)
class ToolSpec:
    """A callable tool: handler + schema."""
    schema: ToolSchema
    handler: Callable[..., Any] = field(compare=False)

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def bind(self, arguments: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate and convert arguments through the tool's arguments model.
        Only the arguments the model passed are returned, so handler
        defaults still apply. Raises ToolArgumentError.
        """
        if not isinstance(arguments, Mapping):
            raise ToolArgumentError(self.name, f"arguments must be an object, got {type(arguments).__name__}")
        model = self.schema.arguments
        try:
            validated = model.model_validate(dict(arguments))
        except ValidationError as e:
            raise ToolArgumentError(self.name, "; ".join(_describe_error(err) for err in e.errors())) from e
        passed = validated.model_fields_set
        return {pname: getattr(validated, pname) for pname in model.model_fields if pname in passed}

    async def invoke(self, arguments: Mapping[str, Any]) -> Any:
        """Call the handler. Sync handlers run in a worker thread."""
        kwargs = self.bind(arguments)
        if self.is_async:
            return await self.handler(**kwargs)
        return await asyncio.to_thread(self.handler, **kwargs)


# =========================================================================
# Schema extraction
# =========================================================================

_ARGS_HEADER = re.compile(r"^\s*(Args|Arguments|Parameters):\s*$")
_GOOGLE_PARAM = re.compile(r"^\s+(\w+)(?:\s*\([^)]*\))?:\s*(.*)$")
_SPHINX_PARAM = re.compile(r"^\s*:param\s+(?:\w+\s+)?(\w+):\s*(.*)$")


def _parse_docstring(doc: str) -> Tuple[str, Dict[str, str]]:
    """First paragraph as description; parameter descriptions from Args: or :param:."""
    if not doc:
        return "", {}
    lines = doc.splitlines()
    desc_lines: List[str] = []
    for line in lines:
        if not line.strip():
            break
        desc_lines.append(line.strip())
    params: Dict[str, str] = {}
    in_args = False
    for line in lines:
        m = _SPHINX_PARAM.match(line)
        if m:
            params[m.group(1)] = m.group(2).strip()
            continue
        if _ARGS_HEADER.match(line):
            in_args = True
            continue
        if in_args:
            if line.strip() and not line.startswith((" ", "\t")):
                in_args = False
                continue
            m = _GOOGLE_PARAM.match(line)
            if m:
                params[m.group(1)] = m.group(2).strip()
    return " ".join(desc_lines), params


def schema_from_callable(
    fn: Callable[..., Any],
    name: Optional[str] = None,
    description: Optional[str] = None,
    param_descriptions: Optional[Dict[str, str]] = None,
) -> ToolSchema:
    """Build a ToolSchema (arguments model + JSON schema) from a function."""
    tool_name = name or fn.__name__
    doc_desc, doc_params = _parse_docstring(inspect.getdoc(fn) or "")
    if param_descriptions:
        doc_params.update(param_descriptions)

    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except (NameError, TypeError):
        hints = {}

    fields: Dict[str, Any] = {}
    for pname, param in sig.parameters.items():
        if pname in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            raise ConfigurationError(f"tool '{tool_name}': *args / **kwargs are not supported")
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[pname] = (hints.get(pname, str), Field(default, description=doc_params.get(pname) or None))

    try:
        model = create_model(
            f"{tool_name}_arguments",
            __config__=ConfigDict(extra="forbid"),
            **fields,
        )
        parameters_schema = arguments_json_schema(model)
    except (PydanticUserError, NameError) as e:
        raise ConfigurationError(f"tool '{tool_name}': unsupported signature ({e})", e) from e

    return ToolSchema(
        name=tool_name,
        description=description if description is not None else doc_desc,
        arguments=model,
        parameters_schema=parameters_schema,
    )


def tool(fn: Optional[Callable] = None, *, name: Optional[str] = None, description: Optional[str] = None):
    """Mark a function or method as a tool (collected by ToolRegistryBuilder.add_object)."""

    def mark(f: Callable) -> Callable:
        setattr(f, TOOL_MARKER, {"name": name, "description": description})
        return f

    if fn is not None:
        return mark(fn)
    return mark


# =========================================================================
# Registry
# =========================================================================

class ToolRegistry(Mapping):
    """Frozen mapping tool name -> ToolSpec, in registration order."""

    def __init__(self, specs: List[ToolSpec]):
        self._specs: Dict[str, ToolSpec] = {s.name: s for s in specs}

    def __getitem__(self, name: str) -> ToolSpec:
        return self._specs[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def schemas(self) -> List[Dict[str, Any]]:
        return [s.schema.to_dict() for s in self._specs.values()]

    def __repr__(self) -> str:
        return f"ToolRegistry({', '.join(self._specs)})"


class ToolRegistryBuilder:
    """Collects tools, then freezes them into a ToolRegistry."""

    def __init__(self):
        self._specs: List[ToolSpec] = []

    def add(
        self,
        fn: Callable[..., Any],
        name: Optional[str] = None,
        description: Optional[str] = None,
        param_descriptions: Optional[Dict[str, str]] = None,
    ) -> "ToolRegistryBuilder":
        marker = getattr(fn, TOOL_MARKER, None) or {}
        name = name or marker.get("name")
        if description is None:
            description = marker.get("description")
        schema = schema_from_callable(fn, name, description, param_descriptions)
        if any(s.name == schema.name for s in self._specs):
            raise ConfigurationError(f"duplicate tool name '{schema.name}'")
        self._specs.append(ToolSpec(schema=schema, handler=fn))
        return self

    def add_object(self, obj: Any) -> "ToolRegistryBuilder":
        """Register every method of obj marked with @tool."""
        for attr, member in vars(type(obj)).items():
            if callable(member) and hasattr(member, TOOL_MARKER):
                self.add(getattr(obj, attr))
        return self

    def build(self) -> ToolRegistry:
        return ToolRegistry(list(self._specs))
