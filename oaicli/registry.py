"""Tool catalog: named, schema-described capabilities and their handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


@dataclass(frozen=True)
class ToolDefinition:
    """One entry of the catalog.

    `handler` receives the parsed, validated arguments and returns text.
    Side-effecting tools are gated behind an operator confirmation built
    from `confirm_prompt`; a decline yields `cancel_message`.
    """

    name: str
    description: str
    parameters: dict
    handler: Callable[[dict], str] = field(compare=False, repr=False)
    side_effecting: bool = False
    confirm_prompt: Callable[[dict], str] | None = field(
        default=None, compare=False, repr=False
    )
    cancel_message: str = "Operation cancelled by user."

    def schema(self) -> dict:
        """Wire shape advertised to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def confirmation_message(self, args: dict) -> str:
        if self.confirm_prompt is not None:
            return self.confirm_prompt(args)
        return f"Run {self.name}?"


class ToolRegistry:
    """Ordered, append-only catalog keyed by tool name."""

    def __init__(self, definitions: list[ToolDefinition] | None = None):
        self._tools: dict[str, ToolDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        """Add a definition. A name can never be reused for a different schema."""
        existing = self._tools.get(definition.name)
        if existing is not None:
            if existing.parameters != definition.parameters:
                raise ValueError(
                    f"tool {definition.name!r} is already registered with a different schema"
                )
            return
        self._tools[definition.name] = definition

    def list(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict]:
        return [definition.schema() for definition in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def _type_error(path: str, expected: str, value) -> str:
    return f"{path}: expected {expected}, got {type(value).__name__}"


def _check_value(path: str, prop: dict, value) -> str | None:
    expected = prop.get("type")
    if expected in _JSON_TYPES:
        py_type = _JSON_TYPES[expected]
        # bool is a subclass of int; reject it for numeric fields.
        if isinstance(value, bool) and expected != "boolean":
            return _type_error(path, expected, value)
        if not isinstance(value, py_type):
            return _type_error(path, expected, value)
    if "enum" in prop and value not in prop["enum"]:
        allowed = ", ".join(repr(v) for v in prop["enum"])
        return f"{path}: {value!r} is not one of {allowed}"
    if expected == "array" and isinstance(prop.get("items"), dict):
        for i, item in enumerate(value):
            err = _check_value(f"{path}[{i}]", prop["items"], item)
            if err:
                return err
    return None


def validate_arguments(parameters: dict, args) -> str | None:
    """Check parsed arguments against a parameter schema.

    Returns a human-readable problem description, or None when valid.
    Unknown extra fields are tolerated.
    """
    if not isinstance(args, dict):
        return f"arguments must be a JSON object, got {type(args).__name__}"

    for name in parameters.get("required", []):
        if name not in args or args[name] is None:
            return f"missing required argument {name!r}"

    properties = parameters.get("properties", {})
    for name, value in args.items():
        prop = properties.get(name)
        if prop is None or value is None:
            continue
        err = _check_value(name, prop, value)
        if err:
            return err
    return None
