"""Tool registry: static tool declarations plus their confirmation policy."""

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

from .report import ConfigError


@dataclass(frozen=True)
class ToolDescriptor:
    """One registered tool.

    parameters is a JSON-schema object whose "properties" order is the
    tool's declared parameter order.
    """

    name: str
    description: str
    parameters: dict
    function: Callable
    requires_confirmation: bool = False

    @property
    def declaration(self) -> dict:
        """Function declaration advertised to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    @property
    def parameter_names(self) -> list[str]:
        return list(self.parameters.get("properties", {}))


class ToolRegistry:
    """Name -> ToolDescriptor mapping. Names must be unique."""

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()):
        self._tools: dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._tools:
                raise ConfigError(f"duplicate tool name: {descriptor.name!r}")
            self._tools[descriptor.name] = descriptor

    def get(self, name: str | None) -> ToolDescriptor | None:
        if name is None:
            return None
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def declarations(self) -> list[dict]:
        return [t.declaration for t in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
