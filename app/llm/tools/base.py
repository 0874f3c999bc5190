# app/llm/tools/base.py
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

ToolExecutor = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class Tool:
    """A function the model may call between generation steps."""

    name: str
    description: str
    parameters: Dict[str, Any]
    execute: ToolExecutor
    needs_approval: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def anthropic_schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


class ToolSet(dict):
    """Tools keyed by name."""

    @classmethod
    def of(cls, tools: Iterable[Tool]) -> "ToolSet":
        return cls({tool.name: tool for tool in tools})

    def active(self, names: Optional[Iterable[str]]) -> "ToolSet":
        if names is None:
            return ToolSet(self)
        wanted = set(names)
        return ToolSet({name: tool for name, tool in self.items() if name in wanted})
