"""Tool registry and executor used by the autonomous agent engine.

Tools are async callables taking keyword arguments and returning text.
The executor turns every tool failure into an ``"Error: ..."`` observation
so the model can reason about it on the next step.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..interfaces import IToolExecutor, ToolDeclaration, ToolHostError

logger = logging.getLogger(__name__)

ToolFunction = Callable[..., Awaitable[Any]]


@dataclass
class RegisteredTool:
    declaration: ToolDeclaration
    function: ToolFunction


class ToolRegistry:
    """Name → tool mapping with JSON-schema argument declarations."""

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        description: str,
        function: ToolFunction,
        parameters: Optional[dict] = None,
    ) -> None:
        if not inspect.iscoroutinefunction(function):
            raise TypeError(f"Tool {name!r} must be an async function")
        if name in self._tools:
            logger.warning("Tool %s re-registered; replacing previous definition", name)
        declaration = ToolDeclaration(
            name=name,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
        )
        self._tools[name] = RegisteredTool(declaration, function)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name)

    def declarations(self) -> list[ToolDeclaration]:
        return [tool.declaration for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


class ToolExecutor(IToolExecutor):
    """Runs registered tools and converts their failures to observations."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def declarations(self) -> list[ToolDeclaration]:
        return self.registry.declarations()

    async def execute(self, tool_name: str, args: dict) -> str:
        if self.registry is None:
            raise ToolHostError("Tool registry is not available")
        tool = self.registry.get(tool_name)
        if tool is None:
            return f"Error: Tool '{tool_name}' not found."
        try:
            result = await tool.function(**(args or {}))
        except ToolHostError:
            raise
        except TypeError as e:
            return f"Error: Invalid arguments for '{tool_name}': {e}"
        except Exception as e:
            logger.warning("Tool %s failed: %s", tool_name, e)
            return f"Error: {e}"
        return result if isinstance(result, str) else str(result)


# =============================================================================
# Built-in tools
# =============================================================================

async def calculator(operation: str, a: float, b: float) -> str:
    """Basic arithmetic: add, subtract, multiply, divide."""
    a, b = float(a), float(b)
    if operation == "add":
        value = a + b
    elif operation == "subtract":
        value = a - b
    elif operation == "multiply":
        value = a * b
    elif operation == "divide":
        if b == 0:
            raise ValueError("Cannot divide by zero.")
        value = a / b
    else:
        raise ValueError(f"Unknown operation '{operation}'.")
    return f"The result is {value:g}."


async def web_search(query: str) -> str:
    """Offline stand-in for a search backend."""
    return (
        f'Simulated search results for "{query}": no live search backend is '
        "configured, so answer from existing knowledge."
    )


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    registry.register(
        "calculator",
        "Performs basic arithmetic on two numbers.",
        calculator,
        {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": ["add", "subtract", "multiply", "divide"],
                },
                "a": {"type": "number"},
                "b": {"type": "number"},
            },
            "required": ["operation", "a", "b"],
        },
    )
    registry.register(
        "web_search",
        "Searches the web for a query and returns a text summary.",
        web_search,
        {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    )
    return registry
