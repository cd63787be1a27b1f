"""
Tool contract, registry and built-in tools

A tool has a unique name, a parameter description used for prompting and
an async execute(**arguments) handler returning a JSON-serializable result.
"""
import ast
import operator
import platform
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil

from core.logger import setup_logger

logger = setup_logger(__name__)


class ToolNotFoundError(LookupError):
    """Raised when a tool call names a tool that is not registered"""

    def __init__(self, name: str):
        super().__init__(f"Tool not found: {name}")
        self.name = name


class Tool(ABC):
    """Base class for all tools"""

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name"""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Tool description for LLM"""
        pass

    @property
    @abstractmethod
    def parameters(self) -> Dict:
        """Tool parameters schema"""
        pass

    @property
    def required(self) -> List[str]:
        return []

    @abstractmethod
    async def execute(self, **kwargs) -> Any:
        """Execute the tool"""
        pass

    def to_dict(self) -> Dict:
        """Convert tool to dict for LLM"""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": self.parameters,
                "required": self.required,
            },
        }


class FunctionTool(Tool):
    """Wrap an async callable as a tool"""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: Optional[Dict] = None,
        handler: Optional[Callable[..., Awaitable[Any]]] = None,
        required: Optional[List[str]] = None,
    ):
        if handler is None:
            raise ValueError(f"Tool {name} needs a handler")
        self._name = name
        self._description = description
        self._parameters = parameters or {}
        self._required = required or []
        self._handler = handler

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> Dict:
        return self._parameters

    @property
    def required(self) -> List[str]:
        return self._required

    async def execute(self, **kwargs) -> Any:
        return await self._handler(**kwargs)


class EchoTool(Tool):
    """Connectivity test tool"""

    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echo the given message back. Useful for testing tool calling."

    @property
    def parameters(self) -> Dict:
        return {
            "message": {
                "type": "string",
                "description": "Message to echo back"
            }
        }

    async def execute(self, message: str = "") -> Dict[str, Any]:
        return {"message": message}


class CurrentTimeTool(Tool):
    """Report the current local or UTC time"""

    @property
    def name(self) -> str:
        return "get_current_time"

    @property
    def description(self) -> str:
        return "Get the current date and time."

    @property
    def parameters(self) -> Dict:
        return {
            "utc": {
                "type": "boolean",
                "description": "Return UTC time instead of local time (default: false)"
            }
        }

    async def execute(self, utc: bool = False) -> Dict[str, Any]:
        now = datetime.now(timezone.utc) if utc else datetime.now().astimezone()
        return {
            "iso": now.isoformat(timespec="seconds"),
            "date": now.strftime("%Y-%m-%d"),
            "time": now.strftime("%H:%M:%S"),
            "weekday": now.strftime("%A"),
            "timezone": now.tzname(),
        }


_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def evaluate_expression(expression: str) -> float:
    """Evaluate a plain arithmetic expression without eval()"""

    def visit(node):
        if isinstance(node, ast.Expression):
            return visit(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
            right = visit(node.right)
            if isinstance(node.op, ast.Pow) and abs(right) > 100:
                raise ValueError("Exponent too large")
            return _BINARY_OPERATORS[type(node.op)](visit(node.left), right)
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
            return _UNARY_OPERATORS[type(node.op)](visit(node.operand))
        raise ValueError(f"Unsupported expression element: {type(node).__name__}")

    try:
        tree = ast.parse(expression.replace("^", "**"), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {expression}") from e
    return visit(tree)


class CalculatorTool(Tool):
    """Arithmetic calculator"""

    @property
    def name(self) -> str:
        return "calculator"

    @property
    def description(self) -> str:
        return "Evaluate an arithmetic expression with + - * / // % and ^ (power)."

    @property
    def parameters(self) -> Dict:
        return {
            "expression": {
                "type": "string",
                "description": "Expression to evaluate, e.g. '(3 + 4) * 2'"
            }
        }

    @property
    def required(self) -> List[str]:
        return ["expression"]

    async def execute(self, expression: str) -> Dict[str, Any]:
        return {"expression": expression, "result": evaluate_expression(expression)}


class GetSystemStatusTool(Tool):
    """Get system resource usage"""

    @property
    def name(self) -> str:
        return "get_system_status"

    @property
    def description(self) -> str:
        return "Get current system resource usage (CPU, RAM, disk)"

    @property
    def parameters(self) -> Dict:
        return {}

    async def execute(self) -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')
        return {
            "platform": platform.system(),
            "cpu_percent": psutil.cpu_percent(interval=None),
            "ram": {
                "total_gb": round(memory.total / (1024**3), 2),
                "used_gb": round(memory.used / (1024**3), 2),
                "percent": memory.percent
            },
            "disk": {
                "total_gb": round(disk.total / (1024**3), 2),
                "used_gb": round(disk.used / (1024**3), 2),
                "percent": disk.percent
            }
        }


def format_tools_for_prompt(tools: List[Tool]) -> str:
    """
    Format tools as part of system prompt
    Returns the tool catalogue plus the <tool_calls> usage instructions
    """
    if not tools:
        return ""

    tool_descriptions = []
    for tool in tools:
        params = []
        for param_name, param_info in tool.parameters.items():
            param_type = param_info.get('type', 'string')
            param_desc = param_info.get('description', '')
            marker = " (required)" if param_name in tool.required else ""
            params.append(f"  - {param_name} ({param_type}){marker}: {param_desc}")

        params_str = '\n'.join(params) if params else "  (no parameters)"
        tool_descriptions.append(
            f"Tool: {tool.name}\nDescription: {tool.description}\nParameters:\n{params_str}"
        )

    catalogue = "\n\n".join(tool_descriptions)
    return f"""

=== AVAILABLE TOOLS ===
{catalogue}

=== HOW TO USE TOOLS ===
When you need a tool, reply with the call wrapped in <tool_calls> tags:

<tool_calls>[{{"name": "tool_name", "arguments": {{"param_name": "value"}}}}]</tool_calls>

You may list several calls in the array; they run in order. After the tools run you
will receive their results and should answer the user naturally, or issue another
<tool_calls> block if more work is needed.
"""


class ToolManager:
    """Manages all available tools"""

    def __init__(self, register_defaults: bool = True):
        self.tools: Dict[str, Tool] = {}
        if register_defaults:
            self.register_default_tools()
        logger.info(f"Tool Manager initialized with {len(self.tools)} tools")

    def register_default_tools(self):
        """Register all default tools"""
        for tool in (EchoTool(), CurrentTimeTool(), CalculatorTool(), GetSystemStatusTool()):
            self.register_tool(tool)

    def register_tool(self, tool: Tool):
        """Register a new tool, replacing any tool with the same name"""
        if tool.name in self.tools:
            logger.warning(f"Replacing registered tool: {tool.name}")
        self.tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def unregister_tool(self, name: str) -> bool:
        return self.tools.pop(name, None) is not None

    def get_tool(self, name: str) -> Optional[Tool]:
        """Get tool by name"""
        return self.tools.get(name)

    def get_all_tools(self) -> List[Tool]:
        """Get all registered tools"""
        return list(self.tools.values())

    def get_tools_prompt(self) -> str:
        return format_tools_for_prompt(self.get_all_tools())

    async def execute_tool(self, tool_name: str, arguments: Any) -> Any:
        """
        Execute a tool by name

        Raises ToolNotFoundError for unknown tools; errors raised by the tool
        itself propagate to the caller.
        """
        tool = self.get_tool(tool_name)
        if tool is None:
            raise ToolNotFoundError(tool_name)

        if not isinstance(arguments, dict):
            logger.warning(f"Tool {tool_name} got non-object arguments, using {{}}")
            arguments = {}

        logger.info(f"Executing tool: {tool_name} with arguments: {arguments}")
        result = await tool.execute(**arguments)
        logger.debug(f"Tool {tool_name} result: {result}")
        return result


# Global tool manager instance
tool_manager = ToolManager()
