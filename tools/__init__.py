"""Tools for the omni agent - tool contract, registry and in-band call parser"""
from .parser import parse_tool_calls, has_tool_call_tags, summarize_tool_calls, ParseResult
from .tool_system import (
    Tool,
    FunctionTool,
    ToolManager,
    ToolNotFoundError,
    format_tools_for_prompt,
    tool_manager,
)

__all__ = [
    'parse_tool_calls', 'has_tool_call_tags', 'summarize_tool_calls', 'ParseResult',
    'Tool', 'FunctionTool', 'ToolManager', 'ToolNotFoundError',
    'format_tools_for_prompt', 'tool_manager',
]
