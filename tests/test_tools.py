"""Tests for the tool registry and built-in tools."""

import pytest

from tools.tool_system import (
    FunctionTool,
    ToolManager,
    ToolNotFoundError,
    evaluate_expression,
    format_tools_for_prompt,
)


@pytest.fixture
def manager():
    """Create a registry with the built-in tools."""
    return ToolManager()


class TestCalculator:
    """Tests for the arithmetic evaluator."""

    @pytest.mark.parametrize("expression,expected", [
        ("1 + 1", 2),
        ("(3 + 4) * 2", 14),
        ("2 ^ 10", 1024),
        ("-5 + 2", -3),
        ("7 // 2", 3),
        ("7 % 4", 3),
    ])
    def test_evaluates_arithmetic(self, expression, expected):
        """Test the supported operators."""
        assert evaluate_expression(expression) == expected

    @pytest.mark.parametrize("expression", ["__import__('os')", "a + 1", "2 ** 1000", "1 +"])
    def test_rejects_unsafe_or_invalid(self, expression):
        """Test that names, calls, huge exponents and syntax errors are rejected."""
        with pytest.raises(ValueError):
            evaluate_expression(expression)

    @pytest.mark.asyncio
    async def test_tool_result(self, manager):
        """Test the calculator tool payload."""
        result = await manager.execute_tool("calculator", {"expression": "6 * 7"})

        assert result == {"expression": "6 * 7", "result": 42}


class TestBuiltins:
    """Tests for the remaining built-in tools."""

    def test_defaults_registered(self, manager):
        """Test the default tool set."""
        names = {tool.name for tool in manager.get_all_tools()}

        assert names == {"echo", "get_current_time", "calculator", "get_system_status"}

    @pytest.mark.asyncio
    async def test_echo(self, manager):
        """Test that echo returns its message."""
        assert await manager.execute_tool("echo", {"message": "ping"}) == {"message": "ping"}

    @pytest.mark.asyncio
    async def test_current_time_utc(self, manager):
        """Test that the UTC flag reports the UTC zone."""
        result = await manager.execute_tool("get_current_time", {"utc": True})

        assert result["timezone"] == "UTC"
        assert result["iso"].endswith("+00:00")

    @pytest.mark.asyncio
    async def test_system_status(self, manager):
        """Test that system status reports resource usage."""
        result = await manager.execute_tool("get_system_status", {})

        assert set(result) >= {"cpu_percent", "ram", "disk"}
        assert 0 <= result["ram"]["percent"] <= 100


class TestToolManager:
    """Tests for registration and dispatch."""

    @pytest.mark.asyncio
    async def test_unknown_tool_raises(self, manager):
        """Test that unknown names raise ToolNotFoundError."""
        with pytest.raises(ToolNotFoundError, match="Tool not found: missing"):
            await manager.execute_tool("missing", {})

    @pytest.mark.asyncio
    async def test_non_dict_arguments_become_empty(self, manager):
        """Test that malformed arguments are replaced with no arguments."""
        assert await manager.execute_tool("echo", ["not", "a", "dict"]) == {"message": ""}

    @pytest.mark.asyncio
    async def test_tool_errors_propagate(self):
        """Test that a tool's own exception reaches the caller."""
        async def fail():
            raise RuntimeError("broken")

        manager = ToolManager(register_defaults=False)
        manager.register_tool(FunctionTool("fail", "Fails", handler=fail))

        with pytest.raises(RuntimeError, match="broken"):
            await manager.execute_tool("fail", {})

    def test_register_replaces_and_unregister(self):
        """Test replacing and removing tools by name."""
        async def one():
            return 1

        async def two():
            return 2

        manager = ToolManager(register_defaults=False)
        manager.register_tool(FunctionTool("n", "first", handler=one))
        manager.register_tool(FunctionTool("n", "second", handler=two))

        assert manager.get_tool("n").description == "second"
        assert manager.unregister_tool("n") is True
        assert manager.unregister_tool("n") is False

    def test_function_tool_needs_handler(self):
        """Test that a FunctionTool without a handler is rejected."""
        with pytest.raises(ValueError):
            FunctionTool("x", "no handler")


class TestPromptFormatting:
    """Tests for the tool catalogue text."""

    def test_catalogue_lists_parameters(self, manager):
        """Test that each tool and its required parameters are described."""
        prompt = format_tools_for_prompt(manager.get_all_tools())

        assert "Tool: calculator" in prompt
        assert "  - expression (string) (required):" in prompt
        assert "(no parameters)" in prompt
        assert "<tool_calls>" in prompt

    def test_empty_catalogue(self):
        """Test that no tools produce no prompt text."""
        assert format_tools_for_prompt([]) == ""

    def test_to_dict_schema(self, manager):
        """Test the JSON schema export."""
        schema = manager.get_tool("calculator").to_dict()

        assert schema["parameters"]["type"] == "object"
        assert schema["parameters"]["required"] == ["expression"]
