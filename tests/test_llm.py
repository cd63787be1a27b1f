"""Tests for the streaming protocol handler and the tool execution loop."""

import base64
import json

import pytest

from core.messages import Message, TextPart, ToolCall, Usage, WireToolCall
from services.llm import (
    ChatCompletionsTransport,
    LLMTransportError,
    ToolCallLifecycleHooks,
    decode_choice,
    repair_message_order,
)
from tests.conftest import text_round


def user(text: str) -> Message:
    return Message(role="user", content=[TextPart(text)])


async def collect(generator):
    return [chunk async for chunk in generator]


class TestDecodeChoice:
    """Tests for delta decoding."""

    def test_string_content(self):
        """Test plain string deltas."""
        assert decode_choice({"delta": {"content": "hi"}}) == ("hi", "")

    def test_typed_content_parts(self):
        """Test list content with text, nested text and audio parts."""
        choice = {"delta": {"content": [
            {"type": "text", "text": "a"},
            {"type": "output_text", "text": [{"text": "b"}]},
            {"type": "audio", "audio": {"data": "QUJD"}},
        ]}}

        assert decode_choice(choice) == ("ab", "QUJD")

    def test_audio_transcript_used_when_no_text(self):
        """Test that the audio transcript stands in for missing text."""
        choice = {"delta": {"audio": {"data": "QUJD", "transcript": "spoken"}}}

        assert decode_choice(choice) == ("spoken", "QUJD")

    def test_message_fallback(self):
        """Test whole-message chunks from non-standard servers."""
        assert decode_choice({"message": {"content": "full"}}) == ("full", "")


class TestGenerate:
    """Tests for one streaming round."""

    @pytest.mark.asyncio
    async def test_deltas_then_single_finished_chunk(self, llm, transport):
        """Test that deltas come first and the finished chunk is last with usage."""
        transport.rounds = [text_round("Hel", "lo", usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5})]

        chunks = await collect(llm.generate([user("hi")]))

        assert [c.text for c in chunks[:-1]] == ["Hel", "lo"]
        assert sum(1 for c in chunks if c.finished) == 1
        assert chunks[-1].finished is True
        assert chunks[-1].usage == Usage(3, 2, 5)

    @pytest.mark.asyncio
    async def test_audio_deltas_are_joined(self, llm, transport):
        """Test that the finished chunk carries the concatenated audio."""
        first = base64.b64encode(b"\x01\x02").decode()
        second = base64.b64encode(b"\x03").decode()
        transport.rounds = [text_round("x", audio=[first, second])]

        chunks = await collect(llm.generate([user("hi")]))

        assert [c.audio for c in chunks if c.audio and not c.finished] == [first, second]
        assert base64.b64decode(chunks[-1].audio) == b"\x01\x02\x03"

    @pytest.mark.asyncio
    async def test_tool_calls_chunk_before_finished(self, llm, transport):
        """Test that call markup yields one tool_calls chunk before the finished chunk."""
        transport.rounds = [text_round('<tool_calls>[{"name": "add", "arguments": {"a": 1, "b": 2}}]</tool_calls>')]

        chunks = await collect(llm.generate([user("add")], tools_enabled=True))

        tool_chunks = [c for c in chunks if c.tool_calls]
        assert len(tool_chunks) == 1
        assert chunks[-2] is tool_chunks[0]
        assert chunks[-1].finished is True
        call = tool_chunks[0].tool_calls[0]
        assert call.name == "add"
        assert json.loads(call.arguments) == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_markup_ignored_when_tools_disabled(self, llm, transport):
        """Test that no tool_calls chunk is produced with tools disabled."""
        transport.rounds = [text_round('<tool_calls>{"name": "add"}</tool_calls>')]

        chunks = await collect(llm.generate([user("add")], tools_enabled=False))

        assert not any(c.tool_calls for c in chunks)

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, llm, transport, transport_error):
        """Test that transport failures are raised out of generate."""
        transport.rounds = [transport_error]

        with pytest.raises(LLMTransportError):
            await collect(llm.generate([user("hi")]))

    @pytest.mark.asyncio
    async def test_media_attached_to_last_user_message(self, llm, transport):
        """Test that round images and audio go on the last user message."""
        transport.rounds = [text_round("ok")]
        messages = [
            Message(role="system", content=[TextPart("sys")]),
            user("first"),
            Message(role="assistant", content=[TextPart("")]),
            user("second"),
        ]

        await collect(llm.generate(messages, images=["QUJD"], audio="data:audio/wav;base64,UklG"))

        wire = transport.requests[0]
        assert wire[2]["content"] == [{"type": "text", "text": ""}]
        assert wire[3]["content"] == [
            {"type": "text", "text": "second"},
            {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,QUJD"}},
            {"type": "input_audio", "input_audio": {"data": "UklG", "format": "wav"}},
        ]


class TestProcessToolCalls:
    """Tests for the ReAct loop."""

    @pytest.mark.asyncio
    async def test_error_isolation_and_single_aggregated_message(self, llm, transport):
        """Test that a failing tool does not suppress its sibling's result."""
        transport.rounds = [text_round("All done.")]
        calls = [ToolCall("c1", "explode", {}), ToolCall("c2", "add", {"a": 2, "b": 3})]
        started, succeeded, failed = [], [], []
        hooks = ToolCallLifecycleHooks(
            on_start=lambda call: started.append(call.name),
            on_success=lambda call, result: succeeded.append((call.name, result)),
            on_error=lambda call, error: failed.append((call.name, str(error))),
        )

        chunks = await collect(llm.process_tool_calls(calls, [user("go")], hooks, "raw text"))

        results = [c.tool_results_text for c in chunks if c.tool_results_text]
        assert len(results) == 1
        assert 'Tool result [explode]: {"error": "boom"}' in results[0]
        assert 'Tool result [add]: {"sum": 5}' in results[0]
        assert started == ["explode", "add"]
        assert succeeded == [("add", {"sum": 5})]
        assert failed == [("explode", "boom")]

        follow_up = transport.requests[0]
        assert [m["role"] for m in follow_up] == ["user", "assistant", "user"]
        assert follow_up[1]["content"] == [{"type": "text", "text": "raw text"}]
        assert chunks[-1].finished is True

    @pytest.mark.asyncio
    async def test_unknown_tool_reports_error(self, llm, transport):
        """Test that a missing tool becomes an error payload."""
        transport.rounds = [text_round("ok")]

        chunks = await collect(llm.process_tool_calls([ToolCall("c1", "nope", {})], [user("x")]))

        assert "Tool not found: nope" in chunks[0].tool_results_text

    @pytest.mark.asyncio
    async def test_nested_rounds_and_merged_usage(self, llm, transport):
        """Test that a follow-up requesting tools recurses and usage is merged."""
        transport.rounds = [
            text_round('<tool_calls>{"name": "echo", "arguments": {"message": "again"}}</tool_calls>',
                       usage={"prompt_tokens": 10, "completion_tokens": 1, "total_tokens": 11}),
            text_round("Final answer", usage={"prompt_tokens": 20, "completion_tokens": 2, "total_tokens": 22}),
        ]

        chunks = await collect(llm.process_tool_calls(
            [ToolCall("c1", "add", {"a": 1, "b": 1})], [user("x")], usage=Usage(1, 1, 2)
        ))

        assert sum(1 for c in chunks if c.tool_results_text) == 2
        assert sum(1 for c in chunks if c.tool_calls) == 1
        assert chunks[-1].finished is True
        assert chunks[-1].usage == Usage(31, 4, 35)
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_round_cap_disables_tools(self, llm, transport):
        """Test that the last allowed round runs its follow-up without tools."""
        llm.max_tool_rounds = 1
        transport.rounds = [text_round('<tool_calls>{"name": "echo"}</tool_calls>')]

        chunks = await collect(llm.process_tool_calls([ToolCall("c1", "echo", {})], [user("x")]))

        assert not any(c.tool_calls for c in chunks)
        assert chunks[-1].finished is True

    @pytest.mark.asyncio
    async def test_wire_tool_calls_are_decoded(self, llm, transport):
        """Test that JSON-string arguments are decoded before execution."""
        transport.rounds = [text_round("ok")]
        calls = [WireToolCall("c1", "add", '{"a": 4, "b": 5}')]

        chunks = await collect(llm.process_tool_calls(calls, [user("x")]))

        assert '{"sum": 9}' in chunks[0].tool_results_text


class TestRepairMessageOrder:
    """Tests for role-order repair."""

    def test_consecutive_users_merge(self):
        """Test that three trailing user messages merge into one."""
        roles = ["system", "user", "assistant", "user", "user", "user"]
        messages = [Message(role=r, content=[TextPart(f"{r}{i}")]) for i, r in enumerate(roles)]

        repaired = repair_message_order(messages)

        assert [m.role for m in repaired] == ["system", "user", "assistant", "user"]
        assert repaired[3].content == [
            TextPart("user3"), TextPart("\n\n"), TextPart("user4"), TextPart("\n\n"), TextPart("user5"),
        ]

    def test_system_messages_never_merge(self):
        """Test that adjacent system messages are left alone."""
        messages = [Message(role="system", content=[TextPart("a")]), Message(role="system", content=[TextPart("b")])]

        assert len(repair_message_order(messages)) == 2

    def test_tool_calls_are_unioned(self):
        """Test that merged assistant messages keep every tool call once."""
        a = WireToolCall("1", "x")
        b = WireToolCall("2", "y")
        messages = [
            Message(role="assistant", content=[TextPart("p")], tool_calls=[a]),
            Message(role="assistant", content=[TextPart("q")], tool_calls=[a, b]),
        ]

        repaired = repair_message_order(messages)

        assert [tc.id for tc in repaired[0].tool_calls] == ["1", "2"]

    def test_no_adjacent_equal_roles_after_repair(self):
        """Test the post-condition on a mixed sequence."""
        roles = ["user", "user", "assistant", "assistant", "user", "system", "user", "user"]
        repaired = repair_message_order([Message(role=r) for r in roles])

        for prev, cur in zip(repaired, repaired[1:]):
            assert prev.role == "system" or cur.role == "system" or prev.role != cur.role


class TestChatCompletionsTransport:
    """Tests for payload construction and provider quirks."""

    def test_payload_with_audio_output(self):
        """Test the streaming payload fields."""
        transport = ChatCompletionsTransport(api_url="http://x", model="m", provider="openai", temperature=0.9, voice="Cherry")

        payload = transport.build_payload([{"role": "user", "content": "hi"}], audio_output=True)

        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["modalities"] == ["text", "audio"]
        assert payload["audio"] == {"voice": "Cherry", "format": "wav"}
        assert payload["temperature"] == 0.9

    def test_dashscope_prefixes_audio(self):
        """Test that dashscope input audio gets a data:;base64 prefix."""
        transport = ChatCompletionsTransport(provider="dashscope")
        messages = [{"role": "user", "content": [{"type": "input_audio", "input_audio": {"data": "AAAA", "format": "wav"}}]}]

        prepared = transport.prepare_messages(messages)

        assert prepared[0]["content"][0]["input_audio"]["data"] == "data:;base64,AAAA"

    def test_siliconflow_uses_audio_url(self):
        """Test that siliconflow input audio becomes an audio_url part."""
        transport = ChatCompletionsTransport(provider="siliconflow")
        messages = [{"role": "user", "content": [{"type": "input_audio", "input_audio": {"data": "AAAA", "format": "wav"}}]}]

        prepared = transport.prepare_messages(messages)

        assert prepared[0]["content"][0] == {"type": "audio_url", "audio_url": {"url": "data:audio/mpeg;base64,AAAA"}}
