"""
Streaming LLM integration with in-band tool calling

StreamingLLM issues one streaming chat-completions request per round,
aggregates text/audio deltas, detects <tool_calls> markup in the final
text and runs the tool execution loop, recursing until the model answers
in plain text or the tool round cap is reached.
"""
import aiohttp
import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from core.config import settings
from core.logger import setup_logger
from core.messages import (
    AudioPart,
    GenerationChunk,
    ImagePart,
    Message,
    TextPart,
    ToolCall,
    Usage,
    WireToolCall,
    ensure_data_url,
    normalize_audio_data,
    part_to_wire,
)
from services.audio import join_base64_audio
from tools.parser import has_tool_call_tags, parse_tool_calls, summarize_tool_calls
from tools.tool_system import ToolManager, tool_manager as default_tool_manager

logger = setup_logger(__name__)

TOOL_FOLLOWUP_INSTRUCTION = (
    "Use these tool results to answer the user. If you need more information, "
    "call another tool with a <tool_calls> block; otherwise give your final answer."
)


class LLMTransportError(RuntimeError):
    """Model endpoint unreachable, non-success status or aborted stream"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ChatTransport(Protocol):
    """Streams raw chat-completions chunk dictionaries for a wire message list"""

    def stream(self, messages: List[Dict[str, Any]], audio_output: bool) -> AsyncIterator[Dict[str, Any]]:
        ...


class ChatCompletionsTransport:
    """OpenAI-compatible streaming chat completions over aiohttp (SSE)"""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[int] = None,
        voice: Optional[str] = None,
        audio_format: Optional[str] = None,
    ):
        self.api_url = api_url or settings.LLM_API_URL
        self.api_key = api_key if api_key is not None else settings.LLM_API_KEY
        self.model = model or settings.LLM_MODEL_NAME
        self.provider = (provider or settings.LLM_PROVIDER).lower()
        self.temperature = temperature if temperature is not None else settings.LLM_TEMPERATURE
        self.max_tokens = max_tokens if max_tokens is not None else settings.LLM_MAX_TOKENS
        self.timeout = timeout if timeout is not None else settings.LLM_TIMEOUT
        self.voice = voice or settings.LLM_VOICE
        self.audio_format = audio_format or settings.LLM_AUDIO_FORMAT
        logger.info(f"ChatCompletionsTransport initialized (model: {self.model}, provider: {self.provider})")

    def prepare_messages(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Apply provider-specific input audio encoding"""
        if self.provider not in ("dashscope", "siliconflow"):
            return messages

        prepared = []
        for message in messages:
            content = message.get("content")
            if not isinstance(content, list):
                prepared.append(message)
                continue
            parts = []
            for part in content:
                if part.get("type") != "input_audio":
                    parts.append(part)
                    continue
                data = part["input_audio"]["data"]
                if self.provider == "dashscope":
                    if not data.startswith("data:"):
                        data = f"data:;base64,{data}"
                    parts.append({"type": "input_audio", "input_audio": {**part["input_audio"], "data": data}})
                else:
                    parts.append({"type": "audio_url", "audio_url": {"url": ensure_data_url(data, "audio/mpeg")}})
            prepared.append({**message, "content": parts})
        return prepared

    def build_payload(self, messages: List[Dict[str, Any]], audio_output: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self.prepare_messages(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": self.temperature,
        }
        if audio_output:
            payload["modalities"] = ["text", "audio"]
            payload["audio"] = {"voice": self.voice, "format": self.audio_format}
        else:
            payload["modalities"] = ["text"]
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        return payload

    async def stream(self, messages: List[Dict[str, Any]], audio_output: bool = True) -> AsyncGenerator[Dict[str, Any], None]:
        """
        Stream chunk dictionaries from the endpoint

        Raises:
            LLMTransportError: on non-200 status, connection failure or timeout
        """
        payload = self.build_payload(messages, audio_output)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        logger.info(f"LLM stream started (messages: {len(messages)}, audio: {audio_output})")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.api_url,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        error = await response.text()
                        logger.error(f"LLM API error {response.status}: {error[:500]}")
                        raise LLMTransportError(f"LLM API error {response.status}: {error[:200]}", response.status)

                    async for raw_line in response.content:
                        line = raw_line.decode('utf-8').strip()
                        if not line.startswith('data:'):
                            continue

                        data_str = line[5:].strip()
                        if data_str == '[DONE]':
                            break

                        try:
                            yield json.loads(data_str)
                        except json.JSONDecodeError:
                            logger.debug(f"Skipping malformed stream line: {data_str[:80]}")
                            continue
        except asyncio.TimeoutError as e:
            logger.error("LLM stream timeout")
            raise LLMTransportError("LLM stream timed out") from e
        except aiohttp.ClientError as e:
            logger.error(f"LLM stream error: {e}")
            raise LLMTransportError(f"LLM stream failed: {e}") from e

        logger.info("LLM stream completed")


def _text_from_part(part: Any) -> str:
    if isinstance(part, str):
        return part
    if not isinstance(part, dict):
        return ""
    if part.get("type") not in (None, "text", "output_text"):
        return ""
    text = part.get("text")
    if isinstance(text, str):
        return text
    if isinstance(text, list):
        return "".join(_text_from_part(item) for item in text)
    if isinstance(text, dict):
        return str(text.get("value", ""))
    return ""


def _audio_from_part(part: Any) -> str:
    if not isinstance(part, dict) or part.get("type") not in ("audio", "output_audio"):
        return ""
    audio = part.get("audio")
    if isinstance(audio, dict):
        return audio.get("data") or ""
    return part.get("data") or ""


def decode_choice(choice: Dict[str, Any]) -> Tuple[str, str]:
    """Extract (text delta, base64 audio delta) from one streamed choice"""
    delta = choice.get("delta") or {}
    text = ""
    audio = ""

    content = delta.get("content")
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        text = "".join(_text_from_part(part) for part in content)
        audio = "".join(_audio_from_part(part) for part in content)

    delta_audio = delta.get("audio")
    if isinstance(delta_audio, dict):
        audio += delta_audio.get("data") or ""
        if not text:
            text = delta_audio.get("transcript") or ""

    if not text and not delta:
        # Non-standard servers send whole messages instead of deltas
        message_content = (choice.get("message") or {}).get("content")
        if isinstance(message_content, str):
            text = message_content
        elif isinstance(message_content, list):
            text = "".join(_text_from_part(part) for part in message_content)

    return text, audio


@dataclass
class ToolCallLifecycleHooks:
    on_start: Optional[Callable[[ToolCall], None]] = None
    on_success: Optional[Callable[[ToolCall, Any], None]] = None
    on_error: Optional[Callable[[ToolCall, Exception], None]] = None


@dataclass
class ToolResponse:
    tool_call_id: str
    name: str
    content: Any
    is_error: bool = False

    def to_text(self) -> str:
        try:
            payload = json.dumps(self.content, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            payload = str(self.content)
        return f"Tool result [{self.name}]: {payload}"


def to_wire_tool_calls(calls: Sequence[ToolCall]) -> List[WireToolCall]:
    return [
        WireToolCall(id=call.id, name=call.name, arguments=json.dumps(call.arguments, ensure_ascii=False))
        for call in calls
    ]


def from_wire_tool_call(call: Union[ToolCall, WireToolCall]) -> ToolCall:
    if isinstance(call, ToolCall):
        return call
    try:
        arguments = json.loads(call.arguments) if call.arguments else {}
    except json.JSONDecodeError:
        logger.warning(f"Tool {call.name} has unparseable arguments, using {{}}")
        arguments = {}
    return ToolCall(id=call.id, name=call.name, arguments=arguments)


def repair_message_order(messages: Sequence[Message]) -> List[Message]:
    """
    Merge adjacent non-system messages that share a role

    Content is concatenated with a blank text separator and tool calls are
    unioned. System messages are never merged.
    """
    repaired: List[Message] = []
    for message in messages:
        previous = repaired[-1] if repaired else None
        if (
            previous is not None
            and message.role != "system"
            and previous.role == message.role
        ):
            tool_calls = None
            if previous.tool_calls or message.tool_calls:
                tool_calls = list(previous.tool_calls or [])
                seen = {tc.id for tc in tool_calls}
                tool_calls.extend(tc for tc in (message.tool_calls or []) if tc.id not in seen)
            repaired[-1] = Message(
                role=previous.role,
                content=[*previous.content, TextPart("\n\n"), *message.content],
                tool_calls=tool_calls,
                tool_call_id=previous.tool_call_id or message.tool_call_id,
            )
            logger.debug(f"Merged adjacent {message.role} messages")
        else:
            repaired.append(message)
    return repaired


class StreamingLLM:
    """Streaming protocol handler and tool execution loop"""

    def __init__(
        self,
        transport: Optional[ChatTransport] = None,
        tools: Optional[ToolManager] = None,
        max_tool_rounds: Optional[int] = None,
        audio_output: Optional[bool] = None,
    ):
        self.transport = transport or ChatCompletionsTransport()
        self.tools = tools if tools is not None else default_tool_manager
        self.max_tool_rounds = max_tool_rounds if max_tool_rounds is not None else settings.LLM_MAX_TOOL_ROUNDS
        self.audio_output = audio_output if audio_output is not None else settings.LLM_AUDIO_OUTPUT
        logger.info(f"StreamingLLM initialized (max tool rounds: {self.max_tool_rounds})")

    def build_wire_messages(
        self,
        messages: Sequence[Message],
        images: Optional[Sequence[str]] = None,
        audio: Union[str, Dict[str, Any], AudioPart, None] = None,
    ) -> List[Dict[str, Any]]:
        """Encode messages, attaching this round's images/audio to the last user message"""
        wire = []
        for message in messages:
            parts = [
                part_to_wire(p) for p in message.content
                if not (isinstance(p, TextPart) and not p.text)
            ]
            wire.append({
                "role": message.role,
                "content": parts or [{"type": "text", "text": ""}],
            })

        extra = [part_to_wire(ImagePart(ensure_data_url(image, "image/jpeg"))) for image in images or []]
        audio_part = normalize_audio_data(audio) if audio is not None else None
        if audio_part is not None:
            extra.append(part_to_wire(audio_part))

        if extra:
            last_user = next((m for m in reversed(wire) if m["role"] == "user"), None)
            if last_user is None:
                wire.append({"role": "user", "content": extra})
            else:
                content = [p for p in last_user["content"] if not (p["type"] == "text" and not p["text"])]
                last_user["content"] = content + extra
        return wire

    async def generate(
        self,
        messages: Sequence[Message],
        images: Optional[Sequence[str]] = None,
        audio: Union[str, Dict[str, Any], AudioPart, None] = None,
        tools_enabled: bool = False,
    ) -> AsyncGenerator[GenerationChunk, None]:
        """
        Run one streaming round

        Yields delta chunks, then (when tools are enabled and the text holds
        call markup) one chunk carrying tool_calls, then exactly one
        finished chunk with the round's full audio and usage.

        Raises:
            LLMTransportError: transport failures propagate to the caller
        """
        wire = self.build_wire_messages(messages, images, audio)
        full_text = ""
        audio_chunks: List[str] = []
        usage: Optional[Usage] = None
        chunk_count = 0

        async for raw in self.transport.stream(wire, self.audio_output):
            chunk_usage = Usage.from_dict(raw.get("usage"))
            if chunk_usage is not None:
                usage = chunk_usage

            for choice in raw.get("choices") or []:
                text, audio_delta = decode_choice(choice)
                if not text and not audio_delta:
                    continue
                chunk_count += 1
                full_text += text
                if audio_delta:
                    audio_chunks.append(audio_delta)
                yield GenerationChunk(text=text, audio=audio_delta or None)

        logger.debug(f"Round complete ({chunk_count} deltas, {len(full_text)} chars)")

        if tools_enabled and self.tools.get_all_tools() and has_tool_call_tags(full_text):
            result = parse_tool_calls(full_text)
            if result.has_tool_calls:
                yield GenerationChunk(tool_calls=to_wire_tool_calls(result.tool_calls), usage=usage)

        yield GenerationChunk(
            finished=True,
            audio=join_base64_audio(audio_chunks) if audio_chunks else None,
            usage=usage,
        )

    async def _run_tool(self, call: ToolCall, hooks: ToolCallLifecycleHooks) -> ToolResponse:
        if hooks.on_start:
            hooks.on_start(call)
        try:
            result = await self.tools.execute_tool(call.name, call.arguments)
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}")
            if hooks.on_error:
                hooks.on_error(call, e)
            return ToolResponse(call.id, call.name, {"error": str(e)}, is_error=True)

        if hooks.on_success:
            hooks.on_success(call, result)
        return ToolResponse(call.id, call.name, result)

    async def process_tool_calls(
        self,
        tool_calls: Sequence[Union[ToolCall, WireToolCall]],
        messages: Sequence[Message],
        hooks: Optional[ToolCallLifecycleHooks] = None,
        original_text: str = "",
        round_index: int = 1,
        usage: Optional[Usage] = None,
    ) -> AsyncGenerator[GenerationChunk, None]:
        """
        Execute tool calls in order, feed results back and stream the follow-up

        Yields one chunk carrying tool_results_text, then the follow-up
        round's chunks. A follow-up that requests more tools yields its
        tool_calls chunk and is handled recursively. Stops after the first
        finished chunk, whose usage is merged across all rounds.
        """
        hooks = hooks or ToolCallLifecycleHooks()
        calls = [from_wire_tool_call(call) for call in tool_calls]
        logger.info(f"🔧 Tool round {round_index}: {summarize_tool_calls(calls)}")

        responses = []
        for call in calls:
            responses.append(await self._run_tool(call, hooks))

        results_text = "\n\n".join(r.to_text() for r in responses) + "\n\n" + TOOL_FOLLOWUP_INSTRUCTION
        follow_up = repair_message_order([
            *messages,
            Message(role="assistant", content=[TextPart(original_text)], tool_calls=to_wire_tool_calls(calls)),
            Message(role="user", content=[TextPart(results_text)]),
        ])
        yield GenerationChunk(tool_results_text=results_text)

        tools_next = round_index < self.max_tool_rounds
        if not tools_next:
            logger.warning(f"Tool round cap ({self.max_tool_rounds}) reached, follow-up runs without tools")

        segment_text = ""
        async for chunk in self.generate(follow_up, tools_enabled=tools_next):
            if chunk.tool_calls:
                yield chunk
                async for nested in self.process_tool_calls(
                    chunk.tool_calls,
                    follow_up,
                    hooks,
                    segment_text,
                    round_index + 1,
                    (usage or Usage()).merge(chunk.usage),
                ):
                    yield nested
                return
            if chunk.finished:
                merged = (usage or Usage()).merge(chunk.usage) if (usage or chunk.usage) else None
                yield GenerationChunk(finished=True, audio=chunk.audio, usage=merged)
                return
            segment_text += chunk.text
            yield chunk
