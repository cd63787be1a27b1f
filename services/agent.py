"""
Conversational agent - one turn API over history and the streaming LLM

Each turn's multimodal content travels in a TurnRequest passed down the
call chain; the agent keeps no per-turn instance state.
"""
from dataclasses import dataclass, field, fields
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Union

from core.config import settings
from core.events import Signal
from core.history import ConversationHistory
from core.logger import setup_logger
from core.messages import (
    AgentResponse,
    AudioPart,
    ContentPart,
    GenerationChunk,
    ImagePart,
    Message,
    TextPart,
    ToolCall,
    VideoPart,
    ensure_data_url,
    normalize_audio_data,
)
from services.llm import StreamingLLM, ToolCallLifecycleHooks
from tools.parser import parse_tool_calls
from tools.tool_system import Tool, ToolManager

logger = setup_logger(__name__)

AudioInput = Union[str, Dict[str, Any], AudioPart]


@dataclass
class AgentConfig:
    name: str = "AI Assistant"
    description: str = "A helpful AI assistant"
    system_prompt: str = ""
    max_history_size: int = 30
    tools_enabled: bool = True
    send_history_images: bool = False
    send_history_audio: bool = False

    @classmethod
    def from_settings(cls) -> "AgentConfig":
        return cls(
            name=settings.AGENT_NAME,
            description=settings.AGENT_DESCRIPTION,
            system_prompt=settings.SYSTEM_PROMPT,
            max_history_size=settings.MAX_CONVERSATION_HISTORY,
            tools_enabled=settings.ENABLE_TOOLS,
            send_history_images=settings.SEND_HISTORY_IMAGES,
            send_history_audio=settings.SEND_HISTORY_AUDIO,
        )


@dataclass
class TurnRequest:
    """Content of a single user turn"""
    text: str = ""
    images: List[str] = field(default_factory=list)
    videos: List[str] = field(default_factory=list)
    audios: List[AudioPart] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        text: str = "",
        images: Optional[Iterable[str]] = None,
        videos: Optional[Iterable[str]] = None,
        audios: Optional[Iterable[AudioInput]] = None,
    ) -> "TurnRequest":
        normalized = []
        for audio in audios or []:
            part = normalize_audio_data(audio)
            if part is not None:
                normalized.append(part)
        return cls(
            text=text or "",
            images=[ensure_data_url(i, "image/jpeg") for i in images or [] if i],
            videos=[ensure_data_url(v, "video/mp4") for v in videos or [] if v],
            audios=normalized,
        )

    @property
    def content_parts(self) -> List[ContentPart]:
        parts: List[ContentPart] = [TextPart(self.text)]
        parts.extend(ImagePart(url) for url in self.images)
        parts.extend(VideoPart(url) for url in self.videos)
        parts.extend(self.audios)
        return parts

    @property
    def is_multimodal(self) -> bool:
        return bool(self.images or self.videos or self.audios)


class Agent:
    """Wraps ConversationHistory and StreamingLLM into a turn-level API"""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        llm: Optional[StreamingLLM] = None,
        tools: Optional[ToolManager] = None,
    ):
        self.config = config or AgentConfig.from_settings()
        self.llm = llm or StreamingLLM(tools=tools)
        self.history = ConversationHistory(self.config.max_history_size)
        if self.config.system_prompt:
            self.history.set_system_message(self.config.system_prompt)

        self.response_started: Signal[[TurnRequest]] = Signal("response_started")
        self.response_chunk: Signal[[AgentResponse]] = Signal("response_chunk")
        self.response_completed: Signal[[AgentResponse]] = Signal("response_completed")
        self.response_error: Signal[[Exception]] = Signal("response_error")
        self.tool_call_started: Signal[[ToolCall]] = Signal("tool_call_started")
        self.tool_call_completed: Signal[[ToolCall, Any]] = Signal("tool_call_completed")
        self.tool_call_failed: Signal[[ToolCall, Exception]] = Signal("tool_call_failed")

        logger.info(f"Agent '{self.config.name}' initialized (history: {self.config.max_history_size})")

    @property
    def tools(self) -> ToolManager:
        return self.llm.tools

    # === Turn API ===

    async def send_text_message(self, text: str) -> AgentResponse:
        return await self._complete(TurnRequest.build(text=text))

    async def send_multimodal_message(
        self,
        text: str = "",
        images: Optional[Iterable[str]] = None,
        videos: Optional[Iterable[str]] = None,
        audio: Optional[AudioInput] = None,
        audios: Optional[Iterable[AudioInput]] = None,
    ) -> AgentResponse:
        all_audios = ([audio] if audio is not None else []) + list(audios or [])
        return await self._complete(TurnRequest.build(text, images, videos, all_audios))

    async def generate(
        self,
        user_input: str,
        images: Optional[Iterable[str]] = None,
        audio: Optional[AudioInput] = None,
    ) -> AsyncGenerator[AgentResponse, None]:
        """Stream the response to one user turn"""
        request = TurnRequest.build(user_input, images, None, [audio] if audio is not None else None)
        async for response in self.stream_turn(request):
            yield response

    async def _complete(self, request: TurnRequest) -> AgentResponse:
        final = None
        async for response in self.stream_turn(request):
            final = response
        return final

    async def stream_turn(self, request: TurnRequest) -> AsyncGenerator[AgentResponse, None]:
        """Record the user turn, then stream and persist the model's reply"""
        self.history.add_user_message(
            request.text,
            audio_data=request.audios[0] if request.audios else None,
            image_data=request.images[0] if request.images else None,
        )
        async for response in self._stream_response(request):
            yield response

    # === Streaming ===

    def _build_messages(self, request: TurnRequest) -> List[Message]:
        messages = self.history.get_messages_for_llm(
            self.config.send_history_images,
            self.config.send_history_audio,
        )
        system_prompt = self._system_prompt_for_model()
        if messages and messages[0].role == "system":
            messages[0] = Message(role="system", content=[TextPart(system_prompt)])
        elif system_prompt:
            messages.insert(0, Message(role="system", content=[TextPart(system_prompt)]))

        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == "user":
                messages[index] = Message(role="user", content=request.content_parts)
                break
        else:
            # A window of one keeps only the system message
            messages.append(Message(role="user", content=request.content_parts))
        return messages

    def _system_prompt_for_model(self) -> str:
        prompt = self.config.system_prompt
        if self.config.tools_enabled:
            prompt += self.tools.get_tools_prompt()
        return prompt

    def _hooks(self) -> ToolCallLifecycleHooks:
        return ToolCallLifecycleHooks(
            on_start=self.tool_call_started.emit,
            on_success=self.tool_call_completed.emit,
            on_error=self.tool_call_failed.emit,
        )

    async def _round_chunks(self, messages: List[Message]) -> AsyncGenerator[GenerationChunk, None]:
        round_text = ""
        async for chunk in self.llm.generate(messages, tools_enabled=self.config.tools_enabled):
            if chunk.tool_calls:
                yield chunk
                async for follow_up in self.llm.process_tool_calls(
                    chunk.tool_calls,
                    messages,
                    self._hooks(),
                    original_text=round_text,
                    usage=chunk.usage,
                ):
                    yield follow_up
                return
            if not chunk.finished:
                round_text += chunk.text
            yield chunk

    async def _stream_response(self, request: TurnRequest) -> AsyncGenerator[AgentResponse, None]:
        self.response_started.emit(request)
        accumulated = ""
        segment = ""
        tools_involved = False

        try:
            async for chunk in self._round_chunks(self._build_messages(request)):
                if chunk.tool_calls:
                    # Text produced before a tool round is kept with its calls
                    self.history.add_assistant_message(segment, tool_calls=chunk.tool_calls)
                    segment = ""
                    tools_involved = True
                elif chunk.tool_results_text is not None:
                    self.history.add_tool_message(chunk.tool_results_text)
                elif chunk.finished:
                    if segment or not tools_involved:
                        self.history.add_assistant_message(segment)
                    segment = ""
                    final_text = parse_tool_calls(accumulated).cleaned_text if tools_involved else accumulated
                    response = AgentResponse(chunk, final_text)
                    logger.info(f"✅ Response complete ({len(final_text)} chars)")
                    self.response_completed.emit(response)
                    yield response
                    return
                else:
                    segment += chunk.text
                    accumulated += chunk.text

                response = AgentResponse(chunk, accumulated)
                self.response_chunk.emit(response)
                yield response
        except Exception as e:
            logger.error(f"Response failed: {e}")
            if segment:
                self.history.add_assistant_message(segment)
            self.response_error.emit(e)
            raise

    # === Configuration ===

    def set_tools_enabled(self, enabled: bool):
        self.config.tools_enabled = enabled
        logger.info(f"Tools {'enabled' if enabled else 'disabled'}")

    def register_tools(self, tools: Iterable[Tool]):
        for tool in tools:
            self.tools.register_tool(tool)

    def clear_conversation_history(self):
        self.history.clear()
        if self.config.system_prompt:
            self.history.set_system_message(self.config.system_prompt)
        logger.info("Conversation history cleared")

    def update_system_prompt(self, prompt: str):
        self.config.system_prompt = prompt
        self.history.set_system_message(prompt)

    def update_config(self, **changes):
        known = {f.name for f in fields(AgentConfig)}
        for key, value in changes.items():
            if key not in known:
                raise ValueError(f"Unknown agent config field: {key}")
            if key == "system_prompt":
                self.update_system_prompt(value)
            elif key == "max_history_size":
                self.set_max_history_size(value)
            else:
                setattr(self.config, key, value)

    def set_max_history_size(self, size: int):
        self.config.max_history_size = size
        self.history.set_max_history_size(size)

    def get_max_history_size(self) -> int:
        return self.history.get_max_history_size()

    def get_info(self) -> Dict[str, Any]:
        return {
            "name": self.config.name,
            "description": self.config.description,
            "tools_enabled": self.config.tools_enabled,
            "tools": [tool.name for tool in self.tools.get_all_tools()],
            "history_size": len(self.history),
            "max_history_size": self.history.get_max_history_size(),
        }

    def export_history(self) -> str:
        return self.history.export_history()

    def import_history(self, payload: Union[str, List[Any], Dict[str, Any]]) -> bool:
        if not self.history.import_history(payload):
            return False
        if self.history.get_system_message() is None and self.config.system_prompt:
            self.history.set_system_message(self.config.system_prompt)
        return True

    def dispose(self):
        for signal in (
            self.response_started, self.response_chunk, self.response_completed,
            self.response_error, self.tool_call_started, self.tool_call_completed,
            self.tool_call_failed,
        ):
            signal.clear()
        self.history.clear()
        logger.info(f"Agent '{self.config.name}' disposed")
