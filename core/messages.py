"""
Conversation data model shared by history, LLM and agent layers

Content parts are a tagged union (text, image, audio, video). The wire
encode/decode points are part_to_wire and part_from_wire; nothing else
inspects raw OpenAI-style content dictionaries.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from core.logger import setup_logger

logger = setup_logger(__name__)

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ImagePart:
    url: str
    type: Literal["image"] = "image"


@dataclass(frozen=True)
class AudioPart:
    data: str
    format: str = "wav"
    type: Literal["audio"] = "audio"


@dataclass(frozen=True)
class VideoPart:
    url: str
    type: Literal["video"] = "video"


ContentPart = Union[TextPart, ImagePart, AudioPart, VideoPart]


def part_to_wire(part: ContentPart) -> Dict[str, Any]:
    """Encode a content part into the chat-completions content shape"""
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": part.url}}
    if isinstance(part, AudioPart):
        return {"type": "input_audio", "input_audio": {"data": part.data, "format": part.format}}
    if isinstance(part, VideoPart):
        return {"type": "video_url", "video_url": {"url": part.url}}
    raise TypeError(f"Unknown content part: {part!r}")


def part_from_wire(raw: Dict[str, Any]) -> ContentPart:
    """Decode a chat-completions content dictionary into a content part"""
    kind = raw.get("type")
    if kind == "text":
        return TextPart(text=raw.get("text") or "")
    if kind == "image_url":
        return ImagePart(url=raw["image_url"]["url"])
    if kind == "input_audio":
        audio = raw["input_audio"]
        return AudioPart(data=audio["data"], format=audio.get("format", "wav"))
    if kind == "video_url":
        return VideoPart(url=raw["video_url"]["url"])
    raise ValueError(f"Unknown content part type: {kind}")


@dataclass
class ToolCall:
    """A parsed tool invocation request"""
    id: str
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass
class WireToolCall:
    """Tool call as attached to an assistant message (arguments serialized as JSON)"""
    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "WireToolCall":
        function = raw.get("function") or {}
        return cls(
            id=str(raw.get("id", "")),
            name=function.get("name", raw.get("name", "")),
            arguments=function.get("arguments", raw.get("arguments", "{}")),
        )


@dataclass
class Message:
    """One message in the form sent to the model"""
    role: Role
    content: List[ContentPart] = field(default_factory=list)
    tool_calls: Optional[List[WireToolCall]] = None
    tool_call_id: Optional[str] = None

    def __post_init__(self):
        if not self.content:
            self.content = [TextPart("")]

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {
            "role": self.role,
            "content": [part_to_wire(p) for p in self.content],
        }
        if self.tool_calls:
            wire["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            wire["tool_call_id"] = self.tool_call_id
        return wire


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def merge(self, other: Optional["Usage"]) -> "Usage":
        if other is None:
            return Usage(self.prompt_tokens, self.completion_tokens, self.total_tokens)
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["Usage"]:
        if not raw:
            return None
        return cls(
            prompt_tokens=int(raw.get("prompt_tokens") or 0),
            completion_tokens=int(raw.get("completion_tokens") or 0),
            total_tokens=int(raw.get("total_tokens") or 0),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class GenerationChunk:
    """Unit emitted by the streaming LLM handler"""
    text: str = ""
    audio: Optional[str] = None
    finished: bool = False
    usage: Optional[Usage] = None
    tool_calls: Optional[List[WireToolCall]] = None
    tool_results_text: Optional[str] = None


@dataclass
class AgentResponse:
    """A generation chunk plus the assistant text accumulated so far"""
    chunk: GenerationChunk
    accumulated_text: str = ""

    @property
    def text(self) -> str:
        return self.chunk.text

    @property
    def audio(self) -> Optional[str]:
        return self.chunk.audio

    @property
    def finished(self) -> bool:
        return self.chunk.finished

    @property
    def usage(self) -> Optional[Usage]:
        return self.chunk.usage


_DATA_URL_RE = re.compile(r"^data:([^;,]*);base64,(.*)$", re.DOTALL)
_RAW_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")


def normalize_audio_data(audio: Union[str, Dict[str, Any], None]) -> Optional[AudioPart]:
    """
    Normalize an audio payload into an AudioPart

    Accepts data:audio/<subtype>;base64,... URLs, the bare data:;base64,...
    form, raw base64 strings and {data, format} dictionaries. Returns None
    (with a warning) for anything unrecognized.
    """
    if audio is None:
        return None

    if isinstance(audio, AudioPart):
        return audio

    if isinstance(audio, dict):
        data = audio.get("data")
        if not isinstance(data, str) or not data:
            logger.warning("Dropping audio payload without data")
            return None
        fmt = str(audio.get("format") or "wav")
        return AudioPart(data=data, format="mp3" if fmt in ("mp3", "mpeg") else fmt)

    if not isinstance(audio, str) or not audio:
        logger.warning(f"Dropping unsupported audio payload type: {type(audio).__name__}")
        return None

    match = _DATA_URL_RE.match(audio)
    if match:
        mime, payload = match.groups()
        subtype = mime.split("/", 1)[-1].lower() if mime else ""
        fmt = "mp3" if ("mp3" in subtype or "mpeg" in subtype) else "wav"
        return AudioPart(data=payload, format=fmt)

    if _RAW_BASE64_RE.match(audio):
        return AudioPart(data=audio, format="wav")

    logger.warning(f"Dropping audio payload in unrecognized format ({audio[:20]}...)")
    return None


def ensure_data_url(data: str, mime: str) -> str:
    """Prefix bare base64 with a data URL header for the given mime type"""
    if data.startswith("data:") or data.startswith("http://") or data.startswith("https://"):
        return data
    return f"data:{mime};base64,{data}"
