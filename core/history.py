"""
Bounded conversation history with multimodal normalization

The window never evicts the system message: when the size cap is exceeded
the system message is pulled out, the tail is kept and the system message
is put back at index 0.
"""
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from core.config import settings
from core.logger import setup_logger
from core.messages import (
    AudioPart,
    ImagePart,
    Message,
    Role,
    TextPart,
    WireToolCall,
    normalize_audio_data,
)

logger = setup_logger(__name__)

MESSAGE_TYPES = ("text", "audio", "image", "tool")


@dataclass(frozen=True)
class ChatMessage:
    """A stored history record"""
    role: Role
    content: str
    type: str = "text"
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    timestamp: float = field(default_factory=time.time)
    tool_calls: Optional[List[WireToolCall]] = None
    tool_call_id: Optional[str] = None
    audio_data: Optional[AudioPart] = None
    image_data: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "type": self.type,
        }
        if self.tool_calls:
            record["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            record["toolCallId"] = self.tool_call_id
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ChatMessage":
        tool_calls = record.get("toolCalls")
        return cls(
            id=str(record["id"]),
            role=record["role"],
            content=str(record["content"]),
            type=record.get("type", "text"),
            timestamp=float(record.get("timestamp") or time.time()),
            tool_calls=[WireToolCall.from_dict(tc) for tc in tool_calls] if tool_calls else None,
            tool_call_id=record.get("toolCallId"),
        )


def _valid_tool_calls(tool_calls: Any) -> bool:
    if tool_calls is None:
        return True
    if not isinstance(tool_calls, list):
        return False
    return all(
        isinstance(tc, dict) and isinstance(tc.get("function") or {}, dict)
        for tc in tool_calls
    )


class ConversationHistory:
    """Ordered message store with a sliding window that protects the system message"""

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size or settings.MAX_CONVERSATION_HISTORY
        if self.max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._messages: List[ChatMessage] = []
        logger.debug(f"ConversationHistory created (max_size: {self.max_size})")

    def __len__(self) -> int:
        return len(self._messages)

    def add_message(
        self,
        role: Role,
        content: str,
        type: str = "text",
        tool_calls: Optional[List[WireToolCall]] = None,
        tool_call_id: Optional[str] = None,
        audio_data: Union[str, Dict[str, Any], AudioPart, None] = None,
        image_data: Optional[str] = None,
    ) -> ChatMessage:
        """Append a message and apply the eviction policy"""
        if type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown message type: {type}")

        audio = normalize_audio_data(audio_data) if audio_data is not None else None
        message = ChatMessage(
            role=role,
            content=content,
            type=type,
            tool_calls=list(tool_calls) if tool_calls else None,
            tool_call_id=tool_call_id,
            audio_data=audio,
            image_data=image_data,
        )
        self._messages.append(message)
        self._trim()
        logger.debug(f"Added {role}/{type} message ({len(self._messages)}/{self.max_size})")
        return message

    def add_user_message(
        self,
        content: str,
        audio_data: Union[str, Dict[str, Any], AudioPart, None] = None,
        image_data: Optional[str] = None,
    ) -> ChatMessage:
        if audio_data is not None:
            msg_type = "audio"
        elif image_data is not None:
            msg_type = "image"
        else:
            msg_type = "text"
        return self.add_message("user", content, msg_type, audio_data=audio_data, image_data=image_data)

    def add_assistant_message(
        self,
        content: str,
        tool_calls: Optional[List[WireToolCall]] = None,
    ) -> ChatMessage:
        return self.add_message("assistant", content, "text", tool_calls=tool_calls)

    def add_tool_message(self, content: str, tool_call_id: Optional[str] = None) -> ChatMessage:
        # Tool results go back to the model as user turns
        return self.add_message("user", content, "tool", tool_call_id=tool_call_id)

    def get_messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def get_system_message(self) -> Optional[ChatMessage]:
        for message in self._messages:
            if message.role == "system":
                return message
        return None

    def set_system_message(self, content: str) -> ChatMessage:
        """Replace the system message, or insert one at index 0"""
        system = ChatMessage(role="system", content=content)
        self._messages = [m for m in self._messages if m.role != "system"]
        self._messages.insert(0, system)
        self._trim()
        return system

    def get_messages_for_llm(
        self,
        include_history_images: Optional[bool] = None,
        include_history_audio: Optional[bool] = None,
    ) -> List[Message]:
        """Project stored records into wire messages"""
        if include_history_images is None:
            include_history_images = settings.SEND_HISTORY_IMAGES
        if include_history_audio is None:
            include_history_audio = settings.SEND_HISTORY_AUDIO

        projected = []
        for record in self._messages:
            parts: list = [TextPart(record.content)]
            if record.role == "user":
                if include_history_images and record.image_data:
                    parts.append(ImagePart(record.image_data))
                if include_history_audio and record.audio_data:
                    parts.append(record.audio_data)
            projected.append(Message(
                role=record.role,
                content=parts,
                tool_calls=list(record.tool_calls) if record.tool_calls else None,
                tool_call_id=record.tool_call_id,
            ))
        return projected

    def set_max_history_size(self, size: int):
        if size < 1:
            raise ValueError("History size must be at least 1")
        self.max_size = size
        self._trim()
        logger.info(f"History size set to {size}")

    def get_max_history_size(self) -> int:
        return self.max_size

    def remove_message(self, message_id: str) -> bool:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                del self._messages[index]
                return True
        return False

    def clear(self):
        self._messages.clear()

    def export_history(self) -> str:
        """Serialize the history as a JSON array of records"""
        return json.dumps([m.to_record() for m in self._messages], ensure_ascii=False)

    def import_history(self, payload: Union[str, List[Any], Dict[str, Any]]) -> bool:
        """
        Replace the history from an exported payload

        Accepts the exported JSON array or an object with "id" and "messages".
        Returns False and leaves the current history untouched when the
        payload is malformed.
        """
        try:
            data = json.loads(payload) if isinstance(payload, str) else payload
        except json.JSONDecodeError as e:
            logger.warning(f"History import rejected, invalid JSON: {e}")
            return False

        if isinstance(data, dict):
            if "id" not in data or not isinstance(data.get("messages"), list):
                logger.warning("History import rejected, missing id/messages")
                return False
            records = data["messages"]
        elif isinstance(data, list):
            records = data
        else:
            logger.warning("History import rejected, unsupported payload")
            return False

        imported = []
        for record in records:
            if not isinstance(record, dict) or not all(k in record for k in ("id", "role", "content")):
                logger.warning("History import rejected, record missing id/role/content")
                return False
            if record["role"] not in ("system", "user", "assistant"):
                logger.warning(f"History import rejected, unknown role {record['role']}")
                return False
            if not _valid_tool_calls(record.get("toolCalls")):
                logger.warning("History import rejected, toolCalls must be a list of objects")
                return False
            try:
                imported.append(ChatMessage.from_record(record))
            except (TypeError, ValueError) as e:
                logger.warning(f"History import rejected: {e}")
                return False

        self._messages = imported
        self._trim()
        logger.info(f"Imported {len(imported)} history messages")
        return True

    def _trim(self):
        if len(self._messages) <= self.max_size:
            return

        system_index = next(
            (i for i, m in enumerate(self._messages) if m.role == "system"), None
        )
        if system_index is None:
            self._messages = self._messages[-self.max_size:]
            return

        system = self._messages.pop(system_index)
        keep = self.max_size - 1
        self._messages = self._messages[-keep:] if keep > 0 else []
        self._messages.insert(0, system)
