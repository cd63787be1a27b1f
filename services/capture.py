"""
Capture collaborator contracts

The orchestrator only needs start/stop, a per-frame volume (0-100), the
raw audio frames and an on-demand screen snapshot. Push implementations
are fed by an external producer such as a websocket client.
"""
import base64
from typing import Optional, Protocol

from core.events import Signal
from core.logger import setup_logger
from services.audio import pcm16_volume

logger = setup_logger(__name__)


class CaptureError(RuntimeError):
    """Capture device unavailable or permission denied"""

    def __init__(self, message: str, permission_denied: bool = False):
        super().__init__(message)
        self.permission_denied = permission_denied


class AudioCapture(Protocol):
    volume: Signal[[float]]
    audio_data: Signal[[str]]
    error: Signal[[CaptureError]]
    is_capturing: bool

    async def start_capture(self) -> None: ...

    async def stop_capture(self) -> None: ...


class ScreenCapture(Protocol):
    is_capturing: bool

    async def start_capture(self) -> None: ...

    async def stop_capture(self) -> None: ...

    async def take_snapshot(self) -> Optional[str]: ...


class AudioSink(Protocol):
    def play(self, audio: str) -> None: ...

    def stop(self) -> None: ...


class PushAudioCapture:
    """Audio capture fed frame by frame from outside"""

    def __init__(self):
        self.is_capturing = False
        self.volume: Signal[[float]] = Signal("volume")
        self.audio_data: Signal[[str]] = Signal("audio_data")
        self.error: Signal[[CaptureError]] = Signal("capture_error")

    async def start_capture(self) -> None:
        self.is_capturing = True
        logger.info("Push audio capture started")

    async def stop_capture(self) -> None:
        self.is_capturing = False
        logger.info("Push audio capture stopped")

    def push_volume(self, volume: float):
        if self.is_capturing:
            self.volume.emit(volume)

    def push_audio(self, chunk: str):
        """Push one base64 PCM16 frame"""
        if self.is_capturing:
            self.audio_data.emit(chunk)

    def push_pcm(self, pcm: bytes):
        """Push a raw PCM16 frame and derive its volume from the samples"""
        if self.is_capturing:
            self.volume.emit(pcm16_volume(pcm))
            self.audio_data.emit(base64.b64encode(pcm).decode("ascii"))

    def fail(self, error: CaptureError):
        """Report a device failure from the producer side"""
        self.is_capturing = False
        self.error.emit(error)


class PushScreenCapture:
    """Screen capture whose snapshots are pushed from outside"""

    def __init__(self):
        self.is_capturing = False
        self._latest: Optional[str] = None

    async def start_capture(self) -> None:
        self.is_capturing = True

    async def stop_capture(self) -> None:
        self.is_capturing = False
        self._latest = None

    def push_snapshot(self, image: str):
        self._latest = image

    async def take_snapshot(self) -> Optional[str]:
        return self._latest if self.is_capturing else None
