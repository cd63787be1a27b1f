"""
Local device adapters: microphone (PyAudio), display (mss + Pillow) and speaker playback
"""
import asyncio
import base64
import io
import queue
import threading
from typing import Optional

import mss
import mss.exception
import pyaudio
from PIL import Image

from core.config import settings
from core.events import Signal
from core.logger import setup_logger
from services.audio import pcm16_volume
from services.capture import CaptureError

logger = setup_logger(__name__)

FORMAT = pyaudio.paInt16
CHANNELS = 1


class MicrophoneCapture:
    """Reads PCM16 frames from the default input device"""

    def __init__(
        self,
        sample_rate: Optional[int] = None,
        chunk_size: Optional[int] = None,
        input_device: Optional[int] = None,
    ):
        self.sample_rate = sample_rate or settings.AUDIO_SAMPLE_RATE
        self.chunk_size = chunk_size or settings.AUDIO_CHUNK_SIZE
        self.input_device = input_device
        self.is_capturing = False
        self.volume: Signal[[float]] = Signal("volume")
        self.audio_data: Signal[[str]] = Signal("audio_data")
        self.error: Signal[[CaptureError]] = Signal("capture_error")
        self._pya = pyaudio.PyAudio()
        self._stream = None
        self._task: Optional[asyncio.Task] = None

    async def start_capture(self) -> None:
        if self.is_capturing:
            return
        try:
            self._stream = await asyncio.to_thread(
                self._pya.open,
                format=FORMAT,
                channels=CHANNELS,
                rate=self.sample_rate,
                input=True,
                input_device_index=self.input_device,
                frames_per_buffer=self.chunk_size,
            )
        except OSError as e:
            raise CaptureError(f"Microphone unavailable: {e}") from e

        self.is_capturing = True
        self._task = asyncio.get_running_loop().create_task(self._read_loop())
        logger.info(f"🎤 Microphone opened at {self.sample_rate}Hz")

    async def _read_loop(self):
        while self.is_capturing:
            try:
                data = await asyncio.to_thread(
                    self._stream.read, self.chunk_size, exception_on_overflow=False
                )
            except OSError as e:
                logger.error(f"Microphone read failed: {e}")
                self.is_capturing = False
                self.error.emit(CaptureError(f"Microphone read failed: {e}"))
                return
            self.volume.emit(pcm16_volume(data))
            self.audio_data.emit(base64.b64encode(data).decode("ascii"))

    async def stop_capture(self) -> None:
        self.is_capturing = False
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._stream is not None:
            self._stream.stop_stream()
            self._stream.close()
            self._stream = None
        logger.info("Microphone closed")

    def terminate(self):
        self._pya.terminate()


class DisplayCapture:
    """Grabs the primary monitor as a JPEG data URL"""

    def __init__(
        self,
        quality: Optional[float] = None,
        max_width: int = 1280,
        monitor: int = 1,
    ):
        self.quality = quality if quality is not None else settings.SCREENSHOT_QUALITY
        self.max_width = max_width
        self.monitor = monitor
        self.is_capturing = False

    async def start_capture(self) -> None:
        # One probe grab surfaces missing display access before the timer starts
        await asyncio.to_thread(self._grab)
        self.is_capturing = True

    async def stop_capture(self) -> None:
        self.is_capturing = False

    async def take_snapshot(self) -> Optional[str]:
        if not self.is_capturing:
            return None
        return await asyncio.to_thread(self._grab)

    def _grab(self) -> str:
        try:
            with mss.mss() as sct:
                monitors = sct.monitors
                monitor = monitors[self.monitor] if self.monitor < len(monitors) else monitors[0]
                shot = sct.grab(monitor)
        except mss.exception.ScreenShotError as e:
            raise CaptureError(f"Screen capture failed: {e}", permission_denied=True) from e

        img = Image.frombytes("RGB", shot.size, shot.rgb)
        if img.width > self.max_width:
            ratio = self.max_width / img.width
            img = img.resize((self.max_width, int(img.height * ratio)))

        image_io = io.BytesIO()
        img.save(image_io, format="jpeg", quality=int(self.quality * 100))
        image_b64 = base64.b64encode(image_io.getvalue()).decode("ascii")
        return f"data:image/jpeg;base64,{image_b64}"


class SpeakerSink:
    """Plays base64 PCM16 reply audio on a background thread"""

    def __init__(self, sample_rate: Optional[int] = None):
        self.sample_rate = sample_rate or settings.PLAYBACK_SAMPLE_RATE
        self._pya = pyaudio.PyAudio()
        self._queue: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._stream = self._pya.open(
            format=FORMAT,
            channels=CHANNELS,
            rate=self.sample_rate,
            output=True,
        )
        self._thread = threading.Thread(target=self._playback_loop, daemon=True)
        self._thread.start()

    def _playback_loop(self):
        while True:
            data = self._queue.get()
            if data is None:
                break
            self._stream.write(data)

    def play(self, audio: str) -> None:
        self._queue.put(base64.b64decode(audio))

    def stop(self) -> None:
        """Drop queued audio that has not been played yet"""
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    def close(self):
        self.stop()
        self._queue.put(None)
        self._thread.join(timeout=2)
        self._stream.stop_stream()
        self._stream.close()
        self._pya.terminate()
