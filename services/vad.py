"""
Voice Activity Detection from a 0-100 volume stream

Speech is any frame strictly above the threshold. A voice segment starts
on the first loud frame and stops once the volume has stayed at or below
the threshold for the configured silence duration.
"""
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from core.config import settings
from core.events import Signal
from core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class VADConfig:
    """Configuration for voice activity detection"""
    threshold: float = 5.0  # 0-100 volume scale
    silence_duration_ms: int = 800

    @classmethod
    def from_settings(cls) -> "VADConfig":
        return cls(
            threshold=settings.VAD_THRESHOLD,
            silence_duration_ms=settings.VAD_SILENCE_DURATION_MS,
        )


@dataclass
class VadState:
    is_voice_active: bool = False
    last_voice_timestamp: Optional[float] = None
    current_volume: float = 0.0


def clamp_volume(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


class VoiceActivityDetector:
    """Turns volume samples into voice start/stop events"""

    def __init__(
        self,
        config: Optional[VADConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or VADConfig.from_settings()
        self.config.threshold = clamp_volume(self.config.threshold)
        self._clock = clock
        self._state = VadState()
        self._volume_source: Optional[Callable[[], float]] = None
        self.is_initialized = False
        self.is_detecting = False

        self.voice_started: Signal[[float]] = Signal("voice_started")
        self.voice_stopped: Signal[[float]] = Signal("voice_stopped")
        self.volume_changed: Signal[[float]] = Signal("volume_changed")

        logger.debug(
            f"VAD created (threshold: {self.config.threshold}, "
            f"silence: {self.config.silence_duration_ms}ms)"
        )

    @property
    def state(self) -> VadState:
        return replace(self._state)

    @property
    def is_voice_active(self) -> bool:
        return self._state.is_voice_active

    def initialize(self, volume_source: Optional[Callable[[], float]] = None):
        """Attach an optional pull-based volume source"""
        self._volume_source = volume_source
        self.is_initialized = True
        logger.info("VAD initialized")

    def start_detection(self):
        if not self.is_initialized:
            raise RuntimeError("VAD not initialized")
        if self.is_detecting:
            return
        self._state = VadState()
        self.is_detecting = True
        logger.info("VAD detection started")

    def stop_detection(self):
        if not self.is_detecting:
            return
        if self._state.is_voice_active:
            self._state.is_voice_active = False
            self.voice_stopped.emit(self._clock())
        self.is_detecting = False
        logger.info("VAD detection stopped")

    def poll(self):
        """Read one frame from the attached volume source"""
        if self._volume_source is None:
            raise RuntimeError("VAD has no volume source")
        self.process_volume(self._volume_source())

    def process_volume(self, volume: float):
        if not self.is_detecting:
            return

        volume = clamp_volume(volume)
        now = self._clock()
        self._state.current_volume = volume
        self.volume_changed.emit(volume)

        if volume > self.config.threshold:
            if not self._state.is_voice_active:
                self._state.is_voice_active = True
                self._state.last_voice_timestamp = now
                logger.debug(f"🎤 Voice started (volume: {volume:.1f})")
                self.voice_started.emit(now)
            else:
                self._state.last_voice_timestamp = now
            return

        if self._state.is_voice_active and self._state.last_voice_timestamp is not None:
            silent_ms = (now - self._state.last_voice_timestamp) * 1000
            if silent_ms >= self.config.silence_duration_ms:
                self._state.is_voice_active = False
                logger.debug(f"🔇 Voice stopped after {silent_ms:.0f}ms of silence")
                self.voice_stopped.emit(now)

    def update_config(
        self,
        threshold: Optional[float] = None,
        silence_duration_ms: Optional[int] = None,
    ):
        if threshold is not None:
            self.config.threshold = clamp_volume(threshold)
        if silence_duration_ms is not None:
            self.config.silence_duration_ms = max(0, int(silence_duration_ms))
        logger.info(
            f"VAD config updated (threshold: {self.config.threshold}, "
            f"silence: {self.config.silence_duration_ms}ms)"
        )

    def dispose(self):
        self.stop_detection()
        self._state = VadState()
        self._volume_source = None
        self.is_initialized = False
        for signal in (self.voice_started, self.voice_stopped, self.volume_changed):
            signal.clear()
        logger.debug("VAD disposed")
