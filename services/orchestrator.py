"""
Voice service orchestrator - top-level state machine

IDLE -> INITIALIZING -> READY -> LISTENING <-> VOICE_ACTIVE -> PROCESSING -> LISTENING
Any state may fall into ERROR, which requires initialize() again.

While PROCESSING the VAD is stopped so the model's own spoken reply cannot
re-trigger capture. When the turn ends the VAD is rebuilt from scratch.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from core.config import settings
from core.events import Signal
from core.logger import setup_logger
from core.messages import AgentResponse
from services.agent import Agent, AudioInput, TurnRequest
from services.audio import combine_audio_chunks
from services.capture import AudioCapture, AudioSink, CaptureError, ScreenCapture
from services.vad import VADConfig, VoiceActivityDetector

logger = setup_logger(__name__)


class ServiceState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    LISTENING = "listening"
    VOICE_ACTIVE = "voice_active"
    PROCESSING = "processing"
    ERROR = "error"


CAPTURE_ACTIVE_STATES = (ServiceState.LISTENING, ServiceState.VOICE_ACTIVE, ServiceState.PROCESSING)


class OrchestratorError(RuntimeError):
    """State machine used out of order"""


@dataclass
class ServiceStatus:
    state: ServiceState
    is_listening: bool
    is_voice_active: bool
    is_processing: bool
    is_recording: bool
    buffered_chunks: int
    screenshots: int
    screen_capture_active: bool
    tools_enabled: bool
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "is_listening": self.is_listening,
            "is_voice_active": self.is_voice_active,
            "is_processing": self.is_processing,
            "is_recording": self.is_recording,
            "buffered_chunks": self.buffered_chunks,
            "screenshots": self.screenshots,
            "screen_capture_active": self.screen_capture_active,
            "tools_enabled": self.tools_enabled,
            "last_error": self.last_error,
        }


class VoiceOrchestrator:
    """Coordinates capture, VAD and agent turns"""

    def __init__(
        self,
        audio_capture: AudioCapture,
        agent: Optional[Agent] = None,
        screen_capture: Optional[ScreenCapture] = None,
        audio_sink: Optional[AudioSink] = None,
        vad_config: Optional[VADConfig] = None,
        voice_start_grace_ms: Optional[int] = None,
        min_audio_chunks: Optional[int] = None,
        finalize_delay_ms: Optional[int] = None,
        screenshot_interval_ms: Optional[int] = None,
        max_screenshots: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._owns_agent = agent is None
        self.agent = agent or Agent()
        self.audio_capture = audio_capture
        self.screen_capture = screen_capture
        self.audio_sink = audio_sink
        self.vad_config = vad_config or VADConfig.from_settings()
        self.voice_start_grace_ms = (
            voice_start_grace_ms if voice_start_grace_ms is not None else settings.VOICE_START_GRACE_MS
        )
        self.min_audio_chunks = min_audio_chunks if min_audio_chunks is not None else settings.MIN_AUDIO_CHUNKS
        self.finalize_delay_ms = finalize_delay_ms if finalize_delay_ms is not None else settings.FINALIZE_DELAY_MS
        self.screenshot_interval_ms = (
            screenshot_interval_ms if screenshot_interval_ms is not None else settings.SCREENSHOT_INTERVAL_MS
        )
        self.max_screenshots = max_screenshots if max_screenshots is not None else settings.MAX_SCREENSHOTS
        self._clock = clock

        self.state = ServiceState.IDLE
        self.vad: Optional[VoiceActivityDetector] = None
        self.is_listening = False
        self.is_processing = False
        self.is_recording = False
        self.is_manual_capture = False
        self.listening_started_at: Optional[float] = None
        self.last_error: Optional[str] = None

        self._audio_chunks: List[str] = []
        self._screenshots: List[str] = []
        self._voice_snapshot: Optional[str] = None
        self._finalizing = False
        self._pending: Set[asyncio.Task] = set()
        self._screen_task: Optional[asyncio.Task] = None
        self._disconnects: List[Callable[[], None]] = []

        self.state_changed: Signal[[ServiceState]] = Signal("state_changed")
        self.voice_started: Signal[[]] = Signal("voice_started")
        self.voice_stopped: Signal[[int]] = Signal("voice_stopped")
        self.turn_submitted: Signal[[TurnRequest]] = Signal("turn_submitted")
        self.response_chunk: Signal[[AgentResponse]] = Signal("response_chunk")
        self.response_completed: Signal[[AgentResponse]] = Signal("response_completed")
        self.error: Signal[[Exception]] = Signal("error")
        self.capture_error: Signal[[CaptureError]] = Signal("capture_error")
        self.capture_disabled: Signal[[str]] = Signal("capture_disabled")

    # === State ===

    def _set_state(self, state: ServiceState):
        if state == self.state:
            return
        logger.info(f"State: {self.state.value} -> {state.value}")
        self.state = state
        self.state_changed.emit(state)

    def get_status(self) -> ServiceStatus:
        return ServiceStatus(
            state=self.state,
            is_listening=self.is_listening,
            is_voice_active=self.state == ServiceState.VOICE_ACTIVE,
            is_processing=self.is_processing,
            is_recording=self.is_recording,
            buffered_chunks=len(self._audio_chunks),
            screenshots=len(self._screenshots),
            screen_capture_active=self._screen_task is not None,
            tools_enabled=self.agent.config.tools_enabled,
            last_error=self.last_error,
        )

    # === Lifecycle ===

    def _create_vad(self) -> VoiceActivityDetector:
        vad = VoiceActivityDetector(VADConfig(
            threshold=self.vad_config.threshold,
            silence_duration_ms=self.vad_config.silence_duration_ms,
        ), clock=self._clock)
        vad.initialize()
        vad.voice_started.connect(self._on_voice_start)
        vad.voice_stopped.connect(self._on_voice_stop)
        return vad

    def _teardown_wiring(self):
        for disconnect in self._disconnects:
            disconnect()
        self._disconnects.clear()
        if self.vad is not None:
            self.vad.dispose()
            self.vad = None

    async def initialize(self):
        """Wire capture, VAD and agent; READY on success, ERROR otherwise"""
        if self.state not in (ServiceState.IDLE, ServiceState.ERROR, ServiceState.READY):
            raise OrchestratorError(f"Cannot initialize from state {self.state.value}")

        self._set_state(ServiceState.INITIALIZING)
        try:
            self._teardown_wiring()
            self.vad = self._create_vad()
            self._disconnects = [
                self.audio_capture.volume.connect(self._on_volume),
                self.audio_capture.audio_data.connect(self._on_audio_data),
                self.audio_capture.error.connect(self._on_capture_failure),
                self.agent.response_chunk.connect(self._on_response_chunk),
                self.agent.response_completed.connect(self._on_turn_completed),
                self.agent.response_error.connect(self._on_turn_error),
            ]
        except Exception as e:
            self.last_error = str(e)
            self._set_state(ServiceState.ERROR)
            raise OrchestratorError(f"Initialization failed: {e}") from e

        self.last_error = None
        self._set_state(ServiceState.READY)

    async def start_listening(self):
        if self.is_listening and self.state in CAPTURE_ACTIVE_STATES:
            return
        if self.state != ServiceState.READY:
            raise OrchestratorError(f"Cannot start listening from state {self.state.value}")

        try:
            await self.audio_capture.start_capture()
        except CaptureError as e:
            logger.error(f"Audio capture failed to start: {e}")
            self.last_error = str(e)
            self.capture_error.emit(e)
            raise

        self.vad.start_detection()
        self.listening_started_at = self._clock()
        self.is_listening = True
        self._reset_recording()
        self._set_state(ServiceState.LISTENING)
        logger.info("👂 Listening")

    async def stop_listening(self):
        if not self.is_listening:
            return

        self.is_listening = False
        self._reset_recording()
        self._set_state(ServiceState.PROCESSING if self.is_processing else ServiceState.READY)
        if self.vad is not None:
            self.vad.stop_detection()
        await self.audio_capture.stop_capture()
        await self.stop_screen_capture()
        logger.info("Stopped listening")

    def pause_listening(self):
        if self.vad is not None:
            self.vad.stop_detection()
        logger.debug("Listening paused")

    def resume_listening(self):
        """Rebuild the VAD so no timing state survives the pause"""
        if self.vad is not None:
            self.vad.dispose()
        self.vad = self._create_vad()
        self.vad.start_detection()
        self.listening_started_at = self._clock()
        self._reset_recording()
        logger.debug("Listening resumed with a fresh VAD")

    def _reset_recording(self):
        self.is_recording = False
        self.is_manual_capture = False
        self._audio_chunks = []
        self._voice_snapshot = None

    async def dispose(self):
        await self.stop_listening()
        await self.stop_screen_capture()
        await self.join_pending()
        self._teardown_wiring()
        if self._owns_agent:
            self.agent.dispose()
        for signal in (
            self.state_changed, self.voice_started, self.voice_stopped,
            self.turn_submitted, self.response_chunk, self.response_completed,
            self.error, self.capture_error, self.capture_disabled,
        ):
            signal.clear()
        self.state = ServiceState.IDLE
        logger.info("Orchestrator disposed")

    async def join_pending(self):
        """Wait for scheduled finalizations to finish"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # === Capture events ===

    def _on_volume(self, volume: float):
        if self.is_listening and not self.is_processing and self.vad is not None:
            self.vad.process_volume(volume)

    def _on_audio_data(self, chunk: str):
        if self.is_recording and not self.is_processing:
            self._audio_chunks.append(chunk)

    def _on_capture_failure(self, error: CaptureError):
        logger.error(f"Capture failure: {error}")
        self.last_error = str(error)
        self.capture_error.emit(error)
        if self.is_listening:
            self.is_listening = False
            self._reset_recording()
            if self.vad is not None:
                self.vad.stop_detection()
            self._set_state(ServiceState.ERROR)

    def _on_voice_start(self, timestamp: float):
        if not self.is_listening or self.is_processing or self.state != ServiceState.LISTENING:
            return
        elapsed_ms = (self._clock() - (self.listening_started_at or 0.0)) * 1000
        if elapsed_ms < self.voice_start_grace_ms:
            logger.debug(f"Ignoring voice start {elapsed_ms:.0f}ms after listening began")
            return

        self._audio_chunks = []
        self.is_recording = True
        self._voice_snapshot = self._screenshots[0] if self._screenshots else None
        self._set_state(ServiceState.VOICE_ACTIVE)
        self.voice_started.emit()

    def _on_voice_stop(self, timestamp: float):
        if self.state != ServiceState.VOICE_ACTIVE or self.is_manual_capture:
            return
        self._schedule(self.finalize_voice_capture())

    def _schedule(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    # === Manual push-to-talk ===

    def begin_manual_voice_capture(self) -> bool:
        if not self.is_listening or self.is_processing or self.state != ServiceState.LISTENING:
            logger.warning("Manual capture ignored, not listening or busy")
            return False
        self._audio_chunks = []
        self.is_recording = True
        self.is_manual_capture = True
        self._voice_snapshot = self._screenshots[0] if self._screenshots else None
        self._set_state(ServiceState.VOICE_ACTIVE)
        self.voice_started.emit()
        return True

    async def end_manual_voice_capture(self):
        if not self.is_manual_capture:
            return None
        return await self.finalize_voice_capture()

    # === Turn submission ===

    async def finalize_voice_capture(self) -> Optional[AgentResponse]:
        """Package the buffered audio and submit it as one turn"""
        if self._finalizing or self.state != ServiceState.VOICE_ACTIVE:
            return None

        self._finalizing = True
        try:
            if self.is_recording and self.finalize_delay_ms > 0:
                # Let trailing frames arrive before the buffer is sealed
                await asyncio.sleep(self.finalize_delay_ms / 1000)
            if self.state != ServiceState.VOICE_ACTIVE:
                return None

            chunks = self._audio_chunks
            snapshot = self._screenshots[: self.max_screenshots] or (
                [self._voice_snapshot] if self._voice_snapshot else []
            )
            self._reset_recording()
            self.voice_stopped.emit(len(chunks))

            if len(chunks) < self.min_audio_chunks:
                logger.warning(f"Discarding short capture ({len(chunks)} chunks)")
                self._set_state(ServiceState.LISTENING)
                return None

            request = TurnRequest.build(
                images=snapshot,
                audios=[combine_audio_chunks(chunks)],
            )
            logger.info(f"🎙️ Submitting voice turn ({len(chunks)} chunks, {len(snapshot)} image(s))")
            return await self.process_agent_request(request)
        finally:
            self._finalizing = False

    async def process_agent_request(self, request: TurnRequest) -> Optional[AgentResponse]:
        """Run one agent turn with capture paused; ignored while already processing"""
        if self.is_processing:
            logger.warning("Request ignored, a turn is already in progress")
            return None

        self.is_processing = True
        self._set_state(ServiceState.PROCESSING)
        self.pause_listening()
        self.turn_submitted.emit(request)

        final = None
        try:
            async for response in self.agent.stream_turn(request):
                final = response
        except Exception as e:
            # No-op when the response_error listener already completed the turn
            logger.error(f"Turn failed: {e}")
            self._complete_turn()
            return None

        self._complete_turn()
        return final

    async def send_text_message(self, text: str) -> Optional[AgentResponse]:
        return await self.process_agent_request(TurnRequest.build(text=text))

    async def send_multimodal_message(
        self,
        text: str = "",
        images: Optional[List[str]] = None,
        audio: Optional[AudioInput] = None,
    ) -> Optional[AgentResponse]:
        return await self.process_agent_request(
            TurnRequest.build(text, images, None, [audio] if audio is not None else None)
        )

    def _on_response_chunk(self, response: AgentResponse):
        if self.audio_sink is not None and response.audio and not response.finished:
            self.audio_sink.play(response.audio)
        self.response_chunk.emit(response)

    def _on_turn_completed(self, response: AgentResponse):
        self._complete_turn()
        self.response_completed.emit(response)

    def _on_turn_error(self, error: Exception):
        self.last_error = str(error)
        self._complete_turn()
        self.error.emit(error)

    def _complete_turn(self):
        if not self.is_processing:
            return
        self.is_processing = False
        if self.is_listening:
            self.resume_listening()
            self._set_state(ServiceState.LISTENING)
        elif self.state != ServiceState.ERROR:
            self._set_state(ServiceState.READY)

    # === Screen capture ===

    def add_screenshot(self, image: str):
        """Keep snapshots newest first, bounded by max_screenshots"""
        self._screenshots.insert(0, image)
        del self._screenshots[max(1, self.max_screenshots):]

    def get_screenshots(self) -> List[str]:
        return list(self._screenshots)

    async def start_screen_capture(self) -> bool:
        if self.screen_capture is None:
            return False
        if self._screen_task is not None:
            return True
        try:
            await self.screen_capture.start_capture()
        except CaptureError as e:
            logger.warning(f"Screen capture unavailable: {e}")
            self.capture_error.emit(e)
            if e.permission_denied:
                self.capture_disabled.emit("screen")
            return False

        self._screen_task = asyncio.get_running_loop().create_task(self._screen_loop())
        logger.info("🖥️ Screen capture started")
        return True

    async def _screen_loop(self):
        while True:
            try:
                snapshot = await self.screen_capture.take_snapshot()
            except CaptureError as e:
                logger.error(f"Snapshot failed, stopping screen capture: {e}")
                self.capture_error.emit(e)
                if e.permission_denied:
                    self.capture_disabled.emit("screen")
                self._screen_task = None
                return
            if snapshot:
                self.add_screenshot(snapshot)
            await asyncio.sleep(self.screenshot_interval_ms / 1000)

    async def stop_screen_capture(self):
        task, self._screen_task = self._screen_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            await self.screen_capture.stop_capture()
            logger.info("Screen capture stopped")
        self._screenshots.clear()

    # === Configuration ===

    def set_max_history_rounds(self, rounds: int):
        self.agent.set_max_history_size(rounds * 2)

    def set_tools_enabled(self, enabled: bool):
        self.agent.set_tools_enabled(enabled)

    def update_config(
        self,
        vad_threshold: Optional[float] = None,
        silence_duration_ms: Optional[int] = None,
        voice_start_grace_ms: Optional[int] = None,
        min_audio_chunks: Optional[int] = None,
        max_screenshots: Optional[int] = None,
        screenshot_interval_ms: Optional[int] = None,
    ):
        if vad_threshold is not None:
            self.vad_config.threshold = vad_threshold
        if silence_duration_ms is not None:
            self.vad_config.silence_duration_ms = silence_duration_ms
        if self.vad is not None:
            self.vad.update_config(vad_threshold, silence_duration_ms)
        if voice_start_grace_ms is not None:
            self.voice_start_grace_ms = voice_start_grace_ms
        if min_audio_chunks is not None:
            self.min_audio_chunks = min_audio_chunks
        if max_screenshots is not None:
            self.max_screenshots = max(1, max_screenshots)
            del self._screenshots[self.max_screenshots:]
        if screenshot_interval_ms is not None:
            self.screenshot_interval_ms = screenshot_interval_ms
