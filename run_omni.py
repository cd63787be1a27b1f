#!/usr/bin/env python3
"""
Local omni voice runner
Wires the microphone, optional screen capture and speaker playback to a
voice orchestrator and runs until interrupted.
"""
import argparse
import asyncio
import signal

from core.config import settings
from core.logger import setup_logger
from services.devices import DisplayCapture, MicrophoneCapture, SpeakerSink
from services.orchestrator import VoiceOrchestrator

logger = setup_logger(__name__)


async def run(enable_screen: bool, tools_enabled: bool):
    microphone = MicrophoneCapture()
    speaker = SpeakerSink()
    screen = DisplayCapture() if enable_screen else None
    orchestrator = VoiceOrchestrator(microphone, screen_capture=screen, audio_sink=speaker)
    orchestrator.set_tools_enabled(tools_enabled)

    orchestrator.state_changed.connect(lambda state: print(f"[{state.value}]"))
    orchestrator.response_chunk.connect(
        lambda response: print(response.text, end="", flush=True) if response.text else None
    )
    orchestrator.response_completed.connect(lambda response: print())
    orchestrator.error.connect(lambda error: print(f"\n❌ {error}"))
    orchestrator.capture_disabled.connect(lambda source: print(f"⚠️ {source} capture disabled"))
    # Cut off the reply when the user starts talking again
    orchestrator.voice_started.connect(speaker.stop)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await orchestrator.initialize()
        await orchestrator.start_listening()
        if screen is not None:
            await orchestrator.start_screen_capture()
        print("🎤 Listening... (Ctrl+C to quit)")
        await stop_event.wait()
    finally:
        print("\n👋 Goodbye!")
        await orchestrator.dispose()
        speaker.close()
        microphone.terminate()


def main():
    parser = argparse.ArgumentParser(description="Run the omni voice agent locally")
    parser.add_argument("--screen", action="store_true", default=settings.ENABLE_SCREEN_CAPTURE,
                        help="Attach periodic screenshots to voice turns")
    parser.add_argument("--no-tools", action="store_true", help="Disable tool calling")
    args = parser.parse_args()

    asyncio.run(run(args.screen, not args.no_tools))


if __name__ == "__main__":
    main()
