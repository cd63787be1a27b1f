"""Tests for voice activity detection."""

import pytest

from services.vad import VADConfig, VoiceActivityDetector


@pytest.fixture
def vad(clock):
    """Create an initialized, detecting VAD with threshold 5 and 800ms silence."""
    detector = VoiceActivityDetector(VADConfig(threshold=5, silence_duration_ms=800), clock=clock)
    detector.initialize()
    detector.start_detection()
    return detector


@pytest.fixture
def events(vad):
    """Record start/stop events in order."""
    recorded = []
    vad.voice_started.connect(lambda ts: recorded.append("start"))
    vad.voice_stopped.connect(lambda ts: recorded.append("stop"))
    return recorded


class TestVoiceDetection:
    """Tests for start/stop emission."""

    def test_loud_then_silence_emits_one_start_and_one_stop(self, vad, events, clock):
        """Test that three loud frames then sustained silence emit start then stop."""
        for _ in range(3):
            vad.process_volume(10)
            clock.advance_ms(20)

        vad.process_volume(2)
        clock.advance_ms(900)
        vad.process_volume(2)

        assert events == ["start", "stop"]
        assert vad.is_voice_active is False

    def test_short_silence_does_not_stop(self, vad, events, clock):
        """Test that silence shorter than the silence duration keeps voice active."""
        vad.process_volume(10)
        clock.advance_ms(500)
        vad.process_volume(1)

        assert events == ["start"]
        assert vad.is_voice_active is True

    def test_sustained_speech_refreshes_timestamp(self, vad, events, clock):
        """Test that continued speech pushes the silence deadline forward."""
        vad.process_volume(10)
        clock.advance_ms(700)
        vad.process_volume(10)
        clock.advance_ms(700)
        vad.process_volume(0)

        assert events == ["start"]

    def test_threshold_tie_counts_as_silence(self, vad, events):
        """Test that a volume exactly at the threshold is not speech."""
        vad.process_volume(5)

        assert events == []
        assert vad.is_voice_active is False

    def test_no_double_start(self, vad, events, clock):
        """Test that start and stop strictly alternate for an arbitrary sequence."""
        volumes = [0, 10, 12, 3, 8, 0, 0, 0, 0, 0, 20, 1, 1, 1, 1, 1, 50, 50, 0, 0, 0, 0]
        for volume in volumes:
            vad.process_volume(volume)
            clock.advance_ms(300)

        for first, second in zip(events, events[1:]):
            assert first != second
        assert events[0] == "start"

    def test_frames_ignored_when_not_detecting(self, clock):
        """Test that volumes are ignored before detection starts."""
        detector = VoiceActivityDetector(VADConfig(threshold=5), clock=clock)
        detector.initialize()
        started = []
        detector.voice_started.connect(lambda ts: started.append(ts))

        detector.process_volume(50)

        assert started == []


class TestLifecycle:
    """Tests for start/stop/dispose and configuration."""

    def test_start_requires_initialize(self, clock):
        """Test that detection cannot start before initialize."""
        detector = VoiceActivityDetector(VADConfig(), clock=clock)

        with pytest.raises(RuntimeError):
            detector.start_detection()

    def test_stop_while_active_synthesizes_stop(self, vad, events):
        """Test that stopping detection mid-speech emits voice stop."""
        vad.process_volume(30)
        vad.stop_detection()

        assert events == ["start", "stop"]
        assert vad.is_detecting is False

    def test_stop_is_idempotent(self, vad, events):
        """Test that repeated stops emit nothing extra."""
        vad.process_volume(30)
        vad.stop_detection()
        vad.stop_detection()

        assert events == ["start", "stop"]

    def test_restart_resets_state(self, vad, clock):
        """Test that starting again clears the previous timestamp."""
        vad.process_volume(30)
        vad.stop_detection()
        vad.start_detection()

        state = vad.state
        assert state.is_voice_active is False
        assert state.last_voice_timestamp is None

    def test_update_config_clamps_threshold(self, vad):
        """Test that threshold updates are clamped to 0-100."""
        vad.update_config(threshold=150)
        assert vad.config.threshold == 100

        vad.update_config(threshold=-3, silence_duration_ms=300)
        assert vad.config.threshold == 0
        assert vad.config.silence_duration_ms == 300

    def test_dispose_clears_listeners(self, vad, events):
        """Test that dispose emits a final stop and drops listeners."""
        vad.process_volume(30)
        vad.dispose()

        assert events == ["start", "stop"]
        assert len(vad.voice_started) == 0
        assert vad.is_initialized is False

    def test_poll_reads_volume_source(self, clock):
        """Test that poll feeds the attached volume source."""
        detector = VoiceActivityDetector(VADConfig(threshold=5), clock=clock)
        detector.initialize(lambda: 42)
        detector.start_detection()

        detector.poll()

        assert detector.is_voice_active is True
        assert detector.state.current_volume == 42
