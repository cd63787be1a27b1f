"""
Omni voice agent configuration
Environment-driven settings for the model transport, agent, VAD and capture
"""
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful real-time voice assistant. The user talks to you through "
    "a microphone and may share screenshots of their screen. Answer briefly and "
    "conversationally."
)


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # === Paths ===
    PROJECT_ROOT: Path = Path(__file__).parent.parent
    LOGS_PATH: Path = PROJECT_ROOT / "logs"

    # === Server Configuration ===
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # === Model transport (OpenAI-compatible chat completions) ===
    LLM_API_URL: str = "http://localhost:8080/v1/chat/completions"
    LLM_API_KEY: str = ""
    LLM_MODEL_NAME: str = "qwen-omni-turbo"
    LLM_PROVIDER: str = "openai"  # openai, dashscope, siliconflow
    LLM_TEMPERATURE: float = 0.9
    LLM_MAX_TOKENS: Optional[int] = None
    LLM_TIMEOUT: Optional[int] = 120
    LLM_VOICE: str = "Cherry"
    LLM_AUDIO_FORMAT: str = "wav"
    LLM_AUDIO_OUTPUT: bool = True
    LLM_MAX_TOOL_ROUNDS: int = 8

    # === Agent ===
    AGENT_NAME: str = "AI Assistant"
    AGENT_DESCRIPTION: str = "A helpful AI assistant"
    SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT
    MAX_CONVERSATION_HISTORY: int = 30
    SEND_HISTORY_IMAGES: bool = False
    SEND_HISTORY_AUDIO: bool = False
    ENABLE_TOOLS: bool = True

    # === Voice activity detection ===
    VAD_THRESHOLD: float = 5.0  # 0-100 volume scale
    VAD_SILENCE_DURATION_MS: int = 800

    # === Orchestrator ===
    VOICE_START_GRACE_MS: int = 800
    MIN_AUDIO_CHUNKS: int = 3
    FINALIZE_DELAY_MS: int = 100

    # === Capture ===
    AUDIO_SAMPLE_RATE: int = 16000
    AUDIO_CHUNK_SIZE: int = 1024
    PLAYBACK_SAMPLE_RATE: int = 24000
    ENABLE_SCREEN_CAPTURE: bool = False
    SCREENSHOT_INTERVAL_MS: int = 2000
    MAX_SCREENSHOTS: int = 1
    SCREENSHOT_QUALITY: float = 0.8

    # === Logging ===
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    LOG_TO_FILE: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()
