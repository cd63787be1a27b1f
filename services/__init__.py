"""Agent services - streaming LLM, VAD, agent and voice orchestrator"""
from .llm import StreamingLLM, ChatCompletionsTransport, LLMTransportError
from .vad import VoiceActivityDetector, VADConfig
from .agent import Agent, AgentConfig, TurnRequest
from .capture import CaptureError, PushAudioCapture, PushScreenCapture
from .orchestrator import VoiceOrchestrator, ServiceState, OrchestratorError

__all__ = [
    'StreamingLLM', 'ChatCompletionsTransport', 'LLMTransportError',
    'VoiceActivityDetector', 'VADConfig',
    'Agent', 'AgentConfig', 'TurnRequest',
    'CaptureError', 'PushAudioCapture', 'PushScreenCapture',
    'VoiceOrchestrator', 'ServiceState', 'OrchestratorError',
]
