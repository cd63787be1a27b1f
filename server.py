"""
Omni agent server - FastAPI with SSE and WebSocket streaming
HTTP routes drive a shared text agent; each WebSocket connection gets its
own voice orchestrator fed by the client's volume, audio and snapshots.
"""
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Depends, Body
from fastapi.middleware.cors import CORSMiddleware
from sse_starlette.sse import EventSourceResponse
from pydantic import BaseModel
from typing import Any, Dict, Optional, Set
import asyncio
import base64
import binascii
import json
import time

from core.config import settings
from core.logger import setup_logger
from core.messages import AgentResponse
from services.agent import Agent
from services.audio import pcm16_volume
from services.capture import CaptureError, PushAudioCapture
from services.llm import LLMTransportError
from services.orchestrator import OrchestratorError, ServiceState, VoiceOrchestrator

logger = setup_logger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Omni Voice Agent",
    description="Real-time multimodal voice agent with in-band tool calling",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_default_agent: Optional[Agent] = None


def get_agent() -> Agent:
    """Shared agent for the HTTP routes"""
    global _default_agent
    if _default_agent is None:
        _default_agent = Agent()
    return _default_agent


def get_session_agent() -> Agent:
    """Fresh agent for one WebSocket session"""
    return Agent()


# === Request Models ===

class TextRequest(BaseModel):
    """Text-based query request"""
    text: str


def _usage_dict(response: Optional[AgentResponse]) -> Optional[Dict[str, int]]:
    if response is None or response.usage is None:
        return None
    return response.usage.to_dict()


# === API Endpoints ===

@app.get("/health")
async def health_check(agent: Agent = Depends(get_agent)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": app.version,
        "model": settings.LLM_MODEL_NAME,
        "tools": f"{len(agent.tools.get_all_tools())} tools available"
    }


@app.get("/api/agent")
async def agent_info(agent: Agent = Depends(get_agent)):
    return agent.get_info()


@app.post("/api/text")
async def process_text(request: TextRequest, agent: Agent = Depends(get_agent)):
    """Run one text turn and return the final answer"""
    logger.info(f"Text query: {request.text[:100]}")
    try:
        response = await agent.send_text_message(request.text)
    except LLMTransportError as e:
        logger.error(f"Model transport error: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "response": response.accumulated_text if response else "",
        "usage": _usage_dict(response),
    }


@app.post("/api/stream/text")
async def stream_text(request: TextRequest, agent: Agent = Depends(get_agent)):
    """Stream text response with Server-Sent Events"""
    async def event_generator():
        start_time = time.time()
        try:
            logger.info(f"Streaming text query: {request.text[:100]}")
            async for response in agent.generate(request.text):
                chunk = response.chunk
                if chunk.tool_calls:
                    yield {
                        "event": "tool_calls",
                        "data": json.dumps([tc.to_dict() for tc in chunk.tool_calls])
                    }
                elif chunk.tool_results_text is not None:
                    yield {"event": "tool_results", "data": json.dumps({"text": chunk.tool_results_text})}
                elif chunk.finished:
                    yield {
                        "event": "complete",
                        "data": json.dumps({
                            "text": response.accumulated_text,
                            "usage": _usage_dict(response),
                            "total_time": round(time.time() - start_time, 3),
                        })
                    }
                elif chunk.text:
                    yield {"event": "chunk", "data": json.dumps({"text": chunk.text})}
        except LLMTransportError as e:
            logger.error(f"Streaming error: {e}")
            yield {
                "event": "error",
                "data": json.dumps({"error": str(e)})
            }

    return EventSourceResponse(event_generator())


@app.get("/api/history")
async def get_history(agent: Agent = Depends(get_agent)):
    return {"messages": json.loads(agent.export_history())}


@app.post("/api/history/import")
async def import_history(payload: Any = Body(...), agent: Agent = Depends(get_agent)):
    if not agent.import_history(payload):
        raise HTTPException(status_code=400, detail="Invalid history payload")
    return {"imported": True, "size": len(agent.history)}


@app.delete("/api/history")
async def clear_history(agent: Agent = Depends(get_agent)):
    agent.clear_conversation_history()
    return {"cleared": True, "size": len(agent.history)}


# === Voice session WebSocket ===

class VoiceSession:
    """Bridges one WebSocket client to a VoiceOrchestrator"""

    def __init__(self, websocket: WebSocket, agent: Agent):
        self.websocket = websocket
        self.capture = PushAudioCapture()
        self.orchestrator = VoiceOrchestrator(self.capture, agent=agent)
        self.outbox: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self.tasks: Set[asyncio.Task] = set()
        self._agent = agent
        self._wire_events()

    def _send(self, message: Dict[str, Any]):
        self.outbox.put_nowait(message)

    def _wire_events(self):
        orchestrator = self.orchestrator
        orchestrator.state_changed.connect(lambda state: self._send({"type": "state", "state": state.value}))
        orchestrator.response_chunk.connect(self._on_chunk)
        orchestrator.response_completed.connect(
            lambda response: self._send({
                "type": "response_complete",
                "text": response.accumulated_text,
                "usage": _usage_dict(response),
            })
        )
        orchestrator.error.connect(lambda error: self._send({"type": "error", "message": str(error)}))
        orchestrator.capture_error.connect(
            lambda error: self._send({"type": "error", "message": str(error), "capture": True})
        )
        self._agent.tool_call_started.connect(
            lambda call: self._send({"type": "tool_call", "status": "started", "name": call.name, "arguments": call.arguments})
        )
        self._agent.tool_call_completed.connect(
            lambda call, result: self._send({"type": "tool_call", "status": "completed", "name": call.name})
        )
        self._agent.tool_call_failed.connect(
            lambda call, error: self._send({"type": "tool_call", "status": "failed", "name": call.name, "error": str(error)})
        )

    def _on_chunk(self, response: AgentResponse):
        chunk = response.chunk
        if chunk.text:
            self._send({"type": "text_chunk", "text": chunk.text})
        if chunk.audio and not chunk.finished:
            self._send({"type": "audio_chunk", "data": chunk.audio})

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def sender(self):
        while True:
            message = await self.outbox.get()
            if message is None:
                return
            await self.websocket.send_json(message)

    async def handle(self, message: Dict[str, Any]):
        msg_type = message.get("type")
        orchestrator = self.orchestrator

        if msg_type == "start":
            try:
                await orchestrator.start_listening()
            except (CaptureError, OrchestratorError) as e:
                self._send({"type": "error", "message": str(e)})
        elif msg_type == "stop":
            await orchestrator.stop_listening()
        elif msg_type == "volume":
            self.capture.push_volume(float(message.get("value", 0)))
        elif msg_type == "audio":
            data = message.get("data") or ""
            try:
                pcm = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError):
                self._send({"type": "error", "message": "Invalid base64 audio"})
                return
            if "volume" in message:
                self.capture.push_volume(float(message["volume"]))
            else:
                self.capture.push_volume(pcm16_volume(pcm))
            self.capture.push_audio(data)
        elif msg_type == "snapshot":
            if message.get("data"):
                orchestrator.add_screenshot(message["data"])
        elif msg_type == "text":
            self._spawn(orchestrator.send_text_message(message.get("text", "")))
        elif msg_type == "ptt_start":
            orchestrator.begin_manual_voice_capture()
        elif msg_type == "ptt_end":
            self._spawn(orchestrator.end_manual_voice_capture())
        elif msg_type == "config":
            orchestrator.update_config(
                vad_threshold=message.get("vad_threshold"),
                silence_duration_ms=message.get("silence_duration_ms"),
            )
        elif msg_type == "status":
            self._send({"type": "status", **orchestrator.get_status().to_dict()})
        elif msg_type == "ping":
            self._send({"type": "pong"})
        else:
            logger.warning(f"Unknown session message type: {msg_type}")

    async def close(self):
        if self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)
        await self.orchestrator.dispose()
        self._agent.dispose()


@app.websocket("/ws/session")
async def websocket_session(websocket: WebSocket, agent: Agent = Depends(get_session_agent)):
    """
    WebSocket endpoint for a real-time voice session

    Client messages: start, stop, volume, audio (base64 PCM16), snapshot,
    text, ptt_start, ptt_end, config, status, ping.
    Server messages: state, text_chunk, audio_chunk (base64), tool_call,
    response_complete, error, status, pong.
    """
    await websocket.accept()
    session = VoiceSession(websocket, agent)
    sender = asyncio.get_running_loop().create_task(session.sender())
    logger.info("WebSocket session connected")

    try:
        await session.orchestrator.initialize()
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Invalid JSON message")
                continue
            await session.handle(message)
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await websocket.close(code=1011, reason=str(e))
    finally:
        await session.close()
        session.outbox.put_nowait(None)
        await asyncio.gather(sender, return_exceptions=True)


@app.on_event("startup")
async def startup_event():
    """Log configuration on startup"""
    logger.info("=" * 50)
    logger.info("Omni Voice Agent Starting")
    logger.info("=" * 50)
    logger.info(f"Host: {settings.HOST}:{settings.PORT}")
    logger.info(f"Model: {settings.LLM_MODEL_NAME} ({settings.LLM_PROVIDER})")
    logger.info(f"Tools: {settings.ENABLE_TOOLS} (max rounds: {settings.LLM_MAX_TOOL_ROUNDS})")
    logger.info("=" * 50)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=False,
        log_level="info"
    )
