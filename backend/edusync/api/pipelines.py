"""
Voice pipeline session API endpoints.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, WebSocket
from pydantic import BaseModel, Field

from ..errors import PipelineNotFoundError
from ..websocket import connection_manager
from .registry import PipelineRegistry, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/voice/pipeline/sessions", tags=["voice-pipeline"])


class StartSessionRequest(BaseModel):
    language: Optional[str] = Field(default=None, description="Locale, defaults to settings.default_language")
    device_info: Optional[str] = None


class TextInputRequest(BaseModel):
    text: str = Field(..., min_length=1)
    speak_response: bool = False


def _state_payload(pipeline) -> dict:
    current_turn = pipeline.get_current_turn()
    return {
        "session_id": pipeline.session_id,
        "state": pipeline.get_state().value,
        "current_turn_id": current_turn.id if current_turn else None,
    }


@router.post("", status_code=201)
async def start_session(
    body: Optional[StartSessionRequest] = None,
    registry: PipelineRegistry = Depends(get_registry),
):
    """
    Create a pipeline and open its session.

    Returns:
        Session snapshot and initial state
    """
    body = body or StartSessionRequest()
    pipeline = await registry.create(language=body.language, device_info=body.device_info)

    return {
        "session": pipeline.get_current_session().model_dump(mode="json"),
        "state": pipeline.get_state().value,
    }


@router.delete("/{session_id}")
async def end_session(session_id: str, registry: PipelineRegistry = Depends(get_registry)):
    """End a session and return its summary."""
    session = await registry.remove(session_id)

    duration_ms = 0
    if session.ended_at is not None:
        duration_ms = int((session.ended_at - session.started_at).total_seconds() * 1000)

    return {
        "session": session.model_dump(mode="json"),
        "summary": {
            "total_turns": len(session.turns),
            "total_duration_ms": duration_ms,
            "interruption_count": sum(1 for turn in session.turns if turn.was_interrupted),
        },
    }


@router.get("/{session_id}")
async def get_session_state(session_id: str, registry: PipelineRegistry = Depends(get_registry)):
    pipeline = registry.get(session_id)
    return {
        **_state_payload(pipeline),
        "session": pipeline.get_current_session().model_dump(mode="json"),
        "components": await pipeline.get_component_status(),
    }


@router.get("/{session_id}/stats")
async def get_session_stats(session_id: str, registry: PipelineRegistry = Depends(get_registry)):
    pipeline = registry.get(session_id)
    return pipeline.get_stats().model_dump(mode="json")


@router.post("/{session_id}/text")
async def text_input(
    session_id: str,
    body: TextInputRequest,
    registry: PipelineRegistry = Depends(get_registry),
):
    """
    Run a typed question through the pipeline (bypasses STT).

    Returns:
        Answer text and the completed turn
    """
    pipeline = registry.get(session_id)
    answer = await pipeline.process_text_input(body.text, speak_response=body.speak_response)

    session = pipeline.get_current_session()
    turn = session.turns[-1] if session and session.turns else None

    return {
        "answer": answer,
        "turn": turn.model_dump(mode="json") if turn else None,
        **_state_payload(pipeline),
    }


@router.post("/{session_id}/listen/start")
async def start_listening(session_id: str, registry: PipelineRegistry = Depends(get_registry)):
    pipeline = registry.get(session_id)
    await pipeline.start_listening()
    return _state_payload(pipeline)


@router.post("/{session_id}/audio")
async def feed_audio(
    session_id: str,
    request: Request,
    registry: PipelineRegistry = Depends(get_registry),
):
    """Append the raw request body to the listening turn's audio buffer."""
    pipeline = registry.get(session_id)
    chunk = await request.body()
    pipeline.feed_audio(chunk)
    return {"received_bytes": len(chunk), **_state_payload(pipeline)}


@router.post("/{session_id}/listen/stop")
async def stop_listening(session_id: str, registry: PipelineRegistry = Depends(get_registry)):
    """
    Finish capturing and process the turn.

    Returns:
        The completed turn, or null when the pipeline was not listening
    """
    pipeline = registry.get(session_id)
    turn = await pipeline.stop_listening()
    return {
        "turn": turn.model_dump(mode="json") if turn else None,
        **_state_payload(pipeline),
    }


@router.post("/{session_id}/interrupt")
async def interrupt(session_id: str, registry: PipelineRegistry = Depends(get_registry)):
    pipeline = registry.get(session_id)
    interrupted = await pipeline.interrupt()
    return {"interrupted": interrupted, **_state_payload(pipeline)}


@router.post("/{session_id}/cancel")
async def cancel(session_id: str, registry: PipelineRegistry = Depends(get_registry)):
    pipeline = registry.get(session_id)
    await pipeline.cancel()
    return _state_payload(pipeline)


@router.websocket("/{session_id}/events")
async def session_events(websocket: WebSocket, session_id: str):
    """Stream the session's PipelineEvents as JSON frames."""
    registry: PipelineRegistry = websocket.app.state.registry
    try:
        pipeline = registry.get(session_id)
    except PipelineNotFoundError:
        await websocket.close(code=4004, reason="Session not found")
        return

    await connection_manager.connect(session_id, websocket, pipeline)
