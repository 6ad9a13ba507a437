"""
Text chat and health endpoints.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field, field_validator

from ..models import SearchResult
from ..rag.engine import clamp_score

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

MAX_QUERY_LENGTH = 500
SOURCE_METADATA_FIELDS = ("source", "page", "chapter")

_started_at = time.monotonic()


class ChatRequest(BaseModel):
    query: str = Field(..., description="The teacher's question")
    session_id: Optional[str] = Field(default=None, description="Conversation session for multi-turn memory")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        """Trim and bound the question."""
        if not v or not v.strip():
            raise ValueError("Query is required and must be a non-empty string")
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(f"Query must not exceed {MAX_QUERY_LENGTH} characters")
        return v.strip()


class ChatSource(BaseModel):
    content: str
    metadata: Dict[str, Any]
    score: Optional[float] = None


class ChatResponse(BaseModel):
    answer: str
    sources: List[ChatSource]
    confidence: float
    isLowConfidence: bool
    model: Dict[str, str]
    session_id: str


def _simplify_source(source: SearchResult) -> ChatSource:
    metadata = {
        key: source.metadata[key]
        for key in SOURCE_METADATA_FIELDS
        if source.metadata.get(key)
    }
    return ChatSource(content=source.content, metadata=metadata, score=clamp_score(source.score))


@router.post("/chat", response_model=ChatResponse)
async def chat(body: ChatRequest, request: Request):
    """
    Answer a typed question through the retrieval-confidence engine.

    Previous exchanges of the same session_id are included in the prompt.
    An unknown or expired session_id starts a fresh conversation.
    """
    engine = request.app.state.engine
    context_store = request.app.state.context_store

    session_id = body.session_id
    if not session_id or not context_store.session_exists(session_id):
        if session_id:
            logger.info(f"Conversation session {session_id} not found - starting a new one")
        session_id = context_store.create_session()

    conversation_context = context_store.get_formatted_context(session_id) or None
    response = await engine.generate_response(body.query, conversation_context)

    context_store.add_message(session_id, "user", body.query)
    context_store.add_message(session_id, "assistant", response.answer)

    logger.info(
        f"💬 Chat answered (confidence={response.confidence:.2f}, "
        f"low_confidence={response.is_low_confidence})"
    )

    return ChatResponse(
        answer=response.answer,
        # Low-confidence sources are irrelevant to the answer
        sources=[] if response.is_low_confidence else [_simplify_source(s) for s in response.sources],
        confidence=response.confidence,
        isLowConfidence=response.is_low_confidence,
        model=response.model.model_dump(),
        session_id=session_id,
    )


@router.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": time.monotonic() - _started_at,
        "service": "EduSync-AI",
    }
