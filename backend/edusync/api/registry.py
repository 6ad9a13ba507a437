"""
Pipeline registry: one VoicePipeline per open voice session.

Tracks active pipelines (session_id → pipeline), creates and disposes them,
and runs the periodic sweep that closes idle sessions and expired
conversation contexts.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from fastapi import Request

from edusync.errors import PipelineNotFoundError, PipelineStateError
from edusync.models import VoiceSession
from edusync.orchestration.context_store import ConversationContextStore
from edusync.orchestration.voice_pipeline import VoicePipeline
from edusync.rag.engine import RetrievalConfidenceEngine

logger = logging.getLogger(__name__)


class PipelineRegistry:
    """
    Owns the live pipelines of the process.

    Responsibilities:
    - Create and initialize a pipeline per voice session
    - Look pipelines up by session id
    - End and dispose pipelines (explicitly, on timeout, or on shutdown)
    """

    def __init__(
        self,
        pipeline_factory: Callable[[], VoicePipeline],
        engine: Optional[RetrievalConfidenceEngine] = None,
        context_store: Optional[ConversationContextStore] = None,
    ):
        self.pipeline_factory = pipeline_factory
        self.engine = engine
        self.context_store = context_store

        # Active pipelines: session_id → VoicePipeline
        self.pipelines: Dict[str, VoicePipeline] = {}

        # Creation time: session_id → ms epoch
        self.created_at: Dict[str, int] = {}

        logger.info("PipelineRegistry initialized")

    async def create(
        self,
        language: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> VoicePipeline:
        """
        Build, initialize and start a pipeline.

        Raises:
            PipelineStateError: Speech capabilities could not be initialized
        """
        pipeline = self.pipeline_factory()

        if not await pipeline.initialize():
            await pipeline.dispose()
            raise PipelineStateError("Voice pipeline failed to initialize")

        session_id = await pipeline.start_session(language=language, device_info=device_info)
        self.pipelines[session_id] = pipeline
        self.created_at[session_id] = int(time.time() * 1000)

        logger.info(
            f"Pipeline registered: session_id={session_id}, "
            f"total_pipelines={len(self.pipelines)}"
        )
        return pipeline

    def get(self, session_id: str) -> VoicePipeline:
        pipeline = self.pipelines.get(session_id)
        if pipeline is None:
            raise PipelineNotFoundError(session_id)
        return pipeline

    async def remove(self, session_id: str) -> VoiceSession:
        """
        End the session and dispose its pipeline.

        Returns:
            Snapshot of the ended session

        Raises:
            PipelineNotFoundError: Unknown session
        """
        pipeline = self.get(session_id)
        snapshot = await pipeline.end_session()
        await self._discard(session_id, pipeline)
        return snapshot

    async def sweep(self) -> List[str]:
        """
        Tick every pipeline and drop the ones whose session has ended.

        Returns:
            Session ids that were closed
        """
        closed = []
        for session_id, pipeline in list(self.pipelines.items()):
            try:
                await pipeline.tick()
            except Exception as e:
                logger.error(f"Error ticking pipeline {session_id}: {e}", exc_info=True)
                continue
            if pipeline.session_id != session_id:
                closed.append(session_id)
                await self._discard(session_id, pipeline)

        if self.context_store is not None:
            expired = self.context_store.cleanup_expired_sessions()
            if expired:
                logger.info(f"🧹 Removed {expired} expired conversation sessions")

        if closed:
            logger.info(f"🧹 Closed {len(closed)} idle voice sessions")
        return closed

    async def close_all(self) -> None:
        for session_id, pipeline in list(self.pipelines.items()):
            try:
                await self._discard(session_id, pipeline)
            except Exception as e:
                logger.error(f"Error disposing pipeline {session_id}: {e}", exc_info=True)

    async def _discard(self, session_id: str, pipeline: VoicePipeline) -> None:
        self.pipelines.pop(session_id, None)
        created_at = self.created_at.pop(session_id, None)
        await pipeline.dispose()

        if created_at is not None:
            duration_ms = int(time.time() * 1000) - created_at
            logger.info(
                f"Pipeline removed: session_id={session_id}, "
                f"duration_ms={duration_ms}, "
                f"remaining_pipelines={len(self.pipelines)}"
            )

    def __len__(self) -> int:
        return len(self.pipelines)


def get_registry(request: Request) -> PipelineRegistry:
    """FastAPI dependency resolving the registry stored on the app."""
    return request.app.state.registry
