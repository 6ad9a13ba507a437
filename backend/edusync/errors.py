"""
Exception hierarchy for the EduSync voice backend.

Capability adapters raise the provider errors, the RAG engine wraps anything
it cannot handle in RAGError, and the voice pipeline converts stage failures
into PipelineStageError after reporting them on its event stream.
"""

from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from edusync.models import PipelineError


class EduSyncError(Exception):
    """Base exception for the voice backend."""

    code = "EDUSYNC_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class SessionNotFoundError(EduSyncError, LookupError):
    """Conversation session id is unknown to the context store."""

    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found", {"session_id": session_id})
        self.session_id = session_id


class RAGError(EduSyncError):
    """Retrieval or generation failed inside the confidence engine."""

    code = "RAG_ERROR"


class LLMResponseError(EduSyncError):
    """The language model call failed or returned nothing usable."""

    code = "LLM_ERROR"


class UnsupportedContentShapeError(LLMResponseError, TypeError):
    """The language model returned content that cannot be read as text."""

    code = "UNSUPPORTED_CONTENT_SHAPE"


class TranscriptionFailedError(EduSyncError):
    """Speech-to-text capability could not transcribe the audio."""

    code = "STT_ERROR"


class SynthesisFailedError(EduSyncError):
    """Text-to-speech capability could not synthesize the answer."""

    code = "TTS_ERROR"


class PipelineStateError(EduSyncError):
    """Operation is not valid for the pipeline's current session or state."""

    code = "INVALID_PIPELINE_STATE"


class MaxTurnsReachedError(PipelineStateError):
    """The session already holds the configured maximum number of turns."""

    code = "MAX_TURNS_REACHED"


class TurnCancelledError(EduSyncError):
    """The in-flight turn was cancelled before it completed."""

    code = "TURN_CANCELLED"

    def __init__(self, turn_id: str):
        super().__init__(f"Turn {turn_id} was cancelled", {"turn_id": turn_id})
        self.turn_id = turn_id


class PipelineStageError(EduSyncError):
    """A pipeline stage (stt, rag, tts) failed and the turn was discarded."""

    code = "PIPELINE_STAGE_ERROR"

    def __init__(self, error: "PipelineError"):
        super().__init__(
            error.message,
            {"type": error.type.value, "stage": error.stage.value, "recoverable": error.recoverable},
        )
        self.error = error


class PipelineNotFoundError(EduSyncError, LookupError):
    """No pipeline is registered for the requested session."""

    code = "PIPELINE_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(f"Pipeline not found for session {session_id}", {"session_id": session_id})
        self.session_id = session_id
