"""
Pydantic models shared by the voice pipeline, the RAG engine and the API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time; the default clock everywhere."""
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class PipelineState(str, Enum):
    """Voice pipeline states."""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    INTERRUPTED = "interrupted"
    ERROR = "error"


class PipelineEventType(str, Enum):
    """Events emitted to pipeline subscribers."""
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    STATE_CHANGE = "state_change"
    LISTENING_START = "listening_start"
    LISTENING_END = "listening_end"
    TRANSCRIPTION_READY = "transcription_ready"
    RESPONSE_GENERATING = "response_generating"
    RESPONSE_READY = "response_ready"
    SPEAKING_START = "speaking_start"
    SPEAKING_END = "speaking_end"
    INTERRUPTION = "interruption"
    TURN_COMPLETE = "turn_complete"
    ERROR = "error"


class PipelineErrorType(str, Enum):
    """Pipeline error taxonomy."""
    AUDIO_ERROR = "audio_error"
    STT_ERROR = "stt_error"
    RAG_ERROR = "rag_error"
    TTS_ERROR = "tts_error"
    SESSION_TIMEOUT = "session_timeout"
    MAX_TURNS_REACHED = "max_turns_reached"
    INITIALIZATION_FAILED = "initialization_failed"
    UNKNOWN = "unknown"


class PipelineStage(str, Enum):
    """Stage in which a pipeline error occurred."""
    AUDIO = "audio"
    STT = "stt"
    RAG = "rag"
    TTS = "tts"
    GENERAL = "general"


MessageRole = Literal["user", "assistant"]


# ============================================================================
# Conversation context store
# ============================================================================

class ConversationMessage(BaseModel):
    """One role-tagged utterance held by the context store."""
    role: MessageRole
    content: str
    timestamp: datetime


class ConversationSession(BaseModel):
    """Rolling message window for one conversation id."""
    session_id: str
    messages: List[ConversationMessage] = Field(default_factory=list)
    created_at: datetime
    last_accessed_at: datetime


# ============================================================================
# Retrieval and generation
# ============================================================================

class SearchResult(BaseModel):
    """Passage returned by vector search, score normalized to [0, 1]."""
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    score: Optional[float] = None


class ModelInfo(BaseModel):
    """Generation provider metadata."""
    provider: str
    model: str


class RAGResponse(BaseModel):
    """Outcome of one retrieval-confidence-gated generation."""
    answer: str
    sources: List[SearchResult]
    confidence: float
    is_low_confidence: bool
    model: ModelInfo


# ============================================================================
# Speech capabilities
# ============================================================================

class AudioFormatHints(BaseModel):
    """Describes the raw audio handed to the transcription capability."""
    encoding: Literal["linear16", "wav", "webm", "opus", "mp3", "flac"] = "linear16"
    sample_rate: int = Field(default=16000, ge=8000, le=48000)
    channels: int = Field(default=1, ge=1, le=2)
    language: Optional[str] = None


class TranscriptionAlternative(BaseModel):
    transcript: str
    confidence: float = Field(ge=0.0, le=1.0)


class TranscriptionResult(BaseModel):
    """Recognized (or typed) user text with confidence and alternatives."""
    id: str
    transcript: str
    confidence: float = Field(ge=0.0, le=1.0)
    alternatives: List[TranscriptionAlternative] = Field(default_factory=list)
    is_final: bool = True
    language: Optional[str] = None
    audio_duration_ms: int = 0
    processing_time_ms: int = 0
    model_id: str = "unknown"
    timestamp: datetime = Field(default_factory=utcnow)


class VoiceOptions(BaseModel):
    """Per-call synthesis options."""
    voice_id: Optional[str] = None
    language: Optional[str] = None
    rate: float = Field(default=1.0, ge=0.5, le=2.0)
    output_format: Literal["pcm", "mp3"] = "mp3"


class SynthesisResult(BaseModel):
    """Synthesized speech for one answer."""
    model_config = ConfigDict(ser_json_bytes="base64")

    id: str
    audio_data: bytes
    format: str
    sample_rate: int
    duration_ms: int
    text: str
    voice_id: str
    processing_time_ms: int = 0
    was_truncated: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


# ============================================================================
# Sessions and turns
# ============================================================================

class TurnTimestamps(BaseModel):
    """Each stamp is written once, in declaration order."""
    started: datetime
    transcription_complete: Optional[datetime] = None
    response_generated: Optional[datetime] = None
    response_complete: Optional[datetime] = None


class Turn(BaseModel):
    """One request/response exchange within a session."""
    id: str
    turn_number: int = Field(ge=1)
    transcription: Optional[TranscriptionResult] = None
    assistant_response: str = ""
    assistant_audio: Optional[SynthesisResult] = None
    was_interrupted: bool = False
    rag_context_ids: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None
    is_low_confidence: bool = False
    timestamps: TurnTimestamps
    total_processing_time_ms: float = 0.0

    @property
    def user_text(self) -> str:
        return self.transcription.transcript if self.transcription else ""


class SessionMetadata(BaseModel):
    device_info: Optional[str] = None
    is_offline: bool = False
    models_used: Dict[str, str] = Field(default_factory=dict)


class VoiceSession(BaseModel):
    """One continuous conversation; turns are append-only."""
    id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    language: str
    turns: List[Turn] = Field(default_factory=list)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)


# ============================================================================
# Events, errors and stats
# ============================================================================

class PipelineError(BaseModel):
    """Structured stage failure reported on the event stream."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: PipelineErrorType
    message: str
    stage: PipelineStage
    recoverable: bool
    timestamp: datetime = Field(default_factory=utcnow)
    original_error: Optional[BaseException] = Field(default=None, exclude=True)


class PipelineEvent(BaseModel):
    """Event delivered to pipeline subscribers."""
    type: PipelineEventType
    timestamp: datetime
    session_id: str
    turn_id: Optional[str] = None
    state: PipelineState
    data: Optional[Dict[str, Any]] = None


class ErrorCount(BaseModel):
    type: PipelineErrorType
    count: int


class PipelineStats(BaseModel):
    """Derived statistics for one pipeline instance."""
    total_sessions: int = 0
    total_turns: int = 0
    total_errors: int = 0
    total_interruptions: int = 0
    avg_transcription_time_ms: int = 0
    avg_rag_response_time_ms: int = 0
    avg_tts_synthesis_time_ms: int = 0
    avg_total_turn_time_ms: int = 0
    interruption_rate: float = 0.0
    error_rate: float = 0.0
    common_errors: List[ErrorCount] = Field(default_factory=list)


class VoicePipelineConfig(BaseModel):
    """Per-instance pipeline configuration."""
    language: str = "pt-BR"
    enable_interruption: bool = True
    enable_conversation_context: bool = True
    max_context_turns: int = Field(default=3, ge=0)
    max_turns_per_session: int = Field(default=20, ge=0)
    session_timeout_ms: int = Field(default=5 * 60 * 1000, ge=0)
    speak_audio_responses: bool = True
    session_history_limit: int = Field(default=50, ge=1)
    audio_format: AudioFormatHints = Field(default_factory=AudioFormatHints)
    voice: VoiceOptions = Field(default_factory=VoiceOptions)
