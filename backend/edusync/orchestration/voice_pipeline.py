"""
Voice Pipeline - sequences one conversational turn end-to-end.

Audio or text in → STT → retrieval-confidence engine → optional TTS → turn record.

One pipeline owns one session and at most one in-flight turn. Every await on
an external capability is followed by a check that the turn is still the
current one: cancel() and interrupt() may run while a stage is suspended, and
whatever that stage returns afterwards is discarded.

Subscribers are plain callables receiving PipelineEvent, called synchronously
in registration order. A failing subscriber is logged and skipped.
"""

import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from edusync.errors import (
    MaxTurnsReachedError,
    PipelineStageError,
    PipelineStateError,
    TranscriptionFailedError,
    TurnCancelledError,
)
from edusync.models import (
    PipelineError,
    PipelineErrorType,
    PipelineEvent,
    PipelineEventType,
    PipelineStage,
    PipelineState,
    PipelineStats,
    SessionMetadata,
    TranscriptionAlternative,
    TranscriptionResult,
    Turn,
    TurnTimestamps,
    VoicePipelineConfig,
    VoiceSession,
    utcnow,
)
from edusync.orchestration.context_store import ConversationContextStore
from edusync.orchestration.stats import PipelineStatsAggregator
from edusync.protocols import SpeechToText, TextToSpeech
from edusync.rag.engine import RetrievalConfidenceEngine
from edusync.state_machine import StateMachine

logger = logging.getLogger(__name__)

EventCallback = Callable[[PipelineEvent], None]

STAGE_ERROR_TYPES = {
    PipelineStage.STT: PipelineErrorType.STT_ERROR,
    PipelineStage.RAG: PipelineErrorType.RAG_ERROR,
    PipelineStage.TTS: PipelineErrorType.TTS_ERROR,
    PipelineStage.AUDIO: PipelineErrorType.AUDIO_ERROR,
    PipelineStage.GENERAL: PipelineErrorType.UNKNOWN,
}


def _elapsed_ms(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000


class VoicePipeline:
    """
    Observable, interruptible, cancellable turn state machine.

    State Flow:
    IDLE → LISTENING → PROCESSING → SPEAKING → IDLE
       └──── text ────↗      └──→ IDLE (no speech)
    SPEAKING → INTERRUPTED → IDLE
    any → ERROR → IDLE (stage failure), any → IDLE (cancel)
    """

    def __init__(
        self,
        stt: SpeechToText,
        tts: TextToSpeech,
        engine: RetrievalConfidenceEngine,
        config: Optional[VoicePipelineConfig] = None,
        context_store: Optional[ConversationContextStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            stt: Speech-to-text capability (audio path)
            tts: Text-to-speech capability (spoken answers)
            engine: Retrieval-confidence engine producing answers
            config: Per-instance configuration
            context_store: Optional store mirroring completed turns as messages
            clock: Returns the current aware datetime (timestamps and stage timings)
        """
        self.stt = stt
        self.tts = tts
        self.engine = engine
        self.config = config or VoicePipelineConfig()
        self.context_store = context_store
        self._clock = clock

        self.state_machine = StateMachine()
        self.state_machine.register_on_transition(self._on_state_transition)
        self.stats = PipelineStatsAggregator()

        self._session: Optional[VoiceSession] = None
        self._turn: Optional[Turn] = None
        self._audio_chunks: List[bytes] = []
        self._subscribers: List[EventCallback] = []
        self._session_history: Deque[VoiceSession] = deque(maxlen=self.config.session_history_limit)
        self._context_session_id: Optional[str] = None
        self._last_activity: datetime = self._clock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, config: Optional[VoicePipelineConfig] = None) -> bool:
        """
        Initialize the speech capabilities.

        Returns:
            True when both STT and TTS report ready
        """
        if config is not None:
            self.config = config
            self._resize_history()

        try:
            if not await self.stt.initialize():
                logger.error("❌ STT initialization failed")
                return False
            if not await self.tts.initialize():
                logger.error("❌ TTS initialization failed")
                return False
        except Exception as e:
            logger.error(f"❌ Voice pipeline initialization error: {e}", exc_info=True)
            self._report_error(
                PipelineErrorType.INITIALIZATION_FAILED, PipelineStage.GENERAL, e, turn_id=None
            )
            return False

        self._initialized = True
        logger.info("✅ Voice pipeline initialized")
        return True

    async def start_session(
        self,
        language: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> str:
        """
        Open a new session and return its id.

        Raises:
            PipelineStateError: Not initialized, or a session is already open
        """
        if not self._initialized:
            raise PipelineStateError("Pipeline not initialized. Call initialize() first.")
        if self._session is not None:
            raise PipelineStateError(f"Session {self._session.id} is already active")

        now = self._clock()
        session_id = str(uuid.uuid4())
        self._session = VoiceSession(
            id=session_id,
            started_at=now,
            language=language or self.config.language,
            metadata=SessionMetadata(
                device_info=device_info,
                models_used={
                    "stt": self.stt.get_model_id(),
                    "tts": self.tts.get_voice_id(),
                    "llm": self.engine.llm.get_model_info().model,
                },
            ),
        )
        if self.context_store is not None:
            self._context_session_id = self.context_store.create_session()

        self._last_activity = now
        self.stats.record_session()
        self._emit(PipelineEventType.SESSION_START)

        logger.info(f"🎙️ Session started: {session_id} ({self._session.language})")
        return session_id

    async def end_session(self) -> VoiceSession:
        """
        Close the active session.

        Any in-flight turn is discarded. The returned snapshot is detached
        from the pipeline and also archived in the bounded session history.

        Raises:
            PipelineStateError: No active session
        """
        if self._session is None:
            raise PipelineStateError("No active session to end")

        if self._turn is not None or self.state_machine.current_state != PipelineState.IDLE:
            await self._abort_turn(reason="session_end")

        self._session.ended_at = self._clock()
        snapshot = self._session.model_copy(deep=True)
        self._session_history.append(snapshot.model_copy(deep=True))

        self._emit(PipelineEventType.SESSION_END, data={"turn_count": len(snapshot.turns)})

        if self.context_store is not None and self._context_session_id:
            self.context_store.delete_session(self._context_session_id)
        self._context_session_id = None
        self._session = None

        logger.info(f"Session ended: {snapshot.id} ({len(snapshot.turns)} turns)")
        return snapshot

    async def dispose(self) -> None:
        """Release capabilities and forget subscribers and history."""
        if self._session is not None:
            await self.end_session()

        await self.stt.close()
        await self.tts.close()

        self._subscribers.clear()
        self._session_history.clear()
        self._initialized = False
        logger.info("Voice pipeline disposed")

    # ------------------------------------------------------------------
    # Audio path
    # ------------------------------------------------------------------

    async def start_listening(self) -> None:
        """
        Begin an audio turn.

        While speaking with interruption enabled this is a barge-in: the
        playing turn is interrupted first. In any other busy state the
        request is ignored.

        Raises:
            PipelineStateError: No active session
            MaxTurnsReachedError: Session turn limit reached
        """
        self._require_session()

        state = self.state_machine.current_state
        if state == PipelineState.SPEAKING and self.config.enable_interruption:
            logger.info("User barge-in during SPEAKING - interrupting agent")
            await self.interrupt()
        elif state != PipelineState.IDLE:
            logger.warning(f"Cannot start listening in state: {state.value}")
            return

        self._check_turn_limit()

        self._audio_chunks = []
        turn = self._new_turn()
        self._turn = turn
        self._touch()

        await self.state_machine.transition(PipelineState.LISTENING, reason="listening_started")
        self._emit(PipelineEventType.LISTENING_START, turn_id=turn.id)

        logger.info(f"Started listening for turn {turn.turn_number}")

    def feed_audio(self, chunk: bytes) -> None:
        """Buffer captured audio for the listening turn."""
        if self.state_machine.current_state != PipelineState.LISTENING:
            logger.warning(
                f"Audio received in {self.state_machine.current_state.value} state - ignoring"
            )
            return
        if chunk:
            self._audio_chunks.append(chunk)
            self._touch()

    async def stop_listening(self) -> Optional[Turn]:
        """
        Finish capturing and run the turn through STT, RAG and (optionally) TTS.

        Returns:
            Copy of the completed turn, or None when not listening

        Raises:
            PipelineStageError: A stage failed (turn discarded)
            TurnCancelledError: The turn was cancelled mid-flight
        """
        if self.state_machine.current_state != PipelineState.LISTENING or self._turn is None:
            logger.warning(
                f"Cannot stop listening in state: {self.state_machine.current_state.value}"
            )
            return None

        turn = self._turn
        audio = b"".join(self._audio_chunks)
        self._audio_chunks = []

        self._emit(PipelineEventType.LISTENING_END, turn_id=turn.id, data={"audio_bytes": len(audio)})
        await self.state_machine.transition(PipelineState.PROCESSING, reason="listening_stopped")

        await self._run_turn(turn, self._process_audio(turn, audio))
        return turn.model_copy(deep=True)

    async def _process_audio(self, turn: Turn, audio: bytes) -> str:
        session = self._require_session()
        format_hints = self.config.audio_format.model_copy(update={"language": session.language})

        stt_start = self._clock()
        try:
            if not audio:
                raise TranscriptionFailedError("No audio captured for this turn")
            transcription = await self.stt.transcribe(audio, format_hints)
            if not transcription.transcript.strip():
                raise TranscriptionFailedError("Transcription returned no speech")
        except Exception as e:
            if self._is_stale(turn):
                raise TurnCancelledError(turn.id) from e
            await self._fail_turn(turn, PipelineStage.STT, e)

        if self._is_stale(turn):
            raise TurnCancelledError(turn.id)

        now = self._clock()
        self.stats.record_transcription_time(_elapsed_ms(stt_start, now))
        turn.transcription = transcription
        turn.timestamps.transcription_complete = now

        logger.info(
            f"📝 Transcribed turn {turn.turn_number}: '{transcription.transcript[:50]}' "
            f"(confidence={transcription.confidence:.2f})"
        )
        self._emit(
            PipelineEventType.TRANSCRIPTION_READY,
            turn_id=turn.id,
            data={"transcription": transcription.model_copy()},
        )

        return await self._respond(turn, transcription.transcript, self.config.speak_audio_responses)

    # ------------------------------------------------------------------
    # Text path
    # ------------------------------------------------------------------

    async def process_text_input(self, text: str, speak_response: bool = False) -> str:
        """
        Run a typed question through the pipeline, bypassing STT.

        Args:
            text: The teacher's question
            speak_response: Synthesize the answer before completing the turn

        Returns:
            The answer text (the fixed fallback on low confidence)

        Raises:
            ValueError: Empty text
            PipelineStateError: No session, or the pipeline is busy
            MaxTurnsReachedError: Session turn limit reached
            PipelineStageError: A stage failed (turn discarded)
            TurnCancelledError: The turn was cancelled mid-flight
        """
        session = self._require_session()
        if not text or not text.strip():
            raise ValueError("Text input must not be empty")

        state = self.state_machine.current_state
        if state == PipelineState.SPEAKING and self.config.enable_interruption:
            await self.interrupt()
        elif state != PipelineState.IDLE:
            raise PipelineStateError(f"Cannot process text input in state: {state.value}")

        self._check_turn_limit()

        now = self._clock()
        turn = self._new_turn()
        turn.transcription = TranscriptionResult(
            id=str(uuid.uuid4()),
            transcript=text,
            confidence=1.0,
            alternatives=[TranscriptionAlternative(transcript=text, confidence=1.0)],
            language=session.language,
            model_id="text-input",
            timestamp=now,
        )
        turn.timestamps.transcription_complete = turn.timestamps.started
        self._turn = turn
        self._touch()

        await self.state_machine.transition(PipelineState.PROCESSING, reason="text_input")

        return await self._run_turn(turn, self._respond(turn, text, speak_response))

    # ------------------------------------------------------------------
    # Shared turn stages
    # ------------------------------------------------------------------

    async def _run_turn(self, turn: Turn, stages: Awaitable[str]) -> str:
        """Await the turn's stages, routing unexpected failures through ERROR."""
        try:
            return await stages
        except (PipelineStageError, TurnCancelledError):
            raise
        except Exception as e:
            if self._is_stale(turn):
                raise TurnCancelledError(turn.id) from e
            await self._fail_turn(turn, PipelineStage.GENERAL, e)

    async def _respond(self, turn: Turn, query: str, speak: bool) -> str:
        """Generation stage, then synthesis or direct completion."""
        context = (
            self._build_conversation_context()
            if self.config.enable_conversation_context
            else None
        )
        self._emit(PipelineEventType.RESPONSE_GENERATING, turn_id=turn.id)

        rag_start = self._clock()
        try:
            response = await self.engine.generate_response(query, context)
        except Exception as e:
            if self._is_stale(turn):
                raise TurnCancelledError(turn.id) from e
            await self._fail_turn(turn, PipelineStage.RAG, e)

        if self._is_stale(turn):
            raise TurnCancelledError(turn.id)

        now = self._clock()
        self.stats.record_rag_time(_elapsed_ms(rag_start, now))

        turn.assistant_response = response.answer
        turn.rag_context_ids = [
            str(source.metadata.get("id") or source.content[:50]) for source in response.sources
        ]
        turn.confidence = response.confidence
        turn.is_low_confidence = response.is_low_confidence
        turn.timestamps.response_generated = now

        self._emit(
            PipelineEventType.RESPONSE_READY,
            turn_id=turn.id,
            data={
                "response": response.answer,
                "confidence": response.confidence,
                "is_low_confidence": response.is_low_confidence,
            },
        )

        if speak:
            await self._speak(turn, response.answer)
        else:
            await self._complete_turn(turn)

        return response.answer

    async def _speak(self, turn: Turn, text: str) -> None:
        await self.state_machine.transition(PipelineState.SPEAKING, reason="response_ready")
        self._emit(PipelineEventType.SPEAKING_START, turn_id=turn.id)

        voice = self.config.voice
        if voice.language is None and self._session is not None:
            voice = voice.model_copy(update={"language": self._session.language})

        tts_start = self._clock()
        try:
            synthesis = await self.tts.synthesize(text, voice)
        except Exception as e:
            if self._discard_late_result(turn):
                return
            await self._fail_turn(turn, PipelineStage.TTS, e)

        if self._discard_late_result(turn):
            return

        self.stats.record_tts_time(_elapsed_ms(tts_start, self._clock()))
        turn.assistant_audio = synthesis

        self._emit(
            PipelineEventType.SPEAKING_END,
            turn_id=turn.id,
            data={"duration_ms": synthesis.duration_ms, "was_truncated": synthesis.was_truncated},
        )
        await self._complete_turn(turn)

    async def _complete_turn(self, turn: Turn) -> None:
        """Stamp, append and publish a finished turn; the machine returns to IDLE."""
        session = self._require_session()

        now = self._clock()
        turn.timestamps.response_complete = now
        turn.total_processing_time_ms = _elapsed_ms(turn.timestamps.started, now)

        session.turns.append(turn)
        self.stats.record_turn(turn.total_processing_time_ms)
        self._mirror_to_context_store(turn)
        self._touch()

        await self.state_machine.transition(PipelineState.IDLE, reason="turn_complete")
        self._turn = None
        self._emit(
            PipelineEventType.TURN_COMPLETE,
            turn_id=turn.id,
            data={"turn": turn.model_copy(deep=True)},
        )

        logger.info(
            f"✅ Turn {turn.turn_number} completed in {turn.total_processing_time_ms:.0f}ms"
            f"{' (interrupted)' if turn.was_interrupted else ''}"
        )

    # ------------------------------------------------------------------
    # Interruption and cancellation
    # ------------------------------------------------------------------

    async def interrupt(self) -> bool:
        """
        Cut speech playback short.

        Only valid while SPEAKING. The answer text is kept: the turn completes
        immediately with was_interrupted=True and any late synthesis result is
        dropped.

        Returns:
            True if a turn was interrupted
        """
        turn = self._turn
        if self.state_machine.current_state != PipelineState.SPEAKING or turn is None:
            logger.debug(
                f"Interrupt ignored in state: {self.state_machine.current_state.value}"
            )
            return False

        turn.was_interrupted = True

        try:
            await self.tts.stop()
        except Exception as e:
            logger.warning(f"⚠️ TTS stop failed during interruption: {e}")

        if self._is_stale(turn):
            # Cancelled while stopping playback
            return False

        self.stats.record_interruption()
        await self.state_machine.transition(PipelineState.INTERRUPTED, reason="interrupt")
        self._emit(PipelineEventType.INTERRUPTION, turn_id=turn.id)

        logger.info(f"⏹️ Turn {turn.turn_number} interrupted")
        await self._complete_turn(turn)
        return True

    async def cancel(self) -> None:
        """
        Abandon the in-flight turn from any state.

        No turn is appended. In-flight capability calls are not aborted;
        their results are discarded when they arrive.
        """
        if self._turn is None and self.state_machine.current_state == PipelineState.IDLE:
            return
        await self._abort_turn(reason="cancel")
        logger.info("Operation cancelled")

    async def _abort_turn(self, reason: str) -> None:
        state = self.state_machine.current_state
        self._turn = None
        self._audio_chunks = []

        if state == PipelineState.SPEAKING:
            try:
                await self.tts.stop()
            except Exception as e:
                logger.warning(f"⚠️ TTS stop failed during {reason}: {e}")

        if self.state_machine.current_state != PipelineState.IDLE:
            await self.state_machine.transition(PipelineState.IDLE, reason=reason)

    def _is_stale(self, turn: Turn) -> bool:
        return self._turn is not turn

    def _discard_late_result(self, turn: Turn) -> bool:
        """
        Decide what to do with a synthesis result that arrives late.

        Returns True when the turn was interrupted (already completed).
        Raises TurnCancelledError when it was cancelled.
        """
        if turn.was_interrupted:
            logger.debug(f"Discarding synthesis for interrupted turn {turn.id}")
            return True
        if self._is_stale(turn):
            raise TurnCancelledError(turn.id)
        return False

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    async def _fail_turn(self, turn: Turn, stage: PipelineStage, exc: BaseException) -> None:
        """
        Report a stage failure, discard the turn and recover to IDLE.

        Always raises PipelineStageError chained to the original exception.
        """
        logger.error(f"❌ Error in {stage.value} stage for turn {turn.id}: {exc}", exc_info=exc)

        if self.state_machine.current_state != PipelineState.ERROR:
            await self.state_machine.transition(PipelineState.ERROR, reason=f"{stage.value}_error")
        error = self._report_error(STAGE_ERROR_TYPES[stage], stage, exc, turn_id=turn.id)

        self._audio_chunks = []
        await self.state_machine.transition(PipelineState.IDLE, reason="error_recovered")
        self._turn = None

        raise PipelineStageError(error) from exc

    def _report_error(
        self,
        error_type: PipelineErrorType,
        stage: PipelineStage,
        exc: Optional[BaseException],
        turn_id: Optional[str],
        message: Optional[str] = None,
    ) -> PipelineError:
        error = PipelineError(
            type=error_type,
            message=message or (str(exc) if exc is not None and str(exc) else error_type.value),
            stage=stage,
            recoverable=stage != PipelineStage.GENERAL,
            timestamp=self._clock(),
            original_error=exc,
        )
        self.stats.record_error(error_type)
        self._emit(PipelineEventType.ERROR, turn_id=turn_id, data={"error": error})
        return error

    def _check_turn_limit(self) -> None:
        session = self._require_session()
        limit = self.config.max_turns_per_session
        if limit and len(session.turns) >= limit:
            message = f"Session {session.id} reached the maximum of {limit} turns"
            logger.warning(message)
            self._report_error(
                PipelineErrorType.MAX_TURNS_REACHED,
                PipelineStage.GENERAL,
                None,
                turn_id=None,
                message=message,
            )
            raise MaxTurnsReachedError(message, {"session_id": session.id, "limit": limit})

    # ------------------------------------------------------------------
    # Host-driven housekeeping
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """
        Close the session if it has been idle past the configured timeout.

        Meant to be called periodically by the host.

        Returns:
            True if the session was closed
        """
        timeout_ms = self.config.session_timeout_ms
        if (
            self._session is None
            or not timeout_ms
            or self.state_machine.current_state != PipelineState.IDLE
        ):
            return False

        idle_ms = _elapsed_ms(self._last_activity, self._clock())
        if idle_ms < timeout_ms:
            return False

        logger.info(f"⏰ Session {self._session.id} inactive for {idle_ms:.0f}ms - closing")
        self._report_error(
            PipelineErrorType.SESSION_TIMEOUT,
            PipelineStage.GENERAL,
            None,
            turn_id=None,
            message=f"Session inactive for {idle_ms:.0f}ms",
        )
        await self.end_session()
        return True

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_state(self) -> PipelineState:
        return self.state_machine.current_state

    @property
    def session_id(self) -> Optional[str]:
        return self._session.id if self._session else None

    @property
    def context_session_id(self) -> Optional[str]:
        return self._context_session_id

    def get_current_session(self) -> Optional[VoiceSession]:
        return self._session.model_copy(deep=True) if self._session else None

    def get_current_turn(self) -> Optional[Turn]:
        return self._turn.model_copy(deep=True) if self._turn else None

    def get_stats(self) -> PipelineStats:
        return self.stats.snapshot()

    def reset_stats(self) -> None:
        self.stats.reset()
        logger.info("Pipeline statistics reset")

    async def get_session_history(self, limit: int = 10) -> List[VoiceSession]:
        """Most recent ended sessions, oldest first."""
        if limit <= 0:
            return []
        return [session.model_copy(deep=True) for session in list(self._session_history)[-limit:]]

    def get_config(self) -> VoicePipelineConfig:
        return self.config.model_copy(deep=True)

    async def update_config(self, **changes: Any) -> VoicePipelineConfig:
        """Validate and apply configuration changes; unknown keys are rejected."""
        unknown = set(changes) - set(VoicePipelineConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown pipeline config keys: {sorted(unknown)}")

        self.config = VoicePipelineConfig.model_validate({**self.config.model_dump(), **changes})
        self._resize_history()
        logger.info(f"Pipeline configuration updated: {sorted(changes)}")
        return self.get_config()

    async def is_ready(self) -> bool:
        if not self._initialized:
            return False
        status = await self.get_component_status()
        return all(component["ready"] for component in status.values())

    async def get_component_status(self) -> Dict[str, Dict[str, Any]]:
        stt_ready = await self.stt.is_ready()
        tts_ready = await self.tts.is_ready()
        return {
            "stt": {"ready": stt_ready, "model": self.stt.get_model_id()},
            "tts": {"ready": tts_ready, "voice_id": self.tts.get_voice_id()},
            "rag": {"ready": True, "model": self.engine.llm.get_model_info().model},
        }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        """
        Subscribe to pipeline events.

        Returns:
            A function that removes the subscription (safe to call twice)
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(
        self,
        event_type: PipelineEventType,
        turn_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = PipelineEvent(
            type=event_type,
            timestamp=self._clock(),
            session_id=self._session.id if self._session else "",
            turn_id=turn_id,
            state=self.state_machine.current_state,
            data=data,
        )
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in pipeline event callback: {e}", exc_info=True)

    async def _on_state_transition(self, from_state: PipelineState, to_state: PipelineState) -> None:
        self._emit(
            PipelineEventType.STATE_CHANGE,
            turn_id=self._turn.id if self._turn else None,
            data={"previous_state": from_state.value, "state": to_state.value},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_session(self) -> VoiceSession:
        if self._session is None:
            raise PipelineStateError("No active session. Call start_session() first.")
        return self._session

    def _new_turn(self) -> Turn:
        session = self._require_session()
        return Turn(
            id=str(uuid.uuid4()),
            turn_number=len(session.turns) + 1,
            timestamps=TurnTimestamps(started=self._clock()),
        )

    def _touch(self) -> None:
        self._last_activity = self._clock()

    def _resize_history(self) -> None:
        if self._session_history.maxlen != self.config.session_history_limit:
            self._session_history = deque(
                self._session_history, maxlen=self.config.session_history_limit
            )

    def _build_conversation_context(self) -> str:
        """
        Render the last max_context_turns completed turns of this session.

        Returns "" when there is nothing to include.
        """
        if self._session is None or not self._session.turns or self.config.max_context_turns <= 0:
            return ""

        recent_turns = self._session.turns[-self.config.max_context_turns:]
        context = "\n\n".join(
            f"\nTeacher: {turn.user_text}\nSunita: {turn.assistant_response}"
            for turn in recent_turns
        )
        return f"\n\nPrevious conversation:\n{context}\n\nCurrent question:"

    def _mirror_to_context_store(self, turn: Turn) -> None:
        if self.context_store is None or self._context_session_id is None:
            return

        if not self.context_store.session_exists(self._context_session_id):
            logger.warning(
                f"Context session {self._context_session_id} expired - starting a new one"
            )
            self._context_session_id = self.context_store.create_session()

        self.context_store.add_message(self._context_session_id, "user", turn.user_text)
        self.context_store.add_message(self._context_session_id, "assistant", turn.assistant_response)
