"""
Contracts of the external capabilities the core consumes.

Only the interface lives here; concrete adapters are in stt/, tts/, llm/ and rag/.
"""

from typing import List, Optional, Protocol

from edusync.models import (
    AudioFormatHints,
    ModelInfo,
    SearchResult,
    SynthesisResult,
    TranscriptionResult,
    VoiceOptions,
)


class SpeechToText(Protocol):
    """Batch transcription. Raises TranscriptionFailedError on failure."""

    async def initialize(self) -> bool: ...

    async def transcribe(
        self,
        audio: bytes,
        format_hints: Optional[AudioFormatHints] = None,
    ) -> TranscriptionResult: ...

    async def is_ready(self) -> bool: ...

    def get_model_id(self) -> str: ...

    async def close(self) -> None: ...


class VectorSearch(Protocol):
    """Top-k passages ranked by descending similarity, scores in [0, 1]."""

    async def search(self, query: str, top_k: int = 3) -> List[SearchResult]: ...


class TextGenerator(Protocol):
    """Single-shot generation returning plain text."""

    async def generate_response(self, prompt: str) -> str: ...

    def get_model_info(self) -> ModelInfo: ...


class TextToSpeech(Protocol):
    """Synthesis with an out-of-band stop for interruption."""

    async def initialize(self) -> bool: ...

    async def synthesize(
        self,
        text: str,
        options: Optional[VoiceOptions] = None,
    ) -> SynthesisResult: ...

    async def stop(self) -> None: ...

    async def is_ready(self) -> bool: ...

    def get_voice_id(self) -> str: ...

    async def close(self) -> None: ...
