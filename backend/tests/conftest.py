"""
Shared fakes for the voice pipeline, RAG engine and API tests.

Every fake can advance a FakeClock by a fixed latency so stage timings are
exact, and can be held on an asyncio.Event to freeze a stage mid-flight.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from edusync.models import (
    ModelInfo,
    SearchResult,
    SynthesisResult,
    TranscriptionAlternative,
    TranscriptionResult,
    VoicePipelineConfig,
)
from edusync.orchestration.context_store import ConversationContextStore
from edusync.orchestration.voice_pipeline import VoicePipeline
from edusync.rag.engine import RetrievalConfidenceEngine


class FakeClock:
    """Manually advanced, timezone-aware clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: float = 0, minutes: float = 0) -> None:
        self.now += timedelta(milliseconds=ms, minutes=minutes)


class _Stage:
    def __init__(self, clock: Optional[FakeClock], latency_ms: float, error: Optional[Exception]):
        self.clock = clock
        self.latency_ms = latency_ms
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    def hold(self) -> asyncio.Event:
        """Block the next call until the returned event is set."""
        self.gate = asyncio.Event()
        return self.gate

    async def _run(self) -> None:
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.clock is not None and self.latency_ms:
            self.clock.advance(ms=self.latency_ms)
        if self.error is not None:
            raise self.error


class FakeSTT(_Stage):
    def __init__(
        self,
        transcript: str = "Como ensinar subtração com zero?",
        confidence: float = 0.93,
        clock: Optional[FakeClock] = None,
        latency_ms: float = 0,
        error: Optional[Exception] = None,
        ready: bool = True,
    ):
        super().__init__(clock, latency_ms, error)
        self.transcript = transcript
        self.confidence = confidence
        self.ready = ready
        self.calls: List[bytes] = []
        self.closed = False

    async def initialize(self) -> bool:
        return self.ready

    async def transcribe(self, audio, format_hints=None) -> TranscriptionResult:
        self.calls.append(audio)
        await self._run()
        return TranscriptionResult(
            id=str(uuid.uuid4()),
            transcript=self.transcript,
            confidence=self.confidence,
            alternatives=[TranscriptionAlternative(transcript=self.transcript, confidence=self.confidence)],
            language=format_hints.language if format_hints else None,
            model_id="fake-stt",
        )

    async def is_ready(self) -> bool:
        return self.ready

    def get_model_id(self) -> str:
        return "fake-stt"

    async def close(self) -> None:
        self.closed = True


class FakeTTS(_Stage):
    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        latency_ms: float = 0,
        error: Optional[Exception] = None,
        ready: bool = True,
    ):
        super().__init__(clock, latency_ms, error)
        self.ready = ready
        self.texts: List[str] = []
        self.stop_calls = 0
        self.closed = False

    async def initialize(self) -> bool:
        return self.ready

    async def synthesize(self, text, options=None) -> SynthesisResult:
        self.texts.append(text)
        await self._run()
        return SynthesisResult(
            id=str(uuid.uuid4()),
            audio_data=b"\x00\x01" * 800,
            format="mp3",
            sample_rate=44100,
            duration_ms=100,
            text=text,
            voice_id="fake-voice",
            was_truncated=self.stop_calls > 0,
        )

    async def stop(self) -> None:
        self.stop_calls += 1
        if self.gate is not None:
            self.gate.set()

    async def is_ready(self) -> bool:
        return self.ready

    def get_voice_id(self) -> str:
        return "fake-voice"

    async def close(self) -> None:
        self.closed = True


class FakeVectorSearch(_Stage):
    def __init__(
        self,
        results: Optional[List[SearchResult]] = None,
        clock: Optional[FakeClock] = None,
        latency_ms: float = 0,
        error: Optional[Exception] = None,
    ):
        super().__init__(clock, latency_ms, error)
        self.results = results if results is not None else scored_results([0.9, 0.8, 0.75])
        self.queries: List[tuple] = []

    async def search(self, query: str, top_k: int = 3) -> List[SearchResult]:
        self.queries.append((query, top_k))
        await self._run()
        return [result.model_copy() for result in self.results]


class FakeLLM(_Stage):
    def __init__(
        self,
        answer: str = "Use material concreto: palitos agrupados em dezenas.",
        clock: Optional[FakeClock] = None,
        latency_ms: float = 0,
        error: Optional[Exception] = None,
    ):
        super().__init__(clock, latency_ms, error)
        self.answer = answer
        self.prompts: List[str] = []

    async def generate_response(self, prompt: str) -> str:
        self.prompts.append(prompt)
        await self._run()
        return self.answer

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(provider="fake", model="fake-llm")


def scored_results(scores) -> List[SearchResult]:
    return [
        SearchResult(
            content=f"Passage {index} about subtraction with regrouping.",
            metadata={"id": f"chunk-{index}", "source": "Manual de Matemática", "page": index},
            score=score,
        )
        for index, score in enumerate(scores, start=1)
    ]


class FakeHTTPResponse:
    """Async context manager standing in for an aiohttp response."""

    def __init__(self, status: int = 200, json_data=None, text: str = "", chunks=None, error=None):
        self.status = status
        self._json = json_data
        self._text = text
        self._chunks = chunks
        self._error = error
        self.content = self

    async def __aenter__(self):
        if self._error is not None:
            raise self._error
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def json(self):
        return self._json

    async def text(self):
        return self._text

    async def iter_chunked(self, size: int):
        async for chunk in self._chunks():
            yield chunk


class FakeHTTPSession:
    """Records requests and replays one prepared response per call."""

    def __init__(self, *responses: FakeHTTPResponse):
        self.responses = list(responses)
        self.requests: List[dict] = []
        self.closed = False

    def _next(self, method: str, url: str, **kwargs) -> FakeHTTPResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        return self.responses.pop(0)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    async def close(self):
        self.closed = True


async def wait_for(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until predicate() holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class PipelineHarness:
    """A pipeline wired to fakes, plus the event log of its subscriber."""

    def __init__(self, clock: FakeClock, config: Optional[VoicePipelineConfig] = None, **fakes):
        self.clock = clock
        self.stt = fakes.get("stt") or FakeSTT(clock=clock)
        self.tts = fakes.get("tts") or FakeTTS(clock=clock)
        self.search = fakes.get("search") or FakeVectorSearch(clock=clock)
        self.llm = fakes.get("llm") or FakeLLM(clock=clock)
        self.context_store = fakes.get("context_store") or ConversationContextStore(clock=clock)
        self.engine = RetrievalConfidenceEngine(self.search, self.llm)
        self.pipeline = VoicePipeline(
            stt=self.stt,
            tts=self.tts,
            engine=self.engine,
            config=config,
            context_store=self.context_store,
            clock=clock,
        )
        self.events = []
        self.pipeline.on_event(self.events.append)

    async def start(self, language: Optional[str] = None) -> str:
        assert await self.pipeline.initialize()
        return await self.pipeline.start_session(language=language)

    def event_types(self) -> List[str]:
        return [event.type.value for event in self.events]

    def state_changes(self) -> List[tuple]:
        return [
            (event.data["previous_state"], event.data["state"])
            for event in self.events
            if event.type.value == "state_change"
        ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def harness(clock) -> PipelineHarness:
    return PipelineHarness(clock)
