"""
Unit tests for PipelineRegistry and the WebSocket event stream.
"""

import asyncio

import pytest
from fastapi import WebSocketDisconnect

from conftest import FakeLLM, FakeSTT, FakeTTS, FakeVectorSearch, wait_for
from edusync.api.registry import PipelineRegistry
from edusync.errors import PipelineNotFoundError, PipelineStateError
from edusync.models import VoicePipelineConfig
from edusync.orchestration.context_store import ConversationContextStore
from edusync.orchestration.voice_pipeline import VoicePipeline
from edusync.rag.engine import RetrievalConfidenceEngine
from edusync.websocket import ConnectionManager


def make_registry(clock, config=None, stt_ready=True):
    engine = RetrievalConfidenceEngine(FakeVectorSearch(), FakeLLM())
    context_store = ConversationContextStore(clock=clock)
    created = []

    def factory():
        pipeline = VoicePipeline(
            stt=FakeSTT(ready=stt_ready),
            tts=FakeTTS(),
            engine=engine,
            config=config,
            context_store=context_store,
            clock=clock,
        )
        created.append(pipeline)
        return pipeline

    registry = PipelineRegistry(factory, engine=engine, context_store=context_store)
    return registry, created


class TestPipelineRegistry:
    """Test pipeline creation, lookup, removal and sweeping."""

    @pytest.mark.asyncio
    async def test_create_registers_started_pipeline(self, clock):
        registry, _ = make_registry(clock)

        pipeline = await registry.create(language="es", device_info="tablet")

        assert registry.get(pipeline.session_id) is pipeline
        assert len(registry) == 1
        session = pipeline.get_current_session()
        assert session.language == "es"
        assert session.metadata.device_info == "tablet"

    @pytest.mark.asyncio
    async def test_create_fails_when_initialize_fails(self, clock):
        """Test a pipeline whose capabilities are not ready is not registered."""
        registry, created = make_registry(clock, stt_ready=False)

        with pytest.raises(PipelineStateError):
            await registry.create()

        assert len(registry) == 0
        assert created[0].stt.closed

    def test_get_unknown_raises(self, clock):
        registry, _ = make_registry(clock)

        with pytest.raises(PipelineNotFoundError):
            registry.get("missing")

    @pytest.mark.asyncio
    async def test_remove_returns_snapshot_and_disposes(self, clock):
        registry, _ = make_registry(clock)
        pipeline = await registry.create()
        session_id = pipeline.session_id
        await pipeline.process_text_input("Pergunta")

        snapshot = await registry.remove(session_id)

        assert snapshot.id == session_id
        assert len(snapshot.turns) == 1
        assert snapshot.ended_at is not None
        assert len(registry) == 0
        assert pipeline.stt.closed and pipeline.tts.closed
        with pytest.raises(PipelineNotFoundError):
            registry.get(session_id)

    @pytest.mark.asyncio
    async def test_sweep_closes_only_idle_sessions(self, clock):
        """Test sweep ends timed-out sessions and keeps recent ones."""
        registry, _ = make_registry(clock, config=VoicePipelineConfig(session_timeout_ms=60_000))
        stale = await registry.create()
        stale_id = stale.session_id
        clock.advance(ms=30_000)
        fresh = await registry.create()
        clock.advance(ms=30_000)

        closed = await registry.sweep()

        assert closed == [stale_id]
        assert len(registry) == 1
        assert registry.get(fresh.session_id) is fresh

    @pytest.mark.asyncio
    async def test_sweep_cleans_expired_context_sessions(self, clock):
        registry, _ = make_registry(clock)
        orphan = registry.context_store.create_session()
        clock.advance(minutes=61)

        await registry.sweep()

        assert not registry.context_store.session_exists(orphan)

    @pytest.mark.asyncio
    async def test_close_all(self, clock):
        registry, created = make_registry(clock)
        await registry.create()
        await registry.create()

        await registry.close_all()

        assert len(registry) == 0
        assert all(p.session_id is None for p in created)


class FakeWebSocket:
    """Minimal WebSocket double: records frames, disconnects on demand."""

    def __init__(self):
        self.client = ("127.0.0.1", 50000)
        self.accepted = False
        self.closed = False
        self.sent = []
        self._disconnect = asyncio.Event()

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        self.sent.append(message)

    async def receive_text(self):
        await self._disconnect.wait()
        raise WebSocketDisconnect(code=1000)

    async def close(self, code: int = 1000, reason=None):
        self.closed = True

    def disconnect(self):
        self._disconnect.set()


class TestConnectionManager:
    """Test pipeline events are forwarded as JSON frames."""

    @pytest.mark.asyncio
    async def test_streams_events_until_session_end(self, clock):
        registry, _ = make_registry(clock)
        pipeline = await registry.create()
        session_id = pipeline.session_id
        manager = ConnectionManager()
        websocket = FakeWebSocket()

        stream = asyncio.create_task(manager.connect(session_id, websocket, pipeline))
        await wait_for(lambda: manager.get_connection_count() == 1)

        await pipeline.process_text_input("Pergunta")
        await registry.remove(session_id)
        await asyncio.wait_for(stream, timeout=1)

        types = [frame["type"] for frame in websocket.sent]
        assert types[:2] == ["state_change", "response_generating"]
        assert "turn_complete" in types
        assert types[-1] == "session_end"
        assert websocket.closed
        assert manager.get_connection_count() == 0

        turn_frame = next(f for f in websocket.sent if f["type"] == "turn_complete")
        assert turn_frame["data"]["turn"]["assistant_response"] == "Use material concreto: palitos agrupados em dezenas."
        assert turn_frame["session_id"] == session_id

    @pytest.mark.asyncio
    async def test_client_disconnect_unsubscribes(self, clock):
        registry, _ = make_registry(clock)
        pipeline = await registry.create()
        manager = ConnectionManager()
        websocket = FakeWebSocket()

        stream = asyncio.create_task(manager.connect(pipeline.session_id, websocket, pipeline))
        await wait_for(lambda: manager.get_connection_count(pipeline.session_id) == 1)

        websocket.disconnect()
        await asyncio.wait_for(stream, timeout=1)
        await pipeline.process_text_input("Pergunta")

        assert websocket.sent == []
        assert manager.get_connection_count() == 0
        assert pipeline._subscribers == []
