"""
Builds the engine, pipelines and registry from settings.

Everything that touches provider credentials or loads models is created here,
so the core modules never read global configuration themselves.
"""

import logging
from typing import Callable

import httpx
from openai import AsyncOpenAI

from edusync.api.registry import PipelineRegistry
from edusync.config import settings
from edusync.llm.openai_client import OpenAIClient
from edusync.models import VoicePipelineConfig
from edusync.orchestration.context_store import ConversationContextStore
from edusync.orchestration.voice_pipeline import VoicePipeline
from edusync.rag.engine import RAGConfig, RetrievalConfidenceEngine
from edusync.rag.local_embedder import LocalEmbedder
from edusync.rag.retriever import RAGRetriever
from edusync.rag.vector_store import PineconeVectorStore
from edusync.stt.deepgram import DeepgramClient
from edusync.tts.elevenlabs import ElevenLabsClient

logger = logging.getLogger(__name__)


def build_retriever() -> RAGRetriever:
    """Pinecone search with local embeddings, or OpenAI embeddings as fallback."""
    if not settings.pinecone_api_key:
        raise ValueError("PINECONE_API_KEY is required for retrieval")

    local_embedder = None
    openai_client = None

    if settings.rag_use_local_embeddings:
        logger.info("Initializing local embedding model (sentence-transformers)...")
        local_embedder = LocalEmbedder()
    else:
        logger.info("Using OpenAI API for embeddings")
        openai_client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=httpx.Timeout(30.0, read=60.0)
        )

    vector_store = PineconeVectorStore(
        api_key=settings.pinecone_api_key,
        index_name=settings.pinecone_index_name,
        dimension=settings.pinecone_dimension,
    )
    return RAGRetriever(
        vector_store=vector_store,
        local_embedder=local_embedder,
        openai_client=openai_client,
        use_local=settings.rag_use_local_embeddings,
    )


def build_engine() -> RetrievalConfidenceEngine:
    return RetrievalConfidenceEngine(
        vector_search=build_retriever(),
        llm=OpenAIClient(),
        config=RAGConfig(
            confidence_threshold=settings.rag_confidence_threshold,
            top_k=settings.rag_top_k,
        ),
    )


def build_context_store() -> ConversationContextStore:
    return ConversationContextStore(
        max_messages_per_session=settings.context_max_messages,
        session_ttl_minutes=settings.context_ttl_minutes,
    )


def build_pipeline_config() -> VoicePipelineConfig:
    return VoicePipelineConfig(
        language=settings.default_language,
        max_context_turns=settings.pipeline_max_context_turns,
        max_turns_per_session=settings.pipeline_max_turns_per_session,
        session_timeout_ms=settings.pipeline_session_timeout_ms,
    )


def make_pipeline_factory(
    engine: RetrievalConfidenceEngine,
    context_store: ConversationContextStore,
) -> Callable[[], VoicePipeline]:
    """Each pipeline gets its own speech clients; the engine is shared."""
    config = build_pipeline_config()

    def create_pipeline() -> VoicePipeline:
        return VoicePipeline(
            stt=DeepgramClient(),
            tts=ElevenLabsClient(),
            engine=engine,
            config=config.model_copy(deep=True),
            context_store=context_store,
        )

    return create_pipeline


def build_registry() -> PipelineRegistry:
    engine = build_engine()
    context_store = build_context_store()
    return PipelineRegistry(
        pipeline_factory=make_pipeline_factory(engine, context_store),
        engine=engine,
        context_store=context_store,
    )
