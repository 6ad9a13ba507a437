"""
RAG retriever: query embedding plus vector search.
"""

from datetime import datetime
from typing import List, Dict, Optional, TYPE_CHECKING
import logging

from openai import AsyncOpenAI

from edusync.errors import RAGError
from edusync.models import SearchResult

if TYPE_CHECKING:
    from .local_embedder import LocalEmbedder
    from .vector_store import PineconeVectorStore

logger = logging.getLogger(__name__)


class RAGRetriever:
    """Handle query embedding and passage retrieval for the confidence engine."""

    EMBEDDING_CACHE_SIZE = 100

    def __init__(
        self,
        vector_store: "PineconeVectorStore",
        local_embedder: Optional["LocalEmbedder"] = None,
        openai_client: Optional[AsyncOpenAI] = None,
        use_local: bool = True,
        openai_embedding_model: str = "text-embedding-3-small",
    ):
        """
        Initialize RAG retriever.

        Args:
            vector_store: Pinecone vector store instance
            local_embedder: Local sentence-transformers embedder (faster)
            openai_client: OpenAI async client for embeddings (fallback)
            use_local: Use local embeddings if available
            openai_embedding_model: Embedding model for the OpenAI fallback
        """
        self.vector_store = vector_store
        self.local_embedder = local_embedder
        self.openai_client = openai_client
        self.use_local = use_local and local_embedder is not None
        self.openai_embedding_model = openai_embedding_model

        # Simple in-memory cache for query embeddings
        self._embedding_cache: Dict[str, List[float]] = {}

        embedding_source = "local (sentence-transformers)" if self.use_local else "OpenAI API"
        logger.info(f"Initialized RAGRetriever: embedding={embedding_source}")

    async def search(self, query: str, top_k: int = 3) -> List[SearchResult]:
        """
        Retrieve the passages most similar to a query.

        Args:
            query: The teacher's question
            top_k: Number of passages to return

        Returns:
            Passages ranked by descending similarity

        Raises:
            RAGError: No embedding could be produced
        """
        start_time = datetime.now()
        logger.info(f"🔍 RAG search starting: query='{query[:50]}', top_k={top_k}")

        query_embedding = await self._get_query_embedding(query)
        embedding_time = (datetime.now() - start_time).total_seconds() * 1000

        search_start = datetime.now()
        results = await self.vector_store.query(query_embedding, top_k=top_k)
        search_time = (datetime.now() - search_start).total_seconds() * 1000

        if results:
            for i, r in enumerate(results[:3]):
                score = f"{r.score:.3f}" if r.score is not None else "n/a"
                logger.debug(f"  [{i+1}] Score: {score} | {r.content[:80]}...")
        else:
            logger.warning(f"⚠️ No passages found for query: {query[:50]}")

        logger.info(
            f"📊 RAG search complete - Embedding: {embedding_time:.0f}ms, "
            f"Search: {search_time:.0f}ms, Results: {len(results)}"
        )
        return results

    async def _get_query_embedding(self, query: str) -> List[float]:
        """
        Generate embedding for query with caching.

        Raises:
            RAGError: No embedding backend, or the backend failed
        """
        # Normalize query for cache key
        cache_key = query.lower().strip()

        if cache_key in self._embedding_cache:
            logger.debug("Cache hit for query embedding")
            return self._embedding_cache[cache_key]

        try:
            if self.use_local and self.local_embedder:
                embedding = await self.local_embedder.get_embedding(query)
            elif self.openai_client:
                response = await self.openai_client.embeddings.create(
                    model=self.openai_embedding_model,
                    input=query,
                    dimensions=self.vector_store.dimension,
                )
                embedding = response.data[0].embedding
            else:
                raise RAGError("No embedding method available (local or OpenAI)")
        except RAGError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate query embedding: {e}")
            raise RAGError(f"Failed to generate query embedding: {e}") from e

        if not embedding:
            raise RAGError("Embedding backend returned an empty vector")

        # Cache for future queries (simple FIFO eviction)
        if len(self._embedding_cache) >= self.EMBEDDING_CACHE_SIZE:
            oldest_key = next(iter(self._embedding_cache))
            del self._embedding_cache[oldest_key]

        self._embedding_cache[cache_key] = embedding

        logger.debug("Generated and cached query embedding")
        return embedding
