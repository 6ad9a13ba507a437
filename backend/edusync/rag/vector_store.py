"""
Pinecone vector store interface for manual passage lookup.
"""

import asyncio
import logging
from typing import Any, Dict, List

from pinecone import Pinecone

from edusync.models import SearchResult

logger = logging.getLogger(__name__)


class PineconeVectorStore:
    """Read-only access to the pedagogical manuals index."""

    def __init__(self, api_key: str, index_name: str, dimension: int = 384):
        """
        Connect to an existing Pinecone index.

        Args:
            api_key: Pinecone API key
            index_name: Name of the index holding the manual chunks
            dimension: Embedding dimension the index was built with
        """
        self.index_name = index_name
        self.dimension = dimension

        self.pc = Pinecone(api_key=api_key)
        self.index = self.pc.Index(index_name)

        logger.info(f"Initialized Pinecone: index={index_name}, dimension={dimension}")

    async def query(self, embedding: List[float], top_k: int = 3) -> List[SearchResult]:
        """
        Find the passages closest to a query embedding.

        Args:
            embedding: Query vector
            top_k: Number of passages to return

        Returns:
            Passages ranked by descending similarity

        Raises:
            Exception: Propagated from the Pinecone client
        """
        if len(embedding) != self.dimension:
            raise ValueError(
                f"Embedding dimension {len(embedding)} does not match index dimension {self.dimension}"
            )

        # The Pinecone client is synchronous
        results = await asyncio.to_thread(
            self.index.query,
            vector=embedding,
            top_k=top_k,
            include_metadata=True,
        )

        matches = [self._to_search_result(match) for match in results.matches]

        if matches:
            top_scores = [f"{m.score:.3f}" for m in matches if m.score is not None]
            logger.info(f"📊 Top similarity scores: {', '.join(top_scores)}")
        else:
            logger.info("Pinecone returned no matches")

        return matches

    @staticmethod
    def _to_search_result(match: Any) -> SearchResult:
        metadata: Dict[str, Any] = dict(match.metadata or {})
        text = metadata.pop("text", None)
        fallback = metadata.pop("content", None)
        content = text or fallback or ""
        metadata.setdefault("id", match.id)
        return SearchResult(content=content, metadata=metadata, score=match.score)
