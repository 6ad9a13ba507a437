"""
Local query embedding using sentence-transformers.

Avoids a network round-trip per question. The manuals are in Portuguese, so
the default model is multilingual.
"""

import asyncio
import logging
from typing import List, Optional

from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


class LocalEmbedder:
    """
    Local embedding model using sentence-transformers.

    Uses paraphrase-multilingual-MiniLM-L12-v2: 384 dimensions, ~50-200ms on CPU.
    Loaded once and kept in memory.
    """

    MODEL_NAME = "paraphrase-multilingual-MiniLM-L12-v2"
    EMBEDDING_DIMENSION = 384

    def __init__(self, model_name: Optional[str] = None):
        """Load the embedding model into memory."""
        self.model_name = model_name or self.MODEL_NAME
        logger.info(f"Loading local embedding model: {self.model_name}")
        self.model = SentenceTransformer(self.model_name)

        self.dimension = self.model.get_sentence_embedding_dimension()
        if model_name is None and self.dimension != self.EMBEDDING_DIMENSION:
            raise ValueError(
                f"Model dimension mismatch: expected {self.EMBEDDING_DIMENSION}, "
                f"got {self.dimension}"
            )

        logger.info(
            f"✅ Local embedding model loaded: {self.model_name} "
            f"({self.dimension} dimensions)"
        )

    async def get_embedding(self, text: str) -> List[float]:
        """
        Embed one query.

        Raises:
            ValueError: Empty text
        """
        if not text or not text.strip():
            raise ValueError("Empty text provided for embedding")

        # sentence-transformers is CPU-bound and synchronous
        embedding = await asyncio.to_thread(self._encode_sync, text)
        return embedding.tolist()

    def _encode_sync(self, text: str):
        # Unit-length vectors for cosine similarity
        return self.model.encode(
            text,
            normalize_embeddings=True,
            show_progress_bar=False
        )
