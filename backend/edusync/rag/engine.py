"""
Retrieval-confidence engine.

Decides per query whether the manuals hold enough evidence to answer. Weak
evidence short-circuits to a fixed honest fallback without a model call;
otherwise the retrieved passages are rendered as cited blocks and a single
generation call produces the answer.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from edusync.errors import RAGError
from edusync.models import RAGResponse, SearchResult
from edusync.protocols import TextGenerator, VectorSearch
from edusync.rag.prompts import (
    DEFAULT_SOURCE_LABEL,
    LOW_CONFIDENCE_MESSAGE,
    NO_CONTEXT_MESSAGE,
    PROMPT_LIMITS,
    SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)


class RAGConfig(BaseModel):
    """Engine configuration."""
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    top_k: int = Field(default=PROMPT_LIMITS["max_chunks"], ge=1)


def clamp_score(score: Optional[float]) -> Optional[float]:
    """Score clamped to [0, 1], or None when missing or not finite."""
    if score is None or not math.isfinite(score):
        return None
    return min(max(score, 0.0), 1.0)


def calculate_confidence(chunks: List[SearchResult]) -> float:
    """
    Mean similarity of the scored candidates.

    Unscored and non-finite candidates are ignored; 0.0 when nothing is scored.
    """
    scores = [score for score in (clamp_score(chunk.score) for chunk in chunks) if score is not None]
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


def format_source_info(metadata: Dict[str, Any]) -> str:
    """Render source / page / chapter, or a generic label when none is known."""
    parts = []
    if metadata.get("source"):
        parts.append(str(metadata["source"]))
    if metadata.get("page"):
        parts.append(f"Page {metadata['page']}")
    if metadata.get("chapter"):
        parts.append(f"Chapter: {metadata['chapter']}")

    return " | ".join(parts) if parts else DEFAULT_SOURCE_LABEL


def format_context(chunks: List[SearchResult]) -> str:
    """Render candidates as numbered, cited blocks in retrieval order."""
    if not chunks:
        return NO_CONTEXT_MESSAGE

    blocks = []
    for index, chunk in enumerate(chunks, start=1):
        score = clamp_score(chunk.score)
        # Half-up, like the stats averages
        relevance = f"{math.floor(score * 100 + 0.5)}%" if score is not None else "N/A"
        blocks.append(
            f"[Source {index}] {format_source_info(chunk.metadata)}\n"
            f"Relevance: {relevance}\n"
            f"---\n"
            f"{chunk.content.strip()}"
        )
    return "\n\n".join(blocks)


def build_prompt(context: str, query: str, conversation_context: Optional[str] = None) -> str:
    """Fill the system template and append prior conversation verbatim."""
    prompt = SYSTEM_PROMPT.replace("{context}", context).replace("{query}", query)
    if conversation_context and conversation_context.strip():
        return prompt + conversation_context
    return prompt


def estimate_tokens(text: str) -> int:
    """Rough token estimate (1 token ≈ 4 chars)."""
    return math.ceil(len(text) / 4)


class RetrievalConfidenceEngine:
    """Confidence-gated retrieval-augmented generation."""

    def __init__(
        self,
        vector_search: VectorSearch,
        llm: TextGenerator,
        config: Optional[RAGConfig] = None,
    ):
        """
        Args:
            vector_search: Capability returning ranked passages
            llm: Capability turning a prompt into text
            config: Threshold and top-k (defaults 0.5 / 3)
        """
        self.vector_search = vector_search
        self.llm = llm
        self.config = config or RAGConfig()

        logger.info(
            f"Initialized RetrievalConfidenceEngine: top_k={self.config.top_k}, "
            f"threshold={self.config.confidence_threshold}"
        )

    async def generate_response(
        self,
        query: str,
        conversation_context: Optional[str] = None,
    ) -> RAGResponse:
        """
        Answer a teacher's question from the manuals.

        Args:
            query: The teacher's question (used for retrieval and the prompt)
            conversation_context: Prior exchanges, appended to the prompt only

        Returns:
            RAGResponse with answer, unfiltered sources and confidence

        Raises:
            RAGError: Retrieval or generation failed (original error chained)
        """
        start_time = datetime.now()

        try:
            chunks = await self.vector_search.search(query, self.config.top_k)
            confidence = calculate_confidence(chunks)

            if not chunks or confidence < self.config.confidence_threshold:
                logger.info(
                    f"⚠️ Low retrieval confidence ({confidence:.3f} < "
                    f"{self.config.confidence_threshold}, {len(chunks)} chunks) - returning fallback"
                )
                return RAGResponse(
                    answer=LOW_CONFIDENCE_MESSAGE,
                    sources=chunks,
                    confidence=confidence,
                    is_low_confidence=True,
                    model=self.llm.get_model_info(),
                )

            prompt = build_prompt(format_context(chunks), query, conversation_context)

            prompt_tokens = estimate_tokens(prompt)
            if prompt_tokens > PROMPT_LIMITS["max_total_tokens"]:
                logger.warning(
                    f"Prompt exceeds token budget: ~{prompt_tokens} > "
                    f"{PROMPT_LIMITS['max_total_tokens']}"
                )

            answer = await self.llm.generate_response(prompt)

        except Exception as e:
            logger.error(f"RAG generate_response failed: {e}")
            raise RAGError(f"RAG generate_response error: {e}") from e

        elapsed = (datetime.now() - start_time).total_seconds() * 1000
        logger.info(
            f"✅ RAG answer generated in {elapsed:.0f}ms "
            f"(confidence={confidence:.3f}, sources={len(chunks)})"
        )

        return RAGResponse(
            answer=answer,
            sources=chunks,
            confidence=confidence,
            is_low_confidence=False,
            model=self.llm.get_model_info(),
        )

    def get_config(self) -> RAGConfig:
        return self.config.model_copy()
