"""
OpenAI chat completion client for grounded answers.

Supports:
- Single-shot (non-streaming) generation: one prompt in, plain text out
- Connection pooling for reduced latency
- Normalization of the content shapes chat APIs return into one string
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from edusync.config import settings
from edusync.errors import LLMResponseError, UnsupportedContentShapeError
from edusync.models import ModelInfo

logger = logging.getLogger(__name__)


def normalize_content(content: Any) -> str:
    """
    Coerce a chat message content payload into plain text.

    Accepts a string, a list of parts (strings or {"text": ...} dicts), or a
    dict / object carrying a text attribute.

    Raises:
        LLMResponseError: Content is missing or empty
        UnsupportedContentShapeError: Content cannot be read as text
    """
    if content is None:
        raise LLMResponseError("LLM returned no content")

    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(getattr(part, "text", None), str):
                parts.append(part.text)
            else:
                parts.append(str(part))
        text = "".join(parts)
    elif isinstance(content, dict) and isinstance(content.get("text"), str):
        text = content["text"]
    elif isinstance(getattr(content, "text", None), str):
        text = content.text
    else:
        raise UnsupportedContentShapeError(
            f"Unsupported LLM content shape: {type(content).__name__}",
            {"shape": type(content).__name__},
        )

    if not text.strip():
        raise LLMResponseError("LLM returned empty content")
    return text


class OpenAIClient:
    """
    Manages the connection to OpenAI for answer generation.

    Features:
    - One chat completion per prompt (prompt sent as a single user message)
    - Persistent HTTP connection pool for reduced latency
    - Organization / project headers when configured
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_model
        self.temperature = settings.openai_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.openai_max_tokens
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.organization_id = settings.openai_organization_id
        self.project_id = settings.openai_project_id

        # Create persistent session for connection pooling
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        async with self._session_lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(
                    limit=10,  # Max 10 concurrent connections
                    ttl_dns_cache=300,  # Cache DNS for 5 minutes
                    keepalive_timeout=120,
                )

                timeout = aiohttp.ClientTimeout(
                    total=30,
                    connect=3,
                    sock_read=20,
                )

                self._session = aiohttp.ClientSession(
                    connector=connector,
                    timeout=timeout
                )
                logger.info("✅ Created persistent OpenAI session with connection pooling")

        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed OpenAI persistent session")

    def _headers(self) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.organization_id:
            headers["OpenAI-Organization"] = self.organization_id
        if self.project_id:
            headers["OpenAI-Project"] = self.project_id
        return headers

    async def generate_response(self, prompt: str) -> str:
        """
        Generate a complete answer for a fully built prompt.

        Args:
            prompt: Instruction template with sources, question and context

        Returns:
            Answer text

        Raises:
            LLMResponseError: API error, network failure or unusable payload
        """
        if not self.api_key:
            raise LLMResponseError("OPENAI_API_KEY is not configured")

        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

        start_time = asyncio.get_running_loop().time()
        try:
            session = await self._get_session()
            async with session.post(self.base_url, headers=self._headers(), json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"❌ OpenAI API error {response.status}: {error_text}")
                    raise LLMResponseError(
                        f"OpenAI API error {response.status}",
                        {"status": response.status, "body": error_text[:500]},
                    )
                data = await response.json()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ OpenAI network error: {e}")
            raise LLMResponseError(f"OpenAI network error: {e}") from e

        choices = data.get("choices") or []
        if not choices:
            raise LLMResponseError("OpenAI response contained no choices")

        text = normalize_content(choices[0].get("message", {}).get("content"))

        usage = data.get("usage", {})
        elapsed = int((asyncio.get_running_loop().time() - start_time) * 1000)
        logger.info(
            f"LLM generation complete in {elapsed}ms: {len(text)} chars, "
            f"{usage.get('prompt_tokens', 0)} prompt / {usage.get('completion_tokens', 0)} completion tokens"
        )
        return text

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(provider="openai", model=self.model)
