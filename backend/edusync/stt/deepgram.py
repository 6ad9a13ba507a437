"""
Deepgram prerecorded transcription client.

The pipeline records a whole utterance between start_listening and
stop_listening, so one batch request per turn is enough.
"""

import asyncio
import logging
import uuid
from typing import Optional

import aiohttp

from edusync.config import settings
from edusync.errors import TranscriptionFailedError
from edusync.models import AudioFormatHints, TranscriptionAlternative, TranscriptionResult

logger = logging.getLogger(__name__)

# Raw PCM needs encoding/sample_rate query params; containers are self-describing
RAW_ENCODINGS = {"linear16"}
CONTENT_TYPES = {
    "linear16": "application/octet-stream",
    "wav": "audio/wav",
    "webm": "audio/webm",
    "opus": "audio/ogg",
    "mp3": "audio/mpeg",
    "flac": "audio/flac",
}


class DeepgramClient:
    """
    Batch transcription against Deepgram's /v1/listen endpoint.

    Features:
    - Persistent HTTP session with connection pooling
    - Punctuation and smart formatting
    - Up to three alternatives per utterance
    """

    BASE_URL = "https://api.deepgram.com/v1/listen"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or settings.deepgram_api_key
        self.model = model or settings.deepgram_model
        self._session: Optional[aiohttp.ClientSession] = None
        self._ready = False

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=5,
                ttl_dns_cache=300,  # Cache DNS for 5 minutes
                keepalive_timeout=120,
            )
            timeout = aiohttp.ClientTimeout(total=30, connect=3)

            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            logger.info("✅ Created persistent Deepgram session with connection pooling")

        return self._session

    async def initialize(self) -> bool:
        if not self.api_key:
            logger.error("❌ DEEPGRAM_API_KEY not configured")
            return False
        self._ready = True
        logger.info(f"Deepgram STT ready (model={self.model})")
        return True

    async def is_ready(self) -> bool:
        return self._ready

    def get_model_id(self) -> str:
        return f"deepgram-{self.model}"

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed Deepgram persistent session")
        self._ready = False

    async def transcribe(
        self,
        audio: bytes,
        format_hints: Optional[AudioFormatHints] = None,
    ) -> TranscriptionResult:
        """
        Transcribe one recorded utterance.

        Args:
            audio: Audio payload
            format_hints: Encoding, sample rate, channels and language

        Returns:
            TranscriptionResult with the best alternative as transcript

        Raises:
            TranscriptionFailedError: API error, network failure or empty result
        """
        hints = format_hints or AudioFormatHints()

        params = {
            "model": self.model,
            "punctuate": "true",
            "smart_format": "true",
            "alternatives": "3",
        }
        if hints.language:
            params["language"] = hints.language
        if hints.encoding in RAW_ENCODINGS:
            params["encoding"] = hints.encoding
            params["sample_rate"] = str(hints.sample_rate)
            params["channels"] = str(hints.channels)

        headers = {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": CONTENT_TYPES[hints.encoding],
        }

        start_time = asyncio.get_running_loop().time()
        try:
            session = await self._get_session()
            async with session.post(self.BASE_URL, params=params, headers=headers, data=audio) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Deepgram API error {response.status}: {error_text}")
                    raise TranscriptionFailedError(
                        f"Deepgram API error {response.status}",
                        {"status": response.status, "body": error_text[:500]},
                    )
                data = await response.json()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Deepgram network error: {e}")
            raise TranscriptionFailedError(f"Deepgram network error: {e}") from e

        elapsed = int((asyncio.get_running_loop().time() - start_time) * 1000)

        try:
            raw_alternatives = data["results"]["channels"][0]["alternatives"]
        except (KeyError, IndexError, TypeError) as e:
            raise TranscriptionFailedError("Deepgram response has no alternatives") from e

        alternatives = [
            TranscriptionAlternative(
                transcript=alt.get("transcript", ""),
                confidence=min(max(float(alt.get("confidence", 0.0)), 0.0), 1.0),
            )
            for alt in raw_alternatives
        ]
        if not alternatives:
            raise TranscriptionFailedError("Deepgram returned no alternatives")

        best = alternatives[0]
        duration_s = float(data.get("metadata", {}).get("duration", 0.0))

        logger.info(
            f"Deepgram transcription in {elapsed}ms: '{best.transcript[:50]}' "
            f"(confidence={best.confidence:.2f})"
        )

        return TranscriptionResult(
            id=data.get("metadata", {}).get("request_id") or str(uuid.uuid4()),
            transcript=best.transcript,
            confidence=best.confidence,
            alternatives=alternatives,
            language=hints.language,
            audio_duration_ms=int(duration_s * 1000),
            processing_time_ms=elapsed,
            model_id=self.get_model_id(),
        )
