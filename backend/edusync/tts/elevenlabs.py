"""
ElevenLabs TTS client.

Converts an answer to speech, collecting the streamed audio into one result.
stop() cuts an in-progress synthesis short (barge-in / cancel).
"""

import asyncio
import logging
import uuid
from typing import Optional

import aiohttp

from edusync.config import settings
from edusync.errors import SynthesisFailedError
from edusync.models import SynthesisResult, VoiceOptions

logger = logging.getLogger(__name__)

# ElevenLabs output_format values
OUTPUT_FORMATS = {
    "mp3": ("mp3_44100_128", 44100),
    "pcm": ("pcm_16000", 16000),
}
MP3_BITRATE = 128_000


def estimate_duration_ms(audio: bytes, output_format: str, sample_rate: int) -> int:
    """Playback length from payload size (16-bit mono PCM, or 128 kbps MP3)."""
    if output_format == "pcm":
        return int(len(audio) / (2 * sample_rate) * 1000)
    return int(len(audio) * 8 / MP3_BITRATE * 1000)


class ElevenLabsClient:
    """
    Manages the connection to ElevenLabs for TTS.

    Features:
    - Streaming download with cancellation between chunks
    - Persistent HTTP session with connection pooling
    - Voice verification on initialize
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        voice_id: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.api_key = api_key or settings.elevenlabs_api_key
        self.voice_id = voice_id or settings.elevenlabs_voice_id
        self.model = model or settings.elevenlabs_model

        self._cancel_event = asyncio.Event()
        self._ready = False

        # Persistent session for connection pooling
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=5,  # Max 5 concurrent TTS requests
                ttl_dns_cache=300,  # Cache DNS for 5 minutes
                keepalive_timeout=120,
            )

            timeout = aiohttp.ClientTimeout(
                total=60,
                connect=3,
                sock_read=15
            )

            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout
            )
            logger.info("✅ Created persistent ElevenLabs session with connection pooling")

        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed ElevenLabs persistent session")
        self._ready = False

    async def initialize(self) -> bool:
        """
        Verify credentials and voice availability.

        Returns:
            True if the configured voice is reachable
        """
        if not self.api_key or not self.voice_id:
            logger.error("❌ ELEVENLABS_API_KEY / ELEVENLABS_VOICE_ID not configured")
            return False

        try:
            url = f"https://api.elevenlabs.io/v1/voices/{self.voice_id}"
            headers = {"xi-api-key": self.api_key}

            session = await self._get_session()
            async with session.get(url, headers=headers) as response:
                if response.status == 200:
                    voice_data = await response.json()
                    logger.info(f"ElevenLabs voice verified: {voice_data.get('name', 'Unknown')}")
                    self._ready = True
                else:
                    logger.error(f"ElevenLabs voice check failed: {response.status}")
                    self._ready = False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"ElevenLabs connection test failed: {e}")
            self._ready = False

        return self._ready

    async def is_ready(self) -> bool:
        return self._ready

    def get_voice_id(self) -> str:
        return self.voice_id or "unconfigured"

    async def stop(self) -> None:
        """Signal the in-progress synthesis to stop after the current chunk."""
        self._cancel_event.set()

    async def synthesize(self, text: str, options: Optional[VoiceOptions] = None) -> SynthesisResult:
        """
        Synthesize an answer.

        Args:
            text: Answer text
            options: Voice, rate and output format

        Returns:
            SynthesisResult (was_truncated=True if stop() was called mid-stream)

        Raises:
            SynthesisFailedError: API error or network failure
        """
        options = options or VoiceOptions()
        voice_id = options.voice_id or self.voice_id
        output_format, sample_rate = OUTPUT_FORMATS[options.output_format]

        url = f"https://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream"
        payload = {
            "text": text,
            "model_id": self.model,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
                "speed": max(0.7, min(1.2, options.rate)),  # ElevenLabs accepts 0.7-1.2
            }
        }
        if options.language:
            # ElevenLabs expects ISO 639-1 ("pt" for "pt-BR")
            payload["language_code"] = options.language.split("-")[0].lower()

        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
        }

        self._cancel_event.clear()
        start_time = asyncio.get_running_loop().time()
        audio = bytearray()
        truncated = False

        try:
            session = await self._get_session()
            async with session.post(
                url,
                headers=headers,
                json=payload,
                params={"output_format": output_format},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"ElevenLabs API error {response.status}: {error_text}")
                    raise SynthesisFailedError(
                        f"ElevenLabs API error {response.status}",
                        {"status": response.status, "body": error_text[:500]},
                    )

                async for chunk in response.content.iter_chunked(4096):
                    if self._cancel_event.is_set():
                        logger.info("TTS synthesis stopped")
                        truncated = True
                        break
                    audio.extend(chunk)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ ElevenLabs network error: {e}")
            raise SynthesisFailedError(f"ElevenLabs network error: {e}") from e

        elapsed = int((asyncio.get_running_loop().time() - start_time) * 1000)
        audio_bytes = bytes(audio)
        logger.info(f"TTS synthesis complete in {elapsed}ms: {len(audio_bytes)} bytes")

        return SynthesisResult(
            id=str(uuid.uuid4()),
            audio_data=audio_bytes,
            format=options.output_format,
            sample_rate=sample_rate,
            duration_ms=estimate_duration_ms(audio_bytes, options.output_format, sample_rate),
            text=text,
            voice_id=voice_id,
            processing_time_ms=elapsed,
            was_truncated=truncated,
        )
