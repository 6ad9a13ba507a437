"""
Configuration management using Pydantic Settings.
Loads all environment variables with validation.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses .env file in development, environment variables in production.

    Provider keys are optional here so the core can be imported without
    credentials; each adapter checks its key when it initializes.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Keys
    deepgram_api_key: Optional[str] = Field(
        default=None,
        description="Deepgram API key for speech-to-text"
    )
    deepgram_model: str = Field(
        default="nova-2",
        description="Deepgram prerecorded model"
    )
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key for language model and embedding fallback"
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used to write the pedagogical answer"
    )
    openai_organization_id: Optional[str] = Field(
        default=None,
        description="OpenAI organization ID"
    )
    openai_project_id: Optional[str] = Field(
        default=None,
        description="OpenAI project ID for usage tracking"
    )
    openai_temperature: float = Field(
        default=1.0,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for answers"
    )
    openai_max_tokens: int = Field(
        default=1024,
        ge=16,
        le=4096,
        description="Maximum completion tokens per answer"
    )
    elevenlabs_api_key: Optional[str] = Field(
        default=None,
        description="ElevenLabs API key for text-to-speech"
    )
    elevenlabs_voice_id: str = Field(
        default="21m00Tcm4TlvDq8ikWAM",
        description="ElevenLabs voice ID (default: Rachel)"
    )
    elevenlabs_model: str = Field(
        default="eleven_multilingual_v2",
        description="ElevenLabs model (multilingual for pt-BR / es)"
    )

    # Pinecone (RAG)
    pinecone_api_key: Optional[str] = Field(
        default=None,
        description="Pinecone API key for vector database"
    )
    pinecone_index_name: str = Field(
        default="edusync-manuals",
        description="Pinecone index holding the pedagogical manuals"
    )
    pinecone_dimension: int = Field(
        default=384,
        description="Embedding dimension of the index (384 for the local multilingual model)"
    )

    # RAG Settings
    rag_use_local_embeddings: bool = Field(
        True,
        description="Use local sentence-transformers (faster) vs OpenAI API"
    )
    rag_top_k: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of chunks to retrieve"
    )
    rag_confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum mean similarity required before generating an answer"
    )

    # Conversation context store
    context_max_messages: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Messages kept per conversation session"
    )
    context_ttl_minutes: int = Field(
        default=60,
        ge=1,
        description="Minutes of inactivity before a conversation session expires"
    )

    # Voice pipeline
    default_language: str = Field(
        default="pt-BR",
        description="Locale negotiated for STT/TTS when the client sends none"
    )
    pipeline_max_context_turns: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Previous turns included in the generation prompt"
    )
    pipeline_max_turns_per_session: int = Field(
        default=20,
        ge=0,
        description="Maximum turns per session (0 = unlimited)"
    )
    pipeline_session_timeout_ms: int = Field(
        default=5 * 60 * 1000,
        ge=1000,
        description="Inactivity before an idle session is closed"
    )
    cleanup_interval_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Interval of the host sweep over pipelines and context sessions"
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, or production"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    # Server Settings
    host: str = Field(
        default="0.0.0.0",
        description="Server host address"
    )
    port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="Server port"
    )

    # CORS
    frontend_url: str = Field(
        default="http://localhost:5173",
        description="Frontend URL for CORS"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of the allowed values."""
        allowed = ["development", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
