"""
Configuration management for the call agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Deepgram (STT + primary TTS)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"
    deepgram_endpointing_ms: int = 300
    deepgram_utterance_end_ms: int = 1000
    deepgram_tts_model: str = "aura-asteria-en"

    # Google Cloud TTS (fallback TTS)
    google_tts_api_key: str = ""
    google_tts_voice: str = "en-US-Neural2-F"
    google_tts_language: str = "en-US"

    # LLM Provider (OpenAI/Groq, both OpenAI-compatible)
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 150
    llm_timeout_seconds: float = 8.0
    llm_structured_replies: bool = True

    # Provider timeouts
    tts_timeout_seconds: float = 6.0

    # Turn taking
    boundary_timeout_seconds: float = 1.0
    min_utterance_chars: int = 2
    min_interruption_words: int = 2

    # Memory
    max_history_turns: int = 10
    max_facts: int = 32

    # Agent settings
    agent_name: str = "Ava"
    company_name: str = "our agency"
    system_prompt: str = ""
    greeting_text: str = ""
    fallback_reply_text: str = "I'm sorry, I'm having trouble right now. Could you please repeat that?"
    fallback_audio_path: str = ""

    # Silence handling
    checkin_timeout_seconds: float = 12.0
    checkin_text: str = "Are you still there?"
    max_checkins: int = 2
    hangup_on_failure: bool = True

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def llm_api_key(self) -> str:
        return self.groq_api_key if self.llm_provider == "groq" else self.openai_api_key

    @property
    def llm_model(self) -> str:
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    @property
    def llm_base_url(self) -> str:
        return GROQ_BASE_URL if self.llm_provider == "groq" else OPENAI_BASE_URL

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.boundary_timeout_seconds <= 0:
            raise ConfigError("BOUNDARY_TIMEOUT_SECONDS must be positive")
        if self.max_history_turns < 1:
            raise ConfigError("MAX_HISTORY_TURNS must be at least 1")
        if self.min_utterance_chars < 1:
            raise ConfigError("MIN_UTTERANCE_CHARS must be at least 1")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            deepgram_tts_model=self.deepgram_tts_model,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            llm_timeout_seconds=self.llm_timeout_seconds,
            llm_structured_replies=self.llm_structured_replies,
            tts_timeout_seconds=self.tts_timeout_seconds,
            boundary_timeout_seconds=self.boundary_timeout_seconds,
            min_utterance_chars=self.min_utterance_chars,
            min_interruption_words=self.min_interruption_words,
            max_history_turns=self.max_history_turns,
            checkin_timeout_seconds=self.checkin_timeout_seconds,
            agent_name=self.agent_name,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            google_tts_key_set=bool(self.google_tts_api_key),
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    defaults = Config(public_host="")

    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", defaults.deepgram_model),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", defaults.deepgram_language),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", defaults.deepgram_endpointing_ms),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", defaults.deepgram_utterance_end_ms),
        deepgram_tts_model=os.getenv("DEEPGRAM_TTS_MODEL", defaults.deepgram_tts_model),

        # Google TTS
        google_tts_api_key=os.getenv("GOOGLE_TTS_API_KEY", ""),
        google_tts_voice=os.getenv("GOOGLE_TTS_VOICE", defaults.google_tts_voice),
        google_tts_language=os.getenv("GOOGLE_TTS_LANGUAGE", defaults.google_tts_language),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", defaults.groq_model),
        llm_temperature=_get_float("LLM_TEMPERATURE", defaults.llm_temperature),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", defaults.llm_max_tokens),
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", defaults.llm_timeout_seconds),
        llm_structured_replies=_get_bool("LLM_STRUCTURED_REPLIES", defaults.llm_structured_replies),

        tts_timeout_seconds=_get_float("TTS_TIMEOUT_SECONDS", defaults.tts_timeout_seconds),

        # Turn taking
        boundary_timeout_seconds=_get_float("BOUNDARY_TIMEOUT_SECONDS", defaults.boundary_timeout_seconds),
        min_utterance_chars=_get_int("MIN_UTTERANCE_CHARS", defaults.min_utterance_chars),
        min_interruption_words=_get_int("MIN_INTERRUPTION_WORDS", defaults.min_interruption_words),

        # Memory
        max_history_turns=_get_int("MAX_HISTORY_TURNS", defaults.max_history_turns),
        max_facts=_get_int("MAX_FACTS", defaults.max_facts),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", defaults.agent_name),
        company_name=os.getenv("COMPANY_NAME", defaults.company_name),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        greeting_text=os.getenv("GREETING_TEXT", ""),
        fallback_reply_text=os.getenv("FALLBACK_REPLY_TEXT", defaults.fallback_reply_text),
        fallback_audio_path=os.getenv("FALLBACK_AUDIO_PATH", ""),

        # Silence handling
        checkin_timeout_seconds=_get_float("CHECKIN_TIMEOUT_SECONDS", defaults.checkin_timeout_seconds),
        checkin_text=os.getenv("CHECKIN_TEXT", defaults.checkin_text),
        max_checkins=_get_int("MAX_CHECKINS", defaults.max_checkins),
        hangup_on_failure=_get_bool("HANGUP_ON_FAILURE", defaults.hangup_on_failure),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
