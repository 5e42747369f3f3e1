# config.py - Settings for the voice chat engine
"""
Settings are read from the environment (optionally populated from a .env
file by main.py) into a frozen Settings snapshot. A conversation reads its
snapshot once at start; nothing changes mid-conversation.
"""

import os
import uuid
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from errors import ConfigurationError
from models import ServiceMode

DEFAULT_LIVE_MODEL = "gemini-2.5-flash-native-audio-preview-09-2025"
DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful and friendly conversational AI. "
    "Your responses should be concise and conversational."
)
DEFAULT_CARTESIA_VOICE = "a0e99841-438c-4a64-b679-ae501e7d6091"

LLM_PROVIDERS = ("proxy", "anthropic")
TTS_PROVIDERS = ("proxy", "cartesia")


def _split_keys(value: str) -> Tuple[str, ...]:
    return tuple(key.strip() for key in value.split(",") if key.strip())


@dataclass(frozen=True)
class Settings:
    service_mode: ServiceMode = ServiceMode.LIVE
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Live mode
    gemini_api_key: str = ""
    live_model: str = DEFAULT_LIVE_MODEL
    live_voice: str = "Zephyr"
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION

    # Pipeline mode
    llm_provider: str = "proxy"
    llm_model: str = ""
    tts_provider: str = "proxy"
    anthropic_api_key: str = ""
    cartesia_api_key: str = ""
    cartesia_voice_id: str = DEFAULT_CARTESIA_VOICE
    asr_language: str = "en"
    llm_response_keys: Tuple[str, ...] = ("responseText",)
    tts_audio_keys: Tuple[str, ...] = ("audioContent", "audio", "data")
    no_speech_timeout: float = 8.0

    # Storage, retrieval and edge functions
    supabase_url: str = ""
    supabase_key: str = ""
    request_timeout: float = 30.0

    # Audio
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    capture_block_size: int = 4096
    input_device: Optional[int] = None
    output_device: Optional[int] = None

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def with_mode(self, mode: ServiceMode) -> "Settings":
        return replace(self, service_mode=mode)

    def validate(self, mode: Optional[ServiceMode] = None) -> None:
        """
        Fail fast on missing credentials before any device is touched.

        Raises:
            ConfigurationError: naming the first missing setting
        """
        mode = mode or self.service_mode
        if mode is ServiceMode.LIVE:
            if not self.gemini_api_key:
                raise ConfigurationError("GEMINI_API_KEY environment variable not set for live mode.")
            return

        if self.llm_provider not in LLM_PROVIDERS:
            raise ConfigurationError(f"Unknown LLM_PROVIDER '{self.llm_provider}'; expected one of {', '.join(LLM_PROVIDERS)}.")
        if self.tts_provider not in TTS_PROVIDERS:
            raise ConfigurationError(f"Unknown TTS_PROVIDER '{self.tts_provider}'; expected one of {', '.join(TTS_PROVIDERS)}.")
        if not self.cartesia_api_key:
            raise ConfigurationError("CARTESIA_API_KEY not found in environment (needed for speech recognition).")
        uses_proxy = "proxy" in (self.llm_provider, self.tts_provider)
        if uses_proxy and not self.supabase_configured:
            raise ConfigurationError("Please configure SUPABASE_URL and SUPABASE_KEY to use pipeline mode.")
        if self.llm_provider == "anthropic" and not self.anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY not found in environment")
        if not self.llm_response_keys:
            raise ConfigurationError("LLM_RESPONSE_KEYS must name at least one response field.")
        if not self.tts_audio_keys:
            raise ConfigurationError("TTS_AUDIO_KEYS must name at least one response field.")


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def load_settings(environ=None, **overrides) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)
        **overrides: Field values that win over the environment

    Raises:
        ConfigurationError: when a value cannot be parsed
    """
    env = os.environ if environ is None else environ
    try:
        values = dict(
            service_mode=ServiceMode(env.get("SERVICE_MODE", "live")),
            gemini_api_key=env.get("GEMINI_API_KEY") or env.get("API_KEY", ""),
            live_model=env.get("LIVE_MODEL", DEFAULT_LIVE_MODEL),
            live_voice=env.get("LIVE_VOICE", "Zephyr"),
            system_instruction=env.get("SYSTEM_INSTRUCTION", DEFAULT_SYSTEM_INSTRUCTION),
            llm_provider=env.get("LLM_PROVIDER", "proxy"),
            llm_model=env.get("LLM_MODEL", ""),
            tts_provider=env.get("TTS_PROVIDER", "proxy"),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
            cartesia_api_key=env.get("CARTESIA_API_KEY", ""),
            cartesia_voice_id=env.get("CARTESIA_VOICE_ID", DEFAULT_CARTESIA_VOICE),
            asr_language=env.get("ASR_LANGUAGE", "en"),
            llm_response_keys=_split_keys(env.get("LLM_RESPONSE_KEYS", "responseText")),
            tts_audio_keys=_split_keys(env.get("TTS_AUDIO_KEYS", "audioContent,audio,data")),
            no_speech_timeout=float(env.get("NO_SPEECH_TIMEOUT", "8.0")),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_key=env.get("SUPABASE_KEY", ""),
            request_timeout=float(env.get("REQUEST_TIMEOUT", "30.0")),
            input_device=_optional_int(env.get("INPUT_DEVICE")),
            output_device=_optional_int(env.get("OUTPUT_DEVICE")),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e

    if env.get("CHAT_SESSION_ID"):
        values["session_id"] = env["CHAT_SESSION_ID"]
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
