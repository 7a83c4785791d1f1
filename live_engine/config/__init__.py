"""
Engine configuration.

Values come from a YAML file (environment references expanded by the
loader) validated into pydantic models. Every field has a default, so an
empty file or a bare ``LiveEngineConfig()`` is a usable configuration as
long as an API key is available at connect time.
"""

import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from pydantic import BaseModel, Field
from structlog import get_logger

from .loaders import DEFAULT_CONFIG_PATH, load_yaml_with_env_expansion, resolve_config_path

logger = get_logger(__name__)

DEFAULT_LIVE_ENDPOINT = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
DEFAULT_LIVE_MODEL = "gemini-2.5-flash-native-audio-preview-12-2025"
DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a friendly, efficient productivity assistant. Answer concisely. "
    "When the user asks about current information, news, weather or recent events, "
    "use Google Search to get accurate, up-to-date information."
)


class AudioConfig(BaseModel):
    capture_sample_rate_hz: int = 16000
    input_sample_rate_hz: int = 16000
    output_sample_rate_hz: int = 24000
    capture_block_size: int = 4096
    playback_lookahead_sec: float = 0.01
    silence_reset_sec: float = 30.0
    min_audio_payload_bytes: int = 100
    playback_enabled: bool = True


class SessionTimingConfig(BaseModel):
    connect_timeout_sec: float = 15.0
    setup_ack_grace_sec: float = 3.0
    # Server ceiling is 15 minutes; renew one minute before it.
    max_session_duration_sec: float = 900.0
    renewal_margin_sec: float = 60.0
    lifetime_check_interval_sec: float = 30.0
    reconnect_pause_sec: float = 0.5


class AgentConfig(BaseModel):
    max_rounds: int = 10
    max_history_messages: int = 50
    dangerous_tools: List[str] = Field(default_factory=lambda: ["delete_item", "execute_command", "send_email"])
    fallback_message: str = "I've carried out the requested actions. Let me know if you need anything else."


class LiveEngineConfig(BaseModel):
    api_key: Optional[str] = None
    endpoint: str = DEFAULT_LIVE_ENDPOINT
    model: str = DEFAULT_LIVE_MODEL
    voice_name: Optional[str] = "Aoede"
    response_modalities: List[str] = Field(default_factory=lambda: ["AUDIO"])
    system_instruction: Optional[str] = DEFAULT_SYSTEM_INSTRUCTION
    enable_google_search: bool = True
    function_declarations: List[Dict[str, Any]] = Field(default_factory=list)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    session: SessionTimingConfig = Field(default_factory=SessionTimingConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    def live_url(self) -> str:
        """Endpoint URL carrying the API key. Raises ValueError without a key."""
        if not self.api_key:
            raise ValueError("Google API key is not configured (set GOOGLE_API_KEY or api_key)")
        if not self.endpoint:
            raise ValueError("Live API endpoint is not configured")
        separator = "&" if "?" in self.endpoint else "?"
        return f"{self.endpoint}{separator}{urlencode({'key': self.api_key})}"


def load_config(path: Optional[str] = None) -> LiveEngineConfig:
    """
    Load and validate the engine configuration.

    ``path`` defaults to ``config/live_engine.yaml`` under the project root;
    a missing default file yields the built-in defaults, a missing explicit
    file raises FileNotFoundError. The API key falls back to GOOGLE_API_KEY.
    """
    explicit = path is not None
    resolved = resolve_config_path(path or DEFAULT_CONFIG_PATH)
    try:
        data = load_yaml_with_env_expansion(resolved)
    except FileNotFoundError:
        if explicit:
            raise
        logger.info("No configuration file found; using defaults", path=resolved)
        data = {}

    config = LiveEngineConfig.model_validate(data)
    if not config.api_key:
        env_key = os.environ.get("GOOGLE_API_KEY")
        if env_key:
            config = config.model_copy(update={"api_key": env_key})
    logger.debug("Configuration loaded", path=resolved, model=config.model, has_api_key=bool(config.api_key))
    return config


__all__ = [
    "DEFAULT_LIVE_ENDPOINT",
    "DEFAULT_LIVE_MODEL",
    "DEFAULT_SYSTEM_INSTRUCTION",
    "AudioConfig",
    "SessionTimingConfig",
    "AgentConfig",
    "LiveEngineConfig",
    "load_config",
    "resolve_config_path",
    "load_yaml_with_env_expansion",
]
