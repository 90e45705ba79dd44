"""
Configuration loader for the voice session core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_PROMPT = (
    "You are a friendly front-desk assistant speaking with a caller in real time. "
    "Keep answers short and conversational. Use the available tools to look up "
    "information instead of guessing, and confirm details back to the caller."
)


@dataclass
class ModelConfig:
    backend: str = "realtime"                          # "realtime" | "memory"
    url: str = "wss://api.openai.com/v1/realtime"
    model: str = "gpt-realtime"
    api_key: str = ""
    audio_format: str = "audio/pcm"
    sample_rate: int = 24000
    transcription_model: str = "whisper-1"
    open_timeout_s: float = 10.0                       # websocket handshake
    ack_timeout_s: float = 5.0                         # wait for session.updated
    close_timeout_s: float = 2.0


@dataclass
class SessionConfig:
    prompt: str = DEFAULT_PROMPT
    default_voice: str = "alloy"
    allowed_voices: list[str] = field(default_factory=list)   # empty = any voice
    start_timeout_s: Optional[float] = 30.0            # idle socket without "start"
    startup_timeout_s: float = 5.0                     # model connection must be ready
    tool_timeout_s: float = 5.0                        # per invocation, unless the tool overrides
    drain_timeout_s: float = 3.0                       # in-flight tools while closing
    close_timeout_s: float = 2.0                       # model stream close
    inbound_buffer_capacity: int = 256                 # client frames held while starting
    outbound_buffer_capacity: int = 512                # model frames awaiting the client


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class Settings:
    app_name: str = "VoiceSessionCore"
    debug: bool = False
    model: ModelConfig = field(default_factory=ModelConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from the known keys of a YAML section."""
    return cls(**{k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "VOICE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "model" in raw:
            settings.model = _section(ModelConfig, raw["model"])
        if "session" in raw:
            settings.session = _section(SessionConfig, raw["session"])
        if "server" in raw:
            settings.server = _section(ServerConfig, raw["server"])

    # An unresolved ${VAR} means the variable was not set
    if not settings.model.api_key or settings.model.api_key.startswith("${"):
        settings.model.api_key = os.environ.get("OPENAI_API_KEY", "")

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
