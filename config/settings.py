"""
Configuration loader for the conversational flow engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class StoreConfig:
    backend: str = "memory"                  # "memory" | "file" | "redis"
    redis_url: str = "redis://localhost:6379"
    file_dir: str = "./data/frames"          # directory for file backend
    key_suffix: str = ":state"               # appended to the conversation key
    ttl_seconds: int = 0                     # 0 = frames never expire
    max_frames: int = 0                      # 0 = keep every frame


@dataclass
class EngineConfig:
    http_timeout: float = 30.0               # default api_call timeout (seconds)
    max_steps: int = 1000                    # traversal cap, detects routing cycles


@dataclass
class ChatbotConfig:
    flows_file: str = ""                     # JSON/YAML chatbot flow definition
    error_response: str = "Sorry, something went wrong. Please try again later."
    default_validation_message: str = "Invalid input, please try again."


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "ConverseFlow"
    debug: bool = False
    store: StoreConfig = field(default_factory=StoreConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    chatbot: ChatbotConfig = field(default_factory=ChatbotConfig)
    agents: list[dict[str, Any]] = field(default_factory=list)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "store" in raw:
            st = raw["store"]
            settings.store = StoreConfig(
                backend=st.get("backend", settings.store.backend),
                redis_url=st.get("redis_url", settings.store.redis_url),
                file_dir=st.get("file_dir", settings.store.file_dir),
                key_suffix=st.get("key_suffix", settings.store.key_suffix),
                ttl_seconds=int(st.get("ttl_seconds", 0) or 0),
                max_frames=int(st.get("max_frames", 0) or 0),
            )

        if "engine" in raw:
            en = raw["engine"]
            settings.engine = EngineConfig(
                http_timeout=float(en.get("http_timeout", settings.engine.http_timeout)),
                max_steps=int(en.get("max_steps", settings.engine.max_steps)),
            )

        if "chatbot" in raw:
            cb = raw["chatbot"]
            settings.chatbot = ChatbotConfig(
                flows_file=cb.get("flows_file", ""),
                error_response=cb.get("error_response", settings.chatbot.error_response),
                default_validation_message=cb.get(
                    "default_validation_message",
                    settings.chatbot.default_validation_message,
                ),
            )

        settings.agents = raw.get("agents", []) or []

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
