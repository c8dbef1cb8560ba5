import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "JARVIS_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_SECONDARY_MODEL = "gemini-2.5-pro"
DEFAULT_IMAGE_MODEL = "imagen-3.0-generate"
LEGACY_MODEL_PREFIXES = ("gpt-", "gemini-1.5")
SECRET_FIELDS = ("gemini_api_key", "elevenlabs_api_key", "tavily_api_key")


def normalize_model_id(value: Optional[str]) -> str:
    """Collapse a model identifier to its canonical Gemini form."""
    if not value:
        return DEFAULT_MODEL
    cleaned = str(value).strip().lower()
    if not cleaned:
        return DEFAULT_MODEL
    if cleaned.startswith("models/"):
        cleaned = cleaned[len("models/"):]
    if not cleaned or cleaned.startswith(LEGACY_MODEL_PREFIXES):
        return DEFAULT_MODEL
    return cleaned


def normalize_voice_id(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = str(value).strip()
    if cleaned.lower() in ("natural", "default"):
        return ""
    return cleaned


def normalize_image_model(value: Optional[str]) -> str:
    if not value:
        return DEFAULT_IMAGE_MODEL
    return str(value).strip() or DEFAULT_IMAGE_MODEL


class AgentSettings(BaseModel):
    """User-facing assistant settings, persisted between sessions."""

    auto_frame: bool = False
    frame_rate: float = 1.5
    voice: str = ""
    model: str = DEFAULT_MODEL
    secondary_model: str = DEFAULT_SECONDARY_MODEL
    dual_model_preview: bool = False
    auto_fallback_longform: bool = True
    image_model: str = DEFAULT_IMAGE_MODEL
    speech_rate: float = 1.0
    speech_enabled: bool = True

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        protected_namespaces=(),
    )

    @field_validator("model", "secondary_model", mode="before")
    @classmethod
    def _normalize_model(cls, value: Any) -> str:
        return normalize_model_id(value)

    @field_validator("voice", mode="before")
    @classmethod
    def _normalize_voice(cls, value: Any) -> str:
        return normalize_voice_id(value)

    @field_validator("image_model", mode="before")
    @classmethod
    def _normalize_image_model(cls, value: Any) -> str:
        return normalize_image_model(value)

    def merged(self, patch: Dict[str, Any]) -> "AgentSettings":
        """Return a new, re-normalized copy with ``patch`` applied."""
        data = self.model_dump()
        for key, value in (patch or {}).items():
            field_name = _AGENT_ALIASES.get(key, key)
            if field_name in AgentSettings.model_fields:
                data[field_name] = value
        return AgentSettings(**data)

    def to_public_dict(self) -> dict:
        return self.model_dump(by_alias=True)


_AGENT_ALIASES = {to_camel(name): name for name in AgentSettings.model_fields}


class AppSettings(BaseModel):
    gemini_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"
    elevenlabs_voice_id: str = "Smxkoz0xiOoHo5WcSskf"
    elevenlabs_model_id: str = "eleven_monolingual_v2"
    tavily_api_key: Optional[str] = None
    model_timeout_s: float = 30.0
    tts_timeout_s: float = 30.0
    database_path: str = "jarvis_data.db"
    memory_max_messages: int = 200
    persist_memory: bool = True
    autoplay_allowed: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    agent: AgentSettings = Field(default_factory=AgentSettings)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        data["agent"] = self.agent.to_public_dict()
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "elevenlabs_api_key": os.getenv("ELEVENLABS_API_KEY"),
        "elevenlabs_voice_id": os.getenv("ELEVENLABS_VOICE_ID"),
        "elevenlabs_model_id": os.getenv("ELEVENLABS_MODEL_ID"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "model_timeout_s": os.getenv("MODEL_TIMEOUT_S"),
        "tts_timeout_s": os.getenv("TTS_TIMEOUT_S"),
        "memory_max_messages": os.getenv("MEMORY_MAX_MESSAGES"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "memory_max_messages" in cleaned:
        cleaned["memory_max_messages"] = int(cleaned["memory_max_messages"])
    if "model_timeout_s" in cleaned:
        cleaned["model_timeout_s"] = float(cleaned["model_timeout_s"])
    if "tts_timeout_s" in cleaned:
        cleaned["tts_timeout_s"] = float(cleaned["tts_timeout_s"])
    agent_env = {
        "model": os.getenv("GEMINI_MODEL"),
        "secondary_model": os.getenv("GEMINI_SECONDARY_MODEL"),
        "image_model": os.getenv("GEMINI_IMAGE_MODEL"),
        "voice": os.getenv("ELEVENLABS_VOICE_ID"),
    }
    agent_cleaned = {k: v for k, v in agent_env.items() if v not in (None, "")}
    if agent_cleaned:
        cleaned["agent"] = agent_cleaned
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    env_agent = env_data.pop("agent", {}) or {}
    file_agent = file_data.pop("agent", {}) or {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
        merged_agent = {**file_agent, **env_agent}
    else:
        merged = {**env_data, **file_data}
        merged_agent = {**env_agent, **file_agent}
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    merged["agent"] = AgentSettings().merged(merged_agent)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
