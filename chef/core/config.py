import json
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator


class VoiceSettings(BaseModel):
    voice_name: str = "en_US-lessac-medium"
    locale: str = "en-US"
    speech_rate: float = 0.5   # 0.0 - 1.0, 0.5 is the voice's natural pace
    pitch: float = 1.0         # 0.5 - 2.0
    volume: float = 1.0        # 0.0 - 1.0
    is_premium: bool = False
    voice_id: Optional[str] = None
    natural_speech: bool = False  # Rewrite step text conversationally via the LLM

    @field_validator("speech_rate", "volume")
    @classmethod
    def _unit_range(cls, v: float) -> float:
        return min(max(v, 0.0), 1.0)

    @field_validator("pitch")
    @classmethod
    def _pitch_range(cls, v: float) -> float:
        return min(max(v, 0.5), 2.0)


class ListeningConfig(BaseModel):
    silence_timeout_ms: int = 1500     # Quiet time after a final chunk before we commit
    restart_delay_ms: int = 800        # Wait before re-listening when nothing was spoken
    post_speech_delay_ms: int = 300    # Let the speaker tail off so we don't hear ourselves
    command_debounce_ms: int = 2000    # Identical command suppression window
    error_retry_delay_ms: int = 1000
    listen_window_s: float = 30.0      # Max length of one listening session
    response_timeout_s: float = 60.0   # Longest wait for a question or command to be answered
    echo_overlap_ratio: float = 0.5


class SessionConfig(BaseModel):
    command_guard_ms: int = 500
    exit_delay_s: float = 3.0
    tts_ms_per_char: int = 80
    tts_timeout_buffer_s: float = 3.0
    timer_tick_s: float = 1.0
    max_history_messages: int = 20


class APIKeysConfig(BaseModel):
    claude: str = ""
    openai: str = ""


class HardwareConfig(BaseModel):
    mic_enabled: bool = True
    cloud_stt: bool = False  # Use OpenAI Whisper API instead of local whisper.cpp
    language: str = "en"


class AppConfig(BaseModel):
    mode: str = "voice"      # "voice" or "manual"
    provider: str = "claude"  # "claude" or "openai"
    api_keys: APIKeysConfig = Field(default_factory=APIKeysConfig)
    voice: VoiceSettings = Field(default_factory=VoiceSettings)
    listening: ListeningConfig = Field(default_factory=ListeningConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    hardware: HardwareConfig = Field(default_factory=HardwareConfig)


class ConfigManager:
    """Loads and persists the application configuration as JSON."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.config_path = data_dir / "config.json"
        self._config: Optional[AppConfig] = None

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            self._config = self._load()
        return self._config

    def _load(self) -> AppConfig:
        """Load config from disk. Returns defaults if no config exists."""
        if self.config_path.exists():
            try:
                data = json.loads(self.config_path.read_text())
                logger.info("Configuration loaded from {}", self.config_path)
                return AppConfig(**data)
            except Exception as e:
                logger.error("Failed to load config: {}. Using defaults.", e)
        logger.info("No existing config found. Using defaults.")
        return AppConfig()

    def save(self) -> None:
        """Persist current config to disk."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(self.config.model_dump_json(indent=2))
        logger.debug("Configuration saved to {}", self.config_path)

    def update(self, **kwargs) -> AppConfig:
        """Update top-level config fields and save."""
        current = self.config.model_dump()
        for key, value in kwargs.items():
            if key in current:
                if isinstance(current[key], dict) and isinstance(value, dict):
                    current[key].update(value)
                else:
                    current[key] = value
        self._config = AppConfig(**current)
        self.save()
        return self._config

    def update_nested(self, section: str, **kwargs) -> AppConfig:
        """Update fields within a nested config section."""
        current = self.config.model_dump()
        if section in current and isinstance(current[section], dict):
            current[section].update(kwargs)
        self._config = AppConfig(**current)
        self.save()
        return self._config

    def update_voice(self, settings: VoiceSettings) -> AppConfig:
        return self.update_nested("voice", **settings.model_dump())

    def reset(self) -> None:
        """Reset config to defaults."""
        self._config = AppConfig()
        if self.config_path.exists():
            self.config_path.unlink()
        logger.info("Configuration reset to defaults.")

    @property
    def is_voice_mode(self) -> bool:
        return self.config.mode == "voice"
