"""
Runtime configuration for the EmotiBot Chat service.

Settings are read from the environment (prefix ``EMOTIBOT_``) and an optional
``.env`` file. The text-generation credential is also accepted under its
conventional unprefixed name, ``OPENAI_API_KEY``.
"""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All tunables for the chat service."""

    model_config = SettingsConfigDict(
        env_prefix="EMOTIBOT_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # --- Text generation ---
    openai_api_key: str | None = Field(
        None,
        validation_alias=AliasChoices("EMOTIBOT_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    openai_base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4-turbo-preview"
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(200, gt=0)
    interpret_max_tokens: int = Field(500, gt=0)
    presence_penalty: float | None = Field(0.6, ge=-2.0, le=2.0)
    frequency_penalty: float | None = Field(0.3, ge=-2.0, le=2.0)
    request_timeout: float = Field(30.0, gt=0)

    # --- Emotion sampling ---
    vocabulary: Literal["basic", "eeg"] = "basic"
    emotion_source: Literal["random", "playback", "push", "manual"] = "random"
    sample_period: float = Field(5.0, gt=0)
    random_intensity_low: float = Field(0.4, ge=0.0, le=1.0)
    random_intensity_high: float = Field(1.0, ge=0.0, le=1.0)
    playback_path: Path | None = None
    playback_loop: bool = False
    push_url: str = "http://localhost:8765/emotions"
    push_timeout: float = Field(15.0, gt=0)
    push_reconnect_delay: float | None = None
    history_capacity: int = Field(20, gt=0)

    # --- Persistence ---
    store_backend: Literal["memory", "sqlite"] = "memory"
    store_path: Path = Path("emotibot_chat.db")

    # --- Server ---
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_intensity_range(self) -> "Settings":
        if self.random_intensity_low > self.random_intensity_high:
            raise ValueError("random_intensity_low must not exceed random_intensity_high")
        return self
