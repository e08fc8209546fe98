"""Relay configuration loaded from environment and ``.env``."""

from dataclasses import dataclass, field
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from relay.bridge import BridgeSettings, PendingAudioPolicy
from relay.broker import DEFAULT_BASE_URL
from relay.core.constants import AudioConstants
from relay.core.errors import ConfigError


class VapiSettings(BaseSettings):
    """Voice-assistant provider credentials and timeouts."""

    model_config = SettingsConfigDict(env_prefix="VAPI_", env_file=".env", extra="ignore")

    api_key: Optional[str] = None
    assistant_id: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    broker_timeout: float = Field(default=10.0, gt=0)
    open_timeout: float = Field(default=10.0, gt=0)


class ServerSettings(BaseSettings):
    """Listening socket and shutdown settings."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True
    )

    host: str = "0.0.0.0"
    port: int = Field(
        default=8766,
        ge=0,
        le=65535,
        validation_alias=AliasChoices("PORT", "RELAY_PORT")
    )
    shutdown_grace: float = Field(default=5.0, ge=0)


class AudioSettings(BaseSettings):
    """Audio formats, transcoding and buffering."""

    model_config = SettingsConfigDict(env_prefix="AUDIO_", env_file=".env", extra="ignore")

    downstream_rate: int = Field(default=AudioConstants.DOWNSTREAM_SAMPLE_RATE, gt=0)
    upstream_rate: int = Field(default=AudioConstants.UPSTREAM_SAMPLE_RATE, gt=0)
    transcoder: Literal["soxr", "sox"] = "soxr"
    transcode_timeout: float = Field(default=2.0, gt=0)
    transcode_workers: int = Field(default=4, gt=0)
    transcode_uplink: bool = False
    pending_policy: Literal["drop", "buffer"] = "drop"
    pending_capacity: int = Field(default=50, gt=0)
    pipe_capacity: int = Field(default=200, gt=0)
    idle_timeout: Optional[float] = Field(default=None, gt=0)


class SystemSettings(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_dir: Optional[str] = None


@dataclass
class RelayConfig:
    """All relay settings grouped by concern."""

    vapi: VapiSettings = field(default_factory=VapiSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    audio: AudioSettings = field(default_factory=AudioSettings)
    system: SystemSettings = field(default_factory=SystemSettings)

    @classmethod
    def load(cls) -> "RelayConfig":
        """Load every settings group from the environment."""
        return cls(
            vapi=VapiSettings(),
            server=ServerSettings(),
            audio=AudioSettings(),
            system=SystemSettings(),
        )

    def validate_credentials(self) -> None:
        """Check that provider credentials are present.

        Raises:
            ConfigError: If VAPI_API_KEY or VAPI_ASSISTANT_ID is missing
        """
        missing = []
        if not self.vapi.api_key:
            missing.append("VAPI_API_KEY")
        if not self.vapi.assistant_id:
            missing.append("VAPI_ASSISTANT_ID")
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    def bridge_settings(self) -> BridgeSettings:
        """Build per-call bridge settings."""
        return BridgeSettings(
            downstream_rate=self.audio.downstream_rate,
            upstream_rate=self.audio.upstream_rate,
            transcode_uplink=self.audio.transcode_uplink,
            pending_policy=PendingAudioPolicy(self.audio.pending_policy),
            pending_capacity=self.audio.pending_capacity,
            pipe_capacity=self.audio.pipe_capacity,
            idle_timeout=self.audio.idle_timeout,
        )
