"""Configuration system for agentrelay.

Supports loading from YAML files, dicts, environment variables, or
programmatic construction via Pydantic models. Configuration is read once
at startup and is read-only afterwards; it is the only process-wide state.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field

DEFAULT_AGENT_ID = "agent_8201k870ff6ze1psrzbddpx32zyd"
DEFAULT_SIGNED_URL_ENDPOINT = "https://api.elevenlabs.io/v1/convai/conversation/get_signed_url"
DEFAULT_CONVERSATION_URL = "wss://api.elevenlabs.io/v1/convai/conversation"


class ConnectionMode(str, Enum):
    SIGNED_URL = "signed_url"
    DIRECT = "direct"


class DirectAuth(str, Enum):
    HEADER = "header"
    QUERY = "query"


class EarlyAudioPolicy(str, Enum):
    FORWARD = "forward"
    BUFFER = "buffer"


class ListenConfig(BaseModel):
    """Where the relay accepts Twilio webhooks and the Media Stream."""

    host: str = "0.0.0.0"
    port: int = 3000
    path: str = "/media-stream"
    # Public base URL used in TwiML; defaults to wss://<request Host>
    public_url: str = ""


class AgentConfig(BaseModel):
    """The upstream conversational agent."""

    agent_id: str = DEFAULT_AGENT_ID
    api_key: str = ""
    mode: ConnectionMode = ConnectionMode.SIGNED_URL
    auth: DirectAuth = DirectAuth.HEADER
    signed_url_endpoint: str = DEFAULT_SIGNED_URL_ENDPOINT
    conversation_url: str = DEFAULT_CONVERSATION_URL

    # Initial conversation overrides (signed_url mode only)
    prompt: str = ""
    first_message: str = ""
    language: str = ""
    dynamic_variables: dict[str, Any] = Field(default_factory=dict)


class SessionConfig(BaseModel):
    """Per-session timing and buffering."""

    connect_timeout: float = Field(default=10.0, gt=0)
    heartbeat_interval: float = Field(default=20.0, ge=0)  # 0 disables
    early_audio: EarlyAudioPolicy = EarlyAudioPolicy.FORWARD
    early_audio_max_frames: int = Field(default=250, ge=1)  # ~5s of 20ms Twilio frames


class CallLogConfig(BaseModel):
    max_entries: int = Field(default=100, ge=1)


class DiagnosticConfig(BaseModel):
    """Content of the static diagnostic call-control document."""

    message: str = "Test successful. The system is working."
    language: str = "en-US"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class RelayConfig(BaseModel):
    """Top-level agentrelay configuration.

    Examples:
        # Programmatic
        config = RelayConfig(agent=AgentConfig(agent_id="agent_123", api_key="..."))

        # From YAML
        config = RelayConfig.from_yaml("relay.yaml")

        # Shorthand
        config = RelayConfig.from_dict({
            "agent_id": "agent_123",
            "api_key": "...",
            "port": 3000,
        })

        # Environment (AGENT_ID, ELEVENLABS_API_KEY, PORT, ...)
        config = RelayConfig.from_env()
    """

    listen: ListenConfig = Field(default_factory=ListenConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    call_log: CallLogConfig = Field(default_factory=CallLogConfig)
    diagnostic: DiagnosticConfig = Field(default_factory=DiagnosticConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def api_key_configured(self) -> bool:
        return bool(self.agent.api_key)

    def warnings(self) -> list[str]:
        """Configuration problems worth surfacing at startup."""
        problems = []
        if not self.agent.api_key:
            problems.append(
                "Agent API key is missing (set ELEVENLABS_API_KEY); "
                "every call will fail to reach the agent"
            )
        if not self.agent.agent_id:
            problems.append("Agent id is missing (set AGENT_ID)")
        if not self.listen.path.startswith("/"):
            problems.append(f"Listen path {self.listen.path!r} should start with '/'")
        return problems

    @classmethod
    def from_yaml(cls, path: str | Path, env: Mapping[str, str] | None = None) -> RelayConfig:
        """Load configuration from a YAML file, then apply environment overrides."""
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls._from_raw(data, env)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelayConfig:
        """Load configuration from a dictionary.

        Supports both the full nested format and a flat shorthand format:

        Full format:
            {"agent": {"agent_id": "...", "api_key": "..."}, "listen": {"port": 3000}}

        Shorthand format:
            {"agent_id": "...", "api_key": "...", "port": 3000}
        """
        return cls._from_raw(data)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RelayConfig:
        """Build a configuration from environment variables alone."""
        return cls._from_raw({}, env if env is not None else os.environ)

    @classmethod
    def _from_raw(cls, data: dict[str, Any], env: Mapping[str, str] | None = None) -> RelayConfig:
        """Normalize and construct config from a raw dict."""
        data = {key: dict(value) if isinstance(value, dict) else value for key, value in data.items()}

        # An empty YAML section ("agent:") loads as None
        for section in cls.model_fields:
            if section in data and data[section] is None:
                data[section] = {}

        # Map flat keys to nested structure
        for flat_key, (section, nested_key) in FLAT_MAPPINGS.items():
            if flat_key in data:
                data.setdefault(section, {})[nested_key] = data.pop(flat_key)

        # Environment wins over file values
        if env is not None:
            for env_key, (section, nested_key) in ENV_MAPPINGS.items():
                value = env.get(env_key)
                if value:
                    data.setdefault(section, {})[nested_key] = value

        return cls(**data)


FLAT_MAPPINGS: dict[str, tuple[str, str]] = {
    "host": ("listen", "host"),
    "port": ("listen", "port"),
    "listen_path": ("listen", "path"),
    "public_url": ("listen", "public_url"),
    "agent_id": ("agent", "agent_id"),
    "api_key": ("agent", "api_key"),
    "mode": ("agent", "mode"),
    "connect_timeout": ("session", "connect_timeout"),
    "heartbeat_interval": ("session", "heartbeat_interval"),
    "early_audio": ("session", "early_audio"),
    "log_level": ("logging", "level"),
}

ENV_MAPPINGS: dict[str, tuple[str, str]] = {
    "HOST": ("listen", "host"),
    "PORT": ("listen", "port"),
    "PUBLIC_URL": ("listen", "public_url"),
    "AGENT_ID": ("agent", "agent_id"),
    "ELEVENLABS_API_KEY": ("agent", "api_key"),
    "AGENT_MODE": ("agent", "mode"),
    "LOG_LEVEL": ("logging", "level"),
}


def load_config(
    source: str | Path | dict[str, Any] | RelayConfig | None = None,
    env: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Load a RelayConfig from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, an existing RelayConfig,
            or None to configure from the environment only.
        env: Environment overrides for YAML and None sources.
            Defaults to ``os.environ``.

    Returns:
        A RelayConfig instance.
    """
    if isinstance(source, RelayConfig):
        return source
    if isinstance(source, dict):
        return RelayConfig.from_dict(source)
    if env is None:
        env = os.environ
    if source is None:
        return RelayConfig.from_env(env)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return RelayConfig.from_yaml(path, env)
    raise TypeError(f"Cannot load config from {type(source)}")


# Default YAML template for `agentrelay init`
DEFAULT_CONFIG_YAML = """\
# agentrelay configuration
# Environment variables (AGENT_ID, ELEVENLABS_API_KEY, PORT, HOST,
# PUBLIC_URL, AGENT_MODE, LOG_LEVEL) override the values below.

listen:
  host: 0.0.0.0
  port: 3000
  path: /media-stream
  public_url: ""        # e.g. wss://relay.example.com; defaults to the request host

agent:
  agent_id: agent_8201k870ff6ze1psrzbddpx32zyd
  api_key: ""           # prefer ELEVENLABS_API_KEY
  mode: signed_url      # signed_url | direct
  auth: header          # direct mode only: header | query
  prompt: "You are a helpful sales representative. Be kind and concise."
  first_message: "Hello! How can I help you today?"
  language: ""

session:
  connect_timeout: 10       # seconds to fetch the signed URL and open the agent leg
  heartbeat_interval: 20    # seconds between transport pings on both legs
  early_audio: forward      # forward | buffer (until the agent is ready)
  early_audio_max_frames: 250

call_log:
  max_entries: 100

diagnostic:
  message: "Test successful. The system is working."
  language: en-US

logging:
  level: INFO
"""
