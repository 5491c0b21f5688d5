"""Configuration management for the watcher."""

import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError


DEFAULT_CONFIG_PATH = "config/watch.yaml"


class ConfigError(ValueError):
    """Configuration is invalid or incomplete."""


class ProbeConfig(BaseModel):
    """Watched resource and poll loop timing."""
    url: str = Field(default="https://zastepstwa.zse.bydgoszcz.pl/", description="URL probed with HEAD")
    timeout_seconds: float = Field(default=8.0, gt=0, description="Probe request timeout")
    interval_seconds: float = Field(default=30.0, ge=0, description="Delay between probe cycles")
    restart_backoff_seconds: float = Field(default=30.0, ge=0, description="Delay before restarting after a crash")
    follow_redirects: bool = Field(default=True, description="Follow redirects on the probe")
    suppress_first_notification: bool = Field(
        default=False, description="Persist the first token ever seen without announcing it as a change"
    )


class StateConfig(BaseModel):
    path: str = Field(default="etag/etag.json", description="State file location")


class LimitsConfig(BaseModel):
    """Per-origin ingress quotas and per-subscriber message quotas."""
    http_requests_per_window: int = Field(default=30, ge=1)
    http_window_seconds: float = Field(default=60.0, gt=0)
    subscription_connects_per_window: int = Field(default=20, ge=1)
    subscription_window_seconds: float = Field(default=60.0, gt=0)
    max_connections_per_origin: int = Field(default=5, ge=1)
    messages_per_window: int = Field(default=30, ge=1)
    message_window_seconds: float = Field(default=60.0, gt=0)
    max_payload_bytes: int = Field(default=512, ge=1)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)


class SubscriptionConfig(BaseModel):
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    query_timeout_seconds: float = Field(default=15.0, gt=0, description="Max wait for an in-flight cycle")
    outbound_queue_size: int = Field(default=16, ge=1)


class EmailConfig(BaseModel):
    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587)
    starttls: bool = Field(default=True)
    username: Optional[str] = Field(default=None, description="SMTP login (SMTP_MAIL)")
    password: Optional[str] = Field(default=None, description="SMTP password (SMTP_PASS)")
    sender: Optional[str] = Field(default=None, description="From address (EMAIL_FROM)")
    recipients: List[str] = Field(default_factory=list)
    timeout_seconds: float = Field(default=30.0, gt=0)


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    trust_proxy_headers: bool = Field(default=False, description="Use X-Forwarded-For / X-Real-IP as origin")
    shutdown_grace_seconds: float = Field(default=5.0, ge=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    directory: Optional[str] = Field(default="logs", description="Daily rotated log files; None for console only")
    retention_days: int = Field(default=14, ge=1)
    json_output: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}


class WatcherConfig(BaseModel):
    """Main configuration for the watcher."""
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    subscriptions: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


# env var -> (section, key, converter)
_ENV_OVERRIDES = {
    "WATCH_URL": ("probe", "url", str),
    "SUPPRESS_FIRST_NOTIFICATION": ("probe", "suppress_first_notification", _parse_bool),
    "STATE_PATH": ("state", "path", str),
    "HOST": ("server", "host", str),
    "PORT": ("server", "port", int),
    "LOG_LEVEL": ("logging", "level", str),
    "LOG_DIR": ("logging", "directory", str),
    "SMTP_HOST": ("email", "smtp_host", str),
    "SMTP_PORT": ("email", "smtp_port", int),
    "SMTP_MAIL": ("email", "username", str),
    "SMTP_PASS": ("email", "password", str),
    "EMAIL_FROM": ("email", "sender", str),
    "EMAIL_RECIPIENTS": ("email", "recipients", _split_csv),
}


def load_config(config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> WatcherConfig:
    """Load configuration from an optional YAML file, then apply environment overrides."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = env.get("WATCH_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(config_data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")

    for name, (section, key, convert) in _ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {name}: {raw!r}") from e
        config_data.setdefault(section, {})
        if not isinstance(config_data[section], dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")
        config_data[section][key] = value

    try:
        return WatcherConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def check_startup_requirements(config: WatcherConfig) -> None:
    """Refuse to start when recipients are configured but mail credentials are not."""
    email = config.email
    if not email.recipients:
        return

    missing = [
        env_name
        for env_name, value in (
            ("SMTP_MAIL", email.username),
            ("SMTP_PASS", email.password),
            ("EMAIL_FROM", email.sender),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

