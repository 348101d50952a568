"""Environment-sourced settings for the LINE webhook service."""
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from gemini_chat import constants
from gemini_chat.topic_filter import parse_keywords


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""
    pass


def _first(env: Mapping[str, str], *names: str, default: str = "") -> str:
    """Return the first non-empty variable among ``names``."""
    for name in names:
        value = env.get(name)
        if value:
            return value
    return default


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _as_int(env: Mapping[str, str], name: str, default: int, min_value: int = 1) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got: {raw}")
    if value < min_value:
        raise ConfigError(f"{name} must be at least {min_value}, got: {value}")
    return value


def _as_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got: {raw}")
    if value <= 0:
        raise ConfigError(f"{name} must be greater than 0, got: {value}")
    return value


def _as_choice(env: Mapping[str, str], name: str, default: str, allowed: List[str]) -> str:
    value = (env.get(name) or default).strip().lower()
    if value not in allowed:
        raise ConfigError(f"{name} must be one of {allowed}, got: {value}")
    return value


@dataclass
class Settings:
    channel_secret: str = ""
    channel_access_token: str = ""
    backend: str = constants.BACKEND_GEMINI
    gemini_api_key: str = ""
    use_vertexai: bool = False
    gcp_project: Optional[str] = None
    gcp_location: str = constants.DEFAULT_LOCATION
    credentials_file: Optional[str] = None
    model: str = constants.DEFAULT_MODEL
    image_model: str = constants.DEFAULT_MODEL
    system_instruction: Optional[str] = None
    topic_keywords: List[str] = field(default_factory=list)
    topic_mode: str = constants.TOPIC_MODE_SUBSTRING
    session_scope: str = constants.SESSION_SCOPE_USER
    reset_command: str = constants.RESET_COMMAND
    prompt_prefix: str = constants.PROMPT_COMMAND_PREFIX
    greeting_text: str = constants.GREETING_TEXT
    refusal_text: str = constants.REFUSAL_TEXT
    apology_text: str = constants.APOLOGY_TEXT
    backend_concurrency: int = constants.DEFAULT_BACKEND_CONCURRENCY
    backend_timeout: float = constants.DEFAULT_BACKEND_TIMEOUT_SECONDS
    app_env: str = "production"
    port: int = constants.DEFAULT_PORT

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read settings from ``env`` (defaults to ``os.environ``).

        The short variable names (ChannelSecret, ChannelAccessToken) are
        accepted as aliases so existing deployments keep working.

        Raises:
            ConfigError: If a value cannot be parsed.
        """
        env = os.environ if env is None else env
        model = _first(env, "GEMINI_MODEL", default=constants.DEFAULT_MODEL)
        return cls(
            channel_secret=_first(env, "LINE_CHANNEL_SECRET", "ChannelSecret"),
            channel_access_token=_first(env, "LINE_CHANNEL_ACCESS_TOKEN", "ChannelAccessToken"),
            backend=_as_choice(env, "CHAT_BACKEND", constants.BACKEND_GEMINI, constants.ALLOWED_BACKENDS),
            gemini_api_key=_first(env, "GOOGLE_GEMINI_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"),
            use_vertexai=_as_bool(env.get("GOOGLE_GENAI_USE_VERTEXAI", "")),
            gcp_project=env.get("GOOGLE_CLOUD_PROJECT") or None,
            gcp_location=_first(env, "GOOGLE_CLOUD_LOCATION", default=constants.DEFAULT_LOCATION),
            credentials_file=env.get("GOOGLE_APPLICATION_CREDENTIALS") or None,
            model=model,
            image_model=_first(env, "GEMINI_IMAGE_MODEL", default=model),
            system_instruction=env.get("SYSTEM_INSTRUCTION") or None,
            topic_keywords=parse_keywords(env.get("TOPIC_KEYWORDS", "")),
            topic_mode=_as_choice(env, "TOPIC_MATCH_MODE", constants.TOPIC_MODE_SUBSTRING, constants.ALLOWED_TOPIC_MODES),
            session_scope=_as_choice(env, "SESSION_SCOPE", constants.SESSION_SCOPE_USER, constants.ALLOWED_SESSION_SCOPES),
            reset_command=_first(env, "RESET_COMMAND", default=constants.RESET_COMMAND),
            prompt_prefix=_first(env, "PROMPT_COMMAND_PREFIX", default=constants.PROMPT_COMMAND_PREFIX),
            greeting_text=_first(env, "GREETING_TEXT", default=constants.GREETING_TEXT),
            refusal_text=_first(env, "REFUSAL_TEXT", default=constants.REFUSAL_TEXT),
            apology_text=_first(env, "APOLOGY_TEXT", default=constants.APOLOGY_TEXT),
            backend_concurrency=_as_int(env, "BACKEND_CONCURRENCY", constants.DEFAULT_BACKEND_CONCURRENCY),
            backend_timeout=_as_float(env, "BACKEND_TIMEOUT_SECONDS", constants.DEFAULT_BACKEND_TIMEOUT_SECONDS),
            app_env=_first(env, "APP_ENV", default="production").lower(),
            port=_as_int(env, "PORT", constants.DEFAULT_PORT),
        )

    def missing_credentials(self) -> List[str]:
        """Names of required variables that are not set."""
        missing = []
        if not self.channel_secret:
            missing.append("LINE_CHANNEL_SECRET")
        if not self.channel_access_token:
            missing.append("LINE_CHANNEL_ACCESS_TOKEN")
        if self.use_vertexai:
            if not self.gcp_project:
                missing.append("GOOGLE_CLOUD_PROJECT")
        elif not self.gemini_api_key:
            missing.append("GOOGLE_GEMINI_API_KEY")
        return missing

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"
