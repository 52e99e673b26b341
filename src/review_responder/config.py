"""
Configuration schema using Pydantic.

Credentials come from CLI options or environment variables (a ``.env`` file is
honoured). Tunables live in an optional YAML file.
"""

import os
from pathlib import Path
from typing import Optional, List, Dict, Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from review_responder.models import Platform


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required values."""

    def __init__(self, message: str, field: Optional[str] = None, suggestions: Optional[List[str]] = None):
        self.message = message
        self.field = field
        self.suggestions = suggestions or []
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [self.message]
        if self.field:
            lines.append(f"  Field: {self.field}")
        if self.suggestions:
            lines.append("  Suggestions:")
            for s in self.suggestions:
                lines.append(f"    - {s}")
        return "\n".join(lines)


class EnvironmentSettings(BaseSettings):
    """Credential settings read from the environment and ``.env``."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_store_app_id: Optional[str] = None
    app_store_connect_key_id: Optional[str] = None
    app_store_connect_issuer_id: Optional[str] = None
    app_store_connect_private_key_path: Optional[str] = None
    google_play_package_name: Optional[str] = None
    google_play_service_account_path: Optional[str] = None
    gemini_api_key: Optional[str] = None


# field -> (CLI flag, environment variable, description), per platform
_REQUIRED_FIELDS: Dict[Platform, Dict[str, tuple]] = {
    Platform.IOS: {
        "app_id": ("--app-id", "APP_STORE_APP_ID", "App Store app ID"),
        "key_id": ("--key-id", "APP_STORE_CONNECT_KEY_ID", "App Store Connect API key ID"),
        "issuer_id": ("--issuer-id", "APP_STORE_CONNECT_ISSUER_ID", "App Store Connect issuer ID"),
        "private_key_path": (
            "--private-key",
            "APP_STORE_CONNECT_PRIVATE_KEY_PATH",
            "App Store Connect private key path",
        ),
    },
    Platform.ANDROID: {
        "app_id": ("--app-id", "GOOGLE_PLAY_PACKAGE_NAME", "Google Play package name"),
        "service_account_path": (
            "--service-account",
            "GOOGLE_PLAY_SERVICE_ACCOUNT_PATH",
            "Google Play service account JSON path",
        ),
    },
}


class PlatformConfig(BaseModel):
    """Validated platform selection and credential locations."""

    platform: Platform = Platform.IOS
    app_id: Optional[str] = None
    key_id: Optional[str] = None
    issuer_id: Optional[str] = None
    private_key_path: Optional[Path] = None
    service_account_path: Optional[Path] = None
    gemini_api_key: Optional[str] = Field(default=None, repr=False)

    @classmethod
    def resolve(
        cls,
        platform: Platform,
        overrides: Optional[Dict[str, Any]] = None,
        env: Optional[EnvironmentSettings] = None,
    ) -> "PlatformConfig":
        """
        Merge CLI overrides over environment values and validate.

        Args:
            platform: Selected platform
            overrides: Values given on the command line (None entries ignored)
            env: Environment settings (read from the process when omitted)

        Raises:
            ConfigurationError: If a required value is missing or invalid
        """
        env = env or EnvironmentSettings()
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

        if platform == Platform.IOS:
            values: Dict[str, Any] = {
                "app_id": env.app_store_app_id,
                "key_id": env.app_store_connect_key_id,
                "issuer_id": env.app_store_connect_issuer_id,
                "private_key_path": env.app_store_connect_private_key_path,
            }
        else:
            values = {
                "app_id": env.google_play_package_name,
                "service_account_path": env.google_play_service_account_path,
            }
        values["gemini_api_key"] = env.gemini_api_key
        values.update(overrides)

        config = cls(platform=platform, **values)
        config.validate_for_run()
        return config

    def validate_for_run(self) -> None:
        """
        Check the values the selected platform needs are present.

        Raises:
            ConfigurationError: On the first missing or malformed value
        """
        for field, (flag, env_var, description) in _REQUIRED_FIELDS[self.platform].items():
            value = getattr(self, field)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ConfigurationError(
                    f"{description} is required for {self.platform.display_name}",
                    field=field,
                    suggestions=[
                        f"Pass {flag}",
                        f"Or set environment variable {env_var}",
                        f"Or add {env_var}=... to your .env file",
                    ],
                )

        if self.platform == Platform.IOS and not self.app_id.isdigit():
            raise ConfigurationError(
                f"App Store app ID must be numeric, got '{self.app_id}'",
                field="app_id",
                suggestions=["Use the Apple ID shown under App Information in App Store Connect"],
            )

        for field in ("private_key_path", "service_account_path"):
            path = getattr(self, field)
            if path is not None and not path.expanduser().is_file():
                raise ConfigurationError(
                    f"Credential file not found: {path}",
                    field=field,
                )


class AIConfig(BaseModel):
    """AI reply generation settings."""

    model: str = Field(default="gemini-2.5-flash", description="Gemini model ID")
    timeout_seconds: int = Field(default=30, ge=5, le=120)
    max_retries: int = Field(default=2, ge=0, le=10)
    keywords: List[str] = Field(default_factory=list, description="Keywords to weave into replies")
    support_email: Optional[str] = Field(default=None, description="Address users are pointed to")
    custom_prompt: Optional[str] = Field(default=None, description="Extra instructions for the model")
    supporting_info: Optional[str] = Field(default=None, description="Context about the app")


class ClientConfig(BaseModel):
    """Platform API client settings."""

    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    max_pages: int = Field(default=20, ge=1, le=100, description="Pagination safety limit")
    page_size: Optional[int] = Field(default=None, ge=1, le=200, description="Reviews per page (platform default when unset)")


class UIConfig(BaseModel):
    """Terminal front end settings."""

    log_file: str = Field(default="~/.review-responder/review-responder.log")

    @property
    def log_path(self) -> Path:
        return Path(self.log_file).expanduser()


class ResponderConfig(BaseModel):
    """Root configuration for Review Responder."""

    ai: AIConfig = Field(default_factory=AIConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    ui: UIConfig = Field(default_factory=UIConfig)


def get_default_config_path() -> Path:
    """Get default config file path."""
    return Path.home() / ".review-responder" / "config.yaml"


def load_config(config_path: Optional[str] = None) -> ResponderConfig:
    """
    Load configuration from YAML file.

    Falls back to defaults if the default file doesn't exist.
    Environment variables override config file values.

    Raises:
        ConfigurationError: If config file is missing (when given) or invalid
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(
                f"Config file not found: {path}",
                suggestions=[
                    f"Create the config file at {path}",
                    "Or run without --config to use defaults",
                ]
            )
    else:
        path = get_default_config_path()

    data: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            raise ConfigurationError(
                f"Invalid YAML in config file: {path}",
                suggestions=[
                    f"Check syntax at line {mark.line + 1 if mark else 'unknown'}",
                ]
            )

    data = _deep_merge(data, _get_env_overrides())

    try:
        return ResponderConfig(**data)
    except Exception as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            suggestions=["Check field names and values in your config"],
        )


def _get_env_overrides() -> Dict[str, Any]:
    """Get configuration overrides from environment variables."""
    overrides: Dict[str, Any] = {}

    env_mappings = {
        "REVIEW_RESPONDER_AI_MODEL": ("ai", "model"),
        "REVIEW_RESPONDER_SUPPORT_EMAIL": ("ai", "support_email"),
        "REVIEW_RESPONDER_MAX_PAGES": ("client", "max_pages"),
        "REVIEW_RESPONDER_LOG_FILE": ("ui", "log_file"),
    }

    for env_key, (section, field) in env_mappings.items():
        value: Any = os.environ.get(env_key)
        if value:
            if value.isdigit():
                value = int(value)
            overrides.setdefault(section, {})[field] = value

    return overrides


def _deep_merge(base: Dict, overlay: Dict) -> Dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result

