"""Configuration management for calrelay."""
import logging
import os
import tomllib
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Dict, Any, Optional, Mapping

import tomli_w

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Invalid settings file or environment value."""
    pass


@dataclass
class JsonFieldMap:
    """Field names used by the upstream JSON calendar API."""
    id: str = "id"
    uid: str = "uid"
    title: str = "title"
    start: str = "start"
    end: str = "end"
    all_day: str = "allDay"
    location: str = "where"
    description: str = "description"


@dataclass
class IdentityConfig:
    """One named upstream calendar.

    ``calendar_id`` and ``json_url`` enable the JSON API as the primary
    source; without them the identity is fetched from ``ical_url`` only.
    ``match_text`` drives renaming (and, with ``keep_only_matching``, strict
    filtering) of event summaries.
    """
    name: str = ""
    filename: str = ""
    label: str = ""
    calendar_id: Optional[str] = None
    json_url: Optional[str] = None
    ical_url: str = ""
    match_text: Optional[str] = None
    canonical_name: Optional[str] = None
    keep_only_matching: bool = False

    @property
    def uses_json(self) -> bool:
        return bool(self.calendar_id and self.json_url)

    @property
    def env_var(self) -> str:
        """Environment variable overriding this identity's fallback URL."""
        return f"{self.name.upper().replace('-', '_')}_ICAL_URL"


@dataclass
class AppConfig:
    """Main application configuration."""
    identities: Dict[str, IdentityConfig] = field(default_factory=dict)
    exclude: list[str] = field(default_factory=list)
    timezone: str = "Europe/Zurich"
    fetch_interval_minutes: int = 30
    request_timeout: float = 30.0
    user_agent: str = "calrelay/0.1 (+calendar sync)"
    window_years_back: int = 1
    window_years_ahead: int = 4
    collection_param: str = "calendar[0]"
    json_fields: JsonFieldMap = field(default_factory=JsonFieldMap)
    admin_user: str = "admin"
    admin_pass: str = "changeme"
    port: int = 8000


_SCALAR_KEYS = {f.name for f in fields(AppConfig)} - {"identities", "json_fields"}
_IDENTITY_KEYS = {f.name for f in fields(IdentityConfig)} - {"name"}
_FIELD_MAP_KEYS = {f.name for f in fields(JsonFieldMap)}


def _check_keys(section: str, data: Mapping[str, Any], allowed: set) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise ConfigError(f"Unknown keys in [{section}]: {', '.join(sorted(unknown))}")


def build_identity(name: str, data: Mapping[str, Any]) -> IdentityConfig:
    """Create an identity from its settings table, filling derived defaults."""
    _check_keys(f"identities.{name}", data, _IDENTITY_KEYS)
    identity = IdentityConfig(name=name, **data)

    if not identity.filename:
        identity.filename = f"{name}.ics"
    if "/" in identity.filename or not identity.filename.endswith(".ics"):
        raise ConfigError(f"Identity {name}: filename must be a plain *.ics name")
    if not identity.label:
        identity.label = name

    if identity.match_text:
        if not identity.canonical_name:
            identity.canonical_name = identity.match_text
        elif identity.match_text.lower() not in identity.canonical_name.lower():
            raise ConfigError(
                f"Identity {name}: canonical_name {identity.canonical_name!r} "
                f"must contain match_text {identity.match_text!r}"
            )
    elif identity.keep_only_matching:
        raise ConfigError(f"Identity {name}: keep_only_matching requires match_text")

    return identity


def validate(config: AppConfig) -> None:
    """Check cross-field constraints."""
    if config.fetch_interval_minutes <= 0:
        raise ConfigError("fetch_interval_minutes must be positive")
    if config.request_timeout <= 0:
        raise ConfigError("request_timeout must be positive")
    if config.window_years_back < 0 or config.window_years_ahead < 0:
        raise ConfigError("date window offsets must not be negative")

    filenames = [identity.filename for identity in config.identities.values()]
    if len(filenames) != len(set(filenames)):
        raise ConfigError("Identities must use distinct output filenames")


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str] = os.environ) -> AppConfig:
    """Apply environment values on top of file settings."""
    try:
        if environ.get("PORT"):
            config.port = int(environ["PORT"])
        if environ.get("FETCH_INTERVAL_MINUTES"):
            config.fetch_interval_minutes = int(environ["FETCH_INTERVAL_MINUTES"])
    except ValueError as e:
        raise ConfigError(f"Invalid numeric environment value: {e}")

    if environ.get("ADMIN_USER"):
        config.admin_user = environ["ADMIN_USER"]
    if environ.get("ADMIN_PASS"):
        config.admin_pass = environ["ADMIN_PASS"]

    validate(config)
    return config


class ConfigManager:
    """Manages settings loading and saving."""

    def __init__(self, config_path: Path):
        self.config_path = config_path
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> AppConfig:
        """Load settings from the TOML file."""
        if not self.config_path.exists():
            logger.warning(f"No settings file at {self.config_path}, using defaults")
            return AppConfig()

        try:
            with open(self.config_path, 'rb') as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Cannot parse {self.config_path}: {e}")

        identities = {}
        for name, identity_data in data.pop('identities', {}).items():
            identities[name] = build_identity(name, identity_data)

        field_data = data.pop('json_fields', {})
        _check_keys("json_fields", field_data, _FIELD_MAP_KEYS)

        _check_keys("settings", data, _SCALAR_KEYS)
        config = AppConfig(
            identities=identities,
            json_fields=JsonFieldMap(**field_data),
            **data,
        )
        validate(config)
        return config

    def save(self, config: AppConfig) -> None:
        """Save settings to the TOML file."""
        data = {key: getattr(config, key) for key in sorted(_SCALAR_KEYS)}
        data['json_fields'] = asdict(config.json_fields)
        data['identities'] = {}
        for name, identity in config.identities.items():
            table = asdict(identity)
            del table['name']
            data['identities'][name] = {k: v for k, v in table.items() if v is not None}

        with open(self.config_path, 'wb') as f:
            tomli_w.dump(data, f)
