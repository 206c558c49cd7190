"""Configuration loader for the Active Directory authentication service."""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger()

DEFAULT_CONFIG_PATH = "/etc/adauth/config.yaml"
GROUP_CACHE_TTL_SECONDS = 30 * 24 * 60 * 60

# Registry style camelCase keys accepted in the YAML file
_CAMEL_CASE_KEYS = {
    "baseDN": "base_dn",
    "bindUsername": "bind_username",
    "bindPassword": "bind_password",
    "domainSuffix": "domain_suffix",
    "extendedUsersFile": "extended_users_file",
    "extendedUsersSuffix": "extended_users_suffix",
    "groupCacheTtlSeconds": "group_cache_ttl_seconds",
    "groupLookupDelaySeconds": "group_lookup_delay_seconds",
    "connectTimeout": "connect_timeout",
    "receiveTimeout": "receive_timeout",
    "nestedGroups": "nested_groups",
}
_INT_FIELDS = {"connect_timeout", "receive_timeout"}
_FLOAT_FIELDS = {"group_cache_ttl_seconds", "group_lookup_delay_seconds"}
_BOOL_FIELDS = {"nested_groups"}


@dataclass
class ActiveDirectoryConfig:
    """Directory connection and fallback store settings."""

    url: str
    base_dn: str = ""
    bind_username: str = ""
    bind_password: str = ""
    domain_suffix: str | None = None
    extended_users_file: str | None = None
    extended_users_suffix: str | None = None
    group_cache_ttl_seconds: float = GROUP_CACHE_TTL_SECONDS
    group_lookup_delay_seconds: float = 0.1
    connect_timeout: int = 5
    receive_timeout: int = 10
    nested_groups: bool = True

    @property
    def bind_principal(self) -> str:
        """Service account name, qualified with the domain suffix if needed."""
        user = (self.bind_username or "").strip()
        if not user or "@" in user or not self.domain_suffix:
            return user
        return f"{user}@{self.domain_suffix}"

    @property
    def fallback_enabled(self) -> bool:
        return bool(self.extended_users_file)

    def redacted(self) -> dict[str, Any]:
        """Settings safe to log."""
        data = asdict(self)
        if data["bind_password"]:
            data["bind_password"] = "***"
        return data


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _INT_FIELDS:
        return int(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    if name in _BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    return str(value)


class ConfigLoader:
    """Loads settings from a YAML file, then applies ADAUTH_* overrides."""

    def __init__(self, config_file: str = DEFAULT_CONFIG_PATH):
        self.config_file = Path(config_file)

    def load(self) -> ActiveDirectoryConfig:
        """Build the configuration, raising ValueError if no url is set."""
        values = self._load_yaml_file()
        values.update(self._load_environment())

        if not values.get("url"):
            logger.error("Directory url is not configured", file=str(self.config_file))
            raise ValueError(
                "Directory url is required (set 'url' in the config file or ADAUTH_URL)"
            )

        config = ActiveDirectoryConfig(
            **{name: _coerce(name, value) for name, value in values.items()}
        )
        logger.info("Active Directory configuration loaded", **config.redacted())
        return config

    def _load_yaml_file(self) -> dict[str, Any]:
        """Read the activedirectory section of the YAML file, if present."""
        if not self.config_file.exists():
            logger.warning("Config file does not exist", file=str(self.config_file))
            return {}

        try:
            with open(self.config_file) as f:
                content = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(
                "Failed to load config file", file=str(self.config_file), error=str(e)
            )
            return {}

        section: Any = content
        if isinstance(content, dict) and "auth" in content:
            auth = content["auth"]
            section = auth.get("activedirectory") if isinstance(auth, dict) else None

        if not isinstance(section, dict):
            logger.error(
                "Config file has no activedirectory mapping", file=str(self.config_file)
            )
            return {}
        return self._normalize(section)

    def _normalize(self, section: dict[str, Any]) -> dict[str, Any]:
        known = {f.name for f in fields(ActiveDirectoryConfig)}
        values: dict[str, Any] = {}
        for key, value in section.items():
            name = _CAMEL_CASE_KEYS.get(key, key)
            if name not in known:
                logger.debug("Ignoring unknown config key", key=key)
                continue
            values[name] = value
        return values

    def _load_environment(self) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for f in fields(ActiveDirectoryConfig):
            env_value = os.getenv(f"ADAUTH_{f.name.upper()}")
            if env_value is not None:
                values[f.name] = env_value
        return values


def get_config_loader() -> ConfigLoader:
    """Get configured config loader instance."""
    return ConfigLoader(os.getenv("ADAUTH_CONFIG_PATH", DEFAULT_CONFIG_PATH))
