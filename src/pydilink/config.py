"""Client configuration for pydilink."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any

from pydilink._constants import BASE_URL
from pydilink.exceptions import ConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env: dict[str, str], key: str, cast: type[int] | type[float]) -> int | float | None:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class DeviceIdentity:
    """Static fields identifying the simulated mobile client.

    Generated and persisted elsewhere; this library only sends them.
    """

    ostype: str = "and"
    imei: str = "BANGCLE01234"
    mac: str = "00:00:00:00:00:00"
    model: str = "POCO F1"
    sdk: str = "35"
    mod: str = "Xiaomi"
    imei_md5: str = "00000000000000000000000000000000"
    mobile_brand: str = "XIAOMI"
    mobile_model: str = "POCO F1"
    device_type: str = "0"
    network_type: str = "wifi"
    os_type: str = "15"
    os_version: str = "35"
    app_version: str = "3.2.2"
    app_inner_version: str = "322"
    soft_type: str = "0"
    tbox_version: str = "3"
    is_auto: str = "1"
    time_zone: str = "Europe/Amsterdam"

    def outer_fields(self) -> dict[str, str]:
        """Device fields copied into every outer request object."""
        return {
            "ostype": self.ostype,
            "imei": self.imei,
            "mac": self.mac,
            "model": self.model,
            "sdk": self.sdk,
            "mod": self.mod,
        }


_ENV_DEVICE_MAP = {
    "DILINK_OSTYPE": "ostype",
    "DILINK_IMEI": "imei",
    "DILINK_MAC": "mac",
    "DILINK_MODEL": "model",
    "DILINK_SDK": "sdk",
    "DILINK_MOD": "mod",
    "DILINK_IMEI_MD5": "imei_md5",
    "DILINK_MOBILE_BRAND": "mobile_brand",
    "DILINK_MOBILE_MODEL": "mobile_model",
    "DILINK_DEVICE_TYPE": "device_type",
    "DILINK_NETWORK_TYPE": "network_type",
    "DILINK_OS_TYPE": "os_type",
    "DILINK_OS_VERSION": "os_version",
    "DILINK_APP_VERSION": "app_version",
    "DILINK_APP_INNER_VERSION": "app_inner_version",
    "DILINK_SOFT_TYPE": "soft_type",
    "DILINK_TBOX_VERSION": "tbox_version",
    "DILINK_IS_AUTO": "is_auto",
    "DILINK_TIME_ZONE": "time_zone",
}

_ENV_CONFIG_MAP = {
    "DILINK_USERNAME": "username",
    "DILINK_PASSWORD": "password",
    "DILINK_BASE_URL": "base_url",
    "DILINK_COUNTRY_CODE": "country_code",
    "DILINK_LANGUAGE": "language",
    "DILINK_CONTROL_PIN": "control_pin",
}

_ENV_NUMERIC_MAP: dict[str, tuple[str, type[int] | type[float]]] = {
    "DILINK_MQTT_KEEPALIVE": ("mqtt_keepalive", int),
    "DILINK_PUSH_TIMEOUT": ("push_timeout", float),
    "DILINK_POLL_ATTEMPTS": ("poll_attempts", int),
    "DILINK_POLL_INTERVAL": ("poll_interval", float),
    "DILINK_RATE_LIMIT_RETRIES": ("rate_limit_retries", int),
    "DILINK_RATE_LIMIT_DELAY": ("rate_limit_delay", float),
    "DILINK_HTTP_TIMEOUT": ("http_timeout", float),
}


@dataclasses.dataclass(frozen=True)
class DilinkConfig:
    """Client configuration.

    Parameters
    ----------
    username : str
        Account email or phone number.
    password : str
        Account password.
    base_url : str
        API base URL. Defaults to the EU overseas endpoint.
    country_code : str
        ISO country code (e.g. ``"NL"``).
    language : str
        Language code (e.g. ``"en"``).
    control_pin : str or None
        Remote-control PIN. Sent as its uppercase MD5.
    cipher_tables_path : Path or None
        Envelope cipher table file; package data is used when unset.
    mqtt_enabled : bool
        Start the push transport after login.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    push_timeout : float
        Seconds to wait for a push result before falling back to polling.
    poll_attempts : int
        Maximum HTTP poll attempts per operation.
    poll_interval : float
        Seconds between poll attempts.
    rate_limit_retries : int
        Trigger attempts while the server answers "rate limited".
    rate_limit_delay : float
        Seconds to back off between rate-limited attempts.
    http_timeout : float
        Total timeout per HTTP request in seconds.
    device : DeviceIdentity
        Device identity fields.
    """

    username: str
    password: str
    base_url: str = BASE_URL
    country_code: str = "NL"
    language: str = "en"
    control_pin: str | None = None
    cipher_tables_path: Path | None = None
    mqtt_enabled: bool = True
    mqtt_keepalive: int = 120
    push_timeout: float = 8.0
    poll_attempts: int = 10
    poll_interval: float = 1.5
    rate_limit_retries: int = 3
    rate_limit_delay: float = 5.0
    http_timeout: float = 180.0
    device: DeviceIdentity = dataclasses.field(default_factory=DeviceIdentity)

    def __post_init__(self) -> None:
        if not self.username or not self.password:
            raise ConfigError("username and password are required")
        if self.poll_attempts < 1:
            raise ConfigError("poll_attempts must be at least 1")
        if self.rate_limit_retries < 1:
            raise ConfigError("rate_limit_retries must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> DilinkConfig:
        """Create configuration from ``DILINK_*`` environment variables.

        Explicit keyword arguments override environment values; a
        ``device`` override may be a :class:`DeviceIdentity` or a dict of
        field overrides.
        """
        env = dict(os.environ)

        device_kwargs: dict[str, str] = {}
        for env_key, field_name in _ENV_DEVICE_MAP.items():
            val = env.get(env_key)
            if val is not None:
                device_kwargs[field_name] = val

        device_overrides = overrides.pop("device", None)
        if isinstance(device_overrides, dict):
            device_kwargs.update(device_overrides)
        elif isinstance(device_overrides, DeviceIdentity):
            device_kwargs = dataclasses.asdict(device_overrides)

        config_kwargs: dict[str, Any] = {"device": DeviceIdentity(**device_kwargs)}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_key, (field_name, cast) in _ENV_NUMERIC_MAP.items():
            number = _env_number(env, env_key, cast)
            if number is not None:
                config_kwargs[field_name] = number

        tables = env.get("DILINK_CIPHER_TABLES")
        if tables:
            config_kwargs["cipher_tables_path"] = Path(tables)

        config_kwargs["mqtt_enabled"] = _env_bool(env.get("DILINK_MQTT_ENABLED"), True)

        config_kwargs.update(overrides)
        config_kwargs.setdefault("username", "")
        config_kwargs.setdefault("password", "")
        return cls(**config_kwargs)
