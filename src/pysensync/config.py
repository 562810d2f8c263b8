"""Client configuration for pysensync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pysensync.exceptions import SensyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class SensyncConfig:
    """Capture service configuration.

    Parameters
    ----------
    broker_host : str
        MQTT broker host name.
    broker_port : int
        MQTT broker port.
    username : str or None
        Broker user name, if the broker requires authentication.
    password : str or None
        Broker password.
    client_id : str
        MQTT client identifier.
    keepalive : int
        MQTT keepalive in seconds.
    tls : bool
        Connect to the broker over TLS.
    data_dir : str
        Root directory for per-reading records, consolidated indexes and
        session documents.
    topic_root : str
        First topic level of device topics (stripped when deriving sensor ids).
    reconnect_base_delay : float
        Delay in seconds before the first reconnect attempt.
    reconnect_max_delay : float
        Upper bound for the exponential reconnect delay.
    reconnect_max_attempts : int
        Reconnect attempts before the connection is reported as failed.
    store_write_retries : int
        Attempts per store write before the reading is reported as failed.
    store_retry_delay : float
        Seconds between store write attempts.
    max_store_workers : int
        Concurrent store writes (across all sensors).
    snapshot_interval : int
        Consolidated appends between durable snapshots. ``1`` writes the
        session index on every append.
    reconcile_interval : float
        Seconds between background reconciliation passes for active
        sessions. ``0`` disables the periodic audit.
    camera_url : str or None
        Base URL of the camera-recording service. ``None`` disables the
        HTTP camera adapter.
    camera_timeout : float
        Timeout in seconds for camera start/stop requests.
    """

    broker_host: str = "localhost"
    broker_port: int = 1883
    username: str | None = None
    password: str | None = None
    client_id: str = "pysensync"
    keepalive: int = 60
    tls: bool = False
    data_dir: str = "data"
    topic_root: str = "zigbee2mqtt"
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 10
    store_write_retries: int = 3
    store_retry_delay: float = 0.1
    max_store_workers: int = 4
    snapshot_interval: int = 1
    reconcile_interval: float = 300.0
    camera_url: str | None = None
    camera_timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.broker_port <= 0:
            raise SensyncConfigError(f"broker_port must be positive, got {self.broker_port}")
        if self.store_write_retries < 1:
            raise SensyncConfigError("store_write_retries must be at least 1")
        if self.max_store_workers < 1:
            raise SensyncConfigError("max_store_workers must be at least 1")
        if self.snapshot_interval < 1:
            raise SensyncConfigError("snapshot_interval must be at least 1")
        if self.reconnect_max_attempts < 1:
            raise SensyncConfigError("reconnect_max_attempts must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> SensyncConfig:
        """Create configuration from environment variables.

        Reads ``SENSYNC_*`` variables. Explicit keyword arguments override
        environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        SensyncConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "SENSYNC_BROKER_HOST": "broker_host",
            "SENSYNC_USERNAME": "username",
            "SENSYNC_PASSWORD": "password",
            "SENSYNC_CLIENT_ID": "client_id",
            "SENSYNC_DATA_DIR": "data_dir",
            "SENSYNC_TOPIC_ROOT": "topic_root",
            "SENSYNC_CAMERA_URL": "camera_url",
        }
        _ENV_INT_MAP = {
            "SENSYNC_BROKER_PORT": "broker_port",
            "SENSYNC_KEEPALIVE": "keepalive",
            "SENSYNC_RECONNECT_MAX_ATTEMPTS": "reconnect_max_attempts",
            "SENSYNC_STORE_WRITE_RETRIES": "store_write_retries",
            "SENSYNC_MAX_STORE_WORKERS": "max_store_workers",
            "SENSYNC_SNAPSHOT_INTERVAL": "snapshot_interval",
        }
        _ENV_FLOAT_MAP = {
            "SENSYNC_RECONNECT_BASE_DELAY": "reconnect_base_delay",
            "SENSYNC_RECONNECT_MAX_DELAY": "reconnect_max_delay",
            "SENSYNC_STORE_RETRY_DELAY": "store_retry_delay",
            "SENSYNC_RECONCILE_INTERVAL": "reconcile_interval",
            "SENSYNC_CAMERA_TIMEOUT": "camera_timeout",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = int(val)
                except ValueError as exc:
                    raise SensyncConfigError(f"{env_key} must be an integer, got {val!r}") from exc

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = float(val)
                except ValueError as exc:
                    raise SensyncConfigError(f"{env_key} must be a number, got {val!r}") from exc

        if "tls" not in overrides:
            config_kwargs["tls"] = _env_bool(env.get("SENSYNC_TLS"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
