from __future__ import annotations

import pytest

from pysensync.config import SensyncConfig
from pysensync.exceptions import SensyncConfigError


def test_defaults() -> None:
    config = SensyncConfig()
    assert config.broker_port == 1883
    assert config.topic_root == "zigbee2mqtt"
    assert config.reconnect_max_delay == 30.0
    assert config.snapshot_interval == 1


def test_from_env_reads_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SENSYNC_BROKER_HOST", "broker.lan")
    monkeypatch.setenv("SENSYNC_BROKER_PORT", "8883")
    monkeypatch.setenv("SENSYNC_TLS", "yes")
    monkeypatch.setenv("SENSYNC_RECONCILE_INTERVAL", "12.5")
    monkeypatch.setenv("SENSYNC_CAMERA_URL", "http://camera.lan:8080")

    config = SensyncConfig.from_env(client_id="bench-rig")
    assert config.broker_host == "broker.lan"
    assert config.broker_port == 8883
    assert config.tls is True
    assert config.reconcile_interval == 12.5
    assert config.camera_url == "http://camera.lan:8080"
    assert config.client_id == "bench-rig"


def test_overrides_win_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SENSYNC_BROKER_PORT", "8883")
    monkeypatch.setenv("SENSYNC_TLS", "true")
    config = SensyncConfig.from_env(broker_port=1884, tls=False)
    assert config.broker_port == 1884
    assert config.tls is False


def test_invalid_values_raise(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SENSYNC_BROKER_PORT", "not-a-port")
    with pytest.raises(SensyncConfigError):
        SensyncConfig.from_env()

    with pytest.raises(SensyncConfigError):
        SensyncConfig(snapshot_interval=0)
