from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from pysensync import DeviceClass, SensyncClient, SensyncConfig
from pysensync.connection import ConnectionPhase
from pysensync.exceptions import BrokerConnectionError, SensyncError
from pysensync.models.reconciliation import RepairType
from pysensync.models.session import SessionStatus


class _RecordingCamera:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def start_recording(self, session_id: str) -> None:
        self.calls.append(("start", session_id))

    async def stop_recording(self, session_id: str) -> None:
        self.calls.append(("stop", session_id))


def _config(tmp_path: Path, **overrides: Any) -> SensyncConfig:
    values: dict[str, Any] = {
        "data_dir": str(tmp_path),
        "reconcile_interval": 0,
        "store_retry_delay": 0,
    }
    values.update(overrides)
    return SensyncConfig(**values)


@pytest.mark.asyncio
async def test_capture_session_end_to_end(tmp_path: Path) -> None:
    camera = _RecordingCamera()
    async with SensyncClient(_config(tmp_path), camera=camera, connect=False) as client:
        client.register_device("front_door", DeviceClass.CONTACT)
        client.register_device("hall_motion", DeviceClass.MOTION)

        assert client.ingest("zigbee2mqtt/front_door", '{"contact": true}') == 1
        await client.drain()

        session = await client.create_session({"front_door", "hall_motion"}, name="walkthrough")
        await client.activate_session(session.id)
        for contact in (False, True):
            client.ingest("zigbee2mqtt/front_door", f'{{"contact": {str(contact).lower()}, "battery": 91}}')
        client.ingest("zigbee2mqtt/hall_motion", '{"occupancy": true, "linkquality": 120}')
        client.ingest("zigbee2mqtt/bridge/state", '{"state": "online"}')

        completed = await client.complete_session(session.id)
        assert completed.status == SessionStatus.COMPLETED
        assert camera.calls == [("start", session.id), ("stop", session.id)]

        data = await client.get_session_data(session.id)
        assert [r.value for r in data["front_door"]] == [0, 1]
        assert data["front_door"][0].battery == 91
        assert data["hall_motion"][0].link_quality == 120

        unassigned = await client.get_session_data(None)
        assert [r.value for r in unassigned["front_door"]] == [1]

        first = data["front_door"][0]
        assert await client.get_reading(session.id, "front_door", first.timestamp) == first
        assert client.stats.persisted == 4
        assert [s.id for s in client.list_sessions()] == [session.id]


@pytest.mark.asyncio
async def test_reconcile_repairs_lost_individual_file(tmp_path: Path) -> None:
    async with SensyncClient(_config(tmp_path), connect=False) as client:
        client.register_device("window", DeviceClass.CONTACT)
        session = await client.create_session({"window"}, session_id="s1")
        await client.activate_session("s1")
        client.ingest("zigbee2mqtt/window", b'{"contact": false}')
        await client.drain()

        stored = (await client.get_session_data("s1"))["window"][0]
        for record in (tmp_path / "readings" / "s1").rglob("*.json"):
            record.unlink()

        report = await client.reconcile(session.id, dry_run=True)
        assert report.count(RepairType.MISSING_INDIVIDUAL_FILE) == 1
        assert await client.get_reading("s1", "window", stored.timestamp) is None

        report = await client.reconcile(session.id)
        assert report.repaired == 1
        assert await client.get_reading("s1", "window", stored.timestamp) == stored


@pytest.mark.asyncio
async def test_sessions_and_data_survive_restart_and_delete(tmp_path: Path) -> None:
    async with SensyncClient(_config(tmp_path), connect=False) as client:
        client.register_device("door", DeviceClass.CONTACT)
        await client.create_session({"door"}, session_id="s1")
        await client.activate_session("s1")
        client.ingest("zigbee2mqtt/door", b'{"contact": true}')

    async with SensyncClient(_config(tmp_path), connect=False) as client:
        session = client.get_session("s1")
        assert session is not None
        assert session.status == SessionStatus.ACTIVE
        assert len((await client.get_session_data("s1"))["door"]) == 1

        await client.delete_session("s1")
        assert client.get_session("s1") is None
        assert await client.get_session_data("s1") == {}
        assert not (tmp_path / "readings" / "s1").exists()


@pytest.mark.asyncio
async def test_requires_context_manager(tmp_path: Path) -> None:
    client = SensyncClient(_config(tmp_path), connect=False)
    with pytest.raises(SensyncError):
        await client.create_session({"door"})
    with pytest.raises(SensyncError):
        client.register_device("door")


class _RefusingClient:
    def __init__(self) -> None:
        self.on_connect: Any = None
        self.on_message: Any = None
        self.on_disconnect: Any = None

    def connect(self, host: str, port: int, keepalive: int = 60) -> None:
        raise ConnectionRefusedError(111, "Connection refused")

    def disconnect(self) -> None:
        pass


@pytest.mark.asyncio
async def test_wait_connected_reports_exhausted_retries(tmp_path: Path) -> None:
    states: list[ConnectionPhase] = []
    config = _config(tmp_path, reconnect_base_delay=0, reconnect_max_attempts=2)
    async with SensyncClient(
        config,
        mqtt_client_factory=_RefusingClient,  # type: ignore[arg-type]
        on_connection_state=lambda state: states.append(state.phase),
    ) as client:
        with pytest.raises(BrokerConnectionError) as excinfo:
            await asyncio.wait_for(client.wait_connected(), timeout=5)

        assert excinfo.value.attempts == 2
        assert client.connection_state.phase == ConnectionPhase.FAILED
        assert states[-1] == ConnectionPhase.FAILED


@pytest.mark.asyncio
async def test_delete_drops_readings_still_queued_for_the_session(tmp_path: Path) -> None:
    async with SensyncClient(_config(tmp_path), connect=False) as client:
        client.register_device("door", DeviceClass.CONTACT)
        await client.create_session({"door"}, session_id="s1")
        await client.activate_session("s1")
        for index in range(300):
            client.ingest("zigbee2mqtt/door", f'{{"contact": {str(index % 2 == 0).lower()}}}')

        await client.delete_session("s1")
        client.ingest("zigbee2mqtt/door", b'{"contact": true}')
        await client.drain()

        assert await client.get_session_data("s1") == {}
        assert not (tmp_path / "readings" / "s1").exists()
        assert not (tmp_path / "consolidated" / "s1.json").exists()
        assert len((await client.get_session_data(None))["door"]) == 1
        assert client.stats.persisted == 301


@pytest.mark.asyncio
async def test_completed_session_leaves_the_index_cache(tmp_path: Path) -> None:
    async with SensyncClient(_config(tmp_path), connect=False) as client:
        client.register_device("door", DeviceClass.CONTACT)
        await client.create_session({"door"}, session_id="s1")
        await client.activate_session("s1")
        client.ingest("zigbee2mqtt/door", b'{"contact": true}')
        await client.drain()
        assert "s1" in client._consolidated.cached_session_ids

        await client.complete_session("s1")
        assert "s1" not in client._consolidated.cached_session_ids
        assert (tmp_path / "consolidated" / "s1.json").exists()
        assert len((await client.get_session_data("s1"))["door"]) == 1
        assert "s1" not in client._consolidated.cached_session_ids


@pytest.mark.asyncio
async def test_session_id_shaped_like_a_bucket_name_stays_separate(tmp_path: Path) -> None:
    async with SensyncClient(_config(tmp_path), connect=False) as client:
        client.register_device("door", DeviceClass.CONTACT)
        client.ingest("zigbee2mqtt/door", b'{"contact": true}')
        await client.drain()

        await client.create_session({"door"}, session_id="_unassigned")
        await client.activate_session("_unassigned")
        client.ingest("zigbee2mqtt/door", b'{"contact": false}')
        await client.complete_session("_unassigned")

        assert [r.value for r in (await client.get_session_data("_unassigned"))["door"]] == [0]
        assert [r.value for r in (await client.get_session_data(None))["door"]] == [1]

        await client.delete_session("_unassigned")
        assert await client.get_session_data("_unassigned") == {}
        assert [r.value for r in (await client.get_session_data(None))["door"]] == [1]
