from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from pysensync.exceptions import StorageWriteError
from pysensync.models.reading import Reading
from pysensync.storage.consolidated import ConsolidatedStore

_T0 = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


def _reading(offset: float, sensor_id: str = "door", session_id: str | None = "s1") -> Reading:
    return Reading(
        sensor_id=sensor_id,
        session_id=session_id,
        timestamp=_T0 + timedelta(seconds=offset),
        value=1,
        raw_payload={"contact": True, "seq": offset},
    )


def test_append_keeps_timestamp_order_for_out_of_order_arrival(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path)
    for offset in (5, 1, 3, 2, 4, 0):
        assert store.append("s1", "door", _reading(offset)) is True

    timestamps = [r.timestamp for r in store.get_all("s1", "door")]
    assert timestamps == sorted(timestamps)
    assert len(timestamps) == 6


def test_duplicate_append_is_a_noop(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path)
    assert store.append("s1", "door", _reading(1)) is True
    assert store.append("s1", "door", _reading(1)) is False
    assert len(store.get_all("s1", "door")) == 1


def test_write_through_persists_every_append(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path)
    store.append("s1", "door", _reading(1))
    store.append("s1", "window", _reading(2, sensor_id="window"))

    document = json.loads((tmp_path / "consolidated" / "s1.json").read_text(encoding="utf-8"))
    assert document["sessionId"] == "s1"
    assert set(document["sensors"]) == {"door", "window"}
    assert document["sensors"]["door"][0]["sensorId"] == "door"

    reopened = ConsolidatedStore(tmp_path)
    assert [r.timestamp for r in reopened.get_all("s1", "door")] == [_T0 + timedelta(seconds=1)]


def test_snapshot_interval_batches_writes_until_flush(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path, snapshot_interval=3)
    store.append("s1", "door", _reading(1))
    store.append("s1", "door", _reading(2))
    assert not store.exists("s1")

    store.append("s1", "door", _reading(3))
    assert store.exists("s1")

    store.append("s1", "door", _reading(4))
    store.flush("s1")
    assert len(ConsolidatedStore(tmp_path).get_all("s1", "door")) == 4


def test_get_session_returns_independent_deep_copy(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path)
    store.append("s1", "door", _reading(1))

    copy = store.get_session("s1")
    copy["door"].clear()
    copy["intruder"] = []
    store.get_session("s1")["door"][0].raw_payload["contact"] = False

    fresh = store.get_session("s1")
    assert list(fresh) == ["door"]
    assert fresh["door"][0].raw_payload["contact"] is True


def test_default_bucket_and_delete(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path)
    store.append(None, "door", _reading(1, session_id=None))
    assert (tmp_path / "consolidated" / "_unassigned.json").is_file()
    assert store.session_ids() == [None]

    store.delete_session(None)
    assert store.get_session(None) == {}
    assert not store.exists(None)


def test_load_durable_reflects_disk_plus_unsaved(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path, snapshot_interval=2)
    assert store.load_durable("s1") is None

    store.append("s1", "door", _reading(1))
    pending = store.load_durable("s1")
    assert pending is not None
    assert [r.timestamp for r in pending["door"]] == [_T0 + timedelta(seconds=1)]

    store.append("s1", "door", _reading(2))
    (tmp_path / "consolidated" / "s1.json").unlink()
    # The cached index still holds both readings, the disk does not.
    assert len(store.get_all("s1", "door")) == 2
    assert store.load_durable("s1") is None


def test_commit_replaces_index(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path)
    store.append("s1", "door", _reading(1))
    store.commit("s1", {"door": [_reading(3), _reading(2)], "window": [_reading(0, sensor_id="window")]})

    assert [r.timestamp for r in store.get_all("s1", "door")] == [
        _T0 + timedelta(seconds=2),
        _T0 + timedelta(seconds=3),
    ]
    durable = store.load_durable("s1")
    assert durable is not None
    assert set(durable) == {"door", "window"}


def test_snapshot_failure_keeps_reading_in_memory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_write(_path: Path, _document: object) -> None:
        raise PermissionError(13, "Permission denied")

    store = ConsolidatedStore(tmp_path, write_retries=2, retry_delay=0)
    monkeypatch.setattr("pysensync.storage.consolidated.atomic_write_json", failing_write)
    with pytest.raises(StorageWriteError):
        store.append("s1", "door", _reading(1))
    assert len(store.get_all("s1", "door")) == 1

    monkeypatch.undo()
    store.flush("s1")
    assert store.exists("s1")


def test_concurrent_appends_from_threads(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path, snapshot_interval=25)

    def worker(sensor_id: str) -> None:
        for offset in range(50):
            store.append("s1", sensor_id, _reading(offset, sensor_id=sensor_id))

    threads = [threading.Thread(target=worker, args=(f"sensor-{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    store.flush_all()

    index = ConsolidatedStore(tmp_path).get_session("s1")
    assert sorted(index) == [f"sensor-{n}" for n in range(4)]
    assert all(len(readings) == 50 for readings in index.values())


def test_reads_do_not_populate_the_cache(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path)
    assert store.get_session("never-seen") == {}
    assert store.get_all("never-seen", "door") == []
    assert store.cached_session_ids == []

    store.commit("s1", {"door": [_reading(1)]})
    assert store.cached_session_ids == []
    assert len(store.get_all("s1", "door")) == 1


def test_evict_flushes_and_releases_the_session(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path, snapshot_interval=10)
    store.append("s1", "door", _reading(1))
    store.append("s2", "door", _reading(2, session_id="s2"))
    assert not store.exists("s1")

    store.evict("s1")

    assert store.cached_session_ids == ["s2"]
    assert store.exists("s1")
    assert [r.timestamp for r in store.get_all("s1", "door")] == [_T0 + timedelta(seconds=1)]
    assert store.cached_session_ids == ["s2"]


def test_flush_targets_only_the_default_bucket(tmp_path: Path) -> None:
    store = ConsolidatedStore(tmp_path, snapshot_interval=10)
    store.append(None, "door", _reading(1, session_id=None))
    store.append("s1", "door", _reading(2))

    store.flush(None)
    assert store.exists(None)
    assert not store.exists("s1")

    store.flush_all()
    assert store.exists("s1")
