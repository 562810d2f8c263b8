from __future__ import annotations

from pysensync._redact import redact_for_log


def test_credentials_in_bridge_payloads_are_masked() -> None:
    payload = {
        "contact": True,
        "mqtt_password": "pw",
        "Username": "mqtt-user",
        "config": {"network_key": [1, 2, 3], "pan_id": 6754, "access_token": "abc", "channel": 11},
    }

    masked = redact_for_log(payload)
    assert masked["contact"] is True
    assert masked["mqtt_password"] == "<redacted>"
    assert masked["Username"] == "<redacted>"
    assert masked["config"] == {
        "network_key": "<redacted>",
        "pan_id": "<redacted>",
        "access_token": "<redacted>",
        "channel": 11,
    }


def test_long_strings_report_their_original_length() -> None:
    masked = redact_for_log({"image": "x" * 600}, max_string=10)
    assert masked["image"] == "x" * 10 + "…<truncated 600 chars>"


def test_collections_and_binary_payloads_are_bounded() -> None:
    masked = redact_for_log({"items": list(range(10)), "blob": b"\x00" * 400}, max_items=3)
    assert masked["items"] == [0, 1, 2, "<7 more items>"]
    assert masked["blob"] == "<bytes:400b>"
    assert redact_for_log(b"short") == "short"
    assert redact_for_log({"a": 1, "b": 2, "c": 3}, max_items=2) == {"a": 1, "b": 2, "…": "<1 more keys>"}
