"""Ingestion layer.

Adapters that turn raw broker messages into normalized readings.
"""

from pysensync.ingestion.normalize import SKIP, decode_payload, normalize, sensor_id_from_topic

__all__ = ["SKIP", "decode_payload", "normalize", "sensor_id_from_topic"]
