#!/usr/bin/env python3
"""Run a capture session against a live broker from the command line.

This script:
1) connects to the broker configured via ``SENSYNC_*`` variables,
2) registers each ``--device NAME[:CLASS]`` under the topic root,
3) creates and activates a session over those devices,
4) captures for ``--duration`` seconds (or until Ctrl+C),
5) completes the session (final reconciliation) and prints a summary.

With ``--audit SESSION_ID`` it only reconciles an existing session.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pysensync import (  # noqa: E402
    BrokerConnectionError,
    DeviceClass,
    SensyncClient,
    SensyncConfig,
    SensyncError,
)

_LOG = logging.getLogger("capture_probe")


def _parse_device(value: str) -> tuple[str, DeviceClass]:
    name, _, device_class = value.partition(":")
    if not name:
        raise argparse.ArgumentTypeError(f"invalid device {value!r}")
    try:
        return name, DeviceClass(device_class or DeviceClass.GENERIC.value)
    except ValueError as exc:
        choices = ", ".join(c.value for c in DeviceClass)
        raise argparse.ArgumentTypeError(f"unknown device class {device_class!r} (expected {choices})") from exc


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Capture a sensor session from an MQTT broker.",
    )
    parser.add_argument(
        "--device",
        "-d",
        action="append",
        type=_parse_device,
        default=[],
        metavar="NAME[:CLASS]",
        help="Device friendly name, optionally with contact/motion/generic class. Repeatable.",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Capture time in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--name",
        default=None,
        help="Human-readable session name.",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for the broker before giving up.",
    )
    parser.add_argument(
        "--audit",
        metavar="SESSION_ID",
        default=None,
        help="Only reconcile an existing session and print the report.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="With --audit: report inconsistencies without repairing them.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


async def _audit(config: SensyncConfig, session_id: str, dry_run: bool) -> int:
    async with SensyncClient(config, connect=False) as client:
        report = await client.reconcile(session_id, dry_run=dry_run)
    print(f"[probe] Reconciliation session={session_id} dry_run={report.dry_run}")
    print(f"[probe]   inconsistencies : {report.inconsistencies_found}")
    print(f"[probe]   repaired        : {report.repaired}")
    for detail in report.details:
        print(f"[probe]   {detail.type.value:<28} {detail.sensor_id} {detail.timestamp.isoformat()}")
    return 0


async def _capture(config: SensyncConfig, args: argparse.Namespace) -> int:
    if not args.device:
        print("[probe] At least one --device is required", file=sys.stderr)
        return 2

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with SensyncClient(config) as client:
        try:
            await client.wait_connected(timeout=args.connect_timeout)
        except (BrokerConnectionError, TimeoutError) as exc:
            print(f"[probe] Broker unavailable: {exc}", file=sys.stderr)
            return 2

        for name, device_class in args.device:
            client.register_device(name, device_class)
            print(f"[probe] Registered {config.topic_root}/{name} as {device_class.value}")

        session = await client.create_session([name for name, _ in args.device], name=args.name)
        session = await client.activate_session(session.id)
        print(f"[probe] Session {session.id} active since {session.start_time}")

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=args.duration or None)

        session = await client.complete_session(session.id)
        data = await client.get_session_data(session.id)
        stats = client.stats

    print("[probe] Summary")
    print(f"[probe]   session   : {session.id} ({session.status.value})")
    print(f"[probe]   window    : {session.start_time} -> {session.end_time}")
    print(f"[probe]   received  : {stats.received}")
    print(f"[probe]   persisted : {stats.persisted}")
    print(f"[probe]   failed    : {stats.failed}")
    print(f"[probe]   skipped   : {stats.skipped}")
    for sensor_id, readings in sorted(data.items()):
        print(f"[probe]   {sensor_id:<24} {len(readings)} readings")
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = SensyncConfig.from_env()
    try:
        if args.audit:
            return asyncio.run(_audit(config, args.audit, args.dry_run))
        return asyncio.run(_capture(config, args))
    except SensyncError as exc:
        _LOG.error("Capture failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(_main())
