from __future__ import annotations

from typing import Any

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from pysensync.camera import HttpCameraRecorder
from pysensync.exceptions import CameraError


def _app(received: list[tuple[str, Any]]) -> web.Application:
    async def start(request: web.Request) -> web.Response:
        received.append(("start", await request.json()))
        return web.json_response({"recording": True})

    async def stop(request: web.Request) -> web.Response:
        received.append(("stop", await request.json()))
        return web.Response(status=500, text="encoder crashed")

    app = web.Application()
    app.router.add_post("/recordings/start", start)
    app.router.add_post("/recordings/stop", stop)
    return app


@pytest.mark.asyncio
async def test_posts_session_id_and_maps_http_errors() -> None:
    received: list[tuple[str, Any]] = []
    async with TestServer(_app(received)) as server, aiohttp.ClientSession() as http:
        camera = HttpCameraRecorder(str(server.make_url("/")), http, timeout=5)
        await camera.start_recording("s1")
        with pytest.raises(CameraError) as excinfo:
            await camera.stop_recording("s1")

    assert received == [("start", {"sessionId": "s1"}), ("stop", {"sessionId": "s1"})]
    assert excinfo.value.status_code == 500
    assert excinfo.value.endpoint == "/recordings/stop"
    assert "encoder crashed" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unreachable_service_raises_camera_error() -> None:
    async with aiohttp.ClientSession() as http:
        camera = HttpCameraRecorder("http://127.0.0.1:1", http, timeout=2)
        with pytest.raises(CameraError) as excinfo:
            await camera.start_recording("s1")

    assert excinfo.value.status_code is None
    assert excinfo.value.endpoint == "/recordings/start"
