"""Camera-recording collaborator used by the session lifecycle."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

from pysensync.exceptions import CameraError

_logger = logging.getLogger(__name__)


class CameraRecorder(Protocol):
    """Structural interface of the external camera-recording service.

    ``start_recording`` must return only once recording has actually
    started, since the session start time is stamped right after it.
    """

    async def start_recording(self, session_id: str) -> None: ...

    async def stop_recording(self, session_id: str) -> None: ...


class HttpCameraRecorder:
    """Camera recorder reached over HTTP.

    Posts ``{"sessionId": ...}`` to ``<base_url>/recordings/start`` and
    ``<base_url>/recordings/stop``. Any non-2xx status or transport error
    raises :class:`CameraError`.
    """

    def __init__(
        self,
        base_url: str,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> None:
        url = f"{self._base_url}{endpoint}"
        _logger.debug("POST %s", url)
        try:
            async with self._http.post(
                url,
                data=json.dumps(payload),
                headers={"content-type": "application/json; charset=UTF-8"},
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                if resp.status // 100 != 2:
                    raise CameraError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except CameraError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise CameraError(f"Request to {endpoint} failed: {exc}", endpoint=endpoint) from exc

    async def start_recording(self, session_id: str) -> None:
        await self._post("/recordings/start", {"sessionId": session_id})

    async def stop_recording(self, session_id: str) -> None:
        await self._post("/recordings/stop", {"sessionId": session_id})
