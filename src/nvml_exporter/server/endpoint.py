"""
ASGI app that answers every request with a fresh metrics page.

Each request runs one gather pass, then encodes whatever the registry
holds. If the pass fails, device layer outage or otherwise, the failure is
logged and the (possibly stale or empty) registry is served anyway.
A partial page beats no page.
"""

from __future__ import annotations

import asyncio
import logging

from prometheus_client import CONTENT_TYPE_LATEST

from nvml_exporter.collector.gather import GatherEngine
from nvml_exporter.errors import DeviceSourceUnavailable

log = logging.getLogger(__name__)


class ExportEndpoint:

    def __init__(self, engine: GatherEngine):
        self._engine = engine

    @property
    def engine(self) -> GatherEngine:
        return self._engine

    async def render(self) -> bytes:
        """Gather once, then encode the registry."""
        try:
            # gather blocks on NVML; keep it off the event loop so the
            # other listeners keep accepting while it runs
            await asyncio.to_thread(self._engine.gather)
        except DeviceSourceUnavailable as exc:
            log.error("error gathering metrics: %s", exc)
        except Exception:
            log.exception("unexpected error gathering metrics, serving last values")
        return self._engine.registry.snapshot()

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return

        body = await self.render()
        await send({
            "type": "http.response.start",
            "status": 200,
            "headers": [
                (b"content-type", CONTENT_TYPE_LATEST.encode("latin-1")),
                (b"content-length", str(len(body)).encode("latin-1")),
            ],
        })
        await send({"type": "http.response.body", "body": body})
