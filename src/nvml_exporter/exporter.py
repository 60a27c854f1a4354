"""
Wires the pieces together: one registry, one gather engine and one
endpoint, shared by every listener.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from nvml_exporter.collector.base import DeviceSource
from nvml_exporter.collector.gather import GatherEngine
from nvml_exporter.config import ExporterOptions
from nvml_exporter.metrics import MetricRegistry
from nvml_exporter.server.endpoint import ExportEndpoint
from nvml_exporter.server.listeners import ListenerOutcome, ListenerSet

log = logging.getLogger(__name__)


@dataclass
class Exporter:
    registry: MetricRegistry
    engine: GatherEngine
    endpoint: ExportEndpoint
    listeners: ListenerSet

    async def run(self, install_signal_handlers: bool = True) -> List[ListenerOutcome]:
        outcomes = await self.listeners.run(install_signal_handlers=install_signal_handlers)
        failed = [o for o in outcomes if not o.ok]
        if failed:
            log.warning("%d of %d listeners stopped with errors", len(failed), len(outcomes))
        else:
            log.info("all listeners stopped")
        return outcomes


def build_exporter(options: ExporterOptions, source: DeviceSource) -> Exporter:
    registry = MetricRegistry()
    engine = GatherEngine(source, registry, enable_throttle_reasons=options.enable_throttle_reasons)
    endpoint = ExportEndpoint(engine)
    listeners = ListenerSet.from_options(options, endpoint)
    return Exporter(registry=registry, engine=engine, endpoint=endpoint, listeners=listeners)
