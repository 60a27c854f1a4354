"""
Gather engine: one full sweep of every enabled metric for every device.

The pass only aborts if the device count can't be read. Everything
below that is isolated: a device whose handle or UUID can't be resolved
is skipped, a failed read leaves the previous value for that label tuple
in place, and structured reads (utilization, encoder, frame buffer
capture, memory info) succeed or fail as a unit.

Nothing is ever zero-filled or removed on failure. Label tuples for
devices that disappear between passes stay in the registry with their
last value.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Tuple

from nvml_exporter.collector.base import Device, DeviceSource
from nvml_exporter.config import TRACE
from nvml_exporter.errors import DeviceResolutionFailed, MetricReadFailed
from nvml_exporter.labels import (
    CLOCK_IDS,
    CLOCK_TYPES,
    ECC_COUNTERS,
    MEMORY_ERROR_TYPES,
    MEMORY_LOCATIONS,
    throttle_indicators,
)
from nvml_exporter.metrics import MetricRegistry

log = logging.getLogger(__name__)


def _milliwatts_to_watts(value: float) -> float:
    return value / 1000.0


def _as_flag(value: bool) -> float:
    return 1.0 if value else 0.0


@dataclass(frozen=True)
class CoreMetric:
    family: str
    reader: str                     # DeviceSource method name
    convert: Callable[[float], float] = float


# Scalar reads, one family each, labeled (device, uuid).
CORE_METRICS: Tuple[CoreMetric, ...] = (
    CoreMetric("nvml_temperature", "temperature"),
    CoreMetric("nvml_power_usage", "power_usage", _milliwatts_to_watts),
    CoreMetric("nvml_running_compute_processes_count", "running_compute_processes_count"),
    CoreMetric("nvml_running_graphics_processes_count", "running_graphics_processes_count"),
    CoreMetric("nvml_current_pcie_link_width", "current_pcie_link_width"),
    CoreMetric("nvml_current_pcie_link_generation", "current_pcie_link_generation"),
    CoreMetric("nvml_max_pcie_link_width", "max_pcie_link_width"),
    CoreMetric("nvml_max_pcie_link_generation", "max_pcie_link_generation"),
    CoreMetric("nvml_display_active", "display_active", _as_flag),
    CoreMetric("nvml_display_mode", "display_connected", _as_flag),
)

# (family, attribute) pairs for the structured reads
UTILIZATION_FIELDS = (
    ("nvml_utilization_gpu", "gpu"),
    ("nvml_utilization_memory", "memory"),
)
ENCODER_FIELDS = (
    ("nvml_encoder_stats_sessions_count", "session_count"),
    ("nvml_encoder_stats_average_fps", "average_fps"),
    ("nvml_encoder_stats_average_latency", "average_latency"),
)
FBC_FIELDS = (
    ("nvml_fbc_stats_sessions_count", "sessions_count"),
    ("nvml_fbc_stats_average_fps", "average_fps"),
    ("nvml_fbc_stats_average_latency", "average_latency"),
)
MEMORY_INFO_FIELDS = ("free", "total", "used")


@dataclass
class GatherReport:
    """What happened during one pass. Returned by GatherEngine.gather()."""

    device_count: int = 0
    devices_gathered: int = 0
    devices_skipped: int = 0
    failed_reads: int = 0
    duration_ms: float = 0.0


@contextmanager
def _timed(section: str):
    started = time.perf_counter()
    try:
        yield
    finally:
        log.debug("%s: took %.1fms", section, (time.perf_counter() - started) * 1000)


class GatherEngine:
    """Reads every device from a DeviceSource into a MetricRegistry.

    Safe to call from several threads at once. Overlapping passes write
    into the same gauges; each write is atomic per label tuple and the
    last one wins.
    """

    def __init__(
        self,
        source: DeviceSource,
        registry: MetricRegistry,
        enable_throttle_reasons: bool = False,
    ):
        self._source = source
        self._registry = registry
        self._enable_throttle_reasons = enable_throttle_reasons

    @property
    def source(self) -> DeviceSource:
        return self._source

    @property
    def registry(self) -> MetricRegistry:
        return self._registry

    def gather(self) -> GatherReport:
        """Run one pass. Raises DeviceSourceUnavailable if devices can't be counted."""
        started = time.perf_counter()
        log.debug("starting NVML gather")
        report = GatherReport()

        count = self._source.device_count()
        report.device_count = count
        self._registry.set_device_count(count)

        for index in range(count):
            try:
                device = self._source.device_handle(index)
            except DeviceResolutionFailed as exc:
                log.warning("skipping device %d: %s", index, exc)
                report.devices_skipped += 1
                continue

            report.failed_reads += self._gather_device(device)
            report.devices_gathered += 1

        report.duration_ms = (time.perf_counter() - started) * 1000
        log.debug("NVML metrics gather took %.1fms", report.duration_ms)
        return report

    def _gather_device(self, device: Device) -> int:
        failures = 0
        with _timed("core"):
            failures += self._gather_core(device)
            failures += self._gather_utilization(device)
            failures += self._gather_encoder(device)
            failures += self._gather_fbc(device)
            failures += self._gather_memory_info(device)

        with _timed("clocks"):
            failures += self._gather_clocks(device)

        if self._enable_throttle_reasons:
            with _timed("throttle_reasons"):
                failures += self._gather_throttle_reasons(device)
        else:
            log.debug("skipping throttle reasons collection")

        with _timed("memory_errors"):
            failures += self._gather_memory_errors(device)
        return failures

    # -- Metric groups --
    # Each returns the number of failed reads for the device.

    def _gather_core(self, device: Device) -> int:
        failures = 0
        for metric in CORE_METRICS:
            reader = getattr(self._source, metric.reader)
            try:
                value = reader(device)
            except MetricReadFailed as exc:
                log.warning("error collecting %s: %s", metric.family, exc)
                failures += 1
                continue
            self._registry.set(metric.family, device.labels, metric.convert(value))
        return failures

    def _write_fields(self, device: Device, result, fields) -> None:
        for family, attr in fields:
            self._registry.set(family, device.labels, getattr(result, attr))

    def _gather_utilization(self, device: Device) -> int:
        try:
            util = self._source.utilization_rates(device)
        except MetricReadFailed as exc:
            log.warning("error collecting utilization rates: %s", exc)
            return 1
        self._write_fields(device, util, UTILIZATION_FIELDS)
        return 0

    def _gather_encoder(self, device: Device) -> int:
        try:
            stats = self._source.encoder_stats(device)
            h264 = self._source.encoder_capacity(device, "h264")
            hevc = self._source.encoder_capacity(device, "hevc")
        except MetricReadFailed as exc:
            log.warning("error collecting encoder stats: %s", exc)
            return 1
        self._registry.set("nvml_encoder_capacity_h264", device.labels, h264)
        self._registry.set("nvml_encoder_capacity_hevc", device.labels, hevc)
        self._write_fields(device, stats, ENCODER_FIELDS)
        return 0

    def _gather_fbc(self, device: Device) -> int:
        try:
            stats = self._source.fbc_stats(device)
        except MetricReadFailed as exc:
            log.warning("error collecting framebuffer capture stats: %s", exc)
            return 1
        self._write_fields(device, stats, FBC_FIELDS)
        return 0

    def _gather_memory_info(self, device: Device) -> int:
        try:
            mem = self._source.memory_info(device)
        except MetricReadFailed as exc:
            log.warning("error fetching current memory info: %s", exc)
            return 1
        for state in MEMORY_INFO_FIELDS:
            self._registry.set("nvml_memory_info", device.labels + (state,), getattr(mem, state))
        return 0

    def _gather_clocks(self, device: Device) -> int:
        failures = 0
        for clock_id in CLOCK_IDS:
            for clock_type in CLOCK_TYPES:
                try:
                    mhz = self._source.clock(device, clock_id, clock_type)
                except MetricReadFailed as exc:
                    # most parts only report a few of these combinations
                    log.log(TRACE, "no clock %s/%s: %s", clock_id, clock_type, exc)
                    failures += 1
                    continue
                log.log(TRACE, "got clock ID %s and type %s", clock_id, clock_type)
                self._registry.set("nvml_clock", device.labels + (clock_id, clock_type), mhz)
        return failures

    def _gather_throttle_reasons(self, device: Device) -> int:
        try:
            mask = self._source.throttle_reasons(device)
        except MetricReadFailed as exc:
            log.warning("error fetching current throttle reasons: %s", exc)
            return 1
        for reason, active in throttle_indicators(mask):
            self._registry.set(
                "nvml_current_clocks_throttle_reasons", device.labels + (reason,), active
            )
        return 0

    def _gather_memory_errors(self, device: Device) -> int:
        try:
            ecc = self._source.ecc_state(device)
        except MetricReadFailed as exc:
            log.warning("could not check ECC state, skipping memory error metrics: %s", exc)
            return 1

        if not ecc.currently_enabled:
            log.warning("ECC is not enabled on device %d, skipping memory error metrics", device.index)
            return 0

        log.debug("ECC enabled, collecting memory error statistics")
        failures = 0
        for location in MEMORY_LOCATIONS:
            for counter in ECC_COUNTERS:
                for error_type in MEMORY_ERROR_TYPES:
                    try:
                        count = self._source.memory_error_counter(
                            device, error_type, counter, location
                        )
                    except MetricReadFailed as exc:
                        # unsupported and never-incremented look the same; don't invent a zero
                        log.log(TRACE, "failed to collect %s %s %s: %s",
                                error_type, counter, location, exc)
                        failures += 1
                        continue
                    self._registry.set(
                        "nvml_memory_error_counters",
                        device.labels + (error_type, counter, location),
                        count,
                    )
        return failures
