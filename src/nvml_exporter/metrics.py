"""
Metric families published by the exporter.

One MetricRegistry is built at startup and shared by every listener. It
owns its own prometheus_client CollectorRegistry rather than the library's
process-wide default, so tests and embedders can run several side by side.
Families are created once and never removed; values are last-write-wins
per label tuple.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from prometheus_client import CollectorRegistry, Gauge, generate_latest

from nvml_exporter.labels import (
    CLOCK_LABELS,
    DEVICE_LABELS,
    MEMORY_ERROR_LABELS,
    MEMORY_INFO_LABELS,
    THROTTLE_REASON_LABELS,
)

DEVICE_COUNT = "nvml_device_count"


@dataclass(frozen=True)
class FamilySpec:
    name: str
    documentation: str
    labelnames: Tuple[str, ...] = DEVICE_LABELS


FAMILIES: Tuple[FamilySpec, ...] = (
    FamilySpec("nvml_temperature", "temperature of nvml device"),
    FamilySpec("nvml_power_usage", "power usage of nvml device"),
    FamilySpec("nvml_fbc_stats_sessions_count", "session count for frame buffer capture sessions"),
    FamilySpec("nvml_fbc_stats_average_fps", "average fps for frame buffer capture sessions"),
    FamilySpec("nvml_fbc_stats_average_latency", "average latency for frame buffer capture sessions"),
    FamilySpec("nvml_running_compute_processes_count", "number of running compute processes"),
    FamilySpec("nvml_running_graphics_processes_count", "number of running graphics processes"),
    FamilySpec("nvml_current_pcie_link_width", "current pcie link width"),
    FamilySpec("nvml_current_pcie_link_generation", "current pcie link generation"),
    FamilySpec("nvml_max_pcie_link_width", "max pcie link width"),
    FamilySpec("nvml_max_pcie_link_generation", "max pcie link generation"),
    FamilySpec("nvml_utilization_gpu", "GPU utilization"),
    FamilySpec("nvml_utilization_memory", "memory utilization"),
    FamilySpec("nvml_clock", "clock speed", CLOCK_LABELS),
    FamilySpec("nvml_memory_info", "memory information", MEMORY_INFO_LABELS),
    FamilySpec("nvml_display_active", "display active"),
    FamilySpec("nvml_display_mode", "display mode"),
    FamilySpec("nvml_encoder_capacity_h264", "encoder capacity"),
    FamilySpec("nvml_encoder_capacity_hevc", "encoder capacity"),
    FamilySpec("nvml_encoder_stats_sessions_count", "session count for encoder sessions"),
    FamilySpec("nvml_encoder_stats_average_fps", "average fps for encoder sessions"),
    FamilySpec("nvml_encoder_stats_average_latency", "average latency for encoder sessions"),
    FamilySpec(
        "nvml_current_clocks_throttle_reasons",
        "current clock throttling reason code",
        THROTTLE_REASON_LABELS,
    ),
    FamilySpec("nvml_memory_error_counters", "memory error counters", MEMORY_ERROR_LABELS),
)


class MetricRegistry:
    """The exporter's gauges, keyed by family name."""

    def __init__(self, families: Sequence[FamilySpec] = FAMILIES):
        self._registry = CollectorRegistry(auto_describe=True)
        self._device_count = Gauge(DEVICE_COUNT, "number of nvml devices", registry=self._registry)
        self._families: Dict[str, Gauge] = {}
        self._specs: Dict[str, FamilySpec] = {}
        for spec in families:
            self._families[spec.name] = Gauge(
                spec.name,
                spec.documentation,
                labelnames=spec.labelnames,
                registry=self._registry,
            )
            self._specs[spec.name] = spec

    @property
    def collector_registry(self) -> CollectorRegistry:
        return self._registry

    def family_names(self) -> Tuple[str, ...]:
        return tuple(self._families)

    def labelnames(self, family: str) -> Tuple[str, ...]:
        return self._specs[family].labelnames

    def set_device_count(self, count: int) -> None:
        self._device_count.set(count)

    def set(self, family: str, labels: Sequence[str], value: float) -> None:
        """Set the current value for one label tuple of a family.

        The label tuple must line up with the family's label names.
        """
        self._families[family].labels(*labels).set(float(value))

    def device_count(self) -> Optional[float]:
        return self._registry.get_sample_value(DEVICE_COUNT)

    def value(self, family: str, labels: Sequence[str]) -> Optional[float]:
        """Current value for a label tuple, or None if it was never written."""
        names = self._specs[family].labelnames
        return self._registry.get_sample_value(family, dict(zip(names, labels)))

    def series(self, family: str) -> Dict[Tuple[str, ...], float]:
        """Every label tuple written so far for a family, with its value."""
        names = self._specs[family].labelnames
        out: Dict[Tuple[str, ...], float] = {}
        for metric in self._families[family].collect():
            for sample in metric.samples:
                if sample.name != family:
                    continue
                out[tuple(sample.labels[n] for n in names)] = sample.value
        return out

    def snapshot(self) -> bytes:
        """Encode the current state of every family in text exposition format."""
        return generate_latest(self._registry)
