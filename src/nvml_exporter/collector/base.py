"""
Device source interface.

A device source is anything that can enumerate GPUs and read telemetry
from them: NVML on real hardware, or the fake source used by --mock and
the tests. This keeps the gather engine decoupled from where the numbers
come from.

Every read is independently fallible. Implementations raise
MetricReadFailed for a failed read, DeviceResolutionFailed when a device
handle or UUID can't be resolved, and DeviceSourceUnavailable when the
device count itself can't be read.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Device:
    """A device resolved for one gather pass. Not cached across passes."""

    index: int
    uuid: str
    handle: Any = None

    @property
    def labels(self) -> tuple:
        return (str(self.index), self.uuid)


@dataclass(frozen=True)
class UtilizationRates:
    gpu: int      # percent
    memory: int   # percent


@dataclass(frozen=True)
class MemoryInfo:
    free: int     # bytes
    total: int
    used: int


@dataclass(frozen=True)
class EncoderStats:
    session_count: int
    average_fps: int
    average_latency: int   # microseconds


@dataclass(frozen=True)
class FbcStats:
    sessions_count: int
    average_fps: int
    average_latency: int   # microseconds


@dataclass(frozen=True)
class EccState:
    currently_enabled: bool
    pending_enabled: bool


class DeviceSource(ABC):
    """Interface for all device backends."""

    @abstractmethod
    def device_count(self) -> int:
        ...

    @abstractmethod
    def device_handle(self, index: int) -> Device:
        """Resolve the device at `index`, including its UUID."""
        ...

    @abstractmethod
    def temperature(self, device: Device) -> int:
        """GPU core temperature in degrees C."""
        ...

    @abstractmethod
    def power_usage(self, device: Device) -> int:
        """Board power draw in milliwatts."""
        ...

    @abstractmethod
    def running_compute_processes_count(self, device: Device) -> int:
        ...

    @abstractmethod
    def running_graphics_processes_count(self, device: Device) -> int:
        ...

    @abstractmethod
    def current_pcie_link_width(self, device: Device) -> int:
        ...

    @abstractmethod
    def current_pcie_link_generation(self, device: Device) -> int:
        ...

    @abstractmethod
    def max_pcie_link_width(self, device: Device) -> int:
        ...

    @abstractmethod
    def max_pcie_link_generation(self, device: Device) -> int:
        ...

    @abstractmethod
    def display_active(self, device: Device) -> bool:
        ...

    @abstractmethod
    def display_connected(self, device: Device) -> bool:
        ...

    @abstractmethod
    def memory_info(self, device: Device) -> MemoryInfo:
        ...

    @abstractmethod
    def utilization_rates(self, device: Device) -> UtilizationRates:
        ...

    @abstractmethod
    def encoder_stats(self, device: Device) -> EncoderStats:
        ...

    @abstractmethod
    def encoder_capacity(self, device: Device, codec: str) -> int:
        """Remaining encoder capacity (percent) for "h264" or "hevc"."""
        ...

    @abstractmethod
    def fbc_stats(self, device: Device) -> FbcStats:
        ...

    @abstractmethod
    def clock(self, device: Device, clock_id: str, clock_type: str) -> int:
        """Clock speed in MHz for one clock id / clock domain pair."""
        ...

    @abstractmethod
    def throttle_reasons(self, device: Device) -> int:
        """Current clocks throttle reasons as an NVML bitmask."""
        ...

    @abstractmethod
    def ecc_state(self, device: Device) -> EccState:
        ...

    @abstractmethod
    def memory_error_counter(
        self, device: Device, error_type: str, counter: str, location: str
    ) -> int:
        ...

    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this source."""
        ...

    def close(self) -> None:
        pass
