"""
In-memory device source.

Lets us run the exporter and its tests without a GPU. Devices are plain
records; any read can be made to fail by naming it in a device's
`failing` set, and enumeration / handle resolution can be broken too.
Numbers from generate() are loosely based on a mid-range datacenter
card under moderate load.
"""

from __future__ import annotations

import random
import threading
import uuid as uuidlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from nvml_exporter.collector.base import (
    Device,
    DeviceSource,
    EccState,
    EncoderStats,
    FbcStats,
    MemoryInfo,
    UtilizationRates,
)
from nvml_exporter.errors import DeviceResolutionFailed, DeviceSourceUnavailable, MetricReadFailed
from nvml_exporter.labels import ECC_COUNTERS, MEMORY_ERROR_TYPES

GIB = 1024 ** 3


@dataclass
class FakeDevice:
    uuid: str
    temperature: int = 45
    power_usage_mw: int = 75000
    compute_processes: int = 0
    graphics_processes: int = 0
    pcie_link_width: int = 16
    pcie_link_generation: int = 4
    max_pcie_link_width: int = 16
    max_pcie_link_generation: int = 4
    display_active: bool = False
    display_connected: bool = False
    memory: MemoryInfo = MemoryInfo(free=20 * GIB, total=24 * GIB, used=4 * GIB)
    utilization: UtilizationRates = UtilizationRates(gpu=0, memory=0)
    encoder: EncoderStats = EncoderStats(session_count=0, average_fps=0, average_latency=0)
    encoder_capacity: Dict[str, int] = field(default_factory=lambda: {"h264": 100, "hevc": 100})
    fbc: FbcStats = FbcStats(sessions_count=0, average_fps=0, average_latency=0)
    # (clock_id, clock_type) -> MHz; combinations not present fail like unsupported ones do
    clocks: Dict[Tuple[str, str], int] = field(default_factory=dict)
    throttle_reasons: int = 0
    ecc_enabled: bool = False
    # (error_type, counter, location) -> count; missing keys are unsupported
    memory_errors: Dict[Tuple[str, str, str], int] = field(default_factory=dict)
    # reader names that should raise MetricReadFailed
    failing: Set[str] = field(default_factory=set)
    resolvable: bool = True


class FakeDeviceSource(DeviceSource):
    """DeviceSource over a list of FakeDevice records."""

    def __init__(self, devices: Optional[List[FakeDevice]] = None, available: bool = True):
        self.devices: List[FakeDevice] = list(devices or [])
        self.available = available
        self._lock = threading.Lock()
        self.passes = 0

    @classmethod
    def generate(cls, count: int, seed: int = 42) -> "FakeDeviceSource":
        """Build `count` deterministic, plausible devices."""
        rng = random.Random(seed)
        devices = []
        for index in range(count):
            uuid = "GPU-" + str(uuidlib.UUID(int=rng.getrandbits(128), version=4))
            used = rng.randint(2, 20) * GIB
            total = 24 * GIB
            graphics = rng.randint(1200, 1900)
            mem_clock = 9501
            clocks = {
                ("current", "graphics"): graphics,
                ("current", "sm"): graphics,
                ("current", "mem"): mem_clock,
                ("current", "video"): rng.randint(1100, 1700),
                ("app_clock_target", "graphics"): 1695,
                ("app_clock_target", "mem"): mem_clock,
                ("app_clock_default", "graphics"): 1695,
                ("app_clock_default", "mem"): mem_clock,
                ("customer_boost_max", "graphics"): 2100,
            }
            ecc = index % 2 == 0
            memory_errors = {}
            if ecc:
                for error_type in MEMORY_ERROR_TYPES:
                    for counter in ECC_COUNTERS:
                        for location in ("device", "l1_cache", "l2_cache", "register_file"):
                            memory_errors[(error_type, counter, location)] = (
                                rng.randint(0, 3) if error_type == "corrected" else 0
                            )
            devices.append(FakeDevice(
                uuid=uuid,
                temperature=rng.randint(35, 80),
                power_usage_mw=rng.randint(60000, 300000),
                compute_processes=rng.randint(0, 4),
                graphics_processes=rng.randint(0, 1),
                memory=MemoryInfo(free=total - used, total=total, used=used),
                utilization=UtilizationRates(gpu=rng.randint(0, 100), memory=rng.randint(0, 100)),
                clocks=clocks,
                throttle_reasons=rng.choice((0x0, 0x1, 0x4, 0x20 | 0x4)),
                ecc_enabled=ecc,
                memory_errors=memory_errors,
            ))
        return cls(devices)

    def _device(self, device: Device) -> FakeDevice:
        return self.devices[device.index]

    def _read(self, device: Device, metric: str):
        fake = self._device(device)
        if metric in fake.failing:
            raise MetricReadFailed(device.index, metric, "simulated failure")
        return fake

    def device_count(self) -> int:
        if not self.available:
            raise DeviceSourceUnavailable("simulated device layer outage")
        with self._lock:
            self.passes += 1
        return len(self.devices)

    def device_handle(self, index: int) -> Device:
        if index >= len(self.devices) or not self.devices[index].resolvable:
            raise DeviceResolutionFailed(index, "simulated resolution failure")
        return Device(index=index, uuid=self.devices[index].uuid)

    def temperature(self, device: Device) -> int:
        return self._read(device, "temperature").temperature

    def power_usage(self, device: Device) -> int:
        return self._read(device, "power_usage").power_usage_mw

    def running_compute_processes_count(self, device: Device) -> int:
        return self._read(device, "running_compute_processes_count").compute_processes

    def running_graphics_processes_count(self, device: Device) -> int:
        return self._read(device, "running_graphics_processes_count").graphics_processes

    def current_pcie_link_width(self, device: Device) -> int:
        return self._read(device, "current_pcie_link_width").pcie_link_width

    def current_pcie_link_generation(self, device: Device) -> int:
        return self._read(device, "current_pcie_link_generation").pcie_link_generation

    def max_pcie_link_width(self, device: Device) -> int:
        return self._read(device, "max_pcie_link_width").max_pcie_link_width

    def max_pcie_link_generation(self, device: Device) -> int:
        return self._read(device, "max_pcie_link_generation").max_pcie_link_generation

    def display_active(self, device: Device) -> bool:
        return self._read(device, "display_active").display_active

    def display_connected(self, device: Device) -> bool:
        return self._read(device, "display_connected").display_connected

    def memory_info(self, device: Device) -> MemoryInfo:
        return self._read(device, "memory_info").memory

    def utilization_rates(self, device: Device) -> UtilizationRates:
        return self._read(device, "utilization_rates").utilization

    def encoder_stats(self, device: Device) -> EncoderStats:
        return self._read(device, "encoder_stats").encoder

    def encoder_capacity(self, device: Device, codec: str) -> int:
        return self._read(device, f"encoder_capacity_{codec}").encoder_capacity[codec]

    def fbc_stats(self, device: Device) -> FbcStats:
        return self._read(device, "fbc_stats").fbc

    def clock(self, device: Device, clock_id: str, clock_type: str) -> int:
        fake = self._read(device, "clock")
        try:
            return fake.clocks[(clock_id, clock_type)]
        except KeyError:
            raise MetricReadFailed(device.index, f"clock[{clock_id},{clock_type}]", "not supported") from None

    def throttle_reasons(self, device: Device) -> int:
        return self._read(device, "throttle_reasons").throttle_reasons

    def ecc_state(self, device: Device) -> EccState:
        fake = self._read(device, "ecc_state")
        return EccState(currently_enabled=fake.ecc_enabled, pending_enabled=fake.ecc_enabled)

    def memory_error_counter(
        self, device: Device, error_type: str, counter: str, location: str
    ) -> int:
        fake = self._read(device, "memory_error_counter")
        key = (error_type, counter, location)
        if key not in fake.memory_errors:
            raise MetricReadFailed(device.index, f"memory_error_counter[{','.join(key)}]", "not supported")
        return fake.memory_errors[key]

    def name(self) -> str:
        return f"Mock NVML ({len(self.devices)} simulated devices)"
