"""
Device source backed by NVML (the library behind nvidia-smi).

Every NVML call is wrapped so that an NVMLError becomes one of the
exporter's own error types; the gather engine never sees pynvml
exceptions directly.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

try:
    import pynvml
    _NVML_AVAILABLE = True
except ImportError:
    _NVML_AVAILABLE = False

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

log = logging.getLogger(__name__)


def _constants(**names: str) -> dict:
    return {label: getattr(pynvml, const) for label, const in names.items()}


class NvmlDeviceSource(DeviceSource):
    """Reads GPU telemetry from NVML. Initializes the library on construction."""

    def __init__(self):
        if not _NVML_AVAILABLE:
            raise DeviceSourceUnavailable("pynvml is not installed")

        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as exc:
            raise DeviceSourceUnavailable(f"failed to initialize NVML: {exc}") from exc
        self._initialized = True

        self._clock_ids = _constants(
            current="NVML_CLOCK_ID_CURRENT",
            app_clock_target="NVML_CLOCK_ID_APP_CLOCK_TARGET",
            app_clock_default="NVML_CLOCK_ID_APP_CLOCK_DEFAULT",
            customer_boost_max="NVML_CLOCK_ID_CUSTOMER_BOOST_MAX",
        )
        self._clock_types = _constants(
            graphics="NVML_CLOCK_GRAPHICS",
            sm="NVML_CLOCK_SM",
            mem="NVML_CLOCK_MEM",
            video="NVML_CLOCK_VIDEO",
        )
        self._codecs = _constants(
            h264="NVML_ENCODER_QUERY_H264",
            hevc="NVML_ENCODER_QUERY_HEVC",
        )
        self._error_types = _constants(
            corrected="NVML_MEMORY_ERROR_TYPE_CORRECTED",
            uncorrected="NVML_MEMORY_ERROR_TYPE_UNCORRECTED",
        )
        self._ecc_counters = _constants(
            aggregate="NVML_AGGREGATE_ECC",
            volatile="NVML_VOLATILE_ECC",
        )
        self._locations = _constants(
            cbu="NVML_MEMORY_LOCATION_CBU",
            device="NVML_MEMORY_LOCATION_DEVICE_MEMORY",
            l1_cache="NVML_MEMORY_LOCATION_L1_CACHE",
            l2_cache="NVML_MEMORY_LOCATION_L2_CACHE",
            register_file="NVML_MEMORY_LOCATION_REGISTER_FILE",
            shared="NVML_MEMORY_LOCATION_TEXTURE_SHM",
            sram="NVML_MEMORY_LOCATION_SRAM",
            texture="NVML_MEMORY_LOCATION_TEXTURE_MEMORY",
        )

    def _read(self, device: Device, metric: str, fn: Callable, *args: Any) -> Any:
        try:
            return fn(device.handle, *args)
        except pynvml.NVMLError as exc:
            raise MetricReadFailed(device.index, metric, str(exc)) from exc

    def device_count(self) -> int:
        try:
            return pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as exc:
            raise DeviceSourceUnavailable(f"failed to read device count: {exc}") from exc

    def device_handle(self, index: int) -> Device:
        try:
            handle = pynvml.nvmlDeviceGetHandleByIndex(index)
            uuid = pynvml.nvmlDeviceGetUUID(handle)
        except pynvml.NVMLError as exc:
            raise DeviceResolutionFailed(index, str(exc)) from exc
        # older bindings hand back bytes
        if isinstance(uuid, bytes):
            uuid = uuid.decode("utf-8", "replace")
        return Device(index=index, uuid=uuid, handle=handle)

    def temperature(self, device: Device) -> int:
        return self._read(
            device, "temperature", pynvml.nvmlDeviceGetTemperature, pynvml.NVML_TEMPERATURE_GPU
        )

    def power_usage(self, device: Device) -> int:
        return self._read(device, "power_usage", pynvml.nvmlDeviceGetPowerUsage)

    def running_compute_processes_count(self, device: Device) -> int:
        procs = self._read(
            device, "running_compute_processes", pynvml.nvmlDeviceGetComputeRunningProcesses
        )
        return len(procs)

    def running_graphics_processes_count(self, device: Device) -> int:
        procs = self._read(
            device, "running_graphics_processes", pynvml.nvmlDeviceGetGraphicsRunningProcesses
        )
        return len(procs)

    def current_pcie_link_width(self, device: Device) -> int:
        return self._read(device, "current_pcie_link_width", pynvml.nvmlDeviceGetCurrPcieLinkWidth)

    def current_pcie_link_generation(self, device: Device) -> int:
        return self._read(
            device, "current_pcie_link_generation", pynvml.nvmlDeviceGetCurrPcieLinkGeneration
        )

    def max_pcie_link_width(self, device: Device) -> int:
        return self._read(device, "max_pcie_link_width", pynvml.nvmlDeviceGetMaxPcieLinkWidth)

    def max_pcie_link_generation(self, device: Device) -> int:
        return self._read(
            device, "max_pcie_link_generation", pynvml.nvmlDeviceGetMaxPcieLinkGeneration
        )

    def display_active(self, device: Device) -> bool:
        state = self._read(device, "display_active", pynvml.nvmlDeviceGetDisplayActive)
        return state == pynvml.NVML_FEATURE_ENABLED

    def display_connected(self, device: Device) -> bool:
        state = self._read(device, "display_mode", pynvml.nvmlDeviceGetDisplayMode)
        return state == pynvml.NVML_FEATURE_ENABLED

    def memory_info(self, device: Device) -> MemoryInfo:
        mem = self._read(device, "memory_info", pynvml.nvmlDeviceGetMemoryInfo)
        return MemoryInfo(free=mem.free, total=mem.total, used=mem.used)

    def utilization_rates(self, device: Device) -> UtilizationRates:
        util = self._read(device, "utilization_rates", pynvml.nvmlDeviceGetUtilizationRates)
        return UtilizationRates(gpu=util.gpu, memory=util.memory)

    def encoder_stats(self, device: Device) -> EncoderStats:
        sessions, fps, latency = self._read(
            device, "encoder_stats", pynvml.nvmlDeviceGetEncoderStats
        )
        return EncoderStats(session_count=sessions, average_fps=fps, average_latency=latency)

    def encoder_capacity(self, device: Device, codec: str) -> int:
        return self._read(
            device,
            f"encoder_capacity_{codec}",
            pynvml.nvmlDeviceGetEncoderCapacity,
            self._codecs[codec],
        )

    def fbc_stats(self, device: Device) -> FbcStats:
        stats = self._read(device, "fbc_stats", pynvml.nvmlDeviceGetFBCStats)
        return FbcStats(
            sessions_count=stats.sessionsCount,
            average_fps=stats.averageFPS,
            average_latency=stats.averageLatency,
        )

    def clock(self, device: Device, clock_id: str, clock_type: str) -> int:
        return self._read(
            device,
            f"clock[{clock_id},{clock_type}]",
            pynvml.nvmlDeviceGetClock,
            self._clock_types[clock_type],
            self._clock_ids[clock_id],
        )

    def throttle_reasons(self, device: Device) -> int:
        return self._read(
            device, "throttle_reasons", pynvml.nvmlDeviceGetCurrentClocksThrottleReasons
        )

    def ecc_state(self, device: Device) -> EccState:
        current, pending = self._read(device, "ecc_mode", pynvml.nvmlDeviceGetEccMode)
        return EccState(
            currently_enabled=current == pynvml.NVML_FEATURE_ENABLED,
            pending_enabled=pending == pynvml.NVML_FEATURE_ENABLED,
        )

    def memory_error_counter(
        self, device: Device, error_type: str, counter: str, location: str
    ) -> int:
        return self._read(
            device,
            f"memory_error_counter[{error_type},{counter},{location}]",
            pynvml.nvmlDeviceGetMemoryErrorCounter,
            self._error_types[error_type],
            self._ecc_counters[counter],
            self._locations[location],
        )

    def name(self) -> str:
        try:
            driver = pynvml.nvmlSystemGetDriverVersion()
        except pynvml.NVMLError:
            return "NVML"
        if isinstance(driver, bytes):
            driver = driver.decode("utf-8", "replace")
        return f"NVML (driver {driver})"

    def close(self):
        if self._initialized:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as exc:
                log.warning("NVML shutdown failed: %s", exc)
            self._initialized = False
