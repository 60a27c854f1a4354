"""Tests for the gather engine against the in-memory device source."""

import threading

import pytest

from nvml_exporter.collector.base import EncoderStats, MemoryInfo, UtilizationRates
from nvml_exporter.collector.gather import GatherEngine
from nvml_exporter.errors import DeviceSourceUnavailable
from nvml_exporter.labels import CLOCK_IDS, CLOCK_TYPES, THROTTLE_REASONS
from nvml_exporter.metrics import MetricRegistry
from nvml_exporter.mock.fake_devices import FakeDevice, FakeDeviceSource

UUID_0 = "GPU-00000000-0000-0000-0000-000000000000"
UUID_1 = "GPU-11111111-1111-1111-1111-111111111111"


def _make_device(**overrides) -> FakeDevice:
    defaults = dict(uuid=UUID_0, temperature=72, power_usage_mw=150000)
    defaults.update(overrides)
    return FakeDevice(**defaults)


def _make_engine(devices, throttle_reasons: bool = False):
    source = FakeDeviceSource(devices)
    registry = MetricRegistry()
    engine = GatherEngine(source, registry, enable_throttle_reasons=throttle_reasons)
    return engine, registry, source


def _labels(device: int = 0, uuid: str = UUID_0) -> tuple:
    return (str(device), uuid)


def test_device_count_matches_enumeration():
    engine, registry, _ = _make_engine([_make_device(), _make_device(uuid=UUID_1)])
    report = engine.gather()

    assert registry.device_count() == 2
    assert report.device_count == 2
    assert report.devices_gathered == 2


def test_temperature_and_power_scaled_to_watts():
    engine, registry, _ = _make_engine([_make_device()])
    engine.gather()

    assert registry.value("nvml_temperature", _labels()) == 72
    assert registry.value("nvml_power_usage", _labels()) == 150


def test_zero_devices():
    engine, registry, _ = _make_engine([])
    report = engine.gather()

    assert registry.device_count() == 0
    assert report.devices_gathered == 0
    for family in registry.family_names():
        assert registry.series(family) == {}


def test_device_count_updated_every_pass():
    engine, registry, source = _make_engine([_make_device(), _make_device(uuid=UUID_1)])
    engine.gather()
    source.devices.pop()
    engine.gather()

    assert registry.device_count() == 1


def test_failed_read_keeps_previous_value():
    device = _make_device(temperature=60)
    engine, registry, _ = _make_engine([device])
    engine.gather()

    device.temperature = 99
    device.failing.add("temperature")
    report = engine.gather()

    assert registry.value("nvml_temperature", _labels()) == 60
    assert report.failed_reads >= 1
    # the rest of the pass still ran
    assert registry.value("nvml_power_usage", _labels()) == 150


def test_read_that_never_succeeded_is_absent_not_zero():
    engine, registry, _ = _make_engine([_make_device(failing={"power_usage"})])
    engine.gather()

    assert registry.value("nvml_power_usage", _labels()) is None
    assert registry.value("nvml_temperature", _labels()) == 72


def test_unresolvable_device_is_skipped():
    engine, registry, _ = _make_engine([
        _make_device(resolvable=False),
        _make_device(uuid=UUID_1, temperature=50),
    ])
    report = engine.gather()

    assert report.devices_skipped == 1
    assert report.devices_gathered == 1
    assert registry.device_count() == 2
    assert registry.value("nvml_temperature", _labels(1, UUID_1)) == 50
    assert all(labels[0] != "0" for labels in registry.series("nvml_temperature"))


def test_enumeration_failure_aborts_pass_and_keeps_registry():
    engine, registry, source = _make_engine([_make_device()])
    engine.gather()

    source.available = False
    with pytest.raises(DeviceSourceUnavailable):
        engine.gather()

    assert registry.device_count() == 1
    assert registry.value("nvml_temperature", _labels()) == 72


def test_display_flags_are_one_or_zero():
    engine, registry, _ = _make_engine([_make_device(display_active=True, display_connected=False)])
    engine.gather()

    assert registry.value("nvml_display_active", _labels()) == 1
    assert registry.value("nvml_display_mode", _labels()) == 0


def test_pcie_and_process_counts():
    engine, registry, _ = _make_engine([_make_device(
        compute_processes=3,
        graphics_processes=1,
        pcie_link_width=8,
        pcie_link_generation=3,
    )])
    engine.gather()

    assert registry.value("nvml_running_compute_processes_count", _labels()) == 3
    assert registry.value("nvml_running_graphics_processes_count", _labels()) == 1
    assert registry.value("nvml_current_pcie_link_width", _labels()) == 8
    assert registry.value("nvml_current_pcie_link_generation", _labels()) == 3
    assert registry.value("nvml_max_pcie_link_width", _labels()) == 16
    assert registry.value("nvml_max_pcie_link_generation", _labels()) == 4


def test_utilization_written_together():
    device = _make_device(utilization=UtilizationRates(gpu=85, memory=40))
    engine, registry, _ = _make_engine([device])
    engine.gather()

    assert registry.value("nvml_utilization_gpu", _labels()) == 85
    assert registry.value("nvml_utilization_memory", _labels()) == 40

    device.utilization = UtilizationRates(gpu=10, memory=5)
    device.failing.add("utilization_rates")
    engine.gather()

    assert registry.value("nvml_utilization_gpu", _labels()) == 85
    assert registry.value("nvml_utilization_memory", _labels()) == 40


def test_encoder_group_written_when_all_reads_succeed():
    device = _make_device(
        encoder=EncoderStats(session_count=2, average_fps=60, average_latency=1200),
        encoder_capacity={"h264": 80, "hevc": 70},
    )
    engine, registry, _ = _make_engine([device])
    engine.gather()

    assert registry.value("nvml_encoder_stats_sessions_count", _labels()) == 2
    assert registry.value("nvml_encoder_stats_average_fps", _labels()) == 60
    assert registry.value("nvml_encoder_stats_average_latency", _labels()) == 1200
    assert registry.value("nvml_encoder_capacity_h264", _labels()) == 80
    assert registry.value("nvml_encoder_capacity_hevc", _labels()) == 70


def test_encoder_group_skipped_when_capacity_read_fails():
    device = _make_device(
        encoder=EncoderStats(session_count=2, average_fps=60, average_latency=1200),
        failing={"encoder_capacity_hevc"},
    )
    engine, registry, _ = _make_engine([device])
    engine.gather()

    assert registry.value("nvml_encoder_stats_sessions_count", _labels()) is None
    assert registry.value("nvml_encoder_capacity_h264", _labels()) is None


def test_fbc_failure_skips_only_fbc():
    engine, registry, _ = _make_engine([_make_device(failing={"fbc_stats"})])
    engine.gather()

    assert registry.value("nvml_fbc_stats_sessions_count", _labels()) is None
    assert registry.value("nvml_fbc_stats_average_fps", _labels()) is None
    assert registry.value("nvml_encoder_stats_sessions_count", _labels()) == 0


def test_memory_info_states():
    mem = MemoryInfo(free=6, total=10, used=4)
    engine, registry, _ = _make_engine([_make_device(memory=mem)])
    engine.gather()

    assert registry.series("nvml_memory_info") == {
        _labels() + ("free",): 6,
        _labels() + ("total",): 10,
        _labels() + ("used",): 4,
    }


def test_only_supported_clock_combinations_are_written():
    clocks = {("current", "graphics"): 1800, ("current", "mem"): 9501, ("app_clock_default", "sm"): 1400}
    engine, registry, _ = _make_engine([_make_device(clocks=clocks)])
    engine.gather()

    series = registry.series("nvml_clock")
    assert series == {
        _labels() + ("current", "graphics"): 1800,
        _labels() + ("current", "mem"): 9501,
        _labels() + ("app_clock_default", "sm"): 1400,
    }


def test_all_sixteen_clock_combinations():
    clocks = {(cid, ctype): 1000 + i for i, (cid, ctype) in
              enumerate((c, t) for c in CLOCK_IDS for t in CLOCK_TYPES)}
    engine, registry, _ = _make_engine([_make_device(clocks=clocks)])
    engine.gather()

    series = registry.series("nvml_clock")
    assert len(series) == 16
    assert series[_labels() + ("customer_boost_max", "video")] == 1015


def test_throttle_reasons_skipped_when_disabled():
    engine, registry, _ = _make_engine([_make_device(throttle_reasons=0x4)])
    engine.gather()

    assert registry.series("nvml_current_clocks_throttle_reasons") == {}


@pytest.mark.parametrize("mask", [0x0, 0x1, 0x4 | 0x20, 0x8 | 0x40 | 0x100, 0x1FF])
def test_throttle_reasons_one_indicator_per_known_reason(mask):
    engine, registry, _ = _make_engine([_make_device(throttle_reasons=mask)], throttle_reasons=True)
    engine.gather()

    series = registry.series("nvml_current_clocks_throttle_reasons")
    assert len(series) == len(THROTTLE_REASONS) == 10
    assert set(series.values()) <= {0.0, 1.0}
    assert sum(series.values()) == bin(mask).count("1")
    assert series[_labels() + ("none",)] == 0


def test_throttle_unknown_bits_add_no_indicators():
    engine, registry, _ = _make_engine(
        [_make_device(throttle_reasons=0x8 | 0x8000000000000000)], throttle_reasons=True
    )
    engine.gather()

    series = registry.series("nvml_current_clocks_throttle_reasons")
    assert len(series) == 10
    assert sum(series.values()) == 1
    assert series[_labels() + ("hw_slowdown",)] == 1


def test_throttle_indicator_cleared_on_next_pass():
    device = _make_device(throttle_reasons=0x4)
    engine, registry, _ = _make_engine([device], throttle_reasons=True)
    engine.gather()
    assert registry.value("nvml_current_clocks_throttle_reasons", _labels() + ("sw_power_cap",)) == 1

    device.throttle_reasons = 0x1
    engine.gather()
    assert registry.value("nvml_current_clocks_throttle_reasons", _labels() + ("sw_power_cap",)) == 0
    assert registry.value("nvml_current_clocks_throttle_reasons", _labels() + ("gpu_idle",)) == 1


def test_throttle_read_failure_skips_group():
    engine, registry, _ = _make_engine(
        [_make_device(failing={"throttle_reasons"})], throttle_reasons=True
    )
    engine.gather()

    assert registry.series("nvml_current_clocks_throttle_reasons") == {}


def test_ecc_disabled_writes_no_memory_errors():
    device = _make_device(
        ecc_enabled=False,
        memory_errors={("corrected", "volatile", "device"): 5},
    )
    engine, registry, _ = _make_engine([device])
    report = engine.gather()

    assert registry.series("nvml_memory_error_counters") == {}
    assert report.failed_reads == 16  # only the unsupported clock combinations


def test_ecc_state_failure_skips_memory_errors():
    device = _make_device(
        ecc_enabled=True,
        memory_errors={("corrected", "volatile", "device"): 5},
        failing={"ecc_state"},
    )
    engine, registry, _ = _make_engine([device])
    engine.gather()

    assert registry.series("nvml_memory_error_counters") == {}


def test_unsupported_memory_error_counters_are_not_zero_filled():
    device = _make_device(
        ecc_enabled=True,
        memory_errors={
            ("corrected", "volatile", "device"): 5,
            ("uncorrected", "aggregate", "l2_cache"): 0,
        },
    )
    engine, registry, _ = _make_engine([device])
    engine.gather()

    assert registry.series("nvml_memory_error_counters") == {
        _labels() + ("corrected", "volatile", "device"): 5,
        _labels() + ("uncorrected", "aggregate", "l2_cache"): 0,
    }


def test_stale_device_series_are_kept():
    engine, registry, source = _make_engine([_make_device(), _make_device(uuid=UUID_1, temperature=40)])
    engine.gather()
    source.devices.pop()
    engine.gather()

    assert registry.device_count() == 1
    assert registry.value("nvml_temperature", _labels(1, UUID_1)) == 40


def test_concurrent_passes_leave_consistent_values():
    engine, registry, source = _make_engine(FakeDeviceSource.generate(4, seed=7).devices)
    errors = []

    def run():
        try:
            for _ in range(10):
                engine.gather()
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert source.passes == 40
    for index, device in enumerate(source.devices):
        assert registry.value("nvml_temperature", (str(index), device.uuid)) == device.temperature
