"""
Label schemas and the exact label strings the exporter publishes.

These strings are part of the scrape contract -- dashboards and alert
rules match on them -- so they must not change.
"""

from __future__ import annotations

from typing import List, Tuple

DEVICE_LABELS = ("device", "uuid")
CLOCK_LABELS = DEVICE_LABELS + ("clock_id", "type")
MEMORY_INFO_LABELS = DEVICE_LABELS + ("state",)
THROTTLE_REASON_LABELS = DEVICE_LABELS + ("reason",)
MEMORY_ERROR_LABELS = DEVICE_LABELS + ("mem_error", "ecc_counter", "mem_location")

CLOCK_IDS = ("current", "app_clock_target", "app_clock_default", "customer_boost_max")
CLOCK_TYPES = ("graphics", "sm", "mem", "video")

MEMORY_STATES = ("free", "total", "used")

ENCODER_CODECS = ("h264", "hevc")

# NVML clocks throttle reason bits, in NVML order
THROTTLE_REASONS: Tuple[Tuple[str, int], ...] = (
    ("gpu_idle", 0x0000000000000001),
    ("applications_clocks_setting", 0x0000000000000002),
    ("sw_power_cap", 0x0000000000000004),
    ("hw_slowdown", 0x0000000000000008),
    ("sync_boost", 0x0000000000000010),
    ("sw_thermal_slowdown", 0x0000000000000020),
    ("hw_thermal_slowdown", 0x0000000000000040),
    ("hw_power_brake_slowdown", 0x0000000000000080),
    ("display_clock_setting", 0x0000000000000100),
    ("none", 0x0000000000000000),
)

MEMORY_ERROR_TYPES = ("corrected", "uncorrected")
ECC_COUNTERS = ("aggregate", "volatile")
MEMORY_LOCATIONS = (
    "cbu",
    "device",
    "l1_cache",
    "l2_cache",
    "register_file",
    "shared",
    "sram",
    "texture",
)


def throttle_indicators(mask: int) -> List[Tuple[str, int]]:
    """Expand a throttle-reason bitmask into one 0/1 indicator per known reason.

    Every known reason gets an entry, set or not. "none" is NVML's 0x0 and
    can never be set in a mask, so it is always 0; the indicators add up to
    the number of known bits set. Bits NVML reports that we don't know about
    are ignored.
    """
    return [(name, 1 if mask & bit else 0) for name, bit in THROTTLE_REASONS]
