"""
Error types raised while reading devices and serving metrics.

Only DeviceSourceUnavailable aborts a gather pass. The other read errors
are caught inside the pass, logged, and the pass moves on.
"""

from __future__ import annotations

from typing import Optional


class ExporterError(Exception):
    """Base class for everything this package raises on purpose."""


class DeviceSourceUnavailable(ExporterError):
    """The device layer itself can't be reached (enumeration failed)."""


class DeviceResolutionFailed(ExporterError):

    def __init__(self, index: int, reason: Optional[str] = None):
        self.index = index
        self.reason = reason
        message = f"could not resolve device {index}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class MetricReadFailed(ExporterError):
    """A single hardware readout failed for one device."""

    def __init__(self, device: int, metric: str, reason: Optional[str] = None):
        self.device = device
        self.metric = metric
        self.reason = reason
        message = f"failed to read {metric} for device {device}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ListenerError(ExporterError):

    def __init__(self, address, reason: str):
        self.address = address
        self.reason = reason
        super().__init__(f"listener {address}: {reason}")
