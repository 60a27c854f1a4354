"""Terminal view of a metrics page using Rich. One row per device."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from prometheus_client.metrics_core import Metric
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from nvml_exporter import __version__
from nvml_exporter.collector.exposition import (
    devices_in,
    get_sample,
    parse_exposition,
)

log = logging.getLogger(__name__)

GIB = 1024 ** 3


def _color_for_percent(value: float) -> str:
    if value < 50:
        return "green"
    elif value < 80:
        return "yellow"
    return "red"


def _color_for_temperature(value: float) -> str:
    if value < 70:
        return "green"
    elif value < 85:
        return "yellow"
    return "red"


def _fmt(value: Optional[float], fmt: str = "{:.0f}", suffix: str = "") -> str:
    if value is None:
        return "[dim]-[/dim]"
    return fmt.format(value) + suffix


def _active_throttle_reasons(families: Dict[str, Metric], device: str) -> List[str]:
    family = families.get("nvml_current_clocks_throttle_reasons")
    if not family:
        return []
    return [
        s.labels.get("reason", "?")
        for s in family.samples
        if s.labels.get("device") == device and s.value == 1
    ]


def _memory_errors(families: Dict[str, Metric], device: str, error_type: str) -> Optional[float]:
    family = families.get("nvml_memory_error_counters")
    if not family:
        return None
    values = [
        s.value for s in family.samples
        if s.labels.get("device") == device
        and s.labels.get("mem_error") == error_type
        and s.labels.get("ecc_counter") == "volatile"
    ]
    return sum(values) if values else None


def build_device_table(families: Dict[str, Metric]) -> Table:
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("GPU", justify="right")
    table.add_column("UUID", style="dim", no_wrap=True)
    table.add_column("Temp", justify="right")
    table.add_column("Power", justify="right")
    table.add_column("GPU util", justify="right")
    table.add_column("Mem util", justify="right")
    table.add_column("VRAM", justify="right")
    table.add_column("SM clock", justify="right")
    table.add_column("PCIe", justify="right")
    table.add_column("Procs", justify="right")
    table.add_column("ECC errors (vol.)", justify="right")
    table.add_column("Throttled by")

    for device, uuid in devices_in(families).items():
        temp = get_sample(families, "nvml_temperature", device=device)
        power = get_sample(families, "nvml_power_usage", device=device)
        gpu_util = get_sample(families, "nvml_utilization_gpu", device=device)
        mem_util = get_sample(families, "nvml_utilization_memory", device=device)
        used = get_sample(families, "nvml_memory_info", device=device, state="used")
        total = get_sample(families, "nvml_memory_info", device=device, state="total")
        sm_clock = get_sample(families, "nvml_clock", device=device, clock_id="current", type="sm")
        width = get_sample(families, "nvml_current_pcie_link_width", device=device)
        gen = get_sample(families, "nvml_current_pcie_link_generation", device=device)
        compute = get_sample(families, "nvml_running_compute_processes_count", device=device)
        graphics = get_sample(families, "nvml_running_graphics_processes_count", device=device)

        temp_cell = _fmt(temp, suffix="C")
        if temp is not None:
            temp_cell = f"[{_color_for_temperature(temp)}]{temp_cell}[/]"
        gpu_cell = _fmt(gpu_util, suffix="%")
        if gpu_util is not None:
            gpu_cell = f"[{_color_for_percent(gpu_util)}]{gpu_cell}[/]"

        if used is not None and total:
            vram = f"{used / GIB:.1f} / {total / GIB:.1f} GB"
        else:
            vram = "[dim]-[/dim]"

        pcie = f"Gen{gen:.0f} x{width:.0f}" if width is not None and gen is not None else "[dim]-[/dim]"
        procs = (
            f"{(compute or 0) + (graphics or 0):.0f}"
            if compute is not None or graphics is not None else "[dim]-[/dim]"
        )

        corrected = _memory_errors(families, device, "corrected")
        uncorrected = _memory_errors(families, device, "uncorrected")
        if corrected is None and uncorrected is None:
            ecc = "[dim]n/a[/dim]"
        else:
            color = "red" if uncorrected else ("yellow" if corrected else "green")
            ecc = f"[{color}]{corrected or 0:.0f} / {uncorrected or 0:.0f}[/]"

        reasons = _active_throttle_reasons(families, device)
        throttle = ", ".join(reasons) if reasons else "[dim]-[/dim]"

        table.add_row(
            device,
            uuid,
            temp_cell,
            _fmt(power, "{:.1f}", " W"),
            gpu_cell,
            _fmt(mem_util, suffix="%"),
            vram,
            _fmt(sm_clock, suffix=" MHz"),
            pcie,
            procs,
            ecc,
            throttle,
        )

    return table


def build_display(families: Dict[str, Metric], source_name: str) -> Panel:
    count = get_sample(families, "nvml_device_count")
    header = Text(f"nvml-exporter v{__version__}  |  {source_name}", style="bold")
    if count is not None:
        header.append(f"  |  {count:.0f} device(s)", style="dim")

    if not devices_in(families):
        body = Text("No per-device metrics in this snapshot", style="yellow")
        return Panel(body, title=header, border_style="yellow")

    return Panel(build_device_table(families), title=header, border_style="blue")


def render_exposition(text: str, source_name: str, console: Optional[Console] = None) -> None:
    """Parse a metrics page and print it as a device table."""
    console = console or Console()
    families = parse_exposition(text)
    log.debug("rendering %d metric families from %s", len(families), source_name)
    console.print(build_display(families, source_name))
