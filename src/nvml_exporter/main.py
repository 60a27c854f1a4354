"""
nvml-exporter entry point.

Usage:
    nvml-exporter                               Serve on the default addresses
    nvml-exporter -vv serve -l 127.0.0.1:9996   Serve on one address, info logging
    nvml-exporter serve --mock 2                Serve two simulated GPUs
    nvml-exporter dump --format text            One gather pass, print the page
    nvml-exporter scrape http://host:9996/      Render a running exporter
"""

from __future__ import annotations

import asyncio
import logging

import click
import httpx

from nvml_exporter import __version__
from nvml_exporter.collector.base import DeviceSource
from nvml_exporter.collector.gather import GatherEngine
from nvml_exporter.config import (
    DEFAULT_LISTEN,
    BindAddress,
    ExporterOptions,
    configure_logging,
    parse_bind_address,
)
from nvml_exporter.errors import DeviceSourceUnavailable
from nvml_exporter.exporter import build_exporter
from nvml_exporter.metrics import MetricRegistry

log = logging.getLogger("nvml_exporter")


class BindAddressType(click.ParamType):
    name = "socket_address"

    def convert(self, value, param, ctx):
        if isinstance(value, BindAddress):
            return value
        try:
            return parse_bind_address(value)
        except ValueError as exc:
            self.fail(str(exc), param, ctx)


def _open_source(mock_devices) -> DeviceSource:
    if mock_devices is not None:
        from nvml_exporter.mock.fake_devices import FakeDeviceSource

        return FakeDeviceSource.generate(mock_devices)

    from nvml_exporter.collector.nvml_source import NvmlDeviceSource

    try:
        return NvmlDeviceSource()
    except DeviceSourceUnavailable as exc:
        click.echo(f"Could not initialize NVML: {exc}", err=True)
        raise SystemExit(1)


_mock_option = click.option(
    "--mock", "mock_devices", type=click.IntRange(min=0), default=None,
    help="Use N simulated GPUs instead of NVML",
)
_throttle_option = click.option(
    "--throttle-reasons", is_flag=True, default=False,
    help="Collect current clock throttle reasons",
)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="nvml-exporter")
@click.option("-v", "verbosity", count=True, help="Increase log verbosity (repeatable)")
@click.pass_context
def cli(ctx, verbosity: int):
    """Prometheus exporter for NVIDIA GPU NVML metrics."""
    configure_logging(verbosity)
    ctx.ensure_object(dict)
    ctx.obj["verbosity"] = verbosity

    # No subcommand: serve with defaults
    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@cli.command()
@click.option(
    "-l", "--listen", multiple=True, default=DEFAULT_LISTEN, type=BindAddressType(),
    metavar="SOCKET_ADDRESS", show_default=True, help="Listen address (repeatable)",
)
@_throttle_option
@_mock_option
@click.pass_context
def serve(ctx, listen, throttle_reasons: bool, mock_devices):
    """Serve metrics on every listen address until interrupted."""
    options = ExporterOptions(
        listen=listen,
        enable_throttle_reasons=throttle_reasons,
        verbosity=ctx.obj.get("verbosity", 0) if ctx.obj else 0,
        mock_devices=mock_devices,
    )
    source = _open_source(options.mock_devices)
    log.info("exporting from %s", source.name())

    exporter = build_exporter(options, source)
    try:
        asyncio.run(exporter.run(install_signal_handlers=True))
    finally:
        source.close()


@cli.command()
@click.option("--format", "output", type=click.Choice(["table", "text"]), default="table",
              help="table (Rich device table) or text (raw exposition format)")
@_throttle_option
@_mock_option
def dump(output: str, throttle_reasons: bool, mock_devices):
    """Run a single gather pass and print the result."""
    source = _open_source(mock_devices)
    source_name = source.name()
    registry = MetricRegistry()
    engine = GatherEngine(source, registry, enable_throttle_reasons=throttle_reasons)

    try:
        try:
            report = engine.gather()
            log.info("gathered %d of %d devices in %.1fms",
                     report.devices_gathered, report.device_count, report.duration_ms)
        except DeviceSourceUnavailable as exc:
            log.error("error gathering metrics: %s", exc)
        text = registry.snapshot().decode("utf-8")
    finally:
        source.close()

    if output == "text":
        click.echo(text, nl=False)
        return

    from nvml_exporter.dashboard.terminal import render_exposition

    render_exposition(text, source_name)


@cli.command()
@click.argument("url")
@click.option("--timeout", default=5.0, show_default=True, help="Request timeout in seconds")
def scrape(url: str, timeout: float):
    """Fetch a running exporter and show its devices."""
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        click.echo(f"Scrape of {url} failed: {exc}", err=True)
        raise SystemExit(1)

    from nvml_exporter.dashboard.terminal import render_exposition

    try:
        render_exposition(response.text, url)
    except ValueError as exc:
        click.echo(f"{url} did not return a metrics page: {exc}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
