"""
CLI tests. The scrape test starts a plain HTTP server in a thread that
serves a canned metrics page, then points the command at it.
"""

import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest
from click.testing import CliRunner

from nvml_exporter import __version__
from nvml_exporter.collector.exposition import get_sample, parse_exposition
from nvml_exporter.main import cli

CANNED_PAGE = b"""\
# HELP nvml_device_count number of nvml devices
# TYPE nvml_device_count gauge
nvml_device_count 1.0
# HELP nvml_temperature temperature of nvml device
# TYPE nvml_temperature gauge
nvml_temperature{device="0",uuid="GPU-canned"} 64.0
"""

_PROXY_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy")


class _CannedHandler(BaseHTTPRequestHandler):
    page = CANNED_PAGE

    def do_GET(self):
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4")
        self.send_header("Content-Length", str(len(self.page)))
        self.end_headers()
        self.wfile.write(self.page)

    def log_message(self, format, *args):
        pass


def _start_test_server(page: bytes = CANNED_PAGE) -> HTTPServer:
    handler = type("_Handler", (_CannedHandler,), {"page": page})
    server = HTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


def _wide_runner() -> CliRunner:
    # room for every table column so cells aren't cropped
    return CliRunner(env={"COLUMNS": "200"})


@pytest.fixture
def no_proxy(monkeypatch):
    for name in _PROXY_VARS:
        monkeypatch.delenv(name, raising=False)


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_dump_text_format():
    result = CliRunner().invoke(cli, ["dump", "--mock", "2", "--format", "text"])
    assert result.exit_code == 0, result.output

    families = parse_exposition(result.stdout)
    assert get_sample(families, "nvml_device_count") == 2
    devices = {s.labels["device"] for s in families["nvml_temperature"].samples}
    assert devices == {"0", "1"}
    assert "nvml_current_clocks_throttle_reasons" not in families or not families[
        "nvml_current_clocks_throttle_reasons"
    ].samples


def test_dump_with_throttle_reasons():
    result = CliRunner().invoke(cli, ["dump", "--mock", "1", "--format", "text", "--throttle-reasons"])
    assert result.exit_code == 0, result.output

    families = parse_exposition(result.stdout)
    assert len(families["nvml_current_clocks_throttle_reasons"].samples) == 10


def test_dump_table_format():
    result = _wide_runner().invoke(cli, ["dump", "--mock", "2"])
    assert result.exit_code == 0, result.output
    assert result.output.strip()


def test_dump_table_without_devices():
    result = _wide_runner().invoke(cli, ["dump", "--mock", "0"])
    assert result.exit_code == 0, result.output
    assert "No per-device metrics" in result.output


def test_serve_rejects_bad_listen_address():
    result = CliRunner().invoke(cli, ["serve", "--mock", "1", "-l", "not-an-address"])
    assert result.exit_code == 2
    assert "invalid socket address" in result.output


def test_serve_rejects_unbracketed_ipv6():
    result = CliRunner().invoke(cli, ["serve", "--mock", "1", "-l", "::1:9996"])
    assert result.exit_code == 2
    assert "must be bracketed" in result.output


def test_negative_mock_count_rejected():
    result = CliRunner().invoke(cli, ["dump", "--mock", "-1"])
    assert result.exit_code == 2


def test_scrape_renders_remote_page(no_proxy):
    server = _start_test_server()
    try:
        url = f"http://127.0.0.1:{server.server_address[1]}/metrics"
        result = _wide_runner().invoke(cli, ["scrape", url])
    finally:
        server.shutdown()
        server.server_close()

    assert result.exit_code == 0, result.output
    assert "64C" in result.output


def test_scrape_unreachable_exporter(no_proxy):
    spare = HTTPServer(("127.0.0.1", 0), _CannedHandler)
    port = spare.server_address[1]
    spare.server_close()

    result = CliRunner().invoke(cli, ["scrape", f"http://127.0.0.1:{port}/", "--timeout", "2"])
    assert result.exit_code == 1


def test_scrape_rejects_non_metrics_page(no_proxy):
    server = _start_test_server(b"<html><body>not metrics</body></html>\n")
    try:
        url = f"http://127.0.0.1:{server.server_address[1]}/"
        result = CliRunner().invoke(cli, ["scrape", url])
    finally:
        server.shutdown()
        server.server_close()

    assert result.exit_code == 1
    assert "did not return a metrics page" in result.output
