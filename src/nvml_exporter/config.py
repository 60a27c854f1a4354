"""
Startup options and logging setup.

Options are read once by the CLI and passed down explicitly; nothing in
the exporter reads configuration from module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

DEFAULT_PORT = 9996
DEFAULT_LISTEN = ("[::]:9996", "0.0.0.0:9996")

# Below DEBUG. Used for the per-counter memory error chatter.
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# -v count -> level, same ladder as the usual stderr loggers
_VERBOSITY_LEVELS = (logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG, TRACE)

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


class BindAddress(NamedTuple):
    host: str
    port: int

    @property
    def is_ipv6(self) -> bool:
        return ":" in self.host

    def __str__(self) -> str:
        if self.is_ipv6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_bind_address(value: str) -> BindAddress:
    """Parse ``host:port`` or ``[v6-host]:port`` into a BindAddress.

    Raises ValueError for anything else, including unbracketed IPv6.
    """
    text = value.strip()
    if text.startswith("["):
        close = text.find("]")
        if close == -1 or text[close + 1:close + 2] != ":":
            raise ValueError(f"invalid socket address: {value!r}")
        host = text[1:close]
        port_str = text[close + 2:]
        if not host:
            raise ValueError(f"invalid socket address: {value!r}")
    else:
        host, sep, port_str = text.rpartition(":")
        if not sep or not host:
            raise ValueError(f"invalid socket address: {value!r}")
        if ":" in host:
            raise ValueError(f"IPv6 hosts must be bracketed: {value!r}")

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port in {value!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in {value!r}")

    return BindAddress(host, port)


@dataclass(frozen=True)
class ExporterOptions:
    listen: Tuple[BindAddress, ...] = tuple(parse_bind_address(a) for a in DEFAULT_LISTEN)
    enable_throttle_reasons: bool = False
    verbosity: int = 0
    mock_devices: Optional[int] = None


def level_for_verbosity(verbosity: int) -> int:
    index = max(0, min(verbosity, len(_VERBOSITY_LEVELS) - 1))
    return _VERBOSITY_LEVELS[index]


def configure_logging(verbosity: int) -> int:
    """Set up stderr logging for the process and return the chosen level."""
    level = level_for_verbosity(verbosity)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger().setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return level
