"""Port handshake between the Bridge and the Gateway.

The Bridge binds an ephemeral port and writes it, as plain decimal text, to
``<workspace>/.shepherd/.port``. The Gateway polls that file. There is no
other synchronization: the file is simply overwritten on every Bridge start,
so a stale value from a previous run is replaced as soon as the Bridge is up.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Optional

from .errors import BridgeUnavailableError

logger = logging.getLogger("shepherd.handshake")

PORT_TIMEOUT_ENV = "SHEPHERD_PORT_TIMEOUT"
DEFAULT_PORT_TIMEOUT = 30.0
POLL_INTERVAL = 0.1


def port_timeout() -> float:
    """Port-wait ceiling in seconds (``SHEPHERD_PORT_TIMEOUT``, default 30)."""
    value = os.getenv(PORT_TIMEOUT_ENV)
    if not value:
        return DEFAULT_PORT_TIMEOUT
    try:
        timeout = float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {PORT_TIMEOUT_ENV}={value!r}")
        return DEFAULT_PORT_TIMEOUT
    return timeout if timeout > 0 else DEFAULT_PORT_TIMEOUT


def write_port_file(path: Path, port: int) -> None:
    """Publish ``port``, replacing whatever a previous run left behind.

    The value is written to a sibling temp file and renamed into place, so a
    polling reader sees either the old port or the new one, never a partial.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(str(port), encoding="utf-8")
    os.replace(tmp, path)
    logger.info(f"Published bridge port {port} to {path}")


def remove_port_file(path: Path, port: Optional[int] = None) -> None:
    """Delete the port file, but only if it still advertises ``port``."""
    if port is not None and read_port_file(path) != port:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove port file {path}: {e}")


def read_port_file(path: Path) -> Optional[int]:
    """The advertised port, or None if the file is missing, empty or garbled."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    if not text.isdigit():
        return None
    port = int(text)
    return port if 0 < port < 65536 else None


async def wait_for_port(
    path: Path,
    timeout: Optional[float] = None,
    interval: float = POLL_INTERVAL,
) -> int:
    """Poll the port file until it holds a port or ``timeout`` elapses."""
    timeout = port_timeout() if timeout is None else timeout
    deadline = time.monotonic() + timeout
    announced = False
    while True:
        port = read_port_file(path)
        if port is not None:
            return port
        if time.monotonic() >= deadline:
            raise BridgeUnavailableError(
                f"Bridge unavailable: no port published at {path} within {timeout:g}s. "
                "Is the Shepherd host running in this workspace?"
            )
        if not announced:
            logger.info(f"Waiting up to {timeout:g}s for the bridge port at {path}")
            announced = True
        await asyncio.sleep(interval)
