"""Systemd notify integration for the Plex Sensors service.

READY=1 once the webhook listener is up, WATCHDOG=1 at regular intervals,
a STATUS= line with the sensor summary, STOPPING=1 on shutdown.
Silently no-ops when NOTIFY_SOCKET is unset (macOS / dev mode).

Usage:
    from lib.watchdog import watchdog_loop
    asyncio.create_task(watchdog_loop(status=lambda: "2 sensors, 1 playing"))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send a notification message to the systemd notify socket.

    Returns False when there is no socket to talk to.
    """
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()
    return True


async def watchdog_loop(interval: int = 20, status=None):
    """Send WATCHDOG=1 (and STATUS=, if *status* is given) every *interval* seconds.

    Sends READY=1 on first invocation (requires Type=notify in the unit
    file), so start it only after the listener is bound.  *status* is a
    zero-argument callable returning a short human-readable line.
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    while True:
        msg = "WATCHDOG=1"
        if status is not None:
            msg += f"\nSTATUS={status()}"
        sd_notify(msg)
        await asyncio.sleep(interval)
