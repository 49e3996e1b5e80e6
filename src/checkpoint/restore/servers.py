"""
Local database server availability.

A restore into a local server needs the server running. When
``databases.auto_start_local`` is set, a stopped server is started with the
configured per-engine command and, if ``stop_after`` is set, stopped again
once the restore is done.
"""

from __future__ import annotations

import logging
import socket
import time

from checkpoint.config.settings import DatabasesConfig
from checkpoint.restore.connection import DatabaseTarget
from checkpoint.tools import ToolError, run_tool

logger = logging.getLogger(__name__)

START_POLL_INTERVAL = 0.5


def port_open(host: str, port: int, timeout: float = 2.0) -> bool:
    """Return True if a TCP connection to host:port succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class LocalServerManager:
    """
    Checks reachability of database servers and starts local ones on demand.

    Args:
        config: Database settings (auto start policy and commands).
    """

    def __init__(self, config: DatabasesConfig) -> None:
        self.config = config

    def is_reachable(self, target: DatabaseTarget) -> bool:
        """Probe the server port. Unix socket targets are assumed reachable."""
        if target.host.startswith("/"):
            return True
        host = "127.0.0.1" if target.host in ("", "localhost", "0.0.0.0") else target.host
        return port_open(host, target.port, timeout=min(self.config.connect_timeout, 5))

    def ensure_running(self, target: DatabaseTarget) -> bool:
        """
        Make sure the target server accepts connections.

        Returns:
            True if this call started the server (the caller should stop it
            afterwards when stop_after is set), False if it was already up.

        Raises:
            ToolError: If the server is down and cannot be started.
        """
        if self.is_reachable(target):
            return False

        engine = target.engine.value
        command = self.config.start_commands.get(engine)
        if not target.is_local or not self.config.auto_start_local or not command:
            raise ToolError(f"{target.describe()} is not accepting connections")

        logger.info(f"Starting local {target.engine.label} server: {' '.join(command)}")
        run_tool(command, timeout=self.config.connect_timeout * 6)

        deadline = time.monotonic() + self.config.connect_timeout
        while time.monotonic() < deadline:
            if self.is_reachable(target):
                return True
            time.sleep(START_POLL_INTERVAL)
        raise ToolError(
            f"{target.engine.label} server did not come up within "
            f"{self.config.connect_timeout} seconds"
        )

    def stop(self, target: DatabaseTarget) -> None:
        """Stop a server started by ensure_running, if configured to."""
        command = self.config.stop_commands.get(target.engine.value)
        if not self.config.stop_after or not command:
            return
        logger.info(f"Stopping local {target.engine.label} server")
        try:
            run_tool(command, timeout=self.config.connect_timeout * 6)
        except ToolError as e:
            logger.warning(f"Could not stop {target.engine.label} server: {e}")
