"""Ticket tracker integration.

Tickets are closed through a tracker CLI (``bd`` by default):

    bd close <ticket_id> --reason "<reason>"

A non-zero exit status is a failed close.
"""

import logging
import shutil
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)


class TicketCloseError(RuntimeError):
    pass


class CommandTicketTracker:
    """Closes tickets by shelling out to the tracker CLI."""

    def __init__(self, command: str = "bd", cwd: Optional[str] = None, timeout: float = 60.0):
        self.command = command
        self.cwd = cwd
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.command) is not None

    def close(self, ticket_id: str, reason: str = "") -> None:
        args = [self.command, "close", ticket_id]
        if reason:
            args += ["--reason", reason]
        try:
            proc = subprocess.run(
                args,
                cwd=self.cwd,
                text=True,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise TicketCloseError(f"{self.command} close {ticket_id} failed: {e}")

        if proc.returncode != 0:
            raise TicketCloseError(
                f"{self.command} close {ticket_id} exited {proc.returncode}: "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )
        logger.info(f"Closed ticket {ticket_id}")
