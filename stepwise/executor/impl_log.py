"""Implementation log: a durable, newest-first markdown record of finished steps.

The log lives at ``<state_dir>/implementation-log.md`` and is committed
together with each step's changes. Entries are prepended directly below the
header. Before a new entry goes in, the log is rotated if it already holds
``max_entries`` entries or ``max_bytes`` bytes: the current file moves to
``archive/implementation-log-YYYYMMDD-HHMMSS.md`` and a fresh log with only
the header takes its place.
"""

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from stepwise.sessions.schemas import utcnow
from stepwise.sessions.store import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 500
DEFAULT_MAX_BYTES = 100 * 1024

ENTRY_PREFIX = "## "

HEADER = """# Implementation Log

Completed plan steps, newest first. Older entries are archived under `archive/`.

"""


@dataclass
class LogEntry:
    step: str
    plan_id: str
    summary: str
    ticket_id: Optional[str] = None
    session_id: Optional[str] = None
    files: Optional[list[str]] = None
    timestamp: Optional[datetime] = None

    def render(self) -> str:
        ts = (self.timestamp or utcnow()).strftime("%Y-%m-%d %H:%M:%S UTC")
        lines = [f"{ENTRY_PREFIX}{self.step} | {self.plan_id} | {ts}", ""]
        if self.ticket_id:
            lines.append(f"**Ticket:** {self.ticket_id}")
        if self.session_id:
            lines.append(f"**Session:** {self.session_id}")
        if self.ticket_id or self.session_id:
            lines.append("")
        # Entry headings delimit entries; keep summaries from forging one
        for line in (self.summary.strip() or "(no summary)").splitlines():
            lines.append("\\" + line if line.startswith("#") else line)
        if self.files:
            lines.append("")
            lines.append("**Files:**")
            lines.extend(f"- `{f}`" for f in self.files)
        lines.extend(["", "---", ""])
        return "\n".join(lines) + "\n"


@dataclass
class RotationResult:
    rotated: bool
    archived_path: Optional[Path] = None
    entries: int = 0
    size_bytes: int = 0


class ImplementationLog:
    """Size-rotated markdown log of completed steps."""

    def __init__(
        self,
        path: Path,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ):
        self.path = Path(path)
        self.archive_dir = self.path.parent / "archive"
        self.max_entries = max_entries
        self.max_bytes = max_bytes

    def _read(self) -> str:
        if not self.path.exists():
            return HEADER
        return self.path.read_text()

    @staticmethod
    def _split(content: str) -> tuple[str, str]:
        """Split into (header, entries) at the first entry heading."""
        idx = content.find("\n" + ENTRY_PREFIX)
        if content.startswith(ENTRY_PREFIX):
            return "", content
        if idx < 0:
            return content, ""
        return content[: idx + 1], content[idx + 1:]

    def entry_count(self) -> int:
        _, body = self._split(self._read())
        return sum(1 for line in body.splitlines() if line.startswith(ENTRY_PREFIX))

    def size_bytes(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0

    def needs_rotation(self) -> bool:
        return self.entry_count() >= self.max_entries or self.size_bytes() >= self.max_bytes

    def rotate(self, force: bool = False) -> RotationResult:
        """Archive the current log if it is over threshold (or force is set)."""
        entries = self.entry_count()
        size = self.size_bytes()
        if not self.path.exists() or not (force or self.needs_rotation()):
            return RotationResult(rotated=False, entries=entries, size_bytes=size)

        self.archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = utcnow().strftime("%Y%m%d-%H%M%S")
        archived = self.archive_dir / f"implementation-log-{stamp}.md"
        n = 1
        while archived.exists():
            archived = self.archive_dir / f"implementation-log-{stamp}-{n}.md"
            n += 1

        shutil.move(str(self.path), str(archived))
        atomic_write_text(self.path, HEADER)
        logger.info(
            f"Rotated implementation log ({entries} entries, {size} bytes) to {archived}"
        )
        return RotationResult(rotated=True, archived_path=archived, entries=entries, size_bytes=size)

    def prepend(self, entry: LogEntry) -> None:
        """Insert an entry directly below the header."""
        header, body = self._split(self._read())
        if not header:
            header = HEADER
        if not header.endswith("\n\n"):
            header = header.rstrip("\n") + "\n\n"
        atomic_write_text(self.path, header + entry.render() + body)
        logger.debug(f"Prepended log entry for {entry.step}")
