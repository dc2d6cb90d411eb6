"""
Audit trail — the install history of this host.

Every command attempt, step outcome, undo action, backup, restore and
run summary becomes one JSON line in ``<state_dir>/audit.ndjson``.
Lines are only ever appended; several runs share the file and are told
apart by ``run_id``.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """One line of the trail."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    event: str = ""
    subject: str = ""              # step id, command text, archive or plan name
    status: str = ""
    attempt: int | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    detail: str = ""
    context: dict[str, Any] = Field(default_factory=dict)


class AuditWriter:
    """Appends entries to an NDJSON file and reads them back."""

    def __init__(self, path: Path | None = None, state_dir: Path | None = None):
        if path is None:
            path = (state_dir or Path(".")) / DEFAULT_AUDIT_FILE
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        # An unwritable trail is logged and ignored; it never fails a run.
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Cannot append to audit trail %s: %s", self._path, e)
            return
        logger.debug("audit %s %s -> %s", entry.event, entry.subject, entry.status)

    def record(self, event: str, subject: str, status: str, **fields: Any) -> AuditEntry:
        """Build an entry from keyword fields and append it."""
        entry = AuditEntry(event=event, subject=subject, status=status, **fields)
        self.write(entry)
        return entry

    def iter_entries(self) -> Iterator[AuditEntry]:
        """Yield entries oldest first, skipping lines that do not parse."""
        if not self._path.is_file():
            return
        try:
            with self._path.open(encoding="utf-8") as fh:
                for lineno, raw in enumerate(fh, start=1):
                    if not raw.strip():
                        continue
                    try:
                        yield AuditEntry.model_validate(json.loads(raw))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("%s:%d: unreadable audit line (%s)", self._path, lineno, e)
        except OSError as e:
            logger.error("Cannot read audit trail %s: %s", self._path, e)

    def read_all(self) -> list[AuditEntry]:
        return list(self.iter_entries())

    def read_recent(self, n: int = 20, run_id: str | None = None) -> list[AuditEntry]:
        """Last ``n`` entries, optionally only those of one run."""
        if n <= 0:
            return []
        entries = self.iter_entries()
        if run_id:
            entries = (e for e in entries if e.run_id == run_id)
        return list(deque(entries, maxlen=n))

    def entry_count(self) -> int:
        return sum(1 for _ in self.iter_entries())


class NullAuditWriter(AuditWriter):
    """Discards every entry."""

    def __init__(self) -> None:
        super().__init__(path=Path("/dev/null"))

    def write(self, entry: AuditEntry) -> None:
        pass

    def iter_entries(self) -> Iterator[AuditEntry]:
        return iter(())
