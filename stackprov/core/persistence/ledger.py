"""
State ledger — which steps have completed, and when.

The ledger drives skip/resume decisions and the rollback order.  It
is an ordered mapping ``step_id → completed_at``: a step id appears
at most once, re-completing it refreshes the timestamp in place.

Optionally bound to a JSON file so a failed install can be resumed
by a later run.  Writes are atomic (write to temp file, then rename).
"""

from __future__ import annotations

import json
import logging
import tempfile
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_FILE = "ledger.json"
SCHEMA_VERSION = 1


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class StateLedger:
    """Ordered record of completed step ids.

    Single writer: only the orchestrator mutates it during a run.
    """

    def __init__(self, path: Path | None = None, autosave: bool = True):
        self._path = path
        self._autosave = autosave and path is not None
        self._entries: dict[str, str] = {}

    @property
    def path(self) -> Path | None:
        return self._path

    # ── Queries ────────────────────────────────────────────────

    def is_done(self, step_id: str) -> bool:
        return step_id in self._entries

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def completed_at(self, step_id: str) -> str | None:
        return self._entries.get(step_id)

    def all_done(self) -> list[str]:
        """Completed step ids in first-completion order."""
        return list(self._entries)

    # ── Mutations ──────────────────────────────────────────────

    def mark_done(self, step_id: str, at: str | None = None) -> None:
        """Record completion; an existing entry keeps its position."""
        self._entries[step_id] = at or _now_iso()
        logger.debug("Ledger: %s done", step_id)
        if self._autosave:
            self.save()

    def unmark(self, step_id: str) -> bool:
        """Forget a step (its effects were undone)."""
        removed = self._entries.pop(step_id, None) is not None
        if removed and self._autosave:
            self.save()
        return removed

    def clear(self) -> None:
        self._entries.clear()
        if self._autosave:
            self.save()

    # ── Persistence ────────────────────────────────────────────

    @classmethod
    def load(cls, path: Path, autosave: bool = True) -> StateLedger:
        """Load a ledger file; missing or corrupt files give an empty ledger."""
        ledger = cls(path=path, autosave=autosave)
        if not path.is_file():
            logger.info("No ledger at %s — starting fresh", path)
            return ledger

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Corrupt ledger %s: %s — starting fresh", path, e)
            return ledger

        entries = data.get("entries", []) if isinstance(data, dict) else []
        for item in entries:
            if isinstance(item, dict) and item.get("step_id"):
                ledger._entries[str(item["step_id"])] = str(item.get("completed_at") or _now_iso())
        logger.debug("Loaded %d ledger entries from %s", len(ledger), path)
        return ledger

    def save(self) -> None:
        """Write the ledger atomically.  No-op for in-memory ledgers."""
        if self._path is None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "schema_version": SCHEMA_VERSION,
            "updated_at": _now_iso(),
            "entries": [
                {"step_id": sid, "completed_at": ts} for sid, ts in self._entries.items()
            ],
        }
        content = json.dumps(data, indent=2) + "\n"

        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".ledger_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(self._path)
        except OSError:
            tmp.unlink(missing_ok=True)
            logger.error("Failed to save ledger to %s", self._path)
            raise

    def to_dict(self) -> dict:
        return {
            "path": str(self._path) if self._path else None,
            "entries": [{"step_id": sid, "completed_at": ts} for sid, ts in self._entries.items()],
        }
