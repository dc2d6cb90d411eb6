"""Pre-install backup — snapshot paths to a tarball, restore on rollback."""

from __future__ import annotations

import logging
import shutil
import tarfile
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from stackprov.core.errors import BackupError, RestoreError
from stackprov.core.models.report import BackupRecord

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "pre-install-"
ARCHIVE_SUFFIX = ".tar.gz"


def _arcname(path: Path) -> str:
    """Archive member name: the absolute path without its leading slash."""
    return str(path).lstrip("/")


class BackupManager:
    """Create and restore ``pre-install-*.tar.gz`` snapshots.

    Members keep their absolute layout (minus the leading ``/``) and
    are restored relative to ``root``, which is ``/`` outside tests.
    """

    def __init__(self, backup_dir: Path, root: Path = Path("/")):
        self.backup_dir = backup_dir
        self.root = root

    def snapshot(self, paths: list[str] | set[str]) -> BackupRecord | None:
        """Archive every existing path in ``paths``.

        Returns:
            The new BackupRecord, or None when none of the paths exist
            (nothing to protect).

        Raises:
            BackupError: The archive could not be written.
        """
        existing = sorted({str(Path(p)) for p in paths if Path(p).exists()})
        if not existing:
            logger.info("Backup: none of %d path(s) exist, nothing to snapshot", len(paths))
            return None

        now = datetime.now(UTC)
        archive = self.backup_dir / f"{ARCHIVE_PREFIX}{now.strftime('%Y%m%d-%H%M%S-%f')}{ARCHIVE_SUFFIX}"
        backup_dir = self.backup_dir.resolve()

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            with tarfile.open(archive, "w:gz") as tar:
                for p in existing:
                    # the backup dir itself may live inside a backed-up tree
                    tar.add(
                        p,
                        arcname=_arcname(Path(p)),
                        filter=lambda ti: None if _inside(ti.name, backup_dir) else ti,
                    )
        except (OSError, tarfile.TarError) as e:
            if archive.is_file():
                archive.unlink()
            raise BackupError(f"Cannot create backup {archive}: {e}") from e

        logger.info("Backup created: %s (%d path(s))", archive, len(existing))
        return BackupRecord(paths=existing, archive=str(archive), created_at=now.isoformat())

    def restore(self, record: BackupRecord) -> None:
        """Overwrite the recorded paths with the archived copies.

        Destructive: current content at each recorded path is removed
        first.  The caller has already decided a rollback is wanted.

        Raises:
            RestoreError: Archive missing, unreadable, or unsafe.
        """
        archive = Path(record.archive)
        if not archive.is_file():
            raise RestoreError(f"Backup archive not found: {archive}")

        try:
            with tarfile.open(archive, "r:gz") as tar:
                members = tar.getmembers()
                for m in members:
                    parts = PurePosixPath(m.name).parts
                    if m.name.startswith("/") or ".." in parts:
                        raise RestoreError(f"Unsafe member in {archive}: {m.name}")

                for p in record.paths:
                    self._remove(self.root / _arcname(Path(p)))

                if hasattr(tarfile, "tar_filter"):
                    tar.extractall(self.root, members=members, filter="tar")
                else:
                    tar.extractall(self.root, members=members)
        except RestoreError:
            raise
        except (OSError, tarfile.TarError) as e:
            raise RestoreError(f"Cannot restore {archive}: {e}") from e

        logger.info("Restored %d path(s) from %s", len(record.paths), archive)

    def list_backups(self) -> list[Path]:
        """Existing snapshot archives, oldest first."""
        if not self.backup_dir.is_dir():
            return []
        return sorted(self.backup_dir.glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}"))

    def latest(self) -> Path | None:
        backups = self.list_backups()
        return backups[-1] if backups else None

    def _remove(self, target: Path) -> None:
        """Delete ``target``, sparing the backup directory if it lives inside."""
        if target.is_symlink() or target.is_file():
            target.unlink()
            return
        if not target.is_dir():
            return

        keep = self.backup_dir.resolve()
        resolved = target.resolve()
        if resolved == keep:
            return
        if resolved in keep.parents:
            for child in target.iterdir():
                self._remove(child)
        else:
            shutil.rmtree(target)


def _inside(member_name: str, directory: Path) -> bool:
    candidate = Path("/" + member_name)
    return candidate == directory or directory in candidate.parents
