"""
Backup and restore for HelpBoard deployments.

Handles:
- Point-in-time snapshots (database dump + active configuration)
- Verification before any restore touches live state
- All-or-nothing restore used by rollback
- Retention-based pruning that always keeps the newest complete snapshot
"""

import os
import re
import gzip
import json
import zlib
import shutil
import tarfile
import logging
from pathlib import Path
from typing import Optional, Dict, List, Any
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .config import DeployConfig
from .datastore import Datastore
from .errors import BackupError, DatastoreError, RollbackError

logger = logging.getLogger(__name__)


METADATA_FILE = "snapshot.json"
DATABASE_FILE = "database.sql.gz"
CONFIG_FILE = "config.tar.gz"

# Archive member names for the captured configuration
ENV_MEMBER = "env"
STATUS_MEMBER = "status.json"
SSL_MEMBER = "ssl"


def _remove(path: Path):
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class _Swap:
    """Replace one file or directory by renames that can be reversed."""

    def __init__(self, target: Path):
        self.target = target
        # None removes the target instead of replacing it
        self.incoming: Optional[Path] = target.with_name(f".{target.name}.restore")
        self.previous = target.with_name(f".{target.name}.pre-restore")

    def apply(self):
        _remove(self.previous)
        if self.target.exists() or self.target.is_symlink():
            os.rename(self.target, self.previous)
        if self.incoming is not None:
            os.rename(self.incoming, self.target)

    def undo(self):
        if self.incoming is not None and not self.incoming.exists() and self.target.exists():
            os.rename(self.target, self.incoming)
        if self.previous.exists() or self.previous.is_symlink():
            os.rename(self.previous, self.target)

    def discard(self, keep_previous: bool = False):
        if self.incoming is not None:
            _remove(self.incoming)
        if not keep_previous:
            _remove(self.previous)


@dataclass
class BackupSnapshot:
    """A point-in-time capture used for rollback."""
    id: str
    label: str
    created_at: datetime
    path: Path
    database_dump: Optional[str] = None
    config_archive: Optional[str] = None
    config_members: List[str] = field(default_factory=list)
    size_bytes: int = 0
    complete: bool = False
    restored_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "created_at": self.created_at.isoformat(),
            "path": str(self.path),
            "database_dump": self.database_dump,
            "config_archive": self.config_archive,
            "config_members": self.config_members,
            "size_bytes": self.size_bytes,
            "size_human": self._human_size(self.size_bytes),
            "complete": self.complete,
            "restored_at": self.restored_at.isoformat() if self.restored_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupSnapshot":
        restored = data.get("restored_at")
        return cls(
            id=data["id"],
            label=data["label"],
            created_at=datetime.fromisoformat(data["created_at"]),
            path=Path(data["path"]),
            database_dump=data.get("database_dump"),
            config_archive=data.get("config_archive"),
            config_members=list(data.get("config_members", [])),
            size_bytes=data.get("size_bytes", 0),
            complete=data.get("complete", False),
            restored_at=datetime.fromisoformat(restored) if restored else None,
        )

    @staticmethod
    def _human_size(size_bytes: float) -> str:
        for unit in ["B", "KB", "MB", "GB"]:
            if size_bytes < 1024:
                return f"{size_bytes:.1f} {unit}"
            size_bytes /= 1024
        return f"{size_bytes:.1f} TB"


class BackupManager:
    """
    Manages snapshots under DEPLOY_DIR/backups.

    A snapshot directory only counts once its snapshot.json has been
    written with complete=True; that file is always written last.
    """

    def __init__(self, config: DeployConfig, datastore: Datastore):
        self.config = config
        self.datastore = datastore
        self.backup_dir = config.backup_dir

    def _generate_snapshot_id(self, label: str, created_at: datetime) -> str:
        safe_label = re.sub(r"[^A-Za-z0-9_-]+", "-", label).strip("-") or "manual"
        return f"{created_at:%Y%m%d_%H%M%S_%f}_{safe_label}"

    # Capture

    def snapshot(self, label: str = "manual", require_database: bool = False) -> BackupSnapshot:
        """
        Capture the datastore and the active configuration.

        The database dump is skipped when the datastore is unreachable,
        unless require_database is set, in which case BackupError is raised.
        """
        created_at = datetime.now()
        snapshot_id = self._generate_snapshot_id(label, created_at)
        path = self.backup_dir / snapshot_id
        path.mkdir(parents=True, exist_ok=False)

        try:
            logger.info(f"Creating snapshot: {snapshot_id}")
            dump_name = self._capture_database(path, require_database)
            members = self._capture_config(path)

            snapshot = BackupSnapshot(
                id=snapshot_id,
                label=label,
                created_at=created_at,
                path=path,
                database_dump=dump_name,
                config_archive=CONFIG_FILE,
                config_members=members,
                size_bytes=sum(f.stat().st_size for f in path.iterdir() if f.is_file()),
                complete=True,
            )
            self._write_metadata(snapshot)
        except (DatastoreError, OSError, tarfile.TarError) as e:
            shutil.rmtree(path, ignore_errors=True)
            raise BackupError(f"Snapshot {snapshot_id} failed: {e}")

        logger.info(
            f"Snapshot completed: {snapshot_id} "
            f"({snapshot._human_size(snapshot.size_bytes)}, database: {'yes' if dump_name else 'no'})"
        )
        return snapshot

    def _capture_database(self, path: Path, require_database: bool) -> Optional[str]:
        if not self.datastore.available():
            if require_database:
                raise DatastoreError("datastore is not reachable")
            logger.warning("Datastore not reachable, snapshot will hold configuration only")
            return None

        dump = self.datastore.dump()
        with gzip.open(path / DATABASE_FILE, "wt") as f:
            f.write(dump)
        return DATABASE_FILE

    def _capture_config(self, path: Path) -> List[str]:
        sources = {
            ENV_MEMBER: self.config.active_env_file,
            STATUS_MEMBER: self.config.status_path,
            SSL_MEMBER: self.config.ssl_dir,
        }
        members = []
        with tarfile.open(path / CONFIG_FILE, "w:gz") as tar:
            for arcname, source in sources.items():
                if source.exists():
                    tar.add(source, arcname=arcname)
                    members.append(arcname)
        return members

    def _write_metadata(self, snapshot: BackupSnapshot):
        target = snapshot.path / METADATA_FILE
        tmp = snapshot.path / f".{METADATA_FILE}.tmp"
        with open(tmp, "w") as f:
            json.dump(snapshot.to_dict(), f, indent=2)
        os.replace(tmp, target)

    # Lookup

    def _load(self, path: Path) -> Optional[BackupSnapshot]:
        meta_path = path / METADATA_FILE
        if not meta_path.exists():
            return None
        try:
            with open(meta_path) as f:
                snapshot = BackupSnapshot.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Unreadable snapshot metadata {meta_path}: {e}")
            return None
        snapshot.path = path
        return snapshot

    def list_snapshots(self, include_incomplete: bool = False) -> List[BackupSnapshot]:
        """Snapshots sorted oldest first."""
        if not self.backup_dir.exists():
            return []
        snapshots = []
        for path in sorted(p for p in self.backup_dir.iterdir() if p.is_dir()):
            snapshot = self._load(path)
            if snapshot is None:
                continue
            if snapshot.complete or include_incomplete:
                snapshots.append(snapshot)
        return snapshots

    def get(self, snapshot_id: str) -> Optional[BackupSnapshot]:
        path = self.backup_dir / snapshot_id
        if not path.is_dir():
            return None
        return self._load(path)

    def latest(self) -> Optional[BackupSnapshot]:
        snapshots = self.list_snapshots()
        return snapshots[-1] if snapshots else None

    # Restore

    def verify(self, snapshot: BackupSnapshot) -> Optional[str]:
        """
        Read every artifact end to end. Returns the SQL dump text, or None
        when the snapshot holds no database dump. Raises RollbackError.
        """
        meta = self._load(snapshot.path)
        if meta is None or not meta.complete:
            raise RollbackError(snapshot.id, "snapshot metadata missing or incomplete")

        dump = None
        try:
            if meta.database_dump:
                with gzip.open(snapshot.path / meta.database_dump, "rt") as f:
                    dump = f.read()

            if meta.config_archive:
                with tarfile.open(snapshot.path / meta.config_archive, "r:gz") as tar:
                    names = set()
                    for member in tar.getmembers():
                        names.add(member.name.split("/", 1)[0])
                        if member.isfile():
                            tar.extractfile(member).read()
                missing = set(meta.config_members) - names
                if missing:
                    raise RollbackError(snapshot.id, f"config archive lacks {', '.join(sorted(missing))}")
        except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
            raise RollbackError(snapshot.id, f"artifact unreadable: {e}")

        return dump

    def restore(self, snapshot: BackupSnapshot):
        """
        Restore the datastore and configuration from snapshot.

        Artifacts are verified and staged beside their targets first. The
        configuration is then swapped in by renames that keep the current
        files aside, and the dump is replayed through the datastore's
        all-or-nothing restore. If the replay fails the renames are undone,
        so any failure leaves the current state untouched.
        """
        logger.info(f"Restoring snapshot: {snapshot.id}")
        dump = self.verify(snapshot)

        staging = self.config.deploy_dir / f".restore-{snapshot.id}"
        shutil.rmtree(staging, ignore_errors=True)
        swaps: List[_Swap] = []
        applied: List[_Swap] = []
        restored = False
        try:
            if snapshot.config_archive:
                with tarfile.open(snapshot.path / snapshot.config_archive, "r:gz") as tar:
                    tar.extractall(staging, filter="data")
            else:
                staging.mkdir(parents=True)
            self._stage_config(staging, snapshot, swaps)

            for swap in swaps:
                applied.append(swap)
                swap.apply()

            if dump is not None:
                self.datastore.restore(dump)
            else:
                logger.warning(f"Snapshot {snapshot.id} has no database dump, datastore left as is")
            restored = True
        except (DatastoreError, OSError, tarfile.TarError) as e:
            self._undo_swaps(snapshot, applied)
            raise RollbackError(snapshot.id, str(e))
        finally:
            for swap in swaps:
                # Keep the set-aside files when putting them back failed
                swap.discard(keep_previous=not restored)
            shutil.rmtree(staging, ignore_errors=True)

        self.mark_restored(snapshot)
        logger.info(f"Snapshot restored: {snapshot.id}")

    def _stage_config(self, staging: Path, snapshot: BackupSnapshot, swaps: List[_Swap]):
        """Move staged configuration next to each target so the swap is a rename."""
        for member, target in (
            (ENV_MEMBER, self.config.active_env_file),
            (STATUS_MEMBER, self.config.status_path),
            (SSL_MEMBER, self.config.ssl_dir),
        ):
            source = staging / member
            swap = _Swap(target)
            if source.exists():
                swaps.append(swap)
                target.parent.mkdir(parents=True, exist_ok=True)
                # Left over from an interrupted restore
                _remove(swap.incoming)
                if source.is_dir():
                    shutil.move(str(source), str(swap.incoming))
                    os.chmod(swap.incoming, 0o700)
                else:
                    shutil.copy2(source, swap.incoming)
            elif member == STATUS_MEMBER and member not in snapshot.config_members:
                # No status existed when the snapshot was taken
                swap.incoming = None
                swaps.append(swap)

    def _undo_swaps(self, snapshot: BackupSnapshot, applied: List[_Swap]):
        for swap in reversed(applied):
            try:
                swap.undo()
            except OSError as e:
                logger.critical(f"Could not put back {swap.target} after failed restore of {snapshot.id}: {e}")

    def mark_restored(self, snapshot: BackupSnapshot):
        snapshot.restored_at = datetime.now()
        self._write_metadata(snapshot)

    # Retention

    def prune(self, retention_days: Optional[int] = None, now: Optional[datetime] = None) -> List[str]:
        """Delete snapshots older than the retention window. The newest complete one always stays."""
        retention_days = retention_days if retention_days is not None else self.config.backup_retention_days
        cutoff = (now or datetime.now()) - timedelta(days=retention_days)

        newest = self.latest()
        pruned = []
        for snapshot in self.list_snapshots(include_incomplete=True):
            if newest is not None and snapshot.id == newest.id:
                continue
            if snapshot.created_at < cutoff:
                shutil.rmtree(snapshot.path, ignore_errors=True)
                pruned.append(snapshot.id)
                logger.info(f"Pruned snapshot: {snapshot.id}")

        return pruned
