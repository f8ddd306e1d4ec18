"""
Snapshot Store - Keyed get/put storage for aggregator checkpoints.

``FileSystemSnapshotStore`` implements atomic writes and backup management:
one JSON file per instrument, written temp → rename, with timestamped
backups rotated to the last N.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import re
import shutil

from ..core.constants import MAX_SNAPSHOT_BACKUPS
from ..core.exceptions import CheckpointWriteError, StateCorruptedError
from ..core.types import Contribution, Snapshot
from ..monitoring.logger import get_logger


SNAPSHOT_FORMAT_VERSION = 1

_REQUIRED_KEYS = (
    'instrument',
    'session_id',
    'volume',
    'notional',
    'log_position',
    'timestamp',
)


# ============================================================================
# Serialization
# ============================================================================

def snapshot_to_dict(snapshot: Snapshot) -> Dict[str, Any]:
    """Render a snapshot as JSON-safe primitives (Decimals as strings)."""
    return {
        'version': SNAPSHOT_FORMAT_VERSION,
        'instrument': snapshot.instrument,
        'session_id': snapshot.session_id,
        'volume': snapshot.volume,
        'notional': str(snapshot.notional),
        'log_position': snapshot.log_position,
        'last_seq': snapshot.last_seq,
        'timestamp': snapshot.timestamp.isoformat(),
        'provisional': snapshot.provisional,
        'applied': snapshot.applied,
        'filtered': snapshot.filtered,
        'contributions': {
            str(seq): {
                'price': str(c.price),
                'volume': c.volume,
                'notional': str(c.notional),
                'venue': c.venue,
                'conditions': sorted(c.conditions),
                'event_time': c.event_time.isoformat(),
            }
            for seq, c in sorted(snapshot.contributions.items())
        },
    }


def snapshot_from_dict(data: Dict[str, Any]) -> Snapshot:
    """
    Rebuild a snapshot from its JSON form.

    Raises:
        StateCorruptedError if required fields are missing or malformed
    """
    missing = [key for key in _REQUIRED_KEYS if key not in data]
    if missing:
        raise StateCorruptedError("Snapshot missing required fields", missing=missing)

    try:
        contributions = {
            int(seq): Contribution(
                price=Decimal(c['price']),
                volume=int(c['volume']),
                notional=Decimal(c['notional']),
                venue=c['venue'],
                conditions=frozenset(c.get('conditions') or ()),
                event_time=datetime.fromisoformat(c['event_time'])
            )
            for seq, c in (data.get('contributions') or {}).items()
        }
        log_position = data['log_position']
        last_seq = data.get('last_seq')
        return Snapshot(
            instrument=data['instrument'],
            session_id=data['session_id'],
            volume=int(data['volume']),
            notional=Decimal(data['notional']),
            log_position=int(log_position) if log_position is not None else None,
            last_seq=int(last_seq) if last_seq is not None else None,
            timestamp=datetime.fromisoformat(data['timestamp']),
            provisional=bool(data.get('provisional', False)),
            applied=int(data.get('applied', 0)),
            filtered=int(data.get('filtered', 0)),
            contributions=contributions
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise StateCorruptedError(f"Snapshot fields malformed: {e}", instrument=data.get('instrument'))


# ============================================================================
# Stores
# ============================================================================

class SnapshotStore(ABC):
    """Snapshot store contract: upsert and point lookup by instrument."""

    @abstractmethod
    def get(self, instrument: str) -> Optional[Snapshot]:
        """Latest snapshot for ``instrument``, or None."""

    @abstractmethod
    def put(self, instrument: str, snapshot: Snapshot) -> None:
        """Upsert; raises CheckpointWriteError on failure."""


class InMemorySnapshotStore(SnapshotStore):
    """Process-local store used for replay instances and tests."""

    def __init__(self):
        self._snapshots: Dict[str, Snapshot] = {}

    def get(self, instrument: str) -> Optional[Snapshot]:
        return self._snapshots.get(instrument)

    def put(self, instrument: str, snapshot: Snapshot) -> None:
        self._snapshots[instrument] = snapshot

    def __len__(self) -> int:
        return len(self._snapshots)


class FileSystemSnapshotStore(SnapshotStore):
    """
    File-based snapshot storage with atomic writes.

    Features:
    - Atomic writes (temp → rename)
    - Timestamped backups per instrument
    - Backup rotation (keep last N)
    - Integrity validation, with fallback to the newest valid backup
    """

    def __init__(self, state_dir: str, max_backups: int = MAX_SNAPSHOT_BACKUPS):
        """
        Initialize snapshot store.

        Args:
            state_dir: Directory for snapshot files
            max_backups: Number of backup files to keep per instrument
        """
        self.state_dir = Path(state_dir)
        self.max_backups = max_backups

        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir = self.state_dir / "backups"
        self.backup_dir.mkdir(exist_ok=True)

        self.logger = get_logger(__name__)

    @staticmethod
    def _file_key(instrument: str) -> str:
        return re.sub(r'[^A-Za-z0-9_.-]', '_', instrument)

    def current_file(self, instrument: str) -> Path:
        return self.state_dir / f"{self._file_key(instrument)}.json"

    def put(self, instrument: str, snapshot: Snapshot) -> None:
        """
        Save snapshot with atomic write.

        Process:
        1. Write to temp file
        2. Validate temp file
        3. Create backup of current
        4. Atomic rename temp → current
        5. Cleanup old backups

        Raises:
            CheckpointWriteError if any step fails
        """
        current = self.current_file(instrument)
        temp_file = current.with_suffix(".tmp")
        try:
            with open(temp_file, 'w') as f:
                json.dump(snapshot_to_dict(snapshot), f, indent=2)

            with open(temp_file, 'r') as f:
                snapshot_from_dict(json.load(f))

            if current.exists():
                timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
                backup_file = self.backup_dir / f"{self._file_key(instrument)}_{timestamp}.json"
                shutil.copy2(current, backup_file)

            temp_file.replace(current)
            self._cleanup_old_backups(instrument)

        except (OSError, ValueError, StateCorruptedError) as e:
            raise CheckpointWriteError(
                f"Failed to write snapshot: {e}",
                instrument=instrument,
                path=str(current)
            )

    def get(self, instrument: str) -> Optional[Snapshot]:
        """
        Load the current snapshot, falling back to backups if it is corrupted.

        Returns:
            Snapshot, or None if nothing valid exists
        """
        current = self.current_file(instrument)
        if not current.exists():
            return None

        try:
            return self._read(current)
        except StateCorruptedError as e:
            self.logger.error(
                "Snapshot corrupted, attempting backup restore",
                instrument=instrument,
                error=str(e)
            )
            return self._load_from_backup(instrument)

    def list_backups(self, instrument: str) -> List[str]:
        """Backup filenames for ``instrument``, newest first."""
        return [p.name for p in self._backups(instrument)]

    def _read(self, path: Path) -> Snapshot:
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateCorruptedError(f"Snapshot JSON corrupted: {e}", path=str(path))
        if not isinstance(data, dict):
            raise StateCorruptedError("Snapshot root is not an object", path=str(path))
        return snapshot_from_dict(data)

    def _load_from_backup(self, instrument: str) -> Optional[Snapshot]:
        for backup in self._backups(instrument):
            try:
                snapshot = self._read(backup)
            except StateCorruptedError:
                self.logger.warning("Backup also corrupted", backup_file=backup.name)
                continue
            self.logger.info(
                "Restored snapshot from backup",
                instrument=instrument,
                backup_file=backup.name,
                log_position=snapshot.log_position
            )
            return snapshot
        self.logger.error("No valid snapshot backup found", instrument=instrument)
        return None

    def _backups(self, instrument: str) -> List[Path]:
        key = self._file_key(instrument)
        pattern = re.compile(re.escape(key) + r'_\d{8}_\d{6}_\d{6}\.json$')
        # Timestamped names sort chronologically
        return sorted(
            (p for p in self.backup_dir.glob(f"{key}_*.json") if pattern.match(p.name)),
            key=lambda p: p.name,
            reverse=True
        )

    def _cleanup_old_backups(self, instrument: str) -> None:
        """Remove old backup files, keeping only most recent N."""
        for backup in self._backups(instrument)[self.max_backups:]:
            backup.unlink()
            self.logger.debug("Removed old backup", backup_file=backup.name)
