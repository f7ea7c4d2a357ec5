from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Optional

from common.errors import CorruptStateError, LockBusyError, LockNotHeldError
from common.log import get_logger

from .models import LockInfo, StateDocument


logger = get_logger(__name__)


class LocalStateFile:
    """
    State document kept on local disk before (and as a rollback copy after) migration.

    - `<path>`              the state document
    - `<path>.backup`       previous content, rewritten before every save
    - `.<name>.lock.info`   lock record, created with O_EXCL
    - `<path>.superseded`   marker written once the remote copy is authoritative

    The state file itself is never deleted by this class.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def backup_path(self) -> Path:
        return self._path.with_name(self._path.name + ".backup")

    @property
    def lock_path(self) -> Path:
        return self._path.with_name(f".{self._path.name}.lock.info")

    @property
    def superseded_path(self) -> Path:
        return self._path.with_name(self._path.name + ".superseded")

    def exists(self) -> bool:
        return self._path.exists()

    def read(self) -> Optional[StateDocument]:
        if not self._path.exists():
            return None
        return StateDocument.from_json_bytes(self._path.read_bytes())

    def write(self, doc: StateDocument) -> None:
        """Atomically replace the state file, keeping the previous content as a backup."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if self._path.exists():
            self.backup_path.write_bytes(self._path.read_bytes())
        tmp = self._path.with_name(self._path.name + ".tmp")
        with tmp.open("wb") as f:
            f.write(doc.to_json_bytes())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._path)
        logger.debug("local state written", path=str(self._path), serial=doc.serial)

    # -------- Locking --------
    def lock(self, info: LockInfo) -> LockInfo:
        """Create the lock-info file if absent; LockBusyError otherwise."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as ex:
            holder = self.lock_holder()
            detail = holder.describe() if holder else "holder unknown"
            raise LockBusyError(f"Local state {self._path} is locked: {detail}", holder=holder) from ex
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(info.to_json())
        return info

    def lock_holder(self) -> Optional[LockInfo]:
        try:
            raw = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LockInfo.from_json(raw)
        except ValueError:
            return None

    def is_locked(self) -> bool:
        return self.lock_path.exists()

    def unlock(self, info: LockInfo) -> None:
        holder = self.lock_holder()
        if holder is None or holder.id != info.id:
            raise LockNotHeldError(f"Local state {self._path} is not locked by {info.id}")
        self.lock_path.unlink()

    # -------- Supersession --------
    def mark_superseded(self, *, remote_uri: str, serial: int, lineage: str) -> None:
        marker = {
            "superseded_by": remote_uri,
            "serial": serial,
            "lineage": lineage,
            "at": datetime.now(UTC).isoformat(timespec="seconds"),
        }
        self.superseded_path.write_text(json.dumps(marker, indent=2, sort_keys=True), encoding="utf-8")
        logger.info("local state superseded", path=str(self._path), remote=remote_uri)

    def superseded_by(self) -> Optional[Dict[str, Any]]:
        if not self.superseded_path.exists():
            return None
        try:
            raw = json.loads(self.superseded_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as ex:
            raise CorruptStateError(f"Unreadable supersession marker {self.superseded_path}") from ex
        return raw if isinstance(raw, dict) else None
