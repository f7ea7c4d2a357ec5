from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Callable, Iterator, List, Optional

from common.aws import make_client
from common.config import BackendConfig, CoordinatorSettings, DEFAULT_WORKSPACE
from common.errors import (
    BackendNotFoundError,
    ConflictError,
    CorruptStateError,
    LockBusyError,
    LockNotHeldError,
    StaleLockError,
)
from common.log import get_audit_logger, get_logger
from common.poller import BoundedPoller

from .lock_table import DynamoLockTable
from .models import LockHandle, LockInfo, NewVersion, StateDocument, StateVersion
from .s3_store import S3StateStore, StoredObject


logger = get_logger(__name__)
audit = get_audit_logger(__name__)


class RemoteStateCoordinator:
    """
    Serializes read/modify/write cycles on one remote state document.

    Lifecycle: Unlocked -> Locked(holder) -> Unlocked. The Unlocked -> Locked
    transition is a conditional create in the lock table; everything else
    happens only while holding the resulting `LockHandle`.

    - `acquire_lock` fails fast with `LockBusyError` (or `StaleLockError` for
      a lock older than `stale_after` seconds) unless a wait timeout is set,
      in which case it polls with bounded backoff.
    - `read_state` / `write_state` require the live handle.
    - `write_state` refuses with `ConflictError` when `expected_version` is
      not the remote serial, and puts with an ETag precondition so a write
      that bypassed the lock is also detected.
    - `release_lock` must run on every exit path; prefer `locked()`.
    """

    def __init__(
        self,
        *,
        store: S3StateStore,
        locks: DynamoLockTable,
        lock_timeout: float = 0.0,
        poll_interval: float = 1.0,
        stale_after: float = 7200.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._locks = locks
        self._lock_timeout = lock_timeout
        self._poll_interval = poll_interval
        self._stale_after = stale_after
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self._lock_key = store.ref.path
        self._held: Optional[LockHandle] = None

    # -------- Construction helpers --------
    @classmethod
    def from_config(
        cls,
        config: BackendConfig,
        settings: Optional[CoordinatorSettings] = None,
        *,
        workspace: Optional[str] = None,
    ) -> "RemoteStateCoordinator":
        settings = settings or CoordinatorSettings()
        s3 = make_client(
            "s3",
            region=config.region,
            endpoint_url=config.s3_endpoint_url,
            use_ssl=config.encrypt_in_transit,
        )
        ddb = make_client(
            "dynamodb",
            region=config.region,
            endpoint_url=config.dynamodb_endpoint_url,
            use_ssl=config.encrypt_in_transit,
        )
        store = S3StateStore(
            s3=s3,
            bucket=config.storage_address,
            key=config.state_key(workspace),
            sse_algorithm=config.sse_algorithm,
            kms_key_id=config.kms_key_id,
            fernet_key=settings.fernet_key,
        )
        locks = DynamoLockTable(dynamodb=ddb, table_name=config.lock_table_name)
        return cls(
            store=store,
            locks=locks,
            lock_timeout=settings.lock_timeout_seconds,
            poll_interval=settings.poll_interval_seconds,
            stale_after=settings.stale_lock_after_seconds,
        )

    @property
    def lock_key(self) -> str:
        return self._lock_key

    @property
    def state_uri(self) -> str:
        return f"s3://{self._lock_key}"

    def check_backend(self) -> None:
        """Raise BackendNotFoundError if the bucket or lock table is missing."""
        if not self._store.bucket_exists():
            raise BackendNotFoundError(
                f"State bucket {self._store.ref.bucket!r} does not exist; run bootstrap first"
            )
        if not self._locks.table_exists():
            raise BackendNotFoundError(
                f"Lock table {self._locks.table_name!r} does not exist; run bootstrap first"
            )

    # -------- Locking --------
    def _try_acquire(self, info: LockInfo) -> LockHandle:
        try:
            self._locks.put_lock(self._lock_key, info)
        except LockBusyError as busy:
            holder = busy.holder
            if holder is not None and holder.is_stale(self._stale_after, self._now()):
                raise StaleLockError(
                    f"State {self._lock_key} has been locked for "
                    f"{int(holder.age(self._now()).total_seconds())}s: {holder.describe()}; "
                    f"a forced unlock is required if the holder is gone",
                    holder=holder,
                ) from busy
            raise
        return LockHandle(lock_key=self._lock_key, info=info)

    def acquire_lock(
        self,
        identity: str,
        operation: str,
        info: str = "",
        *,
        timeout: Optional[float] = None,
    ) -> LockHandle:
        """Take the state lock or raise LockBusyError.

        `timeout` (seconds) overrides the configured wait; 0 means one attempt.
        """
        if self._held is not None and not self._held.released:
            raise LockBusyError(
                f"This coordinator already holds {self._lock_key} ({self._held.lock_id})",
                holder=self._held.info,
            )
        wait = self._lock_timeout if timeout is None else timeout
        lock_info = LockInfo(operation=operation, info=info, who=identity, path=self._lock_key)

        def _on_retry(exc: BaseException, delay: float) -> None:
            holder = getattr(exc, "holder", None)
            logger.info(
                "waiting for state lock",
                path=self._lock_key,
                holder=holder.who if holder else None,
                retry_in=round(delay, 2),
            )

        poller = BoundedPoller(wait, self._poll_interval, clock=self._clock, sleep=self._sleep)
        handle = poller.run(
            lambda: self._try_acquire(lock_info),
            retry_on=(LockBusyError,),
            on_retry=_on_retry,
        )
        self._held = handle
        audit.info("state lock acquired", path=self._lock_key, lock_id=handle.lock_id, who=identity, operation=operation)
        return handle

    def release_lock(self, handle: LockHandle) -> None:
        """Delete this handle's lock record.

        ConflictError means the record was force-unlocked (and possibly
        re-taken) in the meantime; the handle is dead either way.
        """
        if handle.released:
            return
        try:
            self._locks.delete_lock(handle.lock_key, handle.info)
        except ConflictError:
            self._forget(handle)
            audit.warning("state lock lost before release", path=handle.lock_key, lock_id=handle.lock_id)
            raise
        self._forget(handle)
        audit.info("state lock released", path=handle.lock_key, lock_id=handle.lock_id)

    def _forget(self, handle: LockHandle) -> None:
        handle.released = True
        if self._held is handle:
            self._held = None

    @contextmanager
    def locked(self, identity: str, operation: str, info: str = "", *, timeout: Optional[float] = None) -> Iterator[LockHandle]:
        """Hold the state lock for the body of a `with` block, releasing it on every exit."""
        handle = self.acquire_lock(identity, operation, info, timeout=timeout)
        try:
            yield handle
        finally:
            self.release_lock(handle)

    def lock_status(self) -> Optional[LockInfo]:
        return self._locks.get_lock(self._lock_key)

    def is_stale(self, info: LockInfo) -> bool:
        return info.is_stale(self._stale_after, self._now())

    def force_unlock(self, lock_id: str, *, operator: str, reason: str) -> LockInfo:
        """Delete a lock held by someone else. Dangerous; always audit-logged.

        Refuses unless `lock_id` is the id of the current lock record.
        """
        current = self._locks.get_lock(self._lock_key)
        if current is None:
            raise ConflictError(f"No lock present on {self._lock_key}")
        if current.id != lock_id:
            raise ConflictError(
                f"Lock id mismatch on {self._lock_key}: requested {lock_id}, current {current.id}"
            )
        # Conditional on the record just read, so a lock taken over in between survives
        self._locks.delete_lock(self._lock_key, current)
        audit.warning(
            "state lock forcibly released",
            path=self._lock_key,
            lock_id=lock_id,
            operator=operator,
            reason=reason,
            holder=current.who,
            holder_operation=current.operation,
            lock_age_seconds=int(current.age(self._now()).total_seconds()),
        )
        return current

    # -------- State --------
    def _require(self, handle: LockHandle) -> None:
        if handle.released or self._held is not handle:
            raise LockNotHeldError(f"Operation on {self._lock_key} requires a held lock")

    def _fetch(self) -> Optional[StoredObject]:
        stored = self._store.read()
        expected = self._locks.get_digest(self._lock_key)
        if stored is None:
            if expected is not None:
                raise CorruptStateError(
                    f"Digest recorded for {self._lock_key} but the state object is missing"
                )
            return None
        if expected is not None and expected != stored.digest:
            raise CorruptStateError(
                f"State digest mismatch for {self._lock_key}: "
                f"object has {stored.digest}, lock table records {expected}"
            )
        return stored

    def read_state(self, handle: LockHandle) -> StateDocument:
        """Latest remote document; an empty one with serial 0 if none exists yet."""
        self._require(handle)
        stored = self._fetch()
        if stored is None:
            return StateDocument.empty()
        return stored.document

    def snapshot(self) -> StateDocument:
        """Unlocked read for commands that never persist anything."""
        stored = self._fetch()
        return stored.document if stored is not None else StateDocument.empty()

    def write_state(self, handle: LockHandle, doc: StateDocument, expected_version: int) -> NewVersion:
        """Persist `doc` as serial `expected_version + 1`.

        `doc` itself is not modified; the stored serial is on the returned `NewVersion`.
        """
        self._require(handle)
        stored = self._fetch()
        current_serial = stored.document.serial if stored is not None else 0
        if current_serial != expected_version:
            raise ConflictError(
                f"State {self._lock_key} is at serial {current_serial}, "
                f"expected {expected_version}; refresh and retry"
            )

        if stored is not None:
            if stored.document.lineage != doc.lineage:
                raise ConflictError(
                    f"Lineage mismatch for {self._lock_key}: remote {stored.document.lineage}, "
                    f"local {doc.lineage}"
                )
            if stored.document.same_content_as(doc):
                return NewVersion(serial=current_serial, etag=stored.etag, version_id=stored.version_id, written=False)

        new_doc = doc.model_copy(update={"serial": current_serial + 1})
        if stored is None:
            etag, version_id, digest = self._store.write(new_doc, if_none_match=True)
        else:
            etag, version_id, digest = self._store.write(new_doc, if_match=stored.etag)
        self._locks.put_digest(self._lock_key, digest)
        logger.info("state written", path=self._lock_key, serial=new_doc.serial, version_id=version_id)
        return NewVersion(serial=new_doc.serial, etag=etag, version_id=version_id)

    def push_initial(self, handle: LockHandle, doc: StateDocument) -> NewVersion:
        """Create-only write that keeps the document's own serial (migration)."""
        self._require(handle)
        etag, version_id, digest = self._store.write(doc, if_none_match=True)
        self._locks.put_digest(self._lock_key, digest)
        logger.info("initial state written", path=self._lock_key, serial=doc.serial, version_id=version_id)
        return NewVersion(serial=doc.serial, etag=etag, version_id=version_id)

    # -------- History / workspaces --------
    def list_versions(self) -> List[StateVersion]:
        return self._store.list_versions()

    def read_version(self, version_id: str) -> StateDocument:
        stored = self._store.read(version_id=version_id)
        if stored is None:
            raise BackendNotFoundError(f"No version {version_id} of {self._lock_key}")
        return stored.document

    def list_workspaces(self, config: BackendConfig) -> List[str]:
        """`default` plus every workspace that has a state object under the prefix."""
        names = [DEFAULT_WORKSPACE]
        prefix = f"{config.workspace_key_prefix}/"
        suffix = f"/{config.object_key}"
        for key in self._store.list_keys(prefix):
            if not key.endswith(suffix):
                continue
            name = key[len(prefix):-len(suffix)]
            if name and "/" not in name and name not in names:
                names.append(name)
        return names
