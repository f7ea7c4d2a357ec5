from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from common.errors import (
    ConfirmationError,
    ConflictError,
    CorruptStateError,
    LockBusyError,
    StateBackendError,
)
from common.log import get_audit_logger, get_logger
from state.coordinator import RemoteStateCoordinator
from state.local_store import LocalStateFile
from state.models import LockInfo, StateDocument, content_digest


logger = get_logger(__name__)
audit = get_audit_logger(__name__)

MIGRATE_OPERATION = "migrate"


@dataclass(frozen=True)
class MigrationPlan:
    source: str
    target_uri: str
    lineage: str
    serial: int
    digest: str
    resource_count: int
    confirmation_token: str


def _confirmation_token(target_uri: str, lineage: str, serial: int, digest: str) -> str:
    material = f"{target_uri}:{lineage}:{serial}:{digest}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()[:16]


class StateMigration:
    """
    One-time move of the local state document into the remote backend.

    Two phases: `prepare()` validates preconditions and derives a
    confirmation token bound to the exact document and target; `commit()`
    performs the move only when handed that token. The local file is kept
    as a rollback copy and only marked superseded after the remote copy has
    been written and verified.
    """

    def __init__(self, local: LocalStateFile, coordinator: RemoteStateCoordinator, *, identity: str) -> None:
        self._local = local
        self._coord = coordinator
        self._identity = identity

    def _load_local(self) -> StateDocument:
        doc = self._local.read()
        if doc is None:
            raise StateBackendError(f"No local state at {self._local.path}; nothing to migrate")
        return doc

    def prepare(self) -> MigrationPlan:
        marker = self._local.superseded_by()
        if marker is not None:
            raise ConflictError(
                f"Local state {self._local.path} was already migrated to {marker.get('superseded_by')}"
            )
        if self._local.is_locked():
            holder = self._local.lock_holder()
            raise LockBusyError(f"Local state {self._local.path} is locked", holder=holder)
        doc = self._load_local()
        self._coord.check_backend()

        digest = content_digest(doc.to_json_bytes())
        return MigrationPlan(
            source=str(self._local.path),
            target_uri=self._coord.state_uri,
            lineage=doc.lineage,
            serial=doc.serial,
            digest=digest,
            resource_count=len(doc.resources),
            confirmation_token=_confirmation_token(self._coord.state_uri, doc.lineage, doc.serial, digest),
        )

    def commit(self, plan: MigrationPlan, token: str) -> StateDocument:
        if not hmac.compare_digest(plan.confirmation_token, token or ""):
            raise ConfirmationError("Migration not confirmed: confirmation token does not match the plan")

        local_lock = self._local.lock(LockInfo(operation=MIGRATE_OPERATION, who=self._identity, path=str(self._local.path)))
        try:
            doc = self._load_local()
            digest = content_digest(doc.to_json_bytes())
            if _confirmation_token(self._coord.state_uri, doc.lineage, doc.serial, digest) != plan.confirmation_token:
                raise ConfirmationError("Local state changed since the migration plan was prepared")

            with self._coord.locked(self._identity, MIGRATE_OPERATION, info=plan.source) as handle:
                remote = self._coord.read_state(handle)
                if remote.serial == 0 and remote.is_empty():
                    self._coord.push_initial(handle, doc)
                elif remote.lineage == doc.lineage and remote.model_dump(mode="json") == doc.model_dump(mode="json"):
                    logger.info("remote already holds this state; verifying only", target=plan.target_uri)
                else:
                    raise ConflictError(
                        f"{plan.target_uri} already holds a different state "
                        f"(lineage {remote.lineage}, serial {remote.serial}); refusing to overwrite"
                    )
                self._verify_round_trip(handle, doc)

            self._local.mark_superseded(remote_uri=plan.target_uri, serial=doc.serial, lineage=doc.lineage)
            audit.info("state migrated", source=plan.source, target=plan.target_uri, serial=doc.serial, lineage=doc.lineage)
            return doc
        finally:
            self._local.unlock(local_lock)

    def _verify_round_trip(self, handle, doc: StateDocument) -> None:
        fetched = self._coord.read_state(handle)
        if fetched.model_dump(mode="json") != doc.model_dump(mode="json"):
            raise CorruptStateError(
                f"Remote copy at {self._coord.state_uri} does not match the local document after write"
            )

    def verify(self) -> bool:
        """Re-run the round-trip check against the remote copy."""
        doc = self._load_local()
        with self._coord.locked(self._identity, "verify") as handle:
            self._verify_round_trip(handle, doc)
        return True
