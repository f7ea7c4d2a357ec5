from __future__ import annotations

import getpass
import hashlib
import json
import socket
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.errors import CorruptStateError


STATE_FORMAT_VERSION = 4
TOOL_VERSION = "1.0.0"


class Resource(BaseModel):
    """One declared resource and the real-world instances it maps to."""

    model_config = ConfigDict(extra="allow")

    mode: str = "managed"
    type: str
    name: str
    provider: str = 'provider["registry.terraform.io/hashicorp/aws"]'
    instances: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def address(self) -> str:
        prefix = "data." if self.mode == "data" else ""
        return f"{prefix}{self.type}.{self.name}"


class StateDocument(BaseModel):
    """
    The authoritative record mapping declared resources to real infrastructure.

    Fields
    - version: state format version (4).
    - serial: increases on every content-changing write to the remote copy.
    - lineage: fixed at creation; two documents with different lineage are
      unrelated histories and must never overwrite one another.
    - outputs / resources: the tracked content.

    Notes
    - Unknown top-level keys are kept so a read/write cycle is lossless.
    - Encoded as deterministic JSON (sorted keys, two-space indent).
    """

    model_config = ConfigDict(extra="allow")

    version: int = STATE_FORMAT_VERSION
    terraform_version: str = TOOL_VERSION
    serial: int = Field(default=0, ge=0)
    lineage: str = Field(default_factory=lambda: str(uuid4()))
    outputs: Dict[str, Any] = Field(default_factory=dict)
    resources: List[Resource] = Field(default_factory=list)

    @classmethod
    def empty(cls, lineage: Optional[str] = None) -> "StateDocument":
        if lineage is None:
            return cls()
        return cls(lineage=lineage)

    def is_empty(self) -> bool:
        return not self.resources and not self.outputs

    def content(self) -> Dict[str, Any]:
        """Everything except the serial; used to decide whether a write changes anything."""
        data = self.model_dump(mode="json")
        data.pop("serial", None)
        return data

    def same_content_as(self, other: "StateDocument") -> bool:
        return self.content() == other.content()

    def find(self, type_: str, name: str) -> Optional[Resource]:
        for res in self.resources:
            if res.type == type_ and res.name == name:
                return res
        return None

    def upsert(self, resource: Resource) -> bool:
        """Insert or replace a resource by (type, name). Returns True if content changed."""
        for i, res in enumerate(self.resources):
            if res.type == resource.type and res.name == resource.name:
                if res.model_dump(mode="json") == resource.model_dump(mode="json"):
                    return False
                self.resources[i] = resource
                return True
        self.resources.append(resource)
        return True

    def to_json_bytes(self) -> bytes:
        return (json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True) + "\n").encode("utf-8")

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "StateDocument":
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as ex:
            raise CorruptStateError("State is not valid JSON") from ex
        if not isinstance(raw, dict):
            raise CorruptStateError("State must be a JSON object")
        version = raw.get("version")
        if version != STATE_FORMAT_VERSION:
            raise CorruptStateError(f"Unsupported state format version: {version!r}")
        try:
            return cls.model_validate(raw)
        except ValidationError as ex:
            raise CorruptStateError(f"State failed schema validation: {ex}") from ex


def content_digest(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def default_identity() -> str:
    try:
        user = getpass.getuser()
    except Exception:
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class LockInfo(BaseModel):
    """
    Lock record stored in the lock table while a state path is held.

    Serialized with the field names other state tooling expects
    (`ID`, `Operation`, `Info`, `Who`, `Version`, `Created`, `Path`).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()), alias="ID")
    operation: str = Field(default="", alias="Operation")
    info: str = Field(default="", alias="Info")
    who: str = Field(default_factory=default_identity, alias="Who")
    version: str = Field(default=TOOL_VERSION, alias="Version")
    created: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="Created")
    path: str = Field(default="", alias="Path")

    def age(self, now: Optional[datetime] = None) -> timedelta:
        now = now or datetime.now(UTC)
        created = self.created if self.created.tzinfo else self.created.replace(tzinfo=UTC)
        return now - created

    def is_stale(self, threshold_seconds: float, now: Optional[datetime] = None) -> bool:
        return self.age(now).total_seconds() > threshold_seconds

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "LockInfo":
        return cls.model_validate(json.loads(raw))

    def describe(self) -> str:
        return (
            f"ID={self.id} Path={self.path} Operation={self.operation} "
            f"Who={self.who} Created={self.created.isoformat()}"
        )


@dataclass
class LockHandle:
    """Proof of lock possession returned by `acquire_lock`."""

    lock_key: str
    info: LockInfo
    released: bool = False

    @property
    def lock_id(self) -> str:
        return self.info.id


@dataclass
class NewVersion:
    serial: int
    etag: Optional[str]
    version_id: Optional[str]
    written: bool = True


@dataclass
class StateVersion:
    """One retained revision of the state object in the bucket."""

    version_id: str
    etag: Optional[str]
    last_modified: Optional[datetime]
    is_latest: bool
    size: int = 0
