from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from common.aws import client_error_code, is_not_found, is_precondition_failed, make_client
from common.errors import BackendNotFoundError, ConflictError, CorruptStateError
from common.log import get_logger

from .models import StateDocument, StateVersion, content_digest


logger = get_logger(__name__)


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


@dataclass
class S3ObjectRef:
    bucket: str
    key: str

    @property
    def path(self) -> str:
        return f"{self.bucket}/{self.key}"


@dataclass
class StoredObject:
    """Decoded state object plus the S3 metadata it was fetched with."""

    document: StateDocument
    etag: Optional[str]
    version_id: Optional[str]
    digest: str


class S3StateStore:
    """
    S3-backed persistence for `StateDocument`.

    Usage
    - `read()` returns the current object or None if the key does not exist.
      A missing bucket raises `BackendNotFoundError`.
    - `write(doc, if_match=..., if_none_match=...)` puts the encoded document
      with server-side encryption and returns `(etag, version_id, digest)`.
      `if_match` makes the put conditional on the current ETag;
      `if_none_match=True` makes it create-only. A failed precondition raises
      `ConflictError`.
    - With a Fernet key configured, the body is additionally encrypted
      client-side; the digest is always taken over the bytes stored in S3.
    """

    def __init__(
        self,
        *,
        s3: Optional[Any] = None,
        bucket: str,
        key: str,
        region_name: Optional[str] = None,
        sse_algorithm: str = "AES256",
        kms_key_id: Optional[str] = None,
        fernet_key: str | bytes | None = None,
    ) -> None:
        self._s3 = s3 or make_client("s3", region=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._sse_algorithm = sse_algorithm
        self._kms_key_id = kms_key_id
        self._fernet = _to_fernet(fernet_key) if fernet_key else None

    @property
    def ref(self) -> S3ObjectRef:
        return self._obj

    # -------- Encoding --------
    def _encode(self, doc: StateDocument) -> bytes:
        payload = doc.to_json_bytes()
        if self._fernet is not None:
            return self._fernet.encrypt(payload)
        return payload

    def _decode(self, body: bytes) -> StateDocument:
        if self._fernet is not None:
            try:
                body = self._fernet.decrypt(body)
            except InvalidToken as ex:
                raise CorruptStateError("Failed to decrypt state: invalid Fernet token") from ex
        return StateDocument.from_json_bytes(body)

    def _raise_missing_bucket(self, e: ClientError) -> None:
        if client_error_code(e) == "NoSuchBucket":
            raise BackendNotFoundError(
                f"State bucket {self._obj.bucket!r} does not exist; run bootstrap first"
            ) from e

    # -------- Core operations --------
    def read(self, *, version_id: Optional[str] = None) -> Optional[StoredObject]:
        """Fetch and decode the state object (or a specific retained version).

        Raises:
        - BackendNotFoundError if the bucket is missing.
        - CorruptStateError if the body cannot be decrypted or validated.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        kwargs: Dict[str, Any] = {"Bucket": self._obj.bucket, "Key": self._obj.key}
        if version_id is not None:
            kwargs["VersionId"] = version_id
        try:
            resp = self._s3.get_object(**kwargs)
        except ClientError as e:
            self._raise_missing_bucket(e)
            if is_not_found(e) or client_error_code(e) == "NoSuchVersion":
                return None
            raise

        body = resp["Body"].read()
        doc = self._decode(body)
        return StoredObject(
            document=doc,
            etag=resp.get("ETag"),
            version_id=resp.get("VersionId"),
            digest=content_digest(body),
        )

    def write(
        self,
        doc: StateDocument,
        *,
        if_match: Optional[str] = None,
        if_none_match: bool = False,
    ) -> Tuple[Optional[str], Optional[str], str]:
        """Encode and put the document; returns (etag, version_id, digest).

        Args:
        - if_match: expected current ETag; the put fails with ConflictError if
          the object changed since it was read.
        - if_none_match: create-only; fails with ConflictError if any object
          already exists at the key.
        """
        if if_match is not None and if_none_match:
            raise ValueError("if_match and if_none_match are mutually exclusive")

        body = self._encode(doc)
        kwargs: Dict[str, Any] = {
            "Bucket": self._obj.bucket,
            "Key": self._obj.key,
            "Body": body,
            "ContentType": "application/octet-stream" if self._fernet else "application/json",
            "ServerSideEncryption": self._sse_algorithm,
        }
        if self._kms_key_id:
            kwargs["SSEKMSKeyId"] = self._kms_key_id
        if if_match is not None:
            kwargs["IfMatch"] = if_match
        if if_none_match:
            kwargs["IfNoneMatch"] = "*"

        try:
            resp = self._s3.put_object(**kwargs)
        except ClientError as e:
            self._raise_missing_bucket(e)
            if is_precondition_failed(e):
                raise ConflictError(
                    f"State object s3://{self._obj.path} changed concurrently "
                    f"({client_error_code(e)})"
                ) from e
            raise

        logger.debug("state object written", path=self._obj.path, serial=doc.serial)
        return (resp.get("ETag"), resp.get("VersionId"), content_digest(body))

    def head(self) -> Optional[str]:
        """Return the current ETag, or None if the object does not exist."""
        try:
            resp = self._s3.head_object(Bucket=self._obj.bucket, Key=self._obj.key)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return resp.get("ETag")

    def bucket_exists(self) -> bool:
        try:
            self._s3.head_bucket(Bucket=self._obj.bucket)
        except ClientError as e:
            if is_not_found(e):
                return False
            raise
        return True

    def list_versions(self) -> List[StateVersion]:
        """Retained revisions of the state object, newest first."""
        out: List[StateVersion] = []
        kwargs: Dict[str, Any] = {"Bucket": self._obj.bucket, "Prefix": self._obj.key}
        while True:
            try:
                resp = self._s3.list_object_versions(**kwargs)
            except ClientError as e:
                self._raise_missing_bucket(e)
                raise
            for v in resp.get("Versions", []):
                # Prefix listing also matches longer keys
                if v.get("Key") != self._obj.key:
                    continue
                out.append(
                    StateVersion(
                        version_id=str(v.get("VersionId")),
                        etag=v.get("ETag"),
                        last_modified=v.get("LastModified"),
                        is_latest=bool(v.get("IsLatest")),
                        size=int(v.get("Size", 0)),
                    )
                )
            if not resp.get("IsTruncated"):
                break
            kwargs["KeyMarker"] = resp.get("NextKeyMarker")
            kwargs["VersionIdMarker"] = resp.get("NextVersionIdMarker")
        out.sort(
            key=lambda v: (v.is_latest, v.last_modified.timestamp() if v.last_modified else 0.0),
            reverse=True,
        )
        return out

    def list_keys(self, prefix: str) -> List[str]:
        keys: List[str] = []
        kwargs: Dict[str, Any] = {"Bucket": self._obj.bucket, "Prefix": prefix}
        while True:
            try:
                resp = self._s3.list_objects_v2(**kwargs)
            except ClientError as e:
                self._raise_missing_bucket(e)
                raise
            keys.extend(str(item["Key"]) for item in resp.get("Contents", []))
            if not resp.get("IsTruncated"):
                break
            kwargs["ContinuationToken"] = resp.get("NextContinuationToken")
        return keys
