from __future__ import annotations

from typing import Any, Optional

from botocore.exceptions import ClientError
from pydantic import ValidationError

from common.aws import client_error_code, is_condition_check_failed, make_client
from common.config import LOCK_KEY_ATTRIBUTE
from common.errors import BackendNotFoundError, ConflictError, CorruptStateError, LockBusyError

from .models import LockInfo


DIGEST_SUFFIX = "-md5"


class DynamoLockTable:
    """
    Lock and digest records in a DynamoDB table keyed by `LockID` (string).

    - Lock item:   {LockID: "<bucket>/<key>",     Info: <LockInfo JSON>}
    - Digest item: {LockID: "<bucket>/<key>-md5", Digest: <md5 hex>}

    `put_lock` is a conditional create (`attribute_not_exists(LockID)`), the
    one atomic primitive the whole locking scheme rests on.
    """

    def __init__(
        self,
        *,
        dynamodb: Optional[Any] = None,
        table_name: str,
        region_name: Optional[str] = None,
    ) -> None:
        self._ddb = dynamodb or make_client("dynamodb", region=region_name)
        self._table = table_name

    @property
    def table_name(self) -> str:
        return self._table

    def _raise_missing_table(self, e: ClientError) -> None:
        if client_error_code(e) == "ResourceNotFoundException":
            raise BackendNotFoundError(
                f"Lock table {self._table!r} does not exist; run bootstrap first"
            ) from e

    def table_exists(self) -> bool:
        try:
            self._ddb.describe_table(TableName=self._table)
        except ClientError as e:
            if client_error_code(e) == "ResourceNotFoundException":
                return False
            raise
        return True

    # -------- Locks --------
    def put_lock(self, lock_key: str, info: LockInfo) -> None:
        """Create the lock item only if none exists.

        Raises LockBusyError (with the current holder, when readable) if the
        item is already present.
        """
        try:
            self._ddb.put_item(
                TableName=self._table,
                Item={
                    LOCK_KEY_ATTRIBUTE: {"S": lock_key},
                    "Info": {"S": info.to_json()},
                },
                ConditionExpression=f"attribute_not_exists({LOCK_KEY_ATTRIBUTE})",
            )
        except ClientError as e:
            self._raise_missing_table(e)
            if is_condition_check_failed(e):
                holder = self.get_lock(lock_key)
                detail = holder.describe() if holder else "holder unknown"
                raise LockBusyError(f"State {lock_key} is locked: {detail}", holder=holder) from e
            raise

    def get_lock(self, lock_key: str) -> Optional[LockInfo]:
        try:
            resp = self._ddb.get_item(
                TableName=self._table,
                Key={LOCK_KEY_ATTRIBUTE: {"S": lock_key}},
                ConsistentRead=True,
            )
        except ClientError as e:
            self._raise_missing_table(e)
            raise
        item = resp.get("Item")
        if not item:
            return None
        raw = item.get("Info", {}).get("S")
        if not raw:
            return None
        try:
            return LockInfo.from_json(raw)
        except (ValueError, ValidationError) as ex:
            raise CorruptStateError(f"Unreadable lock record for {lock_key}") from ex

    def delete_lock(self, lock_key: str, info: LockInfo) -> None:
        """Delete the lock item only if it still holds exactly `info`.

        Raises ConflictError when the item is gone or belongs to another holder.
        """
        try:
            self._ddb.delete_item(
                TableName=self._table,
                Key={LOCK_KEY_ATTRIBUTE: {"S": lock_key}},
                ConditionExpression="Info = :info",
                ExpressionAttributeValues={":info": {"S": info.to_json()}},
            )
        except ClientError as e:
            self._raise_missing_table(e)
            if is_condition_check_failed(e):
                current = self.get_lock(lock_key)
                detail = current.describe() if current else "no lock present"
                raise ConflictError(
                    f"Lock {info.id} on {lock_key} is no longer held by this process: {detail}"
                ) from e
            raise

    # -------- Digests --------
    def get_digest(self, lock_key: str) -> Optional[str]:
        try:
            resp = self._ddb.get_item(
                TableName=self._table,
                Key={LOCK_KEY_ATTRIBUTE: {"S": lock_key + DIGEST_SUFFIX}},
                ConsistentRead=True,
            )
        except ClientError as e:
            self._raise_missing_table(e)
            raise
        item = resp.get("Item") or {}
        val = item.get("Digest", {}).get("S")
        return val or None

    def put_digest(self, lock_key: str, digest: str) -> None:
        try:
            self._ddb.put_item(
                TableName=self._table,
                Item={
                    LOCK_KEY_ATTRIBUTE: {"S": lock_key + DIGEST_SUFFIX},
                    "Digest": {"S": digest},
                },
            )
        except ClientError as e:
            self._raise_missing_table(e)
            raise
