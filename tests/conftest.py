from __future__ import annotations

import copy
import hashlib
import os
import sys
import threading
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest
from botocore.exceptions import ClientError


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` / `state.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


BUCKET = "acme-tf-state"
TABLE = "acme-tf-locks"
REGION = "eu-west-1"
STATE_KEY = "prod/network/terraform.tfstate"


def _err(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class FakeS3:
    """In-memory S3 covering the bucket and object calls the backend makes."""

    def __init__(self) -> None:
        self.buckets: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self._tick = 0
        self._mu = threading.Lock()

    def _now(self) -> datetime:
        self._tick += 1
        return datetime(2025, 1, 1, tzinfo=UTC) + timedelta(seconds=self._tick)

    def _bucket(self, name: str, op: str) -> Dict[str, Any]:
        b = self.buckets.get(name)
        if b is None:
            raise _err("NoSuchBucket", op)
        return b

    # -------- Buckets --------
    def add_bucket(self, name: str, *, region: str = REGION, versioning: bool = True) -> None:
        self.buckets[name] = {
            "region": region,
            "versioning": "Enabled" if versioning else None,
            "encryption": None,
            "pab": None,
            "objects": {},
        }

    def head_bucket(self, *, Bucket: str):
        self.calls.append("head_bucket")
        if Bucket not in self.buckets:
            raise _err("404", "HeadBucket")
        return {}

    def create_bucket(self, *, Bucket: str, CreateBucketConfiguration: Optional[dict] = None):
        self.calls.append("create_bucket")
        if Bucket in self.buckets:
            raise _err("BucketAlreadyOwnedByYou", "CreateBucket")
        region = (CreateBucketConfiguration or {}).get("LocationConstraint") or "us-east-1"
        self.add_bucket(Bucket, region=region, versioning=False)
        return {"Location": f"/{Bucket}"}

    def get_bucket_location(self, *, Bucket: str):
        region = self._bucket(Bucket, "GetBucketLocation")["region"]
        return {"LocationConstraint": None if region == "us-east-1" else region}

    def get_bucket_versioning(self, *, Bucket: str):
        status = self._bucket(Bucket, "GetBucketVersioning")["versioning"]
        return {"Status": status} if status else {}

    def put_bucket_versioning(self, *, Bucket: str, VersioningConfiguration: dict):
        self.calls.append("put_bucket_versioning")
        self._bucket(Bucket, "PutBucketVersioning")["versioning"] = VersioningConfiguration["Status"]
        return {}

    def get_bucket_encryption(self, *, Bucket: str):
        enc = self._bucket(Bucket, "GetBucketEncryption")["encryption"]
        if enc is None:
            raise _err("ServerSideEncryptionConfigurationNotFoundError", "GetBucketEncryption")
        return {"ServerSideEncryptionConfiguration": copy.deepcopy(enc)}

    def put_bucket_encryption(self, *, Bucket: str, ServerSideEncryptionConfiguration: dict):
        self.calls.append("put_bucket_encryption")
        self._bucket(Bucket, "PutBucketEncryption")["encryption"] = copy.deepcopy(ServerSideEncryptionConfiguration)
        return {}

    def get_public_access_block(self, *, Bucket: str):
        pab = self._bucket(Bucket, "GetPublicAccessBlock")["pab"]
        if pab is None:
            raise _err("NoSuchPublicAccessBlockConfiguration", "GetPublicAccessBlock")
        return {"PublicAccessBlockConfiguration": dict(pab)}

    def put_public_access_block(self, *, Bucket: str, PublicAccessBlockConfiguration: dict):
        self.calls.append("put_public_access_block")
        self._bucket(Bucket, "PutPublicAccessBlock")["pab"] = dict(PublicAccessBlockConfiguration)
        return {}

    # -------- Objects --------
    def _latest(self, bucket: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
        versions = bucket["objects"].get(key) or []
        return versions[-1] if versions else None

    def _store(self, bucket: Dict[str, Any], key: str, body: bytes, **extra: Any) -> Dict[str, Any]:
        entry = {
            "Body": body,
            "ETag": '"' + hashlib.md5(body).hexdigest() + '"',
            "VersionId": uuid4().hex if bucket["versioning"] == "Enabled" else "null",
            "LastModified": self._now(),
            **extra,
        }
        if bucket["versioning"] == "Enabled":
            bucket["objects"].setdefault(key, []).append(entry)
        else:
            bucket["objects"][key] = [entry]
        return entry

    def put_object(
        self,
        *,
        Bucket: str,
        Key: str,
        Body: bytes,
        ContentType: Optional[str] = None,
        ServerSideEncryption: Optional[str] = None,
        SSEKMSKeyId: Optional[str] = None,
        IfMatch: Optional[str] = None,
        IfNoneMatch: Optional[str] = None,
    ):
        with self._mu:
            self.calls.append("put_object")
            b = self._bucket(Bucket, "PutObject")
            current = self._latest(b, Key)
            if IfNoneMatch == "*" and current is not None:
                raise _err("PreconditionFailed", "PutObject")
            if IfMatch is not None and (current is None or current["ETag"] != IfMatch):
                raise _err("PreconditionFailed", "PutObject")
            entry = self._store(b, Key, Body, ServerSideEncryption=ServerSideEncryption, SSEKMSKeyId=SSEKMSKeyId)
            return {"ETag": entry["ETag"], "VersionId": entry["VersionId"]}

    def tamper(self, bucket: str, key: str, body: bytes) -> None:
        """Overwrite an object outside the backend (a manual edit)."""
        with self._mu:
            self._store(self.buckets[bucket], key, body)

    def get_object(self, *, Bucket: str, Key: str, VersionId: Optional[str] = None):
        b = self._bucket(Bucket, "GetObject")
        versions = b["objects"].get(Key) or []
        if not versions:
            raise _err("NoSuchKey", "GetObject")
        if VersionId is None:
            entry = versions[-1]
        else:
            matches = [v for v in versions if v["VersionId"] == VersionId]
            if not matches:
                raise _err("NoSuchVersion", "GetObject")
            entry = matches[0]
        return {"Body": _FakeBody(entry["Body"]), "ETag": entry["ETag"], "VersionId": entry["VersionId"]}

    def head_object(self, *, Bucket: str, Key: str):
        b = self._bucket(Bucket, "HeadObject")
        current = self._latest(b, Key)
        if current is None:
            raise _err("404", "HeadObject")
        return {"ETag": current["ETag"]}

    def list_object_versions(self, *, Bucket: str, Prefix: str = "", **_kw):
        b = self._bucket(Bucket, "ListObjectVersions")
        out = []
        for key, versions in b["objects"].items():
            if not key.startswith(Prefix):
                continue
            for i, v in enumerate(versions):
                out.append({
                    "Key": key,
                    "VersionId": v["VersionId"],
                    "ETag": v["ETag"],
                    "LastModified": v["LastModified"],
                    "IsLatest": i == len(versions) - 1,
                    "Size": len(v["Body"]),
                })
        return {"Versions": out, "IsTruncated": False}

    def list_objects_v2(self, *, Bucket: str, Prefix: str = "", **_kw):
        b = self._bucket(Bucket, "ListObjectsV2")
        keys = sorted(k for k, v in b["objects"].items() if k.startswith(Prefix) and v)
        return {"Contents": [{"Key": k} for k in keys], "IsTruncated": False}


class _FakeWaiter:
    def __init__(self) -> None:
        self.waits: List[dict] = []

    def wait(self, **kwargs) -> None:
        self.waits.append(kwargs)


class FakeDynamoDB:
    """In-memory DynamoDB supporting the lock table's conditional writes."""

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.waiter = _FakeWaiter()
        self._mu = threading.Lock()

    def _table(self, name: str, op: str) -> Dict[str, Any]:
        t = self.tables.get(name)
        if t is None:
            raise _err("ResourceNotFoundException", op)
        return t

    def describe_table(self, *, TableName: str):
        return {"Table": copy.deepcopy(self._table(TableName, "DescribeTable")["desc"])}

    def create_table(self, **kwargs):
        self.calls.append("create_table")
        name = kwargs["TableName"]
        if name in self.tables:
            raise _err("ResourceInUseException", "CreateTable")
        tp = kwargs.get("ProvisionedThroughput") or {"ReadCapacityUnits": 0, "WriteCapacityUnits": 0}
        desc = {
            "TableName": name,
            "TableArn": f"arn:aws:dynamodb:{REGION}:123456789012:table/{name}",
            "TableStatus": "ACTIVE",
            "KeySchema": copy.deepcopy(kwargs["KeySchema"]),
            "AttributeDefinitions": copy.deepcopy(kwargs["AttributeDefinitions"]),
            "BillingModeSummary": {"BillingMode": kwargs.get("BillingMode", "PROVISIONED")},
            "ProvisionedThroughput": dict(tp),
            "DeletionProtectionEnabled": kwargs.get("DeletionProtectionEnabled", False),
        }
        self.tables[name] = {"desc": desc, "items": {}}
        return {"TableDescription": copy.deepcopy(desc)}

    def get_waiter(self, name: str) -> _FakeWaiter:
        assert name == "table_exists"
        return self.waiter

    def put_item(self, *, TableName: str, Item: dict, ConditionExpression: Optional[str] = None):
        with self._mu:
            t = self._table(TableName, "PutItem")
            key = Item["LockID"]["S"]
            if ConditionExpression == "attribute_not_exists(LockID)" and key in t["items"]:
                raise _err("ConditionalCheckFailedException", "PutItem")
            t["items"][key] = copy.deepcopy(Item)
            return {}

    def get_item(self, *, TableName: str, Key: dict, ConsistentRead: bool = False):
        t = self._table(TableName, "GetItem")
        item = t["items"].get(Key["LockID"]["S"])
        return {"Item": copy.deepcopy(item)} if item else {}

    def delete_item(
        self,
        *,
        TableName: str,
        Key: dict,
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeValues: Optional[dict] = None,
    ):
        with self._mu:
            t = self._table(TableName, "DeleteItem")
            key = Key["LockID"]["S"]
            if ConditionExpression == "Info = :info":
                item = t["items"].get(key)
                if item is None or item.get("Info") != (ExpressionAttributeValues or {}).get(":info"):
                    raise _err("ConditionalCheckFailedException", "DeleteItem")
            t["items"].pop(key, None)
            return {}


@pytest.fixture
def s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def ddb() -> FakeDynamoDB:
    return FakeDynamoDB()


@pytest.fixture
def backend(s3: FakeS3, ddb: FakeDynamoDB):
    """Fakes with the state bucket and lock table already bootstrapped."""
    s3.add_bucket(BUCKET)
    ddb.create_table(
        TableName=TABLE,
        AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
        KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
        BillingMode="PAY_PER_REQUEST",
    )
    ddb.calls.clear()
    return s3, ddb


@pytest.fixture
def make_coordinator(backend):
    """Build independent coordinators (one per simulated operator process)."""
    from state.coordinator import RemoteStateCoordinator
    from state.lock_table import DynamoLockTable
    from state.s3_store import S3StateStore

    s3, ddb = backend

    def _make(key: str = STATE_KEY, **kwargs) -> RemoteStateCoordinator:
        store = S3StateStore(s3=s3, bucket=BUCKET, key=key)
        locks = DynamoLockTable(dynamodb=ddb, table_name=TABLE)
        return RemoteStateCoordinator(store=store, locks=locks, **kwargs)

    return _make


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:  # acts like time.monotonic
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
