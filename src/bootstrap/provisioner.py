from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from common.aws import client_error_code, make_client
from common.config import BootstrapConfig
from common.errors import ConflictError
from common.log import get_logger
from state.local_store import LocalStateFile
from state.models import Resource, StateDocument


logger = get_logger(__name__)

US_EAST_1 = "us-east-1"
BUCKET_RESOURCE_NAME = "terraform_state"
TABLE_RESOURCE_NAME = "terraform_locks"


@dataclass
class BootstrapResult:
    bucket: str
    table: str
    bucket_created: bool
    table_created: bool
    state_changed: bool
    bucket_arn: str = ""
    table_arn: str = ""

    @property
    def changed(self) -> bool:
        return self.bucket_created or self.table_created or self.state_changed


@dataclass
class _Mismatches:
    what: str
    items: List[str] = field(default_factory=list)

    def check(self, name: str, want: Any, have: Any) -> None:
        if want != have:
            self.items.append(f"{name}: want {want!r}, have {have!r}")

    def raise_if_any(self) -> None:
        if self.items:
            raise ConflictError(
                f"{self.what} already exists with conflicting settings; reconcile manually: "
                + "; ".join(self.items)
            )


class BootstrapProvisioner:
    """
    Create the state bucket and lock table, tracking them in a local state file.

    - Existing resources are inspected, never modified: identical settings are
      a no-op, anything different raises `ConflictError` listing every
      mismatch.
    - No rollback: if a later call fails after `create_bucket`, the bucket
      stays and the operator reconciles.
    - The local document is written only when a tracked resource changes,
      so a re-run against an unchanged setup leaves its serial alone.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        *,
        local: LocalStateFile,
        s3: Optional[Any] = None,
        dynamodb: Optional[Any] = None,
        wait_delay: int = 2,
        wait_attempts: int = 60,
    ) -> None:
        self._cfg = config
        self._local = local
        self._s3 = s3 or make_client("s3", region=config.region)
        self._ddb = dynamodb or make_client("dynamodb", region=config.region)
        self._wait = {"Delay": wait_delay, "MaxAttempts": wait_attempts}

    def ensure(self) -> BootstrapResult:
        bucket_created = self.ensure_bucket()
        table_created, table_arn = self.ensure_table()
        state_changed = self._record(table_arn)
        result = BootstrapResult(
            bucket=self._cfg.bucket_name,
            table=self._cfg.table_name,
            bucket_created=bucket_created,
            table_created=table_created,
            state_changed=state_changed,
            bucket_arn=f"arn:aws:s3:::{self._cfg.bucket_name}",
            table_arn=table_arn,
        )
        logger.info(
            "bootstrap complete",
            bucket=result.bucket,
            table=result.table,
            bucket_created=bucket_created,
            table_created=table_created,
            state_changed=state_changed,
        )
        return result

    # -------- Bucket --------
    def _bucket_exists(self) -> bool:
        try:
            self._s3.head_bucket(Bucket=self._cfg.bucket_name)
        except ClientError as e:
            code = client_error_code(e)
            if code in ("404", "NoSuchBucket", "NotFound"):
                return False
            if code in ("403", "AccessDenied"):
                raise ConflictError(
                    f"Bucket {self._cfg.bucket_name!r} exists but is not accessible (owned by another account?)"
                ) from e
            raise
        return True

    def ensure_bucket(self) -> bool:
        """Create and configure the bucket if absent. Returns True if created."""
        name = self._cfg.bucket_name
        if self._bucket_exists():
            self._verify_bucket()
            logger.info("bucket already configured", bucket=name)
            return False

        kwargs: Dict[str, Any] = {"Bucket": name}
        if self._cfg.region != US_EAST_1:
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._cfg.region}
        try:
            self._s3.create_bucket(**kwargs)
        except ClientError as e:
            code = client_error_code(e)
            if code == "BucketAlreadyExists":
                raise ConflictError(f"Bucket name {name!r} is taken by another account") from e
            if code == "BucketAlreadyOwnedByYou":
                # Created concurrently by another run; treat like an existing bucket
                self._verify_bucket()
                return False
            raise
        logger.info("bucket created", bucket=name, region=self._cfg.region)

        if self._cfg.versioning:
            self._s3.put_bucket_versioning(
                Bucket=name,
                VersioningConfiguration={"Status": "Enabled"},
            )
        self._s3.put_bucket_encryption(
            Bucket=name,
            ServerSideEncryptionConfiguration={"Rules": [self._encryption_rule()]},
        )
        self._s3.put_public_access_block(
            Bucket=name,
            PublicAccessBlockConfiguration=self._cfg.public_access_block(),
        )
        return True

    def _encryption_rule(self) -> Dict[str, Any]:
        default: Dict[str, Any] = {"SSEAlgorithm": self._cfg.sse_algorithm}
        if self._cfg.kms_key_id:
            default["KMSMasterKeyID"] = self._cfg.kms_key_id
        rule: Dict[str, Any] = {"ApplyServerSideEncryptionByDefault": default}
        if self._cfg.sse_algorithm == "aws:kms":
            rule["BucketKeyEnabled"] = True
        return rule

    def _verify_bucket(self) -> None:
        name = self._cfg.bucket_name
        mm = _Mismatches(f"Bucket {name!r}")

        loc = self._s3.get_bucket_location(Bucket=name).get("LocationConstraint") or US_EAST_1
        mm.check("region", self._cfg.region, loc)

        status = self._s3.get_bucket_versioning(Bucket=name).get("Status")
        mm.check("versioning", self._cfg.versioning, status == "Enabled")

        try:
            rules = (
                self._s3.get_bucket_encryption(Bucket=name)
                .get("ServerSideEncryptionConfiguration", {})
                .get("Rules", [])
            )
        except ClientError as e:
            if client_error_code(e) != "ServerSideEncryptionConfigurationNotFoundError":
                raise
            rules = []
        default = rules[0].get("ApplyServerSideEncryptionByDefault", {}) if rules else {}
        mm.check("sse_algorithm", self._cfg.sse_algorithm, default.get("SSEAlgorithm"))
        if self._cfg.kms_key_id:
            mm.check("kms_key_id", self._cfg.kms_key_id, default.get("KMSMasterKeyID"))

        try:
            pab = self._s3.get_public_access_block(Bucket=name).get("PublicAccessBlockConfiguration", {})
        except ClientError as e:
            if client_error_code(e) != "NoSuchPublicAccessBlockConfiguration":
                raise
            pab = {}
        for flag, want in self._cfg.public_access_block().items():
            mm.check(flag, want, bool(pab.get(flag, False)))

        mm.raise_if_any()

    # -------- Lock table --------
    def _describe_table(self) -> Optional[Dict[str, Any]]:
        try:
            return self._ddb.describe_table(TableName=self._cfg.table_name)["Table"]
        except ClientError as e:
            if client_error_code(e) == "ResourceNotFoundException":
                return None
            raise

    def ensure_table(self) -> tuple[bool, str]:
        """Create the lock table if absent. Returns (created, table_arn)."""
        name = self._cfg.table_name
        table = self._describe_table()
        if table is not None:
            self._verify_table(table)
            logger.info("lock table already configured", table=name)
            return (False, str(table.get("TableArn", "")))

        kwargs: Dict[str, Any] = {
            "TableName": name,
            "AttributeDefinitions": [
                {"AttributeName": self._cfg.hash_key, "AttributeType": self._cfg.hash_key_type},
            ],
            "KeySchema": [{"AttributeName": self._cfg.hash_key, "KeyType": "HASH"}],
            "BillingMode": self._cfg.billing_mode,
            "DeletionProtectionEnabled": self._cfg.deletion_protection,
        }
        if self._cfg.billing_mode == "PROVISIONED":
            kwargs["ProvisionedThroughput"] = {
                "ReadCapacityUnits": self._cfg.read_capacity,
                "WriteCapacityUnits": self._cfg.write_capacity,
            }
        if self._cfg.tags:
            kwargs["Tags"] = [{"Key": k, "Value": v} for k, v in sorted(self._cfg.tags.items())]

        try:
            resp = self._ddb.create_table(**kwargs)
        except ClientError as e:
            if client_error_code(e) == "ResourceInUseException":
                existing = self._describe_table()
                if existing is not None:
                    self._verify_table(existing)
                    return (False, str(existing.get("TableArn", "")))
            raise
        logger.info("lock table created", table=name, billing_mode=self._cfg.billing_mode)
        self._ddb.get_waiter("table_exists").wait(TableName=name, WaiterConfig=self._wait)
        return (True, str(resp.get("TableDescription", {}).get("TableArn", "")))

    def _verify_table(self, table: Dict[str, Any]) -> None:
        mm = _Mismatches(f"Lock table {self._cfg.table_name!r}")
        key_schema = [(k.get("AttributeName"), k.get("KeyType")) for k in table.get("KeySchema", [])]
        mm.check("key_schema", [(self._cfg.hash_key, "HASH")], key_schema)

        attr_types = {a.get("AttributeName"): a.get("AttributeType") for a in table.get("AttributeDefinitions", [])}
        mm.check(f"{self._cfg.hash_key} type", self._cfg.hash_key_type, attr_types.get(self._cfg.hash_key))

        # Tables created without an explicit mode report no summary and are provisioned
        billing = table.get("BillingModeSummary", {}).get("BillingMode", "PROVISIONED")
        mm.check("billing_mode", self._cfg.billing_mode, billing)
        if self._cfg.billing_mode == "PROVISIONED":
            tp = table.get("ProvisionedThroughput", {})
            mm.check("read_capacity", self._cfg.read_capacity, tp.get("ReadCapacityUnits"))
            mm.check("write_capacity", self._cfg.write_capacity, tp.get("WriteCapacityUnits"))
        mm.raise_if_any()

    # -------- Local bookkeeping --------
    def _resources(self, table_arn: str) -> List[Resource]:
        cfg = self._cfg
        bucket = cfg.bucket_name

        def res(type_: str, name: str, attrs: Dict[str, Any]) -> Resource:
            return Resource(type=type_, name=name, instances=[{"schema_version": 0, "attributes": attrs}])

        sse_default: Dict[str, Any] = {"sse_algorithm": cfg.sse_algorithm, "kms_master_key_id": cfg.kms_key_id or ""}
        out = [
            res("aws_s3_bucket", BUCKET_RESOURCE_NAME, {
                "id": bucket,
                "bucket": bucket,
                "arn": f"arn:aws:s3:::{bucket}",
                "region": cfg.region,
            }),
            res("aws_s3_bucket_server_side_encryption_configuration", BUCKET_RESOURCE_NAME, {
                "id": bucket,
                "bucket": bucket,
                "rule": [{"apply_server_side_encryption_by_default": [sse_default]}],
            }),
            res("aws_s3_bucket_public_access_block", BUCKET_RESOURCE_NAME, {
                "id": bucket,
                "bucket": bucket,
                "block_public_acls": cfg.block_public_acls,
                "ignore_public_acls": cfg.ignore_public_acls,
                "block_public_policy": cfg.block_public_policy,
                "restrict_public_buckets": cfg.restrict_public_buckets,
            }),
            res("aws_dynamodb_table", TABLE_RESOURCE_NAME, {
                "id": cfg.table_name,
                "name": cfg.table_name,
                "arn": table_arn,
                "billing_mode": cfg.billing_mode,
                "hash_key": cfg.hash_key,
                "attribute": [{"name": cfg.hash_key, "type": cfg.hash_key_type}],
                "deletion_protection_enabled": cfg.deletion_protection,
            }),
        ]
        if cfg.versioning:
            out.insert(1, res("aws_s3_bucket_versioning", BUCKET_RESOURCE_NAME, {
                "id": bucket,
                "bucket": bucket,
                "versioning_configuration": [{"status": "Enabled"}],
            }))
        return out

    def _record(self, table_arn: str) -> bool:
        doc = self._local.read() or StateDocument.empty()
        changed = False
        for resource in self._resources(table_arn):
            if doc.upsert(resource):
                changed = True
        if not changed:
            return False
        superseded = self._local.superseded_by()
        if superseded is not None:
            raise ConflictError(
                f"Local state {self._local.path} was migrated to {superseded.get('superseded_by')}; "
                "bootstrap changes must be recorded in the remote state"
            )
        doc.serial += 1
        self._local.write(doc)
        return True
