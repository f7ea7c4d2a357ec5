"""
Configuration for the state coordinator and the bootstrap provisioner.

Settings are loaded from:
1. Environment variables prefixed with `TFSTATE_` (highest priority)
2. A `.env` file in the current directory
3. Default values (lowest priority)

CLI flags override settings by building the config blocks directly.
"""

from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


DEFAULT_WORKSPACE = "default"
DEFAULT_WORKSPACE_KEY_PREFIX = "env:"
LOCK_KEY_ATTRIBUTE = "LockID"

SseAlgorithm = Literal["AES256", "aws:kms"]
BillingMode = Literal["PAY_PER_REQUEST", "PROVISIONED"]


def _check_object_key(value: str) -> str:
    if not value:
        raise ValueError("object key must not be empty")
    if value.startswith("/") or value.endswith("/"):
        raise ValueError("object key must not start or end with '/'")
    if "//" in value:
        raise ValueError("object key must not contain '//'")
    return value


class BackendConfig(BaseModel):
    """Coordinator-facing configuration block.

    `storage_address` is the bucket name and `object_key` the state path
    inside it, e.g. "prod/network/state.json".
    """

    storage_address: str = Field(..., min_length=3, max_length=63)
    object_key: str
    region: str
    lock_table_name: str = Field(..., min_length=3, max_length=255)
    encrypt_in_transit: bool = True

    sse_algorithm: SseAlgorithm = "AES256"
    kms_key_id: Optional[str] = None
    workspace: str = DEFAULT_WORKSPACE
    workspace_key_prefix: str = DEFAULT_WORKSPACE_KEY_PREFIX
    s3_endpoint_url: Optional[str] = None
    dynamodb_endpoint_url: Optional[str] = None

    @field_validator("object_key")
    @classmethod
    def _valid_key(cls, v: str) -> str:
        return _check_object_key(v)

    @field_validator("workspace_key_prefix")
    @classmethod
    def _valid_prefix(cls, v: str) -> str:
        if not v or v.startswith("/") or v.endswith("/"):
            raise ValueError("workspace_key_prefix must be non-empty and not start or end with '/'")
        return v

    @model_validator(mode="after")
    def _kms_needs_key(self) -> "BackendConfig":
        if self.kms_key_id and self.sse_algorithm != "aws:kms":
            raise ValueError("kms_key_id requires sse_algorithm='aws:kms'")
        return self

    def state_key(self, workspace: Optional[str] = None) -> str:
        """S3 key for a workspace; the default workspace uses `object_key` as-is."""
        ws = workspace or self.workspace
        if ws == DEFAULT_WORKSPACE:
            return self.object_key
        return f"{self.workspace_key_prefix}/{ws}/{self.object_key}"

    def state_path(self, workspace: Optional[str] = None) -> str:
        return f"{self.storage_address}/{self.state_key(workspace)}"

    def state_uri(self, workspace: Optional[str] = None) -> str:
        return f"s3://{self.state_path(workspace)}"


class BootstrapConfig(BaseModel):
    """Desired settings for the bucket and lock table created by bootstrap."""

    bucket_name: str = Field(..., min_length=3, max_length=63)
    table_name: str = Field(..., min_length=3, max_length=255)
    region: str

    sse_algorithm: SseAlgorithm = "AES256"
    kms_key_id: Optional[str] = None
    versioning: bool = True
    block_public_acls: bool = True
    ignore_public_acls: bool = True
    block_public_policy: bool = True
    restrict_public_buckets: bool = True

    billing_mode: BillingMode = "PAY_PER_REQUEST"
    read_capacity: Optional[int] = Field(default=None, ge=1)
    write_capacity: Optional[int] = Field(default=None, ge=1)
    hash_key: str = LOCK_KEY_ATTRIBUTE
    hash_key_type: Literal["S"] = "S"
    deletion_protection: bool = True
    tags: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _capacity_matches_billing(self) -> "BootstrapConfig":
        if self.billing_mode == "PROVISIONED":
            if self.read_capacity is None or self.write_capacity is None:
                raise ValueError("PROVISIONED billing requires read_capacity and write_capacity")
        elif self.read_capacity is not None or self.write_capacity is not None:
            raise ValueError("read/write capacity only applies to PROVISIONED billing")
        if self.kms_key_id and self.sse_algorithm != "aws:kms":
            raise ValueError("kms_key_id requires sse_algorithm='aws:kms'")
        return self

    def public_access_block(self) -> Dict[str, bool]:
        return {
            "BlockPublicAcls": self.block_public_acls,
            "IgnorePublicAcls": self.ignore_public_acls,
            "BlockPublicPolicy": self.block_public_policy,
            "RestrictPublicBuckets": self.restrict_public_buckets,
        }


class CoordinatorSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="TFSTATE_",
    )

    # Backend coordinates
    bucket: Optional[str] = Field(default=None, description="State bucket (env: TFSTATE_BUCKET)")
    key: Optional[str] = Field(default=None, description="State object key (env: TFSTATE_KEY)")
    region: Optional[str] = Field(default=None, description="AWS region (env: TFSTATE_REGION)")
    dynamodb_table: Optional[str] = Field(default=None, description="Lock table (env: TFSTATE_DYNAMODB_TABLE)")
    encrypt_in_transit: bool = True
    sse_algorithm: SseAlgorithm = "AES256"
    kms_key_id: Optional[str] = None
    workspace: str = DEFAULT_WORKSPACE
    workspace_key_prefix: str = DEFAULT_WORKSPACE_KEY_PREFIX
    s3_endpoint_url: Optional[str] = None
    dynamodb_endpoint_url: Optional[str] = None

    # Optional client-side envelope on top of SSE
    fernet_key: Optional[str] = Field(default=None, description="Fernet key (env: TFSTATE_FERNET_KEY)")

    # Locking policy
    lock_timeout_seconds: float = Field(default=0.0, ge=0.0)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)
    stale_lock_after_seconds: float = Field(default=7200.0, gt=0.0)

    local_state_path: str = "terraform.tfstate"

    log_level: str = "INFO"
    log_json: bool = False

    def to_backend_config(self) -> BackendConfig:
        missing = [
            f"TFSTATE_{name.upper()}"
            for name in ("bucket", "key", "region", "dynamodb_table")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        try:
            return BackendConfig(
                storage_address=self.bucket,
                object_key=self.key,
                region=self.region,
                lock_table_name=self.dynamodb_table,
                encrypt_in_transit=self.encrypt_in_transit,
                sse_algorithm=self.sse_algorithm,
                kms_key_id=self.kms_key_id,
                workspace=self.workspace,
                workspace_key_prefix=self.workspace_key_prefix,
                s3_endpoint_url=self.s3_endpoint_url,
                dynamodb_endpoint_url=self.dynamodb_endpoint_url,
            )
        except ValidationError as ve:
            raise ConfigurationError(f"Invalid backend configuration: {ve}") from ve


_settings: Optional[CoordinatorSettings] = None


def get_settings() -> CoordinatorSettings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = CoordinatorSettings()
    return _settings


def reload_settings() -> CoordinatorSettings:
    global _settings
    _settings = CoordinatorSettings()
    return _settings
