from __future__ import annotations

from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError


# Error codes grouped by how the backend interprets them
NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "404", "NotFound", "ResourceNotFoundException"})
PRECONDITION_CODES = frozenset({"PreconditionFailed", "412", "ConditionalRequestConflict", "409"})
CONDITION_FAILED_CODE = "ConditionalCheckFailedException"

_RETRY_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})


def client_error_code(err: BaseException) -> Optional[str]:
    """Return the AWS error code carried by a ClientError, or None."""
    if isinstance(err, ClientError):
        code = err.response.get("Error", {}).get("Code")
        return str(code) if code is not None else None
    return None


def is_not_found(err: BaseException) -> bool:
    return client_error_code(err) in NOT_FOUND_CODES


def is_precondition_failed(err: BaseException) -> bool:
    return client_error_code(err) in PRECONDITION_CODES


def is_condition_check_failed(err: BaseException) -> bool:
    return client_error_code(err) == CONDITION_FAILED_CODE


def make_client(
    service: str,
    *,
    region: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    use_ssl: bool = True,
) -> Any:
    """Build a low-level boto3 client with standard retries.

    Credentials come from the default boto3 chain; nothing here manages them.
    """
    return boto3.client(
        service,
        region_name=region,
        endpoint_url=endpoint_url,
        use_ssl=use_ssl,
        config=_RETRY_CONFIG,
    )
