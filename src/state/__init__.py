"""
State models and backends.

- models: StateDocument, LockInfo and the handles passed between layers
- s3_store: versioned, conditionally-written state object in S3
- lock_table: DynamoDB lock and digest records
- local_store: local state file used before migration
- coordinator: the locked read/modify/write discipline over the two
"""

from .models import LockHandle, LockInfo, StateDocument

__all__ = ["LockHandle", "LockInfo", "StateDocument"]
