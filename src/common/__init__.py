"""
Common utilities for the state coordinator.

Modules:
- aws: boto3 client factory and ClientError code helpers
- config: backend/bootstrap config blocks and env-driven settings
- errors: error taxonomy shared by every component
- log: structlog setup and the audit logger
- poller: bounded polling with backoff for lock waits
"""

__all__ = [
    "aws",
    "config",
    "errors",
    "log",
    "poller",
]
