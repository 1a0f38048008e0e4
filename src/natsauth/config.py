"""
Engine configuration.

Settings can be built in code or loaded from YAML::

    resync_interval: 300
    dependency_retry: 10
    error_retry: 60
    workers: 4
    storage:
      backend: redis
      redis_host: redis.internal
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from natsauth.constants import (
    DEPENDENCY_RETRY_SECONDS,
    ERROR_RETRY_SECONDS,
    MAX_CONFLICT_RETRIES,
    RESYNC_INTERVAL_SECONDS,
)
from natsauth.storage.provider import StorageConfig


class EngineConfig(BaseModel):
    """Requeue policy and runtime settings of the reconciliation engine."""

    resync_interval: float = Field(
        default=RESYNC_INTERVAL_SECONDS, gt=0, description="Seconds between drift-correcting resyncs"
    )
    dependency_retry: float = Field(
        default=DEPENDENCY_RETRY_SECONDS, gt=0, description="Retry delay while a parent is not ready"
    )
    error_retry: float = Field(
        default=ERROR_RETRY_SECONDS, gt=0, description="Retry delay after a reconciliation error"
    )
    max_conflict_retries: int = Field(
        default=MAX_CONFLICT_RETRIES, ge=1, le=50, description="Attempts for conflicting aggregate writes"
    )
    workers: int = Field(default=2, ge=1, le=64, description="Concurrent reconcile workers")
    resolver_root: Optional[str] = Field(
        default=None, description="Local directory mirroring account tokens for a full resolver"
    )
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "EngineConfig":
        """Load an EngineConfig from a YAML file."""
        path = Path(path)
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)
