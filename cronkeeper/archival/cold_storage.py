"""Cronkeeper – cold storage destinations for archive files.

Archives are written to a deterministic path derived from the table name
and the archived date range. An upload replaces any object already at
that path, so a run that aborted after uploading can be repeated.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cronkeeper.core.config import ColdStorageConfig
from cronkeeper.core.logging import get_logger

logger = get_logger(__name__)

GZIP_CONTENT_TYPE = "application/gzip"


class ColdStorageError(Exception):
    """Raised when an archive cannot be written to cold storage."""


def build_archive_path(table_name: str, min_date: date, cutoff_date: date) -> str:
    """Return ``{table}/{min_date}_to_{cutoff_date}.csv.gz``."""

    return f"{table_name}/{min_date.isoformat()}_to_{cutoff_date.isoformat()}.csv.gz"


class ColdStorage(ABC):
    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str = GZIP_CONTENT_TYPE) -> str:
        """Store ``data`` at ``path`` and return its location URI."""


class LocalColdStorage(ColdStorage):
    """Archive files under a local directory."""

    def __init__(self, root_dir: str | Path) -> None:
        self.root_dir = Path(root_dir)

    def upload(self, path: str, data: bytes, content_type: str = GZIP_CONTENT_TYPE) -> str:
        target = self.root_dir / path
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(target, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise ColdStorageError(f"Failed to write archive {target}: {exc}") from exc

        logger.info("Wrote %d bytes to %s", len(data), target)
        return target.resolve().as_uri()


class S3ColdStorage(ColdStorage):
    """Archive objects in an S3 (or S3-compatible) bucket.

    Credentials come from the standard boto3 chain (environment, shared
    config, instance role).
    """

    def __init__(
        self,
        bucket: str,
        *,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3", region_name=region_name, endpoint_url=endpoint_url
        )

    def upload(self, path: str, data: bytes, content_type: str = GZIP_CONTENT_TYPE) -> str:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise ColdStorageError(f"Upload to s3://{self.bucket}/{path} failed: {exc}") from exc

        logger.info("Uploaded %d bytes to s3://%s/%s", len(data), self.bucket, path)
        return f"s3://{self.bucket}/{path}"


def build_cold_storage(config: ColdStorageConfig) -> ColdStorage:
    backend = config.backend.lower()
    if backend == "s3":
        return S3ColdStorage(
            config.bucket,
            region_name=config.region_name,
            endpoint_url=config.endpoint_url,
        )
    if backend == "local":
        return LocalColdStorage(Path(config.local_dir) / config.bucket)
    raise ValueError(f"Unknown cold storage backend: {config.backend!r}")
