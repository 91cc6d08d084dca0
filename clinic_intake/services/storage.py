"""
Private object storage for generated consent documents.

Two backends share one small interface: S3 (production, private bucket,
presigned GET links) and the local filesystem (development and tests).
Nothing here is public: retrieval references are only produced for callers
that passed the StoredDocument.read policy.
"""

from __future__ import annotations

import logging
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from clinic_intake.config import settings
from clinic_intake.services.errors import DownstreamFailure

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class DocumentStore:
    def put(self, path: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        raise NotImplementedError

    def get(self, path: str) -> bytes:
        raise NotImplementedError

    def signed_url(self, path: str, expires_in: int) -> str:
        raise NotImplementedError


class S3DocumentStore(DocumentStore):
    """Private S3 bucket; objects are only reachable through presigned URLs."""

    def __init__(self, bucket: str, region_name: str, timeout: float, client=None):
        self.bucket = bucket
        self.s3_client = client or boto3.client(
            "s3",
            region_name=region_name,
            config=Config(
                connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 1}
            ),
        )

    def put(self, path: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
        except (BotoCoreError, ClientError) as exc:
            raise DownstreamFailure("document", f"Upload to storage failed: {exc}") from exc
        logger.info("Stored document s3://%s/%s (%d bytes)", self.bucket, path, len(data))
        return path

    def get(self, path: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            raise DownstreamFailure("document", f"Download from storage failed: {exc}") from exc
        return response["Body"].read()

    def signed_url(self, path: str, expires_in: int) -> str:
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise DownstreamFailure("document", f"Could not sign document URL: {exc}") from exc


class LocalDocumentStore(DocumentStore):
    """Filesystem backend rooted at a private directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return target

    def put(self, path: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise DownstreamFailure("document", f"Write to storage failed: {exc}") from exc
        logger.info("Stored document %s (%d bytes)", target, len(data))
        return path

    def get(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as exc:
            raise DownstreamFailure("document", f"Read from storage failed: {exc}") from exc

    def signed_url(self, path: str, expires_in: int) -> str:
        # no signing locally; staff-only routes are the access control
        return self._resolve(path).as_uri()


def get_document_store() -> DocumentStore:
    if settings.STORAGE_BACKEND == "s3":
        return S3DocumentStore(
            bucket=settings.STORAGE_BUCKET,
            region_name=settings.AWS_REGION,
            timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
        )
    return LocalDocumentStore(settings.STORAGE_LOCAL_ROOT)
