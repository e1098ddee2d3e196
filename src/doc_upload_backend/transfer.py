"""
Transfer clients that move one file to remote storage.

This module provides:
- The TransferClient protocol consumed by the scheduler
- HttpTransferClient: multipart POST to an ingestion endpoint that answers
  with a ``{success, uploaded, files, errorDetails}`` envelope
- S3TransferClient: direct upload to an S3 bucket with a presigned
  download URL as the remote reference

Clients raise on failure. The scheduler treats every exception the same way,
so clients do not need to distinguish network errors from rejections.
"""

from __future__ import annotations

import logging
from io import BytesIO
from typing import Any, Callable, Dict, Optional, Protocol

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from .configuration import TransferSettings
from .errors import ConfigurationError, TransferError
from .models import UploadResult
from .tasks import UploadPayload
from .utils import base_filename, build_object_key

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class TransferClient(Protocol):
    def upload(self, payload: UploadPayload, progress: ProgressCallback) -> UploadResult:
        """Upload one file, reporting percentage progress; raise on failure."""
        ...


def _envelope_error(envelope: Dict[str, Any]) -> str:
    details = envelope.get("errorDetails") or []
    messages = [str(item.get("error", item)) if isinstance(item, dict) else str(item) for item in details]
    if messages:
        return "; ".join(messages)
    return str(envelope.get("error") or "Upload rejected by ingestion endpoint")


class HttpTransferClient:
    """
    Upload files to an HTTP ingestion endpoint.

    The endpoint receives ``multipart/form-data`` with the file under
    ``files`` and the optional target folder under ``folderId``.
    """

    def __init__(self, ingest_url: str, timeout: float = 120.0, client: httpx.Client | None = None) -> None:
        if not ingest_url:
            raise ConfigurationError("An ingestion URL is required for the HTTP transfer client")
        self.ingest_url = ingest_url
        self._client = client or httpx.Client(timeout=timeout)

    def upload(self, payload: UploadPayload, progress: ProgressCallback) -> UploadResult:
        files = {"files": (payload.filename, payload.content, payload.content_type)}
        data = {"folderId": payload.folder_id} if payload.folder_id else {}

        progress(0)
        try:
            response = self._client.post(self.ingest_url, files=files, data=data)
        except httpx.HTTPError as exc:
            raise TransferError(f"Upload request failed: {exc}") from exc

        if response.is_error:
            raise TransferError(f"Upload failed: {response.status_code} {response.reason_phrase}")

        try:
            envelope = response.json()
        except ValueError as exc:
            raise TransferError("Ingestion endpoint returned a non-JSON response") from exc

        if not isinstance(envelope, dict) or not envelope.get("success", False):
            raise TransferError(_envelope_error(envelope if isinstance(envelope, dict) else {}))

        uploaded = envelope.get("files") or []
        if not uploaded:
            raise TransferError(_envelope_error(envelope))

        entry = uploaded[0]
        progress(100)
        return UploadResult(
            name=str(entry.get("name") or base_filename(payload.filename)),
            url=str(entry["url"]),
            size=int(entry.get("size", payload.size)),
            key=entry.get("id"),
            raw=envelope,
        )

    def close(self) -> None:
        self._client.close()


class S3TransferClient:
    """
    Upload files directly to an S3 bucket.

    Objects are stored under ``<prefix>/<folder>/<random>-<name>``; the
    result's URL is a presigned GET link valid for ``presign_expiration``
    seconds.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "uploads",
        presign_expiration: int = 3600,
        client: Any = None,
    ) -> None:
        if not bucket:
            raise ConfigurationError("S3_BUCKET_NAME must be set for the S3 transfer client")
        self.bucket = bucket
        self.prefix = prefix
        self.presign_expiration = presign_expiration
        self._s3_client = client

    def _get_s3_client(self):
        """
        Get or create the S3 client.

        Credentials are not probed up front; credential errors surface on the
        first upload.
        """
        if self._s3_client is None:
            self._s3_client = boto3.client("s3")
        return self._s3_client

    def upload(self, payload: UploadPayload, progress: ProgressCallback) -> UploadResult:
        key = build_object_key(self.prefix, payload.filename, payload.folder_id)
        total = payload.size
        sent = 0

        def _on_bytes(chunk: int) -> None:
            nonlocal sent
            sent += chunk
            if total:
                progress(sent * 100 // total)

        try:
            client = self._get_s3_client()
            logger.info(f"Uploading {payload.filename} to s3://{self.bucket}/{key}")
            client.upload_fileobj(
                BytesIO(payload.content),
                self.bucket,
                key,
                ExtraArgs={"ContentType": payload.content_type},
                Callback=_on_bytes,
            )
            url = self.generate_presigned_url(key)
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"S3 upload failed: {exc}")
            raise TransferError(f"S3 upload failed: {exc}") from exc

        progress(100)
        return UploadResult(name=base_filename(payload.filename), url=url, size=total, key=key)

    def generate_presigned_url(self, key: str, expiration: Optional[int] = None) -> str:
        """
        Generate a presigned URL for downloading an uploaded object.

        Args:
            key: S3 object key (path within the bucket)
            expiration: URL lifetime in seconds (default: the client's setting)
        """
        expires_in = expiration or self.presign_expiration
        url = self._get_s3_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )
        logger.info(f"Generated presigned URL for {key} (expires in {expires_in}s)")
        return url


def build_transfer_client(settings: TransferSettings) -> TransferClient:
    if settings.backend == "s3":
        return S3TransferClient(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            presign_expiration=settings.presign_expiration,
        )
    return HttpTransferClient(settings.ingest_url, timeout=settings.request_timeout)
