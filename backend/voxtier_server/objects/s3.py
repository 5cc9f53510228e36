"""
S3 object store backend.

Stores recordings in a single bucket with the uploader recorded in object
metadata. Works against AWS S3 or any S3-compatible endpoint (MinIO,
LocalStack) via S3_ENDPOINT.

Invariants:
    - The client is opened once in connect() and reused
    - Transport and throttling failures surface as ObjectStoreUnavailableError
    - A missing key is reported as None, not as an error
    - Uploads are conditional on the key being absent (If-None-Match: *)
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import ObjectStoreConfig
from .object_store import ObjectExistsError, ObjectRef, ObjectStoreUnavailableError, StoredObject

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}
_EXISTS_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict"}


class S3ObjectStore:
    """aiobotocore-backed object store."""

    def __init__(self, config: ObjectStoreConfig) -> None:
        self.config = config
        self._session = None
        self._s3_ctx: Any = None
        self._s3_client: Any = None

    async def connect(self) -> None:
        """Open the S3 client."""
        if self._s3_client is not None:
            return
        self._session = get_session()

        client_kwargs = {
            "region_name": self.config.region,
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info(
            "S3 object store connected",
            extra={"bucket": self.config.bucket, "endpoint": self.config.endpoint_url},
        )

    async def close(self) -> None:
        """Close the S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    def _client(self) -> Any:
        if self._s3_client is None:
            raise ObjectStoreUnavailableError("S3 client is not connected")
        return self._s3_client

    async def put(self, ref: ObjectRef, data: bytes, content_type: str) -> StoredObject:
        if ref.owner_id is None:
            raise ValueError("owner_id is required to store an object")
        try:
            await self._client().put_object(
                Bucket=self.config.bucket,
                Key=ref.path,
                Body=data,
                ContentType=content_type,
                Metadata={"owner": ref.owner_id},
                IfNoneMatch="*",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _EXISTS_CODES:
                raise ObjectExistsError(f"Object already exists: {ref.path}") from e
            logger.warning("S3 upload failed", extra={"key": ref.path, "error": str(e)})
            raise ObjectStoreUnavailableError(f"Upload failed for {ref.path}") from e
        except BotoCoreError as e:
            logger.warning("S3 upload failed", extra={"key": ref.path, "error": str(e)})
            raise ObjectStoreUnavailableError(f"Upload failed for {ref.path}") from e

        logger.debug("Uploaded object", extra={"key": ref.path, "size": len(data)})
        return StoredObject(path=ref.path, data=data, content_type=content_type, owner_id=ref.owner_id)

    async def get(self, ref: ObjectRef) -> StoredObject | None:
        try:
            response = await self._client().get_object(Bucket=self.config.bucket, Key=ref.path)
            async with response["Body"] as stream:
                data = await stream.read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise ObjectStoreUnavailableError(f"Download failed for {ref.path}") from e
        except BotoCoreError as e:
            raise ObjectStoreUnavailableError(f"Download failed for {ref.path}") from e

        return StoredObject(
            path=ref.path,
            data=data,
            content_type=response.get("ContentType", "application/octet-stream"),
            owner_id=response.get("Metadata", {}).get("owner", ""),
        )

    async def owner_of(self, ref: ObjectRef) -> str | None:
        try:
            response = await self._client().head_object(Bucket=self.config.bucket, Key=ref.path)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise ObjectStoreUnavailableError(f"Lookup failed for {ref.path}") from e
        except BotoCoreError as e:
            raise ObjectStoreUnavailableError(f"Lookup failed for {ref.path}") from e
        return response.get("Metadata", {}).get("owner")
