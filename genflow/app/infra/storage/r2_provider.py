# genflow/app/infra/storage/r2_provider.py
"""
Site bundle publishing on Cloudflare R2 (S3 API through boto3).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from genflow.app.domain.errors import StorageError
from genflow.app.infra.storage.base import StorageProvider

logger = logging.getLogger(__name__)

SIGNED_URL_TTL_SECONDS = 7 * 24 * 3600
SITE_CACHE_CONTROL = "public, max-age=300"


@dataclass
class R2Config:
    account_id: Optional[str]
    access_key_id: Optional[str]
    secret_access_key: Optional[str]
    bucket_name: Optional[str]
    public_url: Optional[str]

    @classmethod
    def from_env(cls) -> "R2Config":
        return cls(
            account_id=os.getenv("R2_ACCOUNT_ID"),
            access_key_id=os.getenv("R2_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY"),
            bucket_name=os.getenv("R2_BUCKET_NAME"),
            public_url=os.getenv("R2_PUBLIC_URL"),
        )

    def missing(self) -> list[str]:
        required = {
            "R2_ACCOUNT_ID": self.account_id,
            "R2_ACCESS_KEY_ID": self.access_key_id,
            "R2_SECRET_ACCESS_KEY": self.secret_access_key,
            "R2_BUCKET_NAME": self.bucket_name,
        }
        return [name for name, value in required.items() if not value]


def _build_s3_client(config: R2Config) -> Any:
    return boto3.client(
        "s3",
        endpoint_url=f"https://{config.account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
        config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "adaptive"}),
        region_name="auto",
    )


class R2StorageProvider(StorageProvider):
    """
    Publishes rendered sites to an R2 bucket.

    Objects are served from R2_PUBLIC_URL when it is set (a custom domain or
    r2.dev bucket); otherwise each upload answers with a week-long signed URL.
    Explicit arguments override the R2_* environment.
    """

    def __init__(
        self,
        bucket_name: Optional[str] = None,
        public_url: Optional[str] = None,
        client: Any = None,
        config: Optional[R2Config] = None,
    ):
        config = config or R2Config.from_env()
        if bucket_name:
            config.bucket_name = bucket_name
        if public_url:
            config.public_url = public_url

        # an injected client already carries its credentials
        missing = [name for name in config.missing() if client is None or name == "R2_BUCKET_NAME"]
        if missing:
            raise StorageError(f"Missing R2 configuration: {', '.join(missing)}")

        self.bucket_name = config.bucket_name
        self.public_url = (config.public_url or "").rstrip("/") or None
        self._client = client or _build_s3_client(config)

        logger.info("storage.r2_ready bucket=%s public=%s", self.bucket_name, bool(self.public_url))

    def upload_bytes(self, object_key: str, data: bytes, content_type: str) -> str:
        try:
            self._client.put_object(
                Bucket=self.bucket_name,
                Key=object_key,
                Body=data,
                ContentType=content_type,
                CacheControl=SITE_CACHE_CONTROL,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error("storage.upload_failed key=%s code=%s", object_key, code)
            raise StorageError(f"Failed to upload object: {code}") from e

        logger.info("storage.uploaded key=%s bytes=%d", object_key, len(data))

        if self.public_url:
            return f"{self.public_url}/{object_key}"
        return self.generate_signed_get_url(object_key, expires_seconds=SIGNED_URL_TTL_SECONDS)

    def generate_signed_get_url(self, object_key: str, expires_seconds: int = 3600) -> str:
        try:
            return self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket_name, "Key": object_key},
                ExpiresIn=expires_seconds,
            )
        except ClientError as e:
            logger.error("storage.sign_failed key=%s error=%s", object_key, e)
            raise StorageError(f"Failed to sign download URL: {e}") from e
