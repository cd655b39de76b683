"""Artifact store: externalizes binary images to object storage.

Generated images come back from the remote API as base64 payloads.  They are
pushed one at a time to an S3-compatible bucket (Tencent COS exposes an S3
endpoint) under a generated key and exposed through the bucket's public
domain::

    art-photos/<epoch-ms>-<random>.<ext>  ->  https://<domain>/art-photos/...

:class:`ArtifactStore` is the collaborator interface the orchestrator talks
to; :class:`S3ArtifactStore` is the production implementation built on
``boto3``.  Any storage failure surfaces as
:class:`~artphoto.core.errors.UploadError`.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets
import string
import time
from abc import ABC, abstractmethod
from typing import Any

from artphoto.core.config import ArtPhotoConfig
from artphoto.core.errors import UploadError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"

_DATA_URI_RE = re.compile(r"^data:(?P<mime>image/[\w.+-]+);base64,", re.IGNORECASE)
_KEY_ALPHABET = string.ascii_lowercase + string.digits

# Extension used in generated keys for each accepted content type.
_EXTENSIONS = {
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}


def decode_data_uri(value: str, default_content_type: str = DEFAULT_CONTENT_TYPE) -> tuple[bytes, str]:
    """Decode a ``data:image/...;base64,`` URI or a bare base64 string.

    Args:
        value: Data URI or raw base64 payload.
        default_content_type: Content type assumed for bare payloads.

    Returns:
        Tuple of ``(data, content_type)``.

    Raises:
        ValidationError: If the payload is empty or not valid base64.
    """
    content_type = default_content_type
    payload = value.strip()
    match = _DATA_URI_RE.match(payload)
    if match:
        content_type = match.group("mime").lower()
        payload = payload[match.end():]

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"image payload is not valid base64: {exc}") from exc
    if not data:
        raise ValidationError("image payload is empty")
    return data, content_type


def generate_key(content_type: str, prefix: str = "art-photos", now_ms: int | None = None) -> str:
    """Return a fresh object key ``<prefix>/<epoch-ms>-<random>.<ext>``."""
    ext = _EXTENSIONS.get(content_type.lower(), content_type.split("/")[-1] or "bin")
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(13))
    return f"{prefix.strip('/')}/{stamp}-{suffix}.{ext}"


class ArtifactStore(ABC):
    """Interface for durable storage of generated images."""

    @abstractmethod
    def put(self, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        """Store *data* and return its publicly resolvable URL.

        Raises:
            UploadError: If the blob could not be stored.
        """


class S3ArtifactStore(ArtifactStore):
    """Artifact store backed by an S3-compatible bucket.

    Args:
        bucket: Bucket name.
        domain: Public domain that serves the bucket's objects.
        client: A ``boto3`` S3 client.
        prefix: Key prefix for generated objects.
    """

    def __init__(self, bucket: str, domain: str, client: Any, prefix: str = "art-photos") -> None:
        self.bucket = bucket
        self.domain = domain.rstrip("/")
        self.prefix = prefix
        self._client = client

    @classmethod
    def from_config(cls, config: ArtPhotoConfig) -> S3ArtifactStore:
        """Build the store and its ``boto3`` client from configuration.

        Raises:
            ConfigurationError: If storage settings are incomplete.
        """
        import boto3
        from botocore.config import Config

        config.validate_storage()
        session = boto3.session.Session(
            aws_access_key_id=config.storage_secret_id,
            aws_secret_access_key=config.storage_secret_key,
        )
        client = session.client(
            "s3",
            endpoint_url=config.resolved_storage_endpoint,
            config=Config(
                region_name=config.storage_region,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
        return cls(
            bucket=config.storage_bucket,
            domain=config.storage_domain,
            client=client,
            prefix=config.storage_prefix,
        )

    def public_url(self, key: str) -> str:
        """Return the public URL for *key*."""
        domain = self.domain
        if not domain.startswith(("http://", "https://")):
            domain = f"https://{domain}"
        return f"{domain}/{key}"

    def put(self, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        key = generate_key(content_type, self.prefix)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Upload of %s to bucket %s failed: %s", key, self.bucket, exc)
            raise UploadError(f"image upload failed: {exc}") from exc

        url = self.public_url(key)
        logger.info("Uploaded %d bytes to %s", len(data), url)
        return url
