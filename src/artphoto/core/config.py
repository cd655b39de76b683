"""Configuration management for the Art Photo generator.

This module provides centralized configuration management using Pydantic
Settings.  All configuration is loaded from environment variables with the
``ARTPHOTO_`` prefix, allowing deployments to change credentials, endpoints
and polling budgets without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:

1. Keyword arguments passed to :class:`ArtPhotoConfig`
2. Environment variables (``ARTPHOTO_*`` prefix)
3. ``.env`` file in the working directory
4. Default values defined in :class:`ArtPhotoConfig`

Example .env file::

    ARTPHOTO_ACCESS_KEY_ID=AKLT...
    ARTPHOTO_SECRET_ACCESS_KEY=...
    ARTPHOTO_STORAGE_BUCKET=art-1250000000
    ARTPHOTO_STORAGE_REGION=ap-guangzhou
    ARTPHOTO_STORAGE_DOMAIN=art-1250000000.cos.ap-guangzhou.myqcloud.com

No Global Instance
------------------
Unlike a module-level singleton, the configuration is constructed exactly
once at process start (by :func:`artphoto.api.main.create_app` or by a
caller embedding the core) and passed by reference into the
:class:`~artphoto.core.signer.Signer`, the remote client, the artifact store
and the :class:`~artphoto.core.orchestrator.TaskOrchestrator`.  The core
modules never read the environment on import; only the module-level
``artphoto.api.main.app`` builds its configuration when it is created.

Credential Validation
---------------------
Missing credentials are a fatal misconfiguration.  The
:meth:`ArtPhotoConfig.validate_remote_credentials` and
:meth:`ArtPhotoConfig.validate_storage` helpers raise
:class:`~artphoto.core.errors.ConfigurationError` so the failure happens
before any network call is attempted.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from artphoto.core.errors import ConfigurationError

DEFAULT_PROMPT = (
    "参考图分工：图 1 为人脸参考图，图 2 为艺术风格参考图。要求：1:1 还原图 1 面部特征，"
    "严格复刻图 2 的姿势、风格、场景氛围和光影逻辑。色彩过渡均匀，背景禁用高饱和色。"
    "禁止混淆两图特征，整体画面需通透自然，符合艺术照审美。"
)


class ArtPhotoConfig(BaseSettings):
    """Main configuration for the Art Photo generator.

    Attributes
    ----------
    Remote Generation API:
        access_key_id / secret_access_key : str
            Volcengine credentials used by the request signer.
        endpoint : str
            Base URL of the OpenAPI gateway.
        region / service : str
            Credential scope components.
        api_version : str
            ``Version`` query parameter sent with every action.
        submit_action / result_action : str
            Action names for task submission and result retrieval.
        submit_success_code / result_success_code : int
            Business ``Result.code`` that means success for each action.
        signing_mode : Literal["header", "query"]
            Sign with an ``Authorization`` header or a signed query string.

    Generation Settings:
        req_key, scale, size, min_ratio, max_ratio, force_single
            Forwarded verbatim in the submit body.
        default_prompt : str
            Used when a caller submits an empty prompt.
        default_style_image_url : str
            Style reference appended when fewer than ``min_image_refs``
            images are forwarded.

    Polling:
        poll_interval, poll_max_attempts, poll_deadline
            Budget of :meth:`TaskOrchestrator.wait_for_result`.

    Artifact Store:
        storage_* fields
            S3-compatible bucket that receives generated images.

    History:
        history_file : Path
            JSON array holding the task ledger.
        history_capacity : int
            Maximum number of records kept (newest first).

    Server:
        server_host, server_port, cors_origins, log_level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ARTPHOTO_",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote generation API
    access_key_id: str = Field(default="", description="Volcengine access key id")
    secret_access_key: str = Field(default="", description="Volcengine secret access key")
    endpoint: str = Field(
        default="https://open.volcengineapi.com",
        description="OpenAPI gateway base URL",
    )
    region: str = Field(default="cn-beijing")
    service: str = Field(default="cv")
    api_version: str = Field(default="2024-06-06")
    submit_action: str = Field(default="JimengT2IV40SubmitTask")
    result_action: str = Field(default="JimengT2IV40GetResult")
    submit_success_code: int = Field(
        default=10000,
        description="Result.code meaning success for the submit action",
    )
    result_success_code: int = Field(
        default=10000,
        description="Result.code meaning success for the result action",
    )
    signing_mode: Literal["header", "query"] = Field(
        default="header",
        description="Authorization header or signed query string",
    )
    request_timeout: float = Field(default=60.0, gt=0)

    # Generation request body
    req_key: str = Field(default="jimeng_t2i_v40")
    scale: float = Field(default=0.9, ge=0.0, le=1.0)
    size: int = Field(default=4194304, ge=1)
    min_ratio: float = Field(default=0.33, gt=0)
    max_ratio: float = Field(default=3.0, gt=0)
    force_single: bool = Field(default=False)
    default_prompt: str = Field(default=DEFAULT_PROMPT)
    default_style_image_url: str = Field(
        default="https://wms.webinfra.cloud/art-photos/template1.jpeg",
        description="Style reference appended when too few images are forwarded",
    )
    max_image_refs: int = Field(default=10, ge=1)
    min_image_refs: int = Field(default=2, ge=1)

    # Polling budget
    poll_interval: float = Field(default=2.0, ge=0.0, description="Seconds between polls")
    poll_max_attempts: int = Field(default=30, ge=1)
    poll_deadline: float = Field(
        default=120.0,
        gt=0.0,
        description="Wall-clock budget in seconds for one polling loop",
    )

    # Artifact store (S3-compatible)
    storage_secret_id: str = Field(default="")
    storage_secret_key: str = Field(default="")
    storage_bucket: str = Field(default="")
    storage_region: str = Field(default="")
    storage_domain: str = Field(default="", description="Public domain of the bucket")
    storage_endpoint: str | None = Field(
        default=None,
        description="S3 endpoint URL; derived from storage_region when unset",
    )
    storage_prefix: str = Field(default="art-photos")

    # History ledger
    history_file: Path = Field(default=Path("data") / "history.json")
    history_capacity: int = Field(default=100, ge=1)

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=3001, ge=1024, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    @property
    def resolved_storage_endpoint(self) -> str:
        """Return the S3 endpoint, defaulting to the COS regional endpoint."""
        if self.storage_endpoint:
            return self.storage_endpoint
        return f"https://cos.{self.storage_region}.myqcloud.com"

    def validate_remote_credentials(self) -> None:
        """Fail fast when the remote API credentials are not configured.

        Raises:
            ConfigurationError: If the access key id or secret is empty.
        """
        if not self.access_key_id or not self.secret_access_key:
            raise ConfigurationError(
                "remote API credentials are not set "
                "(ARTPHOTO_ACCESS_KEY_ID / ARTPHOTO_SECRET_ACCESS_KEY)"
            )

    def validate_storage(self) -> None:
        """Fail fast when the artifact store is not fully configured.

        Raises:
            ConfigurationError: If any storage credential, bucket, region or
                domain is missing.
        """
        missing = [
            name
            for name in (
                "storage_secret_id",
                "storage_secret_key",
                "storage_bucket",
                "storage_region",
                "storage_domain",
            )
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigurationError(f"artifact store is not configured: missing {', '.join(missing)}")
