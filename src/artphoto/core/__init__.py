"""Core functionality for the Art Photo generator.

Architecture Overview
---------------------
The core is layered leaf-first:

1. **Configuration** (config.py): ``ArtPhotoConfig`` built from ``ARTPHOTO_*``
   environment variables, constructed once and passed by reference.
2. **Errors** (errors.py): the exception taxonomy shared by every layer.
3. **Signer** (signer.py): pure canonical-request / HMAC-SHA256 signing.
4. **History** (history.py): bounded, newest-first JSON ledger of tasks.
5. **Collaborators**: the signed remote API client (remote.py) and the
   S3-compatible artifact store (artifact_store.py).
6. **Orchestrator** (orchestrator.py): submit, poll and materialize tasks.

Usage Example
-------------
::

    import httpx

    from artphoto.core import (
        ArtPhotoConfig,
        HistoryLedger,
        RemoteGenerationClient,
        S3ArtifactStore,
        Signer,
        TaskOrchestrator,
    )

    config = ArtPhotoConfig()
    remote = RemoteGenerationClient(config, Signer.from_config(config), httpx.Client())
    orchestrator = TaskOrchestrator(
        config,
        remote,
        S3ArtifactStore.from_config(config),
        HistoryLedger(config.history_file, config.history_capacity),
    )
    status = orchestrator.generate("", ["https://example.com/me.jpg"])
"""

from artphoto.core.artifact_store import ArtifactStore, S3ArtifactStore, decode_data_uri
from artphoto.core.config import ArtPhotoConfig
from artphoto.core.errors import (
    ArtPhotoError,
    AuthError,
    ConfigurationError,
    GenerationTimeout,
    PersistenceWarning,
    RemoteAPIError,
    RemoteTaskFailed,
    UploadError,
    ValidationError,
)
from artphoto.core.history import HistoryLedger, TaskRecord, TaskState
from artphoto.core.orchestrator import TaskOrchestrator, TaskStatus
from artphoto.core.remote import RemoteGenerationClient
from artphoto.core.signer import Signer, SigningContext, presign_query, sign

__all__ = [
    "ArtPhotoConfig",
    "ArtPhotoError",
    "ArtifactStore",
    "AuthError",
    "ConfigurationError",
    "GenerationTimeout",
    "HistoryLedger",
    "PersistenceWarning",
    "RemoteAPIError",
    "RemoteGenerationClient",
    "RemoteTaskFailed",
    "S3ArtifactStore",
    "Signer",
    "SigningContext",
    "TaskOrchestrator",
    "TaskRecord",
    "TaskState",
    "TaskStatus",
    "UploadError",
    "ValidationError",
    "decode_data_uri",
    "presign_query",
    "sign",
]
