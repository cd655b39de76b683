"""Art Photo generator - signed remote generation, task orchestration and history."""

__version__ = "0.1.0"

from artphoto.core.config import ArtPhotoConfig
from artphoto.core.orchestrator import TaskOrchestrator, TaskStatus
from artphoto.core.signer import Signer, SigningContext, sign

__all__ = [
    "ArtPhotoConfig",
    "Signer",
    "SigningContext",
    "TaskOrchestrator",
    "TaskStatus",
    "sign",
]
