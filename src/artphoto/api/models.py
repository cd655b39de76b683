"""Pydantic request models for the Art Photo API.

Field names follow the JSON contract the web frontend already speaks
(camelCase), so they are declared with aliases.

Models
------
GenerateArtPhotoRequest
    Payload for ``POST /api/generate-art-photo``.
UploadImageRequest
    Payload for ``POST /api/upload-image``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class GenerateArtPhotoRequest(BaseModel):
    """Request body for the ``POST /api/generate-art-photo`` endpoint.

    Attributes:
        prompt: Generation prompt.  An empty string selects the server's
            default art-photo prompt.
        image_urls: Image references, the portrait first.  Must not be
            empty; at most ten are forwarded.
    """

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(
        ...,
        description="Generation prompt (empty string = server default).",
    )
    image_urls: list[str] = Field(
        ...,
        alias="imageUrls",
        description="Image URLs; the first is the portrait, the rest style references.",
    )


class UploadImageRequest(BaseModel):
    """Request body for the ``POST /api/upload-image`` endpoint.

    Attributes:
        image: ``data:image/...;base64,`` URI or bare base64 payload.
    """

    image: str = Field(
        ...,
        min_length=1,
        description="Base64 image, optionally as a data URI.",
    )
