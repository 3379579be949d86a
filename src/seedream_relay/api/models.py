"""Pydantic request models for the relay API.

Field names on the wire are camelCase (the browser client predates this
server); the models expose snake_case attributes through aliases.

Models
------
GenerateRequest
    Payload for ``POST /api/generate``.
UploadRequest
    Payload for ``POST /api/upload``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    ``prompt`` is optional at the schema level so that a missing prompt is
    answered with the relay's own 400 ``{"error": ...}`` body.  ``numImages``
    accepts anything: it is clamped into ``[1, 4]`` rather than rejected.

    Attributes:
        prompt: Text prompt.  Required and non-blank in practice.
        num_images: Requested number of images (wire name ``numImages``).
        aspect: Aspect ratio such as ``"16:9"`` or ``"match_input_image"``.
        image_url: Public URL of a reference image (wire name ``imageUrl``).
    """

    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = Field(
        default=None,
        description="Text prompt (required, must not be blank).",
    )
    num_images: Any = Field(
        default=None,
        alias="numImages",
        description="Number of images, clamped into 1-4.",
    )
    aspect: str | None = Field(
        default=None,
        description="Aspect ratio; defaults to match_input_image with a reference image.",
    )
    image_url: str | None = Field(
        default=None,
        alias="imageUrl",
        description="Public URL of a reference image.",
    )


class UploadRequest(BaseModel):
    """Request body for the ``POST /api/upload`` endpoint.

    Attributes:
        data_url: ``data:<mime>;base64,<payload>`` text (wire name ``dataUrl``).
    """

    model_config = ConfigDict(populate_by_name=True)

    data_url: str | None = Field(
        default=None,
        alias="dataUrl",
        description="Inline image as a base64 data URL.",
    )
