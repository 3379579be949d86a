"""Capability table for the upstream model's input schema.

Replicate's ``bytedance/seedream-4`` renamed its reference-image field across
versions.  Instead of sending every historical key and hoping the upstream
picks the right one, each known schema is described once in
:data:`INPUT_SCHEMAS` and exactly one is selected through
``RelayConfig.input_schema``.

Schemas
-------
``image_input``
    Current schema.  The reference image goes in ``image_input`` as a list of
    URLs.
``legacy_image``
    Historic schema.  The reference image goes in ``image`` as a bare URL.

Both schemas accept ``aspect_ratio`` and the ``match_input_image`` sentinel,
which is sent when a reference image is supplied without an explicit aspect
ratio so the output keeps the input's proportions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import ConfigurationError

MATCH_INPUT_IMAGE = "match_input_image"


@dataclass(frozen=True)
class InputSchema:
    """Field mapping for one upstream input schema version."""

    key: str
    image_field: str
    image_as_list: bool = True
    aspect_field: str = "aspect_ratio"
    match_input_sentinel: str = MATCH_INPUT_IMAGE

    def build_input(
        self,
        prompt: str,
        aspect_ratio: str | None = None,
        reference_image_url: str | None = None,
    ) -> dict[str, Any]:
        """Build the ``input`` object of a prediction create request.

        Args:
            prompt: Text prompt, sent as-is.
            aspect_ratio: Requested aspect ratio, or ``None`` for the model
                default.
            reference_image_url: Publicly fetchable URL of a reference image.

        Returns:
            Dictionary with ``prompt`` plus the aspect and image fields this
            schema defines, omitting fields that have no value.
        """
        payload: dict[str, Any] = {"prompt": prompt}

        effective_aspect = aspect_ratio or (
            self.match_input_sentinel if reference_image_url else None
        )
        if effective_aspect:
            payload[self.aspect_field] = effective_aspect

        if reference_image_url:
            if self.image_as_list:
                payload[self.image_field] = [reference_image_url]
            else:
                payload[self.image_field] = reference_image_url

        return payload


INPUT_SCHEMAS: dict[str, InputSchema] = {
    "image_input": InputSchema(key="image_input", image_field="image_input"),
    "legacy_image": InputSchema(key="legacy_image", image_field="image", image_as_list=False),
}


def get_input_schema(key: str) -> InputSchema:
    """Return the schema registered under *key*.

    Raises:
        ConfigurationError: If *key* is not in :data:`INPUT_SCHEMAS`.
    """
    try:
        return INPUT_SCHEMAS[key]
    except KeyError:
        known = ", ".join(sorted(INPUT_SCHEMAS))
        raise ConfigurationError(f"Unknown input schema '{key}' (known: {known})") from None
