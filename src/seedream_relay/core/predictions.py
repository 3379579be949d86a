"""Upstream prediction adapter for ``bytedance/seedream-4`` on Replicate.

A prediction is created through one of two upstream paths, tried in order:

1. **Direct path** - ``POST /models/{owner}/{name}/predictions``.  No version
   id is needed.  Sent with ``Prefer: wait`` so the upstream may answer with
   the finished output.
2. **Versioned fallback** - ``GET /models/{owner}/{name}`` to read
   ``latest_version.id``, then ``POST /predictions`` with that version.

The fallback runs only when the direct path answers 400, 404 or 405 (the
model does not support the direct endpoint) or answers 2xx with a body that
is not a JSON object.  Every other failure is terminal.

The latest version is looked up per call.  Nothing is cached between
requests, so a model update upstream is picked up on the next fallback.

Retries live in :class:`~seedream_relay.core.http_client.ResilientClient`;
this module creates exactly one upstream job per successful call and never
retries on its own.
"""

from __future__ import annotations

import logging
from typing import Any

from .config import RelayConfig
from .errors import TerminalUpstreamError, UpstreamProtocolError
from .http_client import ResilientClient, read_body
from .input_schema import InputSchema, get_input_schema

logger = logging.getLogger(__name__)

# Direct-path statuses meaning "this endpoint is not available for the model".
FALLBACK_STATUSES = frozenset({400, 404, 405})


class PredictionAdapter:
    """Create and cancel predictions for the configured model.

    Args:
        client: Resilient upstream client.
        settings: Relay configuration (API base, model, input schema).
    """

    def __init__(self, client: ResilientClient, settings: RelayConfig) -> None:
        self.client = client
        self.api_base = settings.api_base_url.rstrip("/")
        self.model_url = settings.model_url
        self.prefer_wait = settings.prefer_wait
        self.schema: InputSchema = get_input_schema(settings.input_schema)

    def _create_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.prefer_wait:
            headers["Prefer"] = "wait"
        return headers

    async def create_prediction(
        self,
        prompt: str,
        aspect_ratio: str | None = None,
        reference_image_url: str | None = None,
    ) -> dict[str, Any]:
        """Create one prediction upstream.

        Args:
            prompt: Text prompt.
            aspect_ratio: Optional aspect ratio (e.g. ``"16:9"``).
            reference_image_url: Optional public URL of a reference image.

        Returns:
            The upstream prediction document.  It carries at least ``id`` and
            ``status`` and may already hold ``output`` when the upstream
            finished synchronously.

        Raises:
            UpstreamError: Any failure not covered by the fallback rule, or
                any failure of the fallback path itself.
        """
        model_input = self.schema.build_input(prompt, aspect_ratio, reference_image_url)

        try:
            response = await self.client.call(
                f"{self.model_url}/predictions",
                method="POST",
                headers=self._create_headers(),
                json={"input": model_input},
                label="official-predict",
            )
        except TerminalUpstreamError as exc:
            if exc.status not in FALLBACK_STATUSES:
                raise
            logger.info("Direct prediction path unavailable (%s), using versioned fallback", exc.status)
        else:
            raw, document = read_body(response)
            if isinstance(document, dict):
                return document
            logger.warning(
                "Direct prediction path returned an unexpected body, using versioned fallback: %s",
                raw[:200],
            )

        return await self._create_versioned(model_input)

    async def _create_versioned(self, model_input: dict[str, Any]) -> dict[str, Any]:
        version_id = await self.latest_version_id()
        response = await self.client.call(
            f"{self.api_base}/predictions",
            method="POST",
            headers=self._create_headers(),
            json={"version": version_id, "input": model_input},
            label="predictions",
        )
        raw, document = read_body(response)
        if not isinstance(document, dict):
            raise UpstreamProtocolError("predictions", "response is not a JSON object", body=raw)
        return document

    async def latest_version_id(self) -> str:
        """Read the model metadata and return ``latest_version.id``.

        Raises:
            UpstreamProtocolError: The metadata has no latest version id.
        """
        response = await self.client.call(self.model_url, label="model-info")
        raw, document = read_body(response)
        latest = document.get("latest_version") if isinstance(document, dict) else None
        version_id = latest.get("id") if isinstance(latest, dict) else None
        if not version_id:
            raise UpstreamProtocolError("model-info", "latest_version.id not found", body=raw)
        return version_id

    async def cancel_prediction(self, prediction_id: str) -> None:
        """Ask the upstream to cancel *prediction_id*."""
        await self.client.call(
            f"{self.api_base}/predictions/{prediction_id}/cancel",
            method="POST",
            label="cancel",
        )
