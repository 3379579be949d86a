"""Status lookup for a single upstream prediction."""

from __future__ import annotations

import logging
import re
from typing import Any

from .config import RelayConfig
from .errors import InvalidRequestError
from .http_client import ResilientClient, read_body

logger = logging.getLogger(__name__)

# Replicate prediction ids are short alphanumeric tokens.
PREDICTION_ID_RE = re.compile(r"[A-Za-z0-9_-]+")


class StatusPoller:
    """Passthrough ``GET /predictions/{id}`` through the resilient client."""

    def __init__(self, client: ResilientClient, settings: RelayConfig) -> None:
        self.client = client
        self.api_base = settings.api_base_url.rstrip("/")

    async def get_status(self, prediction_id: str) -> tuple[int, Any]:
        """Fetch the upstream status document for *prediction_id*.

        Returns:
            ``(status_code, document)`` where ``document`` is the parsed JSON
            body, or ``{"raw": text}`` when the body is not JSON.

        Raises:
            InvalidRequestError: *prediction_id* contains characters that
                cannot appear in an upstream id.
            UpstreamError: The lookup failed.
        """
        if not PREDICTION_ID_RE.fullmatch(prediction_id or ""):
            raise InvalidRequestError(f"Invalid prediction id '{prediction_id}'.")

        response = await self.client.call(f"{self.api_base}/predictions/{prediction_id}", label="poll")
        raw, document = read_body(response)
        if document is None:
            document = {"raw": raw}
        return response.status_code, document
