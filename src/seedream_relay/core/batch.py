"""Batch orchestration: one generate request, N concurrent predictions.

A generate request asks for 1-4 images.  Seedream creates one image per
prediction, so the orchestrator starts one upstream prediction per requested
image.  All of them are started before any is awaited; each may block for
seconds on ``Prefer: wait``, so running them one after another would multiply
the latency.

Failure semantics
-----------------
- If any prediction fails, the whole batch fails with the first failure
  observed.  There is no partial-success response.
- Sibling predictions already dispatched are **not** cancelled.  They keep
  running locally until their HTTP call returns, and the jobs they created
  upstream run to completion.  The orchestrator keeps references to them
  until they finish, and :meth:`BatchOrchestrator.aclose` drains them.
- With ``cancel_abandoned=True`` the orchestrator additionally waits for the
  siblings in the background and asks the upstream to cancel every
  prediction they created that is not already finished.

Response shapes
---------------
A single-image request answers with the ``"single"`` shape (flat fields);
anything larger answers with the ``"batch"`` shape (``items`` list).  Older
clients only understand the flat shape, so the distinction is part of the
contract.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidRequestError, UpstreamError
from .predictions import PredictionAdapter

logger = logging.getLogger(__name__)

MIN_REPLICAS = 1
MAX_REPLICAS = 4

# Upstream lifecycle states after which a cancel request is pointless.
FINISHED_STATES = frozenset({"succeeded", "failed", "canceled"})


def clamp_replica_count(value: Any) -> int:
    """Coerce a client-supplied image count into ``[1, 4]``.

    Non-numeric values, ``None``, ``NaN`` and zero become 1.  Fractions are
    floored after clamping.

    Examples:
        >>> clamp_replica_count(0), clamp_replica_count(5), clamp_replica_count("3")
        (1, 4, 3)
        >>> clamp_replica_count("many")
        1
    """
    if isinstance(value, bool):
        number = float(value)
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return MIN_REPLICAS

    if math.isnan(number) or number == 0:
        return MIN_REPLICAS

    number = max(MIN_REPLICAS, min(MAX_REPLICAS, number))
    return int(math.floor(number))


def normalize_output(output: Any) -> list | None:
    """Flatten the upstream ``output`` field into a list of asset URLs.

    Checked in order: a flat list, a list under ``"images"``, a list under
    ``"data"``.  Anything else yields ``None``.
    """
    if isinstance(output, list):
        return output
    if isinstance(output, dict):
        for key in ("images", "data"):
            nested = output.get(key)
            if isinstance(nested, list):
                return nested
    return None


@dataclass
class GenerationJob:
    """A validated generate request."""

    prompt: str
    replica_count: int = 1
    aspect_ratio: str | None = None
    reference_image_url: str | None = None

    @classmethod
    def from_client(
        cls,
        prompt: str | None,
        num_images: Any = None,
        aspect: str | None = None,
        image_url: str | None = None,
    ) -> GenerationJob:
        """Build a job from raw client fields.

        Raises:
            InvalidRequestError: *prompt* is missing or blank.
        """
        if not prompt or not prompt.strip():
            raise InvalidRequestError("Missing 'prompt'.")
        return cls(
            prompt=prompt,
            replica_count=clamp_replica_count(num_images),
            aspect_ratio=aspect or None,
            reference_image_url=image_url or None,
        )


@dataclass
class PredictionHandle:
    """Client-facing view of one upstream prediction."""

    id: str | None
    get_url: str | None = None
    web_url: str | None = None
    status: str | None = None
    output: list | None = None

    @classmethod
    def from_upstream(cls, document: dict[str, Any]) -> PredictionHandle:
        urls = document.get("urls")
        if not isinstance(urls, dict):
            urls = {}
        return cls(
            id=document.get("id"),
            get_url=urls.get("get"),
            web_url=urls.get("web"),
            status=document.get("status"),
            output=normalize_output(document.get("output")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "getUrl": self.get_url,
            "webUrl": self.web_url,
            "status": self.status,
            "output": self.output,
        }


@dataclass
class BatchResult:
    """Predictions of one generate request, in submission order."""

    handles: list[PredictionHandle] = field(default_factory=list)
    took_ms: int = 0

    def to_response(self) -> dict[str, Any]:
        """Render the ``"single"`` or ``"batch"`` response shape."""
        if len(self.handles) == 1:
            return {"mode": "single", **self.handles[0].to_dict()}
        items = [handle.to_dict() for handle in self.handles]
        return {
            "mode": "batch",
            "count": len(items),
            "items": items,
            "tookMs": self.took_ms,
        }


class BatchOrchestrator:
    """Fan a generate request out into concurrent upstream predictions.

    Args:
        adapter: Prediction adapter used for every replica.
        cancel_abandoned: Cancel sibling predictions upstream when a batch
            fails.  Off by default: siblings run to completion.
    """

    def __init__(self, adapter: PredictionAdapter, *, cancel_abandoned: bool = False) -> None:
        self.adapter = adapter
        self.cancel_abandoned = cancel_abandoned
        self._pending: set[asyncio.Future] = set()

    @property
    def pending(self) -> int:
        """Number of abandoned calls or cleanups still running."""
        return len(self._pending)

    async def generate(self, job: GenerationJob) -> BatchResult:
        """Run ``job.replica_count`` predictions concurrently.

        Returns:
            A :class:`BatchResult` with exactly one handle per replica, in
            submission order.

        Raises:
            InvalidRequestError: The prompt is blank.
            UpstreamError: The first replica failure observed.
        """
        if not job.prompt or not job.prompt.strip():
            raise InvalidRequestError("Missing 'prompt'.")

        count = clamp_replica_count(job.replica_count)
        started = time.monotonic()

        tasks = [
            asyncio.ensure_future(
                self.adapter.create_prediction(
                    job.prompt,
                    job.aspect_ratio,
                    job.reference_image_url,
                )
            )
            for _ in range(count)
        ]

        # Shielded so a disconnecting client does not cancel dispatched calls.
        try:
            documents = await asyncio.shield(asyncio.gather(*tasks))
        except (Exception, asyncio.CancelledError):
            self._abandon(tasks)
            raise

        handles = [PredictionHandle.from_upstream(document) for document in documents]
        took_ms = int((time.monotonic() - started) * 1000)
        logger.info("Batch of %d prediction(s) created in %d ms", count, took_ms)
        return BatchResult(handles=handles, took_ms=took_ms)

    def _track(self, future: asyncio.Future) -> None:
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    def _abandon(self, tasks: list[asyncio.Future]) -> None:
        running = [task for task in tasks if not task.done()]
        if self.cancel_abandoned:
            self._track(asyncio.ensure_future(self._cancel_siblings(tasks)))
            return

        if running:
            logger.warning(
                "Batch failed; %d sibling prediction call(s) left running upstream",
                len(running),
            )
        for task in running:
            self._track(task)

    async def _cancel_siblings(self, tasks: list[asyncio.Future]) -> None:
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if not isinstance(result, dict):
                continue
            prediction_id = result.get("id")
            if not prediction_id or result.get("status") in FINISHED_STATES:
                continue
            try:
                await self.adapter.cancel_prediction(prediction_id)
                logger.info("Cancelled abandoned prediction %s", prediction_id)
            except UpstreamError as exc:
                logger.warning("Could not cancel abandoned prediction %s: %s", prediction_id, exc)

    async def aclose(self) -> None:
        """Wait for abandoned calls and cancellations to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
