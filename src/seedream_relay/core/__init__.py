"""Core functionality of the Seedream relay.

Layers, leaves first:

1. **Resilient HTTP client** (http_client.py):
   - Per-attempt wall-clock timeout, transient/terminal classification
   - Exponential backoff retries
2. **Prediction adapter** (predictions.py, input_schema.py):
   - Direct model-scoped create, versioned fallback
   - Input field mapping selected from an explicit capability table
3. **Batch orchestrator** (batch.py):
   - Concurrent fan-out of 1-4 predictions, output normalisation
4. **Upload ingestor** (uploads.py) and **status poller** (status.py)

Configuration lives in config.py and the error taxonomy in errors.py.
"""

from seedream_relay.core.batch import BatchOrchestrator, BatchResult, GenerationJob, PredictionHandle
from seedream_relay.core.config import RelayConfig, config
from seedream_relay.core.errors import (
    ConfigurationError,
    InvalidRequestError,
    RelayError,
    TerminalUpstreamError,
    TransientUpstreamError,
    UploadUnreachableError,
    UpstreamError,
    UpstreamProtocolError,
)
from seedream_relay.core.http_client import ResilientClient
from seedream_relay.core.predictions import PredictionAdapter
from seedream_relay.core.status import StatusPoller
from seedream_relay.core.uploads import UploadedAsset, UploadStore

__all__ = [
    "BatchOrchestrator",
    "BatchResult",
    "ConfigurationError",
    "GenerationJob",
    "InvalidRequestError",
    "PredictionAdapter",
    "PredictionHandle",
    "RelayConfig",
    "RelayError",
    "ResilientClient",
    "StatusPoller",
    "TerminalUpstreamError",
    "TransientUpstreamError",
    "UploadStore",
    "UploadUnreachableError",
    "UploadedAsset",
    "UpstreamError",
    "UpstreamProtocolError",
    "config",
]
