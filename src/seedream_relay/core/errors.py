"""Error taxonomy for the Seedream relay.

Every failure the relay can report to a browser client is an instance of
:class:`RelayError`.  Core modules raise these exceptions; the FastAPI layer
renders them through a single exception handler using :meth:`RelayError.payload`
and :attr:`RelayError.status_code`, so every failure response is a JSON body
with an ``error`` string.

Hierarchy
---------
RelayError
    InvalidRequestError        400 - blank prompt, malformed data URL, bad id
    ConfigurationError         500 - missing credential, bad settings
    UploadUnreachableError     400 - file saved but its public URL is dead
    UpstreamError              502 - anything the upstream API did wrong
        TransientUpstreamError     retry budget exhausted
        TerminalUpstreamError      non-retryable status or transport error
        UpstreamProtocolError      2xx response with an unusable body
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def payload(self) -> dict[str, Any]:
        """Return the JSON body sent to the client."""
        return {"error": self.message}


class InvalidRequestError(RelayError):
    """The client sent something the relay cannot act on."""

    status_code = 400


class ConfigurationError(RelayError):
    """The server is misconfigured and an operator has to fix it."""

    status_code = 500


class UploadUnreachableError(RelayError):
    """An upload was written to disk but its public URL cannot be fetched."""

    status_code = 400

    def __init__(self, message: str, url: str, mime: str) -> None:
        super().__init__(message)
        self.url = url
        self.mime = mime

    def payload(self) -> dict[str, Any]:
        return {"error": self.message, "url": self.url, "mime": self.mime}


class UpstreamError(RelayError):
    """A call to the upstream prediction API failed.

    Attributes:
        label: Short name of the call site (``"official-predict"``, ``"poll"``...).
        status: HTTP status returned by the upstream, or ``None`` when the
            request never produced a response.
        body: Full raw response body (may be empty).
    """

    status_code = 502

    def __init__(
        self,
        label: str,
        detail: str,
        *,
        status: int | None = None,
        body: str = "",
    ) -> None:
        self.label = label
        self.status = status
        self.body = body
        parts = [f"[{label}]"]
        if status is not None:
            parts.append(str(status))
        parts.append(detail)
        if body:
            parts.append(body)
        super().__init__(" ".join(parts))


class TransientUpstreamError(UpstreamError):
    """The upstream kept failing transiently until the retry budget ran out."""


class TerminalUpstreamError(UpstreamError):
    """The upstream failed in a way that retrying will not fix."""


class UpstreamProtocolError(UpstreamError):
    """The upstream answered 2xx but the body is not what the relay expects."""
