"""Upload ingestion for reference images.

The image-to-image mode of seedream-4 only accepts a reference image by URL,
and the upstream must be able to fetch that URL itself.  The browser sends
the image inline as a ``data:`` URL; this module decodes it, stores it under
the upload directory with a random name, and returns the public URL the
relay serves it from.

Processing flow:
    1. Parse ``data:<mime>;base64,<payload>`` and decode the payload.
    2. Pick the file extension from :data:`MIME_EXTENSIONS`.
    3. Write the bytes to ``<upload_dir>/<16 hex chars><ext>``.
    4. Join the externally visible origin with ``/uploads/<name>``.
    5. Optionally fetch that URL (HEAD, then GET) to prove it is reachable.

Storage:
    Files are never rewritten.  They are only deleted by the optional TTL
    sweep; without a TTL the directory grows without bound.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
import secrets
import stat
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

import httpx

from .errors import InvalidRequestError, UploadUnreachableError

logger = logging.getLogger(__name__)

UPLOADS_PREFIX = "/uploads"

DATA_URL_RE = re.compile(r"^data:(.+?);base64,(.*)$", re.IGNORECASE | re.DOTALL)

MIME_EXTENSIONS: dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/heic": ".heic",
    "image/heif": ".heif",
}
FALLBACK_EXTENSION = ".bin"


def extension_for_mime(mime: str | None) -> str:
    return MIME_EXTENSIONS.get((mime or "").strip().lower(), FALLBACK_EXTENSION)


def parse_data_url(data_url: str | None) -> tuple[str, bytes]:
    """Split a base64 ``data:`` URL into ``(mime, bytes)``.

    Raises:
        InvalidRequestError: The text does not follow the data URL grammar or
            the payload is not valid base64.
    """
    match = DATA_URL_RE.match(data_url or "")
    if not match:
        raise InvalidRequestError("Invalid data URL")
    mime, payload = match.group(1), match.group(2)
    try:
        data = base64.b64decode("".join(payload.split()))
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequestError(f"Invalid base64 payload: {exc}") from exc
    return mime, data


def _first_header_value(value: str | None) -> str | None:
    if not value:
        return None
    first = value.split(",")[0].strip()
    return first or None


def _require_printable(value: str, header: str) -> str:
    if any(char.isspace() or not char.isprintable() for char in value):
        raise InvalidRequestError(f"Invalid {header} header.")
    return value


def public_base_url(
    headers: Mapping[str, str],
    scheme: str = "http",
    override: str | None = None,
) -> str:
    """Return the origin browsers and the upstream use to reach this server.

    The configured *override* wins.  Otherwise ``X-Forwarded-Proto`` and
    ``X-Forwarded-Host`` set by a reverse proxy take precedence over the
    request's own scheme and ``Host`` header.

    Raises:
        InvalidRequestError: The chosen proto or host header holds
            whitespace or control characters.
    """
    if override:
        return override.rstrip("/")
    proto = _first_header_value(headers.get("x-forwarded-proto"))
    proto = _require_printable(proto, "X-Forwarded-Proto") if proto else scheme
    host = _first_header_value(headers.get("x-forwarded-host"))
    if host:
        host = _require_printable(host, "X-Forwarded-Host")
    else:
        host = _require_printable(headers.get("host", "localhost"), "Host")
    return f"{proto}://{host}"


@dataclass(frozen=True)
class UploadedAsset:
    """A stored reference image."""

    mime_type: str
    size: int
    file_name: str
    path: Path
    url: str

    def to_dict(self) -> dict:
        return {"url": self.url, "mime": self.mime_type, "size": self.size}


class UploadStore:
    """Persist inline images and publish them under ``/uploads``.

    Args:
        upload_dir: Flat directory for stored files.
        verify: Fetch each new URL before reporting success.
        verify_timeout_ms: Timeout of each verification request.
        ttl_seconds: Age after which files are swept on ingest, or ``None``.
        max_upload_bytes: Longest accepted data URL.
        client_factory: Builds the ``httpx.AsyncClient`` used for
            verification.  The verification client never carries the
            upstream credential.
    """

    def __init__(
        self,
        upload_dir: Path,
        *,
        verify: bool = True,
        verify_timeout_ms: int = 10_000,
        ttl_seconds: int | None = None,
        max_upload_bytes: int = 15 * 1024 * 1024,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ) -> None:
        self.upload_dir = Path(upload_dir)
        self.verify = verify
        self.verify_timeout_ms = verify_timeout_ms
        self.ttl_seconds = ttl_seconds
        self.max_upload_bytes = max_upload_bytes
        self._client_factory = client_factory

    async def ingest(self, data_url: str | None, base_url: str) -> UploadedAsset:
        """Store an inline image and return its public description.

        Args:
            data_url: ``data:<mime>;base64,<payload>`` text from the client.
            base_url: Externally visible origin (see :func:`public_base_url`).

        Raises:
            InvalidRequestError: Missing, oversized or malformed data URL.
            UploadUnreachableError: The file was saved but its URL could not
                be fetched.
        """
        if not data_url:
            raise InvalidRequestError("Missing 'dataUrl'.")
        if len(data_url) > self.max_upload_bytes:
            raise InvalidRequestError(f"Upload exceeds {self.max_upload_bytes} bytes.")
        mime, data = parse_data_url(data_url)

        if self.ttl_seconds:
            await asyncio.to_thread(self.sweep_expired, self.ttl_seconds)

        file_name = secrets.token_hex(8) + extension_for_mime(mime)
        path = self.upload_dir / file_name
        await asyncio.to_thread(self._write, path, data)

        url = f"{base_url.rstrip('/')}{UPLOADS_PREFIX}/{file_name}"
        logger.info("Stored upload %s (%s, %d bytes)", file_name, mime, len(data))

        if self.verify:
            reachable, status = await self.check_reachable(url)
            if not reachable:
                raise UploadUnreachableError(
                    f"Upload saved but not publicly accessible (status {status}).",
                    url=url,
                    mime=mime,
                )

        return UploadedAsset(mime_type=mime, size=len(data), file_name=file_name, path=path, url=url)

    def _write(self, path: Path, data: bytes) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def check_reachable(self, url: str) -> tuple[bool, int]:
        """HEAD *url*, falling back to GET; return ``(ok, last_status)``.

        Transport errors count as unreachable with status 0.
        """
        status = 0
        try:
            async with self._client_factory(timeout=self.verify_timeout_ms / 1000) as client:
                response = await client.head(url)
                status = response.status_code
                if response.is_success:
                    return True, status
                response = await client.get(url)
                status = response.status_code
                return response.is_success, status
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Upload verification of %s failed: %s", url, exc)
            return False, status

    def sweep_expired(self, ttl_seconds: int) -> int:
        """Delete stored files older than *ttl_seconds*; return how many."""
        if not self.upload_dir.exists():
            return 0
        cutoff = time.time() - ttl_seconds
        removed = 0
        for path in self.upload_dir.iterdir():
            # Concurrent sweeps may delete an entry after it was listed.
            try:
                info = path.stat()
                if not stat.S_ISREG(info.st_mode) or info.st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        if removed:
            logger.info("Swept %d expired upload(s)", removed)
        return removed

    def list_files(self) -> list[str]:
        if not self.upload_dir.exists():
            return []
        return sorted(path.name for path in self.upload_dir.iterdir() if path.is_file())
