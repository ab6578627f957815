"""Failure taxonomy shared by the background tasks and the control surface."""

from __future__ import annotations

import zipfile

import httpx


class MercuryError(Exception):
    """Base class for failures raised by the orchestration core."""


class NetworkError(MercuryError):
    """Connect, send, read or status failure while talking to a remote service."""


class StorageError(MercuryError):
    """Filesystem create/write failure (downloads, archive extraction, settings)."""


class ProtocolError(MercuryError):
    """A single malformed response frame. Never fatal to the surrounding stream."""


class ProcessError(MercuryError):
    """The inference server could not be spawned (binary or model missing, exec failure)."""


class ReadinessTimeout(MercuryError):
    """The readiness probe exhausted its attempt budget."""


def describe_error(exc: BaseException) -> str:
    """Render a failure as the message carried by a terminal Error event."""
    if isinstance(exc, MercuryError):
        return str(exc)
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code} from {exc.request.url}"
    if isinstance(exc, httpx.HTTPError):
        detail = str(exc) or type(exc).__name__
        return f"network error: {detail}"
    if isinstance(exc, zipfile.BadZipFile):
        return f"bad archive: {exc}"
    if isinstance(exc, OSError):
        target = f" ({exc.filename})" if exc.filename else ""
        return f"io error: {exc.strerror or exc}{target}"
    return str(exc) or type(exc).__name__


__all__ = [
    "MercuryError",
    "NetworkError",
    "ProcessError",
    "ProtocolError",
    "ReadinessTimeout",
    "StorageError",
    "describe_error",
]
