"""Error taxonomy for the deployment engine.

Partial results always travel with the error that interrupted them, so a
caller can make progress on the parts that succeeded.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import httpx
import kr8s

if TYPE_CHECKING:
    from .models import DeploymentOutcome


class EngineError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ParseError(EngineError):
    """A manifest document could not be parsed into an object."""


class RenderError(EngineError):
    """A template or script source could not be rendered."""


class ConflictError(EngineError):
    """A resource exists but is owned by a different source.

    Never fatal: the deployer catches it and reports the resource as
    conflicted in its DeploymentOutcome.
    """


class APIError(EngineError):
    """A cluster API call failed."""

    status_code: int | None = None

    def __init__(
        self, message: str, details: str | None = None, status_code: int | None = None
    ):
        super().__init__(message, details)
        self.status_code = status_code


class TransientAPIError(APIError):
    """Network, timeout or server-busy failure; the caller may retry."""


class PermanentAPIError(APIError):
    """Authorization or admission rejection; retrying will not help."""


class HelmError(EngineError):
    """A helm command failed."""


class AggregateFailure(EngineError):
    """Every object in a batch failed."""

    def __init__(self, outcome: DeploymentOutcome):
        self.outcome = outcome
        super().__init__(
            f"All {len(outcome.errors)} document(s) failed",
            details=outcome.error_summary(),
        )


class DeploymentCancelled(EngineError):
    """The caller cancelled a deployment between two documents."""

    def __init__(self, outcome: DeploymentOutcome):
        self.outcome = outcome
        super().__init__("Deployment cancelled")


_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def classify_api_error(exc: BaseException, action: str = "API call") -> APIError:
    """Map a client exception to a Transient or Permanent API error.

    Args:
        exc: Exception raised by the cluster client
        action: Short description of what was being attempted

    Returns:
        TransientAPIError or PermanentAPIError wrapping the exception
    """
    if isinstance(exc, APIError):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return TransientAPIError(f"{action} timed out")
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return TransientAPIError(f"{action} failed: {exc}")
    if isinstance(exc, kr8s.ServerError):
        status_code = exc.response.status_code if exc.response is not None else None
        error_cls = (
            TransientAPIError
            if status_code is None or status_code in _TRANSIENT_STATUS_CODES
            else PermanentAPIError
        )
        return error_cls(f"{action} failed: {exc}", status_code=status_code)
    return PermanentAPIError(f"{action} failed: {exc}")
