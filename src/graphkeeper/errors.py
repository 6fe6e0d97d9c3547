"""Exception hierarchy shared by the supervisor, client and ingestion layers."""

from __future__ import annotations

from typing import Sequence


class GraphKeeperError(Exception):
    """Base class for every error raised by graphkeeper."""


class ConfigurationError(GraphKeeperError):
    """A required setting (working directory, launch command, ...) is missing."""


class UnsupportedDocumentError(ConfigurationError):
    """The document type is not on the ingestion allow-list."""


class TransportError(GraphKeeperError):
    """The backend could not be reached (connect failure, timeout, reset)."""


class BackendError(GraphKeeperError):
    """The backend answered with a non-success status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"Backend returned HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ProcessError(GraphKeeperError):
    """Spawning or signalling the backend process failed."""


class ValidationError(GraphKeeperError):
    """A settings snapshot was rejected."""

    def __init__(self, issues: Sequence[str]) -> None:
        self.issues = list(issues)
        super().__init__("Invalid settings:\n" + "\n".join(self.issues))


__all__ = [
    "GraphKeeperError",
    "ConfigurationError",
    "UnsupportedDocumentError",
    "TransportError",
    "BackendError",
    "ProcessError",
    "ValidationError",
]
