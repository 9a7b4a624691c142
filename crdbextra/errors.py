"""Error taxonomy shared by the broker, reconcilers and the CLI."""

from __future__ import annotations


class CrdbExtraError(RuntimeError):
    """Base class for every error raised by crdbextra."""


class ConfigurationError(CrdbExtraError):
    """Raised when the runtime configuration is incomplete or invalid."""


class ResourceError(CrdbExtraError):
    """Fatal failure of a resource operation.

    ``summary`` is a short human label, ``detail`` carries the underlying
    database or REST error text unmodified so it can be matched against
    cluster-side logs.
    """

    def __init__(self, summary: str, detail: str = "") -> None:
        self.summary = summary
        self.detail = detail
        super().__init__(f"{summary}: {detail}" if detail else summary)


class ConflictError(ResourceError):
    """Desired state conflicts with live state (collisions, immutables, ownership)."""


class StatementParseError(ResourceError):
    """Statement text returned by the cluster did not have the expected shape."""

    def __init__(self, detail: str, statement: str = "") -> None:
        super().__init__("Unable to parse statement", detail)
        self.statement = statement


class InvalidResourceIdError(CrdbExtraError, ValueError):
    """Raised when a composite resource id cannot be parsed."""


__all__ = [
    "ConfigurationError",
    "ConflictError",
    "CrdbExtraError",
    "InvalidResourceIdError",
    "ResourceError",
    "StatementParseError",
]
