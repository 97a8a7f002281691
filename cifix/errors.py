from __future__ import annotations

from typing import Any, Mapping


class CifixError(RuntimeError):
    """Base class for errors raised by the fix loop."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class ConfigurationError(CifixError):
    """A required external credential is missing; the job stops before touching any repo."""


class PolicyViolation(CifixError):
    """Protected branch target or commit provenance failure. Never retried."""


class ExecutionError(CifixError):
    """An external tool (git, docker, npm, ...) exited non-zero."""


class PatchError(CifixError):
    """A patch could not be produced or applied."""


class TransportError(CifixError):
    """Push or network failure talking to a remote."""


class InvalidRunRequest(ValueError):
    """A run request is missing required fields."""
