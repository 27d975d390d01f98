"""Custom exceptions for capi-image-builder."""

from __future__ import annotations


class BuildError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ResourceUnavailable(BuildError):
    """No free slot of a scarce host resource (block device, port)."""


class FirmwareNotFound(BuildError):
    """No boot firmware found on any candidate path."""


class BootTimeout(BuildError):
    """The VM did not become reachable within its wait budget."""

    def __init__(self, message: str, log_tail: str = "") -> None:
        super().__init__(message)
        self.log_tail = log_tail


class GuestConnectionError(BuildError):
    """The guest could not be reached over SSH.

    A command that ran in the guest and exited non-zero is not this error.
    """


class ConversionFailure(BuildError):
    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"Conversion step '{step}' failed: {message}")
        self.step = step


class ExtractionFailure(BuildError):
    """Boot artifacts could not be extracted from the image."""


class ValidationFailure(BuildError):
    """A validation check failed; recorded in the report rather than propagated."""
