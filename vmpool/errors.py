"""vmpool error hierarchy.

Errors raised by the orchestration core. Provider failures are caught and
logged at the boundary of each dispatched machine task; configuration errors
are fatal at startup.
"""

from __future__ import annotations


class VmpoolError(Exception):
    """Base class for all vmpool errors."""

    def __init__(self, message: str = "", **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(VmpoolError):
    """Invalid or incomplete configuration (missing provider, unknown class)."""


class ProviderError(VmpoolError):
    """A provider operation failed."""


class MachineNotFoundError(ProviderError):
    """The provider has no machine with the requested name."""


class InventoryError(VmpoolError):
    """Listing a pool's inventory failed; the current tick is abandoned."""


class HostSelectionError(VmpoolError):
    """No usable host candidate is available."""


class HostSelectionBusyError(HostSelectionError):
    """A host refresh is already in progress."""


class TaskRequestError(VmpoolError):
    """A task queue request could not be resolved to a pool and provider."""


class InvalidDiskSizeError(VmpoolError):
    """Requested disk size is not a positive integer."""
