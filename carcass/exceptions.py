"""
Custom exceptions for carcass.

This module defines specific exception classes for the different failures
that can happen while reading resources from the hypervisor, moving image
data into storage volumes and controlling virtual machines.
"""


class CarcassError(Exception):
    """Base exception for all carcass errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class HypervisorConnectionError(CarcassError):
    """Raised when the hypervisor cannot be reached or the connection is lost."""
    pass


class ResourceNotFoundError(CarcassError):
    """Raised when a requested hypervisor resource does not exist."""
    pass


class DescriptorDecodeError(CarcassError):
    """Raised when the XML descriptor of a resource cannot be decoded."""
    pass


class HypervisorOperationError(CarcassError):
    """Raised when a native operation on the hypervisor fails."""
    pass


class VolumeCreateError(HypervisorOperationError):
    """Raised when a storage volume cannot be created."""
    pass


class VolumeRemoveError(HypervisorOperationError):
    """Raised when a storage volume cannot be removed."""
    pass


class VolumeLookupError(HypervisorOperationError):
    """Raised when checking a storage volume fails for a reason other than absence."""
    pass


class TransferError(HypervisorOperationError):
    """Raised when streaming data into a volume fails."""
    pass


class DriverCapabilityGap(CarcassError):
    """Raised when the hypervisor driver does not support an optional operation."""
    pass


class ImageStoreError(CarcassError):
    """Raised when an OS image cannot be stored in a pool."""
    pass


class ImageExistsError(ImageStoreError):
    """Raised when storing an image whose volume already exists."""
    pass


class ImageDropError(CarcassError):
    """Raised when an OS image cannot be removed from a pool."""
    pass


class ImageSourceError(CarcassError):
    """Raised when the source of an image cannot be opened."""
    pass


class SourceMapError(CarcassError):
    """Raised when the image source map file cannot be read or written."""
    pass


class ConfigurationError(CarcassError):
    """Raised when configuration is invalid or missing."""
    pass
