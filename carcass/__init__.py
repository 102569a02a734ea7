"""
Carcass - manage sets of libvirt virtual machines as environments.

An environment is a virtual network of a libvirt hypervisor and the virtual
machines connected to it. OS images are stored as base volumes of a storage
pool and copied there through the hypervisor API.
"""

__version__ = "0.3.0"
__description__ = "Manage sets of libvirt virtual machines as environments"

from .config import Config
from .environment import Environment
from .exceptions import (
    CarcassError,
    HypervisorConnectionError,
    ImageStoreError,
    ResourceNotFoundError,
    TransferError,
)
from .hypervisor import Hypervisor
from .images import ImageStore
from .infrastructure import Infrastructure
from .transfer import VolumeTransfer

__all__ = [
    "__version__",
    "__description__",
    "Config",
    "Environment",
    "Hypervisor",
    "ImageStore",
    "Infrastructure",
    "VolumeTransfer",
    "CarcassError",
    "HypervisorConnectionError",
    "ImageStoreError",
    "ResourceNotFoundError",
    "TransferError",
]
