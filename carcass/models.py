"""
Data models for carcass.

This module defines Pydantic models for the hypervisor resources (networks,
domains, storage pools and volumes) decoded from their XML descriptors, the
OS images built on top of volumes, and the typed results of batch
operations.
"""

import ipaddress
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


def size_pretty(size: int) -> str:
    """Format a size in bytes with a B, kB or MB unit."""
    unit = "B"
    value = float(size)
    if abs(value) > 1024:
        value /= 1024
        unit = "kB"
        if abs(value) > 1024:
            value /= 1024
            unit = "MB"
    return f"{value:.2f} {unit}"


class DomainState(str, Enum):
    """Machine state as seen by an infrastructure."""

    UNKNOWN = "unknown"
    ACTIVE = "active"
    INACTIVE = "inactive"


class NetIP(BaseModel):
    """Bridge address of a network."""

    family: str = Field(default="ipv4", description="Address family")
    address: str = Field(default="", description="Bridge IP address")
    prefix: Optional[int] = Field(default=None, description="Prefix length")
    netmask: str = Field(default="", description="Explicit netmask")

    @property
    def cidr(self) -> str:
        """Network address in CIDR notation, empty if the address is unusable."""
        if not self.address:
            return ""

        if self.netmask:
            mask = self.netmask
        elif self.prefix is not None:
            mask = str(self.prefix)
        else:
            mask = "64" if self.family == "ipv6" else "32"

        try:
            return str(ipaddress.ip_network(f"{self.address}/{mask}", strict=False))
        except ValueError:
            return ""

    def __str__(self) -> str:
        return self.cidr


class DnsHost(BaseModel):
    """Static DNS host entry of a network."""

    address: str = Field(default="", description="IP address")
    hostnames: List[str] = Field(default_factory=list, description="Host names")


class Network(BaseModel):
    """Virtual network with its address block and static DNS entries."""

    name: str = Field(description="Network name")
    uuid: str = Field(default="", description="Network UUID")
    address: NetIP = Field(default_factory=NetIP, description="Bridge address")
    mac: str = Field(default="", description="Bridge MAC address")
    hosts: List[DnsHost] = Field(default_factory=list, description="Static DNS hosts")

    def lookup_dns_host(self, hostname: str) -> str:
        """Return the address registered for hostname, empty when unresolved."""
        for entry in self.hosts:
            if hostname in entry.hostnames:
                return entry.address
        return ""

    def describe(self) -> str:
        lines = [
            f"Network: {self.name} {self.uuid}",
            f"  address: {self.address}",
            "  hosts:",
        ]
        for host in self.hosts:
            lines.append(f"    {host.address}  {' '.join(host.hostnames)}")
        return "\n".join(lines) + "\n"


class Memory(BaseModel):
    """Memory allocation of a domain."""

    size: int = Field(default=0, description="Memory size")
    unit: str = Field(default="KiB", description="Memory unit")


class Target(BaseModel):
    """Device target of a disk or interface."""

    dev: str = Field(default="", description="Target device name")
    bus: str = Field(default="", description="Target bus")


class Source(BaseModel):
    """Source of a disk or interface."""

    pool: str = Field(default="", description="Storage pool of a volume disk")
    volume: str = Field(default="", description="Volume name of a volume disk")
    file: str = Field(default="", description="Path of a file disk")
    network: str = Field(default="", description="Network of an interface")
    bridge: str = Field(default="", description="Bridge of an interface")


class Disk(BaseModel):
    """Disk device of a domain."""

    type: str = Field(default="", description="Disk source type (volume, file...)")
    kind: str = Field(default="disk", description="Device kind (disk, cdrom...)")
    target: Target = Field(default_factory=Target)
    source: Source = Field(default_factory=Source)
    backing_path: str = Field(default="", description="Path of the backing store")


class Interface(BaseModel):
    """Network interface of a domain."""

    type: str = Field(default="", description="Interface type")
    mac: str = Field(default="", description="MAC address")
    source: Source = Field(default_factory=Source)
    target: Target = Field(default_factory=Target)


class Domain(BaseModel):
    """Virtual machine as described by the hypervisor."""

    name: str = Field(description="Domain name")
    uuid: str = Field(default="", description="Domain UUID")
    type: str = Field(default="", description="Domain type")
    vcpu: int = Field(default=0, description="Number of virtual CPUs")
    memory: Memory = Field(default_factory=Memory)
    emulator: str = Field(default="", description="Emulator binary")
    disks: List[Disk] = Field(default_factory=list)
    interfaces: List[Interface] = Field(default_factory=list)
    active: bool = Field(default=False, description="Whether the domain is running")

    def is_attached_to(self, network_name: str) -> bool:
        return any(i.source.network == network_name for i in self.interfaces)

    def describe(self) -> str:
        lines = [
            f"Domain: {self.name} ({self.type}) {self.uuid}",
            f"  cpu: {self.vcpu}, mem: {self.memory.size} {self.memory.unit}",
            "  disks:",
        ]
        for disk in self.disks:
            device = f"{disk.kind}: {disk.target.bus}/{disk.target.dev}"
            if disk.type == "volume":
                lines.append(f"   - {device} - volume: {disk.source.pool}::{disk.source.volume}")
            elif disk.type == "file":
                lines.append(f"   - {device} - path: {disk.source.file}")
        lines.append("  interfaces:")
        for iface in self.interfaces:
            lines.append(
                f"   - {iface.target.dev} {iface.mac} net: {iface.source.network} "
                f"bridge: {iface.source.bridge}"
            )
        return "\n".join(lines) + "\n"


class StoragePool(BaseModel):
    """Storage pool holding volumes."""

    name: str = Field(description="Storage pool name")
    uuid: str = Field(default="", description="Storage pool UUID")
    type: str = Field(default="", description="Backing type (dir, logical...)")
    path: str = Field(default="", description="Target path")
    mode: Optional[int] = Field(default=None, description="Permission mode")
    owner: Optional[int] = Field(default=None, description="Owner uid")
    group: Optional[int] = Field(default=None, description="Group gid")


class Volume(BaseModel):
    """Storage volume inside a pool."""

    name: str = Field(description="Volume name")
    type: str = Field(default="file", description="Volume type")
    key: str = Field(default="", description="Volume key")
    capacity: int = Field(default=0, description="Logical capacity in bytes")
    size: int = Field(default=0, description="Physical allocation in bytes")
    path: str = Field(default="", description="Target path")
    format: str = Field(default="", description="Format tag (qcow2, raw...)")
    backing_store: str = Field(default="", description="Path of the backing store")


class Image(BaseModel):
    """OS image backed by a base volume of a storage pool."""

    name: str = Field(description="Image name, the volume is <name>-base.<format>")
    pool: str = Field(description="Storage pool name")
    source: str = Field(default="", description="Path or URL the image came from")
    path: str = Field(default="", description="Path of the volume on the hypervisor")
    format: str = Field(default="", description="Volume format")
    capacity: int = Field(default=0, description="Capacity in bytes")
    size: int = Field(default=0, description="Allocation in bytes")

    def describe(self) -> str:
        return (
            f"{self.name}:\n  pool: {self.pool}\n  source: {self.source}\n"
            f"  path: {self.path}\n  format: {self.format}\n"
            f"  space: {size_pretty(self.size)}/{size_pretty(self.capacity)}"
        )


class ItemFailure(BaseModel):
    """Failure of a single item within a batch operation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(description="Name of the item, or its position when unknown")
    error: Exception = Field(description="Error raised for the item")

    @property
    def message(self) -> str:
        return str(self.error)


class BatchResult(BaseModel, Generic[T]):
    """Items successfully handled by a batch operation and per-item failures."""

    items: List[T] = Field(default_factory=list)
    failures: List[ItemFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class ControlReport(BaseModel):
    """Outcome of start or stop requests on the machines of an infrastructure."""

    requested: List[str] = Field(default_factory=list, description="Domains a request was sent to")
    skipped: List[str] = Field(default_factory=list, description="Domains left alone")
    failures: List[ItemFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures
