"""
Decoding of libvirt XML descriptors into resource models.

Descriptors come from a system we do not control: any element or attribute
may be missing and decoding falls back to the model defaults. Only a
document that is not XML, has an unexpected root element, lacks a name or
carries non-numeric values where numbers are expected is rejected with a
DescriptorDecodeError.
"""

import xml.etree.ElementTree as ET
from typing import Optional

from .exceptions import DescriptorDecodeError
from .models import (
    Disk,
    DnsHost,
    Domain,
    Interface,
    Memory,
    NetIP,
    Network,
    Source,
    StoragePool,
    Target,
    Volume,
)


def _parse(desc: str, root_tag: str) -> ET.Element:
    try:
        root = ET.fromstring(desc)
    except (ET.ParseError, TypeError) as e:
        raise DescriptorDecodeError(f"invalid {root_tag} XML description: {e}") from e

    if root.tag != root_tag:
        raise DescriptorDecodeError(
            f"unexpected root element <{root.tag}> in {root_tag} XML description",
            {"expected": root_tag, "found": root.tag},
        )
    return root


def _text(elem: ET.Element, path: str, default: str = "") -> str:
    found = elem.find(path)
    if found is None or found.text is None:
        return default
    return found.text.strip()


def _attr(elem: ET.Element, path: str, name: str, default: str = "") -> str:
    found = elem.find(path) if path else elem
    if found is None:
        return default
    return found.get(name, default)


def _int(value: str, what: str, default: Optional[int] = 0, base: int = 10) -> Optional[int]:
    if value == "":
        return default
    try:
        return int(value, base)
    except ValueError as e:
        raise DescriptorDecodeError(f"invalid {what}: {value!r}") from e


def _name(root: ET.Element, kind: str) -> str:
    name = _text(root, "name")
    if not name:
        raise DescriptorDecodeError(f"{kind} XML description has no name")
    return name


def parse_network_xml(desc: str) -> Network:
    """Decode a <network> descriptor."""
    root = _parse(desc, "network")

    ip = root.find("ip")
    address = NetIP()
    if ip is not None:
        address = NetIP(
            family=ip.get("family", "ipv4"),
            address=ip.get("address", ""),
            prefix=_int(ip.get("prefix", ""), "network prefix", default=None),
            netmask=ip.get("netmask", ""),
        )

    hosts = []
    for host in root.findall("dns/host"):
        hostnames = [h.text.strip() for h in host.findall("hostname") if h.text]
        hosts.append(DnsHost(address=host.get("ip", ""), hostnames=hostnames))

    return Network(
        name=_name(root, "network"),
        uuid=_text(root, "uuid"),
        address=address,
        mac=_attr(root, "mac", "address"),
        hosts=hosts,
    )


def _source(elem: Optional[ET.Element]) -> Source:
    if elem is None:
        return Source()
    return Source(
        pool=elem.get("pool", ""),
        volume=elem.get("volume", ""),
        file=elem.get("file", ""),
        network=elem.get("network", ""),
        bridge=elem.get("bridge", ""),
    )


def _target(elem: Optional[ET.Element]) -> Target:
    if elem is None:
        return Target()
    return Target(dev=elem.get("dev", ""), bus=elem.get("bus", ""))


def parse_domain_xml(desc: str) -> Domain:
    """Decode a <domain> descriptor. The active status is not part of it."""
    root = _parse(desc, "domain")

    disks = []
    for disk in root.findall("devices/disk"):
        disks.append(Disk(
            type=disk.get("type", ""),
            kind=disk.get("device", "disk"),
            target=_target(disk.find("target")),
            source=_source(disk.find("source")),
            backing_path=_attr(disk, "backingStore/source", "file"),
        ))

    interfaces = []
    for iface in root.findall("devices/interface"):
        interfaces.append(Interface(
            type=iface.get("type", ""),
            mac=_attr(iface, "mac", "address"),
            source=_source(iface.find("source")),
            target=_target(iface.find("target")),
        ))

    return Domain(
        name=_name(root, "domain"),
        uuid=_text(root, "uuid"),
        type=root.get("type", ""),
        vcpu=_int(_text(root, "vcpu"), "vcpu count"),
        memory=Memory(
            size=_int(_text(root, "memory"), "memory size"),
            unit=_attr(root, "memory", "unit", "KiB"),
        ),
        emulator=_text(root, "devices/emulator"),
        disks=disks,
        interfaces=interfaces,
    )


def parse_pool_xml(desc: str) -> StoragePool:
    """Decode a <pool> descriptor."""
    root = _parse(desc, "pool")

    return StoragePool(
        name=_name(root, "storage pool"),
        uuid=_text(root, "uuid"),
        type=root.get("type", ""),
        path=_text(root, "target/path"),
        # libvirt writes the mode in octal
        mode=_int(_text(root, "target/permissions/mode"), "pool mode", default=None, base=8),
        owner=_int(_text(root, "target/permissions/owner"), "pool owner", default=None),
        group=_int(_text(root, "target/permissions/group"), "pool group", default=None),
    )


def parse_volume_xml(desc: str) -> Volume:
    """Decode a <volume> descriptor."""
    root = _parse(desc, "volume")

    return Volume(
        name=_name(root, "volume"),
        type=root.get("type", "file"),
        key=_text(root, "key"),
        capacity=_int(_text(root, "capacity"), "volume capacity"),
        size=_int(_text(root, "physical") or _text(root, "allocation"), "volume size"),
        path=_text(root, "target/path"),
        format=_attr(root, "target/format", "type"),
        backing_store=_text(root, "backingStore/path"),
    )
