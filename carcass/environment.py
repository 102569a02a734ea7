"""
Environments: a named infrastructure with a human readable summary.
"""

from typing import Dict, Optional

from .exceptions import CarcassError
from .hypervisor import Hypervisor
from .images import image_name_from_volume
from .infrastructure import Infrastructure
from .logging import get_logger
from .models import ControlReport, Domain

logger = get_logger(__name__)


class Environment:
    """A set of virtual machines sharing one network of the hypervisor."""

    def __init__(
        self,
        name: str,
        infra: Infrastructure,
        description: str = "",
        images: Optional[Dict[str, str]] = None,
    ):
        self.name = name
        self.description = description
        self.domain = name  # DNS domain
        self.infra = infra
        self.images = images or {}

    @classmethod
    def lookup(cls, hypervisor: Hypervisor, name: str) -> "Environment":
        """Load the environment whose network is named name."""
        infra = Infrastructure.lookup(hypervisor, name)

        images = {}
        for machine in infra.machines:
            image = base_image_of(hypervisor, machine)
            if image:
                images[machine.name] = image

        return cls(name, infra, images=images)

    def start(self) -> ControlReport:
        return self.infra.start_all()

    def stop(self, force: bool = False) -> ControlReport:
        return self.infra.stop_all(force)

    def render(self) -> str:
        """Summary of the network and machines, one machine per line."""
        network = self.infra.network

        header = f"Environment: {self.name}"
        if self.description:
            header += f" ({self.description})"

        lines = [
            header,
            f"  Network: {network.name}  {network.address}",
            "  Machines:",
        ]

        width = max((len(m.name) for m in self.infra.machines), default=0)
        for machine in self.infra.machines:
            line = f"    - {machine.name.ljust(width)}  {network.lookup_dns_host(machine.name)}"

            image = self.images.get(machine.name)
            if image:
                line += f"  {image}"

            if machine.active:
                line += "  active"

            lines.append(line)

        return "\n".join(lines) + "\n"

    def __str__(self) -> str:
        return self.render()


def base_image_of(hypervisor: Hypervisor, machine: Domain) -> str:
    """
    Name of the OS image the first disk of the machine is based on.

    A disk is based on an image when its volume is a base volume, when its
    backing store is one, or when the volume looked up on the hypervisor has
    a base volume as backing store. Returns an empty string otherwise.
    """
    for disk in machine.disks:
        if disk.kind != "disk":
            continue

        for candidate in (disk.source.volume, disk.source.file, disk.backing_path):
            name = image_name_from_volume(candidate) if candidate else ""
            if name:
                return name

        if disk.source.pool and disk.source.volume:
            try:
                volume = hypervisor.lookup_volume(disk.source.pool, disk.source.volume)
            except CarcassError as e:
                logger.warning(f"could not lookup volume of disk {disk.target.dev} of {machine.name}: {e}")
                continue

            if volume.backing_store:
                name = image_name_from_volume(volume.backing_store)
                if name:
                    return name

    return ""
