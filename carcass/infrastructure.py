"""
Infrastructure: a virtual network and the machines connected to it.

Start and stop requests are sent machine by machine: a failure on one of
them is logged and reported, the others are still handled. The hypervisor
is never polled to confirm a machine actually started or stopped.
"""

from typing import Callable, Dict, List, Optional

from libvirt import libvirtError

from .exceptions import CarcassError, ResourceNotFoundError
from .hypervisor import Hypervisor
from .logging import get_logger
from .models import ControlReport, Domain, DomainState, ItemFailure, Network

logger = get_logger(__name__)


class Infrastructure:
    """A network of the hypervisor along with its attached domains."""

    def __init__(self, hypervisor: Hypervisor, network: Network, machines: List[Domain]):
        self.hypervisor = hypervisor
        self.network = network
        self.machines = machines
        self._states = {
            m.name: DomainState.ACTIVE if m.active else DomainState.INACTIVE
            for m in machines
        }

    @classmethod
    def lookup(cls, hypervisor: Hypervisor, network_name: str) -> "Infrastructure":
        """
        Load the network named network_name and the domains attached to it.

        Raises:
            ResourceNotFoundError: the network does not exist
        """
        network = hypervisor.lookup_network(network_name)
        machines = hypervisor.list_domains_by_network(network)

        logger.debug(f"infrastructure {network_name} has {len(machines)} machines")
        return cls(hypervisor, network, machines)

    @property
    def name(self) -> str:
        return self.network.name

    def machine(self, name: str) -> Optional[Domain]:
        for m in self.machines:
            if m.name == name:
                return m
        return None

    def states(self) -> Dict[str, DomainState]:
        """
        Last known state of each machine.

        A machine is unknown once a request was sent to it or a request
        failed, until the infrastructure is looked up again.
        """
        return dict(self._states)

    def _targets(self, name: Optional[str], report: ControlReport) -> List[str]:
        if name is None:
            return [m.name for m in self.machines]

        if self.machine(name) is None:
            err = ResourceNotFoundError(
                f"machine {name} is not part of infrastructure {self.name}",
                {"machine": name, "infrastructure": self.name},
            )
            logger.warning(str(err))
            report.failures.append(ItemFailure(name=name, error=err))
            return []

        return [name]

    def _control(
        self,
        name: Optional[str],
        action: str,
        request: Callable[[object, ControlReport, str], None],
    ) -> ControlReport:
        report = ControlReport()

        for target in self._targets(name, report):
            try:
                # act on a fresh handle, the snapshot may be outdated
                with self.hypervisor.domain_handle(target) as dom:
                    request(dom, report, target)
            except (CarcassError, libvirtError) as e:
                logger.warning(f"could not {action} domain {target}: {e}")
                self._states[target] = DomainState.UNKNOWN
                report.failures.append(ItemFailure(name=target, error=e))

        return report

    def _request_start(self, dom, report: ControlReport, name: str) -> None:
        logger.info(f"request start of: {name}")
        dom.create()
        self._states[name] = DomainState.UNKNOWN
        report.requested.append(name)

    def start(self, name: str) -> ControlReport:
        """Request the start of one machine."""
        return self._control(name, "start", self._request_start)

    def start_all(self) -> ControlReport:
        """Request the start of every machine."""
        return self._control(None, "start", self._request_start)

    def _shutdown_request(self, force: bool) -> Callable[[object, ControlReport, str], None]:
        def request(dom, report: ControlReport, name: str) -> None:
            active = bool(dom.isActive())
            self._states[name] = DomainState.ACTIVE if active else DomainState.INACTIVE
            if not (active or force):
                report.skipped.append(name)
                return

            logger.info(f"request shutdown of: {name}")
            dom.shutdown()
            self._states[name] = DomainState.UNKNOWN
            report.requested.append(name)

        return request

    def stop(self, name: str, force: bool = False) -> ControlReport:
        """
        Request a graceful shutdown of one machine.

        An inactive machine is skipped unless force is set.
        """
        return self._control(name, "shutdown", self._shutdown_request(force))

    def stop_all(self, force: bool = False) -> ControlReport:
        """Request a graceful shutdown of every active machine, or all with force."""
        return self._control(None, "shutdown", self._shutdown_request(force))
