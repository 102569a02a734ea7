"""
Hypervisor client wrapping the libvirt Python bindings.

This module owns the single connection to the hypervisor and exposes read
operations that decode native XML descriptors into resource models. Native
objects never leave this module except through the ``*_handle`` context
managers, and every native object is dropped before the call that obtained
it returns.
"""

import contextlib
from typing import Callable, Iterator, List, Optional, TypeVar

import libvirt
from libvirt import libvirtError

from .config import Config
from .descriptors import (
    parse_domain_xml,
    parse_network_xml,
    parse_pool_xml,
    parse_volume_xml,
)
from .exceptions import (
    CarcassError,
    DescriptorDecodeError,
    HypervisorConnectionError,
    HypervisorOperationError,
    ResourceNotFoundError,
    VolumeCreateError,
    VolumeLookupError,
    VolumeRemoveError,
)
from .logging import get_logger
from .models import (
    BatchResult,
    Domain,
    ItemFailure,
    Network,
    StoragePool,
    Volume,
)
from .xml_templates import DEFAULT_VOLUME_FORMAT, VolumeXMLGenerator


logger = get_logger(__name__)

T = TypeVar("T")

NOT_FOUND_CODES = frozenset({
    libvirt.VIR_ERR_NO_DOMAIN,
    libvirt.VIR_ERR_NO_NETWORK,
    libvirt.VIR_ERR_NO_STORAGE_POOL,
    libvirt.VIR_ERR_NO_STORAGE_VOL,
})


def is_not_found(err: libvirtError) -> bool:
    """Tell if a libvirt error reports a missing resource."""
    return err.get_error_code() in NOT_FOUND_CODES


class ScopedHandle:
    """
    Scoped holder of a native libvirt object.

    The holder is the only owner of the native object: leaving the ``with``
    block drops it, which frees the underlying handle.
    """

    def __init__(self, handle):
        self._handle = handle

    @property
    def released(self) -> bool:
        return self._handle is None

    def get(self):
        if self._handle is None:
            raise HypervisorOperationError("native handle used after release")
        return self._handle

    def release(self) -> None:
        self._handle = None

    def __enter__(self):
        return self.get()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class Hypervisor:
    """
    Synchronous client of one libvirt hypervisor.

    The connection is not safe to share between threads: callers needing
    concurrency must use one Hypervisor per thread.
    """

    def __init__(self, config: Config):
        """Initialize the client, the connection is opened by connect()."""
        self.config = config
        self.uri = config.hypervisor.uri
        self._connection: Optional[libvirt.virConnect] = None
        self._volume_xml = VolumeXMLGenerator()

        # Keep libvirt from printing its errors on stderr
        libvirt.registerErrorHandler(self._libvirt_error_handler, None)

    def _libvirt_error_handler(self, ctx, err):
        logger.debug(f"libvirt error: {err}")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def connect(self) -> None:
        """Open the connection to the hypervisor."""
        if self._connection is not None:
            return

        try:
            if self.config.hypervisor.readonly:
                self._connection = libvirt.openReadOnly(self.uri)
            else:
                self._connection = libvirt.open(self.uri)
        except libvirtError as e:
            logger.error(f"could not connect to hypervisor {self.uri}: {e}")
            raise HypervisorConnectionError(
                f"could not connect to hypervisor {self.uri}: {e}", {"uri": self.uri}
            ) from e

        if self._connection is None:
            raise HypervisorConnectionError(
                f"could not connect to hypervisor {self.uri}", {"uri": self.uri}
            )

        logger.debug(f"connected to hypervisor: {self.uri}")

    def close(self) -> None:
        """Close the connection to the hypervisor."""
        if self._connection is None:
            return

        try:
            self._connection.close()
            logger.debug(f"disconnected from hypervisor: {self.uri}")
        except libvirtError as e:
            logger.warning(f"error closing hypervisor connection: {e}")
        finally:
            self._connection = None

    def _ensure_connected(self) -> libvirt.virConnect:
        if self._connection is None:
            raise HypervisorConnectionError("not connected to hypervisor", {"uri": self.uri})
        return self._connection

    def _lookup_error(self, kind: str, name: str, err: libvirtError) -> CarcassError:
        if is_not_found(err):
            return ResourceNotFoundError(f"{kind} not found: {name}", {kind: name})
        return HypervisorOperationError(f"could not lookup {kind} {name}: {err}", {kind: name})

    def _scan(
        self,
        kind: str,
        handles: List,
        describe: Callable[[object], T],
    ) -> BatchResult[T]:
        """Describe each native object, skipping the ones that fail."""
        scoped = [ScopedHandle(h) for h in handles]

        result = BatchResult()
        try:
            for index, item in enumerate(scoped):
                with item as handle:
                    try:
                        result.items.append(describe(handle))
                    except (libvirtError, DescriptorDecodeError) as e:
                        name = self._handle_name(handle, index)
                        logger.warning(f"could not describe {kind} {name}: {e}")
                        result.failures.append(ItemFailure(name=name, error=e))
        finally:
            for item in scoped:
                item.release()

        return result

    @staticmethod
    def _handle_name(handle, index: int) -> str:
        try:
            return handle.name()
        except libvirtError:
            return f"#{index}"

    # Networks

    @staticmethod
    def _describe_network(handle) -> Network:
        return parse_network_xml(handle.XMLDesc(0))

    def scan_networks(self) -> BatchResult[Network]:
        """Decode all networks, reporting the ones that could not be decoded."""
        conn = self._ensure_connected()

        try:
            handles = conn.listAllNetworks(0)
        except libvirtError as e:
            raise HypervisorOperationError(f"could not list networks: {e}") from e

        return self._scan("network", handles, self._describe_network)

    def list_networks(self) -> List[Network]:
        """List all networks defined on the hypervisor."""
        return self.scan_networks().items

    def lookup_network(self, name: str) -> Network:
        """Get a network by name."""
        conn = self._ensure_connected()

        try:
            scoped = ScopedHandle(conn.networkLookupByName(name))
        except libvirtError as e:
            raise self._lookup_error("network", name, e) from e

        with scoped as handle:
            try:
                return self._describe_network(handle)
            except libvirtError as e:
                raise HypervisorOperationError(
                    f"could not get XML description of network {name}: {e}"
                ) from e

    # Domains

    @staticmethod
    def _describe_domain(handle) -> Domain:
        domain = parse_domain_xml(handle.XMLDesc(0))
        domain.active = bool(handle.isActive())
        return domain

    def scan_domains(self) -> BatchResult[Domain]:
        """Decode all domains with their status, reporting the ones that failed."""
        conn = self._ensure_connected()

        try:
            handles = conn.listAllDomains(0)
        except libvirtError as e:
            raise HypervisorOperationError(f"could not list domains: {e}") from e

        return self._scan("domain", handles, self._describe_domain)

    def list_domains(self) -> List[Domain]:
        """List all domains, each annotated with its active status."""
        return self.scan_domains().items

    def list_domains_by_network(self, network: Network) -> List[Domain]:
        """List the domains having an interface on the network."""
        return [d for d in self.list_domains() if d.is_attached_to(network.name)]

    def lookup_domain(self, name: str) -> Domain:
        """Get a domain by name, with its active status."""
        with self.domain_handle(name) as handle:
            try:
                return self._describe_domain(handle)
            except libvirtError as e:
                raise HypervisorOperationError(f"could not describe domain {name}: {e}") from e

    @contextlib.contextmanager
    def domain_handle(self, name: str) -> Iterator[libvirt.virDomain]:
        """Resolve a live native domain, released when the block exits."""
        conn = self._ensure_connected()

        try:
            scoped = ScopedHandle(conn.lookupByName(name))
        except libvirtError as e:
            raise self._lookup_error("domain", name, e) from e

        with scoped as handle:
            yield handle

    # Storage pools

    @staticmethod
    def _describe_pool(handle) -> StoragePool:
        return parse_pool_xml(handle.XMLDesc(0))

    def scan_pools(self) -> BatchResult[StoragePool]:
        """Decode all storage pools, reporting the ones that failed."""
        conn = self._ensure_connected()

        try:
            handles = conn.listAllStoragePools(0)
        except libvirtError as e:
            raise HypervisorOperationError(f"could not list storage pools: {e}") from e

        return self._scan("storage pool", handles, self._describe_pool)

    def list_pools(self) -> List[StoragePool]:
        """List all storage pools."""
        return self.scan_pools().items

    @contextlib.contextmanager
    def pool_handle(self, name: str) -> Iterator[libvirt.virStoragePool]:
        """Resolve a native storage pool, released when the block exits."""
        conn = self._ensure_connected()

        try:
            scoped = ScopedHandle(conn.storagePoolLookupByName(name))
        except libvirtError as e:
            raise self._lookup_error("storage pool", name, e) from e

        with scoped as handle:
            yield handle

    def lookup_pool(self, name: str) -> StoragePool:
        """Get a storage pool by name."""
        with self.pool_handle(name) as handle:
            try:
                return self._describe_pool(handle)
            except libvirtError as e:
                raise HypervisorOperationError(
                    f"could not get XML description of storage pool {name}: {e}"
                ) from e

    # Volumes

    @staticmethod
    def _describe_volume(handle) -> Volume:
        return parse_volume_xml(handle.XMLDesc(0))

    def scan_volumes(self, pool: str) -> BatchResult[Volume]:
        """Decode all volumes of a pool, reporting the ones that failed."""
        with self.pool_handle(pool) as sp:
            try:
                handles = sp.listAllVolumes(0)
            except libvirtError as e:
                raise HypervisorOperationError(
                    f"could not list storage volumes from pool {pool}: {e}"
                ) from e

        return self._scan("storage volume", handles, self._describe_volume)

    def list_volumes(self, pool: str) -> List[Volume]:
        """List the volumes of a storage pool."""
        return self.scan_volumes(pool).items

    @contextlib.contextmanager
    def volume_handle(self, pool: str, name: str) -> Iterator[libvirt.virStorageVol]:
        """Resolve a native volume of a pool, released when the block exits."""
        with self.pool_handle(pool) as sp:
            try:
                scoped = ScopedHandle(sp.storageVolLookupByName(name))
            except libvirtError as e:
                raise self._lookup_error("storage volume", name, e) from e

        with scoped as handle:
            yield handle

    def lookup_volume(self, pool: str, name: str) -> Volume:
        """Get a volume of a pool by name."""
        with self.volume_handle(pool, name) as handle:
            try:
                return self._describe_volume(handle)
            except libvirtError as e:
                raise HypervisorOperationError(
                    f"could not get XML description of volume {name} in pool {pool}: {e}"
                ) from e

    def lookup_volume_by_path(self, path: str) -> Volume:
        """Get a volume by its path on the hypervisor."""
        conn = self._ensure_connected()

        try:
            scoped = ScopedHandle(conn.storageVolLookupByPath(path))
        except libvirtError as e:
            raise self._lookup_error("storage volume", path, e) from e

        with scoped as handle:
            try:
                return self._describe_volume(handle)
            except libvirtError as e:
                raise HypervisorOperationError(
                    f"could not get XML description of volume {path}: {e}"
                ) from e

    def create_volume(
        self, pool: str, name: str, capacity: int, fmt: str = DEFAULT_VOLUME_FORMAT
    ) -> None:
        """Create a volume of capacity bytes in the pool."""
        details = {"pool": pool, "volume": name, "capacity": capacity}
        xml = self._volume_xml.generate(name, capacity, fmt)

        try:
            with self.pool_handle(pool) as sp:
                ScopedHandle(sp.createXML(xml, 0)).release()
        except CarcassError as e:
            raise VolumeCreateError(f"could not create volume {name}: {e}", details) from e
        except libvirtError as e:
            raise VolumeCreateError(
                f"could not create volume {name} in pool {pool}: {e}", details
            ) from e

        logger.info(f"created volume {name} of {capacity} bytes in pool {pool}")

    def remove_volume(self, pool: str, name: str) -> None:
        """
        Delete a volume of the pool.

        Raises ResourceNotFoundError when the volume does not exist and
        VolumeRemoveError for any other failure.
        """
        details = {"pool": pool, "volume": name}

        try:
            with self.volume_handle(pool, name) as sv:
                sv.delete(libvirt.VIR_STORAGE_VOL_DELETE_NORMAL)
        except ResourceNotFoundError:
            raise
        except CarcassError as e:
            raise VolumeRemoveError(f"could not remove volume {name}: {e}", details) from e
        except libvirtError as e:
            raise VolumeRemoveError(
                f"could not delete volume {name} from pool {pool}: {e}", details
            ) from e

        logger.info(f"removed volume {name} from pool {pool}")

    def volume_exists(self, pool: str, name: str) -> bool:
        """Tell if a volume exists in the pool."""
        details = {"pool": pool, "volume": name}

        try:
            with self.pool_handle(pool) as sp:
                try:
                    ScopedHandle(sp.storageVolLookupByName(name)).release()
                except libvirtError as e:
                    if e.get_error_code() == libvirt.VIR_ERR_NO_STORAGE_VOL:
                        return False
                    raise VolumeLookupError(
                        f"could not lookup volume {name} in pool {pool}: {e}", details
                    ) from e
        except VolumeLookupError:
            raise
        except CarcassError as e:
            raise VolumeLookupError(f"could not check volume {name}: {e}", details) from e

        return True

    def new_stream(self) -> libvirt.virStream:
        """Create a blocking data stream on the connection."""
        conn = self._ensure_connected()

        try:
            return conn.newStream(0)
        except libvirtError as e:
            raise HypervisorOperationError(f"could not create stream: {e}") from e
