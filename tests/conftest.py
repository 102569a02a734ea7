"""Shared fixtures: libvirt errors, fake native objects and log capture."""

import xml.etree.ElementTree as ET
from unittest.mock import MagicMock, patch

import libvirt
import pytest
from loguru import logger

from carcass.config import Config
from carcass.hypervisor import Hypervisor


def make_libvirt_error(message, code=libvirt.VIR_ERR_INTERNAL_ERROR, domain=libvirt.VIR_FROM_NONE):
    """Build a libvirtError carrying the given error code and domain."""
    err = libvirt.libvirtError(message)
    err.err = (code, domain, message, libvirt.VIR_ERR_ERROR, "", None, None, 0, 0)
    return err


NETWORK_XML = """
<network>
  <name>demo</name>
  <uuid>5b1a0c2e-7c7e-4a57-9d3f-6f0e2b3c4d5e</uuid>
  <bridge name='virbr1' stp='on' delay='0'/>
  <mac address='52:54:00:aa:bb:cc'/>
  <domain name='demo'/>
  <dns>
    <host ip='192.168.122.10'>
      <hostname>web</hostname>
    </host>
    <host ip='192.168.122.11'>
      <hostname>db</hostname>
      <hostname>database</hostname>
    </host>
  </dns>
  <ip address='192.168.122.1' netmask='255.255.255.0'>
    <dhcp>
      <range start='192.168.122.100' end='192.168.122.254'/>
    </dhcp>
  </ip>
</network>
"""


def domain_xml(name, network="demo", volume="", pool="default", backing=""):
    """XML description of a KVM domain with one disk and one interface."""
    disk = ""
    if volume:
        backing_store = ""
        if backing:
            backing_store = (
                f"<backingStore type='file'><format type='qcow2'/>"
                f"<source file='{backing}'/></backingStore>"
            )
        disk = (
            f"<disk type='volume' device='disk'>"
            f"<driver name='qemu' type='qcow2'/>"
            f"<source pool='{pool}' volume='{volume}'/>"
            f"{backing_store}"
            f"<target dev='vda' bus='virtio'/>"
            f"</disk>"
        )

    return f"""
<domain type='kvm'>
  <name>{name}</name>
  <uuid>00000000-0000-0000-0000-0000000000{len(name):02d}</uuid>
  <memory unit='KiB'>1048576</memory>
  <vcpu placement='static'>2</vcpu>
  <devices>
    <emulator>/usr/bin/qemu-system-x86_64</emulator>
    {disk}
    <interface type='network'>
      <mac address='52:54:00:00:00:{len(name):02d}'/>
      <source network='{network}' bridge='virbr1'/>
      <target dev='vnet0'/>
    </interface>
  </devices>
</domain>
"""


def native(xml, name="", active=False):
    """Mock of a native libvirt object described by xml."""
    handle = MagicMock()
    handle.XMLDesc.return_value = xml
    handle.name.return_value = name
    handle.isActive.return_value = 1 if active else 0
    return handle


class FakeStream:
    """In-memory libvirt stream recording the data sent to it."""

    def __init__(self):
        self.data = bytearray()
        self.finished = False
        self.aborted = False
        self.fail_send = None

    def send(self, data):
        if self.fail_send is not None:
            raise self.fail_send
        self.data.extend(data)
        return len(data)

    def finish(self):
        self.finished = True

    def abort(self):
        self.aborted = True


class FakeVolume:
    """Storage volume of a FakePool."""

    def __init__(self, pool, name, capacity, fmt):
        self.pool = pool
        self._name = name
        self.capacity = capacity
        self.format = fmt
        self.uploaded = 0
        self.fail_delete = None

    def name(self):
        return self._name

    def path(self):
        return f"{self.pool.path}/{self._name}"

    def XMLDesc(self, flags):
        return f"""
<volume type='file'>
  <name>{self._name}</name>
  <key>{self.path()}</key>
  <capacity unit='bytes'>{self.capacity}</capacity>
  <allocation unit='bytes'>{self.uploaded}</allocation>
  <target>
    <path>{self.path()}</path>
    <format type='{self.format}'/>
  </target>
</volume>
"""

    def upload(self, stream, offset, length, flags):
        self.uploaded = length

    def delete(self, flags):
        if self.fail_delete is not None:
            raise self.fail_delete
        del self.pool.volumes[self._name]


class FakePool:
    """Directory storage pool keeping its volumes in memory."""

    def __init__(self, name="default", path="/var/lib/libvirt/images"):
        self._name = name
        self.path = path
        self.volumes = {}

    def name(self):
        return self._name

    def createXML(self, xml, flags):
        root = ET.fromstring(xml)
        name = root.findtext("name")
        if name in self.volumes:
            raise make_libvirt_error(f"storage volume '{name}' exists already")

        volume = FakeVolume(
            self, name, int(root.findtext("capacity")), root.find("target/format").get("type")
        )
        self.volumes[name] = volume
        return volume

    def storageVolLookupByName(self, name):
        if name not in self.volumes:
            raise make_libvirt_error(
                f"Storage volume not found: no storage vol with matching name '{name}'",
                code=libvirt.VIR_ERR_NO_STORAGE_VOL,
                domain=libvirt.VIR_FROM_STORAGE,
            )
        return self.volumes[name]

    def listAllVolumes(self, flags):
        return list(self.volumes.values())

    def add_volume(self, name, capacity=0, fmt="qcow2"):
        volume = FakeVolume(self, name, capacity, fmt)
        self.volumes[name] = volume
        return volume


@pytest.fixture
def libvirt_error():
    """Factory of libvirt errors."""
    return make_libvirt_error


@pytest.fixture
def config(tmp_path):
    """Configuration of a test hypervisor with data in a temporary directory."""
    return Config(
        hypervisor={"uri": "test:///default"},
        storage={"pool": "default", "data_dir": str(tmp_path), "chunk_size": 4},
    )


@pytest.fixture
def conn():
    """Mock of a native libvirt connection."""
    return MagicMock()


@pytest.fixture
def hypervisor(config, conn):
    """Hypervisor connected to the mock connection."""
    with patch("carcass.hypervisor.libvirt.open", return_value=conn):
        hv = Hypervisor(config)
        hv.connect()
    yield hv
    hv.close()


@pytest.fixture
def fake_pool(conn):
    """Storage pool named default reachable through the mock connection."""
    pool = FakePool()

    def lookup(name):
        if name != pool.name():
            raise make_libvirt_error(
                f"Storage pool not found: no storage pool with matching name '{name}'",
                code=libvirt.VIR_ERR_NO_STORAGE_POOL,
                domain=libvirt.VIR_FROM_STORAGE,
            )
        return pool

    conn.storagePoolLookupByName.side_effect = lookup
    return pool


@pytest.fixture
def fake_stream(conn):
    """Stream returned by the mock connection."""
    stream = FakeStream()
    conn.newStream.return_value = stream
    return stream


@pytest.fixture
def log_messages():
    """Messages logged while the test runs."""
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def network_xml():
    return NETWORK_XML


@pytest.fixture(name="domain_xml")
def domain_xml_fixture():
    """Factory of domain XML descriptions."""
    return domain_xml


@pytest.fixture(name="native")
def native_fixture():
    """Factory of native libvirt object mocks."""
    return native
