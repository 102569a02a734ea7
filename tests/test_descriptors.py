"""Tests for the decoding of libvirt XML descriptors."""

import pytest

from carcass.descriptors import (
    parse_domain_xml,
    parse_network_xml,
    parse_pool_xml,
    parse_volume_xml,
)
from carcass.exceptions import DescriptorDecodeError


POOL_XML = """
<pool type='dir'>
  <name>default</name>
  <uuid>3e4c7d2a-1111-2222-3333-444455556666</uuid>
  <capacity unit='bytes'>107374182400</capacity>
  <target>
    <path>/var/lib/libvirt/images</path>
    <permissions>
      <mode>0711</mode>
      <owner>0</owner>
      <group>107</group>
    </permissions>
  </target>
</pool>
"""

VOLUME_XML = """
<volume type='file'>
  <name>web.qcow2</name>
  <key>/var/lib/libvirt/images/web.qcow2</key>
  <capacity unit='bytes'>10737418240</capacity>
  <allocation unit='bytes'>200704</allocation>
  <physical unit='bytes'>196624</physical>
  <target>
    <path>/var/lib/libvirt/images/web.qcow2</path>
    <format type='qcow2'/>
  </target>
  <backingStore>
    <path>/var/lib/libvirt/images/debian11-base.qcow2</path>
    <format type='qcow2'/>
  </backingStore>
</volume>
"""


class TestNetworkDescriptor:
    """Tests for <network> decoding."""

    def test_full_network(self, network_xml):
        network = parse_network_xml(network_xml)

        assert network.name == "demo"
        assert network.uuid == "5b1a0c2e-7c7e-4a57-9d3f-6f0e2b3c4d5e"
        assert network.mac == "52:54:00:aa:bb:cc"
        assert network.address.address == "192.168.122.1"
        assert network.address.netmask == "255.255.255.0"
        assert str(network.address) == "192.168.122.0/24"
        assert [h.address for h in network.hosts] == ["192.168.122.10", "192.168.122.11"]
        assert network.hosts[1].hostnames == ["db", "database"]

    def test_dns_lookup(self, network_xml):
        network = parse_network_xml(network_xml)

        assert network.lookup_dns_host("web") == "192.168.122.10"
        assert network.lookup_dns_host("database") == "192.168.122.11"
        assert network.lookup_dns_host("mail") == ""

    def test_minimal_network(self):
        network = parse_network_xml("<network><name>isolated</name></network>")

        assert network.name == "isolated"
        assert network.uuid == ""
        assert network.hosts == []
        assert network.address.cidr == ""

    def test_prefix_notation(self):
        network = parse_network_xml(
            "<network><name>v6</name>"
            "<ip family='ipv6' address='2001:db8:ca2:2::1' prefix='64'/></network>"
        )
        assert network.address.cidr == "2001:db8:ca2:2::/64"

    def test_invalid_prefix(self):
        with pytest.raises(DescriptorDecodeError, match="network prefix"):
            parse_network_xml("<network><name>n</name><ip address='10.0.0.1' prefix='x'/></network>")

    def test_not_xml(self):
        with pytest.raises(DescriptorDecodeError, match="invalid network XML"):
            parse_network_xml("<network><name>broken</network>")

    def test_wrong_root(self):
        with pytest.raises(DescriptorDecodeError, match="unexpected root element <domain>"):
            parse_network_xml("<domain><name>web</name></domain>")

    def test_missing_name(self):
        with pytest.raises(DescriptorDecodeError, match="has no name"):
            parse_network_xml("<network><uuid>x</uuid></network>")


class TestDomainDescriptor:
    """Tests for <domain> decoding."""

    def test_full_domain(self, domain_xml):
        domain = parse_domain_xml(domain_xml(
            "web", volume="web.qcow2", backing="/var/lib/libvirt/images/debian11-base.qcow2"
        ))

        assert domain.name == "web"
        assert domain.type == "kvm"
        assert domain.vcpu == 2
        assert domain.memory.size == 1048576
        assert domain.memory.unit == "KiB"
        assert domain.emulator == "/usr/bin/qemu-system-x86_64"
        assert domain.active is False

        disk = domain.disks[0]
        assert disk.type == "volume"
        assert disk.kind == "disk"
        assert disk.target.dev == "vda"
        assert disk.target.bus == "virtio"
        assert disk.source.pool == "default"
        assert disk.source.volume == "web.qcow2"
        assert disk.backing_path == "/var/lib/libvirt/images/debian11-base.qcow2"

        iface = domain.interfaces[0]
        assert iface.type == "network"
        assert iface.source.network == "demo"
        assert iface.source.bridge == "virbr1"
        assert iface.target.dev == "vnet0"

    def test_attached_to(self, domain_xml):
        domain = parse_domain_xml(domain_xml("web", network="lab"))

        assert domain.is_attached_to("lab")
        assert not domain.is_attached_to("demo")

    def test_minimal_domain(self):
        domain = parse_domain_xml("<domain><name>bare</name></domain>")

        assert domain.vcpu == 0
        assert domain.memory.size == 0
        assert domain.disks == []
        assert domain.interfaces == []

    def test_file_disk_and_cdrom(self):
        domain = parse_domain_xml("""
<domain type='kvm'>
  <name>legacy</name>
  <devices>
    <disk type='file' device='disk'>
      <source file='/srv/legacy.img'/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <disk type='file' device='cdrom'>
      <target dev='sda' bus='sata'/>
    </disk>
  </devices>
</domain>
""")

        assert [d.kind for d in domain.disks] == ["disk", "cdrom"]
        assert domain.disks[0].source.file == "/srv/legacy.img"
        assert domain.disks[1].source.file == ""
        assert "path: /srv/legacy.img" in domain.describe()

    def test_invalid_vcpu(self):
        with pytest.raises(DescriptorDecodeError, match="vcpu count"):
            parse_domain_xml("<domain><name>web</name><vcpu>two</vcpu></domain>")


class TestPoolDescriptor:
    """Tests for <pool> decoding."""

    def test_full_pool(self):
        pool = parse_pool_xml(POOL_XML)

        assert pool.name == "default"
        assert pool.type == "dir"
        assert pool.path == "/var/lib/libvirt/images"
        assert pool.mode == 0o711
        assert pool.owner == 0
        assert pool.group == 107

    def test_pool_without_permissions(self):
        pool = parse_pool_xml("<pool type='logical'><name>vg0</name></pool>")

        assert pool.mode is None
        assert pool.owner is None
        assert pool.path == ""

    def test_invalid_mode(self):
        with pytest.raises(DescriptorDecodeError, match="pool mode"):
            parse_pool_xml(
                "<pool><name>p</name><target><permissions><mode>0799</mode>"
                "</permissions></target></pool>"
            )


class TestVolumeDescriptor:
    """Tests for <volume> decoding."""

    def test_full_volume(self):
        volume = parse_volume_xml(VOLUME_XML)

        assert volume.name == "web.qcow2"
        assert volume.type == "file"
        assert volume.key == "/var/lib/libvirt/images/web.qcow2"
        assert volume.capacity == 10737418240
        assert volume.size == 196624
        assert volume.path == "/var/lib/libvirt/images/web.qcow2"
        assert volume.format == "qcow2"
        assert volume.backing_store == "/var/lib/libvirt/images/debian11-base.qcow2"

    def test_size_from_allocation(self):
        volume = parse_volume_xml(
            "<volume><name>raw.img</name><capacity>1024</capacity>"
            "<allocation>512</allocation></volume>"
        )

        assert volume.size == 512
        assert volume.format == ""
        assert volume.backing_store == ""

    def test_invalid_capacity(self):
        with pytest.raises(DescriptorDecodeError, match="volume capacity"):
            parse_volume_xml("<volume><name>v</name><capacity>big</capacity></volume>")
