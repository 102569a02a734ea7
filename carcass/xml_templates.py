"""
XML template generator for libvirt storage volumes.

This module builds the XML definitions handed to the hypervisor when
creating volumes.
"""

import xml.etree.ElementTree as ET
from xml.dom import minidom

DEFAULT_VOLUME_FORMAT = "qcow2"


class VolumeXMLGenerator:
    """Generator for storage volume XML definitions."""

    def __init__(self, volume_type: str = "file"):
        self.volume_type = volume_type

    def generate(self, name: str, capacity: int, fmt: str = DEFAULT_VOLUME_FORMAT) -> str:
        """Generate the definition of a volume of capacity bytes."""
        if capacity < 0:
            raise ValueError(f"volume capacity must be positive, got {capacity}")

        volume = ET.Element("volume", type=self.volume_type)

        name_elem = ET.SubElement(volume, "name")
        name_elem.text = name

        capacity_elem = ET.SubElement(volume, "capacity", unit="bytes")
        capacity_elem.text = str(capacity)

        target = ET.SubElement(volume, "target")
        ET.SubElement(target, "format", type=fmt or DEFAULT_VOLUME_FORMAT)

        return self._prettify_xml(volume)

    def _prettify_xml(self, element: ET.Element) -> str:
        """Pretty print XML with proper indentation."""
        rough_string = ET.tostring(element, encoding='unicode')
        reparsed = minidom.parseString(rough_string)
        return reparsed.toprettyxml(indent="  ")[23:]  # Remove XML declaration
