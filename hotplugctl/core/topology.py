"""Host USB topology discovery through udev."""

from __future__ import annotations

import logging
import re

import pyudev

from hotplugctl.core.errors import ScanUnavailableError
from hotplugctl.core.model import HostDevice

# <bus>-<port.path>; root hubs (usb1) do not match.
_ENTRY_RE = re.compile(r"^([0-9]+)-([0-9.]+)$")
LOGGER = logging.getLogger(__name__)


def _read_required(device: pyudev.Device, name: str) -> str:
    try:
        return device.attributes.asstring(name).strip()
    except (KeyError, UnicodeDecodeError) as exc:
        raise ScanUnavailableError(f"Could not read {name} of USB device {device.sys_name}: {exc!r}") from exc


def _read_optional(device: pyudev.Device, name: str) -> str:
    try:
        return device.attributes.asstring(name).strip()
    except (KeyError, UnicodeDecodeError):
        return ""


def scan(context: pyudev.Context | None = None) -> list[HostDevice]:
    """Return USB devices plugged into the host, ordered by sysfs name."""
    try:
        if context is None:
            context = pyudev.Context()
        udev_devices = sorted(
            context.list_devices(subsystem="usb", DEVTYPE="usb_device"),
            key=lambda device: device.sys_name,
        )
    except (ImportError, OSError) as exc:
        raise ScanUnavailableError(f"Could not enumerate USB devices through udev: {exc}") from exc

    devices: list[HostDevice] = []
    for udev_device in udev_devices:
        match = _ENTRY_RE.match(udev_device.sys_name)
        if not match:
            continue
        vid = _read_required(udev_device, "idVendor")
        pid = _read_required(udev_device, "idProduct")
        address = _read_required(udev_device, "devnum")
        devices.append(
            HostDevice(
                vid_pid=f"{vid}:{pid}".lower(),
                bus_id=match.group(1),
                port_path=match.group(2),
                address_id=address,
                display_name=_read_optional(udev_device, "product"),
            )
        )

    LOGGER.debug("Scanned %d USB devices", len(devices))
    return devices


def find_by_bus_and_port(devices: list[HostDevice], bus_and_port: str) -> HostDevice | None:
    for device in devices:
        if device.bus_and_port == bus_and_port:
            return device
    return None
