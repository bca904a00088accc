"""Discovery of USB passthrough devices attached to a VM via the QOM tree."""

from __future__ import annotations

import logging
from typing import Any

from hotplugctl.core.errors import ChannelError, IntrospectionFailedError
from hotplugctl.core.model import AttachedDevice, AttachmentSnapshot
from hotplugctl.transports.base import Channel

DEFAULT_QOM_ROOT = "/machine/q35/pcie.0"
USB_BUS_TYPE = "child<usb-bus>"
USB_HOST_LINK_TYPE = "link<usb-host>"
LOGGER = logging.getLogger(__name__)


def _describe(channel: Channel, vm_id: str) -> str:
    return vm_id or getattr(channel, "vm_id", "") or "<unknown>"


def _qom_list(channel: Channel, path: str, vm_id: str) -> list[dict[str, str]]:
    try:
        entries = channel.call("qom-list", {"path": path})
    except ChannelError as exc:
        raise IntrospectionFailedError(
            f"qom-list {path} failed on vm {_describe(channel, vm_id)}: {exc}"
        ) from exc
    if not isinstance(entries, list) or not all(
        isinstance(entry, dict) and "name" in entry and "type" in entry for entry in entries
    ):
        raise IntrospectionFailedError(
            f"qom-list {path} on vm {_describe(channel, vm_id)} returned an unexpected shape: {entries!r}"
        )
    return entries


def _qom_get(channel: Channel, path: str, prop: str, vm_id: str) -> Any:
    try:
        return channel.call("qom-get", {"path": path, "property": prop})
    except ChannelError as exc:
        raise IntrospectionFailedError(
            f"qom-get {path} {prop} failed on vm {_describe(channel, vm_id)}: {exc}"
        ) from exc


def list_attached(
    channel: Channel,
    *,
    vm_id: str = "",
    root: str = DEFAULT_QOM_ROOT,
) -> list[AttachedDevice]:
    """Walk controller -> usb bus -> usb-host link and return every live passthrough."""
    attached: list[AttachedDevice] = []
    for controller in _qom_list(channel, root, vm_id):
        if "usb" not in controller["type"]:
            continue
        controller_path = f"{root}/{controller['name']}"
        for bus in _qom_list(channel, controller_path, vm_id):
            if bus["type"] != USB_BUS_TYPE:
                continue
            bus_path = f"{controller_path}/{bus['name']}"
            for link in _qom_list(channel, bus_path, vm_id):
                if link["type"] != USB_HOST_LINK_TYPE:
                    continue
                device_path = f"{bus_path}/{link['name']}"
                target = _qom_get(channel, bus_path, link["name"], vm_id)
                host_bus = _qom_get(channel, device_path, "hostbus", vm_id)
                host_port = _qom_get(channel, device_path, "hostport", vm_id)
                if not isinstance(target, str) or not isinstance(host_bus, int) or not isinstance(host_port, str):
                    raise IntrospectionFailedError(
                        f"Unexpected usb-host properties at {device_path} on vm {_describe(channel, vm_id)}: "
                        f"link={target!r} hostbus={host_bus!r} hostport={host_port!r}"
                    )
                attached.append(
                    AttachedDevice(
                        generated_id=target.rsplit("/", 1)[-1],
                        tree_path=device_path,
                        host_link_path=target,
                        bus_and_port=f"{host_bus}-{host_port}",
                    )
                )

    LOGGER.debug("vm %s has %d attached usb-host devices", _describe(channel, vm_id), len(attached))
    return attached


def snapshot(channel: Channel, vm_id: str, *, root: str = DEFAULT_QOM_ROOT) -> AttachmentSnapshot:
    return AttachmentSnapshot(vm_id=vm_id, devices=tuple(list_attached(channel, vm_id=vm_id, root=root)))
