from __future__ import annotations

from typing import Any

import pytest

from hotplugctl.core.errors import ChannelError, ProtocolError

ROOT = "/machine/q35/pcie.0"
CONTROLLER = f"{ROOT}/usb-controller"
BUS = f"{CONTROLLER}/usb-bus.0"


class FakeVm:
    """In-memory QMP peer exposing a QOM tree with one xhci controller.

    Mutating calls are appended to the shared ``log`` so tests can assert the
    order of operations across several VMs.
    """

    def __init__(
        self,
        vm_id: str,
        log: list[tuple[Any, ...]] | None = None,
        attached: dict[str, tuple[str, str]] | None = None,
    ) -> None:
        self.vm_id = vm_id
        self.log = log if log is not None else []
        self.attached = dict(attached or {})
        self.add_errors: dict[str, ChannelError] = {}
        self.del_errors: dict[str, ChannelError] = {}
        self.qom_errors: set[str] = set()
        self.closed = False
        self.calls: list[tuple[str, dict[str, Any] | None]] = []

    def _links(self) -> dict[str, str]:
        return {f"child[{n}]": device_id for n, device_id in enumerate(sorted(self.attached))}

    def call(self, command: str, arguments: dict[str, Any] | None = None) -> Any:
        self.calls.append((command, arguments))
        args = arguments or {}
        if command == "qom-list":
            path = args["path"]
            if path in self.qom_errors:
                raise ProtocolError(f"Device '{path}' not found", error_class="DeviceNotFound")
            if path == ROOT:
                return [
                    {"name": "type", "type": "string"},
                    {"name": "vga", "type": "child<VGA>"},
                    {"name": "usb-controller", "type": "child<nec-usb-xhci>"},
                ]
            if path == CONTROLLER:
                return [
                    {"name": "type", "type": "string"},
                    {"name": "usb-bus.0", "type": "child<usb-bus>"},
                ]
            if path == BUS:
                return [{"name": "type", "type": "string"}] + [
                    {"name": link, "type": "link<usb-host>"} for link in self._links()
                ]
            raise ProtocolError(f"Device '{path}' not found", error_class="DeviceNotFound")
        if command == "qom-get":
            path, prop = args["path"], args["property"]
            if path in self.qom_errors:
                raise ProtocolError(f"Property '{prop}' not found")
            links = self._links()
            if path == BUS and prop in links:
                return f"/machine/peripheral/{links[prop]}"
            for link, device_id in links.items():
                if path == f"{BUS}/{link}":
                    bus, port = self.attached[device_id]
                    if prop == "hostbus":
                        return int(bus)
                    if prop == "hostport":
                        return port
            raise ProtocolError(f"Property '{prop}' not found")
        if command == "device_del":
            device_id = args["id"]
            self.log.append(("device_del", self.vm_id, device_id))
            if device_id in self.del_errors:
                raise self.del_errors[device_id]
            if device_id not in self.attached:
                raise ProtocolError(f"Device '{device_id}' not found", error_class="DeviceNotFound")
            del self.attached[device_id]
            return {}
        if command == "device_add":
            device_id = args["id"]
            self.log.append(("device_add", self.vm_id, device_id, args["hostbus"], args["hostport"]))
            if device_id in self.add_errors:
                raise self.add_errors[device_id]
            if device_id in self.attached:
                raise ProtocolError(f"Duplicate device ID '{device_id}' for device", error_class="GenericError")
            assert args["driver"] == "usb-host"
            self.attached[device_id] = (args["hostbus"], args["hostport"])
            return {}
        raise ProtocolError(f"The command {command} has not been found", error_class="CommandNotFound")

    def close(self) -> None:
        self.closed = True

    def mutations(self) -> list[tuple[Any, ...]]:
        return [entry for entry in self.log if entry[1] == self.vm_id]


@pytest.fixture
def call_log() -> list[tuple[Any, ...]]:
    return []


@pytest.fixture
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.delenv("HOTPLUGCTL_CONFIG", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))


class FakeUdevAttributes:
    def __init__(self, values: dict[str, str | Exception]) -> None:
        self._values = values

    def asstring(self, name: str) -> str:
        value = self._values[name]
        if isinstance(value, Exception):
            raise value
        return value


class FakeUdevDevice:
    def __init__(self, sys_name: str, **attributes: str | Exception) -> None:
        self.sys_name = sys_name
        self.attributes = FakeUdevAttributes(attributes)


class FakeUdevContext:
    """Stands in for ``pyudev.Context`` and records enumeration filters."""

    def __init__(self, *devices: FakeUdevDevice) -> None:
        self.devices = devices
        self.queries: list[dict[str, str]] = []

    def list_devices(self, **match: str):
        self.queries.append(match)
        return iter(self.devices)


def udev_device(sys_name: str, vid: str, pid: str, devnum: str = "3", product: str | None = None) -> FakeUdevDevice:
    attributes: dict[str, str | Exception] = {"idVendor": vid, "idProduct": pid, "devnum": devnum}
    if product is not None:
        attributes["product"] = product
    return FakeUdevDevice(sys_name, **attributes)
