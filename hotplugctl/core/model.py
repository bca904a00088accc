"""Core data models used across scanner, engine, service, and CLI."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from hotplugctl.transports.base import Channel

SLOT_PREFIX = "auto_"


def slot_name(index: int) -> str:
    return f"{SLOT_PREFIX}{index}"


@dataclass(frozen=True)
class HostDevice:
    vid_pid: str
    bus_id: str
    port_path: str
    address_id: str = ""
    display_name: str = ""

    @property
    def bus_and_port(self) -> str:
        return f"{self.bus_id}-{self.port_path}"


@dataclass(frozen=True)
class TargetDeviceSpec:
    vid_pid: str


@dataclass(frozen=True)
class VmBinding:
    """Physical position of a VM's detect device on the host."""

    vm_id: str
    bus_id: str
    port_path: str

    @property
    def bus_and_port(self) -> str:
        return f"{self.bus_id}-{self.port_path}"


@dataclass(frozen=True, eq=False)
class VmEndpoint:
    vm_id: str
    channel: Channel | None = None

    @property
    def reachable(self) -> bool:
        return self.channel is not None


@dataclass(frozen=True)
class AttachedDevice:
    generated_id: str
    tree_path: str
    host_link_path: str
    bus_and_port: str


@dataclass(frozen=True)
class AttachedDeviceInfo:
    attached: AttachedDevice
    vid_pid: str
    display_name: str


@dataclass(frozen=True)
class AttachmentSnapshot:
    """Read-only view of one VM's attached devices, keyed by generated id."""

    vm_id: str
    devices: tuple[AttachedDevice, ...]
    by_id: Mapping[str, AttachedDevice] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        mapping = {device.generated_id: device for device in self.devices if device.generated_id}
        object.__setattr__(self, "by_id", MappingProxyType(mapping))

    def __contains__(self, generated_id: object) -> bool:
        return generated_id in self.by_id


class PlanOperation(enum.Enum):
    ATTACH = "attach"
    DETACH = "detach"


@dataclass(frozen=True)
class PlanEntry:
    operation: PlanOperation
    vm_id: str
    slot_name: str
    device: HostDevice | None = None

    def describe(self) -> str:
        if self.device is None:
            return f"{self.operation.value} {self.slot_name} on vm {self.vm_id}"
        return (
            f"{self.operation.value} {self.slot_name} on vm {self.vm_id} "
            f"({self.device.vid_pid} @ {self.device.bus_and_port})"
        )


@dataclass(frozen=True)
class AttachFailure:
    entry: PlanEntry
    message: str


@dataclass(frozen=True)
class ReconcileResult:
    target_vm: str
    detached: tuple[PlanEntry, ...] = ()
    attached: tuple[PlanEntry, ...] = ()
    skipped: tuple[tuple[PlanEntry, str], ...] = ()
    failed: tuple[AttachFailure, ...] = ()
    unreachable: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed
