"""Detach-then-attach reconciliation of USB passthrough across VMs.

The engine moves the devices selected by an ordered list of target specs onto
a single destination VM. Each spec owns the slot ``auto_<index>``; slot names
are the join key between what should be attached and what the QOM tree says
is attached, so they depend only on spec order.

QMP replies only confirm that a command was accepted, not that the device
model finished tearing down or bringing up the device. The settle delays in
:class:`EngineSettings` approximate that ordering. Waiting for QEMU's
``DEVICE_DELETED`` event would be the acknowledgement-based alternative.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from hotplugctl.core import introspect
from hotplugctl.core.device_match import is_selected, is_valid_spec, matches
from hotplugctl.core.errors import (
    ChannelError,
    DetachFailedError,
    DetectDeviceNotFoundError,
    HotplugError,
    IntrospectionFailedError,
    NoTargetConnectionError,
    ProtocolError,
)
from hotplugctl.core.model import (
    AttachFailure,
    AttachmentSnapshot,
    HostDevice,
    PlanEntry,
    PlanOperation,
    ReconcileResult,
    TargetDeviceSpec,
    VmBinding,
    VmEndpoint,
    slot_name,
)
from hotplugctl.transports.base import Channel

USB_HOST_DRIVER = "usb-host"
LOGGER = logging.getLogger(__name__)

Skipped = tuple[PlanEntry, str]


@dataclass(frozen=True)
class EngineSettings:
    phase_settle_s: float = 1.0
    attach_settle_s: float = 5.0
    qom_root: str = introspect.DEFAULT_QOM_ROOT


def is_not_found(exc: ChannelError, device_id: str) -> bool:
    if isinstance(exc, ProtocolError) and exc.error_class == "DeviceNotFound":
        return True
    return str(exc) == f"Device '{device_id}' not found"


def _usable_specs(specs: Sequence[TargetDeviceSpec]) -> list[tuple[int, TargetDeviceSpec]]:
    return [(index, spec) for index, spec in enumerate(specs) if is_valid_spec(spec)]


def resolve_target_vm(
    detect_spec: TargetDeviceSpec,
    bindings: Sequence[VmBinding],
    endpoints: Sequence[VmEndpoint],
    inventory: Sequence[HostDevice],
) -> VmEndpoint:
    """Pick the VM whose bound position currently holds the detect device."""
    detected = [device for device in inventory if matches(device, detect_spec)]
    if not detected:
        raise DetectDeviceNotFoundError(f"Detect device {detect_spec.vid_pid} is not plugged into the host")

    by_vm = {endpoint.vm_id: endpoint for endpoint in endpoints}
    for device in detected:
        for binding in bindings:
            if (binding.bus_id, binding.port_path) != (device.bus_id, device.port_path):
                continue
            endpoint = by_vm.get(binding.vm_id)
            if endpoint is None or not endpoint.reachable:
                raise NoTargetConnectionError(
                    f"Detect device {device.vid_pid} is at {device.bus_and_port}, bound to vm {binding.vm_id}, "
                    "but that VM has no control connection"
                )
            LOGGER.info(
                "Detect device %s found at %s; target vm is %s",
                device.vid_pid,
                device.bus_and_port,
                binding.vm_id,
            )
            return endpoint

    positions = ", ".join(device.bus_and_port for device in detected)
    raise DetectDeviceNotFoundError(
        f"Detect device {detect_spec.vid_pid} found at {positions}, but no VM is bound to that position"
    )


def plan_detach(
    specs: Sequence[TargetDeviceSpec],
    snapshots: Sequence[AttachmentSnapshot],
    target_vm_id: str,
) -> tuple[list[PlanEntry], list[Skipped]]:
    entries: list[PlanEntry] = []
    skipped: list[Skipped] = []
    for snapshot in snapshots:
        for index, _ in _usable_specs(specs):
            name = slot_name(index)
            if name not in snapshot:
                continue
            entry = PlanEntry(PlanOperation.DETACH, snapshot.vm_id, name)
            if snapshot.vm_id == target_vm_id:
                skipped.append((entry, "already attached to target"))
                continue
            entries.append(entry)
    return entries, skipped


def plan_attach(
    specs: Sequence[TargetDeviceSpec],
    inventory: Sequence[HostDevice],
    target_snapshot: AttachmentSnapshot,
    *,
    reverse_match: bool = False,
) -> tuple[list[PlanEntry], list[Skipped]]:
    usable = _usable_specs(specs)
    valid_specs = [spec for _, spec in usable]
    entries: list[PlanEntry] = []
    skipped: list[Skipped] = []
    planned: set[str] = set()
    for index, spec in usable:
        name = slot_name(index)
        for device in inventory:
            if not is_selected(device, spec, valid_specs, reverse_match=reverse_match):
                continue
            entry = PlanEntry(PlanOperation.ATTACH, target_snapshot.vm_id, name, device)
            if name in target_snapshot:
                skipped.append((entry, "already attached"))
            elif name in planned:
                skipped.append((entry, "slot already planned"))
            else:
                planned.add(name)
                entries.append(entry)
    return entries, skipped


class ReconcileEngine:
    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._sleep = sleep

    def snapshot(self, endpoint: VmEndpoint) -> AttachmentSnapshot:
        if endpoint.channel is None:
            raise NoTargetConnectionError(f"VM {endpoint.vm_id} has no control connection")
        return introspect.snapshot(endpoint.channel, endpoint.vm_id, root=self.settings.qom_root)

    def reconcile(
        self,
        desired_specs: Sequence[TargetDeviceSpec],
        candidate_vms: Sequence[VmEndpoint],
        target_vm: VmEndpoint,
        host_inventory: Sequence[HostDevice],
        reverse_match: bool = False,
    ) -> ReconcileResult:
        target = self._require_target(candidate_vms, target_vm)
        for index, spec in enumerate(desired_specs):
            if not is_valid_spec(spec):
                LOGGER.warning("Ignoring malformed device spec '%s' (slot %s)", spec.vid_pid, slot_name(index))
        unreachable = tuple(vm.vm_id for vm in candidate_vms if not vm.reachable)
        for vm_id in unreachable:
            LOGGER.warning("VM %s is unreachable and is left untouched", vm_id)

        snapshots = self._detach_snapshots(candidate_vms, target)
        detach_entries, skipped = plan_detach(desired_specs, snapshots, target.vm_id)
        for entry, reason in skipped:
            LOGGER.info("Leaving %s on vm %s: %s", entry.slot_name, entry.vm_id, reason)

        channels = {vm.vm_id: vm.channel for vm in candidate_vms if vm.channel is not None}
        for entry in detach_entries:
            self._detach(channels[entry.vm_id], entry)

        if detach_entries:
            self._sleep(self.settings.phase_settle_s)

        attach_entries, attach_skipped = plan_attach(
            desired_specs,
            host_inventory,
            self.snapshot(target),
            reverse_match=reverse_match,
        )
        for entry, reason in attach_skipped:
            LOGGER.info("Not planning %s: %s", entry.describe(), reason)

        attached: list[PlanEntry] = []
        failed: list[AttachFailure] = []
        for entry in attach_entries:
            failure = self.attach(channels[target.vm_id], entry)
            if failure is None:
                attached.append(entry)
            else:
                failed.append(failure)

        return ReconcileResult(
            target_vm=target.vm_id,
            detached=tuple(detach_entries),
            attached=tuple(attached),
            skipped=tuple(skipped) + tuple(attach_skipped),
            failed=tuple(failed),
            unreachable=unreachable,
        )

    def _require_target(self, candidate_vms: Sequence[VmEndpoint], target_vm: VmEndpoint) -> VmEndpoint:
        for vm in candidate_vms:
            if vm.vm_id == target_vm.vm_id:
                if vm.channel is None:
                    raise NoTargetConnectionError(f"There is no connection for target vm {vm.vm_id}")
                return vm
        raise NoTargetConnectionError(f"Target vm {target_vm.vm_id} is not among the candidate VMs")

    def _detach_snapshots(
        self,
        candidate_vms: Sequence[VmEndpoint],
        target: VmEndpoint,
    ) -> list[AttachmentSnapshot]:
        snapshots: list[AttachmentSnapshot] = []
        seen: set[str] = set()
        for vm in candidate_vms:
            if not vm.reachable or vm.vm_id in seen:
                continue
            seen.add(vm.vm_id)
            if vm.vm_id == target.vm_id:
                snapshots.append(self.snapshot(vm))
                continue
            try:
                snapshots.append(self.snapshot(vm))
            except IntrospectionFailedError as exc:
                LOGGER.warning("Excluding vm %s from detach: %s", vm.vm_id, exc)
        return snapshots

    def _detach(self, channel: Channel, entry: PlanEntry) -> None:
        LOGGER.info("Detaching %s from vm %s", entry.slot_name, entry.vm_id)
        try:
            channel.call("device_del", {"id": entry.slot_name})
        except ChannelError as exc:
            if is_not_found(exc, entry.slot_name):
                LOGGER.info("%s was already absent from vm %s", entry.slot_name, entry.vm_id)
                return
            raise DetachFailedError(f"Could not detach {entry.slot_name} from vm {entry.vm_id}: {exc}") from exc
        LOGGER.info("Detached %s from vm %s", entry.slot_name, entry.vm_id)

    def attach(self, channel: Channel, entry: PlanEntry) -> AttachFailure | None:
        """Hot-plug ``entry.device`` after the attach settle delay.

        A rejected ``device_add`` is returned as an :class:`AttachFailure` so the
        caller can carry on with the remaining devices.
        """
        device = entry.device
        if device is None:
            raise HotplugError(f"Cannot attach {entry.slot_name} to vm {entry.vm_id}: no host device planned")
        self._sleep(self.settings.attach_settle_s)
        LOGGER.info("Attaching %s (%s) to vm %s as %s", device.vid_pid, device.bus_and_port, entry.vm_id, entry.slot_name)
        try:
            channel.call(
                "device_add",
                {
                    "driver": USB_HOST_DRIVER,
                    "id": entry.slot_name,
                    "hostbus": device.bus_id,
                    "hostport": device.port_path,
                },
            )
        except ChannelError as exc:
            LOGGER.error(
                "Could not attach %s (%s) to vm %s as %s: %s",
                device.vid_pid,
                device.bus_and_port,
                entry.vm_id,
                entry.slot_name,
                exc,
            )
            return AttachFailure(entry=entry, message=str(exc))
        LOGGER.info("Attached %s to vm %s as %s", device.vid_pid, entry.vm_id, entry.slot_name)
        return None
