"""Device-to-spec matching and parsing of operator-supplied selectors."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from hotplugctl.core.errors import SpecFormatError
from hotplugctl.core.model import HostDevice, TargetDeviceSpec, VmBinding

_SPEC_RE = re.compile(r"^[0-9a-f]{4}:(?:[0-9a-f]{4})?$")
_BINDING_RE = re.compile(r"^([0-9]+):([0-9]+)-([0-9.]+)$")


def is_valid_spec(spec: TargetDeviceSpec) -> bool:
    return bool(_SPEC_RE.match(spec.vid_pid))


def parse_target_spec(value: str) -> TargetDeviceSpec:
    normalized = value.strip().lower()
    if not _SPEC_RE.match(normalized):
        raise SpecFormatError(f"'{value}' is not a valid device spec. Expected format 1a2b:3c4d or 1a2b:")
    return TargetDeviceSpec(vid_pid=normalized)


def parse_target_specs(values: Iterable[str]) -> list[TargetDeviceSpec]:
    return [parse_target_spec(value) for value in values]


def parse_binding(value: str) -> VmBinding:
    match = _BINDING_RE.match(value.strip())
    if not match:
        raise SpecFormatError(f"'{value}' is not a valid VM binding. Expected format vmid:bus-port.path, e.g. 100:5-2.1.1")
    return VmBinding(vm_id=match.group(1), bus_id=match.group(2), port_path=match.group(3))


def parse_bindings(values: Iterable[str]) -> list[VmBinding]:
    return [parse_binding(value) for value in values]


def matches(device: HostDevice, spec: TargetDeviceSpec) -> bool:
    return device.vid_pid.startswith(spec.vid_pid)


def is_selected(
    device: HostDevice,
    spec: TargetDeviceSpec,
    specs: Sequence[TargetDeviceSpec],
    *,
    reverse_match: bool,
) -> bool:
    """Decide whether ``device`` belongs to the slot of ``spec``.

    In reverse mode a device is selected when it matches none of ``specs``.
    """
    if reverse_match:
        return not any(matches(device, other) for other in specs if is_valid_spec(other))
    return matches(device, spec)


def select_devices(
    specs: Sequence[TargetDeviceSpec],
    inventory: Sequence[HostDevice],
    *,
    reverse_match: bool = False,
) -> list[HostDevice]:
    """Return every inventory device selected by at least one spec, in inventory order."""
    valid = [spec for spec in specs if is_valid_spec(spec)]
    return [
        device
        for device in inventory
        if any(is_selected(device, spec, valid, reverse_match=reverse_match) for spec in valid)
    ]
