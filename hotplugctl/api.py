"""Stable public API for building tooling on top of hotplugctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

from hotplugctl.core.config_loader import HotplugConfig, load_config
from hotplugctl.core.device_match import parse_binding, parse_target_spec
from hotplugctl.core.engine import EngineSettings, ReconcileEngine, plan_attach, plan_detach
from hotplugctl.core.errors import (
    ChannelError,
    ChannelTimeoutError,
    ConfigLoadError,
    ConfigValidationError,
    DetachFailedError,
    DetectDeviceNotFoundError,
    HotplugError,
    IntrospectionFailedError,
    NoTargetConnectionError,
    ProtocolError,
    ScanUnavailableError,
    SpecFormatError,
    UnreachableError,
)
from hotplugctl.core.model import (
    AttachedDevice,
    AttachedDeviceInfo,
    AttachFailure,
    AttachmentSnapshot,
    HostDevice,
    PlanEntry,
    PlanOperation,
    ReconcileResult,
    TargetDeviceSpec,
    VmBinding,
    VmEndpoint,
)
from hotplugctl.core.service import HotplugService
from hotplugctl.transports.base import Channel

__all__ = [
    "HotplugError",
    "ChannelError",
    "ChannelTimeoutError",
    "ConfigLoadError",
    "ConfigValidationError",
    "DetachFailedError",
    "DetectDeviceNotFoundError",
    "IntrospectionFailedError",
    "NoTargetConnectionError",
    "ProtocolError",
    "ScanUnavailableError",
    "SpecFormatError",
    "UnreachableError",
    "AttachedDevice",
    "AttachedDeviceInfo",
    "AttachFailure",
    "AttachmentSnapshot",
    "Channel",
    "EngineSettings",
    "HostDevice",
    "HotplugConfig",
    "PlanEntry",
    "PlanOperation",
    "ReconcileEngine",
    "ReconcileResult",
    "TargetDeviceSpec",
    "VmBinding",
    "VmEndpoint",
    "plan_attach",
    "plan_detach",
    "Client",
]


class Client:
    """Public client for moving USB devices between VMs.

    A `Client` instance wraps config loading, host USB scanning, QMP sessions
    and reconciliation behind a stable API intended for third-party tools
    (udev hooks/services/scripts). Device specs and bindings may be given
    either as strings (``"1a2b:3c4d"``, ``"100:5-2.1.1"``) or parsed objects.
    """

    def __init__(
        self,
        *,
        config: HotplugConfig | None = None,
        config_path: Path | None = None,
        connector: Callable[[str], Channel] | None = None,
        scanner: Callable[[], list[HostDevice]] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._service = HotplugService(
            config or load_config(config_path),
            connector=connector,
            scanner=scanner,
            sleep=sleep,
        )

    @property
    def config(self) -> HotplugConfig:
        return self._service.config

    def list_devices(self) -> list[HostDevice]:
        return self._service.list_devices()

    def list_attached(self, vm_id: str) -> list[AttachedDeviceInfo]:
        return self._service.list_attached(vm_id)

    def attach(self, vm_id: str, specs: Sequence[str | TargetDeviceSpec]) -> ReconcileResult:
        return self._service.attach_devices(vm_id, _specs(specs))

    def detach(self, vm_id: str, device_ids: Sequence[str]) -> ReconcileResult:
        return self._service.detach_devices(vm_id, device_ids)

    def reconcile(
        self,
        vm_id: str,
        specs: Sequence[str | TargetDeviceSpec],
        *,
        bindings: Sequence[str | VmBinding] = (),
        reverse_match: bool = False,
    ) -> ReconcileResult:
        return self._service.reconcile(
            vm_id,
            _specs(specs),
            _bindings(bindings),
            reverse_match=reverse_match,
        )

    def move(
        self,
        detect_device: str | TargetDeviceSpec,
        specs: Sequence[str | TargetDeviceSpec],
        bindings: Sequence[str | VmBinding],
        *,
        reverse_match: bool = False,
    ) -> ReconcileResult:
        return self._service.move(
            _specs([detect_device])[0],
            _specs(specs),
            _bindings(bindings),
            reverse_match=reverse_match,
        )


def _specs(values: Sequence[str | TargetDeviceSpec]) -> list[TargetDeviceSpec]:
    return [parse_target_spec(v) if isinstance(v, str) else v for v in values]


def _bindings(values: Sequence[str | VmBinding]) -> list[VmBinding]:
    return [parse_binding(v) if isinstance(v, str) else v for v in values]
