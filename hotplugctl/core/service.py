"""Service layer used by CLI and the public API."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path

from hotplugctl.core import introspect, topology
from hotplugctl.core.config_loader import HotplugConfig, load_config
from hotplugctl.core.device_match import select_devices
from hotplugctl.core.engine import (
    EngineSettings,
    ReconcileEngine,
    is_not_found,
    resolve_target_vm,
)
from hotplugctl.core.errors import ChannelError, DetachFailedError, UnreachableError
from hotplugctl.core.model import (
    AttachedDeviceInfo,
    AttachFailure,
    HostDevice,
    PlanEntry,
    PlanOperation,
    ReconcileResult,
    TargetDeviceSpec,
    VmBinding,
    VmEndpoint,
)
from hotplugctl.transports import qmp
from hotplugctl.transports.base import Channel

MANUAL_PREFIX = "manual_"
_MANUAL_RE = re.compile(rf"^{MANUAL_PREFIX}([0-9]+)$")
LOGGER = logging.getLogger(__name__)

Connector = Callable[[str], Channel]
Scanner = Callable[[], list[HostDevice]]


class VmSession(AbstractContextManager["VmSession"]):
    """Open control channels for a set of VMs and close all of them on exit.

    VMs that cannot be reached are kept as endpoints without a channel so the
    engine can report them.
    """

    def __init__(self, vm_ids: Iterable[str], connector: Connector) -> None:
        self._vm_ids = list(dict.fromkeys(vm_ids))
        self._connector = connector
        self.endpoints: list[VmEndpoint] = []
        self.errors: dict[str, str] = {}

    def __enter__(self) -> VmSession:
        try:
            for vm_id in self._vm_ids:
                try:
                    channel = self._connector(vm_id)
                except UnreachableError as exc:
                    LOGGER.warning("Could not connect to vm %s: %s", vm_id, exc)
                    self.errors[vm_id] = str(exc)
                    self.endpoints.append(VmEndpoint(vm_id=vm_id))
                    continue
                self.endpoints.append(VmEndpoint(vm_id=vm_id, channel=channel))
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def endpoint(self, vm_id: str) -> VmEndpoint:
        for endpoint in self.endpoints:
            if endpoint.vm_id == vm_id:
                return endpoint
        return VmEndpoint(vm_id=vm_id)

    def close(self) -> None:
        for endpoint in self.endpoints:
            if endpoint.channel is not None:
                endpoint.channel.close()


class HotplugService:
    def __init__(
        self,
        config: HotplugConfig | None = None,
        *,
        config_path: Path | None = None,
        connector: Connector | None = None,
        scanner: Scanner | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        self._connector = connector or self._default_connector
        self._scanner = scanner or self._default_scanner
        settings = EngineSettings(
            phase_settle_s=self.config.phase_settle_s,
            attach_settle_s=self.config.attach_settle_s,
            qom_root=self.config.qom_root,
        )
        self.engine = ReconcileEngine(settings, sleep=sleep or time.sleep)

    def _default_connector(self, vm_id: str) -> Channel:
        return qmp.connect(
            vm_id,
            socket_dir=self.config.socket_dir,
            timeout_s=self.config.connect_timeout_s,
            call_timeout_s=self.config.call_timeout_s,
        )

    def _default_scanner(self) -> list[HostDevice]:
        return topology.scan()

    def list_devices(self) -> list[HostDevice]:
        return self._scanner()

    def session(self, vm_ids: Iterable[str]) -> VmSession:
        return VmSession(vm_ids, self._connector)

    @contextmanager
    def _connected(self, vm_id: str) -> Iterator[Channel]:
        with self.session([vm_id]) as session:
            channel = session.endpoint(vm_id).channel
            if channel is None:
                reason = session.errors.get(vm_id, "no connection")
                raise UnreachableError(f"Could not connect to vm {vm_id}: {reason}")
            yield channel

    def list_attached(self, vm_id: str) -> list[AttachedDeviceInfo]:
        inventory = self.list_devices()
        with self._connected(vm_id) as channel:
            attached = introspect.list_attached(channel, vm_id=vm_id, root=self.config.qom_root)

        infos: list[AttachedDeviceInfo] = []
        for device in attached:
            host = topology.find_by_bus_and_port(inventory, device.bus_and_port)
            infos.append(
                AttachedDeviceInfo(
                    attached=device,
                    vid_pid=host.vid_pid if host else "",
                    display_name=host.display_name if host else "",
                )
            )
        return infos

    def attach_devices(self, vm_id: str, specs: Sequence[TargetDeviceSpec]) -> ReconcileResult:
        """Hot-plug every host device matching ``specs`` under fresh ``manual_<n>`` ids."""
        inventory = self.list_devices()
        selected = select_devices(specs, inventory)
        attached: list[PlanEntry] = []
        failed: list[AttachFailure] = []
        with self._connected(vm_id) as channel:
            used = set(introspect.snapshot(channel, vm_id, root=self.config.qom_root).by_id)
            for device in selected:
                device_id = _next_manual_id(used)
                used.add(device_id)
                entry = PlanEntry(PlanOperation.ATTACH, vm_id, device_id, device)
                failure = self.engine.attach(channel, entry)
                if failure is None:
                    attached.append(entry)
                else:
                    failed.append(failure)
        return ReconcileResult(target_vm=vm_id, attached=tuple(attached), failed=tuple(failed))

    def detach_devices(self, vm_id: str, device_ids: Sequence[str]) -> ReconcileResult:
        detached: list[PlanEntry] = []
        skipped: list[tuple[PlanEntry, str]] = []
        with self._connected(vm_id) as channel:
            for device_id in device_ids:
                entry = PlanEntry(PlanOperation.DETACH, vm_id, device_id)
                try:
                    channel.call("device_del", {"id": device_id})
                except ChannelError as exc:
                    if is_not_found(exc, device_id):
                        LOGGER.info("%s is not attached to vm %s", device_id, vm_id)
                        skipped.append((entry, "not found"))
                        continue
                    raise DetachFailedError(f"Could not detach {device_id} from vm {vm_id}: {exc}") from exc
                LOGGER.info("Detached %s from vm %s", device_id, vm_id)
                detached.append(entry)
        return ReconcileResult(target_vm=vm_id, detached=tuple(detached), skipped=tuple(skipped))

    def reconcile(
        self,
        target_vm_id: str,
        specs: Sequence[TargetDeviceSpec],
        bindings: Sequence[VmBinding] = (),
        *,
        reverse_match: bool = False,
    ) -> ReconcileResult:
        inventory = self.list_devices()
        vm_ids = [binding.vm_id for binding in bindings] + [target_vm_id]
        with self.session(vm_ids) as session:
            return self.engine.reconcile(
                specs,
                session.endpoints,
                session.endpoint(target_vm_id),
                inventory,
                reverse_match,
            )

    def move(
        self,
        detect_spec: TargetDeviceSpec,
        specs: Sequence[TargetDeviceSpec],
        bindings: Sequence[VmBinding],
        *,
        reverse_match: bool = False,
    ) -> ReconcileResult:
        """Send ``specs`` to whichever VM's bound position holds the detect device."""
        inventory = self.list_devices()
        with self.session(binding.vm_id for binding in bindings) as session:
            target = resolve_target_vm(detect_spec, bindings, session.endpoints, inventory)
            return self.engine.reconcile(specs, session.endpoints, target, inventory, reverse_match)


def _next_manual_id(used: set[str]) -> str:
    taken = {int(match.group(1)) for match in map(_MANUAL_RE.match, used) if match}
    index = 0
    while index in taken:
        index += 1
    return f"{MANUAL_PREFIX}{index}"
