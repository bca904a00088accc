"""Typer CLI entrypoint."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

import typer
import yaml

from hotplugctl.core.config_loader import load_config
from hotplugctl.core.device_match import parse_bindings, parse_target_spec, parse_target_specs
from hotplugctl.core.errors import HotplugError
from hotplugctl.core.model import ReconcileResult
from hotplugctl.core.service import HotplugService

app = typer.Typer(help="Move USB devices between QEMU virtual machines via QMP hotplug")

EXIT_ATTACH_FAILED = 2


@dataclasses.dataclass
class _Options:
    config_path: Path | None = None
    socket_dir: str | None = None


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", force=True)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="Path to config YAML"),
    socket_dir: str | None = typer.Option(None, "--socket-dir", help="Directory holding <vmid>.qmp sockets"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log verbosity"),
) -> None:
    _configure_logging(verbose)
    ctx.obj = _Options(config_path=config, socket_dir=socket_dir)


def _build_service(ctx: typer.Context) -> HotplugService:
    options: _Options = ctx.obj or _Options()
    config = load_config(options.config_path)
    if options.socket_dir:
        config = dataclasses.replace(config, socket_dir=options.socket_dir)
    return HotplugService(config)


def _echo_result(result: ReconcileResult) -> None:
    for vm_id in result.unreachable:
        typer.echo(f"Warning: vm {vm_id} is unreachable", err=True)
    for entry in result.detached:
        typer.echo(f"Detached {entry.slot_name} from vm {entry.vm_id}")
    for entry in result.attached:
        device = f" {entry.device.vid_pid} ({entry.device.bus_and_port})" if entry.device else ""
        typer.echo(f"Attached{device} to vm {entry.vm_id} as {entry.slot_name}")
    for entry, reason in result.skipped:
        typer.echo(f"Skipped {entry.slot_name} on vm {entry.vm_id}: {reason}")
    for failure in result.failed:
        typer.echo(f"Failed: {failure.entry.describe()}: {failure.message}", err=True)
    if not (result.detached or result.attached or result.skipped or result.failed):
        typer.echo(f"Nothing to do for vm {result.target_vm}")


def _exit_for(result: ReconcileResult) -> None:
    if not result.ok:
        raise typer.Exit(code=EXIT_ATTACH_FAILED)


@app.command("devices")
def list_devices(ctx: typer.Context) -> None:
    """List USB devices currently plugged into the host."""
    try:
        service = _build_service(ctx)
        devices = service.list_devices()
        if not devices:
            typer.echo("No USB devices found")
            return
        for device in devices:
            name = f" {device.display_name}" if device.display_name else ""
            typer.echo(f"{device.bus_and_port} {device.vid_pid}{name}")
    except HotplugError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("attached")
def list_attached(
    ctx: typer.Context,
    vmid: str,
    as_yaml: bool = typer.Option(False, "--yaml", help="Print as YAML"),
) -> None:
    """List usb-host devices attached to VMID."""
    try:
        service = _build_service(ctx)
        infos = service.list_attached(vmid)
        if as_yaml:
            rows = [
                {
                    "generated_id": info.attached.generated_id,
                    "tree_path": info.attached.tree_path,
                    "host_link_path": info.attached.host_link_path,
                    "bus_and_port": info.attached.bus_and_port,
                    "vid_pid": info.vid_pid,
                    "product": info.display_name,
                }
                for info in infos
            ]
            typer.echo(yaml.safe_dump(rows, sort_keys=False), nl=False)
            return
        if not infos:
            typer.echo(f"No USB devices attached to vm {vmid}")
            return
        for info in infos:
            vid_pid = info.vid_pid or "<not on host>"
            name = f" {info.display_name}" if info.display_name else ""
            typer.echo(f"{info.attached.generated_id} {info.attached.bus_and_port} {vid_pid}{name}")
    except HotplugError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("attach")
def attach(
    ctx: typer.Context,
    vmid: str,
    target: list[str] = typer.Option(..., "--target", "-t", help="Device to attach, '1234:abcd' or '1234:'. Repeatable"),
) -> None:
    """Hot-plug matching host devices into VMID under fresh ids."""
    try:
        service = _build_service(ctx)
        result = service.attach_devices(vmid, parse_target_specs(target))
        _echo_result(result)
    except HotplugError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    _exit_for(result)


@app.command("detach")
def detach(
    ctx: typer.Context,
    vmid: str,
    device: list[str] = typer.Option(..., "--device", "-d", help="Device id to remove (see 'attached'). Repeatable"),
) -> None:
    """Hot-unplug devices from VMID by id."""
    try:
        service = _build_service(ctx)
        result = service.detach_devices(vmid, device)
        _echo_result(result)
    except HotplugError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("reconcile")
def reconcile(
    ctx: typer.Context,
    vmid: str,
    target: list[str] | None = typer.Option(None, "--target", "-t", help="Device to move. Repeatable"),
    binding: list[str] | None = typer.Option(None, "--bind", "-b", help="Other VM to clear, 'vmid:bus-port.path'. Repeatable"),
    reverse: bool | None = typer.Option(
        None, "--reverse/--no-reverse", "-r", help="Move every device not listed. Defaults to the config value"
    ),
) -> None:
    """Move target devices to VMID, detaching them from the other bound VMs."""
    try:
        service = _build_service(ctx)
        config = service.config
        specs = parse_target_specs(target) if target else list(config.targets)
        bindings = parse_bindings(binding) if binding else list(config.bindings)
        if not specs:
            raise typer.BadParameter("at least one --target is required", param_hint="--target")
        result = service.reconcile(vmid, specs, bindings, reverse_match=config.reverse if reverse is None else reverse)
        _echo_result(result)
    except HotplugError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    _exit_for(result)


@app.command("move")
def move(
    ctx: typer.Context,
    detect_device: str | None = typer.Option(None, "--detect-device", "-D", help="Device whose position selects the VM"),
    target: list[str] | None = typer.Option(None, "--target", "-t", help="Device to move. Repeatable"),
    binding: list[str] | None = typer.Option(None, "--bind", "-b", help="Map VM to detect-device position, e.g. '100:5-2.1.1'. Repeatable"),
    reverse: bool | None = typer.Option(
        None, "--reverse/--no-reverse", "-r", help="Move every device not listed. Defaults to the config value"
    ),
) -> None:
    """Move target devices to the VM whose bound position holds the detect device."""
    try:
        service = _build_service(ctx)
        config = service.config
        detect = parse_target_spec(detect_device) if detect_device else config.detect_device
        specs = parse_target_specs(target) if target else list(config.targets)
        bindings = parse_bindings(binding) if binding else list(config.bindings)
        if detect is None:
            raise typer.BadParameter("a detect device is required", param_hint="--detect-device")
        if not specs:
            raise typer.BadParameter("at least one --target is required", param_hint="--target")
        if not bindings:
            raise typer.BadParameter("at least one --bind is required", param_hint="--bind")
        result = service.move(detect, specs, bindings, reverse_match=config.reverse if reverse is None else reverse)
        _echo_result(result)
    except HotplugError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    _exit_for(result)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
