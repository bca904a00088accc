from __future__ import annotations

from conftest import FakeUdevContext, FakeVm, udev_device

from hotplugctl.api import Client, HotplugConfig
from hotplugctl.core import topology


def _scanner():
    return topology.scan(FakeUdevContext(udev_device("2-1.1", "1a2b", "3c4d", devnum="5")))


def test_public_client_reconcile_with_string_inputs(call_log) -> None:
    vms = {"100": FakeVm("100", call_log, attached={"auto_0": ("2", "1.1")}), "101": FakeVm("101", call_log)}
    client = Client(config=HotplugConfig(), connector=vms.__getitem__, scanner=_scanner, sleep=lambda _: None)

    result = client.reconcile("101", ["1a2b:3c4d"], bindings=["100:5-2.1.1"])

    assert [d.vid_pid for d in client.list_devices()] == ["1a2b:3c4d"]
    assert call_log == [("device_del", "100", "auto_0"), ("device_add", "101", "auto_0", "2", "1.1")]
    assert result.ok


def test_public_client_list_attached(call_log) -> None:
    vms = {"101": FakeVm("101", call_log, attached={"auto_0": ("2", "1.1")})}
    client = Client(config=HotplugConfig(), connector=vms.__getitem__, scanner=_scanner)

    infos = client.list_attached("101")

    assert infos[0].vid_pid == "1a2b:3c4d"
