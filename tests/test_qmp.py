from __future__ import annotations

import json
import socket
import threading
from pathlib import Path

import pytest

from hotplugctl.core.errors import ChannelTimeoutError, ProtocolError, UnreachableError
from hotplugctl.transports.qmp import QMPChannel, connect, socket_path

GREETING = {"QMP": {"version": {"qemu": {"major": 8, "minor": 1, "micro": 5}}, "capabilities": []}}
STATUS = {"return": {"running": True, "singlestep": False, "status": "running"}}


def _line(message: object) -> bytes:
    return json.dumps(message).encode("utf-8") + b"\n"


def _pair(*server_messages: object, call_timeout_s: float = 2.0) -> tuple[QMPChannel, socket.socket]:
    client, server = socket.socketpair()
    server.sendall(b"".join(m if isinstance(m, bytes) else _line(m) for m in server_messages))
    return QMPChannel("100", client, call_timeout_s=call_timeout_s), server


def _requests(server: socket.socket) -> list[dict]:
    server.settimeout(1.0)
    data = b""
    while True:
        try:
            chunk = server.recv(65536)
        except socket.timeout:
            break
        if not chunk:
            break
        data += chunk
    return [json.loads(line) for line in data.splitlines() if line]


def test_handshake_and_commands_are_framed_as_json_lines() -> None:
    channel, server = _pair(GREETING, {"return": {}}, STATUS, {"return": {}})

    channel.handshake()
    assert channel.query_status()["status"] == "running"
    channel.call("device_add", {"driver": "usb-host", "id": "auto_0", "hostbus": "2", "hostport": "1.1"})
    channel.close()

    assert _requests(server) == [
        {"execute": "qmp_capabilities", "id": 1},
        {"execute": "query-status", "id": 2},
        {
            "execute": "device_add",
            "arguments": {"driver": "usb-host", "id": "auto_0", "hostbus": "2", "hostport": "1.1"},
            "id": 3,
        },
    ]


def test_events_are_skipped_until_the_reply() -> None:
    event = {"event": "DEVICE_DELETED", "data": {"device": "auto_0"}, "timestamp": {"seconds": 1, "microseconds": 0}}
    channel, _ = _pair(event, {"return": [{"name": "type", "type": "string"}]})

    assert channel.call("qom-list", {"path": "/machine"}) == [{"name": "type", "type": "string"}]


def test_error_reply_keeps_description_verbatim() -> None:
    channel, _ = _pair({"error": {"class": "DeviceNotFound", "desc": "Device 'auto_0' not found"}})

    with pytest.raises(ProtocolError) as exc:
        channel.call("device_del", {"id": "auto_0"})

    assert str(exc.value) == "Device 'auto_0' not found"
    assert exc.value.error_class == "DeviceNotFound"


def test_invalid_json_is_a_protocol_error() -> None:
    channel, _ = _pair(b"{not json\n")

    with pytest.raises(ProtocolError):
        channel.call("query-status")


def test_closed_peer_is_a_protocol_error() -> None:
    channel, server = _pair()
    server.close()

    with pytest.raises(ProtocolError):
        channel.call("query-status")


def test_silent_peer_times_out() -> None:
    channel, _server = _pair(call_timeout_s=0.05)

    with pytest.raises(ChannelTimeoutError):
        channel.call("query-status")


def test_late_reply_after_timeout_is_not_taken_for_the_next_call() -> None:
    channel, server = _pair(call_timeout_s=0.05)

    with pytest.raises(ChannelTimeoutError):
        channel.call("device_add", {"driver": "usb-host", "id": "auto_0", "hostbus": "2", "hostport": "1.1"})
    late = _line({"error": {"class": "GenericError", "desc": "slow add"}, "id": 1})
    server.sendall(late + _line({"return": {"status": "running"}, "id": 2}))

    assert not channel.closed
    assert channel.call("query-status") == {"status": "running"}


def test_reply_split_across_reads_is_reassembled() -> None:
    channel, server = _pair(b"{\"return\": ", call_timeout_s=0.05)

    with pytest.raises(ChannelTimeoutError):
        channel.call("query-status")
    server.sendall(b"{}, \"id\": 1}\n" + _line({"return": [], "id": 2}))

    assert channel.call("qom-list", {"path": "/machine"}) == []


def test_close_is_idempotent_and_blocks_further_calls() -> None:
    channel, _ = _pair()
    channel.close()
    channel.close()

    assert channel.closed
    with pytest.raises(ProtocolError):
        channel.call("query-status")


def test_socket_path_uses_vm_id() -> None:
    assert socket_path("105") == Path("/var/run/qemu-server/105.qmp")


def test_connect_missing_socket_is_unreachable(tmp_path: Path) -> None:
    with pytest.raises(UnreachableError):
        connect("999", socket_dir=tmp_path)


def _serve_once(path: Path, payload: bytes) -> threading.Thread:
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(str(path))
    listener.listen(1)

    def _run() -> None:
        conn, _ = listener.accept()
        with conn:
            conn.sendall(payload)
            conn.settimeout(2.0)
            try:
                while conn.recv(4096):
                    pass
            except OSError:
                pass
        listener.close()

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread


def test_connect_performs_liveness_probe(tmp_path: Path) -> None:
    thread = _serve_once(tmp_path / "100.qmp", _line(GREETING) + _line({"return": {}}) + _line(STATUS))

    channel = connect("100", socket_dir=tmp_path)
    channel.close()
    thread.join(timeout=5)

    assert channel.vm_id == "100"


def test_connect_failed_liveness_probe_is_unreachable(tmp_path: Path) -> None:
    thread = _serve_once(
        tmp_path / "100.qmp",
        _line(GREETING) + _line({"return": {}}) + _line({"error": {"class": "GenericError", "desc": "boom"}}),
    )

    with pytest.raises(UnreachableError) as exc:
        connect("100", socket_dir=tmp_path)
    thread.join(timeout=5)

    assert "boom" in str(exc.value)
