"""QMP control-channel implementation using unix sockets."""

from __future__ import annotations

import itertools
import json
import logging
import socket
from pathlib import Path
from typing import Any

from hotplugctl.core.errors import (
    ChannelTimeoutError,
    ProtocolError,
    UnreachableError,
)

DEFAULT_SOCKET_DIR = "/var/run/qemu-server"
DEFAULT_CONNECT_TIMEOUT_S = 2.0
DEFAULT_CALL_TIMEOUT_S = 10.0
LOGGER = logging.getLogger(__name__)


def socket_path(vm_id: str, socket_dir: str | Path = DEFAULT_SOCKET_DIR) -> Path:
    return Path(socket_dir) / f"{vm_id}.qmp"


class QMPChannel:
    """One request/response QMP session bound to a single VM.

    Every ``call`` writes one command tagged with a fresh ``id`` and consumes
    the reply carrying that ``id``. Asynchronous events interleaved by QEMU on
    the same stream are discarded, as are late replies to commands that
    already timed out.
    """

    def __init__(
        self,
        vm_id: str,
        sock: socket.socket,
        *,
        call_timeout_s: float = DEFAULT_CALL_TIMEOUT_S,
    ) -> None:
        self.vm_id = vm_id
        self._sock = sock
        self._sock.settimeout(call_timeout_s)
        self._buffer = b""
        self._next_id = itertools.count(1)
        self._closed = False

    def __enter__(self) -> QMPChannel:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def handshake(self) -> dict[str, Any]:
        greeting = self._read_message()
        if "QMP" not in greeting:
            raise ProtocolError(f"Unexpected QMP greeting from vm {self.vm_id}: {greeting}")
        self.call("qmp_capabilities")
        return greeting["QMP"]

    def query_status(self) -> dict[str, Any]:
        status = self.call("query-status")
        if not isinstance(status, dict) or not ("status" in status or "running" in status):
            raise ProtocolError(f"Malformed query-status reply from vm {self.vm_id}: {status}")
        return status

    def call(self, command: str, arguments: dict[str, Any] | None = None) -> Any:
        if self._closed:
            raise ProtocolError(f"Channel to vm {self.vm_id} is closed")

        request_id = next(self._next_id)
        request: dict[str, Any] = {"execute": command}
        if arguments:
            request["arguments"] = arguments
        request["id"] = request_id
        LOGGER.debug("vm %s <- %s", self.vm_id, request)

        try:
            self._sock.sendall(json.dumps(request).encode("utf-8") + b"\n")
        except TimeoutError as exc:
            raise ChannelTimeoutError(f"QMP send to vm {self.vm_id} timed out") from exc
        except OSError as exc:
            raise ProtocolError(f"QMP send to vm {self.vm_id} failed: {exc}") from exc

        while True:
            reply = self._read_message()
            if "event" in reply:
                LOGGER.debug("vm %s dropped event %s", self.vm_id, reply["event"])
                continue
            if reply.get("id", request_id) != request_id:
                LOGGER.debug("vm %s dropped late reply %s", self.vm_id, reply)
                continue
            break

        LOGGER.debug("vm %s -> %s", self.vm_id, reply)
        if "error" in reply:
            error = reply["error"] if isinstance(reply["error"], dict) else {}
            raise ProtocolError(
                str(error.get("desc", reply["error"])),
                error_class=error.get("class"),
            )
        if "return" not in reply:
            raise ProtocolError(f"QMP reply from vm {self.vm_id} has no 'return': {reply}")
        return reply["return"]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._sock.close()

    def _read_line(self) -> bytes | None:
        while b"\n" not in self._buffer:
            try:
                chunk = self._sock.recv(65536)
            except TimeoutError as exc:
                raise ChannelTimeoutError(f"QMP receive from vm {self.vm_id} timed out") from exc
            except OSError as exc:
                raise ProtocolError(f"QMP receive from vm {self.vm_id} failed: {exc}") from exc
            if not chunk:
                return None
            self._buffer += chunk
        line, _, self._buffer = self._buffer.partition(b"\n")
        return line

    def _read_message(self) -> dict[str, Any]:
        line = b""
        while not line.strip():
            read = self._read_line()
            if read is None:
                raise ProtocolError(f"QMP connection to vm {self.vm_id} closed by peer")
            line = read
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Invalid JSON from vm {self.vm_id}: {line!r}") from exc
        if not isinstance(message, dict):
            raise ProtocolError(f"QMP message from vm {self.vm_id} is not an object: {message!r}")
        return message


def connect(
    vm_id: str,
    *,
    socket_dir: str | Path = DEFAULT_SOCKET_DIR,
    timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
    call_timeout_s: float = DEFAULT_CALL_TIMEOUT_S,
) -> QMPChannel:
    """Open a QMP session to ``vm_id`` and verify the VM answers a status query."""
    path = socket_path(vm_id, socket_dir)
    try:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    except OSError as exc:
        raise UnreachableError(f"Could not create unix socket: {exc}") from exc
    sock.settimeout(timeout_s)
    try:
        sock.connect(str(path))
    except TimeoutError as exc:
        sock.close()
        raise UnreachableError(f"QMP connect to vm {vm_id} at {path} timed out") from exc
    except OSError as exc:
        sock.close()
        raise UnreachableError(f"QMP connect to vm {vm_id} at {path} failed: {exc}") from exc

    channel = QMPChannel(vm_id, sock, call_timeout_s=call_timeout_s)
    try:
        channel.handshake()
        status = channel.query_status()
    except (ProtocolError, ChannelTimeoutError) as exc:
        channel.close()
        raise UnreachableError(f"VM {vm_id} failed liveness probe: {exc}") from exc

    LOGGER.info("Connected to vm %s (status: %s)", vm_id, status.get("status", "unknown"))
    return channel
