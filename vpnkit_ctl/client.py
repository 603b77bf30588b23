"""HTTP client that asks a running service to expose and unexpose ports."""

from __future__ import annotations

import http.client
import json
import shutil
import socket
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional

from vpnkit_ctl.port import ExposeError, Port, Protocol, port_from_dict
from vpnkit_ctl.transport import Transport, choose

LIST_PATH = "/forwards/list"
EXPOSE_PORT_PATH = "/forwards/expose/port"
EXPOSE_PIPE_PATH = "/forwards/expose/pipe"
UNEXPOSE_PORT_PATH = "/forwards/unexpose/port"
UNEXPOSE_PIPE_PATH = "/forwards/unexpose/pipe"
DUMP_STATE_PATH = "/forwards/dump"

HTTP_TIMEOUT = 120.0


class _TransportConnection(http.client.HTTPConnection):
    """An HTTP connection carried over a transport rather than TCP."""

    def __init__(self, transport: Transport, address: str, timeout: Optional[float]) -> None:
        super().__init__("unix", timeout=timeout)
        self._transport = transport
        self._address = address

    def connect(self) -> None:
        sock: socket.socket = self._transport.dial(self._address)
        sock.settimeout(self.timeout)
        self.sock = sock


def _encode(port: Port) -> bytes:
    return (json.dumps(port.to_dict(), separators=(",", ":")) + "\n").encode("utf-8")


def _check_status(path: str, status: int) -> None:
    if status != http.client.OK:
        raise OSError(f"{path} returned unexpected status: {status}")


def _expose_error(body: bytes) -> ExposeError:
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ValueError(f"failed to decode: {exc}") from None
    if not isinstance(data, dict):
        raise ValueError(f"failed to decode: expected a JSON object, not {data!r}")
    message = data.get("message", "")
    if not isinstance(message, str):
        raise ValueError(f"failed to decode: message must be a string, not {message!r}")
    return ExposeError(message)


class Client:
    """Exposes and unexposes ports on a running service."""

    def __init__(self, path: str, timeout: Optional[float] = HTTP_TIMEOUT) -> None:
        self.path = path
        self.timeout = timeout
        self._transport = choose(path)

    @contextmanager
    def _exchange(
        self, method: str, url: str, body: Optional[bytes] = None
    ) -> Iterator[http.client.HTTPResponse]:
        conn = _TransportConnection(self._transport, self.path, self.timeout)
        try:
            headers = {} if body is None else {"Content-Type": "application/json"}
            conn.request(method, url, body=body, headers=headers)
            with conn.getresponse() as response:
                yield response
        finally:
            conn.close()

    def expose(self, port: Port) -> None:
        """Ask for ``port`` to be exposed; raises ExposeError for user-facing failures."""
        path = EXPOSE_PIPE_PATH if port.proto == Protocol.UNIX else EXPOSE_PORT_PATH
        with self._exchange("PUT", path, _encode(port)) as response:
            if response.status == http.client.BAD_REQUEST:
                raise _expose_error(response.read())
            _check_status(path, response.status)

    def unexpose(self, port: Port) -> None:
        """Ask for ``port`` to be removed."""
        path = UNEXPOSE_PIPE_PATH if port.proto == Protocol.UNIX else UNEXPOSE_PORT_PATH
        with self._exchange("DELETE", path, _encode(port)) as response:
            _check_status(path, response.status)

    def list_exposed(self) -> list[Port]:
        """Return the ports currently exposed."""
        with self._exchange("GET", LIST_PATH) as response:
            _check_status(LIST_PATH, response.status)
            body = response.read()
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise ValueError(f"failed to decode port list: {exc}") from None
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValueError(f"expected a JSON list of ports, not {data!r}")
        return [port_from_dict(item) for item in data]

    def dump_state(self, stream: BinaryIO) -> None:
        """Copy the service's diagnostic state dump into ``stream``."""
        with self._exchange("GET", DUMP_STATE_PATH) as response:
            _check_status(DUMP_STATE_PATH, response.status)
            shutil.copyfileobj(response, stream)