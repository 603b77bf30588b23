"""Client side of the privileged helper that binds low ports and passes back the socket."""

from __future__ import annotations

import array
import ipaddress
import socket
from dataclasses import dataclass
from typing import Union

VMNETD_SOCKET_PATH = "/var/run/com.docker.vmnetd.sock"

BIND_IPV4_COMMAND = 6
CURRENT_VERSION = 22

OLD_HELLO = "VMNET"
HELLO = "VMN3T"

_COMMIT = "0d4854a28a379fbe8341b753ae2eb05fc3446f38"
_VERSION_FIELD_LEN = 4
_RESULT_BUFFER = 100

_RESULT_OK = 0
_RESULT_ERRORS = {
    48: "port is already allocated.",
    49: "bind: cannot assign requested address.",
    1: "command failed",
}

IPv4Like = Union[ipaddress.IPv4Address, str, bytes]


class VmnetdError(OSError):
    """The helper refused or failed a request."""


def _read_exact(stream, count: int) -> bytes:
    data = bytearray()
    while len(data) < count:
        chunk = stream.read(count - len(data))
        if not chunk:
            raise EOFError(f"expected {count} bytes but the stream ended after {len(data)}")
        data += chunk
    return bytes(data)


def _put_uvarint(value: int) -> bytes:
    if value < 0:
        raise ValueError(f"version {value} must not be negative")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    if len(out) > _VERSION_FIELD_LEN:
        raise ValueError("version does not fit in the handshake version field")
    return bytes(out).ljust(_VERSION_FIELD_LEN, b"\x00")


def _uvarint(data: bytes) -> tuple[int, int]:
    """Decode a varint, returning the value and the bytes used (0 if incomplete)."""
    value = 0
    shift = 0
    for index, byte in enumerate(data):
        if byte < 0x80:
            return value | (byte << shift), index + 1
        value |= (byte & 0x7F) << shift
        shift += 7
    return 0, 0


@dataclass(frozen=True)
class HandshakeMessage:
    """The greeting exchanged before a command is sent."""

    hello: str
    version: int = 0
    commit: str = ""


def outgoing_message() -> HandshakeMessage:
    """Return the greeting this client sends."""
    return HandshakeMessage(hello=HELLO, version=CURRENT_VERSION, commit=_COMMIT)


def write_init_message(stream, msg: HandshakeMessage) -> None:
    """Write a greeting: hello, varint version in four bytes, commit."""
    version = _put_uvarint(msg.version)
    stream.write(msg.hello.encode("latin-1"))
    stream.write(version)
    stream.write(msg.commit.encode("latin-1"))


def read_init_message(stream) -> HandshakeMessage:
    """Read a greeting; an old-style greeting carries only the hello."""
    hello = _read_exact(stream, 5).decode("latin-1")
    if hello == OLD_HELLO:
        return HandshakeMessage(hello=hello, version=0, commit="")
    version, used = _uvarint(_read_exact(stream, _VERSION_FIELD_LEN))
    if used <= 0:
        raise ValueError("Could not parse version")
    commit = _read_exact(stream, 40).decode("latin-1")
    return HandshakeMessage(hello=hello, version=version & 0xFFFFFFFF, commit=commit)


def write_command(stream, command: int) -> None:
    """Write a one-byte command code."""
    stream.write(bytes([command & 0xFF]))


def read_command(stream) -> int:
    """Read a one-byte command code."""
    return _read_exact(stream, 1)[0]


@dataclass(frozen=True)
class BindIpv4:
    """A request to bind a (probably privileged) TCP or UDP port."""

    ip: ipaddress.IPv4Address
    port: int
    tcp: bool

    def __post_init__(self) -> None:
        ip = self.ip
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        elif not isinstance(ip, ipaddress.IPv4Address):
            ip = ipaddress.IPv4Address(ip)
        object.__setattr__(self, "ip", ip)
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port number {self.port} out of range")


def write_bind_ipv4(stream, bind: BindIpv4) -> None:
    """Write a bind request: reversed IPv4 octets, little-endian port, 0 for TCP or 1 for UDP."""
    stream.write(bind.ip.packed[::-1])
    stream.write(bind.port.to_bytes(2, "little"))
    stream.write(bytes([0 if bind.tcp else 1]))


def read_bind_ipv4(stream) -> BindIpv4:
    """Read a bind request."""
    ip = ipaddress.IPv4Address(_read_exact(stream, 4)[::-1])
    port = int.from_bytes(_read_exact(stream, 2), "little")
    flag = _read_exact(stream, 1)[0]
    if flag == 0:
        tcp = True
    elif flag == 1:
        tcp = False
    else:
        raise ValueError("unknown stream/tcp value")
    return BindIpv4(ip=ip, port=port, tcp=tcp)


class _SocketStream:
    """Unbuffered read/write over a socket, so no bytes are held back from recvmsg."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def read(self, count: int) -> bytes:
        return self._sock.recv(count)

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)


def _perform_client(sock: socket.socket, command: int) -> None:
    stream = _SocketStream(sock)
    try:
        write_init_message(stream, outgoing_message())
    except OSError as exc:
        raise ConnectionError(f"cannot send handshake message: {exc}") from exc
    read_init_message(stream)
    write_command(stream, command)


def _send_command(command: int) -> socket.socket:
    path = VMNETD_SOCKET_PATH
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(path)
    except OSError as exc:
        sock.close()
        raise ConnectionError(f"failed to connect to {path}: is vmnetd running?: {exc}") from exc
    try:
        _perform_client(sock, command)
    except (OSError, EOFError, ValueError) as exc:
        sock.close()
        raise ConnectionError(f"handshake failed: {exc}") from exc
    return sock


def _close_fds(fds) -> None:
    for fd in fds:
        try:
            socket.close(fd)
        except OSError:
            pass


def _read_result(sock: socket.socket) -> int:
    try:
        data, ancdata, _flags, _addr = sock.recvmsg(
            _RESULT_BUFFER, socket.CMSG_SPACE(array.array("i").itemsize)
        )
    except OSError as exc:
        raise VmnetdError(f"failed to receive message: {exc}") from exc

    messages = []
    for level, kind, payload in ancdata:
        if level == socket.SOL_SOCKET and kind == socket.SCM_RIGHTS:
            fds = array.array("i")
            fds.frombytes(payload[: len(payload) - len(payload) % fds.itemsize])
            messages.append(list(fds))
    received = [fd for fds in messages for fd in fds]

    if not data:
        _close_fds(received)
        raise VmnetdError("failed to read result: the connection closed")
    code = data[0]
    if code != _RESULT_OK:
        _close_fds(received)
        raise VmnetdError(_RESULT_ERRORS.get(code, "failed to unmarshal command result"))
    if len(messages) != 1:
        _close_fds(received)
        raise VmnetdError("no file descriptor")
    if len(messages[0]) != 1:
        _close_fds(received)
        raise VmnetdError("array of fds was empty")
    return messages[0][0]


def listen_vmnet(ip: IPv4Like, port: int, tcp: bool) -> int:
    """Ask the helper to bind ``ip:port`` and return the file descriptor it passes back."""
    request = BindIpv4(ip=ip, port=port, tcp=tcp)
    with _send_command(BIND_IPV4_COMMAND) as sock:
        write_bind_ipv4(_SocketStream(sock), request)
        return _read_result(sock)


def is_permission_denied(err: BaseException) -> bool:
    """True if ``err`` reports that binding was not permitted."""
    if isinstance(err, PermissionError):
        return True
    return str(err).lower().endswith("permission denied")