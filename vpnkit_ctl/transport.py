"""Transports that carry the port-control and data connections."""

from __future__ import annotations

import abc
import os
import re
import socket
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# The longest Unix domain socket path, leaving room for the terminating NUL.
MAX_UNIX_SOCKET_PATH_LEN = (104 if sys.platform == "darwin" else 108) - 1

# AF_VSOCK context identifiers.
CID_ANY = 0xFFFFFFFF
CID_HOST = 2
CID_VM0 = 3

GUID_ZERO = uuid.UUID(int=0)
GUID_WILDCARD = GUID_ZERO

_HV_PROTOCOL_RAW = 1
_UINT32 = re.compile(r"[0-9]+")
_GUID = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)


def _parse_uint32(text: str) -> int:
    if not _UINT32.fullmatch(text):
        raise ValueError(f"invalid unsigned integer {text!r}")
    value = int(text)
    if value > 0xFFFFFFFF:
        raise ValueError(f"value {text!r} out of range")
    return value


def _parse_guid(text: str) -> uuid.UUID:
    if not _GUID.fullmatch(text):
        raise ValueError(f"invalid GUID {text!r}")
    return uuid.UUID(text)


@dataclass(frozen=True)
class VsockAddr:
    """An AF_VSOCK address: a context identifier and a port."""

    cid: int = CID_ANY
    port: int = 0


@dataclass(frozen=True)
class HvsockAddr:
    """An AF_HYPERV address: a VM GUID and a service GUID."""

    vm_id: uuid.UUID = GUID_ZERO
    svc_id: uuid.UUID = GUID_ZERO


def parse_vsock_addr(path: str) -> VsockAddr:
    """Parse ``port`` or ``cid/port`` as an AF_VSOCK address."""
    bits = path.split("/", 1)
    port_text = bits[1] if len(bits) == 2 else bits[0]
    try:
        port = _parse_uint32(port_text)
    except ValueError:
        raise ValueError(
            f"cannot parse {port_text} as service GUID or AF_VSOCK port"
        ) from None
    if len(bits) == 1:
        return VsockAddr(cid=CID_ANY, port=port)
    try:
        cid = _parse_uint32(bits[0])
    except ValueError:
        raise ValueError(
            "unable to parse the <vm>/ as either a GUID or AF_VSOCK port number"
        ) from None
    return VsockAddr(cid=cid, port=port)


def _service_id_for_port(port: int) -> uuid.UUID:
    return _parse_guid(f"{port:08x}-FACB-11E6-BD58-64006A7986D3")


def parse_hvsock_addr(path: str) -> HvsockAddr:
    """Parse ``[vmid/]service`` where the service is a GUID or an AF_VSOCK port."""
    bits = path.split("/", 1)
    port_text = bits[1] if len(bits) == 2 else bits[0]
    try:
        svc_id = _parse_guid(port_text)
    except ValueError:
        try:
            port = _parse_uint32(port_text)
        except ValueError:
            raise ValueError(
                f"cannot parse {port_text} as service GUID or AF_VSOCK port"
            ) from None
        svc_id = _service_id_for_port(port)
    if len(bits) == 1:
        return HvsockAddr(vm_id=GUID_ZERO, svc_id=svc_id)
    try:
        vm_id = _parse_guid(bits[0])
    except ValueError:
        # A prefix that is not a GUID is ignored.
        vm_id = GUID_ZERO
    return HvsockAddr(vm_id=vm_id, svc_id=svc_id)


def _parse_hyperkit_addr(path: str) -> VsockAddr:
    try:
        port = _parse_uint32(path)
    except ValueError as exc:
        raise ValueError(f"AF_VSOCK port number is an integer: {exc}") from None
    return VsockAddr(cid=0, port=port)


def _parse_for_platform(path: str, platform: str):
    if platform == "darwin":
        return _parse_hyperkit_addr(path)
    if platform == "win32":
        return parse_hvsock_addr(path)
    return parse_vsock_addr(path)


def _relative(path: str) -> str:
    # The parent directory is assumed to exist; the socket itself may not.
    parent = os.path.realpath(os.path.dirname(path) or ".", strict=True)
    cwd = os.path.realpath(os.getcwd(), strict=True)
    rel = os.path.relpath(parent, cwd)
    return os.path.normpath(os.path.join(rel, os.path.basename(path)))


def shorten_unix_socket_path(path: str) -> str:
    """Return a path short enough to fit inside a socket address."""
    if len(os.fsencode(path)) <= MAX_UNIX_SOCKET_PATH_LEN:
        return path
    shorter = _relative(path)
    if len(os.fsencode(shorter)) > MAX_UNIX_SOCKET_PATH_LEN:
        raise ValueError(
            f"absolute and relative socket path {shorter} longer than "
            f"{MAX_UNIX_SOCKET_PATH_LEN} characters"
        )
    return shorter


def _remove_if_present(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise OSError(f"removing {path}: {exc}") from exc


def _unix_connect(path: str) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(path)
    except BaseException:
        sock.close()
        raise
    return sock


def _unix_listen(path: str) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(path)
        sock.listen()
    except BaseException:
        sock.close()
        raise
    return sock


def _family(name: str) -> int:
    family = getattr(socket, name, None)
    if family is None:
        raise OSError(f"{name} is not supported on this platform")
    return family


class Transport(abc.ABC):
    """Carries the port-control messages and data connections."""

    @abc.abstractmethod
    def dial(self, path: str) -> socket.socket:
        """Connect to the endpoint named by ``path``."""

    @abc.abstractmethod
    def listen(self, path: str) -> socket.socket:
        """Return a listening socket for the endpoint named by ``path``."""


class UnixTransport(Transport):
    """Unix domain sockets named by filesystem paths."""

    def dial(self, path: str) -> socket.socket:
        return _unix_connect(shorten_unix_socket_path(path))

    def listen(self, path: str) -> socket.socket:
        _remove_if_present(path)
        return _unix_listen(shorten_unix_socket_path(path))

    def __str__(self) -> str:
        return "Unix domain socket"


class VsockTransport(Transport):
    """Host-to-VM sockets: AF_VSOCK, Hyperkit's socket files or AF_HYPERV."""

    def __init__(self, platform: Optional[str] = None) -> None:
        self.platform = platform or sys.platform

    def _hyperkit_path(self, addr: VsockAddr) -> str:
        try:
            home = Path.home()
        except (KeyError, RuntimeError):
            raise OSError("Unable to determine current user") from None
        unshortened = os.path.join(
            home, "Library", "Containers", "com.docker.docker", "Data", "vms", "0",
            f"{addr.cid:08x}.{addr.port:08x}",
        )
        return shorten_unix_socket_path(unshortened)

    def dial(self, path: str) -> socket.socket:
        addr = _parse_for_platform(path, self.platform)
        if self.platform == "darwin":
            return _unix_connect(self._hyperkit_path(VsockAddr(CID_VM0, addr.port)))
        if self.platform == "win32":
            sock = socket.socket(_family("AF_HYPERV"), socket.SOCK_STREAM, _HV_PROTOCOL_RAW)
            target = (str(addr.vm_id), str(addr.svc_id))
        else:
            cid = CID_HOST if addr.cid == CID_ANY else addr.cid
            sock = socket.socket(_family("AF_VSOCK"), socket.SOCK_STREAM)
            target = (cid, addr.port)
        try:
            sock.connect(target)
        except BaseException:
            sock.close()
            raise
        return sock

    def listen(self, path: str) -> socket.socket:
        addr = _parse_for_platform(path, self.platform)
        if self.platform == "darwin":
            socket_path = self._hyperkit_path(VsockAddr(CID_HOST, addr.port))
            _remove_if_present(socket_path)
            return _unix_listen(socket_path)
        if self.platform == "win32":
            sock = socket.socket(_family("AF_HYPERV"), socket.SOCK_STREAM, _HV_PROTOCOL_RAW)
            local = (str(GUID_WILDCARD), str(addr.svc_id))
        else:
            sock = socket.socket(_family("AF_VSOCK"), socket.SOCK_STREAM)
            local = (CID_ANY, addr.port)
        try:
            sock.bind(local)
            sock.listen()
        except BaseException:
            sock.close()
            raise
        return sock

    def __str__(self) -> str:
        if self.platform == "darwin":
            return "Hyperkit AF_VSOCK"
        if self.platform == "win32":
            return "Windows AF_HYPERV"
        return "Linux AF_VSOCK"


def choose(path: str) -> Transport:
    """Pick a vsock transport when the path parses as a vsock address, else Unix."""
    try:
        _parse_for_platform(path, sys.platform)
    except ValueError:
        return UnixTransport()
    return VsockTransport()