"""Client for the ethernet-frame protocol and the small packet codecs it needs."""

from __future__ import annotations

import ipaddress
import socket
import struct
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Optional, Union

_DEFAULT_MAGIC = b"VMN3T"
_DEFAULT_VERSION = 22
_DEFAULT_COMMIT = b"0123456789012345678901234567890123456789"

_REQUEST_ETHERNET = 1
_REQUEST_ETHERNET_WITH_IP = 8
_RESPONSE_VIF = 1
_VIF_PADDING = 1 + 256 - 6 - 2 - 2

_BROADCAST_MAC = b"\xff" * 6
_BROADCAST_IP = ipaddress.IPv4Address("255.255.255.255")
_UNKNOWN_IP = ipaddress.IPv4Address("0.0.0.0")
_ETHERTYPE_IPV4 = 0x800
_DHCP_SERVER_PORT = 67
_DHCP_CLIENT_PORT = 68
_RETRANSMIT_INTERVAL = 1.0

_PCAP_MAGIC = 0xA1B2C3D4
_PCAP_SNAPLEN = 1500
_PCAP_LINKTYPE_ETHERNET = 1

IPv4Like = Union[ipaddress.IPv4Address, str, bytes]


def _read_exact(stream, count: int) -> bytes:
    """Read exactly ``count`` bytes or raise EOFError."""
    data = bytearray()
    while len(data) < count:
        chunk = stream.read(count - len(data))
        if not chunk:
            raise EOFError(f"expected {count} bytes but the stream ended after {len(data)}")
        data += chunk
    return bytes(data)


def _ipv4(value: IPv4Like) -> ipaddress.IPv4Address:
    if isinstance(value, ipaddress.IPv4Address):
        return value
    return ipaddress.IPv4Address(value)


class _Connection:
    """A stream socket with exact reads and serialised writes."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._send_lock = threading.Lock()

    def read(self, count: int) -> bytes:
        return self._reader.read(count)

    def send(self, data: bytes) -> None:
        with self._send_lock:
            self._sock.sendall(data)

    def close(self) -> None:
        try:
            self._reader.close()
        finally:
            self._sock.close()


@dataclass(frozen=True)
class InitMessage:
    """The version exchange sent by each side when a connection opens."""

    magic: bytes = _DEFAULT_MAGIC
    version: int = _DEFAULT_VERSION
    commit: bytes = _DEFAULT_COMMIT

    def __post_init__(self) -> None:
        if len(self.magic) != 5:
            raise ValueError("magic must be 5 bytes")
        if len(self.commit) != 40:
            raise ValueError("commit must be 40 bytes")
        if not 0 <= self.version <= 0xFFFFFFFF:
            raise ValueError(f"version {self.version} out of range")

    def __str__(self) -> str:
        magic = " ".join(str(b) for b in self.magic)
        commit = " ".join(str(b) for b in self.commit)
        return f"magic=[{magic}] version={self.version} commit=[{commit}]"

    def to_bytes(self) -> bytes:
        """Return the wire form: magic, little-endian version, commit."""
        return bytes(self.magic) + struct.pack("<I", self.version) + bytes(self.commit)


def read_init_message(stream) -> InitMessage:
    """Read an InitMessage from a binary stream."""
    magic = _read_exact(stream, 5)
    (version,) = struct.unpack("<I", _read_exact(stream, 4))
    commit = _read_exact(stream, 40)
    return InitMessage(magic, version, commit)


def _ethernet_request(vif_uuid: uuid.UUID, ip: Optional[IPv4Like]) -> bytes:
    kind = _REQUEST_ETHERNET if ip is None else _REQUEST_ETHERNET_WITH_IP
    address = 0 if ip is None else int(_ipv4(ip))
    # The protocol carries the address little endian, not in network order.
    return bytes([kind]) + str(vif_uuid).encode("ascii") + struct.pack("<I", address)


@dataclass
class EthernetFrame:
    """An ethernet frame."""

    dst: bytes
    src: bytes
    type: int
    data: bytes = b""

    def to_bytes(self) -> bytes:
        return bytes(self.dst) + bytes(self.src) + struct.pack(">H", self.type) + bytes(self.data)


def parse_ethernet_frame(frame: bytes) -> EthernetFrame:
    """Parse an ethernet frame."""
    if len(frame) < 6 + 6 + 2:
        raise ValueError("Ethernet frame is too small")
    (ethertype,) = struct.unpack(">H", frame[12:14])
    return EthernetFrame(bytes(frame[0:6]), bytes(frame[6:12]), ethertype, bytes(frame[14:]))


@dataclass
class Ipv4:
    """An IPv4 packet; the checksum is left to offload."""

    dst: ipaddress.IPv4Address
    src: ipaddress.IPv4Address
    data: bytes = b""
    checksum: int = 0

    def header_bytes(self) -> bytes:
        """Return the fixed 20-byte header carrying a UDP broadcast."""
        length = len(self.data) + 20
        return bytes(
            [
                0x45,
                0x00,
                (length >> 8) & 0xFF,
                length & 0xFF,
                0x7F, 0x61,
                0x00, 0x00,
                0x40,
                0x11,
                (self.checksum >> 8) & 0xFF,
                self.checksum & 0xFF,
                0x00, 0x00, 0x00, 0x00,
                0xFF, 0xFF, 0xFF, 0xFF,
            ]
        )

    def to_bytes(self) -> bytes:
        return self.header_bytes() + bytes(self.data)


def parse_ipv4(packet: bytes) -> Ipv4:
    """Parse an IPv4 packet, assuming checksum offload."""
    if len(packet) < 20:
        raise ValueError("IPv4 packet too small")
    ihl = (packet[0] & 0xF) * 4
    if len(packet) < ihl:
        raise ValueError("IPv4 packet too small")
    return Ipv4(
        dst=ipaddress.IPv4Address(bytes(packet[12:16])),
        src=ipaddress.IPv4Address(bytes(packet[16:20])),
        data=bytes(packet[ihl:]),
        checksum=0,
    )


@dataclass
class Udpv4:
    """A UDP datagram carried over IPv4."""

    src: int
    dst: int
    data: bytes = b""
    checksum: int = 0

    def to_bytes(self) -> bytes:
        length = (8 + len(self.data)) & 0xFFFF
        return struct.pack(">HHHH", self.src, self.dst, length, self.checksum) + bytes(self.data)


def parse_udpv4(packet: bytes) -> Udpv4:
    """Parse a UDP datagram."""
    if len(packet) < 8:
        raise ValueError("UDPv4 is too short")
    src, dst, _length, checksum = struct.unpack(">HHHH", packet[0:8])
    return Udpv4(src=src, dst=dst, data=bytes(packet[8:]), checksum=checksum)


@dataclass(frozen=True)
class DhcpRequest:
    """A minimal DHCP discover."""

    mac: bytes

    def __post_init__(self) -> None:
        if len(self.mac) != 6:
            raise ValueError("MAC address must be 6 bytes")

    def to_bytes(self) -> bytes:
        header = bytes(
            [
                0x01, 0x01, 0x06, 0x00,
                0x01, 0x00, 0x00, 0x00,
                0x00, 0x00,
                0x80, 0x00,
                0x00, 0x00, 0x00, 0x00,
                0x00, 0x00, 0x00, 0x00,
                0x00, 0x00, 0x00, 0x00,
                0x00, 0x00, 0x00, 0x00,
            ]
        )
        options = bytes([0x63, 0x82, 0x53, 0x63, 0x35, 0x01, 0x01, 0xFF])
        return header + bytes(self.mac) + bytes(202) + options


def _dhcp_offer_address(frame: bytes) -> Optional[ipaddress.IPv4Address]:
    try:
        ethernet = parse_ethernet_frame(frame)
        ipv4 = parse_ipv4(ethernet.data)
        udp = parse_udpv4(ipv4.data)
    except ValueError:
        return None
    if udp.src != _DHCP_SERVER_PORT or udp.dst != _DHCP_CLIENT_PORT:
        return None
    if len(udp.data) < 243:
        return None
    if udp.data[240:243] != bytes([53, 1, 2]):
        return None
    return ipaddress.IPv4Address(udp.data[16:20])


@dataclass
class Vif:
    """A connected ethernet interface."""

    mtu: int
    max_packet_size: int
    client_mac: bytes
    ip: Optional[ipaddress.IPv4Address]
    _conn: _Connection = field(repr=False, compare=False)

    def write(self, packet: bytes) -> None:
        """Send one ethernet frame."""
        if len(packet) > 0xFFFF:
            raise ValueError(f"packet of {len(packet)} bytes is too large")
        self._conn.send(struct.pack("<H", len(packet)) + bytes(packet))

    def read(self) -> bytes:
        """Receive the next ethernet frame."""
        (length,) = struct.unpack("<H", _read_exact(self._conn, 2))
        return _read_exact(self._conn, length)

    def _dhcp(self) -> ipaddress.IPv4Address:
        request = DhcpRequest(self.client_mac).to_bytes()
        udp = Udpv4(src=_DHCP_CLIENT_PORT, dst=_DHCP_SERVER_PORT, data=request)
        ipv4 = Ipv4(dst=_BROADCAST_IP, src=_UNKNOWN_IP, data=udp.to_bytes())
        frame = EthernetFrame(_BROADCAST_MAC, self.client_mac, _ETHERTYPE_IPV4, ipv4.to_bytes())
        discover = frame.to_bytes()
        finished = threading.Event()

        def retransmit() -> None:
            while not finished.is_set():
                try:
                    self.write(discover)
                except OSError:
                    return
                finished.wait(_RETRANSMIT_INTERVAL)

        threading.Thread(target=retransmit, daemon=True).start()
        try:
            while True:
                offered = _dhcp_offer_address(self.read())
                if offered is not None:
                    return offered
        finally:
            finished.set()


class Vmnet:
    """A connection over which ethernet frames are exchanged with the service."""

    def __init__(self, sock: socket.socket) -> None:
        self._conn = _Connection(sock)
        try:
            self._conn.send(InitMessage().to_bytes())
            self.remote_version = read_init_message(self._conn)
        except BaseException:
            self._conn.close()
            raise

    def __enter__(self) -> "Vmnet":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close the connection."""
        self._conn.close()

    def _read_vif(self, ip: Optional[ipaddress.IPv4Address]) -> Vif:
        mtu, max_packet_size = struct.unpack("<HH", _read_exact(self._conn, 4))
        mac = _read_exact(self._conn, 6)
        _read_exact(self._conn, _VIF_PADDING)
        return Vif(mtu, max_packet_size, mac, ip, self._conn)

    def _request_vif(self, vif_uuid, ip: Optional[ipaddress.IPv4Address]) -> Vif:
        vif_uuid = uuid.UUID(str(vif_uuid))
        self._conn.send(_ethernet_request(vif_uuid, ip))
        response_type = _read_exact(self._conn, 1)[0]
        if response_type == _RESPONSE_VIF:
            return self._read_vif(ip)
        length = _read_exact(self._conn, 1)[0]
        message = _read_exact(self._conn, length)
        raise ConnectionError(message.decode("utf-8", errors="replace"))

    def connect_vif(self, vif_uuid) -> Vif:
        """Create an interface and learn its address by DHCP."""
        vif = self._request_vif(vif_uuid, None)
        vif.ip = vif._dhcp()
        return vif

    def connect_vif_ip(self, vif_uuid, ip: IPv4Like) -> Vif:
        """Create an interface with a fixed address; fails if it is in use."""
        address = _ipv4(ip)
        return self._request_vif(vif_uuid, address)


def connect(path: str) -> Vmnet:
    """Dial the Unix socket at ``path`` and perform the version exchange."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(path)
    except BaseException:
        sock.close()
        raise
    return Vmnet(sock)


class PcapWriter:
    """Writes packets to a stream in pcap format."""

    def __init__(self, stream: BinaryIO, clock: Callable[[], int] = time.time_ns) -> None:
        self._stream = stream
        self._clock = clock
        self.snaplen = _PCAP_SNAPLEN
        stream.write(
            struct.pack(
                "<IHHIIII",
                _PCAP_MAGIC,
                2,
                4,
                0,
                0,
                self.snaplen,
                _PCAP_LINKTYPE_ETHERNET,
            )
        )

    def write(self, packet: bytes) -> None:
        """Append a packet with its record header."""
        now = self._clock()
        # The timestamp carries the second within the current minute.
        seconds = (now // 1_000_000_000) % 60
        micros = (now % 1_000_000_000) // 1000
        captured = bytes(packet[: self.snaplen])
        self._stream.write(struct.pack("<IIII", seconds, micros, len(captured), len(packet)))
        self._stream.write(captured)