"""Descriptions of exposed ports and the textual spec understood by the service."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

# AF_VSOCK port the control-plane interface listens on.
DEFAULT_CONTROL_VSOCK = 0x1002

# AF_VSOCK port the data-plane interface listens on.
DEFAULT_DATA_VSOCK = 0xF3A4

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_DIGITS = re.compile(r"[0-9]+")


class Protocol(str, Enum):
    """Protocol used by an exposed port."""

    TCP = "tcp"
    UDP = "udp"
    UNIX = "unix"

    def __str__(self) -> str:
        return self.value


def _as_protocol(value: Any) -> Union[Protocol, str]:
    if isinstance(value, Protocol):
        return value
    text = str(value)
    try:
        return Protocol(text)
    except ValueError:
        return text


def _proto_text(value: Union[Protocol, str]) -> str:
    return value.value if isinstance(value, Protocol) else value


def _normalise_ip(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _to_ip(value: Any) -> Optional[IPAddress]:
    if value is None:
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return _normalise_ip(value)
    if isinstance(value, (bytes, bytearray)):
        if not value:
            return None
        return _normalise_ip(ipaddress.ip_address(bytes(value)))
    if isinstance(value, str):
        if value == "":
            return None
        return _normalise_ip(ipaddress.ip_address(value))
    raise TypeError(f"cannot interpret {value!r} as an IP address")


def _parse_ip_lenient(text: str) -> Optional[IPAddress]:
    """Parse an IP address, yielding None where the text is not one."""
    try:
        return _normalise_ip(ipaddress.ip_address(text))
    except ValueError:
        return None


def _ip_text(ip: Optional[IPAddress]) -> str:
    return "<nil>" if ip is None else str(ip)


def _check_port_number(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"port number must be an integer, not {value!r}")
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"port number {value} out of range")
    return value


def _parse_uint16(text: str) -> int:
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"invalid port number {text!r}")
    number = int(text)
    if number > 0xFFFF:
        raise ValueError(f"port number {text!r} out of range")
    return number


@dataclass(frozen=True)
class Port:
    """A TCP or UDP port forward, or a Unix domain socket forward."""

    proto: Union[Protocol, str] = ""
    out_ip: Optional[IPAddress] = None
    out_port: int = 0
    out_path: str = ""
    in_ip: Optional[IPAddress] = None
    in_port: int = 0
    in_path: str = ""
    annotation: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "proto", _as_protocol(self.proto))
        object.__setattr__(self, "out_ip", _to_ip(self.out_ip))
        object.__setattr__(self, "in_ip", _to_ip(self.in_ip))
        _check_port_number(self.out_port)
        _check_port_number(self.in_port)

    def __str__(self) -> str:
        annotation = f"{self.annotation} " if self.annotation else ""
        proto = _proto_text(self.proto)
        if self.proto == Protocol.UNIX:
            return f"{annotation}{proto} forward from {self.out_path} to {self.in_path}"
        return (
            f"{annotation}{proto} forward from "
            f"{_ip_text(self.out_ip)}:{self.out_port} to "
            f"{_ip_text(self.in_ip)}:{self.in_port}"
        )

    def spec(self) -> str:
        """Return the ``proto:ip:port:proto:ip:port`` or Unix path spec."""
        proto = _proto_text(self.proto)
        if self.proto in (Protocol.TCP, Protocol.UDP):
            return (
                f"{proto}:{_ip_text(self.out_ip)}:{self.out_port}:"
                f"{proto}:{_ip_text(self.in_ip)}:{self.in_port}"
            )
        if self.proto == Protocol.UNIX:
            out_enc = base64.b64encode(self.out_path.encode()).decode("ascii")
            in_enc = base64.b64encode(self.in_path.encode()).decode("ascii")
            return f"unix:{out_enc}:unix:{in_enc}"
        return "unknown protocol"

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form, leaving out empty fields."""
        result: dict[str, Any] = {}
        proto = _proto_text(self.proto)
        if proto:
            result["proto"] = proto
        if self.out_ip is not None:
            result["out_ip"] = str(self.out_ip)
        if self.out_port:
            result["out_port"] = self.out_port
        if self.out_path:
            result["out_path"] = self.out_path
        if self.in_ip is not None:
            result["in_ip"] = str(self.in_ip)
        if self.in_port:
            result["in_port"] = self.in_port
        if self.in_path:
            result["in_path"] = self.in_path
        if self.annotation:
            result["annotation"] = self.annotation
        return result


def _ip_from_json(value: Any) -> Optional[IPAddress]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid IP address {value!r}")
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        raise ValueError(f"invalid IP address {value!r}") from None


def _str_from_json(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string, not {value!r}")
    return value


def port_from_dict(data: Mapping[str, Any]) -> Port:
    """Build a Port from its JSON object form."""
    if not isinstance(data, Mapping):
        raise ValueError(f"expected a JSON object, not {data!r}")
    out_port = data.get("out_port")
    in_port = data.get("in_port")
    return Port(
        proto=_str_from_json(data, "proto"),
        out_ip=_ip_from_json(data.get("out_ip")),
        out_port=0 if out_port is None else _check_port_number(out_port),
        out_path=_str_from_json(data, "out_path"),
        in_ip=_ip_from_json(data.get("in_ip")),
        in_port=0 if in_port is None else _check_port_number(in_port),
        in_path=_str_from_json(data, "in_path"),
        annotation=_str_from_json(data, "annotation"),
    )


def _b64decode(text: str) -> str:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True).decode()
    except (binascii.Error, UnicodeError, ValueError):
        raise ValueError(f"Failed to base64 decode {text}") from None


def parse_spec(name: str) -> Port:
    """Parse a spec as produced by :meth:`Port.spec`."""
    bits = name.split(":")
    if len(bits) == 6:
        out_proto, out_ip, out_port_text, in_proto, in_ip, in_port_text = bits
        out_port = _parse_uint16(out_port_text)
        in_port = _parse_uint16(in_port_text)
        if out_proto != in_proto:
            raise ValueError(
                f"Failed to parse port: external proto is {out_proto} "
                f"but internal proto is {in_proto}"
            )
        return Port(
            proto=out_proto,
            out_ip=_parse_ip_lenient(out_ip),
            out_port=out_port,
            in_ip=_parse_ip_lenient(in_ip),
            in_port=in_port,
        )
    if len(bits) == 4:
        out_proto, out_enc, in_proto, in_enc = bits
        out_path = _b64decode(out_enc)
        in_path = _b64decode(in_enc)
        if out_proto != "unix" or in_proto != "unix":
            raise ValueError(
                f"Failed to parse path: external proto is {out_proto} "
                f"and internal proto is {in_proto}"
            )
        return Port(proto=out_proto, out_path=out_path, in_path=in_path)
    raise ValueError(f"Failed to parse port spec: {name}")


class ExposeError(Exception):
    """A failure to expose a port that should be reported to the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExposeError):
            return NotImplemented
        return self.message == other.message

    def __hash__(self) -> int:
        return hash(self.message)

    def __str__(self) -> str:
        return self.message