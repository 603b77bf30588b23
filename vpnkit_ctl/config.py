"""Configuration documents for the built-in DHCP server, HTTP proxy and gateway forwards."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, TextIO, Union

from vpnkit_ctl.port import Protocol

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _encode(obj: Any, indented: bool) -> str:
    if indented:
        text = json.dumps(obj, indent=2, ensure_ascii=False)
    else:
        text = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
    for char, escape in _HTML_ESCAPES.items():
        text = text.replace(char, escape)
    return text + "\n"


def _write(stream: TextIO, obj: Any, indented: bool, what: str) -> None:
    text = _encode(obj, indented)
    try:
        stream.write(text)
    except (OSError, ValueError) as exc:
        raise OSError(f"while writing {what}: {exc}") from exc


@dataclass
class DHCPConfiguration:
    """Settings for the built-in DHCP server."""

    search_domains: Optional[list[str]] = None
    domain_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"searchDomains": self.search_domains, "domainName": self.domain_name}

    def write(self, stream: TextIO) -> None:
        """Write the configuration as indented JSON."""
        _write(stream, self.to_dict(), True, "DHCPConfiguration")


@dataclass
class HTTPConfiguration:
    """Settings for the built-in HTTP proxy."""

    http: str = ""
    https: str = ""
    exclude: str = ""
    transparent_http_ports: Optional[list[int]] = None
    transparent_https_ports: Optional[list[int]] = None
    allow_enabled: bool = False
    allow: Optional[list[str]] = None
    allow_error_msg: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.http:
            result["http"] = self.http
        if self.https:
            result["https"] = self.https
        if self.exclude:
            result["exclude"] = self.exclude
        result["transparent_http_ports"] = self.transparent_http_ports
        result["transparent_https_ports"] = self.transparent_https_ports
        result["allow_enabled"] = self.allow_enabled
        result["allow"] = self.allow
        result["allow_error_msg"] = self.allow_error_msg
        return result

    def write(self, stream: TextIO) -> None:
        """Write the configuration as indented JSON."""
        _write(stream, self.to_dict(), True, "HTTPConfiguration")


@dataclass
class Forward:
    """A forward from the gateway's external port to an internal address and port."""

    protocol: Union[Protocol, str]
    external_port: int
    internal_ip: str
    internal_port: int

    def to_dict(self) -> dict[str, Any]:
        protocol = self.protocol.value if isinstance(self.protocol, Protocol) else self.protocol
        return {
            "protocol": protocol,
            "external_port": self.external_port,
            "internal_ip": self.internal_ip,
            "internal_port": self.internal_port,
        }


class GatewayForwards(list):
    """A list of gateway forwards."""

    def write(self, stream: TextIO) -> None:
        """Write the forwards as a single line of JSON."""
        _write(stream, [forward.to_dict() for forward in self], False, "GatewayForwards")