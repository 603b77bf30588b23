import ipaddress

import pytest

from vpnkit_ctl.port import (
    ExposeError,
    Port,
    Protocol,
    parse_spec,
    port_from_dict,
)


ROUND_TRIP_PORTS = [
    Port(
        proto=Protocol.TCP,
        in_ip="192.168.0.1",
        in_port=8080,
        out_ip="192.168.0.2",
        out_port=8081,
    ),
    Port(
        proto=Protocol.TCP,
        in_ip="192.168.0.1",
        in_port=8080,
        out_ip="192.168.0.2",
        out_port=65000,
    ),
    Port(proto=Protocol.UNIX, in_path="/tmp/foo", out_path="/tmp/bar"),
    Port(proto=Protocol.UNIX, in_path=r"\\.\pipe\foo", out_path=r"\\.\pipe\bar"),
]


@pytest.mark.parametrize("port", ROUND_TRIP_PORTS)
def test_parse_round_trip(port):
    parsed = parse_spec(port.spec())
    assert parsed.spec() == port.spec()
    assert parsed == port


def test_string():
    p = Port(
        proto=Protocol.TCP,
        in_ip="192.168.0.1",
        in_port=8080,
        out_ip="192.168.0.2",
        out_port=8081,
    )
    assert str(p) == "tcp forward from 192.168.0.2:8081 to 192.168.0.1:8080"


def test_annotation():
    p = Port(
        proto=Protocol.TCP,
        in_ip="192.168.0.1",
        in_port=8080,
        out_ip="192.168.0.2",
        out_port=8081,
        annotation="kubernetes",
    )
    assert str(p) == "kubernetes tcp forward from 192.168.0.2:8081 to 192.168.0.1:8080"


def test_unix_string():
    p = Port(proto=Protocol.UNIX, out_path="/tmp/bar", in_path="/tmp/foo")
    assert str(p) == "unix forward from /tmp/bar to /tmp/foo"


def test_string_without_ips():
    p = Port(proto=Protocol.UDP, in_port=2, out_port=2)
    assert str(p) == "udp forward from <nil>:2 to <nil>:2"


def test_tcp_spec_value():
    p = Port(proto="tcp", out_ip="192.168.0.2", out_port=8081, in_ip="192.168.0.1", in_port=8080)
    assert p.spec() == "tcp:192.168.0.2:8081:tcp:192.168.0.1:8080"


def test_unix_spec_value():
    p = Port(proto=Protocol.UNIX, out_path="/tmp/bar", in_path="/tmp/bar")
    assert p.spec() == "unix:L3RtcC9iYXI=:unix:L3RtcC9iYXI="


def test_unknown_protocol_spec():
    assert Port(proto="sctp").spec() == "unknown protocol"


def test_proto_string_becomes_enum():
    assert Port(proto="udp").proto is Protocol.UDP


def test_ipv4_mapped_address_is_normalised():
    p = Port(proto=Protocol.TCP, out_ip="::ffff:10.0.0.1")
    assert p.out_ip == ipaddress.IPv4Address("10.0.0.1")


def test_parse_mismatched_protocols():
    with pytest.raises(ValueError, match="external proto is tcp but internal proto is udp"):
        parse_spec("tcp:1.2.3.4:1:udp:1.2.3.4:2")


def test_parse_wrong_field_count():
    with pytest.raises(ValueError, match="Failed to parse port spec: a:b"):
        parse_spec("a:b")


@pytest.mark.parametrize("bad", ["65536", "-1", "+5", "x", ""])
def test_parse_bad_port_number(bad):
    with pytest.raises(ValueError):
        parse_spec(f"tcp:1.2.3.4:{bad}:tcp:1.2.3.4:2")


def test_parse_bad_base64():
    with pytest.raises(ValueError, match="base64"):
        parse_spec("unix:!!!:unix:L3RtcC9iYXI=")


def test_parse_unix_wrong_proto():
    with pytest.raises(ValueError, match="Failed to parse path"):
        parse_spec("tcp:L3RtcC9iYXI=:unix:L3RtcC9iYXI=")


def test_parse_invalid_ip_becomes_none():
    parsed = parse_spec("tcp:<nil>:80:tcp:1.2.3.4:81")
    assert parsed.out_ip is None
    assert parsed.in_ip == ipaddress.IPv4Address("1.2.3.4")


def test_to_dict_omits_empty_fields():
    p = Port(proto=Protocol.TCP, in_port=1, out_port=1)
    assert p.to_dict() == {"proto": "tcp", "out_port": 1, "in_port": 1}


def test_to_dict_full():
    p = Port(
        proto=Protocol.TCP,
        out_ip="127.0.0.1",
        out_port=80,
        in_ip="10.0.0.2",
        in_port=8080,
        annotation="web",
    )
    assert p.to_dict() == {
        "proto": "tcp",
        "out_ip": "127.0.0.1",
        "out_port": 80,
        "in_ip": "10.0.0.2",
        "in_port": 8080,
        "annotation": "web",
    }


@pytest.mark.parametrize("port", ROUND_TRIP_PORTS)
def test_dict_round_trip(port):
    assert port_from_dict(port.to_dict()) == port


def test_from_dict_invalid_ip():
    with pytest.raises(ValueError, match="invalid IP address"):
        port_from_dict({"proto": "tcp", "out_ip": "not-an-ip"})


def test_from_dict_port_out_of_range():
    with pytest.raises(ValueError):
        port_from_dict({"proto": "tcp", "out_port": 70000})


def test_constructor_rejects_bad_port():
    with pytest.raises(ValueError):
        Port(proto=Protocol.TCP, in_port=-1)


def test_expose_error_message_and_equality():
    err = ExposeError("EADDRESSINUSE")
    assert str(err) == "EADDRESSINUSE"
    assert err == ExposeError("EADDRESSINUSE")
    assert err.message == "EADDRESSINUSE"