import io
import ipaddress
import socket
import struct
import threading
import uuid

import pytest

from vpnkit_ctl.vmnet import (
    DhcpRequest,
    EthernetFrame,
    InitMessage,
    Ipv4,
    PcapWriter,
    Udpv4,
    Vmnet,
    parse_ethernet_frame,
    parse_ipv4,
    parse_udpv4,
    read_init_message,
)

MAC = bytes([0x02, 0x00, 0x00, 0x00, 0x00, 0x01])
GATEWAY_MAC = bytes([0x02, 0x00, 0x00, 0x00, 0x00, 0x02])
VIF_UUID = uuid.UUID("12345678-1234-5678-1234-567812345678")
COOKIE = bytes([0x63, 0x82, 0x53, 0x63])


def _recv(sock, count):
    data = bytearray()
    while len(data) < count:
        chunk = sock.recv(count - len(data))
        if not chunk:
            raise EOFError
        data += chunk
    return bytes(data)


def _vif_response(mtu=1500, max_packet_size=1550):
    return bytes([1]) + struct.pack("<HH", mtu, max_packet_size) + MAC + bytes(1 + 256 - 6 - 2 - 2)


def _frame(data):
    return struct.pack("<H", len(data)) + data


def _run(handler):
    client, server = socket.socketpair()
    client.settimeout(10)
    server.settimeout(10)
    result = {}

    def target():
        try:
            _recv(server, 49)
            server.sendall(InitMessage(version=7).to_bytes())
            result["value"] = handler(server)
        except BaseException as exc:
            result["error"] = exc
        finally:
            server.close()

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return client, thread, result


def _finish(thread, result):
    thread.join(10)
    if "error" in result:
        raise result["error"]
    return result.get("value")


def test_init_message_wire_form():
    data = InitMessage().to_bytes()
    assert data[:5] == b"VMN3T"
    assert struct.unpack("<I", data[5:9])[0] == 22
    assert data[9:] == b"0123456789012345678901234567890123456789"


def test_init_message_round_trip():
    message = InitMessage(magic=b"VMNET", version=3, commit=b"a" * 40)
    assert read_init_message(io.BytesIO(message.to_bytes())) == message


def test_init_message_truncated():
    with pytest.raises(EOFError):
        read_init_message(io.BytesIO(InitMessage().to_bytes()[:20]))


def test_init_message_rejects_bad_magic():
    with pytest.raises(ValueError):
        InitMessage(magic=b"VM")


def test_ethernet_round_trip():
    frame = EthernetFrame(MAC, GATEWAY_MAC, 0x800, b"payload")
    parsed = parse_ethernet_frame(frame.to_bytes())
    assert parsed == frame


def test_ethernet_too_small():
    with pytest.raises(ValueError, match="too small"):
        parse_ethernet_frame(b"\x00" * 13)


def test_ipv4_header_fields():
    packet = Ipv4(dst=ipaddress.IPv4Address("255.255.255.255"),
                  src=ipaddress.IPv4Address("0.0.0.0"), data=b"abc")
    header = packet.header_bytes()
    assert header[0] == 0x45
    assert header[9] == 0x11
    assert struct.unpack(">H", header[2:4])[0] == len(b"abc") + 20
    assert header[12:16] == bytes(4)
    assert header[16:20] == b"\xff" * 4
    assert packet.to_bytes() == header + b"abc"


def test_ipv4_parse_round_trip():
    packet = Ipv4(dst=ipaddress.IPv4Address("10.0.0.1"),
                  src=ipaddress.IPv4Address("10.0.0.2"), data=b"payload")
    parsed = parse_ipv4(packet.to_bytes())
    assert parsed.data == b"payload"
    assert parsed.dst == ipaddress.IPv4Address("0.0.0.0")
    assert parsed.src == ipaddress.IPv4Address("255.255.255.255")


@pytest.mark.parametrize("packet", [bytes(19), bytes([0x4F]) + bytes(19)])
def test_ipv4_too_small(packet):
    with pytest.raises(ValueError, match="too small"):
        parse_ipv4(packet)


def test_udp_round_trip():
    datagram = Udpv4(src=68, dst=67, data=b"hello", checksum=0x1234)
    wire = datagram.to_bytes()
    assert struct.unpack(">H", wire[4:6])[0] == 8 + len(b"hello")
    assert parse_udpv4(wire) == datagram


def test_udp_too_short():
    with pytest.raises(ValueError, match="too short"):
        parse_udpv4(bytes(7))


def test_dhcp_request_layout():
    data = DhcpRequest(MAC).to_bytes()
    assert data[:3] == bytes([0x01, 0x01, 0x06])
    assert data[28:34] == MAC
    assert data[236:240] == COOKIE
    assert data[240:243] == bytes([0x35, 0x01, 0x01])
    assert data[-1] == 0xFF


def test_dhcp_request_bad_mac():
    with pytest.raises(ValueError):
        DhcpRequest(b"\x00" * 5)


def test_pcap_header():
    out = io.BytesIO()
    PcapWriter(out)
    assert struct.unpack("<IHHIIII", out.getvalue()) == (0xA1B2C3D4, 2, 4, 0, 0, 1500, 1)


def test_pcap_truncates_to_snaplen():
    out = io.BytesIO()
    writer = PcapWriter(out, clock=lambda: 42 * 10**9 + 7000)
    packet = bytes(range(256)) * 8
    writer.write(packet)
    record = out.getvalue()[24:]
    seconds, micros, caplen, length = struct.unpack("<IIII", record[:16])
    assert seconds == 42
    assert micros == 7
    assert caplen == writer.snaplen
    assert length == len(packet)
    assert record[16:] == packet[: writer.snaplen]


def test_connect_vif_ip_request_and_response():
    def handler(server):
        request = _recv(server, 1 + 36 + 4)
        server.sendall(_vif_response(mtu=1500, max_packet_size=1550))
        return request

    client, thread, result = _run(handler)
    with Vmnet(client) as vmnet:
        vif = vmnet.connect_vif_ip(VIF_UUID, "10.0.0.5")
        request = _finish(thread, result)
        assert vmnet.remote_version.version == 7
    assert request[0] == 8
    assert request[1:37] == str(VIF_UUID).encode()
    assert request[37:41] == ipaddress.IPv4Address("10.0.0.5").packed[::-1]
    assert vif.mtu == 1500
    assert vif.max_packet_size == 1550
    assert vif.client_mac == MAC
    assert vif.ip == ipaddress.IPv4Address("10.0.0.5")


def test_vif_write_and_read():
    def handler(server):
        _recv(server, 1 + 36 + 4)
        server.sendall(_vif_response())
        (length,) = struct.unpack("<H", _recv(server, 2))
        payload = _recv(server, length)
        server.sendall(_frame(payload[::-1]))

    client, thread, result = _run(handler)
    with Vmnet(client) as vmnet:
        vif = vmnet.connect_vif_ip(VIF_UUID, "10.0.0.5")
        vif.write(b"hello")
        assert vif.read() == b"olleh"
    _finish(thread, result)


def test_connect_vif_error_message():
    def handler(server):
        _recv(server, 1 + 36 + 4)
        message = b"address in use"
        server.sendall(bytes([0, len(message)]) + message)

    client, thread, result = _run(handler)
    with Vmnet(client) as vmnet:
        with pytest.raises(ConnectionError, match="address in use"):
            vmnet.connect_vif_ip(VIF_UUID, "10.0.0.5")
    _finish(thread, result)


def _offer(src_port, dst_port, address):
    payload = bytearray(243)
    payload[16:20] = ipaddress.IPv4Address(address).packed
    payload[240:243] = bytes([53, 1, 2])
    udp = Udpv4(src=src_port, dst=dst_port, data=bytes(payload))
    ip = Ipv4(dst=ipaddress.IPv4Address("0.0.0.0"),
              src=ipaddress.IPv4Address("0.0.0.0"), data=udp.to_bytes())
    return EthernetFrame(MAC, GATEWAY_MAC, 0x800, ip.to_bytes()).to_bytes()


def test_connect_vif_uses_dhcp():
    def handler(server):
        request = _recv(server, 1 + 36 + 4)
        server.sendall(_vif_response())
        (length,) = struct.unpack("<H", _recv(server, 2))
        discover = _recv(server, length)
        server.sendall(_frame(b"\x00" * 4))
        server.sendall(_frame(_offer(68, 67, "192.168.1.9")))
        server.sendall(_frame(_offer(67, 68, "192.168.65.3")))
        return request, discover

    client, thread, result = _run(handler)
    with Vmnet(client) as vmnet:
        vif = vmnet.connect_vif(VIF_UUID)
        request, discover = _finish(thread, result)
    assert request[0] == 1
    assert request[37:41] == bytes(4)
    assert vif.ip == ipaddress.IPv4Address("192.168.65.3")

    ethernet = parse_ethernet_frame(discover)
    assert ethernet.dst == b"\xff" * 6
    assert ethernet.src == MAC
    assert ethernet.type == 0x800
    udp = parse_udpv4(parse_ipv4(ethernet.data).data)
    assert (udp.src, udp.dst) == (68, 67)
    assert udp.data == DhcpRequest(MAC).to_bytes()