# vpnkit_ctl

A Python library for driving a VPNKit-style network service: describing port
forwards, asking the service to expose them over its HTTP control protocol,
running local forwarders, and speaking the vmnet Ethernet protocol.

It has no dependencies outside the standard library.

## Modules

- `vpnkit_ctl.port` — `Port`, the description of a TCP, UDP or Unix-socket
  forward, with `Protocol` (`TCP`, `UDP`, `UNIX`), the spec form
  (`Port.spec`, `parse_spec`), JSON conversion (`Port.to_dict`,
  `port_from_dict`) and `ExposeError`, the error meant to be shown to a user.
- `vpnkit_ctl.config` — `DHCPConfiguration`, `HTTPConfiguration` and
  `GatewayForwards` (a list of `Forward`), each written as JSON with
  `.write(stream)`.
- `vpnkit_ctl.transport` — `UnixTransport` and `VsockTransport`, and
  `choose(path)`, which picks the vsock transport when the path parses as a
  vsock address (`parse_vsock_addr`, `parse_hvsock_addr`) and Unix domain
  sockets otherwise. `shorten_unix_socket_path` falls back to a relative path
  when an absolute one is too long for a socket address.
- `vpnkit_ctl.client` — `Client(path)`, with `expose`, `unexpose`,
  `list_exposed` and `dump_state`.
- `vpnkit_ctl.server` — `Server(path, impl)`, which serves the same HTTP
  routes on a background thread (`start`, `stop`, or use it as a context
  manager) and hands each request to `impl`.
- `vpnkit_ctl.forward` — `Maker.make(ctrl, port)` starts a listener for a TCP
  or Unix-socket port and returns a `StreamForward` (`run`, `stop`, `port`).
  Each accepted connection is sent to `ctrl.mux().dial(Destination(...))`.
- `vpnkit_ctl.control` — `Control`, the table of active forwards, usable as
  the `impl` of a `Server`. Exposing the same port twice, or unexposing an
  unknown port, does nothing.
- `vpnkit_ctl.vmnet` — the vmnet Ethernet protocol: `connect(path)` returns a
  `Vmnet`, whose `connect_vif(uuid)` obtains an address by DHCP and
  `connect_vif_ip(uuid, ip)` requests a fixed one. A `Vif` sends and receives
  frames with `write` and `read`. Also the packet codecs `EthernetFrame`,
  `Ipv4`, `Udpv4`, `DhcpRequest` and a `PcapWriter`.
- `vpnkit_ctl.vmnetd` — the privileged-port helper's handshake and bind
  request (`write_init_message`, `read_init_message`, `write_bind_ipv4`,
  `read_bind_ipv4`), and `listen_vmnet(ip, port, tcp)`, which returns the file
  descriptor of the socket that the helper bound.

## Port specs

```python
from vpnkit_ctl.port import parse_spec

port = parse_spec("tcp:127.0.0.1:8080:tcp:127.0.0.1:80")
print(port)          # tcp forward from 127.0.0.1:8080 to 127.0.0.1:80
print(port.spec())   # tcp:127.0.0.1:8080:tcp:127.0.0.1:80
print(port.to_dict())
```

Unix-socket forwards carry their paths base64-encoded:

```python
parse_spec("unix:L3RtcC9iYXI=:unix:L3RtcC9mb28=")  # /tmp/bar -> /tmp/foo
```

A spec whose two protocols differ, or that has neither four nor six fields,
raises `ValueError`.

## Exposing ports

```python
from vpnkit_ctl.client import Client
from vpnkit_ctl.control import Control
from vpnkit_ctl.port import Port
from vpnkit_ctl.server import Server

with Server("/tmp/port-control.sock", Control()):
    client = Client("/tmp/port-control.sock")
    client.expose(Port(proto="tcp", out_ip="127.0.0.1", out_port=0,
                       in_ip="127.0.0.1", in_port=80))
    print(client.list_exposed())
```

When a TCP port is exposed with `out_port=0`, the listed port carries the
port number that was actually bound, so it can be passed back to `unexpose`.
A failure to start the listener reaches the client as `ExposeError`.

## Gateway forwards

```python
import io
from vpnkit_ctl.config import Forward, GatewayForwards

buf = io.StringIO()
GatewayForwards([Forward("tcp", 53, "127.0.0.1", 5353)]).write(buf)
```

## Capturing frames

```python
from vpnkit_ctl.vmnet import PcapWriter

with open("capture.pcap", "wb") as out:
    pcap = PcapWriter(out)
    pcap.write(frame_bytes)
```

Frames longer than the 1500-octet snapshot length are truncated in the
capture, with their original length recorded. The seconds field of each
record holds the second within the current minute.

## What this package does not do

- There is no command-line tool; everything is used as a library.
- It has no connection multiplexer. `Control` and `StreamForward` need a
  multiplexer object supplied through `Control.set_mux`, with `dial(destination)`
  returning a socket-like connection and `dump_state(stream)`. Until one is set,
  `Control.mux()` and `Control.dump_state` wait.
- UDP ports cannot be forwarded locally: `Maker.make` raises `ValueError` for
  them, so `Control.expose` reports an `ExposeError`.
- The forwarders do not fall back to the privileged-port helper when binding is
  refused; `vmnetd.listen_vmnet` and `vmnetd.is_permission_denied` are there to
  be called directly.

## Running the tests

Install the `test` extra and run `pytest` from the project directory.