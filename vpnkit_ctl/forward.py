"""Listen on TCP and Unix sockets and forward connections to a remote multiplexer."""

from __future__ import annotations

import logging
import os
import socket
import stat
import threading
from dataclasses import dataclass, replace
from typing import Any, Optional, Union

from vpnkit_ctl.port import IPAddress, Port, Protocol

_log = logging.getLogger(__name__)

_ACCEPT_POLL = 0.2
_QUIT_POLL = 0.1
_CHUNK = 65536


@dataclass(frozen=True)
class Destination:
    """Where a forwarded connection should go on the far side of the multiplexer."""

    proto: Union[Protocol, str]
    ip: Optional[IPAddress] = None
    port: int = 0
    path: str = ""


def is_safe_to_remove(path: str) -> bool:
    """True if ``path`` is a Unix domain socket or does not exist at all."""
    try:
        info = os.stat(path)
    except FileNotFoundError:
        return True
    except OSError:
        return False
    return stat.S_ISSOCK(info.st_mode)


def remove_existing_socket(path: str) -> None:
    """Remove a stale socket at ``path``; refuse to remove anything else."""
    if not is_safe_to_remove(path):
        raise FileExistsError(f"refusing to remove path {path}")
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise OSError(exc.errno, f"removing {path}: {exc.strerror}") from exc


def _close_write(conn: Any) -> None:
    try:
        close_write = getattr(conn, "close_write", None)
        if close_write is not None:
            close_write()
        else:
            conn.shutdown(socket.SHUT_WR)
    except OSError:
        pass


def _abort(conn: Any) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except (OSError, AttributeError):
        pass
    try:
        conn.close()
    except OSError:
        pass


def _pump(reader: Any, writer: Any) -> None:
    try:
        while True:
            data = reader.recv(_CHUNK)
            if not data:
                break
            writer.sendall(data)
    except OSError:
        pass
    finally:
        _close_write(writer)


def _proxy_stream(src: Any, dest: Any, quit_event: threading.Event) -> None:
    """Copy data both ways until both directions finish or ``quit_event`` is set."""
    pumps = [
        threading.Thread(target=_pump, args=(src, dest), daemon=True),
        threading.Thread(target=_pump, args=(dest, src), daemon=True),
    ]
    for pump in pumps:
        pump.start()
    while any(pump.is_alive() for pump in pumps):
        if quit_event.wait(_QUIT_POLL):
            _abort(src)
            _abort(dest)
            break
    for pump in pumps:
        pump.join()


def _listen_tcp(port: Port) -> tuple[socket.socket, Port]:
    family = socket.AF_INET6 if port.out_ip is not None and port.out_ip.version == 6 else socket.AF_INET
    host = "" if port.out_ip is None else str(port.out_ip)
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port.out_port))
        sock.listen(socket.SOMAXCONN)
    except BaseException:
        sock.close()
        raise
    if port.out_port == 0:
        port = replace(port, out_port=sock.getsockname()[1])
    return sock, port


def _listen_unix(port: Port) -> socket.socket:
    remove_existing_socket(port.out_path)
    parent = os.path.dirname(port.out_path)
    if parent:
        try:
            os.makedirs(parent, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise OSError(exc.errno, f"making {parent}: {exc.strerror}") from exc
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(port.out_path)
        sock.listen(socket.SOMAXCONN)
    except BaseException:
        sock.close()
        raise
    return sock


class StreamForward:
    """Accepts stream connections and proxies each one through the multiplexer."""

    def __init__(
        self,
        ctrl: Any,
        port: Port,
        destination: Destination,
        listener: socket.socket,
        socket_path: Optional[str] = None,
    ) -> None:
        self._ctrl = ctrl
        self._port = port
        self._destination = destination
        self._listener = listener
        self._socket_path = socket_path
        self._quit = threading.Event()
        self._listener.settimeout(_ACCEPT_POLL)

    def run(self) -> None:
        """Run the accept loop until :meth:`stop` is called."""
        while not self._quit.is_set():
            try:
                src, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            src.settimeout(None)
            try:
                dest = self._ctrl.mux().dial(self._destination)
            except Exception as exc:
                _log.error("unable to connect on %s: %s", self._port, exc)
                try:
                    src.close()
                except OSError as close_exc:
                    _log.error("unable to Close on %s: %s", self._port, close_exc)
                continue
            threading.Thread(target=self._proxy, args=(src, dest), daemon=True).start()
        _log.info("stopping accepting connections on %s", self._port)

    def _proxy(self, src: socket.socket, dest: Any) -> None:
        try:
            _proxy_stream(src, dest, self._quit)
        except Exception as exc:
            _log.error("unable to proxy on %s: %s", self._port, exc)
        finally:
            for conn in (dest, src):
                try:
                    conn.close()
                except OSError as exc:
                    _log.error("unable to Close on %s: %s", self._port, exc)

    def stop(self) -> None:
        """Stop accepting and tear down connections in flight."""
        _log.info("removing %s", self._port)
        self._quit.set()
        self._listener.close()
        if self._socket_path is not None:
            try:
                if os.path.exists(self._socket_path) and is_safe_to_remove(self._socket_path):
                    os.remove(self._socket_path)
            except OSError:
                pass

    def port(self) -> Port:
        """The forward's description, with any wildcard port resolved."""
        return self._port


class Maker:
    """Makes forwards from port descriptions."""

    def make(self, ctrl: Any, port: Port) -> StreamForward:
        """Start listening for ``port`` and return the forward; call ``run`` to serve it."""
        _log.info("adding %s", port)
        destination = Destination(
            proto=port.proto, ip=port.in_ip, port=port.in_port, path=port.in_path
        )
        if port.proto == Protocol.TCP:
            listener, resolved = _listen_tcp(port)
            return StreamForward(ctrl, resolved, destination, listener)
        if port.proto == Protocol.UNIX:
            listener = _listen_unix(port)
            return StreamForward(ctrl, port, destination, listener, socket_path=port.out_path)
        if port.proto == Protocol.UDP:
            raise ValueError("cannot listen on udp: no datagram proxy is available")
        proto = port.proto.value if isinstance(port.proto, Protocol) else port.proto
        raise ValueError("cannot listen on unknown protocol " + proto)