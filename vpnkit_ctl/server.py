"""HTTP server that exposes port control over a transport."""

from __future__ import annotations

import json
import logging
import socket
import socketserver
import threading
from http.server import BaseHTTPRequestHandler
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

from vpnkit_ctl.client import (
    DUMP_STATE_PATH,
    EXPOSE_PIPE_PATH,
    EXPOSE_PORT_PATH,
    LIST_PATH,
    UNEXPOSE_PIPE_PATH,
    UNEXPOSE_PORT_PATH,
)
from vpnkit_ctl.port import ExposeError, Port, Protocol, port_from_dict
from vpnkit_ctl.transport import choose

_log = logging.getLogger(__name__)

_PORT_PROTOCOLS = (Protocol.TCP, Protocol.UDP)
_PIPE_PROTOCOLS = (Protocol.UNIX,)
_PORT_MESSAGE = "exposed ports can only be TCP or UDP"
_PIPE_MESSAGE = "exposed pipes can only have proto=Unix"


class _BadRequest(Exception):
    pass


class _Handler(BaseHTTPRequestHandler):
    server: "_ListenerServer"

    def do_GET(self) -> None:
        self._dispatch("GET")

    def do_PUT(self) -> None:
        self._dispatch("PUT")

    def do_POST(self) -> None:
        self._dispatch("POST")

    def do_DELETE(self) -> None:
        self._dispatch("DELETE")

    def log_message(self, format: str, *args: Any) -> None:
        _log.debug(format, *args)

    def _dispatch(self, method: str) -> None:
        methods = _ROUTES.get(urlsplit(self.path).path)
        if methods is None:
            self._send_json(404, {"message": "Not Found"})
            return
        action = methods.get(method)
        if action is None:
            self._send_json(405, {"message": "Method Not Allowed"})
            return
        try:
            action(self)
        except _BadRequest as exc:
            self._send_json(400, {"message": str(exc)})
        except Exception:
            _log.exception("error handling %s %s", method, self.path)
            self._send_json(500, {"message": "Internal Server Error"})

    def _send_json(self, status: int, payload: Any) -> None:
        body = (json.dumps(payload) + "\n").encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=UTF-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_ok(self) -> None:
        self.send_response(200)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _read_port(self) -> Port:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            raise _BadRequest("invalid Content-Length") from None
        body = self.rfile.read(length) if length > 0 else b""
        if not body.strip():
            return Port()
        try:
            return port_from_dict(json.loads(body))
        except (ValueError, TypeError) as exc:
            raise _BadRequest(str(exc)) from None

    def _list(self) -> None:
        ports = self.server.impl.list_exposed()
        self._send_json(200, [port.to_dict() for port in ports])

    def _expose(self, allowed: tuple, message: str) -> None:
        port = self._read_port()
        if port.proto not in allowed:
            self._send_json(400, message)
            return
        try:
            self.server.impl.expose(port)
        except ExposeError as exc:
            self._send_json(400, {"message": exc.message})
            return
        self._send_ok()

    def _unexpose(self, allowed: tuple, message: str) -> None:
        port = self._read_port()
        if port.proto not in allowed:
            self._send_json(400, message)
            return
        self.server.impl.unexpose(port)
        self._send_ok()

    def _expose_port(self) -> None:
        self._expose(_PORT_PROTOCOLS, _PORT_MESSAGE)

    def _expose_pipe(self) -> None:
        self._expose(_PIPE_PROTOCOLS, _PIPE_MESSAGE)

    def _unexpose_port(self) -> None:
        self._unexpose(_PORT_PROTOCOLS, _PORT_MESSAGE)

    def _unexpose_pipe(self) -> None:
        self._unexpose(_PIPE_PROTOCOLS, _PIPE_MESSAGE)

    def _dump_state(self) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.end_headers()
        self.close_connection = True
        try:
            self.server.impl.dump_state(self.wfile)
        except Exception:
            _log.exception("error dumping state")


# POST is accepted alongside PUT and DELETE for older clients.
_ROUTES: dict[str, dict[str, Callable[[_Handler], None]]] = {
    EXPOSE_PORT_PATH: {"PUT": _Handler._expose_port, "POST": _Handler._expose_port},
    EXPOSE_PIPE_PATH: {"PUT": _Handler._expose_pipe, "POST": _Handler._expose_pipe},
    UNEXPOSE_PORT_PATH: {"DELETE": _Handler._unexpose_port, "POST": _Handler._unexpose_port},
    UNEXPOSE_PIPE_PATH: {"DELETE": _Handler._unexpose_pipe, "POST": _Handler._unexpose_pipe},
    LIST_PATH: {"GET": _Handler._list},
    DUMP_STATE_PATH: {"GET": _Handler._dump_state},
}


class _ListenerServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """A threading HTTP server around an already listening socket."""

    daemon_threads = True

    def __init__(self, listener: socket.socket, impl: Any) -> None:
        socketserver.BaseServer.__init__(self, listener.getsockname(), _Handler)
        self.socket = listener
        self.impl = impl


class Server:
    """Serves port-control requests, delegating them to an implementation.

    The implementation provides ``expose(port)``, ``unexpose(port)``,
    ``list_exposed()`` and ``dump_state(stream)``.
    """

    def __init__(self, path: str, impl: Any) -> None:
        listener = choose(path).listen(path)
        self.path = path
        self.impl = impl
        self._httpd = _ListenerServer(listener, impl)
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "Server":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def start(self) -> None:
        """Serve requests on a background thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="port-control", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop serving and close the listener."""
        if self._thread is not None:
            self._httpd.shutdown()
            self._thread.join()
            self._thread = None
        self._httpd.server_close()