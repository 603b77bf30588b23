"""The port-forwarding control plane: tracks forwards and the current multiplexer."""

from __future__ import annotations

import logging
import threading
from typing import Any, BinaryIO, Optional

from vpnkit_ctl.forward import Maker
from vpnkit_ctl.port import ExposeError, Port

_log = logging.getLogger(__name__)


def _port_key(port: Port) -> str:
    return str(port)


class Control:
    """Exposes and unexposes ports by running local forwards."""

    def __init__(self, forwarder: Optional[Maker] = None) -> None:
        self.forwarder = forwarder if forwarder is not None else Maker()
        self._mux: Any = None
        self._mux_changed = threading.Condition()
        self._forwards: dict[str, Any] = {}
        self._forwards_lock = threading.Lock()

    def set_mux(self, mux: Any) -> None:
        """Replace the multiplexer used for future connections."""
        with self._mux_changed:
            if mux is not None:
                _log.info("established connection to vpnkit-forwarder")
            self._mux = mux
            self._mux_changed.notify_all()

    def mux(self) -> Any:
        """Return the current multiplexer, waiting until there is one."""
        with self._mux_changed:
            self._mux_changed.wait_for(lambda: self._mux is not None)
            return self._mux

    def expose(self, port: Optional[Port]) -> None:
        """Start forwarding ``port``; exposing the same port twice is harmless."""
        if port is None:
            raise ValueError("cannot expose a nil Port")
        with self._forwards_lock:
            if _port_key(port) in self._forwards:
                return
            try:
                forward = self.forwarder.make(self, port)
            except Exception as exc:
                raise ExposeError(str(exc)) from exc
            # Key by the resolved port so the results of list_exposed can be unexposed.
            self._forwards[_port_key(forward.port())] = forward
            threading.Thread(target=forward.run, daemon=True).start()

    def unexpose(self, port: Optional[Port]) -> None:
        """Stop forwarding ``port``; unknown ports are ignored."""
        if port is None:
            raise ValueError("cannot unexpose a nil Port")
        with self._forwards_lock:
            forward = self._forwards.pop(_port_key(port), None)
            if forward is not None:
                forward.stop()

    def list_exposed(self) -> list[Port]:
        """Return the ports currently forwarded."""
        with self._forwards_lock:
            return [forward.port() for forward in self._forwards.values()]

    def dump_state(self, stream: BinaryIO) -> None:
        """Write the multiplexer's diagnostic state to ``stream``."""
        self.mux().dump_state(stream)