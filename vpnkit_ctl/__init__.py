"""Port-forwarding control, transports and the vmnet protocol for VPNKit-style services."""

__version__ = "0.1.0"

__all__ = [
    "client",
    "config",
    "control",
    "forward",
    "port",
    "server",
    "transport",
    "vmnet",
    "vmnetd",
]