[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vpnkit-ctl"
version = "0.1.0"
description = "Port-forwarding control client and server, transports and the vmnet protocol for a VPNKit-style network service"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "vpnkit",
    "port-forwarding",
    "vsock",
    "hyperv",
    "unix-socket",
    "vmnet",
    "dhcp",
    "pcap",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vpnkit_ctl"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
