"""Default gateway lookup from ``/proc/self/net/route``.

Inside a container the host agent is usually reachable via the default
gateway. The route table lists addresses as little-endian hex, e.g.::

    Iface   Destination  Gateway   Flags  RefCnt  Use  Metric  Mask ...
    eth0    00000000     010011AC  0003   0       0    0       00000000
"""

from __future__ import annotations

__all__ = ["ROUTE_FILE", "parse_route_content", "parse_route_file"]

import socket
import struct

ROUTE_FILE = "/proc/self/net/route"

_DEFAULT_DESTINATION = "00000000"


def _hex_to_ip(value: str) -> str:
    return socket.inet_ntoa(struct.pack("<L", int(value, 16)))


def parse_route_content(content: str) -> str | None:
    """Return the default gateway IP from route table *content*, if any."""
    for line in content.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 3 or fields[1] != _DEFAULT_DESTINATION:
            continue
        try:
            return _hex_to_ip(fields[2])
        except (ValueError, struct.error):
            continue
    return None


def parse_route_file(path: str = ROUTE_FILE) -> str:
    """Read the default gateway IP from the route file.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If it has no usable default route.
    """
    with open(path, encoding="utf-8") as fh:
        content = fh.read()
    gateway = parse_route_content(content)
    if gateway is None:
        msg = f"Failed to determine the default gateway: no default route in {path}"
        raise ValueError(msg)
    return gateway
