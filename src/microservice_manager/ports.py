"""Host port allocation.

The scan is advisory: another process can bind the returned port between
the check and the container runtime publishing it.  That race is accepted
for local developer tooling and makes this unsuitable for busy hosts.

Probing the IPv4 wildcard also probes the IPv6 wildcard, since the container
runtime publishes on both.  Hosts without usable IPv6 are probed on IPv4 only.
"""

from __future__ import annotations

import errno
import socket
from collections.abc import Callable

from microservice_manager.constants import MAX_PORT
from microservice_manager.errors import NoPortAvailable
from microservice_manager.logging import get_logger

log = get_logger("microservice_manager.ports")

IPV4_ANY = "0.0.0.0"
IPV6_ANY = "::"


def is_port_free(port: int, host: str = IPV4_ANY) -> bool:
    """Return True if nothing is bound to *port* on *host*.

    ``SO_REUSEADDR`` is deliberately not set so that a listener on any
    address overlapping *host* makes the bind fail.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    if host == IPV4_ANY:
        return _ipv6_port_free(port)
    return True


def _ipv6_port_free(port: int) -> bool:
    if not socket.has_ipv6:
        return True
    try:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    except OSError:
        return True
    with sock:
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        try:
            sock.bind((IPV6_ANY, port))
        except OSError as exc:
            # Only an address conflict means taken; IPv6 being unusable does not
            return exc.errno != errno.EADDRINUSE
    return True


class PortAllocator:
    """Find the first unbound port at or above a base port."""

    def __init__(
        self,
        host: str = IPV4_ANY,
        probe: Callable[[int], bool] | None = None,
    ) -> None:
        self._host = host
        self._probe = probe or (lambda port: is_port_free(port, self._host))

    def allocate(self, base_port: int, search_range: int) -> int:
        """Return the lowest free port in ``[base_port, base_port + search_range]``.

        Raises:
            NoPortAvailable: every port in the range is taken.
        """
        if base_port < 1 or base_port > MAX_PORT:
            raise ValueError(f"base_port must be between 1 and {MAX_PORT}, got {base_port}")
        if search_range < 0:
            raise ValueError(f"search_range must be >= 0, got {search_range}")

        end_port = base_port + search_range
        for port in range(base_port, min(end_port, MAX_PORT) + 1):
            if self._probe(port):
                log.debug("port_allocated", port=port, base_port=base_port)
                return port

        log.error("port_range_exhausted", start=base_port, end=end_port)
        raise NoPortAvailable(base_port, end_port)
