"""Host port allocation for sandbox port publishing."""

import asyncio
import errno
import logging
import socket
from dataclasses import dataclass
from typing import Iterable, Optional

from sandbox_bridge.errors import NoPortsAvailable

log = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


@dataclass(frozen=True)
class PortSet:
    api: int
    cdp: Optional[int] = None
    vnc: Optional[int] = None
    no_vnc: Optional[int] = None

    def all(self) -> list[int]:
        return [p for p in (self.cdp, self.api, self.vnc, self.no_vnc) if p is not None]

    def to_dict(self) -> dict:
        return {"api": self.api, "cdp": self.cdp, "vnc": self.vnc, "no_vnc": self.no_vnc}


def is_port_available(port: int, host: str = LOOPBACK) -> bool:
    """Bind-then-close probe. Sees listeners the in-memory set cannot."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        sock.listen(1)
    except OSError as e:
        if e.errno not in (errno.EADDRINUSE, errno.EACCES):
            log.debug(f"Port probe {host}:{port} failed: {e}")
        return False
    finally:
        sock.close()
    return True


def find_available_port(
    range_start: int, range_end: int, exclude: Optional[Iterable[int]] = None
) -> int:
    excluded = set(exclude or ())
    for port in range(range_start, range_end + 1):
        if port in excluded:
            continue
        if is_port_available(port):
            return port
    raise NoPortsAvailable(range_start, range_end)


class PortAllocator:
    """Tracks ports held by live sandboxes.

    Reservations are serialised on one lock so two concurrent creates
    cannot probe their way onto the same port.
    """

    def __init__(self, range_start: int, range_end: int):
        self.range_start = range_start
        self.range_end = range_end
        self.allocated: set[int] = set()
        self._lock = asyncio.Lock()

    def is_reserved(self, port: int) -> bool:
        return port in self.allocated

    def _take(self) -> int:
        port = find_available_port(self.range_start, self.range_end, self.allocated)
        self.allocated.add(port)
        return port

    async def reserve(self, cdp: bool = True, vnc: bool = False) -> PortSet:
        """Reserve an api port plus optional cdp/vnc ports, all or nothing."""
        async with self._lock:
            taken: list[int] = []
            try:
                cdp_port = None
                if cdp:
                    cdp_port = self._take()
                    taken.append(cdp_port)
                api_port = self._take()
                taken.append(api_port)
                vnc_port = no_vnc_port = None
                if vnc:
                    vnc_port = self._take()
                    taken.append(vnc_port)
                    no_vnc_port = self._take()
                    taken.append(no_vnc_port)
            except NoPortsAvailable:
                for port in taken:
                    self.allocated.discard(port)
                raise
            return PortSet(api=api_port, cdp=cdp_port, vnc=vnc_port, no_vnc=no_vnc_port)

    def release(self, port: int) -> None:
        self.allocated.discard(port)

    def release_all(self, ports: PortSet) -> None:
        for port in ports.all():
            self.allocated.discard(port)
