"""TCP port allocation for per-worktree dev servers.

Ports are handed out from a fixed range, always scanning upward from
the base port so low ports are reused as soon as they are released.
Before probing a candidate the allocator kills whatever currently holds
it: the range is private to the orchestrator, and a listener there is
assumed to be an orphan from a previous session.
"""
from __future__ import annotations

import asyncio
import logging
import socket
import sys
from collections.abc import Callable, Iterable

from devserve.shared.services.process_cleanup import kill_process_on_port

from .errors import NoPortsAvailableError

logger = logging.getLogger(__name__)

# Signature: killer(port, log=...) -> number of processes killed
PortKiller = Callable[..., int]


def is_port_bindable(port: int, host: str = "127.0.0.1") -> bool:
    """True when a listening socket can currently be bound to *port*."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if sys.platform != "win32":
            # Matches what dev servers do; ignores TIME_WAIT leftovers.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(1)
        return True
    except OSError:
        return False
    finally:
        sock.close()


class PortAllocator:
    """Exclusive port reservations in ``[base_port, max_port]``."""

    def __init__(
        self,
        base_port: int = 3001,
        max_port: int = 3099,
        *,
        auxiliary_ports: Iterable[int] = (),
        reclaim_delay_seconds: float = 0.1,
        force_reclaim: bool = True,
        host: str = "127.0.0.1",
        killer: PortKiller = kill_process_on_port,
        probe: Callable[[int, str], bool] = is_port_bindable,
    ) -> None:
        self.base_port = base_port
        self.max_port = max_port
        self.auxiliary_ports = tuple(auxiliary_ports)
        self.reclaim_delay_seconds = reclaim_delay_seconds
        self.force_reclaim = force_reclaim
        self._host = host
        self._killer = killer
        self._probe = probe
        self._reserved: set[int] = set()
        # Serialises scan+reserve; release() needs no lock.
        self._lock = asyncio.Lock()

    async def allocate(self) -> int:
        """Reserve and return the lowest bindable port in range.

        Raises:
            NoPortsAvailableError: every candidate is reserved or unbindable.
        """
        async with self._lock:
            port = await self._find_available_port()
            self._reserved.add(port)
        logger.info("Allocated port %d", port)
        await self.reclaim_auxiliary_ports()
        return port

    def release(self, port: int) -> None:
        """Drop the reservation for *port*. No-op if not reserved."""
        if port in self._reserved:
            self._reserved.discard(port)
            logger.debug("Released port %d", port)

    def is_reserved(self, port: int) -> bool:
        return port in self._reserved

    def reserved_ports(self) -> list[int]:
        return sorted(self._reserved)

    async def reclaim_auxiliary_ports(self) -> None:
        """Kill occupants of the fixed live-reload ports. Best-effort."""
        if not self.auxiliary_ports:
            return
        for port in self.auxiliary_ports:
            await self._kill(port)
        await asyncio.sleep(self.reclaim_delay_seconds)

    async def _find_available_port(self) -> int:
        for port in range(self.base_port, self.max_port + 1):
            if port in self._reserved:
                continue
            if self.force_reclaim:
                await self._kill(port)
                await asyncio.sleep(self.reclaim_delay_seconds)
            if self._probe(port, self._host):
                return port
            logger.debug("Port %d is not bindable, trying next", port)
        raise NoPortsAvailableError(self.base_port, self.max_port)

    async def _kill(self, port: int) -> int:
        """Best-effort kill of *port*'s occupant; failures are logged only."""
        try:
            killed = await asyncio.to_thread(
                self._killer, port, log=logger.debug,
            )
        except Exception:
            logger.debug("Port reclaim failed for %d", port, exc_info=True)
            return 0
        if killed:
            logger.warning(
                "Reclaimed port %d from %d stale process(es)", port, killed,
            )
        return killed
