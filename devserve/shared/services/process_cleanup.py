"""Best-effort reclaim of TCP ports held by stale processes.

Targets listeners left behind by a crashed or killed orchestrator
session (orphaned dev servers, live-reload helpers). Ports handled here
are assumed private to the orchestrator, so their occupants are killed
without further checks.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class PortOccupant:
    pid: int
    port: int


def _pids_on_port_unix(port: int) -> set[int]:
    """Return PIDs bound to *port* using `lsof -ti:<port>`."""
    try:
        out = subprocess.check_output(
            ["lsof", f"-ti:{port}"],
            text=True,
            stderr=subprocess.DEVNULL,
        )
    except subprocess.CalledProcessError:
        # lsof exits 1 when nothing matches.
        return set()
    pids: set[int] = set()
    for line in out.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            pids.add(int(line))
        except ValueError:
            continue
    return pids


def _pids_on_port_windows(port: int) -> set[int]:
    """Return PIDs whose local address is *port* in `netstat -ano`."""
    out = subprocess.check_output(
        ["netstat", "-ano"],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    suffix = f":{port}"
    pids: set[int] = set()
    for line in out.splitlines():
        parts = line.split()
        # Proto  Local Address  Foreign Address  [State]  PID
        if len(parts) < 4 or parts[0].upper() not in {"TCP", "UDP"}:
            continue
        if not parts[1].endswith(suffix):
            continue
        try:
            pid = int(parts[-1])
        except ValueError:
            continue
        if pid != 0:
            pids.add(pid)
    return pids


def find_port_occupants(port: int) -> list[PortOccupant]:
    """List processes currently bound to *port* on this host."""
    if sys.platform == "win32":
        pids = _pids_on_port_windows(port)
    else:
        pids = _pids_on_port_unix(port)
    return [PortOccupant(pid=pid, port=port) for pid in sorted(pids)]


def _kill_pid(pid: int) -> None:
    if sys.platform == "win32":
        subprocess.run(
            ["taskkill", "/F", "/PID", str(pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    else:
        os.kill(pid, signal.SIGKILL)


def kill_process_on_port(
    port: int,
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """Force-kill whatever holds *port*. Returns the number of PIDs killed.

    Never raises: a missing lookup tool, an empty port or a PID that
    vanished between lookup and kill are all treated as nothing to do.
    """
    own_pid = current_pid or os.getpid()
    logger = log or (lambda _: None)
    try:
        occupants = find_port_occupants(port)
    except (OSError, subprocess.SubprocessError) as exc:
        logger(f"No process to kill on port {port}: {type(exc).__name__}: {exc}")
        return 0

    killed = 0
    for occ in occupants:
        if occ.pid == own_pid:
            continue
        try:
            _kill_pid(occ.pid)
            killed += 1
            logger(f"Killed process {occ.pid} on port {port}")
        except ProcessLookupError:
            continue
        except (OSError, subprocess.SubprocessError) as exc:
            logger(
                f"Failed to kill pid={occ.pid} on port {port}: "
                f"{type(exc).__name__}: {exc}"
            )
    return killed
