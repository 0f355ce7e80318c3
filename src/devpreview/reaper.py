from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Tuple

from .config import check_port
from .errors import PortReclamationFailure


logger = logging.getLogger(__name__)

QUERY_TIMEOUT_S = 5.0
KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


@dataclass(frozen=True)
class ListeningProcess:
    port: int
    pid: int


@dataclass(frozen=True)
class ReclaimResult:
    port: int
    found: Tuple[ListeningProcess, ...] = ()
    terminated: Tuple[ListeningProcess, ...] = ()

    @property
    def was_free(self) -> bool:
        return not self.found


def _query(cmd: List[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=QUERY_TIMEOUT_S)
    except FileNotFoundError as exc:
        raise PortReclamationFailure(f"{cmd[0]} is not installed") from exc
    except subprocess.TimeoutExpired as exc:
        raise PortReclamationFailure(f"{cmd[0]} did not answer within {QUERY_TIMEOUT_S:g}s") from exc
    except OSError as exc:
        raise PortReclamationFailure(f"could not run {cmd[0]}: {exc}") from exc


def _pids_from_lsof(port: int) -> List[int]:
    result = _query(["lsof", "-nP", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"])
    out = result.stdout.strip()
    # lsof exits 1 both for "nothing matched" and for real errors; only the
    # latter writes to stderr without printing any pid.
    if result.returncode != 0 and not out:
        if result.returncode == 1 and not result.stderr.strip():
            return []
        raise PortReclamationFailure(f"lsof failed ({result.returncode}): {result.stderr.strip()}")
    return [int(tok) for tok in out.split() if tok.isdigit()]


def _pids_from_netstat(port: int) -> List[int]:
    result = _query(["netstat", "-ano", "-p", "tcp"])
    if result.returncode != 0:
        raise PortReclamationFailure(f"netstat failed ({result.returncode}): {result.stderr.strip()}")

    pids = []
    for line in result.stdout.splitlines():
        parts = line.split()
        # Proto  Local Address  Foreign Address  State  PID
        if len(parts) != 5 or parts[3] != "LISTENING":
            continue
        local_port = parts[1].rsplit(":", 1)[-1]
        if local_port == str(port) and parts[4].isdigit():
            pids.append(int(parts[4]))
    return pids


def find_listeners(port: int) -> List[ListeningProcess]:
    """Return the processes holding a listening TCP socket on ``port``.

    The calling process is never included. Raises
    :class:`PortReclamationFailure` when the socket table cannot be read.
    """
    check_port(port)
    pids = _pids_from_netstat(port) if sys.platform == "win32" else _pids_from_lsof(port)

    me = os.getpid()
    seen = set()
    found = []
    for pid in pids:
        if pid == me or pid in seen:
            continue
        seen.add(pid)
        found.append(ListeningProcess(port=port, pid=pid))
    return found


def terminate(proc: ListeningProcess) -> bool:
    """Send the kill signal to ``proc``. Returns False if it could not be signalled."""
    try:
        os.kill(proc.pid, KILL_SIGNAL)
    except ProcessLookupError:
        logger.debug("pid %d on port %d exited before it could be signalled", proc.pid, proc.port)
        return False
    except PermissionError:
        logger.warning("not allowed to stop pid %d listening on port %d", proc.pid, proc.port)
        return False
    except OSError as exc:
        logger.warning("failed to signal pid %d on port %d: %s", proc.pid, proc.port, exc)
        return False
    logger.info("stopped pid %d that was listening on port %d", proc.pid, proc.port)
    return True


def reclaim(port: int) -> ReclaimResult:
    """Free ``port`` by killing whatever is listening on it.

    Best effort: does not wait for the killed processes to exit and never
    raises for query or signal problems. The server's own bind is what
    decides whether the port is actually available.
    """
    check_port(port)
    try:
        found = find_listeners(port)
    except PortReclamationFailure as exc:
        logger.warning("could not check port %d for an old server: %s", port, exc)
        return ReclaimResult(port=port)

    if not found:
        logger.debug("port %d is free, nothing to reclaim", port)
        return ReclaimResult(port=port)

    terminated = tuple(p for p in found if terminate(p))
    return ReclaimResult(port=port, found=tuple(found), terminated=terminated)
