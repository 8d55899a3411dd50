"""Host facts and process usage collection for pm-node.

Provides the two collaborators behind the telemetry RPC methods:
- get_host_info: static facts about the machine (getInfo)
- lookup_usage: CPU and memory usage of a single pid (getProcesses)
"""

import logging
import platform
import socket
import sys
import time
from typing import Optional

import psutil

from .exceptions import UsageLookupError

logger = logging.getLogger("pm-node")


def get_host_info() -> dict:
    """Collect host facts.

    Returns:
        Dict with hostname, OS type/platform/arch/release, uptime (seconds),
        total memory (bytes) and per-CPU model and clock speed (MHz)
    """
    model = get_cpu_model()
    speeds = _cpu_speeds()

    return {
        "hostname": socket.gethostname(),
        "type": platform.system(),
        "platform": sys.platform,
        "arch": platform.machine(),
        "release": platform.release(),
        "uptime": int(time.time() - psutil.boot_time()),
        "totalmem": psutil.virtual_memory().total,
        "cpus": [{"model": model, "speed": speed} for speed in speeds],
    }


def get_cpu_model() -> str:
    """Get the CPU model name.

    Returns:
        Model string from /proc/cpuinfo, falling back to platform.processor()
    """
    try:
        with open("/proc/cpuinfo") as f:
            for line in f:
                if line.startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass

    return platform.processor() or "unknown"


def _cpu_speeds() -> list[int]:
    """Current clock speed of every logical CPU in MHz (0 if unknown)."""
    cpu_count = psutil.cpu_count() or 1

    try:
        freqs = psutil.cpu_freq(percpu=True)
    except (AttributeError, NotImplementedError, OSError):
        freqs = None

    if not freqs:
        return [0] * cpu_count

    if len(freqs) == 1 and cpu_count > 1:
        # Some platforms only report a single, system-wide frequency
        return [int(freqs[0].current)] * cpu_count

    return [int(f.current) for f in freqs]


async def lookup_usage(pid: int) -> dict:
    """Look up the current resource usage of a process.

    Args:
        pid: Operating-system process id

    Returns:
        Dict with cpu (percent since the previous lookup) and memory (RSS bytes)

    Raises:
        UsageLookupError: if the pid is not observable
    """
    try:
        proc = _process(pid)
        with proc.oneshot():
            return {
                "cpu": proc.cpu_percent(interval=None),
                "memory": proc.memory_info().rss,
            }
    except psutil.Error as e:
        _process_cache.pop(pid, None)
        logger.debug(f"usage lookup for pid {pid} failed: {e}")
        raise UsageLookupError(f"can not look up usage of pid {pid}: {e}") from e


# psutil.Process objects remember the previous CPU times, so cpu_percent only
# means something when the same object is asked again on the next lookup.
# Entries for exited processes are dropped whenever a new pid is cached.
_process_cache: dict[int, psutil.Process] = {}


def _process(pid: int) -> psutil.Process:
    cached: Optional[psutil.Process] = _process_cache.get(pid)
    if cached is not None and cached.is_running():
        return cached

    proc = psutil.Process(pid)
    _prune_exited()
    _process_cache[pid] = proc
    return proc


def _prune_exited() -> None:
    for pid, cached in list(_process_cache.items()):
        if not cached.is_running():
            del _process_cache[pid]

