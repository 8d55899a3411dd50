"""Heartbeat and reconnection for pm-node.

While a session exists the monitor sends a heartbeat on every tick and warns
about high round-trip latency. Without a session it tries to reconnect, once
per tick, with no backoff.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from .exceptions import PMNodeError
from .utils import now_ms

logger = logging.getLogger("pm-node")

HEARTBEAT_METHOD = "loop"
DEFAULT_LATENCY_THRESHOLD_MS = 500


class LinkState(str, Enum):
    ATTACHED = "attached"
    DETACHED = "detached"


class MonitoredLink(Protocol):
    """What the monitor needs from the agent."""

    @property
    def connected(self) -> bool: ...

    @property
    def connecting(self) -> bool: ...

    async def connect(self) -> None: ...

    async def call_master(self, method: str, params: Any = None) -> Any: ...


class HealthMonitor:
    """ATTACHED/DETACHED state machine driven by ``tick()``."""

    def __init__(
        self,
        link: MonitoredLink,
        latency_threshold_ms: int = DEFAULT_LATENCY_THRESHOLD_MS,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize health monitor.

        Args:
            link: The agent whose session is monitored
            latency_threshold_ms: Heartbeat latency above which a warning is logged
            clock: Millisecond clock, replaceable in tests
        """
        self.link = link
        self.latency_threshold_ms = latency_threshold_ms
        self.clock = clock
        self.last_latency_ms: Optional[int] = None
        self.reconnect_attempts = 0

    @property
    def state(self) -> LinkState:
        return LinkState.ATTACHED if self.link.connected else LinkState.DETACHED

    async def tick(self) -> None:
        """Run one step. Never raises; every failure is logged."""
        try:
            if self.state is LinkState.ATTACHED:
                await self._heartbeat()
            else:
                await self._reconnect()
        except Exception as e:
            logger.exception(f"health check error: {e}")

    async def _heartbeat(self) -> None:
        sent = self.clock()
        try:
            reply = await self.link.call_master(HEARTBEAT_METHOD, {"time": sent})
        except PMNodeError as e:
            logger.warning(f"heartbeat failed: {e}")
            return

        if not isinstance(reply, dict) or reply.get("time") != sent:
            logger.error("heartbeat reply time does not match")

        latency = self.clock() - sent
        self.last_latency_ms = latency
        if latency > self.latency_threshold_ms:
            logger.warning(f"got heartbeat response with high latency {latency}ms")
        else:
            logger.debug(f"heartbeat latency {latency}ms")

    async def _reconnect(self) -> None:
        if self.link.connecting:
            logger.debug("connect still in progress, skipping reconnect")
            return

        logger.info("health check has no session ... reconnecting now")
        self.reconnect_attempts += 1
        try:
            await self.link.connect()
        except PMNodeError as e:
            logger.warning(f"can not reconnect: {e}")
            return
        logger.info("reconnect successful")


class IntervalTimer:
    """Runs an async callback every ``interval`` seconds on the event loop.

    Each run is its own task, so a slow callback never delays the next tick.
    """

    def __init__(self, interval: float, callback: Callable[[], Awaitable[None]]):
        self.interval = interval
        self.callback = callback
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._runs: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking. Calling start on a running timer does nothing."""
        if self.running:
            logger.debug("interval timer already running")
            return

        self._stop_event.clear()
        self._task = asyncio.ensure_future(self._run_loop())
        logger.debug(f"started interval timer (interval: {self.interval}s)")

    async def stop(self) -> None:
        """Stop ticking and wait for in-flight runs."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        for run in list(self._runs):
            run.cancel()
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        logger.debug("stopped interval timer")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

            run = asyncio.ensure_future(self.callback())
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)
