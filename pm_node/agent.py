"""The pm-node agent.

Owns the session to the master, the process registry and supervisor, and the
health monitor, and exposes the RPC methods the master calls:
getInfo, getProcesses, spawn and kill.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from .config import AgentConfig
from .exceptions import AlreadyConnectedError, NotConnectedError, PMNodeError
from .framing import MuxStream
from .keepalive import HealthMonitor, IntervalTimer
from .metrics import get_host_info, lookup_usage
from .processes import ProcessRegistry, ProcessSupervisor
from .rpc import MethodTable
from .session import TransportSession

logger = logging.getLogger("pm-node")

UsageLookup = Callable[[int], Awaitable[dict]]
TimerFactory = Callable[[float, Callable[[], Awaitable[None]]], IntervalTimer]


class PMNodeAgent:
    """Node agent controlled by a pm master."""

    def __init__(
        self,
        config: AgentConfig,
        usage_lookup: UsageLookup = lookup_usage,
        host_info: Callable[[], Any] = get_host_info,
        timer_factory: TimerFactory = IntervalTimer,
        registry: Optional[ProcessRegistry] = None,
    ):
        """Initialize the agent.

        Args:
            config: Agent configuration
            usage_lookup: Async CPU/memory lookup by pid
            host_info: Sync or async host facts collector
            timer_factory: Builds the heartbeat timer from (interval, callback)
            registry: Process registry (defaults to one for the current process)
        """
        self.config = config
        self.registry = registry or ProcessRegistry.for_current_process()
        self.supervisor = ProcessSupervisor(self.registry, self)
        self.monitor = HealthMonitor(self, latency_threshold_ms=config.latency_warning_ms)
        self._usage_lookup = usage_lookup
        self._host_info = host_info
        self._timer_factory = timer_factory
        self._timer: Optional[IntervalTimer] = None
        self._session: Optional[TransportSession] = None
        self._connecting = False
        self._background: set[asyncio.Task] = set()

    @property
    def session(self) -> Optional[TransportSession]:
        return self._session

    @property
    def connected(self) -> bool:
        return self._session is not None

    @property
    def connecting(self) -> bool:
        return self._connecting

    @property
    def timer(self) -> Optional[IntervalTimer]:
        return self._timer

    # Connection lifecycle

    async def connect(self) -> None:
        """Connect to the master.

        The heartbeat timer is started on the first call, even if that
        connect fails, and keeps reconnecting from then on.

        Raises:
            AlreadyConnectedError: if a session exists or a connect is in flight
            ConnectError: if the socket can not be connected
        """
        if self._session is not None or self._connecting:
            raise AlreadyConnectedError("client is connected")

        self._ensure_timer()

        self._connecting = True
        try:
            session = await TransportSession.open(
                self.config.server_host,
                self.config.server_port,
                self.public_methods(),
                on_close=self._on_session_close,
            )
        finally:
            self._connecting = False

        self._session = session
        logger.debug(f"got connection to master {session.peer}")

    async def close(self) -> None:
        """Stop heartbeating and drop the session. Children keep running."""
        if self._timer is not None:
            await self._timer.stop()
        if self._session is not None:
            await self._session.close()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _ensure_timer(self) -> None:
        if not self.config.ping or self._timer is not None:
            return
        self._timer = self._timer_factory(self.config.ping_interval, self.monitor.tick)
        self._timer.start()

    def _on_session_close(self, session: TransportSession, error: Optional[BaseException]) -> None:
        if self._session is not session:
            return
        self._session = None
        if error is not None:
            logger.info(f"lost connection to master: {error}")
        else:
            logger.info("lost connection to master")

    # Link used by the supervisor and the health monitor

    async def create_stream(self, label: str) -> MuxStream:
        if self._session is None:
            raise NotConnectedError(f"can not open stream {label!r}, not connected")
        return await self._session.create_stream(label)

    async def call_master(self, method: str, params: Any = None) -> Any:
        if self._session is None:
            raise NotConnectedError(f"can not call {method}, not connected")
        return await self._session.call(method, params)

    def notify_master(self, method: str, params: Any = None) -> None:
        """Call a master method in the background; failures are only logged."""
        async def send():
            try:
                await self.call_master(method, params)
            except PMNodeError as e:
                logger.warning(f"{method} call error: {e}")

        task = asyncio.ensure_future(send())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # RPC methods

    def public_methods(self) -> MethodTable:
        return {
            "getInfo": self.get_info,
            "getProcesses": self.get_processes,
            "spawn": self.spawn,
            "kill": self.kill,
        }

    async def get_info(self, params: Any = None, notify=None) -> dict:
        logger.debug("getInfo")
        info = self._host_info()
        if inspect.isawaitable(info):
            info = await info
        return info

    async def get_processes(self, params: Any = None, notify=None) -> list[dict]:
        logger.debug("getProcesses")
        records = list(self.registry)
        usages = await asyncio.gather(*(self._usage_lookup(record.pid) for record in records))
        return [{**record.to_public(), **usage} for record, usage in zip(records, usages)]

    async def spawn(self, params: Any = None, notify: Optional[Callable[[dict], None]] = None) -> dict:
        operation = await self.supervisor.spawn(params)
        if notify is not None:
            operation.add_listener(notify)
        return await operation.wait()

    async def kill(self, params: Any = None, notify=None) -> dict:
        return self.supervisor.kill(params)
