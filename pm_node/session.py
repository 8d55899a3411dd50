"""Transport session to the pm master.

A session bundles the socket, the multiplexer on top of it and the RPC
channel on the control stream. It lives from a successful connect until the
socket closes or the multiplexer fails, and then it is gone for good: a new
connection means a new session.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from .exceptions import ConnectError, ConnectionLostError
from .framing import Multiplexer, MuxStream
from .rpc import MethodTable, RpcChannel

logger = logging.getLogger("pm-node")

CloseCallback = Callable[["TransportSession", Optional[BaseException]], None]


class TransportSession:
    """One live control connection: socket + multiplexer + RPC channel."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        methods: MethodTable,
        on_close: Optional[CloseCallback] = None,
        initiator: bool = True,
    ):
        self.mux = Multiplexer(reader, writer, initiator=initiator)
        self.rpc = RpcChannel(self.mux.send_control, methods)
        self.mux.on_control = self.rpc.feed
        self._on_close = on_close
        self._closed = False
        self._reader_task: Optional[asyncio.Task] = None

        peer = writer.get_extra_info("peername")
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    @classmethod
    async def open(
        cls,
        host: str,
        port: int,
        methods: MethodTable,
        on_close: Optional[CloseCallback] = None,
    ) -> "TransportSession":
        """Connect to the master and start reading.

        Raises:
            ConnectError: if the socket can not be connected
        """
        try:
            reader, writer = await asyncio.open_connection(host, port)
        except OSError as e:
            raise ConnectError(f"can not connect to {host}:{port}: {e}") from e

        session = cls(reader, writer, methods, on_close=on_close)
        session.start()
        return session

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the background reader task."""
        if self._reader_task is None:
            self._reader_task = asyncio.ensure_future(self._read_loop())

    async def create_stream(self, label: str) -> MuxStream:
        """Open a new named sub-stream, e.g. to relay process output."""
        if self._closed:
            raise ConnectionLostError(f"can not open stream {label!r}, session is closed")
        return await self.mux.open_stream(label)

    async def call(self, method: str, params: Any = None, on_progress=None) -> Any:
        """Call a method on the master."""
        return await self.rpc.call(method, params, on_progress=on_progress)

    async def close(self) -> None:
        """Close the socket; the close callback runs once the reader stops."""
        await self.mux.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
        else:
            self._teardown(None)

    async def _read_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            await self.mux.run()
            logger.debug(f"connection to {self.peer} closed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            logger.debug(f"mux error on connection to {self.peer}: {e}")
        finally:
            self._teardown(error)
        await self.mux.close()

    def _teardown(self, error: Optional[BaseException]) -> None:
        if self._closed:
            return
        self._closed = True
        self.rpc.close(error)
        if self._on_close is not None:
            try:
                self._on_close(self, error)
            except Exception:
                logger.exception("session close callback failed")
