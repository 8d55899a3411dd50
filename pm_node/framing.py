"""Length-prefixed framing and stream multiplexing for the master connection.

Wire format:
- Frame: 4-byte big-endian payload length, then the payload
- Mux payload: 1-byte kind, 4-byte big-endian stream id, then the body

Stream 0 is the control stream that carries JSON-RPC. The connecting side
opens odd stream ids and the accepting side even ones.
"""

import asyncio
import logging
import struct
from typing import Callable, Optional

from .exceptions import FramingError, StreamClosedError

logger = logging.getLogger("pm-node")

LENGTH_HEADER = struct.Struct(">I")
MUX_HEADER = struct.Struct(">BI")
MAX_FRAME_SIZE = 16 * 1024 * 1024

CONTROL_STREAM_ID = 0

# Mux frame kinds
OPEN = 1
DATA = 2
END = 3


def encode_frame(payload: bytes) -> bytes:
    """Prefix a payload with its length."""
    if len(payload) > MAX_FRAME_SIZE:
        raise FramingError(f"frame of {len(payload)} bytes exceeds {MAX_FRAME_SIZE}")
    return LENGTH_HEADER.pack(len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> Optional[bytes]:
    """Read one frame.

    Returns:
        The payload, or None on a clean EOF between frames

    Raises:
        FramingError: on EOF inside a frame or an oversized length
    """
    try:
        header = await reader.readexactly(LENGTH_HEADER.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise FramingError("connection closed inside a frame header") from e

    (length,) = LENGTH_HEADER.unpack(header)
    if length > MAX_FRAME_SIZE:
        raise FramingError(f"frame of {length} bytes exceeds {MAX_FRAME_SIZE}")

    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise FramingError(
            f"connection closed inside a frame ({len(e.partial)}/{length} bytes)"
        ) from e


def encode_mux(kind: int, stream_id: int, body: bytes = b"") -> bytes:
    return encode_frame(MUX_HEADER.pack(kind, stream_id) + body)


def decode_mux(payload: bytes) -> tuple[int, int, bytes]:
    if len(payload) < MUX_HEADER.size:
        raise FramingError(f"mux frame too short ({len(payload)} bytes)")
    kind, stream_id = MUX_HEADER.unpack_from(payload)
    return kind, stream_id, payload[MUX_HEADER.size:]


class MuxStream:
    """One named, independently ordered sub-stream of a Multiplexer."""

    def __init__(self, mux: "Multiplexer", stream_id: int, label: str):
        self.mux = mux
        self.stream_id = stream_id
        self.label = label
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._local_closed = False
        self._remote_closed = False

    @property
    def closed(self) -> bool:
        return self._local_closed or self.mux.closed

    async def write(self, data: bytes) -> None:
        """Send bytes on this stream.

        Raises:
            StreamClosedError: if the stream or its multiplexer is closed
        """
        if self._local_closed:
            raise StreamClosedError(f"stream {self.label!r} is closed")
        if data:
            await self.mux.send(DATA, self.stream_id, data)

    async def close(self) -> None:
        """Send END; further writes fail. Closing twice is a no-op."""
        if self._local_closed:
            return
        self._local_closed = True
        if not self.mux.closed:
            await self.mux.send(END, self.stream_id)
        self.mux.forget(self.stream_id)

    async def read(self) -> bytes:
        """Next chunk sent by the remote end, b"" once it ended the stream."""
        if self._remote_closed and self._inbound.empty():
            return b""
        chunk = await self._inbound.get()
        if not chunk:
            self._remote_closed = True
        return chunk

    def _feed(self, data: bytes) -> None:
        self._inbound.put_nowait(data)

    def _end(self) -> None:
        self._inbound.put_nowait(b"")

    def __repr__(self) -> str:
        return f"<MuxStream {self.stream_id} {self.label!r}>"


class Multiplexer:
    """Carries many sub-streams over one framed byte connection.

    Inbound control-stream data goes to ``on_control``; streams opened by the
    remote end are announced through ``on_stream``.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        initiator: bool = True,
        on_control: Optional[Callable[[bytes], None]] = None,
        on_stream: Optional[Callable[[MuxStream], None]] = None,
    ):
        self._reader = reader
        self._writer = writer
        self._next_id = 1 if initiator else 2
        self._streams: dict[int, MuxStream] = {}
        self._write_lock = asyncio.Lock()
        self._closed = False
        self.on_control = on_control
        self.on_stream = on_stream

    @property
    def closed(self) -> bool:
        return self._closed

    async def open_stream(self, label: str) -> MuxStream:
        """Open a new named sub-stream."""
        if self._closed:
            raise StreamClosedError(f"can not open stream {label!r}, multiplexer is closed")

        stream_id = self._next_id
        self._next_id += 2
        stream = MuxStream(self, stream_id, label)
        self._streams[stream_id] = stream
        await self.send(OPEN, stream_id, label.encode("utf-8"))
        logger.debug(f"opened stream {stream_id} ({label})")
        return stream

    async def send_control(self, data: bytes) -> None:
        await self.send(DATA, CONTROL_STREAM_ID, data)

    async def send(self, kind: int, stream_id: int, body: bytes = b"") -> None:
        if self._closed:
            raise StreamClosedError("multiplexer is closed")

        frame = encode_mux(kind, stream_id, body)
        async with self._write_lock:
            try:
                self._writer.write(frame)
                await self._writer.drain()
            except OSError as e:
                raise StreamClosedError(f"write failed: {e}") from e

    def forget(self, stream_id: int) -> None:
        self._streams.pop(stream_id, None)

    async def run(self) -> None:
        """Read and dispatch frames until EOF.

        Raises:
            FramingError: on malformed input
            ConnectionError: if the socket fails
        """
        try:
            while True:
                payload = await read_frame(self._reader)
                if payload is None:
                    logger.debug("multiplexer reached end of stream")
                    return
                self._dispatch(*decode_mux(payload))
        finally:
            self._shutdown()

    def _dispatch(self, kind: int, stream_id: int, body: bytes) -> None:
        if stream_id == CONTROL_STREAM_ID:
            if kind == DATA and self.on_control:
                self.on_control(body)
            return

        if kind == OPEN:
            stream = MuxStream(self, stream_id, body.decode("utf-8", errors="replace"))
            self._streams[stream_id] = stream
            if self.on_stream:
                self.on_stream(stream)
            return

        stream = self._streams.get(stream_id)
        if stream is None:
            logger.debug(f"dropping frame kind {kind} for unknown stream {stream_id}")
            return

        if kind == DATA:
            stream._feed(body)
        elif kind == END:
            stream._end()
        else:
            logger.warning(f"unknown mux frame kind {kind} on stream {stream_id}")

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        for stream in self._streams.values():
            stream._end()
        self._streams.clear()

    async def close(self) -> None:
        """Close the underlying connection."""
        self._shutdown()
        if not self._writer.is_closing():
            self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"error while closing connection: {e}")
