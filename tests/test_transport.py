"""Tests for framing, the multiplexer, the RPC channel and the session."""

import asyncio
import json
import struct

import pytest

from pm_node.exceptions import (
    ConnectError,
    ConnectionLostError,
    FramingError,
    RemoteError,
    StreamClosedError,
    UsageError,
)
from pm_node.framing import MAX_FRAME_SIZE, decode_mux, encode_frame, encode_mux, read_frame, DATA
from pm_node.rpc import RpcChannel
from pm_node.session import TransportSession

from .conftest import wait_for


def reader_with(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


# Framing


@pytest.mark.asyncio
async def test_frames_are_length_prefixed():
    assert encode_frame(b"abc") == b"\x00\x00\x00\x03abc"

    reader = reader_with(encode_frame(b"first") + encode_frame(b"") + encode_frame(b"third"))
    assert await read_frame(reader) == b"first"
    assert await read_frame(reader) == b""
    assert await read_frame(reader) == b"third"
    assert await read_frame(reader) is None


@pytest.mark.asyncio
async def test_eof_inside_frame_is_an_error():
    with pytest.raises(FramingError):
        await read_frame(reader_with(b"\x00\x00"))
    with pytest.raises(FramingError):
        await read_frame(reader_with(b"\x00\x00\x00\x05ab"))


@pytest.mark.asyncio
async def test_oversized_frame_is_rejected():
    with pytest.raises(FramingError):
        await read_frame(reader_with(struct.pack(">I", MAX_FRAME_SIZE + 1)))


def test_mux_header():
    frame = encode_mux(DATA, 7, b"payload")
    kind, stream_id, body = decode_mux(frame[4:])
    assert (kind, stream_id, body) == (DATA, 7, b"payload")

    with pytest.raises(FramingError):
        decode_mux(b"\x01\x00")


# Session and RPC


async def open_session(master, methods=None, on_close=None):
    session = await TransportSession.open("127.0.0.1", master.port, methods or {}, on_close=on_close)
    await wait_for(lambda: master.sessions)
    return session


@pytest.mark.asyncio
async def test_connect_refused():
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    with pytest.raises(ConnectError):
        await TransportSession.open("127.0.0.1", port, {})


@pytest.mark.asyncio
async def test_call_round_trip(master):
    session = await open_session(master)

    assert await session.call("loop", {"time": 123}) == {"time": 123}
    assert master.heartbeats == [{"time": 123}]

    await session.close()


@pytest.mark.asyncio
async def test_unknown_method_is_a_remote_error(master):
    session = await open_session(master)

    with pytest.raises(RemoteError) as excinfo:
        await session.call("noSuchMethod")
    assert excinfo.value.code == -32601

    await session.close()


@pytest.mark.asyncio
async def test_inbound_call_with_progress(master):
    async def count(params, notify):
        for i in range(params["n"]):
            notify(i)
        return "done"

    session = await open_session(master, {"count": count})

    progress = []
    result = await master.call("count", {"n": 3}, on_progress=progress.append)

    assert result == "done"
    assert progress == [0, 1, 2]

    await session.close()


@pytest.mark.asyncio
async def test_inbound_error_codes(master):
    async def bad_usage(params, notify):
        raise UsageError("pid is required")

    async def crash(params, notify):
        raise KeyError("boom")

    session = await open_session(master, {"badUsage": bad_usage, "crash": crash})

    with pytest.raises(RemoteError) as excinfo:
        await master.call("badUsage")
    assert excinfo.value.code == -32602
    assert str(excinfo.value) == "pid is required"
    assert excinfo.value.data["type"] == "UsageError"

    with pytest.raises(RemoteError) as excinfo:
        await master.call("crash")
    assert excinfo.value.code == -32603

    await session.close()


@pytest.mark.asyncio
async def test_connection_loss_fails_pending_calls(master):
    async def hang(params, notify):
        await asyncio.Event().wait()

    master.extra_methods["hang"] = hang
    closes = []
    session = await open_session(master, on_close=lambda s, e: closes.append(s))

    pending = asyncio.ensure_future(session.call("hang"))
    await asyncio.sleep(0.05)
    await master.drop()

    with pytest.raises(ConnectionLostError):
        await pending
    await wait_for(lambda: session.closed)
    assert closes == [session]

    with pytest.raises(ConnectionLostError):
        await session.call("loop", {"time": 1})


@pytest.mark.asyncio
async def test_named_streams_keep_byte_order(master):
    session = await open_session(master)

    out = await session.create_stream("job.out")
    err = await session.create_stream("job.err")
    assert out.stream_id != err.stream_id

    for i in range(50):
        await out.write(f"o{i};".encode())
        await err.write(f"e{i};".encode())
    await out.close()
    await err.close()

    await wait_for(lambda: {"job.out", "job.err"} <= master.finished_streams)
    assert master.output["job.out"] == "".join(f"o{i};" for i in range(50)).encode()
    assert master.output["job.err"] == "".join(f"e{i};" for i in range(50)).encode()

    with pytest.raises(StreamClosedError):
        await out.write(b"late")

    await session.close()


@pytest.mark.asyncio
async def test_stream_write_after_disconnect_fails(master):
    session = await open_session(master)
    stream = await session.create_stream("job.out")

    await master.drop()
    await wait_for(lambda: session.closed)

    with pytest.raises(StreamClosedError):
        await stream.write(b"data")
    with pytest.raises(ConnectionLostError):
        await session.create_stream("another")


@pytest.mark.asyncio
async def test_framing_error_tears_down_session(master):
    errors = []
    session = await open_session(master, on_close=lambda s, e: errors.append(e))

    # a mux payload shorter than its header
    master.session.mux._writer.write(encode_frame(b"\x02"))
    await wait_for(lambda: session.closed)

    assert isinstance(errors[0], FramingError)


@pytest.mark.asyncio
async def test_malformed_rpc_messages_keep_session_up(master):
    session = await open_session(master)

    for message in (
        {"jsonrpc": "2.0", "id": [1], "result": 1},
        {"jsonrpc": "2.0", "id": {"a": 1}, "error": {"code": 1}},
        {"jsonrpc": "2.0", "id": True, "result": 1},
        {"jsonrpc": "2.0", "method": "$/progress", "params": {"id": [1], "value": 0}},
        {"jsonrpc": "2.0", "method": [1]},
    ):
        await master.session.mux.send_control(json.dumps(message).encode())
    await asyncio.sleep(0.1)

    assert not session.closed
    assert await session.call("loop", {"time": 5}) == {"time": 5}

    await session.close()


@pytest.mark.asyncio
async def test_request_with_non_string_method_is_rejected():
    sent = []

    async def send(data):
        sent.append(json.loads(data))

    channel = RpcChannel(send, {"loop": None})
    channel.feed(json.dumps({"jsonrpc": "2.0", "id": 7, "method": [1]}).encode())
    await wait_for(lambda: sent)

    assert sent == [{
        "jsonrpc": "2.0",
        "id": 7,
        "error": {"code": -32600, "message": "method must be a string", "data": {"type": "InvalidRequest"}},
    }]
