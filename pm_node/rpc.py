"""JSON-RPC 2.0 channel over the multiplexer's control stream.

Both ends of the connection can call each other. Each JSON message travels in
its own control-stream frame. Handlers for inbound calls look like::

    async def handler(params, notify):
        notify({"step": 1})      # optional progress for the caller
        return {"ok": True}

Progress notifications are sent as ``$/progress`` with the request id.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from .exceptions import ConnectionLostError, PMNodeError, RemoteError

logger = logging.getLogger("pm-node")

JSONRPC_VERSION = "2.0"
PROGRESS_METHOD = "$/progress"

INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

Handler = Callable[[Any, Callable[[Any], None]], Awaitable[Any]]
MethodTable = dict[str, Handler]


def error_payload(exc: BaseException) -> dict:
    """JSON-RPC error object for an exception raised by a handler."""
    if isinstance(exc, RemoteError):
        code = exc.code
    elif isinstance(exc, PMNodeError):
        code = exc.rpc_code
    else:
        code = INTERNAL_ERROR

    data = {"type": type(exc).__name__}
    info = getattr(exc, "info", None)
    if info:
        data["info"] = info
    return {"code": code, "message": str(exc), "data": data}


def _valid_id(request_id: Any) -> bool:
    if isinstance(request_id, bool):
        return False
    return request_id is None or isinstance(request_id, (int, str))


def _invalid_request(request_id: Any) -> dict:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": INVALID_REQUEST, "message": "method must be a string", "data": {"type": "InvalidRequest"}},
    }


class RpcChannel:
    """Bidirectional call/response on top of a send coroutine.

    Args:
        send: Coroutine that transmits one encoded message
        methods: Inbound method table
    """

    def __init__(
        self,
        send: Callable[[bytes], Awaitable[None]],
        methods: Optional[MethodTable] = None,
    ):
        self._send = send
        self.methods: MethodTable = dict(methods or {})
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._progress: dict[int, Callable[[Any], None]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def call(
        self,
        method: str,
        params: Any = None,
        on_progress: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """Call a method on the remote end and wait for its result.

        Raises:
            ConnectionLostError: if the channel closes before the reply
            RemoteError: if the remote handler failed
        """
        if self._closed:
            raise ConnectionLostError(f"can not call {method}, channel is closed")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        if on_progress:
            self._progress[request_id] = on_progress

        try:
            await self._write({
                "jsonrpc": JSONRPC_VERSION,
                "id": request_id,
                "method": method,
                "params": params,
            })
            return await future
        finally:
            self._pending.pop(request_id, None)
            self._progress.pop(request_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification (no reply expected)."""
        await self._write({"jsonrpc": JSONRPC_VERSION, "method": method, "params": params})

    def feed(self, data: bytes) -> None:
        """Handle one inbound message."""
        try:
            message = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"dropping malformed rpc message: {e}")
            return

        if not isinstance(message, dict):
            logger.warning(f"dropping rpc message that is not an object: {message!r}")
            return

        request_id = message.get("id")
        if not _valid_id(request_id):
            logger.warning(f"dropping rpc message with invalid id: {message!r}")
            return

        if "method" in message:
            if isinstance(message["method"], str):
                self._on_request(message)
            else:
                logger.warning(f"rejecting rpc request with invalid method: {message!r}")
                if request_id is not None and not self._closed:
                    self._spawn_write(_invalid_request(request_id))
        elif "id" in message:
            self._on_response(message)
        else:
            logger.warning(f"dropping unrecognized rpc message: {message!r}")

    def close(self, exc: Optional[BaseException] = None) -> None:
        """Fail every pending call. Inbound handlers keep running but can not reply."""
        if self._closed:
            return
        self._closed = True

        reason = f": {exc}" if exc else ""
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(
                    ConnectionLostError(f"connection lost before reply to call {request_id}{reason}")
                )
        self._pending.clear()
        self._progress.clear()

    def _on_response(self, message: dict) -> None:
        future = self._pending.get(message["id"])
        if future is None or future.done():
            logger.debug(f"reply for unknown call {message['id']}")
            return

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            future.set_exception(RemoteError(
                error.get("message", "remote error"),
                code=error.get("code", -32000),
                data=error.get("data"),
            ))
        else:
            future.set_result(message.get("result"))

    def _on_request(self, message: dict) -> None:
        method = message["method"]
        request_id = message.get("id")
        params = message.get("params")

        if method == PROGRESS_METHOD:
            self._on_progress(params)
            return

        task = asyncio.ensure_future(self._dispatch(method, request_id, params))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_progress(self, params: Any) -> None:
        if not isinstance(params, dict) or not _valid_id(params.get("id")):
            return
        callback = self._progress.get(params.get("id"))
        if callback is None:
            return
        try:
            callback(params.get("value"))
        except Exception:
            logger.exception("progress callback failed")

    async def _dispatch(self, method: str, request_id: Any, params: Any) -> None:
        handler = self.methods.get(method)
        if handler is None:
            logger.debug(f"call to unknown method {method}")
            await self._reply(request_id, error={
                "code": METHOD_NOT_FOUND,
                "message": f"method {method} not found",
                "data": {"type": "MethodNotFound"},
            })
            return

        progress_writes = []

        def notify(value: Any) -> None:
            if request_id is None or self._closed:
                return
            progress_writes.append(self._spawn_write({
                "jsonrpc": JSONRPC_VERSION,
                "method": PROGRESS_METHOD,
                "params": {"id": request_id, "value": value},
            }))

        result = error = None
        try:
            result = await handler(params, notify)
        except PMNodeError as e:
            error = error_payload(e)
        except Exception as e:
            logger.exception(f"unexpected error in rpc method {method}")
            error = error_payload(e)

        # progress must reach the caller before the final reply
        if progress_writes:
            await asyncio.gather(*progress_writes)
        await self._reply(request_id, result=result, error=error)

    async def _reply(self, request_id: Any, result: Any = None, error: Optional[dict] = None) -> None:
        if request_id is None:
            return
        if self._closed:
            logger.debug(f"can not reply to call {request_id}, channel is closed")
            return

        message = {"jsonrpc": JSONRPC_VERSION, "id": request_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result

        try:
            await self._write(message)
        except PMNodeError as e:
            logger.debug(f"reply to call {request_id} failed: {e}")

    def _spawn_write(self, message: dict) -> asyncio.Task:
        async def write():
            try:
                await self._write(message)
            except PMNodeError as e:
                logger.debug(f"progress notification failed: {e}")

        task = asyncio.ensure_future(write())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _write(self, message: dict) -> None:
        await self._send(json.dumps(message, default=str).encode("utf-8"))
