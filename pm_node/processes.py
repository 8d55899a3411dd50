"""Process registry and supervisor for pm-node.

The registry is the agent's process table. It always holds the agent's own,
protected record and one record per child that is alive or whose exit is
still being processed.

The supervisor spawns children for the master, watches them until they exit
and relays their end (and optionally their output) back to the master.

A spawn settles in one of two ways, chosen by the caller:
- creation: the operation succeeds as soon as the child is registered
- execution: the operation reports "created" on the next loop iteration and
  settles when the child exits (fails on error or non-zero exit)
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Protocol

import psutil

from .exceptions import (
    InternalInconsistencyError,
    LaunchError,
    PMNodeError,
    ProcessFailedError,
    ProcessNotFoundError,
    ProtectedProcessError,
    UsageError,
)
from .framing import MuxStream
from .utils import parse_signal

logger = logging.getLogger("pm-node")

AGENT_PROCESS_NAME = "pm-node"
RELAY_CHUNK_SIZE = 64 * 1024


class CompletionMode(str, Enum):
    CREATION = "creation"
    EXECUTION = "execution"


class SpawnState(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ProcessRecord:
    """Bookkeeping entry for one tracked process.

    ``handle`` is the live process object and never leaves the agent;
    use ``to_public()`` for anything sent over the wire.
    """
    name: str
    pid: int
    handle: Any = field(default=None, repr=False)
    protected: bool = False
    core_id: Any = None
    completion_mode: Optional[CompletionMode] = None

    # Filled in when the process closes
    finished: bool = False
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    error: Optional[str] = None

    def to_public(self) -> dict:
        """Wire view of the record (without the handle)."""
        info = {
            "name": self.name,
            "pid": self.pid,
            "protected": self.protected,
            "coreId": self.core_id,
            "completionMode": self.completion_mode.value if self.completion_mode else None,
        }
        if self.finished:
            info["code"] = self.exit_code
            if self.signal is not None:
                info["signal"] = self.signal
            if self.error is not None:
                info["error"] = self.error
        return info


class ProcessRegistry:
    """Process table keyed by pid with exactly one protected record."""

    def __init__(self, own_record: ProcessRecord):
        if not own_record.protected:
            raise InternalInconsistencyError("the agent's own process record must be protected")
        self._protected = own_record
        self._records: dict[int, ProcessRecord] = {own_record.pid: own_record}

    @classmethod
    def for_current_process(cls, name: str = AGENT_PROCESS_NAME) -> "ProcessRegistry":
        """Registry whose protected record is the running agent."""
        return cls(ProcessRecord(
            name=name,
            pid=os.getpid(),
            handle=psutil.Process(),
            protected=True,
        ))

    @property
    def protected(self) -> ProcessRecord:
        return self._protected

    def add(self, record: ProcessRecord) -> None:
        if record.protected:
            raise InternalInconsistencyError("only the agent's own record may be protected")
        if record.pid in self._records:
            raise InternalInconsistencyError(f"pid {record.pid} is already tracked")
        self._records[record.pid] = record

    def remove(self, record: ProcessRecord) -> Optional[ProcessRecord]:
        """Remove a record.

        Returns:
            The removed record, or None if it was not tracked
        """
        if record is self._protected:
            raise ProtectedProcessError("the agent's own process record can not be removed")
        if self._records.get(record.pid) is not record:
            return None
        return self._records.pop(record.pid)

    def get(self, pid: int) -> Optional[ProcessRecord]:
        return self._records.get(pid)

    def __contains__(self, pid: int) -> bool:
        return pid in self._records

    def __iter__(self) -> Iterator[ProcessRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)


@dataclass
class SpawnRequest:
    """Validated ``spawn`` parameters."""
    command: str
    args: list[str] = field(default_factory=list)
    name: Optional[str] = None
    core_id: Any = None
    completion_mode: CompletionMode = CompletionMode.CREATION
    stdout_label: Optional[str] = None
    stderr_label: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or os.path.basename(self.command)

    @classmethod
    def from_params(cls, params: Any) -> "SpawnRequest":
        """Parse RPC params.

        Raises:
            UsageError: on missing or invalid parameters
        """
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise UsageError("spawn options must be an object")

        command = params.get("command")
        if not command:
            logger.debug("illegal spawn call: command missing!")
            raise UsageError("command is required")
        if not isinstance(command, str):
            raise UsageError("command must be a string")

        args = params.get("args")
        if args is None:
            args = []
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise UsageError("args must be a list of strings")

        mode = params.get("completionMode")
        if mode is None:
            mode = CompletionMode.CREATION.value
        try:
            completion_mode = CompletionMode(mode)
        except ValueError:
            logger.debug(f"illegal spawn call: completion mode {mode} is not supported")
            raise UsageError(f"completion mode {mode} is not supported") from None

        for key in ("name", "stdoutLabel", "stderrLabel"):
            value = params.get(key)
            if value is not None and not isinstance(value, str):
                raise UsageError(f"{key} must be a string")

        return cls(
            command=command,
            args=list(args),
            name=params.get("name") or None,
            core_id=params.get("coreId"),
            completion_mode=completion_mode,
            stdout_label=params.get("stdoutLabel") or None,
            stderr_label=params.get("stderrLabel") or None,
        )


class SpawnOperation:
    """Result of a spawn: PENDING -> CREATED -> SUCCEEDED/FAILED.

    Listeners added with ``add_listener`` see the "created" event;
    ``wait()`` returns the final public view or raises the failure.
    """

    def __init__(self, record: ProcessRecord):
        self.record = record
        self.state = SpawnState.PENDING
        self._listeners: list[Callable[[dict], None]] = []
        self._created_view: Optional[dict] = None
        self._result: asyncio.Future = asyncio.get_running_loop().create_future()

    def add_listener(self, callback: Callable[[dict], None]) -> None:
        """Subscribe to the "created" event (fires at once if it already happened)."""
        if self._created_view is not None:
            callback(self._created_view)
        else:
            self._listeners.append(callback)

    async def wait(self) -> dict:
        return await self._result

    def result(self) -> dict:
        """Final view of a settled operation."""
        return self._result.result()

    def _mark_created(self) -> None:
        if self.state is not SpawnState.PENDING:
            return
        self.state = SpawnState.CREATED
        self._created_view = self.record.to_public()
        for callback in self._listeners:
            try:
                callback(self._created_view)
            except Exception:
                logger.exception(f"created listener of {self.record.name} failed")
        self._listeners.clear()

    def _succeed(self, info: dict) -> None:
        self.state = SpawnState.SUCCEEDED
        self._listeners.clear()
        self._result.set_result(info)

    def _fail(self, error: BaseException) -> None:
        self.state = SpawnState.FAILED
        self._listeners.clear()
        self._result.set_exception(error)


class MasterLink(Protocol):
    """What the supervisor needs from the connection to the master."""

    @property
    def connected(self) -> bool: ...

    async def create_stream(self, label: str) -> MuxStream: ...

    def notify_master(self, method: str, params: Any) -> None: ...


@dataclass
class _Watch:
    record: ProcessRecord
    operation: SpawnOperation
    relays: list[asyncio.Task] = field(default_factory=list)
    last_error: Optional[BaseException] = None

    def observe_error(self, error: BaseException) -> None:
        logger.debug(f"{self.record.name} process error: {error}")
        self.last_error = error


class ProcessSupervisor:
    """Spawns and kills child processes on the master's behalf."""

    def __init__(self, registry: ProcessRegistry, master: MasterLink):
        self.registry = registry
        self.master = master
        self._watchers: set[asyncio.Task] = set()

    async def spawn(self, params: Any) -> SpawnOperation:
        """Launch a child process.

        Raises:
            UsageError: on invalid parameters (nothing is launched)
            LaunchError: if the OS can not start the process (nothing is registered)
            InternalInconsistencyError: if the new pid is already tracked (the child is killed)
        """
        request = SpawnRequest.from_params(params)
        name = request.display_name
        execution = request.completion_mode is CompletionMode.EXECUTION

        if not execution and (request.stdout_label or request.stderr_label):
            logger.debug(f"ignoring output labels of {name}, output is only relayed in execution mode")
        stdout_label = request.stdout_label if execution else None
        stderr_label = request.stderr_label if execution else None

        logger.debug(f"starting {name} process")
        try:
            proc = await asyncio.create_subprocess_exec(
                request.command,
                *request.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if stdout_label else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE if stderr_label else asyncio.subprocess.DEVNULL,
            )
        except (OSError, ValueError) as e:
            logger.debug(f"{name} process spawn error: {e}")
            raise LaunchError(f"can not start {name}: {e}") from e

        record = ProcessRecord(
            name=name,
            pid=proc.pid,
            handle=proc,
            core_id=request.core_id,
            completion_mode=request.completion_mode,
        )
        try:
            self.registry.add(record)
        except InternalInconsistencyError:
            logger.error(f"pid {proc.pid} of {name} is already tracked, killing it")
            proc.kill()
            await proc.wait()
            raise

        watch = _Watch(record=record, operation=SpawnOperation(record))

        if stdout_label:
            logger.debug(f"piping stdout of {name} to {stdout_label}")
            watch.relays.append(asyncio.ensure_future(
                self._relay(watch, proc.stdout, stdout_label, "stdout")
            ))
        if stderr_label:
            logger.debug(f"piping stderr of {name} to {stderr_label}")
            watch.relays.append(asyncio.ensure_future(
                self._relay(watch, proc.stderr, stderr_label, "stderr")
            ))

        watcher = asyncio.ensure_future(self._watch(watch))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

        if execution:
            asyncio.get_running_loop().call_soon(self._announce_created, watch)
        else:
            watch.operation._succeed(record.to_public())

        return watch.operation

    def kill(self, params: Any) -> dict:
        """Send a signal to a tracked child.

        The record stays registered until the child's exit has been processed.

        Raises:
            UsageError: missing/invalid pid or signal
            ProcessNotFoundError: no record with that pid
            ProtectedProcessError: the pid is the agent itself
            InternalInconsistencyError: the record has no process handle
        """
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise UsageError("kill options must be an object")

        pid = params.get("pid")
        if not pid:
            logger.debug("illegal kill call: pid missing!")
            raise UsageError("pid is required")
        if not isinstance(pid, int) or isinstance(pid, bool):
            raise UsageError(f"pid must be an integer, got: {pid!r}")

        record = self.registry.get(pid)
        if record is None:
            logger.debug("illegal kill call: pid not found")
            raise ProcessNotFoundError("pid not found")
        if record.protected:
            logger.debug("illegal kill call: process is protected")
            raise ProtectedProcessError("process is protected")
        if record.handle is None:
            logger.debug("illegal kill call: invalid process record")
            raise InternalInconsistencyError("invalid process record (pm-node internal error)")

        try:
            sig = parse_signal(params.get("signal"))
        except ValueError as e:
            raise UsageError(str(e)) from e

        logger.debug(f"sending {sig.name} to {record.name} ({pid})")
        try:
            record.handle.send_signal(sig)
        except ProcessLookupError as e:
            raise ProcessNotFoundError(f"pid {pid} has already exited") from e

        return record.to_public()

    async def join(self) -> None:
        """Wait until every child spawned so far has been fully processed."""
        while self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)

    def _announce_created(self, watch: _Watch) -> None:
        name = watch.record.name
        if watch.last_error is not None:
            logger.debug(
                f"do NOT notify master of creation of {name} because an error "
                f"happened during creation: {watch.last_error}"
            )
            return
        logger.debug(f"notify master of creation of {name}")
        watch.operation._mark_created()

    async def _relay(self, watch: _Watch, source: asyncio.StreamReader, label: str, kind: str) -> None:
        """Copy a child's pipe to a named stream; on stream failure keep draining."""
        name = watch.record.name
        stream: Optional[MuxStream] = None
        try:
            stream = await self.master.create_stream(label)
        except PMNodeError as e:
            logger.debug(f"{name} {kind} stream {label} could not be opened: {e}")
        except Exception as e:
            watch.observe_error(e)

        while True:
            try:
                chunk = await source.read(RELAY_CHUNK_SIZE)
            except OSError as e:
                watch.observe_error(e)
                break
            if not chunk:
                break
            if stream is None:
                continue

            try:
                await stream.write(chunk)
            except PMNodeError as e:
                logger.debug(f"{name} {kind} pipe error: {e}")
                stream = None
            except Exception as e:
                watch.observe_error(e)
                stream = None

        if stream is not None:
            try:
                await stream.close()
            except PMNodeError as e:
                logger.debug(f"{name} {kind} stream close error: {e}")

    async def _watch(self, watch: _Watch) -> None:
        proc = watch.record.handle
        returncode = await proc.wait()
        if watch.relays:
            results = await asyncio.gather(*watch.relays, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    watch.observe_error(result)
        self._on_close(watch, returncode)

    def _on_close(self, watch: _Watch, returncode: int) -> None:
        record = watch.record
        name = record.name
        logger.debug(f"{name} process close")

        if self.registry.remove(record) is None:
            logger.debug(f"process record of {name} ({record.pid}) not found")

        record.handle = None
        record.finished = True
        if returncode is not None and returncode < 0:
            record.signal = _signal_name(-returncode)
        else:
            record.exit_code = returncode
        if watch.last_error is not None:
            record.error = str(watch.last_error)

        info = record.to_public()

        if self.master.connected:
            self.master.notify_master("onProcessEnd", info)
        else:
            logger.debug("can not send process end msg to master, disconnected?")

        if record.completion_mode is not CompletionMode.EXECUTION:
            return

        operation = watch.operation
        if watch.last_error is not None:
            logger.debug(f"{name} process exited with error: {watch.last_error}")
            operation._fail(ProcessFailedError(f"{name} process error: {watch.last_error}", info))
        elif record.signal is not None:
            logger.debug(f"{name} process was terminated by {record.signal}")
            operation._fail(ProcessFailedError(f"{name} process was terminated by {record.signal}", info))
        elif record.exit_code != 0:
            logger.debug(f"{name} process exited with code: {record.exit_code}")
            operation._fail(ProcessFailedError(f"{name} process exited with code: {record.exit_code}", info))
        else:
            operation._succeed(info)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
