"""Exception hierarchy for pm-node.

Every error that can reach the master carries an ``rpc_code`` which the RPC
channel puts into the JSON-RPC error reply.
"""


class PMNodeError(Exception):
    """Base for all pm-node errors."""

    rpc_code = -32000


class UsageError(PMNodeError):
    """Missing or invalid input to an agent operation."""

    rpc_code = -32602


class LaunchError(PMNodeError):
    """The operating system failed to start the process."""


class ProcessFailedError(PMNodeError):
    """A spawned process failed after launch (runtime error or non-zero exit)."""

    def __init__(self, message: str, info: dict = None):
        super().__init__(message)
        self.info = info or {}


class ProcessNotFoundError(PMNodeError):
    """No tracked process with the given pid."""


class ProtectedProcessError(PMNodeError):
    """Attempt to kill or remove the protected agent process."""


class InternalInconsistencyError(PMNodeError):
    """Internal bookkeeping is broken (a pm-node bug, not misuse)."""

    rpc_code = -32603


class UsageLookupError(PMNodeError):
    """CPU/memory usage of a pid could not be observed."""


class TransportError(PMNodeError):
    """Base for control connection failures."""


class AlreadyConnectedError(TransportError):
    """A session already exists (or is being established)."""


class NotConnectedError(TransportError):
    """The operation needs a session but none exists."""


class ConnectError(TransportError):
    """The socket could not be connected."""


class ConnectionLostError(TransportError):
    """The connection dropped before a reply arrived."""


class FramingError(TransportError):
    """Malformed frame on the wire."""


class StreamClosedError(TransportError):
    """Write to a sub-stream that is closed or whose multiplexer is gone."""


class RemoteError(TransportError):
    """The remote end answered a call with an error."""

    def __init__(self, message: str, code: int = -32000, data=None):
        super().__init__(message)
        self.code = code
        self.data = data
