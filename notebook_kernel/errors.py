"""
Kernel error taxonomy.

Startup errors (BindError, EnvironmentResolutionError, KernelStartupError)
propagate out of ``ensure_started`` and therefore out of the first submit.
Protocol errors raised while dispatching a notification are logged by the
message channel and dropped.
"""


class KernelError(Exception):
    """Base class for every error raised by this package."""


class BindError(KernelError):
    """The rendezvous address is already in use."""

    def __init__(self, address: str, reason: str = "address already in use"):
        self.address = address
        super().__init__(f"Cannot bind rendezvous address {address}: {reason}")


class EnvironmentResolutionError(KernelError):
    """The interpreter executable or its environment could not be resolved."""


class KernelStartupError(KernelError):
    """The interpreter did not connect back (timeout or early exit)."""


class ProtocolError(KernelError):
    """A frame or notification payload violated the wire protocol."""


class UnknownStreamName(ProtocolError):
    def __init__(self, name: str, request_id: int):
        self.name = name
        self.request_id = request_id
        super().__init__(
            f"Unknown stream type {name!r} for request {request_id} "
            "(expected 'stdout' or 'stderr')"
        )


class DanglingReference(KernelError, KeyError):
    """A notification referenced a request id that is not registered."""

    def __init__(self, request_id: int):
        self.request_id = request_id
        super().__init__(request_id)

    def __str__(self):
        return f"No execution registered for request id {self.request_id}"


class OrphanedExecution(KernelError):
    """The session ended while an execution was still running."""
