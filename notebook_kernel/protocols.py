"""
Interfaces of the collaborators this package drives but does not own.

The process launcher, environment resolver and diagnostics provider are
supplied by the editor integration; the defaults in ``notebook_kernel.process``
cover running outside an editor. ``CellExecution`` is the caller-visible
execution object that receives outputs.
"""

from typing import Any, List, Optional, Protocol, Sequence


class ProcessHandle(Protocol):
    pid: Optional[int]
    returncode: Optional[int]

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


class ProcessLauncher(Protocol):
    async def spawn(
        self, executable: str, args: Sequence[str], display_name: str
    ) -> ProcessHandle: ...


class EnvironmentResolver(Protocol):
    async def get_executable_path(self) -> str: ...

    async def get_environment_path(self) -> str: ...


class DiagnosticsProvider(Protocol):
    def get_diagnostics_channel_address(self) -> str: ...


class CellExecution(Protocol):
    execution_order: Optional[int]

    def start(self, timestamp: float) -> None: ...

    def clear_output(self) -> None: ...

    def append_output(self, output: Any) -> None: ...

    def end(self, success: bool, timestamp: float) -> None: ...


class RecordedExecution:
    """
    In-memory CellExecution.

    Keeps outputs as a list of nbformat output nodes, which is what editor
    integrations render and what tests assert on.
    """

    def __init__(self, label: str = ""):
        self.label = label
        self.execution_order: Optional[int] = None
        self.outputs: List[Any] = []
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self.success: Optional[bool] = None

    def start(self, timestamp: float) -> None:
        self.started_at = timestamp

    def clear_output(self) -> None:
        self.outputs = []

    def append_output(self, output: Any) -> None:
        self.outputs.append(output)

    def end(self, success: bool, timestamp: float) -> None:
        self.success = success
        self.ended_at = timestamp

    @property
    def done(self) -> bool:
        return self.success is not None

    @property
    def text(self) -> str:
        """Concatenated stream output."""
        return "".join(
            o.get("text", "") for o in self.outputs if o.get("output_type") == "stream"
        )

    def __repr__(self):
        return (
            f"RecordedExecution(order={self.execution_order}, "
            f"outputs={len(self.outputs)}, success={self.success})"
        )
