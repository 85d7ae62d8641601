import asyncio
from pathlib import Path
from typing import Optional, Union

import structlog

from .config import KernelSettings, settings
from .events import EventEmitter
from .execution import ExecutionController
from .process import SettingsEnvironmentResolver, StaticDiagnostics, SubprocessLauncher
from .protocols import (
    CellExecution,
    DiagnosticsProvider,
    EnvironmentResolver,
    ProcessLauncher,
    RecordedExecution,
)
from .registry import ExecutionRequest, RequestRegistry
from .session import Session, SessionManager
from .utils import get_display_path_name

logger = structlog.get_logger(__name__)


class NotebookKernel:
    """
    One interpreter-backed kernel for one notebook.

    The interpreter is started lazily by the first ``execute_cell`` and
    restarted on demand after it exits. Cells run one at a time.

    Args:
        notebook_path: Path of the notebook; only used for the session label
        extension_path: Directory a relative driver script is resolved against
        launcher / environment / diagnostics: Collaborators (defaults run a
            plain subprocess configured from settings)
        config: Settings (module defaults if omitted)
    """

    def __init__(
        self,
        notebook_path: Union[str, Path],
        extension_path: Optional[Union[str, Path]] = None,
        launcher: Optional[ProcessLauncher] = None,
        environment: Optional[EnvironmentResolver] = None,
        diagnostics: Optional[DiagnosticsProvider] = None,
        config: KernelSettings = settings,
    ):
        self.notebook_path = str(notebook_path)
        self.registry = RequestRegistry()
        self.sessions = SessionManager(
            launcher=launcher or SubprocessLauncher(),
            environment=environment or SettingsEnvironmentResolver(config),
            diagnostics=diagnostics or StaticDiagnostics(config.DIAGNOSTICS_ADDRESS),
            configure_channel=self._configure_channel,
            display_name=self.display_name,
            base_path=Path(extension_path) if extension_path is not None else None,
            config=config,
        )
        self.controller = ExecutionController(self.sessions, self.registry)
        self.sessions.on_session_end.subscribe(self.controller.fail_orphans)

    @property
    def display_name(self) -> str:
        return f"Notebook Kernel {get_display_path_name(self.notebook_path)}"

    @property
    def on_cell_run_finished(self) -> EventEmitter[ExecutionRequest]:
        return self.controller.on_run_finished

    @property
    def on_connected(self) -> EventEmitter[Session]:
        return self.sessions.on_connected

    @property
    def is_running(self) -> bool:
        return self.sessions.is_started

    def _configure_channel(self, channel) -> None:
        self.controller.attach(channel)

    async def start(self) -> Session:
        return await self.sessions.ensure_started()

    async def execute_cell(
        self, code: str, execution: Optional[CellExecution] = None
    ) -> ExecutionRequest:
        """
        Submit ``code``; returns as soon as the run-cell message is sent.

        Outputs and the terminal state arrive on ``execution`` (a fresh
        RecordedExecution if none is given); await ``request.finished`` or
        subscribe to ``on_cell_run_finished`` to observe completion.
        """
        if execution is None:
            execution = RecordedExecution(label=self.notebook_path)
        return await self.controller.submit_request(code, execution)

    async def run_cell(
        self,
        code: str,
        execution: Optional[CellExecution] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionRequest:
        """
        Submit ``code`` and wait for its terminal notification.

        Raises:
            asyncio.TimeoutError: If the cell is still running after ``timeout``
        """
        request = await self.execute_cell(code, execution)
        await asyncio.wait_for(request.finished.wait(), timeout=timeout)
        return request

    async def stop(self) -> None:
        await self.sessions.stop()

    async def restart(self) -> None:
        logger.info(f"[KERNEL] Restarting {self.display_name}")
        await self.sessions.stop()
        await self.sessions.ensure_started()

    async def dispose(self) -> None:
        await self.stop()
