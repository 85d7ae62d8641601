"""
Session Lifecycle
=================

Owns the interpreter process and its rendezvous transport, which are always
created and destroyed as a pair.

This module handles:
- Lazy startup on first use, shared by concurrent callers
- The startup handshake (listen -> spawn -> accept -> dispatch)
- Teardown on explicit stop, process exit or connection loss

After teardown the next ``ensure_started()`` builds a fresh session with a
new rendezvous address and request ids starting again at 1.
"""

import time
import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Set

import structlog

from .channel import MessageChannel
from .config import KernelSettings, settings
from .errors import EnvironmentResolutionError, KernelStartupError
from .events import EventEmitter
from .observability import get_tracer
from .protocols import (
    DiagnosticsProvider,
    EnvironmentResolver,
    ProcessHandle,
    ProcessLauncher,
)
from .transport import RendezvousListener

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


def interpreter_arguments(
    config: KernelSettings,
    environment_path: str,
    address: str,
    diagnostics_address: str,
    base_path: Optional[Path] = None,
) -> List[str]:
    """Command line for the interpreter-side notebook driver."""
    driver = Path(config.DRIVER_SCRIPT)
    if not driver.is_absolute() and base_path is not None:
        driver = Path(base_path) / driver
    return [
        f"--color={'yes' if config.COLOR_OUTPUT else 'no'}",
        f"--project={environment_path}",
        "--startup-file=no",
        "--history-file=no",
        str(driver),
        address,
        diagnostics_address,
    ]


@dataclass
class Session:
    """One interpreter process plus its transport."""

    address: str
    listener: RendezvousListener
    process: Optional[ProcessHandle] = None
    channel: Optional[MessageChannel] = None
    last_request_id: int = 0
    started_at: float = field(default_factory=time.time)
    watcher: Optional[asyncio.Task] = field(default=None, repr=False)
    closed: bool = False

    def next_request_id(self) -> int:
        self.last_request_id += 1
        return self.last_request_id

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None


class SessionManager:
    """
    Guarantees at most one live session per kernel.

    Args:
        launcher: Spawns the interpreter process
        environment: Resolves the executable and environment paths
        diagnostics: Supplies the diagnostics channel address
        configure_channel: Registers inbound handlers on a new channel
            before dispatch starts
        display_name: Human-readable label passed to the launcher
        base_path: Directory a relative DRIVER_SCRIPT is resolved against
        config: Settings (module defaults if omitted)
    """

    def __init__(
        self,
        launcher: ProcessLauncher,
        environment: EnvironmentResolver,
        diagnostics: DiagnosticsProvider,
        configure_channel: Optional[Callable[[MessageChannel], None]] = None,
        display_name: str = "Notebook Kernel",
        base_path: Optional[Path] = None,
        config: KernelSettings = settings,
    ):
        self.launcher = launcher
        self.environment = environment
        self.diagnostics = diagnostics
        self.configure_channel = configure_channel
        self.display_name = display_name
        self.base_path = base_path
        self.config = config

        self.session: Optional[Session] = None
        self.spawn_count = 0
        self.on_connected: EventEmitter[Session] = EventEmitter("connected")
        # Fired with a reason string whenever a live session goes away
        self.on_session_end: EventEmitter[str] = EventEmitter("session ended")

        self._starting: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def is_started(self) -> bool:
        return self.session is not None

    async def ensure_started(self) -> Session:
        """
        Start the session if it is not already live and return it.

        Concurrent callers share one startup attempt; its failure is raised
        to all of them and the next call starts over.

        Raises:
            KernelStartupError: If startup fails, is stopped, or the session
                ends before the caller resumes
        """
        if self.session is not None:
            return self.session

        if self._starting is None:
            task = asyncio.create_task(self._start())
            task.add_done_callback(self._clear_starting)
            self._starting = task
        starting = self._starting

        try:
            state = await asyncio.shield(starting)
        except asyncio.CancelledError:
            # Startup cancelled by stop(); the waiter itself was not
            if starting.cancelled():
                raise KernelStartupError("Kernel stopped during startup") from None
            raise

        if state.closed:
            raise KernelStartupError("Interpreter session ended during startup")
        return state

    def _clear_starting(self, task: asyncio.Task) -> None:
        if self._starting is task:
            self._starting = None

    async def _start(self) -> Session:
        with tracer.start_as_current_span("notebook_kernel.ensure_started"):
            listener = RendezvousListener(self.config.PIPE_NAMESPACE)
            state = Session(address=listener.allocate_address(), listener=listener, last_request_id=0)
            loop = asyncio.get_running_loop()
            listening = loop.create_future()
            pending: List[asyncio.Future] = []

            try:
                await listener.listen(state.address)
                listening.set_result(None)

                connected = asyncio.create_task(self._connect(state))
                pending.append(connected)

                executable, environment_path = await self._resolve_environment()
                args = interpreter_arguments(
                    self.config,
                    environment_path,
                    state.address,
                    self.diagnostics.get_diagnostics_channel_address(),
                    self.base_path,
                )
                state.process = await self.launcher.spawn(executable, args, self.display_name)
                self.spawn_count += 1

                exited = asyncio.create_task(state.process.wait())
                pending.append(exited)

                gates = asyncio.gather(listening, connected)
                pending.append(gates)
                done, _ = await asyncio.wait(
                    {gates, exited},
                    timeout=self.config.STARTUP_TIMEOUT,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if exited.done():
                    raise KernelStartupError(
                        f"Interpreter exited with code {exited.result()} during startup"
                    )
                if gates not in done:
                    raise KernelStartupError(
                        f"Interpreter did not connect within {self.config.STARTUP_TIMEOUT}s"
                    )
                gates.result()
                # Close events before the session is published are not seen by
                # _on_channel_closed
                if state.channel.is_closed:
                    raise KernelStartupError("Interpreter disconnected during startup")
            except BaseException as e:
                logger.error(f"[KERNEL] Startup failed: {e!r}")
                for task in pending:
                    task.cancel()
                # Retrieve outcomes so cancelled gates are not reported as unhandled
                await asyncio.gather(*pending, return_exceptions=True)
                await self._release(state)
                raise

            state.watcher = asyncio.create_task(self._watch_process(state, exited))
            self.session = state
            logger.info(
                f"[KERNEL] Session ready on {state.address}",
                pid=state.pid,
                display_name=self.display_name,
            )
            return state

    async def _resolve_environment(self):
        try:
            executable = await self.environment.get_executable_path()
            environment_path = await self.environment.get_environment_path()
        except EnvironmentResolutionError:
            raise
        except Exception as e:
            raise EnvironmentResolutionError(f"Could not resolve interpreter environment: {e}") from e
        return executable, environment_path

    async def _connect(self, state: Session) -> None:
        connection = await state.listener.accept_once()
        channel = MessageChannel(connection)
        if self.configure_channel is not None:
            self.configure_channel(channel)
        channel.on_close.subscribe(lambda ch: self._on_channel_closed(state))
        channel.listen()
        state.channel = channel
        self.on_connected.fire(state)

    async def _watch_process(self, state: Session, exited: asyncio.Task) -> None:
        returncode = await exited
        if self.session is state:
            logger.warning(f"[KERNEL] Interpreter exited with code {returncode}")
            await self._teardown(state, f"Interpreter process exited with code {returncode}")

    def _on_channel_closed(self, state: Session) -> None:
        if self.session is not state:
            return
        logger.warning("[KERNEL] Connection to interpreter lost")
        task = asyncio.create_task(self._teardown(state, "Connection to interpreter lost"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def stop(self) -> None:
        """Terminate the interpreter and clear the session; no-op when stopped."""
        starting = self._starting
        if starting is not None and not starting.done():
            logger.info("[KERNEL] Cancelling startup in progress")
            starting.cancel()
            await asyncio.wait({starting})

        state = self.session
        if state is None:
            return
        await self._teardown(state, "Kernel stopped")

    async def _teardown(self, state: Session, reason: str) -> None:
        if self.session is state:
            self.session = None
        if state.closed:
            return

        logger.info(f"[KERNEL] Tearing down session: {reason}", pid=state.pid)
        self.on_session_end.fire(reason)
        await self._release(state)

        watcher = state.watcher
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()

    async def _release(self, state: Session) -> None:
        """Close transport and process together."""
        state.closed = True
        if state.channel is not None:
            await state.channel.close()
        state.listener.close()
        if state.process is not None and state.process.returncode is None:
            await self._terminate(state.process)

    async def _terminate(self, process: ProcessHandle) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(
                f"[KERNEL] Interpreter {process.pid} ignored terminate after "
                f"{self.config.STOP_TIMEOUT}s; killing"
            )
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
        logger.info(f"[KERNEL] Interpreter {process.pid} stopped")
