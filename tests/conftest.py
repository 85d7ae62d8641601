"""
Pytest configuration and fixtures for notebook kernel tests.

The fake interpreter below connects to the real rendezvous socket and speaks
the real wire protocol, so session and kernel tests exercise the listener,
the framing and the dispatch loop end to end. Only the process is simulated.
"""

import asyncio
import itertools
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import pytest

from notebook_kernel.channel import decode_message, encode_message, read_frame
from notebook_kernel.config import KernelSettings
from notebook_kernel.kernel import NotebookKernel
from notebook_kernel.process import StaticDiagnostics

Notification = Tuple[str, Dict]
Responder = Callable[[int, str], List[Notification]]

_pids = itertools.count(40000)


def succeeded(request_id: int) -> Notification:
    return ("runcellsucceeded", {"request_id": request_id})


def failed(request_id: int, ename: str, evalue: str, traceback: str) -> Notification:
    return (
        "runcellfailed",
        {
            "request_id": request_id,
            "output": {"ename": ename, "evalue": evalue, "traceback": traceback},
        },
    )


def stream(request_id: int, data: str, name: str = "stdout") -> Notification:
    return ("streamoutput", {"name": name, "current_request_id": request_id, "data": data})


def display(request_id: int, mimetype: str, data: str) -> Notification:
    return (
        "notebook/display",
        {"mimetype": mimetype, "current_request_id": request_id, "data": data},
    )


def default_responder(request_id: int, code: str) -> List[Notification]:
    """Tiny stand-in for the interpreter-side driver."""
    if code == "1+1":
        return [stream(request_id, "2\n"), succeeded(request_id)]
    if code.startswith("error("):
        message = code[len('error("'):-len('")')]
        return [failed(request_id, "ErrorException", message, "<trace>")]
    if code == "hang":
        return []
    return [succeeded(request_id)]


class FakeInterpreterProcess:
    """Simulated interpreter process that connects back to the rendezvous socket."""

    def __init__(
        self,
        address: str,
        responder: Responder,
        connect: bool = True,
        on_connect: Optional[Callable[["FakeInterpreterProcess"], Awaitable[None]]] = None,
    ):
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.address = address
        self.responder = responder
        self.connect = connect
        self.on_connect = on_connect
        self.received: List[Dict] = []
        self.connected = asyncio.Event()
        self.terminate_calls = 0
        self.ignore_terminate = False
        self._exited = asyncio.Event()
        self._writer: Optional[asyncio.StreamWriter] = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.connect:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        reader, self._writer = await asyncio.open_unix_connection(self.address)
        self.connected.set()
        if self.on_connect is not None:
            await self.on_connect(self)
        while True:
            body = await read_frame(reader)
            if body is None:
                break
            message = decode_message(body)
            self.received.append(message)
            if message.get("method") == "notebook/runcell":
                params = message["params"]
                for method, payload in self.responder(
                    params["current_request_id"], params["code"]
                ):
                    await self.send(method, payload)

    async def send(self, method: str, params: Dict) -> None:
        self._writer.write(encode_message({"jsonrpc": "2.0", "method": method, "params": params}))
        await self._writer.drain()

    def send_raw(self, data: bytes) -> None:
        self._writer.write(data)

    def hang_up(self) -> None:
        """Close the connection but keep the process alive."""
        self._writer.close()

    @property
    def run_cell_requests(self) -> List[Dict]:
        return [m["params"] for m in self.received if m.get("method") == "notebook/runcell"]

    def exit(self, code: int = 0) -> None:
        """Simulate the process going away (user closed the terminal, crash, ...)."""
        if self.returncode is not None:
            return
        self.returncode = code
        if self._task is not None:
            self._task.cancel()
        if self._writer is not None:
            self._writer.close()
        self._exited.set()

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeLauncher:
    def __init__(self, responder: Responder = default_responder, connect: bool = True, on_connect=None):
        self.responder = responder
        self.connect = connect
        self.on_connect = on_connect
        self.calls: List[Tuple[str, List[str], str]] = []
        self.processes: List[FakeInterpreterProcess] = []

    async def spawn(self, executable, args, display_name):
        self.calls.append((executable, list(args), display_name))
        # Rendezvous address is the second to last argument
        process = FakeInterpreterProcess(
            args[-2], self.responder, connect=self.connect, on_connect=self.on_connect
        )
        process.start()
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeInterpreterProcess:
        return self.processes[-1]


class FakeEnvironment:
    def __init__(self, executable="/opt/julia/bin/julia", environment="/work/env"):
        self.executable = executable
        self.environment = environment
        self.calls = 0

    async def get_executable_path(self) -> str:
        self.calls += 1
        return self.executable

    async def get_environment_path(self) -> str:
        return self.environment


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met within timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def test_settings():
    return KernelSettings(
        PIPE_NAMESPACE="nbk-test",
        STARTUP_TIMEOUT=2.0,
        STOP_TIMEOUT=0.5,
        DIAGNOSTICS_ADDRESS="diag-pipe",
    )


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def environment():
    return FakeEnvironment()


@pytest.fixture
async def kernel(launcher, environment, test_settings):
    k = NotebookKernel(
        "/home/user/notebooks/analysis.jl",
        extension_path="/ext",
        launcher=launcher,
        environment=environment,
        diagnostics=StaticDiagnostics("diag-pipe"),
        config=test_settings,
    )
    yield k
    await k.dispose()
